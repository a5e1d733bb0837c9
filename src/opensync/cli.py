"""
OpenSync CLI - command-line interface for server operation and maintenance.

Commands cover running the API server and the embedding worker, issuing
and revoking API keys, and rebuilding derived data (full-text index,
analytics rollups) from the authoritative session store.
"""

import logging
import uuid
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from opensync.logging_config import setup_logging

app = typer.Typer(
    name="opensync",
    help="OpenSync - sync, search and analyze coding assistant sessions",
    no_args_is_help=True,
)

console = Console()


def _init_logging(context: str) -> None:
    """Initialize logging, falling back to console if file logging is not permitted."""
    try:
        setup_logging(context=context)
    except PermissionError:
        logging.basicConfig(level=logging.INFO)


def _parse_uuid(value: Optional[str], label: str) -> Optional[uuid.UUID]:
    if value is None:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        console.print(f"[bold red]Error:[/bold red] Invalid {label}: {value}")
        raise typer.Exit(1)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Host to bind to"),
    port: Optional[int] = typer.Option(None, help="Port to bind to"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
) -> None:
    """
    Start the API server.

    Serves the plugin sync endpoints and the external REST API. The
    embedding worker runs inside the server unless disabled with
    OPENSYNC_EMBEDDING_WORKER_ENABLED=false.
    """
    import uvicorn

    from opensync.config import settings

    host = host or settings.api_host
    port = port or settings.api_port

    console.print("[bold green]Starting OpenSync API server...[/bold green]")
    console.print(f"  Host: {host}")
    console.print(f"  Port: {port}")
    console.print(f"  Reload: {reload or settings.api_reload}")
    console.print(f"\n  API docs: http://{host}:{port}/docs")

    uvicorn.run(
        "opensync.api.app:app",
        host=host,
        port=port,
        reload=reload or settings.api_reload,
    )


@app.command()
def worker(
    once: bool = typer.Option(False, "--once", help="Drain the queue and exit"),
) -> None:
    """
    Run the embedding worker in the foreground.

    Use this when the API server runs with the in-process worker disabled.
    """
    from opensync.config import settings
    from opensync.embeddings.worker import EmbeddingWorker

    _init_logging("worker")

    if not settings.embeddings_configured:
        console.print("[bold red]Error:[/bold red] OPENSYNC_OPENAI_API_KEY not set")
        raise typer.Exit(1)

    embedding_worker = EmbeddingWorker()
    if once:
        processed = embedding_worker.drain()
        console.print(f"[green]✓ Processed {processed} embedding jobs[/green]")
        return

    console.print("[bold green]Embedding worker running[/bold green] (Ctrl+C to stop)")
    try:
        embedding_worker.run()
    except KeyboardInterrupt:
        embedding_worker.stop()
        console.print("\n[yellow]Embedding worker stopped[/yellow]")


@app.command("create-key")
def create_key(
    identity: str = typer.Argument(..., help="Account identity (JWT subject)"),
    name: Optional[str] = typer.Option(None, help="Label for the key"),
    email: Optional[str] = typer.Option(None, help="Email for a newly created account"),
) -> None:
    """
    Issue an API key for an account, creating the account if needed.

    The key is printed once and cannot be recovered afterwards.
    """
    from opensync.db.connection import db_session
    from opensync.db.repositories import AccountRepository, ApiKeyRepository

    _init_logging("cli")

    with db_session() as session:
        account = AccountRepository(session).get_or_create_by_identity(identity, email=email)
        api_key, plaintext = ApiKeyRepository(session).issue(account.id, name=name)
        key_id, account_id = api_key.id, account.id

    console.print("[green]✓ API key created[/green]")
    console.print(f"  Account: {account_id}")
    console.print(f"  Key ID:  {key_id}")
    console.print(f"  Key:     [bold]{plaintext}[/bold]")
    console.print("\n[yellow]Store this key now; it will not be shown again.[/yellow]")


@app.command("revoke-key")
def revoke_key(
    key_id: str = typer.Argument(..., help="ID of the key to revoke"),
) -> None:
    """Revoke an API key."""
    from opensync.db.connection import db_session
    from opensync.db.repositories import ApiKeyRepository

    _init_logging("cli")
    key_uuid = _parse_uuid(key_id, "key id")

    with db_session() as session:
        repo = ApiKeyRepository(session)
        api_key = repo.get(key_uuid)
        if api_key is None:
            console.print(f"[bold red]Error:[/bold red] API key not found: {key_id}")
            raise typer.Exit(1)
        repo.revoke(api_key.id, api_key.account_id)
        prefix = api_key.key_prefix

    console.print(f"[green]✓ Revoked API key {prefix}…[/green]")


@app.command()
def reindex(
    account: Optional[str] = typer.Option(None, help="Only this account id"),
    embeddings: bool = typer.Option(
        False, "--embeddings", help="Also queue embedding jobs for messages without vectors"
    ),
) -> None:
    """Rebuild the full-text index from stored messages."""
    from opensync.config import settings
    from opensync.db.connection import db_session
    from opensync.embeddings.queue import EmbeddingJobQueue
    from opensync.indexing.fulltext import FullTextIndexer

    _init_logging("cli")
    account_id = _parse_uuid(account, "account id")

    if embeddings and not settings.embeddings_configured:
        console.print("[bold red]Error:[/bold red] OPENSYNC_OPENAI_API_KEY not set")
        raise typer.Exit(1)

    with db_session() as session:
        count = FullTextIndexer(session).rebuild(account_id)
        queued = EmbeddingJobQueue(session).backfill(account_id) if embeddings else 0

    console.print(f"[green]✓ Re-indexed {count} messages[/green]")
    if embeddings:
        console.print(f"[green]✓ Queued {queued} embedding jobs[/green]")


@app.command("rebuild-rollups")
def rebuild_rollups(
    account: Optional[str] = typer.Option(None, help="Only this account id"),
) -> None:
    """Recompute analytics rollups from stored sessions and messages."""
    from opensync.analytics.aggregator import AnalyticsAggregator
    from opensync.db.connection import db_session

    _init_logging("cli")
    account_id = _parse_uuid(account, "account id")

    with db_session() as session:
        count = AnalyticsAggregator(session).rebuild(account_id)

    console.print(f"[green]✓ Rebuilt rollups from {count} sessions[/green]")


@app.command("queue-stats")
def queue_stats(
    account: Optional[str] = typer.Option(None, help="Only this account id"),
) -> None:
    """Show embedding queue depth per state."""
    from opensync.db.connection import db_session
    from opensync.embeddings.queue import EmbeddingJobQueue
    from opensync.embeddings.vector_index import VectorIndex

    account_id = _parse_uuid(account, "account id")

    with db_session() as session:
        stats = EmbeddingJobQueue(session).get_stats(account_id)
        vectors = VectorIndex(session).count(account_id)

    table = Table(title="Embedding queue")
    table.add_column("State")
    table.add_column("Jobs", justify="right")
    for state, count in stats.to_dict().items():
        table.add_row(state, str(count))
    console.print(table)
    console.print(f"Stored vectors: {vectors}")


if __name__ == "__main__":
    app()
