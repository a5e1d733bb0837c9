"""
Startup dependency checks for the OpenSync server.

Validates critical dependencies before the application starts serving
requests and fails fast with actionable messages. The embedding provider is
optional: when it is missing or unreachable the server still starts and
search degrades to full-text.
"""

import logging
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from alembic.config import Config as AlembicConfig
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import text

from opensync.config import settings
from opensync.db.connection import SessionLocal, engine
from opensync.utils.time import utc_now

logger = logging.getLogger(__name__)


@dataclass
class StartupMetrics:
    """Metrics collected during startup checks."""

    started_at: datetime
    completed_at: Optional[datetime] = None
    total_duration_ms: Optional[float] = None
    check_durations_ms: dict[str, float] = field(default_factory=dict)
    embeddings_available: bool = False
    checks_passed: bool = False


# Global startup metrics (populated during startup)
startup_metrics = StartupMetrics(started_at=utc_now())


class StartupCheckError(Exception):
    """Raised when a critical startup check fails."""

    def __init__(self, message: str, hint: Optional[str] = None):
        self.message = message
        self.hint = hint
        super().__init__(message)

    def __str__(self) -> str:
        error_msg = f"\n{'=' * 70}\nSTARTUP CHECK FAILED\n{'=' * 70}\n\n{self.message}\n"
        if self.hint:
            error_msg += f"\nHint: {self.hint}\n"
        error_msg += f"{'=' * 70}\n"
        return error_msg


def _is_sqlite() -> bool:
    return settings.database_url.startswith("sqlite")


def check_required_environment() -> None:
    """
    Validate that a database is configured.

    Raises:
        StartupCheckError: If critical settings are missing
    """
    if settings.database_url_override:
        return

    missing = [
        f"OPENSYNC_{name.upper()}"
        for name in ("postgres_host", "postgres_db", "postgres_user", "postgres_password")
        if not getattr(settings, name)
    ]
    if missing:
        raise StartupCheckError(
            "Missing required environment variables:\n"
            + "\n".join(f"  - {var}" for var in missing),
            "Set these variables in your .env file or set OPENSYNC_DATABASE_URL_OVERRIDE",
        )

    if settings.environment == "production" and not (
        settings.jwt_secret or settings.jwt_public_key
    ):
        logger.warning("No JWT verification key configured, only API keys will authenticate")


def check_database_connection() -> None:
    """
    Verify the database is accessible and responsive.

    Raises:
        StartupCheckError: If the database connection fails
    """
    try:
        with SessionLocal() as session:
            if session.execute(text("SELECT 1")).scalar() != 1:
                raise StartupCheckError(
                    "Database query returned unexpected result",
                    "Database may be corrupted or misconfigured",
                )
    except StartupCheckError:
        raise
    except Exception as e:
        error_str = str(e).lower()
        if "could not connect" in error_str or "connection refused" in error_str:
            hint = "PostgreSQL is not running.\n  - Start with Docker: docker compose up -d"
        elif "authentication failed" in error_str or "password" in error_str:
            hint = (
                "Database authentication failed.\n"
                "  - Check credentials in .env file\n"
                f"  - Current user: {settings.postgres_user}"
            )
        elif "does not exist" in error_str:
            hint = (
                f"Database '{settings.postgres_db}' does not exist.\n"
                f"  - Create it: createdb {settings.postgres_db}\n"
                "  - Then run migrations: alembic upgrade head"
            )
        else:
            hint = f"Check your database configuration in .env\nError: {e}"

        raise StartupCheckError(
            f"Cannot connect to database\n"
            f"Host: {settings.postgres_host}:{settings.postgres_port}\n"
            f"Database: {settings.postgres_db}",
            hint,
        ) from e


def check_database_migrations() -> None:
    """
    Verify Alembic migrations are current.

    SQLite databases (development and tests) are created from the ORM
    metadata and are not versioned.

    Raises:
        StartupCheckError: If the schema is uninitialized or behind head
    """
    if _is_sqlite():
        return

    try:
        script = ScriptDirectory.from_config(AlembicConfig("alembic.ini"))
        head_revision = script.get_current_head()

        with engine.connect() as connection:
            current_revision = MigrationContext.configure(connection).get_current_revision()

        if current_revision is None:
            raise StartupCheckError(
                "Database has no migration version\nDatabase appears uninitialized",
                "Run migrations: alembic upgrade head",
            )

        if current_revision != head_revision:
            pending = [
                f"  - {rev.revision[:8]}: {rev.doc}"
                for rev in script.iterate_revisions(head_revision, current_revision)
                if rev.revision != current_revision
            ]
            raise StartupCheckError(
                f"Database migrations are out of date\n"
                f"Current revision: {current_revision[:8]}\n"
                f"Expected revision: {head_revision[:8] if head_revision else 'None'}\n"
                f"\nPending migrations:\n" + ("\n".join(pending) or "Unknown"),
                "Run: alembic upgrade head",
            )
    except StartupCheckError:
        raise
    except FileNotFoundError:
        raise StartupCheckError(
            "Alembic configuration not found",
            "Ensure alembic.ini exists in the working directory",
        )
    except Exception as e:
        raise StartupCheckError(
            f"Failed to check migration status: {e}",
            "Verify Alembic is properly configured",
        ) from e


def check_log_directory() -> None:
    """
    Validate the log directory exists and is writable.

    Raises:
        StartupCheckError: If the directory cannot be created or written
    """
    if not settings.log_file_enabled:
        return

    log_dir = settings.log_directory
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        marker = log_dir / ".write_test"
        marker.write_text("test")
        marker.unlink()
    except OSError as e:
        raise StartupCheckError(
            f"Log directory is not writable: {log_dir}\nError: {e}",
            "Set OPENSYNC_LOG_DIR to a writable path or OPENSYNC_LOG_FILE_ENABLED=false",
        ) from e


def check_embedding_provider() -> None:
    """
    Probe the embedding provider (optional).

    Never fails startup: semantic and hybrid search degrade to full-text
    while the provider is unavailable.
    """
    from opensync.embeddings.openai import get_embedding_provider
    from opensync.exceptions import UpstreamProviderError

    provider = get_embedding_provider()
    if provider is None:
        logger.warning("Embedding provider not configured, semantic search disabled")
        return

    try:
        with provider:
            provider.embed_text("opensync startup check")
        startup_metrics.embeddings_available = True
    except UpstreamProviderError as e:
        logger.warning(f"Embedding provider unreachable, search will degrade: {e}")


def run_all_startup_checks() -> None:
    """
    Execute all startup dependency checks.

    Runs checks in order of dependency and records timing metrics.

    Raises:
        SystemExit: When a critical check fails
    """
    startup_start = time.time()

    checks = [
        ("Environment Variables", check_required_environment),
        ("Database Connection", check_database_connection),
        ("Database Migrations", check_database_migrations),
        ("Log Directory", check_log_directory),
        ("Embedding Provider", check_embedding_provider),
    ]

    logger.info("Running startup checks")
    for check_name, check_func in checks:
        check_start = time.time()
        try:
            check_func()
        except StartupCheckError as e:
            startup_metrics.check_durations_ms[check_name] = (time.time() - check_start) * 1000
            logger.critical(f"Startup check failed: {check_name}")
            print(str(e), file=sys.stderr)
            sys.exit(1)
        duration = (time.time() - check_start) * 1000
        startup_metrics.check_durations_ms[check_name] = duration
        logger.info(f"  {check_name}: PASS ({duration:.1f}ms)")

    startup_metrics.completed_at = utc_now()
    startup_metrics.total_duration_ms = (time.time() - startup_start) * 1000
    startup_metrics.checks_passed = True
    logger.info(f"All startup checks passed ({startup_metrics.total_duration_ms:.1f}ms)")


def check_readiness() -> tuple[bool, dict]:
    """
    Quick readiness check for load balancers.

    Returns:
        Tuple of (is_ready, details)
    """
    db_ready = False
    try:
        with SessionLocal() as session:
            session.execute(text("SELECT 1"))
            db_ready = True
    except Exception as e:
        logger.warning(f"Readiness database check failed: {e}")

    ready = startup_metrics.checks_passed and db_ready
    details = {
        "ready": ready,
        "database": "healthy" if db_ready else "unhealthy",
        "startup_completed": startup_metrics.checks_passed,
        "embeddings_available": startup_metrics.embeddings_available,
        "uptime_seconds": (utc_now() - startup_metrics.started_at).total_seconds(),
        "startup_metrics": {
            "total_duration_ms": startup_metrics.total_duration_ms,
            "checks_ms": dict(startup_metrics.check_durations_ms),
            "started_at": startup_metrics.started_at.isoformat(),
            "completed_at": (
                startup_metrics.completed_at.isoformat()
                if startup_metrics.completed_at
                else None
            ),
        },
    }
    return ready, details
