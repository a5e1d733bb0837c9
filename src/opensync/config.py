"""
OpenSync Configuration.

Centralized configuration management using Pydantic Settings.
Loads configuration from environment variables (prefixed ``OPENSYNC_``)
and an optional ``.env`` file.
"""

import os
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


def get_xdg_state_dir() -> str:
    """
    Get XDG-compliant state directory for OpenSync logs.

    Follows XDG Base Directory Specification:
    - Uses $XDG_STATE_HOME/opensync if XDG_STATE_HOME is set
    - Falls back to $HOME/.local/state/opensync if not set
    - Returns relative path ./logs if HOME not available (dev/testing)

    Returns:
        str: Path to state/logs directory
    """
    xdg_state_home = os.getenv("XDG_STATE_HOME")
    if xdg_state_home:
        return str(Path(xdg_state_home) / "opensync" / "logs")

    home = os.getenv("HOME")
    if home:
        return str(Path(home) / ".local" / "state" / "opensync" / "logs")

    return "./logs"


# USD per 1M tokens, used when a plugin does not report cost itself
DEFAULT_MODEL_PRICING: dict[str, dict[str, float]] = {
    "claude-opus-4": {"input": 15.00, "output": 75.00},
    "claude-sonnet-4": {"input": 3.00, "output": 15.00},
    "claude-3-5-haiku": {"input": 0.80, "output": 4.00},
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-4.1": {"input": 2.00, "output": 8.00},
    "o3": {"input": 2.00, "output": 8.00},
    "gemini-2.5-pro": {"input": 1.25, "output": 10.00},
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="OPENSYNC_",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url_override: str = ""  # Full SQLAlchemy URL (wins over postgres_*)
    postgres_db: str = "opensync"
    postgres_user: str = "opensync"
    postgres_password: str = "opensync_dev_password"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    db_pool_size: int = 5
    db_pool_max_overflow: int = 5
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800

    @property
    def database_url(self) -> str:
        """Construct database URL from components."""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_reload: bool = False
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Authentication
    api_key_prefix: str = "osk_"
    jwt_secret: str = ""  # Shared secret for HS* tokens
    jwt_public_key: str = ""  # PEM public key for RS*/ES* tokens
    jwt_algorithms: list[str] = ["RS256", "HS256"]
    jwt_audience: str = ""
    jwt_issuer: str = ""

    # OpenAI embeddings
    openai_api_key: str = ""
    openai_base_url: str = ""
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    embedding_max_input_chars: int = 8000

    # Embedding queue / worker
    embedding_worker_enabled: bool = True
    embedding_queue_max_depth: int = 10_000  # Active jobs before enqueue rejects
    embedding_max_attempts: int = 5  # Attempts before a job is dead
    embedding_backoff_base_seconds: float = 2.0
    embedding_backoff_max_seconds: float = 300.0
    embedding_poll_interval: float = 2.0
    embedding_batch_size: int = 16
    embedding_stale_job_minutes: int = 15
    embedding_purge_days: int = 7

    # Circuit breaker for query-time embedding
    embedding_circuit_failure_threshold: int = 5
    embedding_circuit_reset_seconds: float = 60.0

    # Search
    rrf_k: int = 60  # Reciprocal Rank Fusion smoothing constant
    search_candidate_multiplier: int = 3  # Candidates per list = limit * multiplier
    search_default_limit: int = 20
    search_max_limit: int = 100
    semantic_min_similarity: float = 0.0  # Semantic candidates must score above this
    snippet_chars: int = 240

    # Context formatting
    context_default_limit: int = 5
    context_max_chars: int = 12_000

    # Redaction
    redaction_placeholder: str = "[REDACTED]"
    redaction_extra_patterns: list[str] = []  # Additional regexes treated as secrets
    redaction_entropy_threshold: float = 3.8
    redaction_min_entropy_length: int = 32

    # Analytics
    model_pricing: dict[str, dict[str, float]] = DEFAULT_MODEL_PRICING

    # Ingestion
    ingest_max_attempts: int = 3  # Retries on session write contention
    ingest_backoff_seconds: float = 0.05

    # Application
    environment: str = "development"

    # Logging
    log_level: str = "INFO"
    log_dir: str = ""  # XDG-compliant log directory (defaults to XDG state dir if empty)
    log_format: str = "standard"  # standard or json
    log_console_enabled: bool = True
    log_file_enabled: bool = True
    log_max_bytes: int = 10_485_760  # 10MB per log file
    log_backup_count: int = 5
    log_to_stdout: bool = True  # Log INFO/DEBUG to stdout
    log_to_stderr: bool = True  # Log WARNING/ERROR/CRITICAL to stderr

    @property
    def log_directory(self) -> Path:
        """Get the log directory path, using XDG default if not specified."""
        if self.log_dir:
            return Path(self.log_dir).expanduser()
        return Path(get_xdg_state_dir())

    @property
    def embeddings_configured(self) -> bool:
        """Whether an embedding provider can be constructed."""
        return bool(self.openai_api_key)


# Global settings instance
settings = Settings()
