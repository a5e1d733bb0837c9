"""
API routes for OpenSync.
"""

from opensync.api.routes import account, embeddings, export, search, sessions, stats, sync

__all__ = [
    "account",
    "embeddings",
    "export",
    "search",
    "sessions",
    "stats",
    "sync",
]
