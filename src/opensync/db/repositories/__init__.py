"""
Repository layer for database operations.

Provides a clean API for CRUD operations on database models.
"""

from opensync.db.repositories.account import AccountRepository, ApiKeyRepository
from opensync.db.repositories.api_log import ApiLogRepository
from opensync.db.repositories.base import BaseRepository
from opensync.db.repositories.message import MessageRepository
from opensync.db.repositories.session import SessionRepository

__all__ = [
    "AccountRepository",
    "ApiKeyRepository",
    "ApiLogRepository",
    "BaseRepository",
    "MessageRepository",
    "SessionRepository",
]
