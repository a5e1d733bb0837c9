"""
Account and API key repositories.
"""

import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from opensync.config import settings
from opensync.db.repositories.base import BaseRepository
from opensync.models.db import Account, ApiKey

logger = logging.getLogger(__name__)


def hash_api_key(api_key: str) -> str:
    """Derive the lookup hash stored for an API key."""
    return hashlib.sha256(api_key.encode()).hexdigest()


def generate_api_key() -> tuple[str, str, str]:
    """
    Generate a new API key.

    Returns:
        Tuple of (full_key, prefix, sha256_hash)
    """
    random_part = secrets.token_urlsafe(32)
    full_key = f"{settings.api_key_prefix}{random_part}"
    prefix = f"{settings.api_key_prefix}{random_part[:4]}"
    return full_key, prefix, hash_api_key(full_key)


def verify_api_key(api_key: str, stored_hash: str) -> bool:
    """Verify an API key against its stored hash."""
    return hmac.compare_digest(hash_api_key(api_key), stored_hash)


class AccountRepository(BaseRepository[Account]):
    """Repository for Account model."""

    def __init__(self, session: Session):
        super().__init__(Account, session)

    def get_by_identity(self, external_identity: str) -> Optional[Account]:
        """Get account by its external identity subject."""
        return (
            self.session.query(Account)
            .filter(Account.external_identity == external_identity)
            .first()
        )

    def get_or_create_by_identity(
        self,
        external_identity: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Account:
        """
        Get the account for an identity, creating it on first sight.

        Concurrent first requests for the same identity race on the unique
        constraint; the loser re-reads the winner's row.

        Args:
            external_identity: Verified identity subject (JWT ``sub``)
            email: Optional email claim
            name: Optional display name claim

        Returns:
            Account instance
        """
        account = self.get_by_identity(external_identity)
        if account:
            return account

        try:
            with self.session.begin_nested():
                account = Account(
                    external_identity=external_identity, email=email, name=name
                )
                self.session.add(account)
            logger.info(f"Created account {account.id} for identity {external_identity}")
            return account
        except IntegrityError:
            existing = self.get_by_identity(external_identity)
            if existing is None:
                raise
            return existing


class ApiKeyRepository(BaseRepository[ApiKey]):
    """Repository for ApiKey model."""

    def __init__(self, session: Session):
        super().__init__(ApiKey, session)

    def issue(self, account_id: uuid.UUID, name: Optional[str] = None) -> tuple[ApiKey, str]:
        """
        Issue a new API key for an account.

        The plaintext key is returned to the caller once and never stored.

        Returns:
            Tuple of (ApiKey row, plaintext key)
        """
        full_key, prefix, key_hash = generate_api_key()
        api_key = self.create(
            account_id=account_id,
            name=name,
            key_hash=key_hash,
            key_prefix=prefix,
        )
        logger.info(f"Issued API key {prefix}… for account {account_id}")
        return api_key, full_key

    def get_active_by_plaintext(self, plaintext: str) -> Optional[ApiKey]:
        """
        Resolve a presented key to an active (non-revoked) ApiKey row.

        Args:
            plaintext: Key presented by the client

        Returns:
            ApiKey or None when unknown or revoked
        """
        key_hash = hash_api_key(plaintext)
        api_key = self.session.query(ApiKey).filter(ApiKey.key_hash == key_hash).first()
        if api_key is None or not verify_api_key(plaintext, api_key.key_hash):
            return None
        if api_key.revoked_at is not None:
            return None
        return api_key

    def list_for_account(self, account_id: uuid.UUID) -> List[ApiKey]:
        """List all keys (active and revoked) for an account, newest first."""
        return (
            self.session.query(ApiKey)
            .filter(ApiKey.account_id == account_id)
            .order_by(ApiKey.created_at.desc())
            .all()
        )

    def revoke(self, key_id: uuid.UUID, account_id: uuid.UUID) -> Optional[ApiKey]:
        """
        Revoke a key owned by an account.

        Returns:
            The revoked key, or None when the key does not belong to the account
        """
        api_key = (
            self.session.query(ApiKey)
            .filter(ApiKey.id == key_id, ApiKey.account_id == account_id)
            .first()
        )
        if api_key is None:
            return None
        if api_key.revoked_at is None:
            api_key.revoked_at = datetime.now(timezone.utc)
            self.session.flush()
            logger.info(f"Revoked API key {api_key.key_prefix}… for account {account_id}")
        return api_key

    def touch(self, api_key: ApiKey) -> None:
        """Record key usage."""
        api_key.last_used_at = datetime.now(timezone.utc)
        self.session.flush()
