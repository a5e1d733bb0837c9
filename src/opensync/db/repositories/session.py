"""
Session repository.
"""

import uuid
from typing import List, Optional

from sqlalchemy.orm import Session as DBSession
from sqlalchemy.orm import selectinload

from opensync.db.repositories.base import BaseRepository
from opensync.models.db import Message, Session


class SessionRepository(BaseRepository[Session]):
    """Repository for Session model. All lookups are scoped to an account."""

    def __init__(self, session: DBSession):
        super().__init__(Session, session)

    def get_for_account(
        self, id: uuid.UUID, account_id: uuid.UUID
    ) -> Optional[Session]:
        """
        Get a session owned by an account.

        Args:
            id: Session UUID
            account_id: Account UUID

        Returns:
            Session or None
        """
        return (
            self.session.query(Session)
            .filter(Session.id == id, Session.account_id == account_id)
            .first()
        )

    def get_by_external_id(
        self, account_id: uuid.UUID, external_id: str, for_update: bool = False
    ) -> Optional[Session]:
        """
        Get a session by its plugin-provided external id.

        Args:
            account_id: Account UUID
            external_id: External session id
            for_update: Take a row lock (PostgreSQL) for the rest of the transaction

        Returns:
            Session or None
        """
        query = self.session.query(Session).filter(
            Session.account_id == account_id,
            Session.external_id == external_id,
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get_with_messages(
        self, id: uuid.UUID, account_id: uuid.UUID
    ) -> Optional[Session]:
        """
        Get a session with messages and parts eagerly loaded.

        Args:
            id: Session UUID
            account_id: Account UUID

        Returns:
            Session with relations or None
        """
        return (
            self.session.query(Session)
            .options(selectinload(Session.messages).selectinload(Message.parts))
            .filter(Session.id == id, Session.account_id == account_id)
            .first()
        )

    def list_for_account(
        self,
        account_id: uuid.UUID,
        limit: Optional[int] = None,
        offset: int = 0,
        source: Optional[str] = None,
    ) -> List[Session]:
        """
        List sessions for an account, most recently updated first.

        Args:
            account_id: Account UUID
            limit: Maximum number of results
            offset: Number of results to skip
            source: Optional CLI source filter

        Returns:
            List of sessions
        """
        query = self.session.query(Session).filter(Session.account_id == account_id)
        if source:
            query = query.filter(Session.source == source)
        query = query.order_by(Session.updated_at.desc(), Session.started_at.desc())
        query = query.offset(offset)
        if limit:
            query = query.limit(limit)
        return query.all()

    def list_eval_ready(self, account_id: uuid.UUID) -> List[Session]:
        """List sessions flagged eval-ready, with messages loaded."""
        return (
            self.session.query(Session)
            .options(selectinload(Session.messages).selectinload(Message.parts))
            .filter(Session.account_id == account_id, Session.eval_ready.is_(True))
            .order_by(Session.started_at.asc())
            .all()
        )

    def list_external_ids(self, account_id: uuid.UUID) -> List[str]:
        """All external session ids for an account (used by plugins to resume sync)."""
        rows = (
            self.session.query(Session.external_id)
            .filter(Session.account_id == account_id)
            .order_by(Session.started_at.asc())
            .all()
        )
        return [row[0] for row in rows]

    def get_many(
        self, ids: List[uuid.UUID], account_id: uuid.UUID
    ) -> dict[uuid.UUID, Session]:
        """Load sessions by id into a mapping (missing ids are skipped)."""
        if not ids:
            return {}
        rows = (
            self.session.query(Session)
            .filter(Session.id.in_(ids), Session.account_id == account_id)
            .all()
        )
        return {row.id: row for row in rows}

    def count_for_account(self, account_id: uuid.UUID) -> int:
        """Count sessions owned by an account."""
        return (
            self.session.query(Session)
            .filter(Session.account_id == account_id)
            .count()
        )
