"""
API access log repository.
"""

import uuid
from typing import List

from sqlalchemy.orm import Session

from opensync.db.repositories.base import BaseRepository
from opensync.models.db import ApiLog


class ApiLogRepository(BaseRepository[ApiLog]):
    """Repository for ApiLog model."""

    def __init__(self, session: Session):
        super().__init__(ApiLog, session)

    def record(
        self,
        account_id: uuid.UUID,
        endpoint: str,
        method: str,
        status_code: int,
        response_time_ms: int,
    ) -> ApiLog:
        """Append one access log row."""
        return self.create(
            account_id=account_id,
            endpoint=endpoint,
            method=method,
            status_code=status_code,
            response_time_ms=response_time_ms,
        )

    def recent_for_account(self, account_id: uuid.UUID, limit: int = 50) -> List[ApiLog]:
        return (
            self.session.query(ApiLog)
            .filter(ApiLog.account_id == account_id)
            .order_by(ApiLog.created_at.desc(), ApiLog.id.desc())
            .limit(limit)
            .all()
        )

    def delete_for_account(self, account_id: uuid.UUID) -> int:
        """Delete every log row of an account, returning how many were removed."""
        return (
            self.session.query(ApiLog)
            .filter(ApiLog.account_id == account_id)
            .delete(synchronize_session=False)
        )
