"""
Statistics API routes.

Usage stats are read from pre-aggregated rollups, never from raw messages.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from opensync.analytics.aggregator import AnalyticsAggregator
from opensync.api.auth import AuthContext, get_auth_context
from opensync.api.schemas import envelope
from opensync.db.connection import get_db

router = APIRouter(prefix="/api/stats", tags=["stats"])


@router.get("")
def get_stats(
    range: Optional[str] = Query(
        None, description="24h, 7d, 30d, 90d, 365d, all or YYYY-MM-DD..YYYY-MM-DD"
    ),
    model: Optional[str] = Query(None, description="Only this model"),
    project: Optional[str] = Query(None, description="Only this project path"),
    source: Optional[str] = Query(None, description="Only this plugin source"),
    provider: Optional[str] = Query(None, description="Only this model provider"),
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
) -> dict:
    """Usage totals and averages with per-model, project, source, provider and day breakdowns."""
    stats = AnalyticsAggregator(session).query_stats(
        auth.account_id,
        range_spec=range,
        model=model,
        project=project,
        source=source,
        provider=provider,
    )
    return envelope(stats)
