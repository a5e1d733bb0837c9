"""
Incremental usage analytics.

Usage is pre-aggregated into buckets keyed by (account, day, model,
project, source, provider) as part of the same transaction that changes a
session, so stats queries only sum a handful of rows and never lag the
session store.

Every change applied to a bucket on behalf of a session is mirrored into
that session's ``RollupContribution`` row for the same bucket. Deleting a
session subtracts exactly those contributions, which keeps the invariant

    sum(rollup counters) == sum(live session counters)

without ever rescanning messages.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import and_, func, or_, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from opensync.config import settings
from opensync.exceptions import ValidationError
from opensync.models.db import (
    AnalyticsRollup,
    Message,
    RollupContribution,
    Session as SessionModel,
)

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"
COUNTER_FIELDS = (
    "message_count",
    "session_count",
    "prompt_tokens",
    "completion_tokens",
    "total_tokens",
    "cost",
    "duration_ms",
)
DIMENSIONS = ("day", "model", "project", "source", "provider")
RELATIVE_RANGES = {"24h": 1, "7d": 7, "30d": 30, "90d": 90, "365d": 365}
_DATE_RANGE = re.compile(r"^(\d{4}-\d{2}-\d{2})\.\.(\d{4}-\d{2}-\d{2})$")


@dataclass
class UsageDelta:
    """Signed change to the counters of one bucket."""

    message_count: int = 0
    session_count: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    duration_ms: int = 0

    def is_zero(self) -> bool:
        return not any(getattr(self, name) for name in COUNTER_FIELDS)

    def as_dict(self) -> dict:
        return {name: getattr(self, name) for name in COUNTER_FIELDS}


@dataclass(frozen=True)
class Bucket:
    day: date
    model: str
    project: str
    source: str
    provider: str

    def as_keys(self) -> dict:
        return {name: getattr(self, name) for name in DIMENSIONS}


def compute_cost(
    model: Optional[str], prompt_tokens: int, completion_tokens: int
) -> float:
    """
    Cost in USD from ``settings.model_pricing`` (USD per 1M tokens).

    Model names are matched exactly first, then by longest known prefix
    (``claude-sonnet-4-20250514`` prices as ``claude-sonnet-4``). Unknown
    models cost 0.
    """
    if not model:
        return 0.0
    pricing = settings.model_pricing.get(model)
    if pricing is None:
        candidates = [name for name in settings.model_pricing if model.startswith(name)]
        if not candidates:
            return 0.0
        pricing = settings.model_pricing[max(candidates, key=len)]
    return (
        prompt_tokens * pricing.get("input", 0.0)
        + completion_tokens * pricing.get("output", 0.0)
    ) / 1_000_000


def _as_date(value: datetime) -> date:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.date()


def parse_range(
    range_spec: Optional[str], today: Optional[date] = None
) -> tuple[Optional[date], Optional[date]]:
    """
    Resolve a stats range to inclusive (start, end) days.

    Accepts ``24h``, ``7d``, ``30d``, ``90d``, ``365d``, ``all`` and
    ``YYYY-MM-DD..YYYY-MM-DD``. Buckets are daily, so ``24h`` covers
    today and yesterday.

    Raises:
        ValidationError: Unrecognized or inverted range
    """
    today = today or datetime.now(timezone.utc).date()
    spec = (range_spec or "all").strip().lower()
    if spec == "all":
        return None, None
    if spec in RELATIVE_RANGES:
        days = RELATIVE_RANGES[spec]
        if spec == "24h":
            return today - timedelta(days=1), today
        return today - timedelta(days=days - 1), today

    match = _DATE_RANGE.match(spec)
    if not match:
        raise ValidationError(
            f"Invalid range '{range_spec}', expected one of "
            f"{', '.join([*RELATIVE_RANGES, 'all'])} or YYYY-MM-DD..YYYY-MM-DD"
        )
    try:
        start = date.fromisoformat(match.group(1))
        end = date.fromisoformat(match.group(2))
    except ValueError as e:
        raise ValidationError(f"Invalid date in range '{range_spec}': {e}") from e
    if start > end:
        raise ValidationError(f"Range start {start} is after end {end}")
    return start, end


class AnalyticsAggregator:
    """Maintains and queries analytics rollups."""

    def __init__(self, session: Session):
        self.session = session

    # -- bucket resolution ----------------------------------------------------

    @staticmethod
    def session_bucket(session: SessionModel) -> Bucket:
        """Bucket for session-level counters: start day and session dimensions."""
        return Bucket(
            day=_as_date(session.started_at),
            model=session.model or UNKNOWN,
            project=session.project_path or UNKNOWN,
            source=session.source or UNKNOWN,
            provider=session.provider or UNKNOWN,
        )

    @staticmethod
    def message_bucket(session: SessionModel, message: Message) -> Bucket:
        """Bucket for a message: its day and model (or the session's), session dimensions."""
        return Bucket(
            day=_as_date(message.timestamp),
            model=message.model or session.model or UNKNOWN,
            project=session.project_path or UNKNOWN,
            source=session.source or UNKNOWN,
            provider=session.provider or UNKNOWN,
        )

    # -- writes ---------------------------------------------------------------

    def _upsert(self, model_cls, keys: dict, delta: UsageDelta) -> None:
        """Atomically add ``delta`` to the row identified by ``keys``."""
        values = {**keys, **delta.as_dict()}
        dialect = self.session.get_bind().dialect.name
        if dialect in ("postgresql", "sqlite"):
            insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = insert_fn(model_cls).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=list(keys),
                set_={
                    name: getattr(model_cls, name) + getattr(stmt.excluded, name)
                    for name in COUNTER_FIELDS
                },
            )
            self.session.execute(stmt)
            return

        # Generic fallback: update, insert in a savepoint if missing, and
        # retry the update when a concurrent writer inserted first.
        condition = and_(*(getattr(model_cls, k) == v for k, v in keys.items()))
        increments = {
            name: getattr(model_cls, name) + getattr(delta, name) for name in COUNTER_FIELDS
        }
        result = self.session.execute(update(model_cls).where(condition).values(**increments))
        if result.rowcount:
            return
        try:
            with self.session.begin_nested():
                self.session.add(model_cls(**values))
        except IntegrityError:
            self.session.execute(update(model_cls).where(condition).values(**increments))

    def _apply(
        self, account_id: uuid.UUID, session_id: uuid.UUID, bucket: Bucket, delta: UsageDelta
    ) -> None:
        if delta.is_zero():
            return
        self._upsert(AnalyticsRollup, {"account_id": account_id, **bucket.as_keys()}, delta)
        self._upsert(RollupContribution, {"session_id": session_id, **bucket.as_keys()}, delta)

    def on_session_created(self, session: SessionModel) -> None:
        """Count a new session in its start-day bucket."""
        self._apply(
            session.account_id,
            session.id,
            self.session_bucket(session),
            UsageDelta(session_count=1),
        )

    def on_message_ingested(self, session: SessionModel, message: Message) -> UsageDelta:
        """
        Add one message's usage to its bucket.

        Once a session has reported its own totals, those are authoritative
        and its messages only add to ``message_count``.

        Args:
            session: Owning session
            message: The newly stored message

        Returns:
            The delta that was applied (the caller applies it to the session)
        """
        if session.usage_reported:
            delta = UsageDelta(message_count=1)
        else:
            delta = UsageDelta(
                message_count=1,
                prompt_tokens=message.prompt_tokens,
                completion_tokens=message.completion_tokens,
                total_tokens=message.prompt_tokens + message.completion_tokens,
                cost=message.cost,
            )
        self._apply(session.account_id, session.id, self.message_bucket(session, message), delta)
        return delta

    def on_session_adjusted(self, session: SessionModel, delta: UsageDelta) -> None:
        """Apply a signed session-level adjustment (reported totals, duration)."""
        self._apply(session.account_id, session.id, self.session_bucket(session), delta)

    def on_session_deleted(self, session: SessionModel) -> UsageDelta:
        """
        Subtract every contribution of a session from the rollups.

        Must run in the same transaction that deletes the session.

        Returns:
            Total amount subtracted
        """
        columns = [getattr(RollupContribution, name) for name in COUNTER_FIELDS]
        rows = (
            self.session.query(
                *(getattr(RollupContribution, name) for name in DIMENSIONS),
                *columns,
            )
            .filter(RollupContribution.session_id == session.id)
            .all()
        )

        removed = UsageDelta()
        for row in rows:
            delta = UsageDelta(**{name: getattr(row, name) for name in COUNTER_FIELDS})
            condition = and_(
                AnalyticsRollup.account_id == session.account_id,
                *(getattr(AnalyticsRollup, name) == getattr(row, name) for name in DIMENSIONS),
            )
            self.session.execute(
                update(AnalyticsRollup)
                .where(condition)
                .values(
                    **{
                        name: getattr(AnalyticsRollup, name) - getattr(delta, name)
                        for name in COUNTER_FIELDS
                    }
                )
            )
            for name in COUNTER_FIELDS:
                setattr(removed, name, getattr(removed, name) + getattr(delta, name))

        self.session.query(RollupContribution).filter(
            RollupContribution.session_id == session.id
        ).delete(synchronize_session=False)
        self._prune_empty(session.account_id)
        return removed

    def _prune_empty(self, account_id: uuid.UUID) -> int:
        """Drop buckets whose counters all went back to zero."""
        return (
            self.session.query(AnalyticsRollup)
            .filter(
                AnalyticsRollup.account_id == account_id,
                AnalyticsRollup.message_count == 0,
                AnalyticsRollup.session_count == 0,
                AnalyticsRollup.prompt_tokens == 0,
                AnalyticsRollup.completion_tokens == 0,
                AnalyticsRollup.total_tokens == 0,
                AnalyticsRollup.duration_ms == 0,
                func.abs(AnalyticsRollup.cost) < 1e-9,
            )
            .delete(synchronize_session=False)
        )

    def clear(self, account_id: Optional[uuid.UUID] = None) -> None:
        """Delete rollups and contributions (all accounts when None)."""
        rollups = self.session.query(AnalyticsRollup)
        contributions = self.session.query(RollupContribution)
        if account_id is not None:
            rollups = rollups.filter(AnalyticsRollup.account_id == account_id)
            session_ids = self.session.query(SessionModel.id).filter(
                SessionModel.account_id == account_id
            )
            contributions = contributions.filter(
                RollupContribution.session_id.in_(session_ids.scalar_subquery())
            )
        contributions.delete(synchronize_session=False)
        rollups.delete(synchronize_session=False)

    def rebuild(self, account_id: Optional[uuid.UUID] = None) -> int:
        """
        Recompute rollups from the session store.

        Replays session creation and every message, then applies the
        difference between stored session totals and the message sums as a
        session-level adjustment, which is what incremental ingest does.

        Returns:
            Number of sessions replayed
        """
        self.clear(account_id)
        query = self.session.query(SessionModel)
        if account_id is not None:
            query = query.filter(SessionModel.account_id == account_id)

        count = 0
        for session in query.all():
            self.on_session_created(session)
            summed = UsageDelta()
            for message in session.messages:
                applied = self.on_message_ingested(session, message)
                for name in COUNTER_FIELDS:
                    setattr(summed, name, getattr(summed, name) + getattr(applied, name))
            adjustment = UsageDelta(
                prompt_tokens=session.prompt_tokens - summed.prompt_tokens,
                completion_tokens=session.completion_tokens - summed.completion_tokens,
                total_tokens=session.total_tokens - summed.total_tokens,
                cost=session.cost - summed.cost,
                duration_ms=(session.duration_ms or 0) - summed.duration_ms,
            )
            self.on_session_adjusted(session, adjustment)
            count += 1

        self.session.flush()
        logger.info(f"Rebuilt analytics rollups from {count} sessions")
        return count

    # -- reads ----------------------------------------------------------------

    def query_stats(
        self,
        account_id: uuid.UUID,
        range_spec: Optional[str] = None,
        model: Optional[str] = None,
        project: Optional[str] = None,
        source: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> dict:
        """
        Sum rollup buckets for an account.

        Args:
            account_id: Account UUID
            range_spec: See ``parse_range`` (defaults to all time)
            model: Only this model
            project: Only this project path
            source: Only this plugin source
            provider: Only this model provider

        Returns:
            Dict with ``totals`` plus ``by_model``, ``by_project``,
            ``by_source``, ``by_provider`` and ``by_day`` breakdowns
        """
        start, end = parse_range(range_spec)
        filters = [AnalyticsRollup.account_id == account_id]
        if start is not None:
            filters.append(AnalyticsRollup.day >= start)
        if end is not None:
            filters.append(AnalyticsRollup.day <= end)
        for name, value in (
            ("model", model),
            ("project", project),
            ("source", source),
            ("provider", provider),
        ):
            if value:
                filters.append(getattr(AnalyticsRollup, name) == value)

        sums = [func.coalesce(func.sum(getattr(AnalyticsRollup, n)), 0).label(n) for n in COUNTER_FIELDS]

        def _row_to_dict(row) -> dict:
            data = {name: getattr(row, name) for name in COUNTER_FIELDS}
            for name in COUNTER_FIELDS:
                data[name] = float(data[name]) if name == "cost" else int(data[name])
            sessions = data["session_count"]
            data["avg_tokens_per_session"] = (
                round(data["total_tokens"] / sessions) if sessions else 0
            )
            data["avg_cost_per_session"] = round(data["cost"] / sessions, 6) if sessions else 0.0
            data["cost"] = round(data["cost"], 6)
            return data

        def _distinct(column) -> int:
            return (
                self.session.query(func.count(func.distinct(column)))
                .filter(
                    *filters,
                    column != UNKNOWN,
                    or_(AnalyticsRollup.session_count > 0, AnalyticsRollup.message_count > 0),
                )
                .scalar()
                or 0
            )

        totals = _row_to_dict(self.session.query(*sums).filter(*filters).one())
        totals["unique_models"] = _distinct(AnalyticsRollup.model)
        totals["unique_projects"] = _distinct(AnalyticsRollup.project)

        def _grouped(column) -> list:
            return (
                self.session.query(column, *sums)
                .filter(*filters)
                .group_by(column)
                .order_by(column)
                .all()
            )

        breakdowns = {}
        for name in ("model", "project", "source", "provider"):
            rows = _grouped(getattr(AnalyticsRollup, name))
            breakdowns[f"by_{name}"] = {row[0]: _row_to_dict(row) for row in rows}
        by_day = [
            {"day": row[0].isoformat(), **_row_to_dict(row)}
            for row in _grouped(AnalyticsRollup.day)
        ]

        return {
            "range": {
                "spec": range_spec or "all",
                "start": start.isoformat() if start else None,
                "end": end.isoformat() if end else None,
            },
            "filters": {
                "model": model,
                "project": project,
                "source": source,
                "provider": provider,
            },
            "totals": totals,
            **breakdowns,
            "by_day": by_day,
        }
