"""
Full-text index over message content.

Postings are written synchronously inside the ingest transaction, so a
message is searchable the moment its ingest call returns. Scoring is plain
term-frequency: the sum, over the query terms a message contains, of how
often each term occurs in it. Ties go to the most recent message.
"""

import logging
import re
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from opensync.models.db import IndexTerm, Message, Session as SessionModel

logger = logging.getLogger(__name__)

MIN_TERM_LENGTH = 2
MAX_TERM_LENGTH = 64

_WORD = re.compile(r"\w+", re.UNICODE)

STOP_WORDS = frozenset(
    """
    a about above after again against all am an and any are as at be because
    been before being below between both but by can could did do does doing
    down during each few for from further had has have having he her here hers
    herself him himself his how i if in into is it its itself just me more most
    my myself no nor not now of off on once only or other our ours ourselves
    out over own same she should so some such than that the their theirs them
    themselves then there these they this those through to too under until up
    very was we were what when where which while who whom why will with would
    you your yours yourself yourselves
    """.split()
)


def tokenize(text: Optional[str]) -> list[str]:
    """
    Case-insensitive word tokenization with stop-word filtering.

    Args:
        text: Raw text (may be None)

    Returns:
        Terms in order of appearance (duplicates kept)
    """
    if not text:
        return []
    terms = []
    for match in _WORD.finditer(text.lower()):
        term = match.group(0)
        if len(term) < MIN_TERM_LENGTH or term in STOP_WORDS:
            continue
        terms.append(term[:MAX_TERM_LENGTH])
    return terms


def query_terms(query: str) -> list[str]:
    """Distinct terms of a search query, order preserved."""
    seen: dict[str, None] = {}
    for term in tokenize(query):
        seen.setdefault(term, None)
    return list(seen)


@dataclass
class FullTextHit:
    """One ranked full-text match."""

    session_id: uuid.UUID
    message_id: uuid.UUID
    score: float
    timestamp: datetime


class FullTextIndexer:
    """Maintains and queries the ``index_terms`` postings table."""

    def __init__(self, session: Session):
        self.session = session

    def index(
        self,
        account_id: uuid.UUID,
        session_id: uuid.UUID,
        message_id: uuid.UUID,
        text: Optional[str],
        timestamp: datetime,
    ) -> int:
        """
        Add postings for one message.

        Args:
            account_id: Owner account (postings are partitioned per account)
            session_id: Session UUID
            message_id: Message UUID
            text: Redacted message text
            timestamp: Message timestamp used for recency tie-breaks

        Returns:
            Number of distinct terms indexed
        """
        frequencies = Counter(tokenize(text))
        if not frequencies:
            return 0

        self.session.add_all(
            IndexTerm(
                account_id=account_id,
                session_id=session_id,
                message_id=message_id,
                term=term,
                term_frequency=count,
                message_timestamp=timestamp,
            )
            for term, count in frequencies.items()
        )
        self.session.flush()
        return len(frequencies)

    def query(
        self, account_id: uuid.UUID, terms: Iterable[str], limit: int
    ) -> list[FullTextHit]:
        """
        Rank messages of an account by term frequency.

        Args:
            account_id: Account to search
            terms: Already-tokenized query terms
            limit: Maximum number of hits

        Returns:
            Hits sorted by score desc, then most recent first
        """
        term_list = list(dict.fromkeys(terms))
        if not term_list or limit <= 0:
            return []

        score = func.sum(IndexTerm.term_frequency).label("score")
        latest = func.max(IndexTerm.message_timestamp).label("ts")
        rows = (
            self.session.query(IndexTerm.session_id, IndexTerm.message_id, score, latest)
            .filter(
                IndexTerm.account_id == account_id,
                IndexTerm.term.in_(term_list),
            )
            .group_by(IndexTerm.session_id, IndexTerm.message_id)
            .order_by(score.desc(), latest.desc())
            .limit(limit)
            .all()
        )
        return [
            FullTextHit(
                session_id=row.session_id,
                message_id=row.message_id,
                score=float(row.score),
                timestamp=row.ts,
            )
            for row in rows
        ]

    def remove_session(self, session_id: uuid.UUID) -> int:
        """Delete all postings of a session."""
        return (
            self.session.query(IndexTerm)
            .filter(IndexTerm.session_id == session_id)
            .delete(synchronize_session=False)
        )

    def rebuild(self, account_id: Optional[uuid.UUID] = None) -> int:
        """
        Re-derive postings from stored messages.

        Args:
            account_id: Limit to one account (all accounts when None)

        Returns:
            Number of messages re-indexed
        """
        from opensync.formatting.text import message_search_text

        delete_query = self.session.query(IndexTerm)
        if account_id is not None:
            delete_query = delete_query.filter(IndexTerm.account_id == account_id)
        delete_query.delete(synchronize_session=False)

        message_query = self.session.query(Message, SessionModel.account_id).join(
            SessionModel, Message.session_id == SessionModel.id
        )
        if account_id is not None:
            message_query = message_query.filter(SessionModel.account_id == account_id)

        count = 0
        for message, owner_id in message_query.all():
            self.index(
                owner_id,
                message.session_id,
                message.id,
                message_search_text(message),
                message.timestamp,
            )
            count += 1

        logger.info(f"Rebuilt full-text index for {count} messages")
        return count
