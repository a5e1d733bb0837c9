"""
RAG context formatting.

Turns search results into content ready to paste into an LLM prompt:
either one bounded text block, or a list of chat-style message objects with
provenance metadata.
"""

from typing import Optional

from opensync.config import settings
from opensync.exceptions import ValidationError
from opensync.search.engine import SearchResponse, group_by_session

CONTEXT_FORMATS = ("text", "messages")
TRUNCATION_MARKER = "\n[... context truncated ...]\n"


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    keep = max(max_chars - len(TRUNCATION_MARKER), 0)
    return text[:keep].rstrip() + TRUNCATION_MARKER


def format_context(
    response: SearchResponse,
    format: str = "text",
    limit: Optional[int] = None,
    max_chars: Optional[int] = None,
) -> dict:
    """
    Render search results as RAG context.

    Hits are grouped by session (best session first) and the top ``limit``
    sessions are kept.

    Args:
        response: Search results
        format: ``text`` (one string) or ``messages`` (structured list)
        limit: Maximum number of sessions
        max_chars: Bound on the text form (``settings.context_max_chars``)

    Returns:
        Dict with ``text`` or ``messages``, plus ``session_count`` and
        ``degraded``

    Raises:
        ValidationError: Unknown format
    """
    if format not in CONTEXT_FORMATS:
        raise ValidationError(
            f"Invalid format '{format}', expected one of {', '.join(CONTEXT_FORMATS)}"
        )
    limit = limit or settings.context_default_limit
    groups = group_by_session(response.hits)[:limit]

    if format == "messages":
        messages = [
            {
                "role": hit.role,
                "content": hit.content,
                "metadata": {
                    "session_id": str(hit.session_id),
                    "session_title": hit.session_title,
                    "message_id": str(hit.message_id),
                    "score": hit.score,
                },
            }
            for group in groups
            for hit in sorted(group.hits, key=lambda h: h.ordinal)
        ]
        return {
            "messages": messages,
            "session_count": len(groups),
            "degraded": response.degraded,
        }

    blocks = [f'Relevant coding sessions for: "{response.query}"\n']
    for group in groups:
        lines = [
            f"--- Session: {group.title or 'Untitled'} ---",
            f"Project: {group.project_path or 'N/A'}",
            f"Model: {group.model or 'N/A'}",
            "",
        ]
        # Matched messages in conversation order
        for hit in sorted(group.hits, key=lambda h: h.ordinal):
            lines.append(f"[{hit.role.upper()}]")
            lines.append(hit.content)
            lines.append("")
        blocks.append("\n".join(lines))

    text = "\n".join(blocks)
    return {
        "text": _truncate(text, max_chars or settings.context_max_chars),
        "session_count": len(groups),
        "degraded": response.degraded,
    }
