"""
Plain-text views of stored messages.

The same text feeds the full-text index, the embedding queue, search
snippets and exports, so a message reads the same everywhere.
"""

import json
from typing import Iterable, Optional

from opensync.models.db import Message, Part


def part_text(part: Part) -> str:
    """Readable text of one part; structured payloads fall back to JSON."""
    if part.content:
        return part.content
    if part.payload:
        return json.dumps(part.payload, sort_keys=True, default=str)
    return ""


def message_search_text(message: Message) -> str:
    """
    Text content of a message plus every part not already contained in it.

    Args:
        message: Message with parts loaded

    Returns:
        Newline-joined text (may be empty)
    """
    base = message.text_content or ""
    pieces = [base] if base else []
    for part in message.parts:
        text = part_text(part)
        if text and text not in base:
            pieces.append(text)
    return "\n".join(pieces)


def message_display_text(message: Message) -> str:
    """Human-facing body: the text content, else the text parts, else all parts."""
    if message.text_content:
        return message.text_content
    text_parts = [p.content for p in message.parts if p.type == "text" and p.content]
    if text_parts:
        return "\n".join(text_parts)
    return message_search_text(message)


def make_snippet(text: Optional[str], terms: Iterable[str], width: int) -> str:
    """
    Window of ``width`` characters around the first matched term.

    Falls back to the start of the text when no term occurs in it.
    """
    if not text:
        return ""
    collapsed = " ".join(text.split())
    if len(collapsed) <= width:
        return collapsed

    lowered = collapsed.lower()
    positions = [lowered.find(term) for term in terms]
    positions = [p for p in positions if p >= 0]
    if not positions:
        return collapsed[:width].rstrip() + "..."

    start = max(min(positions) - width // 4, 0)
    end = min(start + width, len(collapsed))
    start = max(end - width, 0)
    snippet = collapsed[start:end].strip()
    if start > 0:
        snippet = "..." + snippet
    if end < len(collapsed):
        snippet = snippet + "..."
    return snippet
