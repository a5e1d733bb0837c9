"""
Session and dataset exporters.

Pure, deterministic transforms of stored data:

- ``export_session``: one session as OpenAI-style chat messages (``json``),
  Markdown, or one ``{role, content}`` record per line (``jsonl``).
- ``export_eval_sessions``: eval-ready sessions as datasets for evaluation
  tooling (chat ``jsonl``, OpenAI evals ``openai``, DeepEval ``deepeval``).
"""

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from opensync.exceptions import ValidationError
from opensync.formatting.text import message_display_text
from opensync.models.db import Message, Session

SESSION_FORMATS = ("json", "markdown", "jsonl")
EVAL_FORMATS = ("jsonl", "openai", "deepeval")

_UNSAFE_FILENAME = re.compile(r"[^a-zA-Z0-9]")
_HOME_PATHS = [
    (re.compile(r"/Users/[^/\s]+"), "/Users/user"),
    (re.compile(r"/home/[^/\s]+"), "/home/user"),
    (re.compile(r"C:\\Users\\[^\\\s]+"), r"C:\\Users\\user"),
]


@dataclass
class ExportResult:
    """Rendered export."""

    content: str
    filename: str
    media_type: str
    data: Any = None  # Structured form, when the format has one
    stats: Optional[dict] = None


def export_filename(title: Optional[str], extension: str) -> str:
    """Title with every non-alphanumeric character replaced by ``-``."""
    stem = _UNSAFE_FILENAME.sub("-", title) if title else "session"
    return f"{stem or 'session'}.{extension}"


def anonymize_paths(text: str) -> str:
    """Replace user names in home-directory paths."""
    for pattern, replacement in _HOME_PATHS:
        text = pattern.sub(replacement, text)
    return text


def _chat_messages(messages: Iterable[Message]) -> list[dict[str, str]]:
    return [
        {"role": message.role, "content": message_display_text(message)}
        for message in messages
    ]


def _render_markdown(session: Session, messages: list[Message]) -> str:
    lines = [
        f"# {session.title or 'Untitled'}",
        "",
        f"- **Project:** {session.project_path or 'N/A'}",
        f"- **Model:** {session.model or 'N/A'}",
        f"- **Tokens:** {session.total_tokens}",
        f"- **Cost:** ${session.cost:.4f}",
        "",
        "---",
        "",
    ]
    for message in messages:
        lines.append(f"## {message.role.capitalize()}")
        lines.append("")
        content = message_display_text(message)
        if content:
            lines.append(content)
            lines.append("")
    return "\n".join(lines)


def export_session(session: Session, messages: list[Message], format: str = "json") -> ExportResult:
    """
    Render a whole session.

    Args:
        session: The session
        messages: Its messages in ordinal order, parts loaded
        format: json, markdown or jsonl

    Returns:
        ExportResult

    Raises:
        ValidationError: Unknown format
    """
    if format == "markdown":
        return ExportResult(
            content=_render_markdown(session, messages),
            filename=export_filename(session.title, "md"),
            media_type="text/markdown",
        )
    if format == "jsonl":
        chat = _chat_messages(messages)
        return ExportResult(
            content="\n".join(json.dumps(record, ensure_ascii=False) for record in chat),
            filename=export_filename(session.title, "jsonl"),
            media_type="application/x-ndjson",
        )
    if format == "json":
        data = {
            "session": {
                "id": str(session.id),
                "external_id": session.external_id,
                "title": session.title,
                "project_path": session.project_path,
                "model": session.model,
                "source": session.source,
                "total_tokens": session.total_tokens,
                "cost": session.cost,
            },
            "messages": _chat_messages(messages),
        }
        return ExportResult(
            content=json.dumps(data, indent=2, ensure_ascii=False),
            filename=export_filename(session.title, "json"),
            media_type="application/json",
            data=data,
        )
    raise ValidationError(
        f"Invalid export format '{format}', expected one of {', '.join(SESSION_FORMATS)}"
    )


def export_eval_sessions(
    sessions: list[Session],
    format: str = "jsonl",
    include_system_prompts: bool = False,
    include_context: bool = False,
    anonymize: bool = False,
    now: Optional[datetime] = None,
) -> ExportResult:
    """
    Export eval-ready sessions as a dataset.

    Formats:
        jsonl: one ``{"messages": [...], "metadata": {...}}`` line per session
        openai: one OpenAI evals case per user turn answered by the assistant
            (``input`` = conversation so far, ``ideal`` = the answer)
        deepeval: JSON document of DeepEval ``test_cases``

    Args:
        sessions: Sessions with messages loaded
        format: jsonl, openai or deepeval
        include_system_prompts: Keep system messages in conversation context
        include_context: DeepEval only, attach prior turns as ``context``
        anonymize: Replace user names in home-directory paths
        now: Export timestamp (used in the filename)

    Returns:
        ExportResult with ``stats`` = {sessions, test_cases}

    Raises:
        ValidationError: Unknown format
    """
    if format not in EVAL_FORMATS:
        raise ValidationError(
            f"Invalid eval export format '{format}', expected one of {', '.join(EVAL_FORMATS)}"
        )
    day = (now or datetime.now(timezone.utc)).date().isoformat()
    clean = anonymize_paths if anonymize else (lambda text: text)

    def _metadata(session: Session) -> dict:
        return {
            "session_id": session.external_id,
            "model": session.model or "unknown",
            "source": session.source or "opencode",
        }

    test_cases = 0
    if format == "jsonl":
        lines = []
        for session in sessions:
            chat = [
                {"role": m["role"], "content": clean(m["content"])}
                for m in _chat_messages(session.messages)
                if include_system_prompts or m["role"] != "system"
            ]
            lines.append(json.dumps({"messages": chat, "metadata": _metadata(session)}))
            test_cases += 1
        return ExportResult(
            content="\n".join(lines),
            filename=f"eval-export-jsonl-{day}.jsonl",
            media_type="application/x-ndjson",
            stats={"sessions": len(sessions), "test_cases": test_cases},
        )

    if format == "openai":
        lines = []
        for session in sessions:
            messages = list(session.messages)
            context: list[dict[str, str]] = []
            for i, message in enumerate(messages):
                if message.role == "system" and not include_system_prompts:
                    continue
                context.append(
                    {"role": message.role, "content": clean(message_display_text(message))}
                )
                if message.role == "user" and i + 1 < len(messages):
                    response = messages[i + 1]
                    if response.role == "assistant":
                        lines.append(
                            json.dumps(
                                {
                                    "input": list(context),
                                    "ideal": clean(message_display_text(response)),
                                    "metadata": _metadata(session),
                                }
                            )
                        )
                        test_cases += 1
        return ExportResult(
            content="\n".join(lines),
            filename=f"eval-export-openai-{day}.jsonl",
            media_type="application/x-ndjson",
            stats={"sessions": len(sessions), "test_cases": test_cases},
        )

    cases = []
    for session in sessions:
        messages = list(session.messages)
        for i, message in enumerate(messages):
            if message.role != "user" or i + 1 >= len(messages):
                continue
            response = messages[i + 1]
            if response.role != "assistant":
                continue
            answer = clean(message_display_text(response))
            cases.append(
                {
                    "input": clean(message_display_text(message)),
                    "actual_output": answer,
                    "expected_output": answer,
                    "context": (
                        [clean(message_display_text(m)) for m in messages[:i]]
                        if include_context
                        else []
                    ),
                    "metadata": {
                        **_metadata(session),
                        "tokens": message.prompt_tokens + response.completion_tokens,
                    },
                }
            )
    test_cases = len(cases)
    return ExportResult(
        content=json.dumps({"test_cases": cases}, indent=2),
        filename=f"eval-export-deepeval-{day}.json",
        media_type="application/json",
        data={"test_cases": cases},
        stats={"sessions": len(sessions), "test_cases": test_cases},
    )
