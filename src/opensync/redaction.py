"""
Secret redaction for ingested content.

Every part, message body and session title passes through the Redactor
before it is persisted, so no secret-shaped value reaches the session store,
the full-text index, or the embedding provider. Redaction never fails an
ingest: if scanning raises, the content is kept as-is and flagged for audit.
"""

import logging
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from opensync.config import settings

logger = logging.getLogger(__name__)


@dataclass
class RawPart:
    """A message part as received from a plugin, before redaction."""

    type: str
    content: Optional[str] = None
    payload: Optional[dict[str, Any]] = None


@dataclass
class RedactedPart:
    """A message part safe to persist."""

    type: str
    content: Optional[str] = None
    payload: Optional[dict[str, Any]] = None
    redaction_count: int = 0
    needs_audit: bool = False


@dataclass
class RedactionRule:
    """
    One secret pattern.

    ``group`` selects the span replaced by the placeholder (0 = whole match),
    which keeps surrounding context such as ``API_KEY=`` readable.
    ``accept`` can veto a match (e.g. numeric values of ``max_tokens=``).
    """

    name: str
    pattern: re.Pattern
    group: int = 0
    accept: Optional[Callable[[str], bool]] = field(default=None, repr=False)


def shannon_entropy(value: str) -> float:
    """Bits of entropy per character."""
    if not value:
        return 0.0
    counts = Counter(value)
    length = len(value)
    return -sum((n / length) * math.log2(n / length) for n in counts.values())


_HEX_LIKE = re.compile(r"^[0-9a-fA-F\-]+$")
_NON_SECRET_VALUES = {"true", "false", "null", "none", "undefined", "changeme"}


def _is_secret_value(value: str) -> bool:
    """Filter for assignment values: skip numbers, booleans and placeholders."""
    stripped = value.strip("'\"")
    if not stripped or stripped.lower() in _NON_SECRET_VALUES:
        return False
    if stripped.replace(".", "").replace(",", "").isdigit():
        return False
    if stripped.startswith("$") or stripped.startswith("${"):
        return False  # reference to another variable, not a value
    return "REDACTED" not in stripped


def _has_letters_and_digits(value: str) -> bool:
    return any(c.isdigit() for c in value) and any(c.isalpha() for c in value)


def _high_entropy(value: str) -> bool:
    if len(value) < settings.redaction_min_entropy_length:
        return False
    # Commit SHAs, checksums and UUIDs are not credentials
    if _HEX_LIKE.match(value):
        return False
    if not (
        any(c.isupper() for c in value)
        and any(c.islower() for c in value)
        and any(c.isdigit() for c in value)
    ):
        return False
    return shannon_entropy(value) >= settings.redaction_entropy_threshold


_SENSITIVE_NAME = r"[A-Z0-9_]*(?:API_?KEY|SECRET|TOKEN|PASSWORD|PASSWD|CREDENTIAL|PRIVATE_KEY|ACCESS_KEY)[A-Z0-9_]*"

DEFAULT_RULES: list[RedactionRule] = [
    RedactionRule(
        "private_key_block",
        re.compile(
            r"-----BEGIN [A-Z ]*PRIVATE KEY-----[\s\S]*?-----END [A-Z ]*PRIVATE KEY-----"
        ),
    ),
    RedactionRule("anthropic_key", re.compile(r"sk-ant-[A-Za-z0-9_\-]{20,}")),
    RedactionRule("openai_key", re.compile(r"sk-(?:proj-)?[A-Za-z0-9_\-]{20,}")),
    RedactionRule("github_token", re.compile(r"gh[pousr]_[A-Za-z0-9]{30,}")),
    RedactionRule("github_pat", re.compile(r"github_pat_[A-Za-z0-9_]{22,}")),
    RedactionRule("aws_access_key", re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b")),
    RedactionRule("slack_token", re.compile(r"xox[abprs]-[A-Za-z0-9\-]{10,}")),
    RedactionRule("google_api_key", re.compile(r"AIza[0-9A-Za-z_\-]{35}")),
    RedactionRule("gitlab_token", re.compile(r"glpat-[A-Za-z0-9_\-]{20,}")),
    RedactionRule("opensync_key", re.compile(r"osk_[A-Za-z0-9_\-]{20,}")),
    RedactionRule(
        "jwt",
        re.compile(r"eyJ[A-Za-z0-9_\-]{10,}\.eyJ[A-Za-z0-9_\-]{10,}\.[A-Za-z0-9_\-]{10,}"),
    ),
    RedactionRule(
        "bearer_token",
        re.compile(r"(?i)\bbearer\s+([A-Za-z0-9_\-.=+/]{16,})"),
        group=1,
        accept=_is_secret_value,
    ),
    RedactionRule(
        "sensitive_assignment",
        re.compile(
            rf"(?i)\b({_SENSITIVE_NAME})\s*[:=]\s*(['\"]?)([^\s'\",;]{{6,}})\2"
        ),
        group=3,
        accept=_is_secret_value,
    ),
    RedactionRule(
        "keyword_credential",
        re.compile(
            r"(?i)\b(?:token|api[ _-]?key|secret|password|passwd|credential)s?\s+"
            r"(?:is\s+|of\s+)?([A-Za-z0-9_\-./+=]{8,})"
        ),
        group=1,
        accept=lambda v: _has_letters_and_digits(v) and _is_secret_value(v),
    ),
    RedactionRule(
        "high_entropy",
        re.compile(r"(?<![A-Za-z0-9+_\-])[A-Za-z0-9+_\-]{32,}={0,2}"),
        accept=_high_entropy,
    ),
]


def build_rules(extra_patterns: Optional[list[str]] = None) -> list[RedactionRule]:
    """Default rule set plus configured extra patterns (whole match redacted)."""
    rules = list(DEFAULT_RULES)
    for index, pattern in enumerate(extra_patterns or []):
        rules.append(RedactionRule(f"custom_{index}", re.compile(pattern)))
    return rules


class Redactor:
    """
    Pure transform that strips secret-shaped substrings from ingested content.

    Example:
        >>> redactor = Redactor()
        >>> redactor.redact_text("export OPENAI_API_KEY=sk-abc...")
        ('export OPENAI_API_KEY=[REDACTED]', 1)
    """

    def __init__(
        self,
        rules: Optional[list[RedactionRule]] = None,
        placeholder: Optional[str] = None,
    ):
        self.rules = rules if rules is not None else build_rules(
            settings.redaction_extra_patterns
        )
        self.placeholder = placeholder or settings.redaction_placeholder

    def redact_text(self, text: Optional[str]) -> tuple[Optional[str], int]:
        """
        Redact a single string.

        Returns:
            Tuple of (cleaned text, number of replacements)
        """
        if not text or not isinstance(text, str):
            return text, 0

        total = 0
        cleaned = text
        for rule in self.rules:
            cleaned, count = self._apply_rule(rule, cleaned)
            total += count
        return cleaned, total

    def _apply_rule(self, rule: RedactionRule, text: str) -> tuple[str, int]:
        count = 0

        def _replace(match: re.Match) -> str:
            nonlocal count
            value = match.group(rule.group)
            if value is None or value == self.placeholder:
                return match.group(0)
            if rule.accept is not None and not rule.accept(value):
                return match.group(0)
            count += 1
            if rule.group == 0:
                return self.placeholder
            start = match.start(rule.group) - match.start(0)
            end = match.end(rule.group) - match.start(0)
            whole = match.group(0)
            return whole[:start] + self.placeholder + whole[end:]

        return rule.pattern.sub(_replace, text), count

    def redact_value(self, value: Any) -> tuple[Any, int]:
        """
        Recursively redact strings inside JSON-like structures.

        Keys are redacted as well as values. Non-string scalars are kept.

        Returns:
            Tuple of (new structure, number of replacements)
        """
        if isinstance(value, str):
            return self.redact_text(value)
        if isinstance(value, dict):
            total = 0
            cleaned: dict[Any, Any] = {}
            for key, item in value.items():
                clean_key, key_count = (
                    self.redact_text(key) if isinstance(key, str) else (key, 0)
                )
                clean_item, item_count = self.redact_value(item)
                cleaned[clean_key] = clean_item
                total += key_count + item_count
            return cleaned, total
        if isinstance(value, list):
            total = 0
            items = []
            for item in value:
                clean_item, item_count = self.redact_value(item)
                items.append(clean_item)
                total += item_count
            return items, total
        return value, 0

    def redact(self, part: RawPart) -> tuple[RedactedPart, int]:
        """
        Redact one message part.

        Never raises: on scanner failure the part is returned unredacted with
        ``needs_audit=True``.

        Args:
            part: Part as received from the plugin

        Returns:
            Tuple of (cleaned part, redaction count)
        """
        try:
            content, content_count = self.redact_text(part.content)
            payload, payload_count = self.redact_value(part.payload)
        except Exception as e:
            logger.warning(
                f"Redaction scanner failed for {part.type} part, "
                f"storing unredacted and flagging for audit: {e}",
                exc_info=True,
            )
            return (
                RedactedPart(
                    type=part.type,
                    content=part.content,
                    payload=part.payload,
                    redaction_count=0,
                    needs_audit=True,
                ),
                0,
            )

        count = content_count + payload_count
        if count:
            logger.debug(f"Redacted {count} secret(s) from {part.type} part")
        return (
            RedactedPart(
                type=part.type,
                content=content,
                payload=payload,
                redaction_count=count,
            ),
            count,
        )

    def redact_safe(self, text: Optional[str]) -> tuple[Optional[str], int, bool]:
        """
        Redact free text (titles, message bodies) without ever raising.

        Returns:
            Tuple of (text, count, needs_audit)
        """
        try:
            cleaned, count = self.redact_text(text)
            return cleaned, count, False
        except Exception as e:
            logger.warning(f"Redaction scanner failed, flagging for audit: {e}")
            return text, 0, True
