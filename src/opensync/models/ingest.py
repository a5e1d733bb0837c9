"""
Ingest payload models.

Pydantic models for what CLI plugins push to ``/sync/*``. Plugins send
camelCase JSON (``externalId``, ``textContent``, ``promptTokens``...);
snake_case is accepted as well. Some plugins name the session id
``sessionId`` instead of ``externalId``; both are accepted.
"""

from datetime import datetime
from typing import Any, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from opensync.models.db import MessageRole, PartType
from opensync.redaction import RawPart

_PART_TYPE_ALIASES = {
    "text": PartType.TEXT,
    "tool-call": PartType.TOOL_CALL,
    "tool_call": PartType.TOOL_CALL,
    "tool-invocation": PartType.TOOL_CALL,
    "tool_use": PartType.TOOL_CALL,
    "tool": PartType.TOOL_CALL,
    "tool-result": PartType.TOOL_RESULT,
    "tool_result": PartType.TOOL_RESULT,
    "reasoning": PartType.REASONING,
    "thinking": PartType.REASONING,
}


class _PluginModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class PartPayload(_PluginModel):
    """One content block of a message."""

    type: str = "text"
    content: Optional[Union[str, dict[str, Any], list[Any]]] = None

    def to_raw_part(self) -> RawPart:
        """
        Normalize to a RawPart.

        Unknown types become text. Structured content is kept as the payload
        and its ``text``/``content`` string (if any) becomes the content.
        """
        part_type = _PART_TYPE_ALIASES.get(self.type.strip().lower(), PartType.TEXT)
        content = self.content
        if content is None or isinstance(content, str):
            return RawPart(type=part_type.value, content=content)
        if isinstance(content, list):
            return RawPart(type=part_type.value, payload={"items": content})
        text = content.get("text")
        if not isinstance(text, str):
            text = content.get("content") if isinstance(content.get("content"), str) else None
        return RawPart(type=part_type.value, content=text, payload=content)


class SessionPayload(_PluginModel):
    """Session metadata pushed by a plugin."""

    external_id: str = Field(
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("externalId", "external_id", "sessionId", "session_id"),
    )
    source: Optional[str] = None
    title: Optional[str] = None
    project_path: Optional[str] = None
    project_name: Optional[str] = None
    git_branch: Optional[str] = None
    model: Optional[str] = None
    provider: Optional[str] = None
    prompt_tokens: Optional[int] = Field(default=None, ge=0)
    completion_tokens: Optional[int] = Field(default=None, ge=0)
    total_tokens: Optional[int] = Field(default=None, ge=0)
    cost: Optional[float] = Field(default=None, ge=0)
    duration_ms: Optional[int] = Field(default=None, ge=0)
    created_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @property
    def reports_usage(self) -> bool:
        """
        Whether the payload carries authoritative session-level totals.

        Zero counters mean "not tracked" for most plugins and are ignored.
        """
        return any(
            value for value in (self.prompt_tokens, self.completion_tokens, self.total_tokens)
        ) or bool(self.cost)


class MessagePayload(_PluginModel):
    """A single message pushed by a plugin."""

    session_external_id: str = Field(
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices(
            "sessionExternalId", "session_external_id", "sessionId", "session_id"
        ),
    )
    external_id: Optional[str] = Field(default=None, max_length=255)
    role: str = MessageRole.UNKNOWN.value
    text_content: Optional[str] = None
    model: Optional[str] = None
    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    cost: Optional[float] = Field(default=None, ge=0)
    duration_ms: Optional[int] = Field(default=None, ge=0)
    source: Optional[str] = None  # Used when the session is auto-created
    created_at: Optional[datetime] = None
    parts: list[PartPayload] = Field(default_factory=list)

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, value: Any) -> str:
        raw = str(value or "").strip().lower()
        known = {role.value for role in MessageRole}
        return raw if raw in known else MessageRole.UNKNOWN.value

    @field_validator("prompt_tokens", "completion_tokens", mode="before")
    @classmethod
    def _none_is_zero(cls, value: Any) -> Any:
        return 0 if value is None else value


class BatchPayload(_PluginModel):
    """Many sessions and messages in one request."""

    sessions: list[dict[str, Any]] = Field(default_factory=list)
    messages: list[dict[str, Any]] = Field(default_factory=list)
