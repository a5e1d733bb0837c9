"""
API schemas for OpenSync.

Pydantic models for request/response validation, and the response
envelope shared by every endpoint.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

# ===== Envelope =====


def envelope(data: Any) -> dict[str, Any]:
    """Wrap a successful payload: ``{"ok": true, "data": ...}``."""
    return {"ok": True, "data": data}


def error_envelope(error_type: str, message: str) -> dict[str, Any]:
    """Wrap an error: ``{"ok": false, "error": {"type", "message"}}``."""
    return {"ok": False, "error": {"type": error_type, "message": message}}


# ===== Sessions =====


class SessionSummary(BaseModel):
    """Session row as listed by ``/api/sessions``."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    external_id: str
    source: str
    title: Optional[str] = None
    project_path: Optional[str] = None
    project_name: Optional[str] = None
    git_branch: Optional[str] = None
    model: Optional[str] = None
    provider: Optional[str] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    message_count: int = 0
    duration_ms: Optional[int] = None
    needs_audit: bool = False
    eval_ready: bool = False
    eval_notes: Optional[str] = None
    eval_tags: list[str] = Field(default_factory=list)
    reviewed_at: Optional[datetime] = None
    started_at: datetime
    ended_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PartResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    type: str
    content: Optional[str] = None
    payload: Optional[dict[str, Any]] = None
    redaction_count: int = 0
    needs_audit: bool = False


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    external_id: str
    role: str
    ordinal: int
    text_content: Optional[str] = None
    model: Optional[str] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float = 0.0
    duration_ms: Optional[int] = None
    needs_audit: bool = False
    timestamp: datetime
    parts: list[PartResponse] = Field(default_factory=list)


class SessionDetail(SessionSummary):
    """Session with its messages and parts."""

    messages: list[MessageResponse] = Field(default_factory=list)


class EvalReadyRequest(BaseModel):
    """Body of ``POST /api/sessions/eval-ready``."""

    model_config = ConfigDict(populate_by_name=True)

    id: UUID = Field(validation_alias=AliasChoices("id", "sessionId", "session_id"))
    eval_ready: bool = Field(
        default=True, validation_alias=AliasChoices("evalReady", "eval_ready")
    )
    notes: Optional[str] = None
    tags: Optional[list[str]] = None


# ===== API keys =====


class CreateApiKeyRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=255)


class ApiKeyResponse(BaseModel):
    """API key metadata. The plaintext key is never part of this model."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: Optional[str] = None
    key_prefix: str
    created_at: datetime
    last_used_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None


class CreatedApiKeyResponse(ApiKeyResponse):
    """Returned once on creation; ``key`` is shown only here."""

    key: str
