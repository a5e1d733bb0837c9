"""
Account API routes.

- POST   /api/keys           - issue an API key (plaintext returned once)
- GET    /api/keys           - list keys (prefix only)
- DELETE /api/keys/{key_id}  - revoke a key
- DELETE /api/account/data   - delete every session of the account
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from opensync.api.auth import AuthContext, get_auth_context
from opensync.api.schemas import (
    ApiKeyResponse,
    CreateApiKeyRequest,
    CreatedApiKeyResponse,
    envelope,
)
from opensync.db.connection import get_db
from opensync.db.repositories import ApiKeyRepository
from opensync.exceptions import NotFoundError
from opensync.services.ingestion_service import IngestionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["account"])


@router.post("/keys")
def create_api_key(
    request: Optional[CreateApiKeyRequest] = None,
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
) -> dict:
    """
    Issue a new API key.

    The plaintext key is only returned by this call; store it safely.
    """
    name = request.name if request else None
    api_key, plaintext = ApiKeyRepository(session).issue(auth.account_id, name=name)
    session.commit()
    created = CreatedApiKeyResponse(
        **ApiKeyResponse.model_validate(api_key).model_dump(), key=plaintext
    )
    return envelope(created.model_dump(mode="json"))


@router.get("/keys")
def list_api_keys(
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
) -> dict:
    """List keys of the account, newest first."""
    keys = ApiKeyRepository(session).list_for_account(auth.account_id)
    return envelope(
        {"keys": [ApiKeyResponse.model_validate(key).model_dump(mode="json") for key in keys]}
    )


@router.delete("/keys/{key_id}")
def revoke_api_key(
    key_id: UUID,
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
) -> dict:
    """Revoke a key. Requests presenting it are rejected from now on."""
    api_key = ApiKeyRepository(session).revoke(key_id, auth.account_id)
    if api_key is None:
        raise NotFoundError("API key", key_id)
    session.commit()
    return envelope(ApiKeyResponse.model_validate(api_key).model_dump(mode="json"))


@router.delete("/account/data")
def delete_account_data(
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
) -> dict:
    """Delete every session, message and access log of the account. Keys are kept."""
    result = IngestionService(session).delete_all_data(auth.account_id)
    logger.info(f"Deleted all data of account {auth.account_id}: {result}")
    return envelope(result)
