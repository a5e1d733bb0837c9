"""
Authentication context for API endpoints.

Every ``/api/*`` and ``/sync/*`` endpoint depends on ``get_auth_context``,
which resolves the bearer token to an account. Tokens carrying the API key
prefix (``osk_`` by default) are looked up by hash; anything else is
verified as a JWT issued by the identity provider, whose ``sub`` claim maps
to an account created on first sight.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional
from uuid import UUID

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from opensync.config import settings
from opensync.db.connection import get_db
from opensync.db.repositories.account import AccountRepository, ApiKeyRepository
from opensync.exceptions import AuthError

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    """
    Authenticated caller.

    Attributes:
        account_id: Account every query and write is scoped to
        api_key_id: Key used for the request (None for JWT callers)
        via: ``api_key`` or ``jwt``
    """

    account_id: UUID
    api_key_id: Optional[UUID] = None
    via: str = "jwt"


def decode_identity_token(token: str) -> dict[str, Any]:
    """
    Verify a JWT and return its claims.

    HS* tokens are checked against ``settings.jwt_secret``; asymmetric
    tokens against ``settings.jwt_public_key``.

    Raises:
        AuthError: Unverifiable, expired, or misconfigured
    """
    try:
        algorithm = jwt.get_unverified_header(token).get("alg", "")
    except jwt.PyJWTError as e:
        raise AuthError("Malformed bearer token") from e

    if algorithm not in settings.jwt_algorithms:
        raise AuthError(f"Token algorithm '{algorithm}' is not accepted")

    key = settings.jwt_secret if algorithm.startswith("HS") else settings.jwt_public_key
    if not key:
        raise AuthError("Identity token verification is not configured")

    options: dict[str, Any] = {"require": ["sub"]}
    if not settings.jwt_audience:
        options["verify_aud"] = False

    try:
        return jwt.decode(
            token,
            key,
            algorithms=[algorithm],
            audience=settings.jwt_audience or None,
            issuer=settings.jwt_issuer or None,
            options=options,
        )
    except jwt.ExpiredSignatureError as e:
        raise AuthError("Token has expired") from e
    except jwt.PyJWTError as e:
        raise AuthError(f"Invalid token: {e}") from e


def get_auth_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    session: Session = Depends(get_db),
) -> AuthContext:
    """
    FastAPI dependency resolving the bearer token to an AuthContext.

    Raises:
        AuthError: Missing, invalid, or revoked credentials (HTTP 401)
    """
    if credentials is None or not credentials.credentials:
        raise AuthError("Missing bearer token")

    token = credentials.credentials
    if token.startswith(settings.api_key_prefix):
        key_repo = ApiKeyRepository(session)
        api_key = key_repo.get_active_by_plaintext(token)
        if api_key is None:
            logger.info(f"Rejected unknown or revoked API key {token[:8]}…")
            raise AuthError("Invalid or revoked API key")
        key_repo.touch(api_key)
        context = AuthContext(account_id=api_key.account_id, api_key_id=api_key.id, via="api_key")
    else:
        claims = decode_identity_token(token)
        account = AccountRepository(session).get_or_create_by_identity(
            str(claims["sub"]),
            email=claims.get("email"),
            name=claims.get("name"),
        )
        context = AuthContext(account_id=account.id, via="jwt")

    # Read by the access-log middleware
    request.state.account_id = context.account_id
    return context
