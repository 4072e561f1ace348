"""Bearer-token authentication for identity-provider issued JWTs.

Tokens are HS256 JWTs signed with the identity platform's JWT secret;
the ``sub`` claim is the user id. Admins are listed in ``ADMIN_USER_IDS``
or carry ``app_metadata.role == "admin"``.
"""
from __future__ import annotations

import logging
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from delisio.config import get_settings
from delisio.errors import AuthError, ForbiddenError

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"

security = HTTPBearer(auto_error=False)


class TokenData(BaseModel):
    user_id: str
    email: Optional[str] = None
    is_admin: bool = False


def verify_token(token: str) -> TokenData:
    """Verify and decode a bearer token, raising ``AuthError`` when invalid."""
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.SUPABASE_JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
            audience=settings.SUPABASE_JWT_AUDIENCE,
        )
    except jwt.ExpiredSignatureError:
        raise AuthError("Token has expired")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthError("Invalid token: missing user ID")

    role = (payload.get("app_metadata") or {}).get("role")
    return TokenData(
        user_id=user_id,
        email=payload.get("email"),
        is_admin=role == "admin" or user_id in settings.admin_user_ids,
    )


def user_id_from_header(authorization: str | None) -> str | None:
    """User id from an ``Authorization`` header, or None if absent/invalid."""
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    try:
        return verify_token(authorization[7:].strip()).user_id
    except AuthError:
        return None


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> TokenData:
    """FastAPI dependency: the authenticated user (401 otherwise)."""
    if credentials is None:
        raise AuthError("Authentication required")
    return verify_token(credentials.credentials)


async def get_current_user_optional(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[TokenData]:
    """FastAPI dependency: the user if a valid token was sent, else None."""
    if credentials is None:
        return None
    try:
        return verify_token(credentials.credentials)
    except AuthError:
        return None


async def require_admin(current_user: TokenData = Depends(get_current_user)) -> TokenData:
    if not current_user.is_admin:
        raise ForbiddenError("Admin privileges required")
    return current_user
