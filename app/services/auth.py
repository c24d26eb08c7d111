"""Caller identity from a Supabase access token."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import Header

from app.services.errors import UnauthorizedError
from app.services.supabase_client import get_supabase

logger = logging.getLogger("carefi-analysis.auth")


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def require_owner_id(authorization: Optional[str] = Header(default=None)) -> str:
    """FastAPI dependency returning the verified user id.

    Raises ``UnauthorizedError`` when the header is missing or Supabase
    rejects the token.
    """
    token = _bearer_token(authorization)
    if token is None:
        raise UnauthorizedError("missing bearer token")

    try:
        client = await get_supabase()
        response = await client.auth.get_user(token)
    except Exception as exc:
        logger.info("auth_rejected err=%s", exc)
        raise UnauthorizedError(f"token rejected: {exc}") from exc

    user = getattr(response, "user", None)
    user_id = getattr(user, "id", None)
    if not user_id:
        raise UnauthorizedError("token resolved to no user")
    return str(user_id)
