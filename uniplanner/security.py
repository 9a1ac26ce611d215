import logging
from typing import Optional

import httpx
from fastapi import Depends, Header, HTTPException

from .config import settings
from .schemas import AuthUser


logger = logging.getLogger("uniplanner.security")


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Invalid Authorization header")
    return token.strip()


async def get_current_user(authorization: Optional[str] = Header(default=None)) -> AuthUser:
    """Resolve the caller from a Supabase access token via GET /auth/v1/user."""
    token = _bearer_token(authorization)
    if not settings.supabase_url or not settings.supabase_anon_key:
        raise HTTPException(status_code=503, detail="Auth provider not configured")

    url = settings.supabase_url.rstrip("/") + "/auth/v1/user"
    headers = {"apikey": settings.supabase_anon_key, "Authorization": f"Bearer {token}"}
    try:
        async with httpx.AsyncClient(timeout=settings.supabase_timeout_seconds) as client:
            r = await client.get(url, headers=headers)
    except httpx.HTTPError:
        logger.exception("Auth lookup failed")
        raise HTTPException(status_code=503, detail="Auth provider unavailable")

    if r.status_code in (401, 403):
        raise HTTPException(status_code=401, detail="Invalid or expired session")
    if r.status_code >= 400:
        logger.error("Auth lookup error %s: %s", r.status_code, r.text)
        raise HTTPException(status_code=503, detail="Auth provider error")

    data = r.json() or {}
    if not data.get("id"):
        raise HTTPException(status_code=401, detail="Session has no user")
    return AuthUser(id=data["id"], email=data.get("email") or None)


async def get_current_user_id(user: AuthUser = Depends(get_current_user)) -> str:
    return user.id
