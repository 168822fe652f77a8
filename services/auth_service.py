# ──────────────────────────────────────────────────────────────────────────────
# File: services/auth_service.py
# ──────────────────────────────────────────────────────────────────────────────
"""
Request authentication.

Owners authenticate with a bearer JWT whose `sub` claim is the owner id, or
with the static X-API-Key, which maps to DEFAULT_OWNER_ID. Admin endpoints
additionally require X-Admin-Key.
"""
from __future__ import annotations
import hmac
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from config import settings

bearer_scheme = HTTPBearer(auto_error=False)


class User(BaseModel):
    id: str


def create_access_token(owner_id: str, expires_delta: timedelta | None = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    return jwt.encode({"sub": owner_id, "exp": expire}, settings.secret_key, algorithm=settings.algorithm)


def _credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    x_api_key: Optional[str] = Header(default=None),
) -> User:
    if x_api_key:
        if hmac.compare_digest(x_api_key, settings.api_key):
            return User(id=settings.default_owner_id)
        raise _credentials_exception()

    if credentials is None:
        raise _credentials_exception()
    try:
        payload = jwt.decode(credentials.credentials, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        raise _credentials_exception()
    owner_id = payload.get("sub")
    if not owner_id:
        raise _credentials_exception()
    return User(id=str(owner_id))


async def require_admin(x_admin_key: Optional[str] = Header(default=None)) -> None:
    if not settings.admin_key:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Admin key not configured")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, settings.admin_key):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin key")
