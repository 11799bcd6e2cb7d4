# airlite/routers/auth.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from functools import lru_cache

from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from airlite.settings import Settings, load_settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()


def make_token(email: str, role: str = "user", settings: Settings | None = None) -> str:
    settings = settings or get_settings()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": email,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=settings.jwt_expire_min)).timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_alg)


def parse_bearer(authorization: str | None) -> str:
    parts = (authorization or "").split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(401, "Missing bearer token")
    return parts[1]


def get_current_user(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> dict:
    token = parse_bearer(authorization)
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_alg])
    except JWTError:
        raise HTTPException(401, "Invalid token")
    email = payload.get("sub")
    if not email:
        raise HTTPException(401, "Invalid token")
    return {"email": email, "role": payload.get("role") or "user"}


def require_admin(u: dict = Depends(get_current_user)) -> dict:
    if u.get("role") != "admin":
        raise HTTPException(403, "Admin only")
    return u
