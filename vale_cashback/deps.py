from __future__ import annotations
from typing import Any, Dict, AsyncGenerator
from fastapi import Depends, Header, HTTPException, status
import time
import uuid
import httpx
import jwt
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .core.config import get_settings
from .models import ActorRole

settings = get_settings()

_JWKS: Dict[str, Any] | None = None
_JWKS_TS: float = 0.0
_JWKS_TTL: int = 3600

async def fetch_jwks() -> Dict[str, Any]:
    global _JWKS, _JWKS_TS
    now = time.time()
    if _JWKS is None or (now - _JWKS_TS) > _JWKS_TTL:
        async with httpx.AsyncClient() as client:
            r = await client.get(settings.auth_jwks_url, timeout=5.0)
            r.raise_for_status()
            _JWKS = r.json()
            _JWKS_TS = now
    return _JWKS

async def get_signing_key():
    from jwt.algorithms import RSAAlgorithm
    jwks = await fetch_jwks()
    key = jwks["keys"][0]
    return RSAAlgorithm.from_jwk(key)

async def get_claims(authorization: str | None = Header(default=None)) -> Dict[str, Any]:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    token = authorization.split(" ", 1)[1].strip()
    try:
        key = await get_signing_key()
    except httpx.HTTPError as exc:
        logger.warning("JWKS fetch failed", url=settings.auth_jwks_url, error=str(exc))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Auth keys unavailable")
    try:
        payload = jwt.decode(token, key=key, algorithms=["RS256"], options={"verify_aud": False})
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    if "sub" not in payload or "role" not in payload:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return payload

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async for s in get_session():
        yield s

class Actor:
    """Authenticated caller resolved from JWT claims."""
    def __init__(self, user_id: uuid.UUID, role: ActorRole):
        self.user_id = user_id
        self.role = role

def _actor_from_claims(claims: Dict[str, Any]) -> Actor:
    try:
        return Actor(uuid.UUID(str(claims["sub"])), ActorRole(claims["role"]))
    except (KeyError, ValueError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Client or merchant role required")

async def get_actor(claims: dict = Depends(get_claims)) -> Actor:
    return _actor_from_claims(claims)

def require_role(role: ActorRole):
    async def _dep(claims: dict = Depends(get_claims)) -> Actor:
        actor = _actor_from_claims(claims)
        if actor.role != role:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"{role.value.capitalize()} role required")
        return actor
    return _dep
