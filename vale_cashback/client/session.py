"""
Session continuity for the client.

The signed-in user is kept in an injected ``SessionStore`` and handed around
in an explicit ``AuthContext``; nothing here is module-level state. A stored
user is only trusted until its ``expires_at``; after that the server is asked.
"""
from __future__ import annotations
import json
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Literal

import httpx
from loguru import logger
from pydantic import BaseModel, ValidationError

from .exchange import Success, Failure, Result, failure_from_response

USER_DATA_KEY = "valecashback_user_data"
DEFAULT_SESSION_TTL = timedelta(hours=12)


class StoredUser(BaseModel):
    id: int | str
    name: str
    email: str
    type: Literal["client", "merchant", "admin"]
    photo: str | None = None
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        exp = self.expires_at if self.expires_at.tzinfo else self.expires_at.replace(tzinfo=timezone.utc)
        return exp <= now


class SessionStore(ABC):
    @abstractmethod
    def get(self) -> StoredUser | None: ...

    @abstractmethod
    def set(self, user: StoredUser) -> None: ...

    @abstractmethod
    def clear(self) -> None: ...


class MemorySessionStore(SessionStore):
    def __init__(self, user: StoredUser | None = None):
        self._user = user

    def get(self) -> StoredUser | None:
        return self._user

    def set(self, user: StoredUser) -> None:
        self._user = user

    def clear(self) -> None:
        self._user = None


class JsonFileSessionStore(SessionStore):
    """Key/value JSON file, one key per app; read/write errors are logged, not raised."""

    def __init__(self, path: str | Path, key: str = USER_DATA_KEY):
        self.path = Path(path)
        self.key = key

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        return data if isinstance(data, dict) else {}

    def _dump(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data), encoding="utf-8")

    def get(self) -> StoredUser | None:
        try:
            raw = self._load().get(self.key)
            return StoredUser.model_validate(raw) if raw else None
        except (OSError, ValueError, ValidationError) as exc:
            logger.warning("Could not read stored session", path=str(self.path), error=str(exc))
            return None

    def set(self, user: StoredUser) -> None:
        try:
            data = self._load()
            data[self.key] = user.model_dump(mode="json")
            self._dump(data)
        except (OSError, ValueError) as exc:
            logger.warning("Could not save session", path=str(self.path), error=str(exc))

    def clear(self) -> None:
        try:
            data = self._load()
            if data.pop(self.key, None) is not None:
                self._dump(data)
        except (OSError, ValueError) as exc:
            logger.warning("Could not clear stored session", path=str(self.path), error=str(exc))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthContext:
    def __init__(
        self,
        http: httpx.AsyncClient,
        store: SessionStore,
        *,
        session_ttl: timedelta = DEFAULT_SESSION_TTL,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.http = http
        self.store = store
        self.session_ttl = session_ttl
        self.clock = clock

    def _remember(self, body: dict) -> StoredUser:
        user = StoredUser(
            id=body["id"], name=body["name"], email=body["email"], type=body["type"],
            photo=body.get("photo"), expires_at=self.clock() + self.session_ttl,
        )
        self.store.set(user)
        return user

    async def current_user(self) -> StoredUser | None:
        stored = self.store.get()
        if stored is not None and not stored.is_expired(self.clock()):
            return stored
        try:
            r = await self.http.get("/api/auth/me")
        except httpx.TransportError as exc:
            logger.warning("Session check failed", error=str(exc))
            return None
        if r.status_code != 200:
            self.store.clear()
            return None
        return self._remember(r.json())

    async def login(self, email: str, password: str) -> Result:
        try:
            r = await self.http.post("/api/auth/login", json={"email": email, "password": password})
        except httpx.TransportError as exc:
            logger.warning("Login request failed", error=str(exc))
            return Failure("network", "No connection to the server")
        if r.status_code != 200:
            return failure_from_response(r)
        return Success(self._remember(r.json()))

    async def logout(self) -> None:
        try:
            await self.http.post("/api/auth/logout")
        except httpx.TransportError as exc:
            logger.warning("Logout request failed; clearing local session anyway", error=str(exc))
        self.store.clear()
