"""
Versioned response cache used by the offline controller.

A cache *generation* is a named set of request-key -> stored response
entries. Only the controller writes here; pages read it indirectly through
intercepted fetches.
"""
from __future__ import annotations
import base64
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace

import httpx
import redis.asyncio as redis


class CacheError(Exception):
    """Non-fatal cache failure; logged by the controller, never surfaced to a page."""
    pass


@dataclass
class CachedResponse:
    status: int
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)
    url: str = ""
    reason: str = ""
    # set-cookie values of a live response, one per header line; never persisted
    cookies: list[str] = field(default_factory=list)

    @classmethod
    def from_httpx(cls, r: httpx.Response, *, keep_cookies: bool = False) -> "CachedResponse":
        return cls(
            status=r.status_code,
            body=r.content,
            headers={k: v for k, v in r.headers.items() if k.lower() not in _UNSTORED_HEADERS},
            url=str(r.url),
            reason=r.reason_phrase,
            cookies=r.headers.get_list("set-cookie") if keep_cookies else [],
        )

    def for_storage(self) -> "CachedResponse":
        return replace(self, cookies=[])

    def to_json(self) -> str:
        return json.dumps({
            "status": self.status,
            "body": base64.b64encode(self.body).decode("ascii"),
            "headers": self.headers,
            "url": self.url,
            "reason": self.reason,
        })

    @classmethod
    def from_json(cls, raw: str) -> "CachedResponse":
        d = json.loads(raw)
        return cls(
            status=int(d["status"]),
            body=base64.b64decode(d.get("body") or ""),
            headers=dict(d.get("headers") or {}),
            url=d.get("url", ""),
            reason=d.get("reason", ""),
        )

# bodies are stored decoded, so length/encoding headers would lie on replay
_UNSTORED_HEADERS = {"content-length", "content-encoding", "transfer-encoding", "connection", "set-cookie"}


def request_key(method: str, url: str | httpx.URL) -> str:
    """Origin-independent key: method plus path and query."""
    u = httpx.URL(str(url))
    target = u.raw_path.decode("ascii") or "/"
    return f"{method.upper()} {target}"


@dataclass
class CacheGeneration:
    name: str
    entries: dict[str, CachedResponse] = field(default_factory=dict)


class CacheStorage(ABC):
    """Generation store addressed by name."""

    @abstractmethod
    async def open(self, name: str) -> None: ...

    @abstractmethod
    async def keys(self) -> list[str]: ...

    @abstractmethod
    async def delete(self, name: str) -> bool: ...

    @abstractmethod
    async def put(self, name: str, key: str, response: CachedResponse) -> None: ...

    @abstractmethod
    async def match(self, name: str, key: str) -> CachedResponse | None: ...

    async def put_all(self, name: str, items: dict[str, CachedResponse]) -> None:
        for key, response in items.items():
            await self.put(name, key, response)


class MemoryCacheStorage(CacheStorage):
    def __init__(self):
        self._generations: dict[str, CacheGeneration] = {}

    async def open(self, name: str) -> None:
        self._generations.setdefault(name, CacheGeneration(name))

    async def keys(self) -> list[str]:
        return list(self._generations)

    async def delete(self, name: str) -> bool:
        return self._generations.pop(name, None) is not None

    async def put(self, name: str, key: str, response: CachedResponse) -> None:
        await self.open(name)
        self._generations[name].entries[key] = response

    async def match(self, name: str, key: str) -> CachedResponse | None:
        gen = self._generations.get(name)
        return gen.entries.get(key) if gen else None

    def generation(self, name: str) -> CacheGeneration | None:
        return self._generations.get(name)


class RedisCacheStorage(CacheStorage):
    """
    One hash per generation (``{prefix}:gen:{name}``) plus a set of known
    generation names, so activation can enumerate and purge old ones.
    """

    def __init__(self, client: redis.Redis, prefix: str = "offline"):
        self._r = client
        self._prefix = prefix

    def _names_key(self) -> str:
        return f"{self._prefix}:generations"

    def _gen_key(self, name: str) -> str:
        return f"{self._prefix}:gen:{name}"

    async def open(self, name: str) -> None:
        await self._r.sadd(self._names_key(), name)

    async def keys(self) -> list[str]:
        return sorted(await self._r.smembers(self._names_key()))

    async def delete(self, name: str) -> bool:
        pipe = self._r.pipeline()
        pipe.srem(self._names_key(), name)
        pipe.delete(self._gen_key(name))
        removed, _ = await pipe.execute()
        return bool(removed)

    async def put(self, name: str, key: str, response: CachedResponse) -> None:
        pipe = self._r.pipeline()
        pipe.sadd(self._names_key(), name)
        pipe.hset(self._gen_key(name), key, response.to_json())
        await pipe.execute()

    async def put_all(self, name: str, items: dict[str, CachedResponse]) -> None:
        if not items:
            await self.open(name)
            return
        pipe = self._r.pipeline()
        pipe.sadd(self._names_key(), name)
        pipe.hset(self._gen_key(name), mapping={k: v.to_json() for k, v in items.items()})
        await pipe.execute()

    async def match(self, name: str, key: str) -> CachedResponse | None:
        raw = await self._r.hget(self._gen_key(name), key)
        return CachedResponse.from_json(raw) if raw else None
