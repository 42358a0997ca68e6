"""
Offline cache controller.

Lifecycle events (install, activate, fetch, sync, push, notificationclick,
message) go through one dispatch table. Handlers return a description of what
should happen instead of writing a response themselves; the host (see
``gateway.py``) turns a FetchAction into an HTTP response.

Fetch policy is network-first with cache fallback. Non-GET requests and
paths under an excluded prefix (the API namespace) are never touched.
"""
from __future__ import annotations
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx
from loguru import logger

from .cache import CacheStorage, CachedResponse, CacheError, request_key
from .notifications import Notification, ClientWindow, ClickAction, build_notification, resolve_click

SYNC_TAGS = ("sync-data", "sync-transaction")
ROOT_SHELL = "/"
OFFLINE_PAGE = "/offline.html"
UNAVAILABLE_BODY = b"No internet connection available"


class ControllerState(str, Enum):
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVATED = "activated"


class ControllerStateError(RuntimeError):
    pass


class ActionKind(str, Enum):
    PASSTHROUGH = "passthrough"
    NETWORK = "serve-network"
    CACHED = "serve-cached"
    FALLBACK = "serve-fallback"
    UNAVAILABLE = "unavailable"


@dataclass
class InterceptedRequest:
    method: str
    url: httpx.URL
    headers: dict[str, str] = field(default_factory=dict)
    mode: str = "no-cors"  # "navigate" for page loads
    body: bytes = b""

    @classmethod
    def get(cls, url: str, *, navigate: bool = False, headers: dict[str, str] | None = None) -> "InterceptedRequest":
        return cls("GET", httpx.URL(url), dict(headers or {}), "navigate" if navigate else "no-cors")

    @property
    def is_navigation(self) -> bool:
        return self.mode == "navigate"

    @property
    def key(self) -> str:
        return request_key(self.method, self.url)


@dataclass
class FetchAction:
    kind: ActionKind
    response: CachedResponse | None = None


@dataclass
class SyncAction:
    tag: str
    scheduled: bool


class OfflineCacheController:
    def __init__(
        self,
        *,
        cache_name: str,
        storage: CacheStorage,
        client: httpx.AsyncClient,
        origin: str,
        precache: list[str] | None = None,
        excluded_prefixes: list[str] | tuple[str, ...] = ("/api/",),
        on_sync: Callable[[str], Awaitable[None]] | None = None,
        on_notify: Callable[[Notification], Awaitable[None]] | None = None,
    ):
        self.cache_name = cache_name
        self.storage = storage
        self.client = client
        self.origin = httpx.URL(origin)
        self.precache = list(precache or [])
        self.excluded_prefixes = tuple(excluded_prefixes)
        self.on_sync = on_sync
        self.on_notify = on_notify
        self.state = ControllerState.INSTALLING
        self.clients: dict[str, ClientWindow] = {}
        self.controlled: set[str] = set()
        self._pending: set[asyncio.Task] = set()
        self.handlers: dict[str, Callable[[Any], Awaitable[Any]]] = {
            "install": self.on_install,
            "activate": self.on_activate,
            "fetch": self.on_fetch,
            "sync": self.on_sync_event,
            "push": self.on_push,
            "notificationclick": self.on_notification_click,
            "message": self.on_message,
        }

    async def dispatch(self, kind: str, event: Any = None) -> Any:
        handler = self.handlers.get(kind)
        if handler is None:
            raise KeyError(f"no handler for event {kind!r}")
        return await handler(event)

    # --- lifecycle

    async def on_install(self, _event: Any = None) -> ControllerState:
        if self.state != ControllerState.INSTALLING:
            raise ControllerStateError(f"cannot install from state {self.state.value}")
        try:
            await self.storage.open(self.cache_name)
            await self._add_all(self.precache)
            logger.info("Offline cache installed", cache=self.cache_name, assets=len(self.precache))
        except Exception as exc:
            # degrade to no precached shell; the controller still installs
            logger.warning("Precache failed", cache=self.cache_name, error=str(exc))
        self.state = ControllerState.INSTALLED
        return self.state

    async def _add_all(self, paths: list[str]) -> None:
        """All-or-nothing: one failed asset means nothing is stored."""
        fetched: dict[str, CachedResponse] = {}
        for path in paths:
            req = InterceptedRequest.get(str(self.origin.join(path)))
            r = await self.client.get(req.url)
            if r.status_code != 200:
                raise CacheError(f"precache {path} returned {r.status_code}")
            fetched[req.key] = CachedResponse.from_httpx(r)
        await self.storage.put_all(self.cache_name, fetched)

    async def on_activate(self, _event: Any = None) -> list[str]:
        """Purge every generation except the current one, then claim clients."""
        if self.state != ControllerState.INSTALLED:
            raise ControllerStateError(f"cannot activate from state {self.state.value}")
        self.state = ControllerState.ACTIVATING
        removed = []
        for name in await self.storage.keys():
            if name != self.cache_name:
                await self.storage.delete(name)
                removed.append(name)
                logger.info("Removed old cache generation", cache=name)
        self.claim()
        self.state = ControllerState.ACTIVATED
        logger.info("Offline controller active", cache=self.cache_name, clients=len(self.controlled))
        return removed

    def register_client(self, client: ClientWindow) -> None:
        self.clients[client.id] = client
        if self.state == ControllerState.ACTIVATED:
            self.controlled.add(client.id)

    def claim(self) -> None:
        self.controlled = set(self.clients)

    async def on_message(self, data: Any) -> ControllerState:
        if isinstance(data, dict) and data.get("type") == "SKIP_WAITING" and self.state == ControllerState.INSTALLED:
            await self.on_activate()
        return self.state

    # --- fetch

    def is_excluded(self, req: InterceptedRequest) -> bool:
        path = req.url.path or "/"
        return any(path.startswith(p) for p in self.excluded_prefixes)

    def _same_origin(self, r: httpx.Response) -> bool:
        u = r.url
        return (u.scheme, u.host, u.port) == (self.origin.scheme, self.origin.host, self.origin.port)

    async def on_fetch(self, req: InterceptedRequest) -> FetchAction:
        if self.state != ControllerState.ACTIVATED:
            return FetchAction(ActionKind.PASSTHROUGH)
        if req.method.upper() != "GET" or self.is_excluded(req):
            return FetchAction(ActionKind.PASSTHROUGH)

        try:
            r = await self.client.get(req.url, headers=req.headers)
        except httpx.TransportError as exc:
            logger.debug("Network failed, trying cache", url=str(req.url), error=str(exc))
            return await self._from_cache(req)

        live = CachedResponse.from_httpx(r, keep_cookies=True)
        if r.status_code == 200 and self._same_origin(r):
            self._schedule_store(req.key, live.for_storage())
        return FetchAction(ActionKind.NETWORK, live)

    async def _from_cache(self, req: InterceptedRequest) -> FetchAction:
        hit = await self._match(req.key)
        if hit is not None:
            return FetchAction(ActionKind.CACHED, hit)
        if req.is_navigation:
            for shell in (ROOT_SHELL, OFFLINE_PAGE):
                page = await self._match(request_key("GET", shell))
                if page is not None:
                    return FetchAction(ActionKind.FALLBACK, page)
        return FetchAction(ActionKind.UNAVAILABLE, CachedResponse(
            status=503,
            body=UNAVAILABLE_BODY,
            headers={"content-type": "text/plain; charset=utf-8"},
            url=str(req.url),
            reason="Service Unavailable",
        ))

    async def _match(self, key: str) -> CachedResponse | None:
        try:
            return await self.storage.match(self.cache_name, key)
        except Exception as exc:
            logger.warning("Cache lookup failed", cache=self.cache_name, key=key, error=str(exc))
            return None

    def _schedule_store(self, key: str, response: CachedResponse) -> None:
        task = asyncio.create_task(self._store(key, response))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _store(self, key: str, response: CachedResponse) -> None:
        try:
            await self.storage.put(self.cache_name, key, response)
        except Exception as exc:
            logger.warning("Cache write failed", cache=self.cache_name, key=key, error=str(exc))

    async def drain(self) -> None:
        """Wait for in-flight cache writes."""
        if self._pending:
            await asyncio.gather(*list(self._pending))

    async def forward(self, req: InterceptedRequest) -> httpx.Response:
        """Send a request straight to the network, bypassing the cache entirely."""
        return await self.client.request(req.method, req.url, headers=req.headers, content=req.body or None)

    # --- auxiliary events

    async def on_sync_event(self, tag: str) -> SyncAction:
        if tag not in SYNC_TAGS or self.on_sync is None:
            return SyncAction(tag, scheduled=False)
        task = asyncio.create_task(self._run_sync(tag))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return SyncAction(tag, scheduled=True)

    async def _run_sync(self, tag: str) -> None:
        try:
            await self.on_sync(tag)
        except Exception as exc:
            logger.warning("Background sync failed", tag=tag, error=str(exc))

    async def on_push(self, payload: Any) -> Notification:
        notification = build_notification(payload)
        if self.on_notify is not None:
            try:
                await self.on_notify(notification)
            except Exception as exc:
                logger.warning("Notification display failed", title=notification.title, error=str(exc))
        return notification

    async def on_notification_click(self, notification: Notification) -> ClickAction:
        action = resolve_click(notification, list(self.clients.values()))
        if action.kind == "open":
            opened = ClientWindow(id=f"window-{len(self.clients) + 1}", url=action.url, focused=True)
            self.register_client(opened)
            action.client_id = opened.id
        return action
