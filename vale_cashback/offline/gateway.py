from __future__ import annotations
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, Response
from loguru import logger

from ..core.config import get_offline_settings, OfflineSettings
from ..core.logging import configure_logging
from ..core.redis import get_redis
from .cache import CacheStorage, MemoryCacheStorage, RedisCacheStorage
from .controller import OfflineCacheController, InterceptedRequest, ActionKind

# hop-by-hop and transport headers that must not be forwarded as-is
_DROP_HEADERS = {"host", "content-length", "connection", "keep-alive", "transfer-encoding", "upgrade", "accept-encoding"}

_COOKIE_AND_ENCODING = {"set-cookie", "content-encoding"}

def with_cookies(resp: Response, cookies: list[str]) -> Response:
    # one header line per cookie; a merged dict value would fold them into one
    for cookie in cookies:
        resp.headers.append("set-cookie", cookie)
    return resp

def build_storage(s: OfflineSettings) -> CacheStorage:
    if s.cache_backend == "redis":
        return RedisCacheStorage(get_redis())
    return MemoryCacheStorage()

def build_controller(s: OfflineSettings, *, transport: httpx.AsyncBaseTransport | None = None) -> OfflineCacheController:
    client = httpx.AsyncClient(base_url=s.upstream_url, timeout=s.network_timeout, transport=transport)
    return OfflineCacheController(
        cache_name=s.cache_name,
        storage=build_storage(s),
        client=client,
        origin=s.upstream_url,
        precache=s.precache,
        excluded_prefixes=s.excluded_prefixes,
    )

def to_intercepted(request: Request, upstream: httpx.URL, body: bytes = b"") -> InterceptedRequest:
    headers = {k: v for k, v in request.headers.items() if k.lower() not in _DROP_HEADERS}
    accept = request.headers.get("accept", "")
    navigate = request.headers.get("sec-fetch-mode") == "navigate" or (
        request.method == "GET" and "text/html" in accept
    )
    parts = {"path": request.url.path}
    if request.url.query:
        parts["query"] = request.url.query.encode("ascii")
    target = upstream.copy_with(**parts)
    return InterceptedRequest(
        method=request.method,
        url=target,
        headers=headers,
        mode="navigate" if navigate else "no-cors",
        body=body,
    )

def create_gateway(controller: OfflineCacheController | None = None) -> FastAPI:
    """ASGI app that serves a front-end origin through the offline controller."""
    settings = get_offline_settings()
    ctrl = controller or build_controller(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        await ctrl.dispatch("install")
        await ctrl.dispatch("activate")
        yield
        await ctrl.drain()
        await ctrl.client.aclose()

    app = FastAPI(title="vale-cashback-offline-gateway", lifespan=lifespan)
    app.state.controller = ctrl

    @app.get("/__offline/health")
    async def health():
        return {"status": "ok", "service": "offline-gateway", "cache": ctrl.cache_name, "state": ctrl.state.value}

    @app.api_route("/{path:path}", methods=["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"])
    async def intercept(request: Request, path: str):
        req = to_intercepted(request, ctrl.origin, await request.body())
        action = await ctrl.dispatch("fetch", req)
        if action.kind == ActionKind.PASSTHROUGH:
            try:
                r = await ctrl.forward(req)
            except httpx.TransportError as exc:
                logger.warning("Upstream unreachable", url=str(req.url), error=str(exc))
                return Response(content=b"Upstream unavailable", status_code=502, media_type="text/plain")
            resp = Response(
                content=r.content,
                status_code=r.status_code,
                headers={k: v for k, v in r.headers.items() if k.lower() not in _DROP_HEADERS | _COOKIE_AND_ENCODING},
            )
            return with_cookies(resp, r.headers.get_list("set-cookie"))
        cached = action.response
        headers = {k: v for k, v in cached.headers.items() if k.lower() != "set-cookie"}
        headers["x-offline-action"] = action.kind.value
        resp = Response(content=cached.body, status_code=cached.status, headers=headers)
        return with_cookies(resp, cached.cookies)

    return app
