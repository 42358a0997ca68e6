from __future__ import annotations
import redis.asyncio as redis
from loguru import logger

from .config import get_settings

_settings = get_settings()
_r: redis.Redis | None = None

def get_redis() -> redis.Redis:
    global _r
    if _r is None:
        _r = redis.from_url(_settings.redis_url, decode_responses=True)
    return _r

async def ping_redis() -> bool:
    try:
        return bool(await get_redis().ping())
    except (redis.RedisError, OSError) as exc:
        logger.warning("Redis not reachable; rate limiting disabled until it is", error=str(exc))
        return False

async def close_redis() -> None:
    global _r
    if _r is not None:
        await _r.aclose()
        _r = None

# ---- Fixed-window limit on redemption attempts per IP/route ----
async def allow_request(ip: str, route_key: str) -> bool:
    """
    Count attempts in the current window; allow while <= RL_MAX_REQS.
    Fails open when Redis is down.
    """
    if not _settings.rl_enabled:
        return True
    key = f"rl:{route_key}:{ip}"
    try:
        pipe = get_redis().pipeline()
        pipe.incr(key)
        pipe.expire(key, _settings.rl_window_seconds)
        count, _ = await pipe.execute()
    except (redis.RedisError, OSError) as exc:
        logger.warning("Rate limiter unavailable; allowing request", route=route_key, error=str(exc))
        return True
    if int(count) > _settings.rl_max_reqs:
        logger.info("Rate limit exceeded", route=route_key, ip=ip, count=int(count))
        return False
    return True
