from __future__ import annotations
import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable

from loguru import logger

from ..core.qr import render_png
from .exchange import PaymentToken

EXPIRED_LABEL = "Expired"


@dataclass(frozen=True)
class QRImage:
    code: str
    png: bytes


@dataclass(frozen=True)
class QRUnavailable:
    reason: str = "QR code not available"


def render(token: PaymentToken | None, *, box_size: int = 10) -> QRImage | QRUnavailable:
    """Encode the token's code; an empty code is an explicit unavailable state."""
    code = (token.code if token else "") or ""
    if not code.strip():
        return QRUnavailable()
    try:
        return QRImage(code=code, png=render_png(code, box_size=box_size))
    except ValueError as exc:
        logger.warning("QR rendering failed", error=str(exc))
        return QRUnavailable("QR code could not be rendered")


def format_remaining(seconds: float) -> str:
    total = max(int(seconds), 0)
    return f"{total // 60:02d}:{total % 60:02d}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def countdown(
    token: PaymentToken | datetime,
    *,
    clock: Callable[[], datetime] = _utcnow,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    interval: float = 1.0,
) -> AsyncIterator[str]:
    """
    Yield ``MM:SS`` once per tick until expiry, then ``EXPIRED_LABEL`` and stop.

    Display only; the server decides expiry. Closing the generator (or
    cancelling the task iterating it) stops the timer.
    """
    expires_at = token.expires_at if isinstance(token, PaymentToken) else token
    while True:
        remaining = (expires_at - clock()).total_seconds()
        if remaining <= 0:
            yield EXPIRED_LABEL
            return
        yield format_remaining(remaining)
        await sleep(interval)
