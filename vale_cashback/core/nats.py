from __future__ import annotations
import json
from typing import Sequence
from nats.aio.client import Client as NATS
from loguru import logger

from .config import get_settings

_settings = get_settings()
_nats = NATS()

async def nats_connect():
    if not _nats.is_connected:
        servers: Sequence[str] = [u.strip() for u in _settings.nats_urls.split(",") if u.strip()]
        await _nats.connect(servers=servers, max_reconnect_attempts=3, connect_timeout=2)

async def nats_close():
    try:
        if _nats.is_connected:
            await _nats.drain()
    except Exception as exc:
        logger.warning("NATS drain failed", error=str(exc))

async def publish_settlement(evt: dict):
    """
    evt = {
      "token_id": str,
      "code": str,
      "payer_id": str,
      "payee_id": str,
      "amount": "25.00",
      "settled_at": iso8601,
      "idempotency_key": "settlement:<token_id>"
    }
    Both parties' devices subscribe to learn the outcome without polling.
    """
    if not _settings.enable_nats_events:
        return
    await nats_connect()
    await _nats.publish(_settings.nats_subject_settled, json.dumps(evt).encode("utf-8"))
