from __future__ import annotations
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from .db import engine, init_db, async_session_maker
from .core.config import get_settings
from .core.logging import configure_logging
from .core.redis import ping_redis, close_redis
from .core.nats import nats_connect, nats_close
from .routers import payments, wallets
from .services.payments import expire_stale_tokens

settings = get_settings()
scheduler = AsyncIOScheduler()

async def sweep_expired_tokens():
    try:
        async with async_session_maker() as db:
            await expire_stale_tokens(db)
    except Exception:
        logger.exception("Expiry sweep failed")

@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    await init_db()
    # best-effort connect to infra; service still runs if these fail
    if settings.enable_nats_events:
        try:
            await nats_connect()
        except Exception as exc:
            logger.warning("NATS unavailable; settlement events disabled until reconnect", error=str(exc))
    await ping_redis()
    if settings.enable_scheduler:
        scheduler.add_job(sweep_expired_tokens, "interval", seconds=settings.expiry_sweep_interval_sec)
        scheduler.start()
    logger.info("payments service started")
    yield
    if scheduler.running:
        scheduler.shutdown(wait=False)
    await nats_close()
    await close_redis()
    await engine.dispose()

app = FastAPI(title="vale-cashback-payments", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(payments.router)
app.include_router(wallets.router)

@app.get("/health")
async def health():
    return {"status": "ok", "service": "vale-cashback-payments"}

Instrumentator().instrument(app).expose(app)
