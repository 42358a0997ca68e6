from __future__ import annotations
from typing import AsyncGenerator
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .core.config import get_settings
from .models import Base

settings = get_settings()

def make_engine(url: str) -> AsyncEngine:
    # concurrent claims on SQLite queue on the file lock instead of failing fast
    connect_args = {"timeout": 15} if url.startswith("sqlite") else {}
    return create_async_engine(url, echo=False, connect_args=connect_args)

engine = make_engine(settings.database_url)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

async def init_db(bind: AsyncEngine | None = None) -> None:
    bind = bind or engine
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready", dialect=bind.dialect.name)

async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        yield session
