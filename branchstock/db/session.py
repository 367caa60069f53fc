# branchstock/db/session.py
# 统一的异步会话工厂 + FastAPI 依赖（get_session）
from __future__ import annotations

import logging
import re
from collections.abc import AsyncGenerator
from typing import Any, Dict

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from branchstock.core.config import get_settings

log = logging.getLogger("branchstock.db")


# ---- DSN 归一：把 DSN 统一到 psycopg3 与 aiosqlite ----
def normalize_async_dsn(url: str) -> str:
    url = (url or "").strip()
    # 有些环境会把值写成 '"postgresql+psycopg://..."'，统一剥掉两侧引号
    if (url.startswith('"') and url.endswith('"')) or (url.startswith("'") and url.endswith("'")):
        url = url[1:-1].strip()
    # sqlite:/// → sqlite+aiosqlite:///
    if url.startswith("sqlite:///"):
        return "sqlite+aiosqlite://" + url[len("sqlite:///") - 1 :]
    # postgres/postgresql(+*) → postgresql+psycopg
    if url.startswith("postgresql+asyncpg://") or url.startswith("postgres+asyncpg://"):
        return re.sub(r"^postgres(?:ql)?\+asyncpg://", "postgresql+psycopg://", url)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def connect_args_for(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


def make_async_engine(url: str, **kwargs: Any) -> AsyncEngine:
    dsn = normalize_async_dsn(url)
    kwargs.setdefault("connect_args", connect_args_for(dsn))
    return create_async_engine(dsn, **kwargs)


def make_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


_settings = get_settings()
ASYNC_URL = normalize_async_dsn(_settings.DATABASE_URL)
log.info("Using DSN (async): %s", ASYNC_URL)

async_engine: AsyncEngine = make_async_engine(
    ASYNC_URL,
    echo=_settings.SQL_ECHO,
    pool_pre_ping=True,
)

AsyncSessionLocal: async_sessionmaker[AsyncSession] = make_session_maker(async_engine)


# ---- FastAPI 依赖 ----
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session


# ---- 关闭引擎（测试/生命周期） ----
async def close_engines() -> None:
    await async_engine.dispose()
