# tests/conftest.py
from __future__ import annotations

import os
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from branchstock.db.base import Base, init_models
from branchstock.db.session import get_session, normalize_async_dsn
from branchstock.main import app

# ==========================
# 数据库 DSN：
#   显式给了 BRANCHSTOCK_TEST_DATABASE_URL → 用它（Postgres 回归）
#   否则 → 每用例一个内存 SQLite
# ==========================
DATABASE_URL = os.getenv("BRANCHSTOCK_TEST_DATABASE_URL")


@pytest_asyncio.fixture(scope="function")
async def async_engine() -> AsyncGenerator[AsyncEngine, None]:
    init_models()
    if DATABASE_URL:
        engine = create_async_engine(normalize_async_dsn(DATABASE_URL), poolclass=NullPool, future=True)
    else:
        engine = create_async_engine(
            "sqlite+aiosqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            future=True,
        )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture(scope="function")
def async_session_maker(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def session(async_session_maker) -> AsyncGenerator[AsyncSession, None]:
    """
    服务层用例的 Session：服务本身不提交，用例自己决定 commit / rollback
    """
    async with async_session_maker() as sess:
        try:
            yield sess
        finally:
            if sess.in_transaction():
                await sess.rollback()


# =========================================
# FastAPI / httpx AsyncClient（get_session 指向测试库）
# =========================================
@pytest_asyncio.fixture(scope="function")
async def client(async_session_maker) -> AsyncGenerator[httpx.AsyncClient, None]:
    async def _override() -> AsyncGenerator[AsyncSession, None]:
        async with async_session_maker() as sess:
            yield sess

    app.dependency_overrides[get_session] = _override
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(
            transport=transport,
            base_url="http://testserver",
            timeout=httpx.Timeout(10.0, connect=5.0, read=10.0, write=5.0, pool=5.0),
        ) as c:
            yield c
    finally:
        app.dependency_overrides.pop(get_session, None)
