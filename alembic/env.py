# alembic/env.py
from __future__ import annotations

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.pool import NullPool

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

from branchstock.db.base import Base, init_models  # noqa: E402
from branchstock.db.session import normalize_async_dsn  # noqa: E402

# 异步驱动 → 迁移用的同步驱动
_SYNC_DRIVERS = {
    "sqlite+aiosqlite": "sqlite",
    "postgresql+psycopg": "postgresql+psycopg",
}


def sync_url() -> str:
    """
    迁移库地址：BRANCHSTOCK_TEST_DATABASE_URL > DATABASE_URL > alembic.ini。
    先按应用规则归一成异步 DSN，再换回同步驱动，保证迁移与应用连的是同一个库。
    """
    raw = (
        os.getenv("BRANCHSTOCK_TEST_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.get_main_option("sqlalchemy.url")
    )
    if not raw:
        raise RuntimeError("无法确定迁移数据库：请设置 DATABASE_URL 或 alembic.ini 的 sqlalchemy.url")
    url = make_url(normalize_async_dsn(raw))
    return url.set(drivername=_SYNC_DRIVERS.get(url.drivername, url.drivername)).render_as_string(
        hide_password=False
    )


def _configure(**kw) -> None:
    init_models()
    context.configure(target_metadata=Base.metadata, compare_type=True, **kw)


if context.is_offline_mode():
    _configure(url=sync_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()
else:
    url = sync_url()
    engine = create_engine(url, poolclass=NullPool)
    with engine.connect() as connection:
        # SQLite 不支持大部分 ALTER，走 batch 模式
        _configure(connection=connection, render_as_batch=url.startswith("sqlite"))
        with context.begin_transaction():
            context.run_migrations()
    engine.dispose()
