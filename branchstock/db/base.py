# branchstock/db/base.py
from __future__ import annotations

import logging
from typing import List

from sqlalchemy.orm import DeclarativeBase, configure_mappers

log = logging.getLogger("branchstock.models")


class Base(DeclarativeBase):
    """全局唯一 ORM Base（批次 / 台账 / 单据 / 协作方镜像共用一套 metadata）"""


_INITIALIZED = False


def init_models(*, force: bool = False) -> List[str]:
    """
    导入 branchstock.models（按 MODEL_SPECS 注册全部模型）并固化关系映射。

    建表（测试）与 Alembic 迁移前都要先调一次；返回已注册的表名，便于启动日志核对。
    """
    global _INITIALIZED
    if not _INITIALIZED or force:
        import branchstock.models  # noqa: F401

        configure_mappers()
        _INITIALIZED = True
        log.info("orm mappers configured: %d tables", len(Base.metadata.tables))
    return sorted(Base.metadata.tables)
