# branchstock/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from branchstock.core.config import get_settings
from branchstock.core.logging import setup_logging
from branchstock.db.base import init_models
from branchstock.db.session import close_engines
from branchstock.http_problem_handlers import register_exception_handlers

settings = get_settings()
setup_logging(settings.LOG_LEVEL, json=settings.JSON_LOG)
logger = logging.getLogger("branchstock")


@asynccontextmanager
async def lifespan(_: FastAPI):
    tables = init_models()
    logger.info("branchstock ready env=%s tables=%s", settings.ENV, len(tables))
    yield
    await close_engines()


app = FastAPI(
    lifespan=lifespan,
    title="BranchStock",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.CORS_ORIGINS),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 统一 Problem 形状的异常处理（BizError / HTTPException / 校验错误 / 兜底 500）
register_exception_handlers(app)

# ===========================
#        业务路由
# ===========================
from branchstock.api.router import api_router  # noqa: E402

# ===========================
#        观测
# ===========================
from branchstock.metrics import router as metrics_router  # noqa: E402

app.include_router(api_router)
app.include_router(metrics_router)


@app.get("/")
async def root():
    return {"name": "BranchStock", "version": "0.1.0"}


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}
