# branchstock/http_problem_handlers.py
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from branchstock.api.errors import BizError, biz_error_handler
from branchstock.api.problem import ProblemDetail, make_problem

logger = logging.getLogger("branchstock")

TRACE_HEADER = "X-Trace-Id"


def _trace_id(req: Request) -> str:
    """优先沿用调用方传入的 X-Trace-Id，便于跨门店单据串联日志"""
    incoming = req.headers.get(TRACE_HEADER)
    return incoming or f"t_{uuid.uuid4().hex[:12]}"


def _request_ctx(req: Request) -> Dict[str, Any]:
    return {"path": req.url.path, "method": req.method}


def _respond(status_code: int, content: Dict[str, Any]) -> JSONResponse:
    headers = {TRACE_HEADER: content["trace_id"]} if content.get("trace_id") else None
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """所有错误统一落成 Problem 形状（见 branchstock.api.problem）"""

    @app.exception_handler(BizError)
    async def _biz_exc(req: Request, exc: BizError):
        trace_id = _trace_id(req)
        logger.info("biz error [%s] %s %s: %s", trace_id, req.method, exc.code, exc.message)
        resp = biz_error_handler(req, exc, trace_id=trace_id)
        resp.headers[TRACE_HEADER] = trace_id
        return resp

    @app.exception_handler(RequestValidationError)
    async def _validation_exc(req: Request, exc: RequestValidationError):
        details: List[ProblemDetail] = []
        for e in exc.errors():
            # loc 形如 ("body", "items", 0, "quantity")，去掉来源段
            loc = [str(p) for p in e.get("loc", ()) if p not in ("body", "query", "path")]
            details.append(
                {
                    "type": "validation",
                    "path": ".".join(loc) or "request",
                    "reason": str(e.get("msg") or e.get("type") or "invalid"),
                }
            )
        return _respond(
            422,
            make_problem(
                status_code=422,
                error_code="request_validation_error",
                message="请求参数不合法",
                context=_request_ctx(req),
                details=details,
                trace_id=_trace_id(req),
            ),
        )

    @app.exception_handler(StarletteHTTPException)
    async def _http_exc(req: Request, exc: StarletteHTTPException):
        msg = str(exc.detail) if exc.detail else "请求被拒绝"
        return _respond(
            int(exc.status_code),
            make_problem(
                status_code=int(exc.status_code),
                error_code="http_error",
                message=msg,
                context=_request_ctx(req),
                trace_id=_trace_id(req),
            ),
        )

    @app.exception_handler(Exception)
    async def _unhandled_exc(req: Request, exc: Exception):
        trace_id = _trace_id(req)
        logger.exception("unhandled error [%s] %s %s", trace_id, req.method, req.url.path)
        return _respond(
            500,
            make_problem(
                status_code=500,
                error_code="internal_error",
                message="系统异常，请稍后重试",
                context=_request_ctx(req),
                trace_id=trace_id,
            ),
        )
