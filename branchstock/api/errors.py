# branchstock/api/errors.py
"""
业务异常族（服务层只抛这些，不碰 HTTP）：

    BizError
    ├── ValidationError          422  输入不合法（缺到期日 / 数量<=0 / 周次越界 ...）
    │   ├── NoItemsChecked       422  收货一行都没勾选
    │   └── NoItemsApproved      422  借货审批一行都没批
    ├── InsufficientStock        409  可分配数量不足
    ├── BatchNotFound            404
    ├── BatchUsageMismatch       409  批次用途（otc / salon-use）与声明不符
    ├── InvalidStateTransition   409  状态不对 / 操作方门店不对
    ├── ConcurrentModification   409  条件写未命中（被并发修改）
    ├── EntityNotFound           404
    ├── ManagerCodeRejected      403  强制调整授权码校验失败
    └── ReconciliationDivergence 409  台账与批次之和不一致（只记录，不抛出）

ReconciliationDivergence 只用于记录（自动纠正 + 写活动记录），不向调用方抛出。
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from fastapi import Request
from fastapi.responses import JSONResponse

from branchstock.api.problem import NextAction, ProblemDetail, make_problem


class BizError(Exception):
    code = "biz_error"
    status = 400

    def __init__(
        self,
        message: str,
        code: str | None = None,
        status: int | None = None,
        *,
        context: Optional[Dict[str, Any]] = None,
        details: Optional[Sequence[ProblemDetail]] = None,
        next_actions: Optional[Sequence[NextAction]] = None,
    ):
        super().__init__(message)
        if code:
            self.code = code
        if status:
            self.status = status
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})
        self.details: List[ProblemDetail] = list(details or [])
        self.next_actions: List[NextAction] = list(next_actions or [])

    def to_problem(self, *, trace_id: Optional[str] = None, request_ctx: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        ctx: Dict[str, Any] = dict(request_ctx or {})
        ctx.update(self.context)
        return make_problem(
            status_code=self.status,
            error_code=self.code,
            message=self.message,
            context=ctx or None,
            details=self.details or None,
            next_actions=self.next_actions or None,
            trace_id=trace_id,
        )


class ValidationError(BizError):
    code = "validation_error"
    status = 422


class NoItemsChecked(ValidationError):
    code = "no_items_checked"


class NoItemsApproved(ValidationError):
    code = "no_items_approved"


class InsufficientStock(BizError):
    code = "insufficient_stock"
    status = 409

    def __init__(
        self,
        message: str,
        *,
        required_qty: int,
        available_qty: int,
        context: Optional[Dict[str, Any]] = None,
        details: Optional[Sequence[ProblemDetail]] = None,
        path: str = "allocate",
    ):
        self.required_qty = int(required_qty)
        self.available_qty = int(available_qty)
        shortage: ProblemDetail = {
            "type": "shortage",
            "path": path,
            "required_qty": self.required_qty,
            "available_qty": self.available_qty,
            "short_qty": max(0, self.required_qty - self.available_qty),
            "reason": "insufficient_stock",
        }
        for k in ("product_id", "batch_id", "branch_id"):
            if context and context.get(k) is not None:
                shortage[k] = int(context[k])  # type: ignore[literal-required]
        super().__init__(
            message,
            context=context,
            details=[shortage, *(details or [])],
            next_actions=[
                {"action": "refresh_stock", "label": "刷新库存"},
                {"action": "adjust_to_available", "label": "按可用库存调整数量"},
            ],
        )


class BatchNotFound(BizError):
    code = "batch_not_found"
    status = 404


class BatchUsageMismatch(BizError):
    code = "batch_usage_mismatch"
    status = 409


class InvalidStateTransition(BizError):
    code = "invalid_state_transition"
    status = 409


class ConcurrentModification(BizError):
    code = "concurrent_modification"
    status = 409


class EntityNotFound(BizError):
    code = "not_found"
    status = 404


class ManagerCodeRejected(BizError):
    code = "manager_code_rejected"
    status = 403


class ReconciliationDivergence(BizError):
    """对账发现的未解释差异；台账已按批次之和纠正，只留痕不抛出"""

    code = "reconciliation_divergence"
    status = 409

    def __init__(self, *, branch_id: int, product_id: int, expected: int, actual: int):
        self.expected = int(expected)
        self.actual = int(actual)
        super().__init__(
            f"台账与批次之和不一致：ledger={self.expected} batches={self.actual}",
            context={"branch_id": int(branch_id), "product_id": int(product_id)},
            details=[
                {
                    "type": "ledger",
                    "path": "real_time_stock",
                    "expected": str(self.expected),
                    "actual": str(self.actual),
                    "reason": "reconciliation_divergence",
                }
            ],
        )

    @property
    def action(self) -> str:
        return self.code.upper()


def biz_error_handler(req: Request, exc: BizError, *, trace_id: Optional[str] = None) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status,
        content=exc.to_problem(
            trace_id=trace_id,
            request_ctx={"path": getattr(req.url, "path", ""), "method": req.method},
        ),
    )
