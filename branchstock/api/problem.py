# branchstock/api/problem.py
"""
错误响应体（Problem）：

    {
      "error_code": "insufficient_stock",
      "message": "...",
      "http_status": 409,
      "context": {"branch_id": 1, "product_id": 10, "path": "/transfers", "method": "POST"},
      "details": [{"type": "shortage", "path": "items[0]", "required_qty": 11, "available_qty": 10, ...}],
      "next_actions": [{"action": "refresh_stock", "label": "刷新库存"}],
      "trace_id": "t_..."
    }

空字段不输出；details / next_actions 保持调用方给出的顺序。
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence, TypedDict


class ProblemDetail(TypedDict, total=False):
    # validation | shortage | batch | usage | state | ledger
    type: str
    path: str
    reason: str

    branch_id: int
    product_id: int
    batch_id: int
    item_id: int

    required_qty: int
    available_qty: int
    short_qty: int

    expected: str
    actual: str


class NextAction(TypedDict, total=False):
    action: str
    label: str


def make_problem(
    *,
    status_code: int,
    error_code: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    details: Optional[Sequence[ProblemDetail]] = None,
    next_actions: Optional[Sequence[NextAction]] = None,
    trace_id: Optional[str] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "error_code": str(error_code),
        "message": str(message),
        "http_status": int(status_code),
    }
    optional = (
        ("context", dict(context) if context else None),
        ("details", [dict(d) for d in details] if details else None),
        ("next_actions", [dict(a) for a in next_actions] if next_actions else None),
        ("trace_id", trace_id),
    )
    for key, value in optional:
        if value:
            body[key] = value
    return body
