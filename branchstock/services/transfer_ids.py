# branchstock/services/transfer_ids.py
from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Sequence

from branchstock.api.errors import ValidationError

UTC = timezone.utc

# 每行可用的 ref_line 段数；行号 * LEG_SPAN + 段序号
LEG_SPAN = 10_000


def gen_transfer_no(from_branch_id: int, to_branch_id: int) -> str:
    now = datetime.now(UTC)
    return f"TR-{from_branch_id}-{to_branch_id}-{now.strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(3)}"


def gen_trace_id(transfer_no: str) -> str:
    return f"TRANSFER:{transfer_no}"


def leg_ref_line(line_no: int, leg_index: int) -> int:
    """批次流水 ref_line：行号 * LEG_SPAN + 段序号（同一单据内唯一）"""
    if not 0 <= int(leg_index) < LEG_SPAN:
        raise ValueError(f"leg_index out of range: {leg_index}")
    return int(line_no) * LEG_SPAN + int(leg_index)


def ensure_leg_span(legs: Sequence[object], *, path: str) -> None:
    """一行拆出的批次段数必须落在本行的 ref_line 区间内（段序号从 1 开始）"""
    if len(legs) >= LEG_SPAN:
        raise ValidationError(
            f"单行拆分批次过多（{len(legs)} 段），请拆成多行",
            details=[
                {
                    "type": "validation",
                    "path": path,
                    "reason": "too_many_batch_legs",
                    "expected": f"< {LEG_SPAN}",
                    "actual": str(len(legs)),
                }
            ],
        )
