# branchstock/services/activity_writer.py
from __future__ import annotations

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from branchstock.models.activity_record import ActivityRecord

logger = logging.getLogger("branchstock.audit")


def _jsonable(v: Any) -> Any:
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    if isinstance(v, Decimal):
        return str(v)
    if isinstance(v, dict):
        return {str(k): _jsonable(x) for k, x in v.items()}
    if isinstance(v, (list, tuple)):
        return [_jsonable(x) for x in v]
    return v


class ActivityWriter:
    """
    统一活动记录写入器：

    - 唯一职责：往 activity_records 表写一行（与业务写入同一事务，不自行提交）。
    - 字段约定：
        * action       动作，例如 "TRANSFER_CREATED" / "BORROW_APPROVED"
        * entity_type  实体类型，例如 "transfer" / "batch" / "delivery" / "ledger"
        * entity_id    实体主键或业务号
        * before/after 状态快照（任意 JSON）
        * trace_id     链路 ID
    """

    @staticmethod
    async def write(
        session: AsyncSession,
        *,
        action: str,
        entity_type: str,
        entity_id: Any,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        performed_by: Optional[str] = None,
        branch_id: Optional[int] = None,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> ActivityRecord:
        rec = ActivityRecord(
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id),
            before_state=_jsonable(before) if before is not None else None,
            after_state=_jsonable(after) if after is not None else None,
            performed_by=performed_by,
            branch_id=branch_id,
            reason=reason,
            notes=notes,
            trace_id=trace_id,
        )
        session.add(rec)
        await session.flush()

        logger.debug(
            "[activity] %s %s:%s | %s",
            action,
            entity_type,
            entity_id,
            json.dumps(_jsonable(after or {}), ensure_ascii=False),
        )
        return rec
