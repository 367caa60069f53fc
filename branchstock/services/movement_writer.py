from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Union

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from branchstock.models.batch_movement import BatchMovement
from branchstock.models.enums import MovementReason

UTC = timezone.utc


def _dialect_insert(session: AsyncSession):
    name = session.get_bind().dialect.name
    if name == "postgresql":
        return pg_insert
    if name == "sqlite":
        return sqlite_insert
    raise RuntimeError(f"unsupported dialect for batch_movements: {name}")


async def write_movement(
    session: AsyncSession,
    *,
    batch_id: int,
    branch_id: int,
    product_id: int,
    reason: Union[str, MovementReason],
    delta: int,
    after_qty: int,
    ref: str,
    ref_line: int = 1,
    occurred_at: Optional[datetime] = None,
    trace_id: Optional[str] = None,
) -> int:
    """
    幂等批次流水写入：

    - 唯一键：uq_batch_movements_batch_reason_ref_line
        (batch_id, reason, ref, ref_line)
    - 命中幂等返回 0，否则返回生成的 id
    """
    reason_val = reason.value if isinstance(reason, MovementReason) else str(reason)
    insert = _dialect_insert(session)
    stmt = (
        insert(BatchMovement)
        .values(
            batch_id=int(batch_id),
            branch_id=int(branch_id),
            product_id=int(product_id),
            reason=reason_val,
            ref=str(ref),
            ref_line=int(ref_line),
            delta=int(delta),
            after_qty=int(after_qty),
            occurred_at=occurred_at or datetime.now(UTC),
            trace_id=trace_id,
        )
        .on_conflict_do_nothing(index_elements=["batch_id", "reason", "ref", "ref_line"])
        .returning(BatchMovement.id)
    )

    res = await session.execute(stmt)
    new_id = res.scalar_one_or_none()
    return int(new_id or 0)
