# branchstock/services/batch_store_write.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Optional, Sequence, Union

import sqlalchemy as sa
from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession

from branchstock.api.errors import ConcurrentModification, ValidationError
from branchstock.models.enums import BatchStatus, MovementReason, SourceType, UsageType
from branchstock.models.stock_batch import StockBatch
from branchstock.services.batch_fifo_allocator import BatchConsumption, PlannedLeg
from branchstock.services.movement_writer import write_movement

UTC = timezone.utc
logger = logging.getLogger("branchstock.batches")


@dataclass
class BatchIn:
    """新批次描述（采购收货 / 调拨到货 / 退回兜底）"""

    branch_id: int
    product_id: int
    batch_number: str
    usage_type: str
    quantity: int
    unit_cost: Decimal
    expiration_date: Optional[date]
    received_date: date
    source_type: str
    source_reference: str
    origin_batch_id: Optional[int] = None
    received_by: Optional[str] = None


def _validate_batch_in(data: BatchIn) -> None:
    problems: List[dict] = []
    if data.expiration_date is None:
        problems.append({"type": "validation", "path": "expiration_date", "reason": "required"})
    if int(data.quantity) <= 0:
        problems.append({"type": "validation", "path": "quantity", "reason": "must_be_positive"})
    if Decimal(data.unit_cost) < 0:
        problems.append({"type": "validation", "path": "unit_cost", "reason": "must_not_be_negative"})
    if str(data.usage_type) not in {u.value for u in UsageType}:
        problems.append({"type": "validation", "path": "usage_type", "reason": "unknown", "actual": str(data.usage_type)})
    if str(data.source_type) not in {s.value for s in SourceType}:
        problems.append({"type": "validation", "path": "source_type", "reason": "unknown", "actual": str(data.source_type)})
    if not str(data.batch_number or "").strip():
        problems.append({"type": "validation", "path": "batch_number", "reason": "required"})
    if problems:
        raise ValidationError(
            "批次数据不合法，无法入库（到期日必填、数量须大于 0）",
            context={"branch_id": int(data.branch_id), "product_id": int(data.product_id)},
            details=problems,
        )


async def insert_batch(
    session: AsyncSession,
    data: BatchIn,
    *,
    reason: Union[str, MovementReason],
    ref: str,
    ref_line: int = 1,
    occurred_at: Optional[datetime] = None,
    trace_id: Optional[str] = None,
) -> StockBatch:
    _validate_batch_in(data)

    b = StockBatch(
        branch_id=int(data.branch_id),
        product_id=int(data.product_id),
        batch_number=str(data.batch_number).strip(),
        usage_type=str(data.usage_type),
        original_quantity=int(data.quantity),
        remaining_quantity=int(data.quantity),
        unit_cost=Decimal(data.unit_cost),
        expiration_date=data.expiration_date,
        received_date=data.received_date,
        status=BatchStatus.ACTIVE.value,
        source_type=str(data.source_type),
        source_reference=str(data.source_reference),
        origin_batch_id=data.origin_batch_id,
        received_by=data.received_by,
        version=1,
    )
    session.add(b)
    await session.flush()

    await write_movement(
        session,
        batch_id=b.id,
        branch_id=b.branch_id,
        product_id=b.product_id,
        reason=reason,
        delta=int(data.quantity),
        after_qty=int(data.quantity),
        ref=ref,
        ref_line=ref_line,
        occurred_at=occurred_at,
        trace_id=trace_id,
    )
    logger.info(
        "batch created id=%s no=%s branch=%s product=%s qty=%s exp=%s",
        b.id,
        b.batch_number,
        b.branch_id,
        b.product_id,
        b.original_quantity,
        b.expiration_date,
    )
    return b


async def apply_legs(
    session: AsyncSession,
    legs: Sequence[PlannedLeg],
    *,
    reason: Union[str, MovementReason],
    ref: str,
    ref_line_start: int = 1,
    occurred_at: Optional[datetime] = None,
    trace_id: Optional[str] = None,
) -> List[BatchConsumption]:
    """
    按计划逐段扣减：
        - 条件 UPDATE：WHERE status='active' AND remaining >= take（写时复核）
        - 未命中即视为并发修改，整体失败（由外层事务回滚）
        - 每段一条批次流水
    """
    ts = occurred_at or datetime.now(UTC)
    out: List[BatchConsumption] = []

    for idx, leg in enumerate(legs, start=ref_line_start):
        stmt = (
            update(StockBatch)
            .where(
                StockBatch.id == leg.batch_id,
                StockBatch.status == BatchStatus.ACTIVE.value,
                StockBatch.remaining_quantity >= leg.take,
            )
            .values(
                remaining_quantity=StockBatch.remaining_quantity - leg.take,
                status=sa.case(
                    (StockBatch.remaining_quantity - leg.take == 0, BatchStatus.DEPLETED.value),
                    else_=StockBatch.status,
                ),
                version=StockBatch.version + 1,
                updated_at=func.now(),
            )
            .returning(StockBatch.remaining_quantity)
            .execution_options(synchronize_session="fetch")
        )
        row = (await session.execute(stmt)).first()
        if row is None:
            raise ConcurrentModification(
                f"批次 {leg.batch_number} 已被并发修改，扣减未生效",
                context={"batch_id": leg.batch_id, "take": leg.take},
                details=[{"type": "batch", "path": f"legs[{idx}]", "batch_id": leg.batch_id, "reason": "conditional_update_missed"}],
            )

        await write_movement(
            session,
            batch_id=leg.batch_id,
            branch_id=leg.branch_id,
            product_id=leg.product_id,
            reason=reason,
            delta=-leg.take,
            after_qty=int(row[0]),
            ref=ref,
            ref_line=idx,
            occurred_at=ts,
            trace_id=trace_id,
        )
        out.append(
            BatchConsumption(
                batch_id=leg.batch_id,
                quantity=leg.take,
                unit_cost=leg.unit_cost,
                origin_batch_id=leg.origin_batch_id,
                expiration_date=leg.expiration_date,
                batch_number=leg.batch_number,
            )
        )

    return out


async def restore_quantity(
    session: AsyncSession,
    *,
    batch: StockBatch,
    quantity: int,
    reason: Union[str, MovementReason],
    ref: str,
    ref_line: int = 1,
    occurred_at: Optional[datetime] = None,
    trace_id: Optional[str] = None,
) -> int:
    """
    把数量加回既有批次：
        - 不得超过 original_quantity（条件 UPDATE 复核）
        - depleted → active；expired 保持 expired
    """
    q = int(quantity)
    if q <= 0:
        raise ValidationError(f"恢复数量必须大于 0（quantity={quantity}）")
    headroom = int(batch.original_quantity) - int(batch.remaining_quantity)
    if q > headroom:
        raise ValidationError(
            f"恢复后将超过批次原始数量：batch={batch.batch_number}",
            context={"batch_id": int(batch.id)},
            details=[
                {
                    "type": "batch",
                    "path": "restore",
                    "batch_id": int(batch.id),
                    "required_qty": q,
                    "available_qty": headroom,
                    "reason": "exceeds_original_quantity",
                }
            ],
        )

    stmt = (
        update(StockBatch)
        .where(
            StockBatch.id == batch.id,
            StockBatch.remaining_quantity + q <= StockBatch.original_quantity,
        )
        .values(
            remaining_quantity=StockBatch.remaining_quantity + q,
            status=sa.case(
                (StockBatch.status == BatchStatus.DEPLETED.value, BatchStatus.ACTIVE.value),
                else_=StockBatch.status,
            ),
            version=StockBatch.version + 1,
            updated_at=func.now(),
        )
        .returning(StockBatch.remaining_quantity)
        .execution_options(synchronize_session="fetch")
    )
    row = (await session.execute(stmt)).first()
    if row is None:
        raise ConcurrentModification(
            f"批次 {batch.batch_number} 已被并发修改，恢复未生效",
            context={"batch_id": int(batch.id), "quantity": q},
        )

    await write_movement(
        session,
        batch_id=batch.id,
        branch_id=batch.branch_id,
        product_id=batch.product_id,
        reason=reason,
        delta=q,
        after_qty=int(row[0]),
        ref=ref,
        ref_line=ref_line,
        occurred_at=occurred_at,
        trace_id=trace_id,
    )
    return int(row[0])


async def overwrite_remaining(
    session: AsyncSession,
    *,
    batch: StockBatch,
    new_remaining: int,
    ref: str,
    occurred_at: Optional[datetime] = None,
    trace_id: Optional[str] = None,
) -> int:
    """强制调整：直接覆盖 remaining（以读取时的 version 做乐观锁）"""
    target = int(new_remaining)
    if target < 0 or target > int(batch.original_quantity):
        raise ValidationError(
            f"调整后数量必须在 0..{batch.original_quantity} 之间（new_remaining={new_remaining}）",
            context={"batch_id": int(batch.id)},
        )

    before = int(batch.remaining_quantity)
    expected_version = int(batch.version)

    if target == 0:
        new_status = sa.case(
            (StockBatch.status == BatchStatus.EXPIRED.value, BatchStatus.EXPIRED.value),
            else_=BatchStatus.DEPLETED.value,
        )
    else:
        new_status = sa.case(
            (StockBatch.status == BatchStatus.DEPLETED.value, BatchStatus.ACTIVE.value),
            else_=StockBatch.status,
        )

    stmt = (
        update(StockBatch)
        .where(StockBatch.id == batch.id, StockBatch.version == expected_version)
        .values(
            remaining_quantity=target,
            status=new_status,
            version=StockBatch.version + 1,
            updated_at=func.now(),
        )
        .returning(StockBatch.remaining_quantity)
        .execution_options(synchronize_session="fetch")
    )
    row = (await session.execute(stmt)).first()
    if row is None:
        raise ConcurrentModification(
            f"批次 {batch.batch_number} 已被并发修改，强制调整未生效",
            context={"batch_id": int(batch.id), "expected_version": expected_version},
        )

    await write_movement(
        session,
        batch_id=batch.id,
        branch_id=batch.branch_id,
        product_id=batch.product_id,
        reason=MovementReason.FORCE_ADJUST,
        delta=target - before,
        after_qty=target,
        ref=ref,
        ref_line=expected_version,
        occurred_at=occurred_at,
        trace_id=trace_id,
    )
    return target


async def mark_expired(
    session: AsyncSession,
    *,
    today: date,
    branch_id: Optional[int] = None,
) -> List[int]:
    """到期清扫：active 且 expiration_date < today → expired（数量保留）"""
    conds = [
        StockBatch.status == BatchStatus.ACTIVE.value,
        StockBatch.expiration_date.is_not(None),
        StockBatch.expiration_date < today,
    ]
    if branch_id is not None:
        conds.append(StockBatch.branch_id == int(branch_id))

    stmt = (
        update(StockBatch)
        .where(*conds)
        .values(status=BatchStatus.EXPIRED.value, updated_at=func.now())
        .returning(StockBatch.id)
        .execution_options(synchronize_session="fetch")
    )
    rows = (await session.execute(stmt)).all()
    ids = [int(r[0]) for r in rows]
    if ids:
        logger.info("expiry sweep: %d batches marked expired (branch=%s, today=%s)", len(ids), branch_id, today)
    return ids
