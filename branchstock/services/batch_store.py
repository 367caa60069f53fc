# branchstock/services/batch_store.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple, Union

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from branchstock.api.errors import BatchNotFound
from branchstock.metrics import BATCH_ALLOC
from branchstock.models.enums import BatchStatus, MovementReason, SourceType
from branchstock.models.stock_batch import StockBatch
from branchstock.services.activity_writer import ActivityWriter
from branchstock.services.batch_fifo_allocator import BatchConsumption, BatchFifoAllocator
from branchstock.services.batch_store_write import (
    BatchIn,
    apply_legs,
    insert_batch,
    mark_expired,
    restore_quantity,
)

UTC = timezone.utc
logger = logging.getLogger("branchstock.batches")


@dataclass
class ReturnResult:
    batch_id: int
    quantity: int
    fallback_used: bool = False
    # 恢复后批次是否仍计入活跃库存（过期批次恢复数量但不计入）
    active: bool = True


@dataclass
class ExpirySweep:
    count: int = 0
    # 受影响的 (branch_id, product_id)，调用方据此对账
    touched: List[Tuple[int, int]] = field(default_factory=list)
    # 每个 (branch_id, product_id) 因过期移出活跃库存的数量（负数），对账时作为 applied_delta
    deltas: Dict[Tuple[int, int], int] = field(default_factory=dict)


class BatchStore:
    """
    批次存储（库存唯一真相）：

    - 分配：allocate_fifo / allocate_specific（先计划后写，写时条件复核）
    - 入库：replenish（到期日必填）
    - 退回：return_to_origin（恢复来源批次，必要时兜底新建）；收货方扣回由 allocator.plan_by_source 计划
    - 查询：sum_remaining / list_batches / expiring_batches / expired_batches
    - 到期清扫：sweep_expired

    不提交事务；调用方统一 commit / rollback。
    """

    def __init__(self, allocator: Optional[BatchFifoAllocator] = None) -> None:
        self.allocator = allocator or BatchFifoAllocator()

    # ------------------------------------------------------------------
    # 分配
    # ------------------------------------------------------------------
    async def allocate_fifo(
        self,
        session: AsyncSession,
        *,
        branch_id: int,
        product_id: int,
        quantity: int,
        usage_type: str,
        ref: str,
        reason: Union[str, MovementReason] = MovementReason.SALE,
        ref_line_start: int = 1,
        reserved: Optional[Dict[int, int]] = None,
        occurred_at: Optional[datetime] = None,
        trace_id: Optional[str] = None,
    ) -> List[BatchConsumption]:
        legs = await self.allocator.plan_fifo(
            session,
            branch_id=branch_id,
            product_id=product_id,
            quantity=quantity,
            usage_type=usage_type,
            reserved=reserved,
        )
        consumed = await apply_legs(
            session,
            legs,
            reason=reason,
            ref=ref,
            ref_line_start=ref_line_start,
            occurred_at=occurred_at,
            trace_id=trace_id,
        )
        BATCH_ALLOC.labels(mode="fifo").inc()
        logger.info(
            "allocate_fifo branch=%s product=%s usage=%s qty=%s legs=%s ref=%s",
            branch_id,
            product_id,
            usage_type,
            quantity,
            [(c.batch_number, c.quantity) for c in consumed],
            ref,
        )
        return consumed

    async def allocate_specific(
        self,
        session: AsyncSession,
        *,
        batch_id: int,
        quantity: int,
        usage_type: str,
        ref: str,
        branch_id: Optional[int] = None,
        product_id: Optional[int] = None,
        reason: Union[str, MovementReason] = MovementReason.SALE,
        ref_line: int = 1,
        reserved: Optional[Dict[int, int]] = None,
        occurred_at: Optional[datetime] = None,
        trace_id: Optional[str] = None,
    ) -> BatchConsumption:
        leg = await self.allocator.plan_specific(
            session,
            batch_id=batch_id,
            quantity=quantity,
            usage_type=usage_type,
            branch_id=branch_id,
            product_id=product_id,
            reserved=reserved,
        )
        consumed = await apply_legs(
            session,
            [leg],
            reason=reason,
            ref=ref,
            ref_line_start=ref_line,
            occurred_at=occurred_at,
            trace_id=trace_id,
        )
        BATCH_ALLOC.labels(mode="specific").inc()
        return consumed[0]

    # ------------------------------------------------------------------
    # 入库
    # ------------------------------------------------------------------
    async def replenish(
        self,
        session: AsyncSession,
        data: BatchIn,
        *,
        ref: Optional[str] = None,
        ref_line: int = 1,
        occurred_at: Optional[datetime] = None,
        trace_id: Optional[str] = None,
    ) -> StockBatch:
        reason = (
            MovementReason.TRANSFER_IN
            if str(data.source_type) == SourceType.TRANSFER_IN.value
            else MovementReason.RECEIPT
        )
        return await insert_batch(
            session,
            data,
            reason=reason,
            ref=ref or data.source_reference,
            ref_line=ref_line,
            occurred_at=occurred_at,
            trace_id=trace_id,
        )

    # ------------------------------------------------------------------
    # 退回
    # ------------------------------------------------------------------
    async def return_to_origin(
        self,
        session: AsyncSession,
        *,
        origin_batch_id: Optional[int],
        quantity: int,
        reason: str,
        ref: str,
        ref_line: int = 1,
        fallback: Optional[BatchIn] = None,
        performed_by: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        trace_id: Optional[str] = None,
    ) -> ReturnResult:
        origin: Optional[StockBatch] = None
        if origin_batch_id is not None:
            origin = await self.get_batch(session, origin_batch_id, for_update=True)

        if origin is not None:
            return await self.restore(
                session,
                batch=origin,
                quantity=quantity,
                reason=MovementReason.RETURN_IN,
                ref=ref,
                ref_line=ref_line,
                occurred_at=occurred_at,
                trace_id=trace_id,
            )

        if fallback is None:
            raise BatchNotFound(
                f"来源批次不存在，且未提供兜底批次：origin_batch_id={origin_batch_id}",
                context={"batch_id": origin_batch_id},
            )

        # 兜底：在来源门店新建一个退回批次（成本 / 到期日沿用原批次）
        seq = await self._count_with_prefix(session, fallback.branch_id, fallback.product_id, f"RET-{ref}-")
        fallback.batch_number = f"RET-{ref}-{seq + 1:03d}"
        fallback.quantity = int(quantity)
        created = await insert_batch(
            session,
            fallback,
            reason=MovementReason.RETURN_IN,
            ref=ref,
            ref_line=ref_line,
            occurred_at=occurred_at,
            trace_id=trace_id,
        )
        await ActivityWriter.write(
            session,
            action="RETURN_FALLBACK_BATCH_CREATED",
            entity_type="batch",
            entity_id=created.id,
            after={
                "batch_number": created.batch_number,
                "quantity": int(quantity),
                "missing_origin_batch_id": origin_batch_id,
            },
            performed_by=performed_by,
            branch_id=created.branch_id,
            reason=reason,
            trace_id=trace_id,
        )
        logger.warning(
            "return fallback: origin batch %s missing, created %s at branch %s",
            origin_batch_id,
            created.batch_number,
            created.branch_id,
        )
        return ReturnResult(batch_id=int(created.id), quantity=int(quantity), fallback_used=True)

    async def restore(
        self,
        session: AsyncSession,
        *,
        batch: StockBatch,
        quantity: int,
        reason: Union[str, MovementReason],
        ref: str,
        ref_line: int = 1,
        occurred_at: Optional[datetime] = None,
        trace_id: Optional[str] = None,
    ) -> ReturnResult:
        """把数量加回指定批次（待发调拨取消 / 退回来源批次）"""
        await restore_quantity(
            session,
            batch=batch,
            quantity=quantity,
            reason=reason,
            ref=ref,
            ref_line=ref_line,
            occurred_at=occurred_at,
            trace_id=trace_id,
        )
        fresh = await self.get_batch(session, batch.id)
        return ReturnResult(
            batch_id=int(batch.id),
            quantity=int(quantity),
            active=fresh is not None and fresh.is_active,
        )

    # ------------------------------------------------------------------
    # 到期清扫
    # ------------------------------------------------------------------
    async def sweep_expired(
        self,
        session: AsyncSession,
        *,
        today: Optional[date] = None,
        branch_id: Optional[int] = None,
    ) -> ExpirySweep:
        ids = await mark_expired(session, today=today or date.today(), branch_id=branch_id)
        if not ids:
            return ExpirySweep()
        rows = (
            await session.execute(
                select(StockBatch.branch_id, StockBatch.product_id, func.sum(StockBatch.remaining_quantity))
                .where(StockBatch.id.in_(ids))
                .group_by(StockBatch.branch_id, StockBatch.product_id)
                .order_by(StockBatch.branch_id, StockBatch.product_id)
            )
        ).all()
        deltas = {(int(r[0]), int(r[1])): -int(r[2] or 0) for r in rows}
        return ExpirySweep(count=len(ids), touched=list(deltas), deltas=deltas)

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------
    async def get_batch(self, session: AsyncSession, batch_id: int, *, for_update: bool = False) -> Optional[StockBatch]:
        stmt = select(StockBatch).where(StockBatch.id == int(batch_id))
        if for_update:
            stmt = stmt.with_for_update()
        stmt = stmt.execution_options(populate_existing=True)
        return (await session.execute(stmt)).scalars().first()

    async def require_batch(self, session: AsyncSession, batch_id: int) -> StockBatch:
        b = await self.get_batch(session, batch_id)
        if b is None:
            raise BatchNotFound(f"批次不存在：batch_id={batch_id}", context={"batch_id": int(batch_id)})
        return b

    async def sum_remaining(
        self,
        session: AsyncSession,
        *,
        branch_id: int,
        product_id: int,
        usage_type: Optional[str] = None,
    ) -> int:
        conds = [
            StockBatch.branch_id == int(branch_id),
            StockBatch.product_id == int(product_id),
            StockBatch.status == BatchStatus.ACTIVE.value,
        ]
        if usage_type is not None:
            conds.append(StockBatch.usage_type == str(usage_type))
        total = (
            await session.execute(select(func.coalesce(func.sum(StockBatch.remaining_quantity), 0)).where(*conds))
        ).scalar_one()
        return int(total or 0)

    async def list_batches(
        self,
        session: AsyncSession,
        *,
        branch_id: int,
        product_id: Optional[int] = None,
        status: Optional[str] = None,
        usage_type: Optional[str] = None,
    ) -> List[StockBatch]:
        stmt = select(StockBatch).where(StockBatch.branch_id == int(branch_id))
        if product_id is not None:
            stmt = stmt.where(StockBatch.product_id == int(product_id))
        if status:
            stmt = stmt.where(StockBatch.status == str(status))
        if usage_type:
            stmt = stmt.where(StockBatch.usage_type == str(usage_type))
        stmt = stmt.order_by(
            StockBatch.product_id,
            StockBatch.expiration_date.is_(None),
            StockBatch.expiration_date,
            StockBatch.batch_number,
        )
        return list((await session.execute(stmt)).scalars().all())

    async def expiring_batches(
        self,
        session: AsyncSession,
        *,
        branch_id: int,
        days_ahead: int = 30,
        today: Optional[date] = None,
    ) -> List[StockBatch]:
        """今天（含）起 days_ahead 天内到期、仍有余量的活跃批次"""
        d0 = today or date.today()
        stmt = (
            select(StockBatch)
            .where(
                StockBatch.branch_id == int(branch_id),
                StockBatch.status == BatchStatus.ACTIVE.value,
                StockBatch.remaining_quantity > 0,
                StockBatch.expiration_date.is_not(None),
                StockBatch.expiration_date >= d0,
                StockBatch.expiration_date <= d0 + timedelta(days=int(days_ahead)),
            )
            .order_by(StockBatch.expiration_date, StockBatch.batch_number)
        )
        return list((await session.execute(stmt)).scalars().all())

    async def expired_batches(
        self,
        session: AsyncSession,
        *,
        branch_id: int,
        today: Optional[date] = None,
    ) -> List[StockBatch]:
        """已标记 expired 或已过到期日但尚未清扫、仍有余量的批次"""
        d0 = today or date.today()
        stmt = (
            select(StockBatch)
            .where(
                StockBatch.branch_id == int(branch_id),
                StockBatch.remaining_quantity > 0,
                or_(
                    StockBatch.status == BatchStatus.EXPIRED.value,
                    (StockBatch.status == BatchStatus.ACTIVE.value) & (StockBatch.expiration_date < d0),
                ),
            )
            .order_by(StockBatch.expiration_date, StockBatch.batch_number)
        )
        return list((await session.execute(stmt)).scalars().all())

    async def has_any_batch(self, session: AsyncSession, *, branch_id: int, product_id: int) -> bool:
        row = (
            await session.execute(
                select(StockBatch.id)
                .where(StockBatch.branch_id == int(branch_id), StockBatch.product_id == int(product_id))
                .limit(1)
            )
        ).first()
        return row is not None

    @staticmethod
    async def _count_with_prefix(session: AsyncSession, branch_id: int, product_id: int, prefix: str) -> int:
        n = (
            await session.execute(
                select(func.count(StockBatch.id)).where(
                    StockBatch.branch_id == int(branch_id),
                    StockBatch.product_id == int(product_id),
                    StockBatch.batch_number.like(f"{prefix}%"),
                )
            )
        ).scalar_one()
        return int(n or 0)
