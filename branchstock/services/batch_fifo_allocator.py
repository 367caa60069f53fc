# branchstock/services/batch_fifo_allocator.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from branchstock.api.errors import (
    BatchNotFound,
    BatchUsageMismatch,
    InsufficientStock,
    ValidationError,
)
from branchstock.models.enums import BatchStatus
from branchstock.models.stock_batch import StockBatch


@dataclass(frozen=True)
class PlannedLeg:
    """分配计划中的一段：从 batch_id 拿 take 件（尚未落库）"""

    batch_id: int
    branch_id: int
    product_id: int
    take: int
    unit_cost: Decimal
    origin_batch_id: Optional[int]
    expiration_date: Optional[date]
    batch_number: str


@dataclass(frozen=True)
class BatchConsumption:
    """已落库的扣减明细（可追溯到来源批次）"""

    batch_id: int
    quantity: int
    unit_cost: Decimal
    origin_batch_id: Optional[int]
    expiration_date: Optional[date]
    batch_number: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": int(self.batch_id),
            "quantity": int(self.quantity),
            "unit_cost": str(self.unit_cost),
            "origin_batch_id": self.origin_batch_id,
            "expiration_date": self.expiration_date.isoformat() if self.expiration_date else None,
            "batch_number": self.batch_number,
        }


def _leg(b: StockBatch, take: int) -> PlannedLeg:
    return PlannedLeg(
        batch_id=int(b.id),
        branch_id=int(b.branch_id),
        product_id=int(b.product_id),
        take=int(take),
        unit_cost=Decimal(b.unit_cost or 0),
        origin_batch_id=b.origin_batch_id,
        expiration_date=b.expiration_date,
        batch_number=b.batch_number,
    )


def fifo_sorted(batches: Sequence[StockBatch]) -> List[StockBatch]:
    """排序规则：expiration_date ASC (NULL LAST), batch_number ASC"""
    return sorted(batches, key=lambda b: (b.expiration_date is None, b.expiration_date, b.batch_number))


def _require_positive(quantity: int, *, path: str) -> int:
    q = int(quantity)
    if q <= 0:
        raise ValidationError(
            f"数量必须大于 0（quantity={quantity}）",
            details=[{"type": "validation", "path": path, "reason": "quantity_must_be_positive"}],
        )
    return q


class BatchFifoAllocator:
    """
    批次分配器（只读 + 锁，只产出计划，不写库）

    核心思想：
    ------------------------------------------
    • 分配维度： (branch_id, product_id, usage_type)
    • 只从 status=active 且 remaining>0 的批次分配
    • expiration_date ASC，NULL 排最后；同到期日按 batch_number ASC
    • 先算完整计划，不够直接抛 InsufficientStock（零副作用）
    • reserved：同一操作内前面几行已经计划占用的数量 {batch_id: qty}，
      多行操作命中同一批次时据此扣掉，计划函数会原地累加
    ------------------------------------------

    使用方式（必须由外层控制事务）：

        legs = await allocator.plan_fifo(session, ...)
        consumed = await apply_legs(session, legs, ...)
    """

    async def candidates(
        self,
        session: AsyncSession,
        *,
        branch_id: int,
        product_id: int,
        usage_type: str,
        for_update: bool = True,
    ) -> List[StockBatch]:
        stmt = select(StockBatch).where(
            StockBatch.branch_id == int(branch_id),
            StockBatch.product_id == int(product_id),
            StockBatch.usage_type == str(usage_type),
            StockBatch.status == BatchStatus.ACTIVE.value,
            StockBatch.remaining_quantity > 0,
        )
        if for_update:
            stmt = stmt.with_for_update()
        stmt = stmt.execution_options(populate_existing=True)
        rows = (await session.execute(stmt)).scalars().all()
        return fifo_sorted(rows)

    async def plan_fifo(
        self,
        session: AsyncSession,
        *,
        branch_id: int,
        product_id: int,
        quantity: int,
        usage_type: str,
        reserved: Optional[Dict[int, int]] = None,
        path: str = "allocate_fifo",
    ) -> List[PlannedLeg]:
        need = _require_positive(quantity, path=path)
        reserved = reserved if reserved is not None else {}

        seq = await self.candidates(
            session, branch_id=branch_id, product_id=product_id, usage_type=usage_type
        )

        # 贪心切片
        remaining = need
        legs: List[PlannedLeg] = []
        available = 0
        for b in seq:
            free = int(b.remaining_quantity) - int(reserved.get(b.id, 0))
            if free <= 0:
                continue
            available += free
            if remaining <= 0:
                continue
            take = min(remaining, free)
            legs.append(_leg(b, take))
            remaining -= take

        if remaining > 0:
            raise InsufficientStock(
                "库存不足，无法按 FIFO 完成分配。",
                required_qty=need,
                available_qty=available,
                context={
                    "branch_id": int(branch_id),
                    "product_id": int(product_id),
                    "usage_type": str(usage_type),
                },
                path=path,
            )

        for lg in legs:
            reserved[lg.batch_id] = reserved.get(lg.batch_id, 0) + lg.take
        return legs

    async def plan_specific(
        self,
        session: AsyncSession,
        *,
        batch_id: int,
        quantity: int,
        usage_type: str,
        branch_id: Optional[int] = None,
        product_id: Optional[int] = None,
        reserved: Optional[Dict[int, int]] = None,
        path: str = "allocate_specific",
    ) -> PlannedLeg:
        """手选批次：存在性 / 归属 / 用途 / 数量 四项校验，全部通过才产出计划"""
        need = _require_positive(quantity, path=path)
        reserved = reserved if reserved is not None else {}

        stmt = (
            select(StockBatch)
            .where(StockBatch.id == int(batch_id))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        b = (await session.execute(stmt)).scalars().first()

        ctx: Dict[str, Any] = {"batch_id": int(batch_id)}
        if b is None:
            raise BatchNotFound(f"批次不存在：batch_id={batch_id}", context=ctx)

        if (branch_id is not None and int(b.branch_id) != int(branch_id)) or (
            product_id is not None and int(b.product_id) != int(product_id)
        ):
            raise BatchNotFound(
                f"批次 {batch_id} 不属于该门店 / 商品",
                context=ctx,
                details=[
                    {
                        "type": "batch",
                        "path": path,
                        "batch_id": int(batch_id),
                        "reason": "batch_not_in_scope",
                        "expected": f"branch={branch_id}, product={product_id}",
                        "actual": f"branch={b.branch_id}, product={b.product_id}",
                    }
                ],
            )

        if str(b.usage_type) != str(usage_type):
            raise BatchUsageMismatch(
                f"批次 {b.batch_number} 用途为 {b.usage_type}，与所选用途 {usage_type} 不符",
                context=ctx,
                details=[
                    {
                        "type": "usage",
                        "path": path,
                        "batch_id": int(batch_id),
                        "expected": str(usage_type),
                        "actual": str(b.usage_type),
                    }
                ],
            )

        free = int(b.remaining_quantity) - int(reserved.get(b.id, 0))
        if b.status != BatchStatus.ACTIVE.value:
            free = 0
        if need > free:
            raise InsufficientStock(
                f"批次 {b.batch_number} 可用数量不足（status={b.status}）",
                required_qty=need,
                available_qty=max(free, 0),
                context={**ctx, "branch_id": int(b.branch_id), "product_id": int(b.product_id)},
                path=path,
            )

        reserved[b.id] = reserved.get(b.id, 0) + need
        return _leg(b, need)

    async def plan_by_source(
        self,
        session: AsyncSession,
        *,
        branch_id: int,
        product_id: int,
        source_reference: str,
        usage_type: str,
        quantity: int,
        preferred_batch_id: Optional[int] = None,
        reserved: Optional[Dict[int, int]] = None,
        path: str = "return_pickup",
    ) -> List[PlannedLeg]:
        """
        按来源单据取回：先拿 preferred 批次，不足部分在同来源（source_reference）、
        同用途（usage_type）的其余活跃批次里按 FIFO 补齐。
        """
        need = _require_positive(quantity, path=path)
        reserved = reserved if reserved is not None else {}

        stmt = (
            select(StockBatch)
            .where(
                StockBatch.branch_id == int(branch_id),
                StockBatch.product_id == int(product_id),
                StockBatch.source_reference == str(source_reference),
                StockBatch.usage_type == str(usage_type),
                StockBatch.status == BatchStatus.ACTIVE.value,
                StockBatch.remaining_quantity > 0,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        rows = fifo_sorted((await session.execute(stmt)).scalars().all())
        if preferred_batch_id is not None:
            rows.sort(key=lambda b: b.id != int(preferred_batch_id))

        remaining = need
        available = 0
        legs: List[PlannedLeg] = []
        for b in rows:
            free = int(b.remaining_quantity) - int(reserved.get(b.id, 0))
            if free <= 0:
                continue
            available += free
            if remaining <= 0:
                continue
            take = min(remaining, free)
            legs.append(_leg(b, take))
            remaining -= take

        if remaining > 0:
            raise InsufficientStock(
                "收货方来源批次剩余不足，无法退回（可能已售出）。",
                required_qty=need,
                available_qty=available,
                context={
                    "branch_id": int(branch_id),
                    "product_id": int(product_id),
                    "source_reference": str(source_reference),
                    "usage_type": str(usage_type),
                },
                path=path,
            )

        for lg in legs:
            reserved[lg.batch_id] = reserved.get(lg.batch_id, 0) + lg.take
        return legs
