# tests/helpers/inventory.py
from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from branchstock.core.security import hash_manager_code
from branchstock.models.activity_record import ActivityRecord
from branchstock.models.batch_movement import BatchMovement
from branchstock.models.branch import Branch, BranchManagerCode
from branchstock.models.enums import BatchStatus, PurchaseOrderStatus, SourceType, UsageType
from branchstock.models.product import Product
from branchstock.models.purchase_order import PurchaseOrder, PurchaseOrderLine
from branchstock.models.stock_batch import StockBatch

__all__ = [
    "ensure_branch",
    "ensure_product",
    "seed_batch",
    "seed_purchase_order",
    "set_manager_code",
    "remaining_of",
    "movements_of",
    "activities",
]


# ------------------------------------------------------------------------------
# 主数据
# ------------------------------------------------------------------------------


async def ensure_branch(session: AsyncSession, branch_id: int, *, name: Optional[str] = None, active: bool = True) -> Branch:
    b = await session.get(Branch, branch_id)
    if b is None:
        b = Branch(id=branch_id, name=name or f"BR-{branch_id}", is_active=active)
        session.add(b)
        await session.flush()
    return b


async def ensure_product(
    session: AsyncSession,
    product_id: int,
    *,
    shelf_life: Optional[str] = "12 months",
    min_stock: int = 0,
) -> Product:
    p = await session.get(Product, product_id)
    if p is None:
        p = Product(
            id=product_id,
            sku=f"SKU-{product_id:04d}",
            name=f"UT-PRODUCT-{product_id}",
            shelf_life=shelf_life,
            min_stock=min_stock,
        )
        session.add(p)
        await session.flush()
    return p


async def set_manager_code(session: AsyncSession, branch_id: int, code: str) -> None:
    session.add(BranchManagerCode(branch_id=branch_id, code_hash=hash_manager_code(code)))
    await session.flush()


# ------------------------------------------------------------------------------
# 批次造数：直接落表，不走流水（只当作历史库存）
# ------------------------------------------------------------------------------


async def seed_batch(
    session: AsyncSession,
    *,
    branch_id: int,
    product_id: int,
    code: str,
    qty: int,
    days: Optional[int] = 30,
    usage_type: str = UsageType.OTC.value,
    unit_cost: str = "10.00",
    original: Optional[int] = None,
    status: str = BatchStatus.ACTIVE.value,
    source_reference: str = "PO-SEED",
    source_type: str = SourceType.PURCHASE.value,
) -> StockBatch:
    """days=None → 无到期日（FIFO 排最后）"""
    await ensure_branch(session, branch_id)
    await ensure_product(session, product_id)
    b = StockBatch(
        branch_id=branch_id,
        product_id=product_id,
        batch_number=code,
        usage_type=usage_type,
        original_quantity=original if original is not None else qty,
        remaining_quantity=qty,
        unit_cost=Decimal(unit_cost),
        expiration_date=(date.today() + timedelta(days=days)) if days is not None else None,
        received_date=date.today(),
        status=status,
        source_type=source_type,
        source_reference=source_reference,
        version=1,
    )
    session.add(b)
    await session.flush()
    return b


async def seed_purchase_order(
    session: AsyncSession,
    *,
    order_no: str,
    branch_id: int,
    lines: Sequence[Tuple[int, int, str]],
    status: str = PurchaseOrderStatus.IN_TRANSIT.value,
) -> PurchaseOrder:
    """lines: [(product_id, ordered_quantity, unit_price), ...]"""
    await ensure_branch(session, branch_id)
    po = PurchaseOrder(order_no=order_no, branch_id=branch_id, status=status)
    session.add(po)
    await session.flush()
    for product_id, ordered, price in lines:
        await ensure_product(session, product_id)
        session.add(
            PurchaseOrderLine(
                order_id=po.id,
                product_id=product_id,
                ordered_quantity=ordered,
                unit_price=Decimal(price),
            )
        )
    await session.flush()
    return po


# ------------------------------------------------------------------------------
# 读
# ------------------------------------------------------------------------------


async def remaining_of(session: AsyncSession, batch_id: int) -> Tuple[int, str]:
    row = (
        await session.execute(
            select(StockBatch.remaining_quantity, StockBatch.status)
            .where(StockBatch.id == batch_id)
            .execution_options(populate_existing=True)
        )
    ).one()
    return int(row[0]), str(row[1])


async def movements_of(session: AsyncSession, *, ref: str) -> List[BatchMovement]:
    rows = await session.execute(
        select(BatchMovement).where(BatchMovement.ref == ref).order_by(BatchMovement.ref_line, BatchMovement.id)
    )
    return list(rows.scalars().all())


async def activities(session: AsyncSession, action: str) -> List[ActivityRecord]:
    rows = await session.execute(
        select(ActivityRecord).where(ActivityRecord.action == action).order_by(ActivityRecord.id)
    )
    return list(rows.scalars().all())
