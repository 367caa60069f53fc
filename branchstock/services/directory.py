# branchstock/services/directory.py
"""
协作方端口的默认实现：读本地镜像表（branches / products / purchase_orders / branch_manager_codes）。
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from branchstock.api.errors import EntityNotFound, InvalidStateTransition, ValidationError
from branchstock.core.security import verify_manager_code_hash
from branchstock.models.branch import Branch, BranchManagerCode
from branchstock.models.enums import PurchaseOrderStatus
from branchstock.models.product import Product
from branchstock.models.purchase_order import PurchaseOrder


class DbProductCatalog:
    async def get_product(self, session: AsyncSession, product_id: int) -> Optional[Product]:
        return await session.get(Product, int(product_id))


class DbBranchDirectory:
    async def get_branch(self, session: AsyncSession, branch_id: int) -> Optional[Branch]:
        return await session.get(Branch, int(branch_id))

    async def require_active(self, session: AsyncSession, branch_id: int, *, path: str) -> Branch:
        b = await self.get_branch(session, branch_id)
        if b is None:
            raise EntityNotFound(f"门店不存在：branch_id={branch_id}", context={"branch_id": int(branch_id)})
        if not b.is_active:
            raise ValidationError(
                f"门店已停用：branch_id={branch_id}",
                context={"branch_id": int(branch_id)},
                details=[{"type": "validation", "path": path, "branch_id": int(branch_id), "reason": "branch_inactive"}],
            )
        return b


class DbPurchaseOrders:
    async def get_in_transit_order(self, session: AsyncSession, purchase_order_id: int) -> PurchaseOrder:
        stmt = (
            select(PurchaseOrder)
            .where(PurchaseOrder.id == int(purchase_order_id))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        po = (await session.execute(stmt)).scalars().first()
        if po is None:
            raise EntityNotFound(
                f"采购单不存在：purchase_order_id={purchase_order_id}",
                context={"purchase_order_id": int(purchase_order_id)},
            )
        if po.status != PurchaseOrderStatus.IN_TRANSIT.value:
            raise InvalidStateTransition(
                f"采购单 {po.order_no} 当前状态为 {po.status}，只有 InTransit 可以收货",
                context={"purchase_order_id": int(po.id)},
                details=[
                    {
                        "type": "state",
                        "path": "purchase_order.status",
                        "expected": PurchaseOrderStatus.IN_TRANSIT.value,
                        "actual": po.status,
                    }
                ],
            )
        return po

    async def mark_received(self, session: AsyncSession, purchase_order_id: int, *, received_at: datetime) -> None:
        # 条件写：防止同一采购单被并发收货两次
        stmt = (
            update(PurchaseOrder)
            .where(
                PurchaseOrder.id == int(purchase_order_id),
                PurchaseOrder.status == PurchaseOrderStatus.IN_TRANSIT.value,
            )
            .values(status=PurchaseOrderStatus.RECEIVED.value, received_at=received_at)
            .returning(PurchaseOrder.id)
            .execution_options(synchronize_session="fetch")
        )
        if (await session.execute(stmt)).first() is None:
            raise InvalidStateTransition(
                f"采购单已被收货：purchase_order_id={purchase_order_id}",
                context={"purchase_order_id": int(purchase_order_id)},
            )


class DbManagerCodes:
    async def verify_manager_code(self, session: AsyncSession, branch_id: int, code: str) -> bool:
        row = (
            await session.execute(
                select(BranchManagerCode.code_hash).where(BranchManagerCode.branch_id == int(branch_id))
            )
        ).first()
        if row is None:
            return False
        return verify_manager_code_hash(code, row[0])
