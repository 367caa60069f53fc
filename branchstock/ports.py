# -*- coding: utf-8 -*-
from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from branchstock.models.product import Product
from branchstock.models.purchase_order import PurchaseOrder


class ProductCatalogPort(Protocol):
    async def get_product(self, session: AsyncSession, product_id: int) -> Optional[Product]: ...


class PurchaseOrderPort(Protocol):
    async def get_in_transit_order(
        self,
        session: AsyncSession,
        purchase_order_id: int,
    ) -> PurchaseOrder: ...

    async def mark_received(
        self,
        session: AsyncSession,
        purchase_order_id: int,
        *,
        received_at: datetime,
    ) -> None: ...


class ManagerCodePort(Protocol):
    async def verify_manager_code(self, session: AsyncSession, branch_id: int, code: str) -> bool: ...
