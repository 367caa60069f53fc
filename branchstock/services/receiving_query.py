# branchstock/services/receiving_query.py
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from branchstock.api.errors import EntityNotFound
from branchstock.models.delivery_receipt import DeliveryReceipt


async def get_receipt(session: AsyncSession, receipt_id: int) -> DeliveryReceipt:
    stmt = (
        select(DeliveryReceipt)
        .where(DeliveryReceipt.id == int(receipt_id))
        .execution_options(populate_existing=True)
    )
    obj = (await session.execute(stmt)).scalars().first()
    if obj is None:
        raise EntityNotFound(f"收货单不存在：id={receipt_id}", context={"receipt_id": int(receipt_id)})
    return obj


async def list_receipts(
    session: AsyncSession,
    *,
    branch_id: int,
    time_from: Optional[datetime] = None,
    time_to: Optional[datetime] = None,
    limit: int = 100,
) -> List[DeliveryReceipt]:
    stmt = select(DeliveryReceipt).where(DeliveryReceipt.branch_id == int(branch_id))
    if time_from is not None:
        stmt = stmt.where(DeliveryReceipt.received_at >= time_from)
    if time_to is not None:
        stmt = stmt.where(DeliveryReceipt.received_at < time_to)
    stmt = stmt.order_by(DeliveryReceipt.received_at.desc(), DeliveryReceipt.id.desc()).limit(int(limit))
    return list((await session.execute(stmt)).scalars().all())
