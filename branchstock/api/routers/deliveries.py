# branchstock/api/routers/deliveries.py
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from branchstock.db.session import get_session
from branchstock.schemas.delivery import DeliveryReceiptOut, DeliveryReceiveIn
from branchstock.services.receiving_reconciler import DeliveryLineIn, ReceivingReconciler

router = APIRouter(prefix="/deliveries", tags=["deliveries"])

svc = ReceivingReconciler()


@router.post("/receive", response_model=DeliveryReceiptOut, status_code=201)
async def receive_delivery(payload: DeliveryReceiveIn, session: AsyncSession = Depends(get_session)) -> DeliveryReceiptOut:
    """
    采购到货对账：

    - 采购单必须处于 InTransit
    - 只处理勾选行，每行 discrepancy = 实收 - 订货
    - 实收 > 0 的行生成一个采购批次，台账同步对账
    """
    try:
        receipt = await svc.reconcile_delivery(
            session,
            purchase_order_id=payload.purchase_order_id,
            lines=[
                DeliveryLineIn(
                    product_id=ln.product_id,
                    received_quantity=ln.received_quantity,
                    checked=ln.checked,
                    expiration_date=ln.expiration_date,
                )
                for ln in payload.items
            ],
            received_by=payload.received_by,
            received_at=payload.received_at,
            notes=payload.notes,
        )
        rid = receipt.id
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return DeliveryReceiptOut.model_validate(await svc.get_receipt(session, rid))


@router.get("", response_model=List[DeliveryReceiptOut])
async def list_deliveries(
    branch_id: int = Query(..., description="收货门店"),
    time_from: Optional[datetime] = Query(None, description="起始时间（含）"),
    time_to: Optional[datetime] = Query(None, description="结束时间（含）"),
    limit: int = Query(100, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
) -> List[DeliveryReceiptOut]:
    rows = await svc.list_receipts(session, branch_id=branch_id, time_from=time_from, time_to=time_to, limit=limit)
    return [DeliveryReceiptOut.model_validate(r) for r in rows]


@router.get("/{receipt_id}", response_model=DeliveryReceiptOut)
async def get_delivery(receipt_id: int, session: AsyncSession = Depends(get_session)) -> DeliveryReceiptOut:
    return DeliveryReceiptOut.model_validate(await svc.get_receipt(session, receipt_id))
