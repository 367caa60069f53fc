# branchstock/api/routers/batches.py
from __future__ import annotations

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from branchstock.db.session import get_session
from branchstock.models.enums import SourceType
from branchstock.schemas.batch import (
    AllocateFifoIn,
    AllocateSpecificIn,
    AllocationOut,
    BatchConsumptionOut,
    BatchOut,
    ReplenishIn,
    ReturnResultOut,
    ReturnToOriginIn,
    SumRemainingOut,
    SweepIn,
    SweepOut,
)
from branchstock.services.batch_store import BatchStore
from branchstock.services.batch_store_write import BatchIn
from branchstock.services.stock_ledger_service import StockLedgerService

router = APIRouter(prefix="/batches", tags=["batches"])

store = BatchStore()
ledger = StockLedgerService(store=store)


@router.get("", response_model=List[BatchOut])
async def list_batches(
    branch_id: int = Query(..., description="门店 ID"),
    product_id: Optional[int] = Query(None, description="按商品过滤"),
    status: Optional[str] = Query(None, description="active / depleted / expired"),
    usage_type: Optional[str] = Query(None, description="otc / salon-use"),
    session: AsyncSession = Depends(get_session),
) -> List[BatchOut]:
    rows = await store.list_batches(
        session, branch_id=branch_id, product_id=product_id, status=status, usage_type=usage_type
    )
    return [BatchOut.model_validate(b) for b in rows]


@router.get("/sum", response_model=SumRemainingOut)
async def sum_remaining(
    branch_id: int = Query(...),
    product_id: int = Query(...),
    usage_type: Optional[str] = Query(None, description="缺省 = 全部用途"),
    session: AsyncSession = Depends(get_session),
) -> SumRemainingOut:
    """活跃批次余量合计（即台账实时库存的来源）"""
    total = await store.sum_remaining(session, branch_id=branch_id, product_id=product_id, usage_type=usage_type)
    return SumRemainingOut(branch_id=branch_id, product_id=product_id, usage_type=usage_type, remaining=total)


@router.get("/expiring", response_model=List[BatchOut])
async def list_expiring(
    branch_id: int = Query(...),
    days_ahead: int = Query(30, ge=0, le=3650, description="未来 N 天内到期"),
    today: Optional[date] = Query(None),
    session: AsyncSession = Depends(get_session),
) -> List[BatchOut]:
    rows = await store.expiring_batches(session, branch_id=branch_id, days_ahead=days_ahead, today=today)
    return [BatchOut.model_validate(b) for b in rows]


@router.get("/expired", response_model=List[BatchOut])
async def list_expired(
    branch_id: int = Query(...),
    today: Optional[date] = Query(None),
    session: AsyncSession = Depends(get_session),
) -> List[BatchOut]:
    rows = await store.expired_batches(session, branch_id=branch_id, today=today)
    return [BatchOut.model_validate(b) for b in rows]


@router.get("/{batch_id}", response_model=BatchOut)
async def get_batch(batch_id: int, session: AsyncSession = Depends(get_session)) -> BatchOut:
    b = await store.require_batch(session, batch_id)
    return BatchOut.model_validate(b)


@router.post("/allocate-fifo", response_model=AllocationOut)
async def allocate_fifo(payload: AllocateFifoIn, session: AsyncSession = Depends(get_session)) -> AllocationOut:
    """
    按 FIFO（到期日早的先出，无到期日排最后）扣减：

    - 只动同门店、同商品、同用途的 active 批次
    - 库存不足 → 409 InsufficientStock，不做任何扣减
    """
    try:
        consumed = await store.allocate_fifo(
            session,
            branch_id=payload.branch_id,
            product_id=payload.product_id,
            quantity=payload.quantity,
            usage_type=payload.usage_type.value,
            ref=payload.ref,
        )
        await ledger.reconcile(
            session,
            branch_id=payload.branch_id,
            product_id=payload.product_id,
            applied_delta=-sum(c.quantity for c in consumed),
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return AllocationOut(
        ref=payload.ref,
        quantity=sum(c.quantity for c in consumed),
        consumed=[BatchConsumptionOut.model_validate(c) for c in consumed],
    )


@router.post("/{batch_id}/allocate", response_model=AllocationOut)
async def allocate_specific(
    batch_id: int,
    payload: AllocateSpecificIn,
    session: AsyncSession = Depends(get_session),
) -> AllocationOut:
    """从指定批次扣减（不回退到 FIFO）"""
    try:
        c = await store.allocate_specific(
            session,
            batch_id=batch_id,
            quantity=payload.quantity,
            usage_type=payload.usage_type.value,
            ref=payload.ref,
            branch_id=payload.branch_id,
            product_id=payload.product_id,
        )
        b = await store.require_batch(session, batch_id)
        await ledger.reconcile(session, branch_id=b.branch_id, product_id=b.product_id, applied_delta=-c.quantity)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return AllocationOut(ref=payload.ref, quantity=c.quantity, consumed=[BatchConsumptionOut.model_validate(c)])


@router.post("/replenish", response_model=BatchOut, status_code=201)
async def replenish(payload: ReplenishIn, session: AsyncSession = Depends(get_session)) -> BatchOut:
    try:
        b = await store.replenish(
            session,
            BatchIn(
                branch_id=payload.branch_id,
                product_id=payload.product_id,
                batch_number=payload.batch_number,
                usage_type=payload.usage_type.value,
                quantity=payload.quantity,
                unit_cost=payload.unit_cost,
                expiration_date=payload.expiration_date,
                received_date=payload.received_date or date.today(),
                source_type=payload.source_type.value,
                source_reference=payload.source_reference,
                origin_batch_id=payload.origin_batch_id,
                received_by=payload.received_by,
            ),
        )
        await ledger.reconcile(
            session,
            branch_id=payload.branch_id,
            product_id=payload.product_id,
            applied_delta=payload.quantity,
            performed_by=payload.received_by,
        )
        bid = b.id
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return BatchOut.model_validate(await store.require_batch(session, bid))


@router.post("/{batch_id}/return", response_model=ReturnResultOut)
async def return_to_origin(
    batch_id: int,
    payload: ReturnToOriginIn,
    session: AsyncSession = Depends(get_session),
) -> ReturnResultOut:
    """
    把数量加回来源批次：

    - 来源批次存在：恢复数量，depleted → active（expired 保持 expired）
    - 来源批次不存在：必须带 fallback，在来源门店新建 RET- 批次
    """
    fb = payload.fallback
    try:
        res = await store.return_to_origin(
            session,
            origin_batch_id=batch_id,
            quantity=payload.quantity,
            reason=payload.reason,
            ref=payload.ref,
            fallback=(
                BatchIn(
                    branch_id=fb.branch_id,
                    product_id=fb.product_id,
                    batch_number="",
                    usage_type=fb.usage_type.value,
                    quantity=payload.quantity,
                    unit_cost=fb.unit_cost,
                    expiration_date=fb.expiration_date,
                    received_date=date.today(),
                    source_type=SourceType.TRANSFER_IN.value,
                    source_reference=payload.ref,
                    received_by=payload.performed_by,
                )
                if fb is not None
                else None
            ),
            performed_by=payload.performed_by,
        )
        b = await store.require_batch(session, res.batch_id)
        if res.active:
            await ledger.reconcile(
                session,
                branch_id=b.branch_id,
                product_id=b.product_id,
                applied_delta=res.quantity,
                performed_by=payload.performed_by,
            )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return ReturnResultOut.model_validate(res)


@router.post("/sweep-expired", response_model=SweepOut)
async def sweep_expired(payload: SweepIn, session: AsyncSession = Depends(get_session)) -> SweepOut:
    """把已过到期日的 active 批次标记为 expired，并对受影响的台账重新对账"""
    try:
        sweep = await store.sweep_expired(session, today=payload.today, branch_id=payload.branch_id)
        # 过期是预期内的活跃库存减少，按 applied_delta 对账，不算差异
        await ledger.reconcile_many(session, sweep.deltas)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return SweepOut(count=sweep.count, touched=[[b, p] for b, p in sweep.touched])
