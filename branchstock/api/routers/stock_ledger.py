# branchstock/api/routers/stock_ledger.py
from __future__ import annotations

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from branchstock.db.session import get_session
from branchstock.schemas.batch import BatchOut
from branchstock.schemas.ledger import (
    CurrentStockOut,
    EndingStockOut,
    ForceAdjustIn,
    LedgerEntryOut,
    MovementOut,
    PeriodCloseIn,
    PeriodOpenIn,
    ReconcileIn,
    ReconcileOut,
    StockSummaryOut,
    WeeklyCountIn,
)
from branchstock.services.batch_store import BatchStore
from branchstock.services.stock_ledger_service import StockLedgerService

router = APIRouter(prefix="/stock-ledger", tags=["stock-ledger"])

store = BatchStore()
svc = StockLedgerService(store=store)


@router.get("/current", response_model=CurrentStockOut)
async def current_stock(
    branch_id: int = Query(...),
    product_id: int = Query(...),
    session: AsyncSession = Depends(get_session),
) -> CurrentStockOut:
    """
    当前库存 + 库存等级：

    - 当前库存：real_time → week4 → week3 → week2 → week1 → beginning
    - 等级：0 缺货；<= min 低库存；> min × 系数 高库存；其余正常
    """
    qty = await svc.current_stock(session, branch_id=branch_id, product_id=product_id)
    level = await svc.stock_level(session, branch_id=branch_id, product_id=product_id)
    return CurrentStockOut(branch_id=branch_id, product_id=product_id, current_stock=qty, status=level.value)


@router.get("/summary", response_model=StockSummaryOut)
async def stock_summary(
    branch_id: int = Query(...),
    on_date: Optional[date] = Query(None),
    session: AsyncSession = Depends(get_session),
) -> StockSummaryOut:
    """门店库存概览：商品数 / 库存金额 / 各库存等级商品数"""
    res = await svc.stock_summary(session, branch_id=branch_id, on_date=on_date)
    return StockSummaryOut.model_validate(res)


@router.get("/periods", response_model=List[LedgerEntryOut])
async def period_history(
    branch_id: int = Query(...),
    product_id: int = Query(...),
    session: AsyncSession = Depends(get_session),
) -> List[LedgerEntryOut]:
    rows = await svc.period_history(session, branch_id=branch_id, product_id=product_id)
    return [LedgerEntryOut.model_validate(e) for e in rows]


@router.get("/history", response_model=List[MovementOut])
async def stock_history(
    branch_id: int = Query(...),
    product_id: int = Query(...),
    limit: int = Query(200, ge=1, le=1000),
    session: AsyncSession = Depends(get_session),
) -> List[MovementOut]:
    """批次流水（新 → 旧）"""
    rows = await svc.stock_history(session, branch_id=branch_id, product_id=product_id, limit=limit)
    return [MovementOut.model_validate(m) for m in rows]


@router.get("/ending-stock", response_model=EndingStockOut)
async def ending_stock(
    branch_id: int = Query(...),
    product_id: int = Query(...),
    period_start: date = Query(...),
    period_end: date = Query(...),
    session: AsyncSession = Depends(get_session),
) -> EndingStockOut:
    """期末库存 = 下期期初 + 期间内勾选到货的实收合计"""
    res = await svc.calculate_ending_stock(
        session,
        branch_id=branch_id,
        product_id=product_id,
        period_start=period_start,
        period_end=period_end,
    )
    return EndingStockOut.model_validate(res)


@router.post("/periods", response_model=LedgerEntryOut, status_code=201)
async def open_period(payload: PeriodOpenIn, session: AsyncSession = Depends(get_session)) -> LedgerEntryOut:
    try:
        entry = await svc.open_period(
            session,
            branch_id=payload.branch_id,
            product_id=payload.product_id,
            period_start=payload.period_start,
            period_end=payload.period_end,
            min_stock=payload.min_stock,
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return LedgerEntryOut.model_validate(entry)


@router.post("/periods/close", response_model=LedgerEntryOut)
async def close_period(payload: PeriodCloseIn, session: AsyncSession = Depends(get_session)) -> LedgerEntryOut:
    """关闭后只允许补录第四周盘点"""
    try:
        entry = await svc.close_period(
            session,
            branch_id=payload.branch_id,
            product_id=payload.product_id,
            period_start=payload.period_start,
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return LedgerEntryOut.model_validate(entry)


@router.post("/reconcile", response_model=ReconcileOut)
async def reconcile(payload: ReconcileIn, session: AsyncSession = Depends(get_session)) -> ReconcileOut:
    """以活跃批次余量合计覆盖当期 real_time_stock"""
    try:
        qty = await svc.reconcile(
            session,
            branch_id=payload.branch_id,
            product_id=payload.product_id,
            performed_by=payload.performed_by,
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return ReconcileOut(branch_id=payload.branch_id, product_id=payload.product_id, real_time_stock=qty)


@router.post("/weekly-count", response_model=LedgerEntryOut)
async def record_weekly_count(payload: WeeklyCountIn, session: AsyncSession = Depends(get_session)) -> LedgerEntryOut:
    """
    登记周盘点（第 1..4 周）：

    - 已结账期间只允许补登第 4 周
    - 盘点值只写入对应周字段，不改批次
    """
    try:
        entry = await svc.record_weekly_count(
            session,
            branch_id=payload.branch_id,
            product_id=payload.product_id,
            week_number=payload.week_number,
            count=payload.count,
            period_start=payload.period_start,
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return LedgerEntryOut.model_validate(entry)


@router.post("/force-adjust", response_model=BatchOut)
async def force_adjust(payload: ForceAdjustIn, session: AsyncSession = Depends(get_session)) -> BatchOut:
    """经理授权码校验通过后，直接改写批次余量并重新对账"""
    try:
        await svc.force_adjust(
            session,
            batch_id=payload.batch_id,
            new_remaining=payload.new_remaining,
            manager_code=payload.manager_code,
            performed_by=payload.performed_by,
            reason=payload.reason,
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return BatchOut.model_validate(await store.require_batch(session, payload.batch_id))
