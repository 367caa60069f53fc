# branchstock/api/routers/transfers.py
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from branchstock.db.session import get_session
from branchstock.schemas.transfer import (
    BorrowApproveIn,
    BorrowCreateIn,
    BorrowDeclineIn,
    TransferActIn,
    TransferCreateIn,
    TransferOut,
    TransferReturnIn,
    TransferReturnOut,
)
from branchstock.services.transfer_ops_borrow import BorrowDecision, BorrowLineIn
from branchstock.services.transfer_ops_create import TransferLineIn
from branchstock.services.transfer_service import TransferService

router = APIRouter(prefix="/transfers", tags=["transfers"])

svc = TransferService()


async def _load(session: AsyncSession, transfer_id: int) -> TransferOut:
    return TransferOut.model_validate(await svc.get(session, transfer_id))


# ===== 调拨（发货方发起） =====


@router.post("", response_model=TransferOut, status_code=201)
async def create_transfer(payload: TransferCreateIn, session: AsyncSession = Depends(get_session)) -> TransferOut:
    """
    创建调拨单：

    - 发货方手选批次（默认必填），创建即扣减发货方库存
    - 任一行不满足 → 整单不落库
    """
    try:
        tr = await svc.create_transfer(
            session,
            from_branch_id=payload.from_branch_id,
            to_branch_id=payload.to_branch_id,
            lines=[
                TransferLineIn(
                    product_id=ln.product_id,
                    quantity=ln.quantity,
                    usage_type=ln.usage_type.value,
                    batch_id=ln.batch_id,
                )
                for ln in payload.items
            ],
            created_by=payload.created_by,
            reason=payload.reason,
            notes=payload.notes,
        )
        tid = tr.id
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return await _load(session, tid)


@router.post("/{transfer_id}/dispatch", response_model=TransferOut)
async def dispatch_transfer(
    transfer_id: int,
    payload: TransferActIn,
    session: AsyncSession = Depends(get_session),
) -> TransferOut:
    try:
        await svc.dispatch(
            session,
            transfer_id=transfer_id,
            acting_branch_id=payload.acting_branch_id,
            performed_by=payload.performed_by,
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return await _load(session, transfer_id)


@router.post("/{transfer_id}/cancel", response_model=TransferOut)
async def cancel_transfer(
    transfer_id: int,
    payload: TransferActIn,
    session: AsyncSession = Depends(get_session),
) -> TransferOut:
    """只有 Pending 可取消；已扣减的段按原批次恢复"""
    try:
        await svc.cancel(
            session,
            transfer_id=transfer_id,
            acting_branch_id=payload.acting_branch_id,
            performed_by=payload.performed_by,
            reason=payload.reason,
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return await _load(session, transfer_id)


# ===== 借货（收货方发起，出借方审批） =====


@router.post("/borrow", response_model=TransferOut, status_code=201)
async def create_borrow(payload: BorrowCreateIn, session: AsyncSession = Depends(get_session)) -> TransferOut:
    try:
        tr = await svc.create_borrow(
            session,
            requesting_branch_id=payload.requesting_branch_id,
            lending_branch_id=payload.lending_branch_id,
            lines=[
                BorrowLineIn(product_id=ln.product_id, quantity=ln.quantity, usage_type=ln.usage_type.value)
                for ln in payload.items
            ],
            created_by=payload.created_by,
            reason=payload.reason,
            notes=payload.notes,
        )
        tid = tr.id
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return await _load(session, tid)


@router.get("/pending-borrows", response_model=List[TransferOut])
async def pending_borrows(
    lending_branch_id: int = Query(..., description="出借方门店"),
    session: AsyncSession = Depends(get_session),
) -> List[TransferOut]:
    rows = await svc.pending_borrow_requests(session, lending_branch_id=lending_branch_id)
    return [TransferOut.model_validate(t) for t in rows]


@router.post("/{transfer_id}/approve", response_model=TransferOut)
async def approve_borrow(
    transfer_id: int,
    payload: BorrowApproveIn,
    session: AsyncSession = Depends(get_session),
) -> TransferOut:
    """
    出借方审批：

    - decisions 缺省 → 每行按 min(申请, 可用) 自动批
    - 批出的行按 FIFO 扣减出借方库存，单据直接进入 InTransit
    """
    decisions = (
        [BorrowDecision(item_id=d.item_id, approved_quantity=d.approved_quantity) for d in payload.decisions]
        if payload.decisions is not None
        else None
    )
    try:
        await svc.approve_borrow(
            session,
            transfer_id=transfer_id,
            acting_branch_id=payload.acting_branch_id,
            decisions=decisions,
            approved_by=payload.approved_by,
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return await _load(session, transfer_id)


@router.post("/{transfer_id}/decline", response_model=TransferOut)
async def decline_borrow(
    transfer_id: int,
    payload: BorrowDeclineIn,
    session: AsyncSession = Depends(get_session),
) -> TransferOut:
    try:
        await svc.decline_borrow(
            session,
            transfer_id=transfer_id,
            acting_branch_id=payload.acting_branch_id,
            declined_by=payload.declined_by,
            reason=payload.reason,
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return await _load(session, transfer_id)


# ===== 收货 / 退回（两种单据共用） =====


@router.post("/{transfer_id}/receive", response_model=TransferOut)
async def receive_transfer(
    transfer_id: int,
    payload: TransferActIn,
    session: AsyncSession = Depends(get_session),
) -> TransferOut:
    try:
        await svc.receive(
            session,
            transfer_id=transfer_id,
            acting_branch_id=payload.acting_branch_id,
            received_by=payload.performed_by,
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return await _load(session, transfer_id)


@router.post("/{transfer_id}/return", response_model=TransferReturnOut)
async def return_transfer(
    transfer_id: int,
    payload: TransferReturnIn,
    session: AsyncSession = Depends(get_session),
) -> TransferReturnOut:
    """已完成单据按行部分 / 全部退回发货方"""
    try:
        res = await svc.return_stock(
            session,
            transfer_id=transfer_id,
            acting_branch_id=payload.acting_branch_id,
            item_id=payload.item_id,
            quantity=payload.quantity,
            reason=payload.reason,
            performed_by=payload.performed_by,
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    res.transfer = await svc.get(session, transfer_id)
    return TransferReturnOut.from_result(res)


# ===== 查询 =====


@router.get("", response_model=List[TransferOut])
async def list_transfers(
    branch_id: int = Query(..., description="门店 ID"),
    direction: Optional[str] = Query(None, pattern="^(outgoing|incoming)$"),
    status: Optional[str] = Query(None),
    transfer_type: Optional[str] = Query(None, pattern="^(transfer|borrow)$"),
    limit: int = Query(100, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
) -> List[TransferOut]:
    rows = await svc.list_for_branch(
        session,
        branch_id=branch_id,
        direction=direction,
        status=status,
        transfer_type=transfer_type,
        limit=limit,
    )
    return [TransferOut.model_validate(t) for t in rows]


@router.get("/{transfer_id}", response_model=TransferOut)
async def get_transfer(transfer_id: int, session: AsyncSession = Depends(get_session)) -> TransferOut:
    return await _load(session, transfer_id)
