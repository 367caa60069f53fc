# branchstock/services/transfer_query.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from branchstock.api.errors import EntityNotFound, InvalidStateTransition
from branchstock.models.enums import TransferStatus, TransferType
from branchstock.models.transfer_request import TransferItem, TransferRequest


async def get_with_items(
    session: AsyncSession,
    transfer_id: int,
    *,
    for_update: bool = False,
) -> TransferRequest:
    stmt = select(TransferRequest).where(TransferRequest.id == int(transfer_id))
    if for_update:
        stmt = stmt.with_for_update()
    stmt = stmt.execution_options(populate_existing=True)

    tr = (await session.execute(stmt)).scalars().first()
    if tr is None:
        raise EntityNotFound(
            f"调拨 / 借货单不存在：id={transfer_id}",
            context={"transfer_id": int(transfer_id)},
        )
    return tr


def snapshot(tr: TransferRequest) -> Dict[str, Any]:
    return {
        "transfer_no": tr.transfer_no,
        "transfer_type": tr.transfer_type,
        "status": tr.status,
        "from_branch_id": tr.from_branch_id,
        "to_branch_id": tr.to_branch_id,
        "items": [
            {
                "item_id": it.id,
                "product_id": it.product_id,
                "requested_quantity": it.requested_quantity,
                "approved_quantity": it.approved_quantity,
                "moved_quantity": it.moved_quantity,
                "returned_quantity": it.returned_quantity,
            }
            for it in tr.items
        ],
    }


def find_item(tr: TransferRequest, item_id: int) -> TransferItem:
    for it in tr.items:
        if int(it.id) == int(item_id):
            return it
    raise EntityNotFound(
        f"单据 {tr.transfer_no} 中不存在该行：item_id={item_id}",
        context={"transfer_id": int(tr.id), "item_id": int(item_id)},
    )


def require_type(tr: TransferRequest, expected: TransferType, *, action: str) -> None:
    if tr.transfer_type != expected.value:
        raise InvalidStateTransition(
            f"{action} 只适用于 {expected.value}，当前单据类型为 {tr.transfer_type}",
            context={"transfer_id": int(tr.id)},
            details=[{"type": "state", "path": "transfer_type", "expected": expected.value, "actual": tr.transfer_type}],
        )


def require_status(tr: TransferRequest, expected: TransferStatus, *, action: str) -> None:
    if tr.status != expected.value:
        raise InvalidStateTransition(
            f"单据 {tr.transfer_no} 当前状态为 {tr.status}，不能执行 {action}",
            context={"transfer_id": int(tr.id)},
            details=[{"type": "state", "path": "status", "expected": expected.value, "actual": tr.status}],
        )


def require_branch(tr: TransferRequest, acting_branch_id: int, expected_branch_id: int, *, role: str, action: str) -> None:
    if int(acting_branch_id) != int(expected_branch_id):
        raise InvalidStateTransition(
            f"只有{role}门店可以执行 {action}",
            context={"transfer_id": int(tr.id), "branch_id": int(acting_branch_id)},
            details=[
                {
                    "type": "state",
                    "path": "acting_branch_id",
                    "reason": "wrong_branch_role",
                    "expected": str(expected_branch_id),
                    "actual": str(acting_branch_id),
                }
            ],
        )


async def cas_status(
    session: AsyncSession,
    tr: TransferRequest,
    *,
    expected: TransferStatus,
    new: TransferStatus,
    **values: Any,
) -> None:
    """状态推进：UPDATE ... WHERE id=:id AND status=:expected，未命中即非法迁移"""
    stmt = (
        update(TransferRequest)
        .where(TransferRequest.id == tr.id, TransferRequest.status == expected.value)
        .values(status=new.value, **values)
        .returning(TransferRequest.id)
        .execution_options(synchronize_session="fetch")
    )
    if (await session.execute(stmt)).first() is None:
        raise InvalidStateTransition(
            f"单据 {tr.transfer_no} 状态已被并发修改（期望 {expected.value}）",
            context={"transfer_id": int(tr.id)},
            details=[{"type": "state", "path": "status", "expected": expected.value, "reason": "compare_and_set_missed"}],
        )


async def list_for_branch(
    session: AsyncSession,
    *,
    branch_id: int,
    direction: Optional[str] = None,
    status: Optional[str] = None,
    transfer_type: Optional[str] = None,
    limit: int = 100,
) -> List[TransferRequest]:
    """direction: outgoing（本店发出 / 借出） / incoming（本店收货 / 借入） / None（两者）"""
    stmt = select(TransferRequest)
    if direction == "outgoing":
        stmt = stmt.where(TransferRequest.from_branch_id == int(branch_id))
    elif direction == "incoming":
        stmt = stmt.where(TransferRequest.to_branch_id == int(branch_id))
    else:
        stmt = stmt.where(
            or_(TransferRequest.from_branch_id == int(branch_id), TransferRequest.to_branch_id == int(branch_id))
        )
    if status:
        stmt = stmt.where(TransferRequest.status == status)
    if transfer_type:
        stmt = stmt.where(TransferRequest.transfer_type == transfer_type)
    stmt = stmt.order_by(TransferRequest.created_at.desc(), TransferRequest.id.desc()).limit(int(limit))
    return list((await session.execute(stmt)).scalars().all())


async def pending_borrow_requests(session: AsyncSession, *, lending_branch_id: int) -> List[TransferRequest]:
    stmt = (
        select(TransferRequest)
        .where(
            TransferRequest.transfer_type == TransferType.BORROW.value,
            TransferRequest.status == TransferStatus.PENDING.value,
            TransferRequest.from_branch_id == int(lending_branch_id),
        )
        .order_by(TransferRequest.created_at, TransferRequest.id)
    )
    return list((await session.execute(stmt)).scalars().all())


async def list_in_range(
    session: AsyncSession,
    *,
    branch_id: int,
    time_from: datetime,
    time_to: datetime,
) -> List[TransferRequest]:
    stmt = (
        select(TransferRequest)
        .where(
            or_(TransferRequest.from_branch_id == int(branch_id), TransferRequest.to_branch_id == int(branch_id)),
            TransferRequest.created_at >= time_from,
            TransferRequest.created_at < time_to,
        )
        .order_by(TransferRequest.created_at, TransferRequest.id)
    )
    return list((await session.execute(stmt)).scalars().all())
