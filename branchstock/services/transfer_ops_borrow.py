# branchstock/services/transfer_ops_borrow.py
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from branchstock.api.errors import InsufficientStock, NoItemsApproved, ValidationError
from branchstock.metrics import BATCH_ALLOC, TRANSFER_TRANSITIONS
from branchstock.models.enums import MovementReason, TransferStatus, TransferType, UsageType
from branchstock.models.transfer_request import TransferItem, TransferRequest
from branchstock.ports import ProductCatalogPort
from branchstock.services.activity_writer import ActivityWriter
from branchstock.services.batch_fifo_allocator import PlannedLeg
from branchstock.services.batch_store import BatchStore
from branchstock.services.batch_store_write import apply_legs
from branchstock.services.directory import DbBranchDirectory
from branchstock.services.stock_ledger_service import StockLedgerService
from branchstock.services.transfer_ids import UTC, ensure_leg_span, gen_trace_id, gen_transfer_no, leg_ref_line
from branchstock.services.transfer_ops_create import validate_lines, validate_parties, weighted_unit_cost
from branchstock.services.transfer_query import (
    cas_status,
    find_item,
    get_with_items,
    require_branch,
    require_status,
    require_type,
    snapshot,
)

logger = logging.getLogger("branchstock.transfers")


@dataclass
class BorrowLineIn:
    product_id: int
    quantity: int
    usage_type: str = UsageType.OTC.value


@dataclass
class BorrowDecision:
    item_id: int
    approved_quantity: int


async def create_borrow(
    session: AsyncSession,
    *,
    store: BatchStore,
    branches: DbBranchDirectory,
    catalog: ProductCatalogPort,
    requesting_branch_id: int,
    lending_branch_id: int,
    lines: Sequence[BorrowLineIn],
    created_by: Optional[str] = None,
    reason: Optional[str] = None,
    notes: Optional[str] = None,
    trace_id: Optional[str] = None,
) -> TransferRequest:
    """
    借货申请（借入方发起）：不分配、不扣减，只登记。
    只能借双方都有批次记录（任意状态）的商品。
    """
    await validate_parties(
        session, branches=branches, from_branch_id=lending_branch_id, to_branch_id=requesting_branch_id
    )
    await validate_lines(session, catalog=catalog, lines=lines)

    not_shared = []
    for idx, ln in enumerate(lines):
        at_lender = await store.has_any_batch(session, branch_id=lending_branch_id, product_id=ln.product_id)
        at_borrower = await store.has_any_batch(session, branch_id=requesting_branch_id, product_id=ln.product_id)
        if not (at_lender and at_borrower):
            not_shared.append(
                {
                    "type": "validation",
                    "path": f"items[{idx}].product_id",
                    "product_id": int(ln.product_id),
                    "reason": "product_not_stocked_by_both_branches",
                }
            )
    if not_shared:
        raise ValidationError("只能借双方门店都经营的商品", details=not_shared)

    transfer_no = gen_transfer_no(lending_branch_id, requesting_branch_id)
    ti = trace_id or gen_trace_id(transfer_no)

    tr = TransferRequest(
        transfer_no=transfer_no,
        transfer_type=TransferType.BORROW.value,
        from_branch_id=int(lending_branch_id),
        to_branch_id=int(requesting_branch_id),
        status=TransferStatus.PENDING.value,
        reason=reason,
        notes=notes,
        created_by=created_by,
        created_at=datetime.now(UTC),
        trace_id=ti,
    )
    session.add(tr)
    await session.flush()

    for line_no, ln in enumerate(lines, start=1):
        session.add(
            TransferItem(
                transfer_id=tr.id,
                line_no=line_no,
                product_id=int(ln.product_id),
                usage_type=str(ln.usage_type),
                requested_quantity=int(ln.quantity),
                consumed_batches=[],
                returned_quantity=0,
            )
        )
    await session.flush()

    tr = await get_with_items(session, tr.id)
    await ActivityWriter.write(
        session,
        action="BORROW_REQUESTED",
        entity_type="transfer",
        entity_id=transfer_no,
        after=snapshot(tr),
        performed_by=created_by,
        branch_id=int(requesting_branch_id),
        reason=reason,
        notes=notes,
        trace_id=ti,
    )
    TRANSFER_TRANSITIONS.labels(transfer_type=TransferType.BORROW.value, to_status=TransferStatus.PENDING.value).inc()
    logger.info("borrow requested no=%s lender=%s borrower=%s", transfer_no, lending_branch_id, requesting_branch_id)
    return tr


async def approve_borrow(
    session: AsyncSession,
    *,
    store: BatchStore,
    ledger: StockLedgerService,
    transfer_id: int,
    acting_branch_id: int,
    decisions: Optional[Sequence[BorrowDecision]] = None,
    approved_by: Optional[str] = None,
) -> TransferRequest:
    """
    出借方审批：Pending → InTransit

    - 每行 approved_quantity <= min(requested, 可用)，超出申请 → ValidationError，超出可用 → InsufficientStock
    - 未给 decisions 时按 min(requested, 可用) 自动批
    - 一行都没批 → NoItemsApproved
    - 批出的行在出借方按 FIFO 扣减（全部计划通过后才写）
    """
    tr = await get_with_items(session, transfer_id, for_update=True)
    require_type(tr, TransferType.BORROW, action="approve")
    require_branch(tr, acting_branch_id, tr.from_branch_id, role="出借方", action="approve")
    require_status(tr, TransferStatus.PENDING, action="approve")

    approved: Dict[int, int] = {int(it.id): 0 for it in tr.items}
    if decisions is not None:
        for d in decisions:
            it = find_item(tr, d.item_id)
            q = int(d.approved_quantity)
            if q < 0 or q > int(it.requested_quantity):
                raise ValidationError(
                    f"审批数量必须在 0..{it.requested_quantity} 之间",
                    context={"transfer_id": int(tr.id), "item_id": int(it.id), "product_id": int(it.product_id)},
                    details=[
                        {
                            "type": "validation",
                            "path": "approved_quantity",
                            "item_id": int(it.id),
                            "required_qty": q,
                            "available_qty": int(it.requested_quantity),
                            "reason": "exceeds_requested_quantity" if q > 0 else "negative",
                        }
                    ],
                )
            approved[int(it.id)] = q

    # 可用量：同商品同用途多行共享出借方库存
    pool: Dict[Tuple[int, str], int] = {}
    for it in tr.items:
        key = (int(it.product_id), str(it.usage_type))
        if key not in pool:
            pool[key] = await store.sum_remaining(
                session, branch_id=tr.from_branch_id, product_id=it.product_id, usage_type=it.usage_type
            )
        if decisions is None:
            approved[int(it.id)] = min(int(it.requested_quantity), pool[key])
        q = approved[int(it.id)]
        if q > pool[key]:
            raise InsufficientStock(
                "出借方库存不足，无法按审批数量出借",
                required_qty=q,
                available_qty=pool[key],
                context={"branch_id": int(tr.from_branch_id), "product_id": int(it.product_id), "item_id": int(it.id)},
                path=f"items[{it.line_no}]",
            )
        pool[key] -= q

    if not any(q > 0 for q in approved.values()):
        raise NoItemsApproved(
            "借货审批至少要批出一行",
            context={"transfer_id": int(tr.id)},
            details=[{"type": "validation", "path": "decisions", "reason": "no_items_approved"}],
        )

    # ---------- 计划 ----------
    reserved: Dict[int, int] = {}
    plans: List[Tuple[TransferItem, List[PlannedLeg]]] = []
    for it in tr.items:
        q = approved[int(it.id)]
        if q <= 0:
            continue
        legs = await store.allocator.plan_fifo(
            session,
            branch_id=tr.from_branch_id,
            product_id=it.product_id,
            quantity=q,
            usage_type=it.usage_type,
            reserved=reserved,
            path=f"items[{it.line_no}]",
        )
        ensure_leg_span(legs, path=f"items[{it.line_no}]")
        plans.append((it, legs))

    # ---------- 写 ----------
    before = snapshot(tr)
    now = datetime.now(UTC)
    await cas_status(
        session,
        tr,
        expected=TransferStatus.PENDING,
        new=TransferStatus.IN_TRANSIT,
        approved_by=approved_by,
        approved_at=now,
    )

    deltas: Dict[Tuple[int, int], int] = defaultdict(int)
    for it in tr.items:
        it.approved_quantity = approved[int(it.id)]
    for it, legs in plans:
        consumed = await apply_legs(
            session,
            legs,
            reason=MovementReason.TRANSFER_OUT,
            ref=tr.transfer_no,
            ref_line_start=leg_ref_line(it.line_no, 1),
            occurred_at=now,
            trace_id=tr.trace_id,
        )
        it.consumed_batches = [c.to_dict() for c in consumed]
        it.unit_cost = weighted_unit_cost(consumed)
        deltas[(int(tr.from_branch_id), int(it.product_id))] -= sum(c.quantity for c in consumed)
        BATCH_ALLOC.labels(mode="fifo").inc()
    await session.flush()

    tr = await get_with_items(session, tr.id)
    await ActivityWriter.write(
        session,
        action="BORROW_APPROVED",
        entity_type="transfer",
        entity_id=tr.transfer_no,
        before=before,
        after=snapshot(tr),
        performed_by=approved_by,
        branch_id=tr.from_branch_id,
        trace_id=tr.trace_id,
    )
    await ledger.reconcile_many(session, dict(deltas), performed_by=approved_by, trace_id=tr.trace_id)
    TRANSFER_TRANSITIONS.labels(transfer_type=TransferType.BORROW.value, to_status=TransferStatus.IN_TRANSIT.value).inc()
    logger.info(
        "borrow approved no=%s approved=%s by=%s",
        tr.transfer_no,
        {int(k): v for k, v in approved.items()},
        approved_by,
    )
    return tr


async def decline_borrow(
    session: AsyncSession,
    *,
    transfer_id: int,
    acting_branch_id: int,
    declined_by: Optional[str] = None,
    reason: Optional[str] = None,
) -> TransferRequest:
    """出借方拒绝：Pending → Cancelled（从未扣减，无需恢复）"""
    tr = await get_with_items(session, transfer_id, for_update=True)
    require_type(tr, TransferType.BORROW, action="decline")
    require_branch(tr, acting_branch_id, tr.from_branch_id, role="出借方", action="decline")
    require_status(tr, TransferStatus.PENDING, action="decline")

    before = snapshot(tr)
    await cas_status(
        session,
        tr,
        expected=TransferStatus.PENDING,
        new=TransferStatus.CANCELLED,
        declined_by=declined_by,
        declined_reason=reason,
        cancelled_at=datetime.now(UTC),
    )
    tr = await get_with_items(session, tr.id)

    await ActivityWriter.write(
        session,
        action="BORROW_DECLINED",
        entity_type="transfer",
        entity_id=tr.transfer_no,
        before=before,
        after=snapshot(tr),
        performed_by=declined_by,
        branch_id=tr.from_branch_id,
        reason=reason,
        trace_id=tr.trace_id,
    )
    TRANSFER_TRANSITIONS.labels(transfer_type=TransferType.BORROW.value, to_status=TransferStatus.CANCELLED.value).inc()
    return tr
