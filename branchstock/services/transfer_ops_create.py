# branchstock/services/transfer_ops_create.py
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from branchstock.api.errors import ValidationError
from branchstock.metrics import TRANSFER_TRANSITIONS
from branchstock.models.enums import MovementReason, TransferStatus, TransferType, UsageType
from branchstock.models.transfer_request import TransferItem, TransferRequest
from branchstock.ports import ProductCatalogPort
from branchstock.services.activity_writer import ActivityWriter
from branchstock.services.batch_fifo_allocator import BatchConsumption, PlannedLeg
from branchstock.services.batch_store import BatchStore
from branchstock.services.batch_store_write import apply_legs
from branchstock.services.directory import DbBranchDirectory
from branchstock.services.stock_ledger_service import StockLedgerService
from branchstock.services.transfer_ids import UTC, ensure_leg_span, gen_trace_id, gen_transfer_no, leg_ref_line
from branchstock.services.transfer_query import (
    cas_status,
    get_with_items,
    require_branch,
    require_status,
    require_type,
    snapshot,
)

logger = logging.getLogger("branchstock.transfers")


@dataclass
class TransferLineIn:
    product_id: int
    quantity: int
    usage_type: str = UsageType.OTC.value
    batch_id: Optional[int] = None


def weighted_unit_cost(consumed: Sequence[BatchConsumption]) -> Decimal:
    qty = sum(int(c.quantity) for c in consumed)
    if qty <= 0:
        return Decimal("0.00")
    total = sum(Decimal(c.unit_cost) * int(c.quantity) for c in consumed)
    return (total / qty).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


async def validate_parties(
    session: AsyncSession,
    *,
    branches: DbBranchDirectory,
    from_branch_id: int,
    to_branch_id: int,
) -> None:
    if int(from_branch_id) == int(to_branch_id):
        raise ValidationError(
            "发货方与收货方不能是同一门店",
            context={"branch_id": int(from_branch_id)},
            details=[{"type": "validation", "path": "to_branch_id", "reason": "same_as_from_branch"}],
        )
    await branches.require_active(session, from_branch_id, path="from_branch_id")
    await branches.require_active(session, to_branch_id, path="to_branch_id")


async def validate_lines(
    session: AsyncSession,
    *,
    catalog: ProductCatalogPort,
    lines: Sequence[Any],
) -> None:
    if not lines:
        raise ValidationError(
            "至少需要一行商品",
            details=[{"type": "validation", "path": "items", "reason": "empty"}],
        )
    problems: List[dict] = []
    for idx, ln in enumerate(lines):
        if int(ln.quantity) <= 0:
            problems.append(
                {"type": "validation", "path": f"items[{idx}].quantity", "product_id": int(ln.product_id), "reason": "must_be_positive"}
            )
        if str(ln.usage_type) not in {u.value for u in UsageType}:
            problems.append(
                {"type": "validation", "path": f"items[{idx}].usage_type", "reason": "unknown", "actual": str(ln.usage_type)}
            )
        if await catalog.get_product(session, ln.product_id) is None:
            problems.append(
                {"type": "validation", "path": f"items[{idx}].product_id", "product_id": int(ln.product_id), "reason": "product_not_found"}
            )
    if problems:
        raise ValidationError("单据行不合法", details=problems)


async def create_transfer(
    session: AsyncSession,
    *,
    store: BatchStore,
    ledger: StockLedgerService,
    branches: DbBranchDirectory,
    catalog: ProductCatalogPort,
    from_branch_id: int,
    to_branch_id: int,
    lines: Sequence[TransferLineIn],
    created_by: Optional[str] = None,
    reason: Optional[str] = None,
    notes: Optional[str] = None,
    require_batch_selection: bool = True,
    trace_id: Optional[str] = None,
) -> TransferRequest:
    """
    调拨创建（发货方发起）：

    1) 校验双方门店 / 行数据；强制手选批次时每行必须带 batch_id
    2) 全部行先做分配计划（同批次跨行需求累加），任一行失败即整体失败、零副作用
    3) 落单 + 逐段条件扣减发货方批次；状态 Pending
    """
    await validate_parties(session, branches=branches, from_branch_id=from_branch_id, to_branch_id=to_branch_id)
    await validate_lines(session, catalog=catalog, lines=lines)

    if require_batch_selection:
        missing = [
            {"type": "validation", "path": f"items[{i}].batch_id", "product_id": int(ln.product_id), "reason": "batch_selection_required"}
            for i, ln in enumerate(lines)
            if ln.batch_id is None
        ]
        if missing:
            raise ValidationError("调拨必须为每一行手选批次", details=missing)

    # ---------- 计划（只读 + 锁） ----------
    reserved: Dict[int, int] = {}
    plans: List[List[PlannedLeg]] = []
    for idx, ln in enumerate(lines):
        if ln.batch_id is not None:
            leg = await store.allocator.plan_specific(
                session,
                batch_id=ln.batch_id,
                quantity=ln.quantity,
                usage_type=ln.usage_type,
                branch_id=from_branch_id,
                product_id=ln.product_id,
                reserved=reserved,
                path=f"items[{idx}]",
            )
            plans.append([leg])
        else:
            plans.append(
                await store.allocator.plan_fifo(
                    session,
                    branch_id=from_branch_id,
                    product_id=ln.product_id,
                    quantity=ln.quantity,
                    usage_type=ln.usage_type,
                    reserved=reserved,
                    path=f"items[{idx}]",
                )
            )
    for idx, legs in enumerate(plans):
        ensure_leg_span(legs, path=f"items[{idx}]")

    # ---------- 落单 ----------
    transfer_no = gen_transfer_no(from_branch_id, to_branch_id)
    ti = trace_id or gen_trace_id(transfer_no)
    now = datetime.now(UTC)

    tr = TransferRequest(
        transfer_no=transfer_no,
        transfer_type=TransferType.TRANSFER.value,
        from_branch_id=int(from_branch_id),
        to_branch_id=int(to_branch_id),
        status=TransferStatus.PENDING.value,
        reason=reason,
        notes=notes,
        created_by=created_by,
        created_at=now,
        trace_id=ti,
    )
    session.add(tr)
    await session.flush()

    # ---------- 扣减 ----------
    deltas: Dict[Tuple[int, int], int] = defaultdict(int)
    for line_no, (ln, legs) in enumerate(zip(lines, plans), start=1):
        consumed = await apply_legs(
            session,
            legs,
            reason=MovementReason.TRANSFER_OUT,
            ref=transfer_no,
            ref_line_start=leg_ref_line(line_no, 1),
            occurred_at=now,
            trace_id=ti,
        )
        session.add(
            TransferItem(
                transfer_id=tr.id,
                line_no=line_no,
                product_id=int(ln.product_id),
                usage_type=str(ln.usage_type),
                requested_quantity=int(ln.quantity),
                unit_cost=weighted_unit_cost(consumed),
                selected_batch_id=ln.batch_id,
                consumed_batches=[c.to_dict() for c in consumed],
                returned_quantity=0,
            )
        )
        deltas[(int(from_branch_id), int(ln.product_id))] -= int(ln.quantity)
    await session.flush()

    tr = await get_with_items(session, tr.id)
    await ActivityWriter.write(
        session,
        action="TRANSFER_CREATED",
        entity_type="transfer",
        entity_id=transfer_no,
        after=snapshot(tr),
        performed_by=created_by,
        branch_id=int(from_branch_id),
        reason=reason,
        notes=notes,
        trace_id=ti,
    )
    await ledger.reconcile_many(session, dict(deltas), performed_by=created_by, trace_id=ti)
    TRANSFER_TRANSITIONS.labels(transfer_type=TransferType.TRANSFER.value, to_status=TransferStatus.PENDING.value).inc()

    logger.info(
        "transfer created no=%s %s->%s lines=%s by=%s",
        transfer_no,
        from_branch_id,
        to_branch_id,
        len(lines),
        created_by,
    )
    return tr


async def dispatch(
    session: AsyncSession,
    *,
    transfer_id: int,
    acting_branch_id: int,
    performed_by: Optional[str] = None,
) -> TransferRequest:
    """发货方确认发出：Pending → InTransit（库存在创建时已扣减，这里不动批次）"""
    tr = await get_with_items(session, transfer_id, for_update=True)
    require_type(tr, TransferType.TRANSFER, action="dispatch")
    require_branch(tr, acting_branch_id, tr.from_branch_id, role="发货方", action="dispatch")
    require_status(tr, TransferStatus.PENDING, action="dispatch")

    before = snapshot(tr)
    await cas_status(
        session,
        tr,
        expected=TransferStatus.PENDING,
        new=TransferStatus.IN_TRANSIT,
        dispatched_by=performed_by,
        dispatched_at=datetime.now(UTC),
    )
    tr = await get_with_items(session, tr.id)

    await ActivityWriter.write(
        session,
        action="TRANSFER_DISPATCHED",
        entity_type="transfer",
        entity_id=tr.transfer_no,
        before=before,
        after=snapshot(tr),
        performed_by=performed_by,
        branch_id=tr.from_branch_id,
        trace_id=tr.trace_id,
    )
    TRANSFER_TRANSITIONS.labels(transfer_type=tr.transfer_type, to_status=TransferStatus.IN_TRANSIT.value).inc()
    return tr


async def cancel(
    session: AsyncSession,
    *,
    store: BatchStore,
    ledger: StockLedgerService,
    transfer_id: int,
    acting_branch_id: int,
    performed_by: Optional[str] = None,
    reason: Optional[str] = None,
) -> TransferRequest:
    """
    取消（仅 Pending，任一方均可）：
    - borrow：尚未扣减，直接置 Cancelled
    - transfer：已扣减的各段按原批次恢复（同一事务）
    """
    tr = await get_with_items(session, transfer_id, for_update=True)
    if int(acting_branch_id) not in (int(tr.from_branch_id), int(tr.to_branch_id)):
        require_branch(tr, acting_branch_id, tr.from_branch_id, role="单据双方", action="cancel")
    require_status(tr, TransferStatus.PENDING, action="cancel")

    # 计划：逐段确认来源批次仍可恢复
    restores: List[Tuple[TransferItem, int, Dict[str, Any]]] = []
    for it in tr.items:
        for idx, leg in enumerate(it.consumed_batches or [], start=1):
            batch = await store.require_batch(session, int(leg["batch_id"]))
            headroom = int(batch.original_quantity) - int(batch.remaining_quantity)
            if int(leg["quantity"]) > headroom:
                raise ValidationError(
                    f"批次 {batch.batch_number} 恢复后将超过原始数量，无法取消",
                    context={"transfer_id": int(tr.id), "batch_id": int(batch.id)},
                )
            restores.append((it, idx, leg))

    before = snapshot(tr)
    await cas_status(
        session,
        tr,
        expected=TransferStatus.PENDING,
        new=TransferStatus.CANCELLED,
        cancelled_by=performed_by,
        cancelled_at=datetime.now(UTC),
    )

    deltas: Dict[Tuple[int, int], int] = defaultdict(int)
    for it, idx, leg in restores:
        batch = await store.require_batch(session, int(leg["batch_id"]))
        res = await store.restore(
            session,
            batch=batch,
            quantity=int(leg["quantity"]),
            reason=MovementReason.CANCEL_IN,
            ref=tr.transfer_no,
            ref_line=leg_ref_line(it.line_no, idx),
            trace_id=tr.trace_id,
        )
        if res.active:
            deltas[(int(tr.from_branch_id), int(it.product_id))] += res.quantity

    tr = await get_with_items(session, tr.id)
    await ActivityWriter.write(
        session,
        action="TRANSFER_CANCELLED",
        entity_type="transfer",
        entity_id=tr.transfer_no,
        before=before,
        after=snapshot(tr),
        performed_by=performed_by,
        branch_id=int(acting_branch_id),
        reason=reason,
        trace_id=tr.trace_id,
    )
    if deltas:
        await ledger.reconcile_many(session, dict(deltas), performed_by=performed_by, trace_id=tr.trace_id)
    TRANSFER_TRANSITIONS.labels(transfer_type=tr.transfer_type, to_status=TransferStatus.CANCELLED.value).inc()
    return tr
