# branchstock/services/transfer_ops_return.py
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from branchstock.api.errors import ValidationError
from branchstock.models.enums import MovementReason, SourceType, TransferStatus
from branchstock.models.transfer_request import TransferRequest
from branchstock.ports import ProductCatalogPort
from branchstock.services.activity_writer import ActivityWriter
from branchstock.services.batch_store import BatchStore, ReturnResult
from branchstock.services.batch_store_write import BatchIn, apply_legs
from branchstock.services.stock_ledger_service import StockLedgerService
from branchstock.services.transfer_ids import UTC
from branchstock.services.transfer_ops_receive import leg_expiration
from branchstock.services.transfer_query import (
    find_item,
    get_with_items,
    require_branch,
    require_status,
    snapshot,
)

logger = logging.getLogger("branchstock.transfers")


@dataclass
class TransferReturn:
    transfer: TransferRequest
    quantity: int
    restored: List[ReturnResult] = field(default_factory=list)

    @property
    def fallback_used(self) -> bool:
        return any(r.fallback_used for r in self.restored)


async def return_stock(
    session: AsyncSession,
    *,
    store: BatchStore,
    ledger: StockLedgerService,
    catalog: ProductCatalogPort,
    transfer_id: int,
    acting_branch_id: int,
    item_id: int,
    quantity: int,
    reason: Optional[str] = None,
    performed_by: Optional[str] = None,
) -> TransferReturn:
    """
    退回（发货方 / 出借方发起，仅 Completed）：

    1) 收货方：先从该段生成的 transfer-in 批次扣，不足再从同单据来源的其它活跃批次按 FIFO 补（全有或全无）
    2) 发货方：按段恢复到来源批次；来源批次不存在时在发货方兜底新建退回批次
    3) 两边汇总对账
    """
    tr = await get_with_items(session, transfer_id, for_update=True)
    require_branch(tr, acting_branch_id, tr.from_branch_id, role="发货方 / 出借方", action="return")
    require_status(tr, TransferStatus.COMPLETED, action="return")
    it = find_item(tr, item_id)

    q = int(quantity)
    returnable = int(it.moved_quantity) - int(it.returned_quantity or 0)
    if q <= 0 or q > returnable:
        raise ValidationError(
            f"退回数量必须在 1..{returnable} 之间",
            context={"transfer_id": int(tr.id), "item_id": int(it.id), "product_id": int(it.product_id)},
            details=[
                {
                    "type": "validation",
                    "path": "quantity",
                    "item_id": int(it.id),
                    "required_qty": q,
                    "available_qty": returnable,
                    "reason": "exceeds_returnable_quantity" if q > 0 else "must_be_positive",
                }
            ],
        )

    # ---------- 按段拆分 ----------
    chunks: List[Tuple[int, Dict[str, Any], int]] = []
    left = q
    for idx, leg in enumerate(it.consumed_batches or [], start=1):
        if left <= 0:
            break
        free = int(leg["quantity"]) - int(leg.get("returned") or 0)
        if free <= 0:
            continue
        take = min(left, free)
        chunks.append((idx, leg, take))
        left -= take

    ref = f"{tr.transfer_no}:RET{it.line_no}.{int(it.returned_quantity or 0)}"
    now = datetime.now(UTC)

    # ---------- 计划：收货方扣回 ----------
    pickup_legs = await store.allocator.plan_by_source(
        session,
        branch_id=tr.to_branch_id,
        product_id=it.product_id,
        source_reference=tr.transfer_no,
        usage_type=str(it.usage_type),
        quantity=q,
        preferred_batch_id=chunks[0][1].get("received_batch_id"),
        path=f"items[{it.line_no}].return",
    )

    # ---------- 计划：发货方恢复 ----------
    fallbacks: Dict[int, Optional[BatchIn]] = {}
    for idx, leg, take in chunks:
        origin = await store.get_batch(session, int(leg["batch_id"]))
        if origin is not None:
            headroom = int(origin.original_quantity) - int(origin.remaining_quantity)
            if take > headroom:
                raise ValidationError(
                    f"来源批次 {origin.batch_number} 恢复后将超过原始数量",
                    context={"transfer_id": int(tr.id), "batch_id": int(origin.id)},
                    details=[
                        {
                            "type": "batch",
                            "path": "return_to_origin",
                            "batch_id": int(origin.id),
                            "required_qty": take,
                            "available_qty": headroom,
                            "reason": "exceeds_original_quantity",
                        }
                    ],
                )
            fallbacks[idx] = None
        else:
            fallbacks[idx] = BatchIn(
                branch_id=int(tr.from_branch_id),
                product_id=int(it.product_id),
                batch_number="",
                usage_type=str(it.usage_type),
                quantity=take,
                unit_cost=Decimal(str(leg.get("unit_cost") or "0")),
                expiration_date=await leg_expiration(
                    session, catalog=catalog, product_id=it.product_id, leg=leg, received_date=now.date()
                ),
                received_date=now.date(),
                source_type=SourceType.TRANSFER_IN.value,
                source_reference=tr.transfer_no,
                received_by=performed_by,
            )

    # ---------- 写 ----------
    before = snapshot(tr)
    await apply_legs(
        session,
        pickup_legs,
        reason=MovementReason.RETURN_OUT,
        ref=ref,
        ref_line_start=1,
        occurred_at=now,
        trace_id=tr.trace_id,
    )

    deltas: Dict[Tuple[int, int], int] = defaultdict(int)
    deltas[(int(tr.to_branch_id), int(it.product_id))] -= q

    restored: List[ReturnResult] = []
    returned_by_leg: Dict[int, int] = {}
    for idx, leg, take in chunks:
        res = await store.return_to_origin(
            session,
            origin_batch_id=int(leg["batch_id"]),
            quantity=take,
            reason=reason or "transfer return",
            ref=ref,
            ref_line=idx,
            fallback=fallbacks[idx],
            performed_by=performed_by,
            occurred_at=now,
            trace_id=tr.trace_id,
        )
        restored.append(res)
        returned_by_leg[idx] = take
        if res.active:
            deltas[(int(tr.from_branch_id), int(it.product_id))] += take

    it.consumed_batches = [
        {**leg, "returned": int(leg.get("returned") or 0) + returned_by_leg.get(idx, 0)}
        for idx, leg in enumerate(it.consumed_batches or [], start=1)
    ]
    it.returned_quantity = int(it.returned_quantity or 0) + q
    await session.flush()

    tr = await get_with_items(session, tr.id)
    await ActivityWriter.write(
        session,
        action="TRANSFER_RETURNED",
        entity_type="transfer",
        entity_id=tr.transfer_no,
        before=before,
        after={
            **snapshot(tr),
            "returned": {
                "item_id": int(item_id),
                "quantity": q,
                "restored": [
                    {"batch_id": r.batch_id, "quantity": r.quantity, "fallback_used": r.fallback_used}
                    for r in restored
                ],
            },
        },
        performed_by=performed_by,
        branch_id=tr.from_branch_id,
        reason=reason,
        trace_id=tr.trace_id,
    )
    await ledger.reconcile_many(session, dict(deltas), performed_by=performed_by, trace_id=tr.trace_id)
    logger.info(
        "transfer return no=%s item=%s qty=%s fallback=%s",
        tr.transfer_no,
        item_id,
        q,
        any(r.fallback_used for r in restored),
    )
    return TransferReturn(transfer=tr, quantity=q, restored=restored)
