# branchstock/services/transfer_ops_receive.py
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from branchstock.core.config import get_settings
from branchstock.metrics import TRANSFER_TRANSITIONS
from branchstock.models.enums import SourceType, TransferStatus
from branchstock.models.transfer_request import TransferRequest
from branchstock.ports import ProductCatalogPort
from branchstock.services.activity_writer import ActivityWriter
from branchstock.services.batch_store import BatchStore
from branchstock.services.batch_store_write import BatchIn
from branchstock.services.stock_ledger_service import StockLedgerService
from branchstock.services.transfer_ids import UTC, leg_ref_line
from branchstock.services.transfer_query import (
    cas_status,
    get_with_items,
    require_branch,
    require_status,
    snapshot,
)
from branchstock.services.utils.shelf_life import compute_expiration_date

logger = logging.getLogger("branchstock.transfers")


async def leg_expiration(
    session: AsyncSession,
    *,
    catalog: ProductCatalogPort,
    product_id: int,
    leg: Dict[str, Any],
    received_date: date,
) -> date:
    """沿用来源批次到期日；历史批次缺到期日时按商品保质期补算"""
    raw = leg.get("expiration_date")
    if raw:
        return date.fromisoformat(str(raw))
    product = await catalog.get_product(session, product_id)
    return compute_expiration_date(
        received_date,
        product.shelf_life if product is not None else None,
        default_months=get_settings().DEFAULT_SHELF_LIFE_MONTHS,
    )


async def receive(
    session: AsyncSession,
    *,
    store: BatchStore,
    ledger: StockLedgerService,
    catalog: ProductCatalogPort,
    transfer_id: int,
    acting_branch_id: int,
    received_by: Optional[str] = None,
) -> TransferRequest:
    """
    收货方确认收货：InTransit → Completed

    每个已扣减段在收货方生成一个 transfer-in 批次：
        batch_number = <transfer_no>-BATCH-<nnn>
        到期日 / 成本沿用来源批次，origin_batch_id = 来源批次
    """
    tr = await get_with_items(session, transfer_id, for_update=True)
    require_branch(tr, acting_branch_id, tr.to_branch_id, role="收货方", action="receive")
    require_status(tr, TransferStatus.IN_TRANSIT, action="receive")

    now = datetime.now(UTC)
    today = now.date()

    # 计划：先把所有新批次描述算好
    planned: List[Tuple[Any, int, Dict[str, Any], BatchIn]] = []
    seq = 0
    for it in tr.items:
        for idx, leg in enumerate(it.consumed_batches or [], start=1):
            seq += 1
            exp = await leg_expiration(session, catalog=catalog, product_id=it.product_id, leg=leg, received_date=today)
            planned.append(
                (
                    it,
                    idx,
                    leg,
                    BatchIn(
                        branch_id=int(tr.to_branch_id),
                        product_id=int(it.product_id),
                        batch_number=f"{tr.transfer_no}-BATCH-{seq:03d}",
                        usage_type=str(it.usage_type),
                        quantity=int(leg["quantity"]),
                        unit_cost=Decimal(str(leg.get("unit_cost") or "0")),
                        expiration_date=exp,
                        received_date=today,
                        source_type=SourceType.TRANSFER_IN.value,
                        source_reference=tr.transfer_no,
                        origin_batch_id=int(leg["batch_id"]),
                        received_by=received_by,
                    ),
                )
            )

    before = snapshot(tr)
    await cas_status(
        session,
        tr,
        expected=TransferStatus.IN_TRANSIT,
        new=TransferStatus.COMPLETED,
        received_by=received_by,
        received_at=now,
    )

    deltas: Dict[Tuple[int, int], int] = defaultdict(int)
    received_ids: Dict[Tuple[int, int], int] = {}
    for it, idx, leg, data in planned:
        b = await store.replenish(
            session,
            data,
            ref=tr.transfer_no,
            ref_line=leg_ref_line(it.line_no, idx),
            occurred_at=now,
            trace_id=tr.trace_id,
        )
        received_ids[(int(it.id), idx)] = int(b.id)
        deltas[(int(tr.to_branch_id), int(it.product_id))] += int(data.quantity)

    # 记下每段在收货方生成的批次，退回时优先从这里扣
    for it in tr.items:
        legs = []
        for idx, leg in enumerate(it.consumed_batches or [], start=1):
            legs.append({**leg, "received_batch_id": received_ids.get((int(it.id), idx))})
        it.consumed_batches = legs
    await session.flush()

    tr = await get_with_items(session, tr.id)
    await ActivityWriter.write(
        session,
        action="TRANSFER_RECEIVED",
        entity_type="transfer",
        entity_id=tr.transfer_no,
        before=before,
        after=snapshot(tr),
        performed_by=received_by,
        branch_id=tr.to_branch_id,
        trace_id=tr.trace_id,
    )
    await ledger.reconcile_many(session, dict(deltas), performed_by=received_by, trace_id=tr.trace_id)
    TRANSFER_TRANSITIONS.labels(transfer_type=tr.transfer_type, to_status=TransferStatus.COMPLETED.value).inc()
    logger.info("transfer received no=%s batches=%s by=%s", tr.transfer_no, len(planned), received_by)
    return tr
