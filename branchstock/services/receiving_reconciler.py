# branchstock/services/receiving_reconciler.py
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from branchstock.api.errors import NoItemsChecked, ValidationError
from branchstock.core.config import get_settings
from branchstock.metrics import DELIVERIES
from branchstock.models.delivery_receipt import DeliveryReceipt, DeliveryReceiptLine
from branchstock.models.enums import SourceType
from branchstock.models.purchase_order import PurchaseOrderLine
from branchstock.ports import ProductCatalogPort, PurchaseOrderPort
from branchstock.services.activity_writer import ActivityWriter
from branchstock.services.batch_store import BatchStore
from branchstock.services.batch_store_write import BatchIn
from branchstock.services.directory import DbProductCatalog, DbPurchaseOrders
from branchstock.services.receiving_query import get_receipt as _get_receipt
from branchstock.services.receiving_query import list_receipts as _list_receipts
from branchstock.services.stock_ledger_service import StockLedgerService
from branchstock.services.utils.shelf_life import compute_expiration_date

UTC = timezone.utc
logger = logging.getLogger("branchstock.receiving")

_CENT = Decimal("0.01")


@dataclass
class DeliveryLineIn:
    product_id: int
    received_quantity: int
    checked: bool = True
    expiration_date: Optional[date] = None


class ReceivingReconciler:
    """
    采购到货对账：

    - 采购单必须 InTransit；同一采购单只能收一次
    - 只处理勾选行；一行都没勾 → NoItemsChecked
    - discrepancy = 实收 - 订货；应付 = Σ 实收 × 单价（只算勾选行）
    - 实收 > 0 的行生成一个 purchase 批次：<order_no>-BATCH-<nnn>
      到期日 = 收货日 + 保质期月数（或包装上的显式到期日）
    """

    def __init__(
        self,
        store: Optional[BatchStore] = None,
        ledger: Optional[StockLedgerService] = None,
        orders: Optional[PurchaseOrderPort] = None,
        catalog: Optional[ProductCatalogPort] = None,
    ) -> None:
        self.store = store or BatchStore()
        self.ledger = ledger or StockLedgerService(store=self.store)
        self.orders = orders or DbPurchaseOrders()
        self.catalog = catalog or DbProductCatalog()

    async def reconcile_delivery(
        self,
        session: AsyncSession,
        *,
        purchase_order_id: int,
        lines: Sequence[DeliveryLineIn],
        received_by: Optional[str] = None,
        received_at: Optional[datetime] = None,
        notes: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> DeliveryReceipt:
        po = await self.orders.get_in_transit_order(session, purchase_order_id)

        checked = [ln for ln in lines if ln.checked]
        if not checked:
            raise NoItemsChecked(
                "收货至少要勾选一行",
                context={"purchase_order_id": int(po.id)},
                details=[{"type": "validation", "path": "items", "reason": "no_items_checked"}],
            )

        # ---------- 校验 + 计划 ----------
        po_lines: Dict[int, PurchaseOrderLine] = {int(pl.product_id): pl for pl in po.lines}
        problems: List[dict] = []
        seen: set[int] = set()
        for idx, ln in enumerate(checked):
            pid = int(ln.product_id)
            if pid not in po_lines:
                problems.append(
                    {"type": "validation", "path": f"items[{idx}].product_id", "product_id": pid, "reason": "not_on_purchase_order"}
                )
            if pid in seen:
                problems.append(
                    {"type": "validation", "path": f"items[{idx}].product_id", "product_id": pid, "reason": "duplicate_line"}
                )
            seen.add(pid)
            if int(ln.received_quantity) < 0:
                problems.append(
                    {"type": "validation", "path": f"items[{idx}].received_quantity", "product_id": pid, "reason": "negative"}
                )
        if problems:
            raise ValidationError(
                f"收货行与采购单 {po.order_no} 不符",
                context={"purchase_order_id": int(po.id)},
                details=problems,
            )
        if sum(int(ln.received_quantity) for ln in checked) == 0:
            raise ValidationError(
                f"采购单 {po.order_no} 勾选行实收合计为 0，不能登记为收货",
                context={"purchase_order_id": int(po.id)},
                details=[{"type": "validation", "path": "items", "reason": "nothing_received"}],
            )

        ts = received_at or datetime.now(UTC)
        received_date = ts.date()
        default_months = get_settings().DEFAULT_SHELF_LIFE_MONTHS

        planned: List[Tuple[DeliveryLineIn, PurchaseOrderLine, date]] = []
        for ln in checked:
            pl = po_lines[int(ln.product_id)]
            product = await self.catalog.get_product(session, ln.product_id)
            exp = compute_expiration_date(
                received_date,
                product.shelf_life if product is not None else None,
                explicit=ln.expiration_date,
                default_months=default_months,
            )
            planned.append((ln, pl, exp))

        # ---------- 写 ----------
        receipt = DeliveryReceipt(
            purchase_order_id=int(po.id),
            branch_id=int(po.branch_id),
            notes=notes,
            received_by=received_by,
            received_at=ts,
            total_amount=Decimal("0.00"),
            trace_id=trace_id,
        )
        session.add(receipt)
        await session.flush()

        total = Decimal("0.00")
        seq = 0
        deltas: Dict[Tuple[int, int], int] = defaultdict(int)
        for line_no, (ln, pl, exp) in enumerate(planned, start=1):
            received = int(ln.received_quantity)
            price = Decimal(pl.unit_price)
            amount = (price * received).quantize(_CENT)
            total += amount

            batch_id: Optional[int] = None
            if received > 0:
                seq += 1
                b = await self.store.replenish(
                    session,
                    BatchIn(
                        branch_id=int(po.branch_id),
                        product_id=int(pl.product_id),
                        batch_number=f"{po.order_no}-BATCH-{seq:03d}",
                        usage_type=str(pl.usage_type),
                        quantity=received,
                        unit_cost=price,
                        expiration_date=exp,
                        received_date=received_date,
                        source_type=SourceType.PURCHASE.value,
                        source_reference=po.order_no,
                        received_by=received_by,
                    ),
                    ref=po.order_no,
                    ref_line=line_no,
                    occurred_at=ts,
                    trace_id=trace_id,
                )
                batch_id = int(b.id)
                deltas[(int(po.branch_id), int(pl.product_id))] += received

            session.add(
                DeliveryReceiptLine(
                    receipt_id=receipt.id,
                    line_no=line_no,
                    product_id=int(pl.product_id),
                    usage_type=str(pl.usage_type),
                    ordered_quantity=int(pl.ordered_quantity),
                    received_quantity=received,
                    discrepancy=received - int(pl.ordered_quantity),
                    unit_price=price,
                    line_amount=amount,
                    checked=True,
                    expiration_date=exp,
                    batch_id=batch_id,
                )
            )

        receipt.total_amount = total.quantize(_CENT)
        await session.flush()

        await self.orders.mark_received(session, po.id, received_at=ts)

        receipt = await _get_receipt(session, receipt.id)
        await ActivityWriter.write(
            session,
            action="DELIVERY_RECEIVED",
            entity_type="delivery",
            entity_id=receipt.id,
            after={
                "purchase_order_id": int(po.id),
                "order_no": po.order_no,
                "total_amount": receipt.total_amount,
                "lines": [
                    {
                        "product_id": x.product_id,
                        "ordered": x.ordered_quantity,
                        "received": x.received_quantity,
                        "discrepancy": x.discrepancy,
                        "batch_id": x.batch_id,
                    }
                    for x in receipt.items
                ],
            },
            performed_by=received_by,
            branch_id=int(po.branch_id),
            notes=notes,
            trace_id=trace_id,
        )
        if deltas:
            await self.ledger.reconcile_many(session, dict(deltas), performed_by=received_by, trace_id=trace_id)
        DELIVERIES.inc()

        logger.info(
            "delivery received po=%s lines=%s total=%s by=%s",
            po.order_no,
            len(planned),
            receipt.total_amount,
            received_by,
        )
        return receipt

    async def get_receipt(self, session: AsyncSession, receipt_id: int) -> DeliveryReceipt:
        return await _get_receipt(session, receipt_id)

    async def list_receipts(
        self,
        session: AsyncSession,
        *,
        branch_id: int,
        time_from: Optional[datetime] = None,
        time_to: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[DeliveryReceipt]:
        return await _list_receipts(session, branch_id=branch_id, time_from=time_from, time_to=time_to, limit=limit)
