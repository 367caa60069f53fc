# tests/services/test_receiving_reconciler.py
from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from tests.helpers.inventory import activities, ensure_product, seed_purchase_order

from branchstock.api.errors import InvalidStateTransition, NoItemsChecked, ValidationError
from branchstock.models.enums import PurchaseOrderStatus, SourceType
from branchstock.models.purchase_order import PurchaseOrder
from branchstock.services.batch_store import BatchStore
from branchstock.services.receiving_reconciler import DeliveryLineIn, ReceivingReconciler
from branchstock.services.stock_ledger_service import StockLedgerService

UTC = timezone.utc
pytestmark = pytest.mark.asyncio


def _reconciler() -> ReceivingReconciler:
    store = BatchStore()
    return ReceivingReconciler(store=store, ledger=StockLedgerService(store=store))


async def test_short_delivery_records_discrepancy_and_payable(session: AsyncSession):
    await ensure_product(session, 10, shelf_life="6 months")
    po = await seed_purchase_order(session, order_no="PO-100", branch_id=1, lines=[(10, 100, "10.00")])
    svc = _reconciler()

    receipt = await svc.reconcile_delivery(
        session,
        purchase_order_id=po.id,
        lines=[DeliveryLineIn(product_id=10, received_quantity=95)],
        received_by="clerk",
        received_at=datetime(2024, 8, 31, 9, 30, tzinfo=UTC),
    )

    assert receipt.total_amount == Decimal("950.00")
    assert len(receipt.items) == 1
    line = receipt.items[0]
    assert (line.ordered_quantity, line.received_quantity, line.discrepancy) == (100, 95, -5)
    assert line.expiration_date == date(2025, 2, 28)

    batch = await svc.store.require_batch(session, line.batch_id)
    assert batch.batch_number == "PO-100-BATCH-001"
    assert batch.remaining_quantity == 95
    assert batch.source_type == SourceType.PURCHASE.value
    assert batch.source_reference == "PO-100"
    assert batch.unit_cost == Decimal("10.00")

    po = await session.get(PurchaseOrder, po.id, populate_existing=True)
    assert po.status == PurchaseOrderStatus.RECEIVED.value
    assert await svc.ledger.current_stock(session, branch_id=1, product_id=10) == 95
    assert len(await activities(session, "DELIVERY_RECEIVED")) == 1


async def test_only_checked_lines_are_processed(session: AsyncSession):
    po = await seed_purchase_order(
        session, order_no="PO-200", branch_id=1, lines=[(10, 5, "2.00"), (11, 8, "3.50")]
    )
    svc = _reconciler()

    receipt = await svc.reconcile_delivery(
        session,
        purchase_order_id=po.id,
        lines=[
            DeliveryLineIn(product_id=10, received_quantity=5, checked=True, expiration_date=date(2027, 1, 1)),
            DeliveryLineIn(product_id=11, received_quantity=8, checked=False),
        ],
    )
    assert [x.product_id for x in receipt.items] == [10]
    assert receipt.total_amount == Decimal("10.00")
    b = await svc.store.require_batch(session, receipt.items[0].batch_id)
    assert b.expiration_date == date(2027, 1, 1)
    assert await svc.store.sum_remaining(session, branch_id=1, product_id=11) == 0


async def test_zero_received_line_creates_no_batch(session: AsyncSession):
    po = await seed_purchase_order(
        session, order_no="PO-300", branch_id=1, lines=[(10, 4, "1.00"), (11, 2, "3.00")]
    )
    receipt = await _reconciler().reconcile_delivery(
        session,
        purchase_order_id=po.id,
        lines=[DeliveryLineIn(product_id=10, received_quantity=0), DeliveryLineIn(product_id=11, received_quantity=2)],
    )
    by_product = {ln.product_id: ln for ln in receipt.items}
    assert by_product[10].batch_id is None
    assert by_product[10].discrepancy == -4
    assert by_product[11].batch_id is not None
    assert receipt.total_amount == Decimal("6.00")


async def test_delivery_that_receives_nothing_is_rejected(session: AsyncSession):
    po = await seed_purchase_order(session, order_no="PO-310", branch_id=1, lines=[(10, 100, "1.00")])
    with pytest.raises(ValidationError) as ei:
        await _reconciler().reconcile_delivery(
            session, purchase_order_id=po.id, lines=[DeliveryLineIn(product_id=10, received_quantity=0)]
        )
    assert ei.value.details[0]["reason"] == "nothing_received"

    po = await session.get(PurchaseOrder, po.id, populate_existing=True)
    assert po.status == PurchaseOrderStatus.IN_TRANSIT.value
    assert await activities(session, "DELIVERY_RECEIVED") == []


async def test_nothing_checked_is_rejected(session: AsyncSession):
    po = await seed_purchase_order(session, order_no="PO-400", branch_id=1, lines=[(10, 4, "1.00")])
    with pytest.raises(NoItemsChecked):
        await _reconciler().reconcile_delivery(
            session, purchase_order_id=po.id, lines=[DeliveryLineIn(product_id=10, received_quantity=4, checked=False)]
        )


async def test_line_not_on_order_is_rejected(session: AsyncSession):
    await ensure_product(session, 77)
    po = await seed_purchase_order(session, order_no="PO-500", branch_id=1, lines=[(10, 4, "1.00")])
    with pytest.raises(ValidationError):
        await _reconciler().reconcile_delivery(
            session, purchase_order_id=po.id, lines=[DeliveryLineIn(product_id=77, received_quantity=1)]
        )


async def test_order_must_be_in_transit_and_received_once(session: AsyncSession):
    po = await seed_purchase_order(session, order_no="PO-600", branch_id=1, lines=[(10, 2, "1.00")])
    svc = _reconciler()
    await svc.reconcile_delivery(session, purchase_order_id=po.id, lines=[DeliveryLineIn(product_id=10, received_quantity=2)])

    with pytest.raises(InvalidStateTransition):
        await svc.reconcile_delivery(
            session, purchase_order_id=po.id, lines=[DeliveryLineIn(product_id=10, received_quantity=2)]
        )
