# tests/services/test_stock_ledger_service.py
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from tests.helpers.inventory import (
    activities,
    ensure_product,
    movements_of,
    remaining_of,
    seed_batch,
    seed_purchase_order,
    set_manager_code,
)

from branchstock.api.errors import ManagerCodeRejected, ValidationError
from branchstock.models.enums import BatchStatus, StockLevel, UsageType
from branchstock.services.batch_store import BatchStore
from branchstock.services.receiving_reconciler import DeliveryLineIn, ReceivingReconciler
from branchstock.services.stock_ledger_service import StockLedgerService, month_bounds

UTC = timezone.utc
pytestmark = pytest.mark.asyncio


async def test_reconcile_opens_current_period_and_matches_batch_sum(session: AsyncSession):
    await seed_batch(session, branch_id=1, product_id=10, code="A", qty=7)
    await seed_batch(session, branch_id=1, product_id=10, code="B", qty=5, usage_type=UsageType.SALON_USE.value)
    await seed_batch(session, branch_id=1, product_id=10, code="X", qty=9, status=BatchStatus.EXPIRED.value)

    ledger = StockLedgerService()
    qty = await ledger.reconcile(session, branch_id=1, product_id=10)

    assert qty == 12
    entry = await ledger.get_entry(session, branch_id=1, product_id=10)
    assert entry is not None
    assert (entry.period_start, entry.period_end) == month_bounds(date.today())
    assert entry.real_time_stock == 12
    assert await ledger.current_stock(session, branch_id=1, product_id=10) == 12


async def test_ledger_follows_every_allocation(session: AsyncSession):
    await seed_batch(session, branch_id=1, product_id=10, code="A", qty=10)
    store = BatchStore()
    ledger = StockLedgerService(store=store)
    await ledger.reconcile(session, branch_id=1, product_id=10)

    consumed = await store.allocate_fifo(session, branch_id=1, product_id=10, quantity=4, usage_type="otc", ref="SO-1")
    await ledger.reconcile(
        session, branch_id=1, product_id=10, applied_delta=-sum(c.quantity for c in consumed)
    )

    assert await ledger.current_stock(session, branch_id=1, product_id=10) == 6
    assert await store.sum_remaining(session, branch_id=1, product_id=10) == 6
    assert await activities(session, "RECONCILIATION_DIVERGENCE") == []


async def test_divergence_is_corrected_and_recorded(session: AsyncSession, caplog):
    b = await seed_batch(session, branch_id=1, product_id=10, code="A", qty=10)
    ledger = StockLedgerService()
    await ledger.reconcile(session, branch_id=1, product_id=10)

    # 绕过服务直接改批次：台账期望 10，实际 8
    b.remaining_quantity = 8
    await session.flush()

    with caplog.at_level("WARNING", logger="branchstock.ledger"):
        qty = await ledger.reconcile(session, branch_id=1, product_id=10, applied_delta=0)

    assert qty == 8
    assert any("divergence" in r.getMessage() for r in caplog.records)
    entry = await ledger.get_entry(session, branch_id=1, product_id=10)
    assert entry.real_time_stock == 8
    recs = await activities(session, "RECONCILIATION_DIVERGENCE")
    assert len(recs) == 1
    assert recs[0].before_state == {"real_time_stock": 10}
    assert recs[0].after_state == {"real_time_stock": 8}


async def test_weekly_counts_and_closed_period_rule(session: AsyncSession):
    await ensure_product(session, 10, min_stock=5)
    await seed_batch(session, branch_id=1, product_id=10, code="A", qty=20)
    ledger = StockLedgerService()

    jan = date(2025, 1, 1)
    await ledger.open_period(session, branch_id=1, product_id=10, period_start=jan)
    e = await ledger.record_weekly_count(session, branch_id=1, product_id=10, week_number=2, count=18, period_start=jan)
    assert e.week_two_stock == 18

    with pytest.raises(ValidationError):
        await ledger.record_weekly_count(session, branch_id=1, product_id=10, week_number=5, count=1, period_start=jan)
    with pytest.raises(ValidationError):
        await ledger.record_weekly_count(session, branch_id=1, product_id=10, week_number=1, count=-1, period_start=jan)

    # 开二月会关闭一月；关闭后只允许补录第四周
    await ledger.open_period(session, branch_id=1, product_id=10, period_start=date(2025, 2, 1))
    with pytest.raises(ValidationError):
        await ledger.record_weekly_count(session, branch_id=1, product_id=10, week_number=3, count=17, period_start=jan)
    e = await ledger.record_weekly_count(session, branch_id=1, product_id=10, week_number=4, count=16, period_start=jan)
    assert e.closed is True and e.week_four_stock == 16


async def test_stock_level_uses_current_stock_and_min_stock(session: AsyncSession):
    await ensure_product(session, 10, min_stock=10)
    await seed_batch(session, branch_id=1, product_id=10, code="A", qty=8)
    ledger = StockLedgerService()
    await ledger.reconcile(session, branch_id=1, product_id=10)
    assert await ledger.stock_level(session, branch_id=1, product_id=10) == StockLevel.LOW_STOCK

    assert await ledger.stock_level(session, branch_id=1, product_id=999) == StockLevel.OUT_OF_STOCK


async def test_calculate_ending_stock(session: AsyncSession):
    await seed_batch(session, branch_id=1, product_id=10, code="A", qty=30)
    ledger = StockLedgerService()
    await ledger.open_period(session, branch_id=1, product_id=10, period_start=date(2025, 4, 1), beginning_stock=42)

    po = await seed_purchase_order(session, order_no="PO-END-1", branch_id=1, lines=[(10, 12, "2.00")])
    await ReceivingReconciler(ledger=ledger).reconcile_delivery(
        session,
        purchase_order_id=po.id,
        lines=[DeliveryLineIn(product_id=10, received_quantity=12)],
        received_at=datetime(2025, 3, 15, 10, 0, tzinfo=UTC),
    )

    res = await ledger.calculate_ending_stock(
        session, branch_id=1, product_id=10, period_start=date(2025, 3, 1), period_end=date(2025, 3, 31)
    )
    assert res.next_period_beginning == 42
    assert res.deliveries_in_period == 12
    assert res.calculated_ending == 54


async def test_force_adjust_requires_manager_code(session: AsyncSession):
    b = await seed_batch(session, branch_id=1, product_id=10, code="A", qty=10)
    await set_manager_code(session, 1, "4321")
    ledger = StockLedgerService()
    await ledger.reconcile(session, branch_id=1, product_id=10)

    with pytest.raises(ManagerCodeRejected):
        await ledger.force_adjust(session, batch_id=b.id, new_remaining=3, manager_code="0000")
    assert await remaining_of(session, b.id) == (10, BatchStatus.ACTIVE.value)

    out = await ledger.force_adjust(
        session, batch_id=b.id, new_remaining=3, manager_code="4321", performed_by="mgr", reason="damaged"
    )
    assert out.remaining_quantity == 3
    assert await ledger.current_stock(session, branch_id=1, product_id=10) == 3
    assert len(await activities(session, "FORCE_ADJUST")) == 1
    assert await activities(session, "RECONCILIATION_DIVERGENCE") == []
    mv = await movements_of(session, ref=f"ADJ-{b.id}")
    assert [(m.reason, m.delta) for m in mv] == [("FORCE_ADJUST", -7)]


async def test_force_adjust_to_zero_depletes(session: AsyncSession):
    b = await seed_batch(session, branch_id=1, product_id=10, code="A", qty=4)
    await set_manager_code(session, 1, "9999")
    ledger = StockLedgerService()

    await ledger.force_adjust(session, batch_id=b.id, new_remaining=0, manager_code="9999")
    assert await remaining_of(session, b.id) == (0, BatchStatus.DEPLETED.value)

    with pytest.raises(ValidationError):
        await ledger.force_adjust(session, batch_id=b.id, new_remaining=5, manager_code="9999")


async def test_close_period_and_history(session: AsyncSession):
    await seed_batch(session, branch_id=1, product_id=10, code="A", qty=6)
    ledger = StockLedgerService()
    mar = date(2025, 3, 1)
    await ledger.open_period(session, branch_id=1, product_id=10, period_start=mar)

    e = await ledger.close_period(session, branch_id=1, product_id=10, period_start=mar)
    assert e.closed is True
    with pytest.raises(ValidationError):
        await ledger.record_weekly_count(session, branch_id=1, product_id=10, week_number=1, count=6, period_start=mar)

    await ledger.open_period(session, branch_id=1, product_id=10, period_start=date(2025, 4, 1))
    periods = await ledger.period_history(session, branch_id=1, product_id=10)
    assert {p.period_start for p in periods} == {mar, date(2025, 4, 1)}

    await BatchStore().allocate_fifo(session, branch_id=1, product_id=10, quantity=2, usage_type="otc", ref="SO-H")
    hist = await ledger.stock_history(session, branch_id=1, product_id=10)
    assert [(m.ref, m.delta) for m in hist] == [("SO-H", -2)]


async def test_expiry_sweep_is_not_a_divergence(session: AsyncSession, caplog):
    await seed_batch(session, branch_id=1, product_id=10, code="SOON", qty=5, days=1)
    await seed_batch(session, branch_id=1, product_id=10, code="LATE", qty=2, days=60)
    store = BatchStore()
    ledger = StockLedgerService(store=store)
    await ledger.reconcile(session, branch_id=1, product_id=10)

    sweep = await store.sweep_expired(session, today=date.today() + timedelta(days=5))
    assert sweep.deltas == {(1, 10): -5}

    with caplog.at_level("WARNING", logger="branchstock.ledger"):
        out = await ledger.reconcile_many(session, sweep.deltas)

    assert out == {(1, 10): 2}
    assert await ledger.current_stock(session, branch_id=1, product_id=10) == 2
    assert await activities(session, "RECONCILIATION_DIVERGENCE") == []
    assert not any("divergence" in r.getMessage() for r in caplog.records)


async def test_ending_stock_follows_non_calendar_periods(session: AsyncSession):
    ledger = StockLedgerService()
    await ledger.open_period(
        session,
        branch_id=1,
        product_id=10,
        period_start=date(2024, 1, 1),
        period_end=date(2024, 1, 15),
        beginning_stock=3,
    )
    await ledger.open_period(
        session,
        branch_id=1,
        product_id=10,
        period_start=date(2024, 1, 16),
        period_end=date(2024, 1, 31),
        beginning_stock=7,
    )
    await ledger.open_period(session, branch_id=1, product_id=10, period_start=date(2024, 2, 1), beginning_stock=11)

    first = await ledger.calculate_ending_stock(
        session, branch_id=1, product_id=10, period_start=date(2024, 1, 1), period_end=date(2024, 1, 15)
    )
    assert first.next_period_beginning == 7
    second = await ledger.calculate_ending_stock(
        session, branch_id=1, product_id=10, period_start=date(2024, 1, 16), period_end=date(2024, 1, 31)
    )
    assert second.next_period_beginning == 11
    last = await ledger.calculate_ending_stock(
        session, branch_id=1, product_id=10, period_start=date(2024, 2, 1), period_end=date(2024, 2, 29)
    )
    assert last.next_period_beginning == 0


async def test_stock_summary_counts_levels_and_values_active_batches(session: AsyncSession):
    for pid in (10, 11, 12):
        await ensure_product(session, pid, min_stock=5)
    await seed_batch(session, branch_id=1, product_id=10, code="A", qty=10, unit_cost="2.00")
    await seed_batch(
        session, branch_id=1, product_id=10, code="X", qty=4, unit_cost="9.00", status=BatchStatus.EXPIRED.value
    )
    await seed_batch(session, branch_id=1, product_id=11, code="B", qty=3, unit_cost="1.00")
    await seed_batch(
        session, branch_id=1, product_id=12, code="C", qty=0, original=6, status=BatchStatus.DEPLETED.value
    )
    await seed_batch(session, branch_id=2, product_id=10, code="OTHER", qty=50, unit_cost="100.00")

    ledger = StockLedgerService()
    for pid in (10, 11):
        await ledger.reconcile(session, branch_id=1, product_id=pid)

    res = await ledger.stock_summary(session, branch_id=1)
    assert res.total_products == 3
    assert res.total_value == Decimal("23.00")
    assert res.counts == {
        StockLevel.OUT_OF_STOCK.value: 1,
        StockLevel.LOW_STOCK.value: 1,
        StockLevel.IN_STOCK.value: 0,
        StockLevel.HIGH_STOCK.value: 1,
    }
