# tests/services/test_batch_store.py
from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from tests.helpers.inventory import activities, movements_of, remaining_of, seed_batch

from branchstock.api.errors import BatchNotFound, BatchUsageMismatch, InsufficientStock, ValidationError
from branchstock.models.enums import BatchStatus, SourceType, UsageType
from branchstock.services.batch_store import BatchStore
from branchstock.services.batch_store_write import BatchIn

pytestmark = pytest.mark.asyncio


async def test_fifo_takes_earliest_expiry_first_and_null_expiry_last(session: AsyncSession):
    near = await seed_batch(session, branch_id=1, product_id=10, code="NEAR", qty=3, days=5)
    far = await seed_batch(session, branch_id=1, product_id=10, code="FAR", qty=5, days=60)
    none = await seed_batch(session, branch_id=1, product_id=10, code="NOEXP", qty=5, days=None)

    store = BatchStore()
    consumed = await store.allocate_fifo(
        session, branch_id=1, product_id=10, quantity=6, usage_type=UsageType.OTC.value, ref="SO-1"
    )

    assert [(c.batch_number, c.quantity) for c in consumed] == [("NEAR", 3), ("FAR", 3)]
    assert await remaining_of(session, near.id) == (0, BatchStatus.DEPLETED.value)
    assert await remaining_of(session, far.id) == (2, BatchStatus.ACTIVE.value)
    assert await remaining_of(session, none.id) == (5, BatchStatus.ACTIVE.value)

    mv = await movements_of(session, ref="SO-1")
    assert [m.delta for m in mv] == [-3, -3]


async def test_fifo_reaches_null_expiry_batch_only_after_dated_ones(session: AsyncSession):
    await seed_batch(session, branch_id=1, product_id=10, code="NOEXP", qty=5, days=None)
    await seed_batch(session, branch_id=1, product_id=10, code="LATE", qty=2, days=300)

    consumed = await BatchStore().allocate_fifo(
        session, branch_id=1, product_id=10, quantity=4, usage_type=UsageType.OTC.value, ref="SO-2"
    )
    assert [(c.batch_number, c.quantity) for c in consumed] == [("LATE", 2), ("NOEXP", 2)]


async def test_fifo_insufficient_is_all_or_nothing(session: AsyncSession):
    a = await seed_batch(session, branch_id=1, product_id=10, code="A", qty=3, days=5)
    b = await seed_batch(session, branch_id=1, product_id=10, code="B", qty=2, days=9)

    with pytest.raises(InsufficientStock) as ei:
        await BatchStore().allocate_fifo(
            session, branch_id=1, product_id=10, quantity=6, usage_type=UsageType.OTC.value, ref="SO-3"
        )
    assert ei.value.code == "insufficient_stock"
    assert await remaining_of(session, a.id) == (3, BatchStatus.ACTIVE.value)
    assert await remaining_of(session, b.id) == (2, BatchStatus.ACTIVE.value)
    assert await movements_of(session, ref="SO-3") == []


async def test_fifo_ignores_other_usage_type_and_expired_batches(session: AsyncSession):
    await seed_batch(session, branch_id=1, product_id=10, code="SALON", qty=50, usage_type=UsageType.SALON_USE.value)
    await seed_batch(session, branch_id=1, product_id=10, code="OLD", qty=50, status=BatchStatus.EXPIRED.value)
    await seed_batch(session, branch_id=1, product_id=10, code="OTC", qty=2)

    with pytest.raises(InsufficientStock):
        await BatchStore().allocate_fifo(
            session, branch_id=1, product_id=10, quantity=3, usage_type=UsageType.OTC.value, ref="SO-4"
        )


async def test_fifo_rejects_non_positive_quantity(session: AsyncSession):
    await seed_batch(session, branch_id=1, product_id=10, code="A", qty=3)
    with pytest.raises(ValidationError):
        await BatchStore().allocate_fifo(
            session, branch_id=1, product_id=10, quantity=0, usage_type=UsageType.OTC.value, ref="SO-5"
        )


async def test_allocate_specific_checks(session: AsyncSession):
    b = await seed_batch(session, branch_id=1, product_id=10, code="S1", qty=4)
    store = BatchStore()

    with pytest.raises(BatchNotFound):
        await store.allocate_specific(session, batch_id=99999, quantity=1, usage_type="otc", ref="X-1")

    with pytest.raises(BatchUsageMismatch):
        await store.allocate_specific(session, batch_id=b.id, quantity=1, usage_type="salon-use", ref="X-1")

    with pytest.raises(BatchNotFound):
        await store.allocate_specific(session, batch_id=b.id, quantity=1, usage_type="otc", ref="X-1", branch_id=2)

    with pytest.raises(InsufficientStock):
        await store.allocate_specific(session, batch_id=b.id, quantity=5, usage_type="otc", ref="X-1")

    c = await store.allocate_specific(session, batch_id=b.id, quantity=4, usage_type="otc", ref="X-1")
    assert c.quantity == 4
    assert await remaining_of(session, b.id) == (0, BatchStatus.DEPLETED.value)


async def test_replenish_requires_expiration_date(session: AsyncSession):
    await seed_batch(session, branch_id=1, product_id=10, code="A", qty=1)
    with pytest.raises(ValidationError):
        await BatchStore().replenish(
            session,
            BatchIn(
                branch_id=1,
                product_id=10,
                batch_number="NEW-1",
                usage_type="otc",
                quantity=5,
                unit_cost=Decimal("3.00"),
                expiration_date=None,
                received_date=date.today(),
                source_type=SourceType.PURCHASE.value,
                source_reference="PO-X",
            ),
        )


async def test_replenish_creates_active_batch_with_receipt_movement(session: AsyncSession):
    await seed_batch(session, branch_id=1, product_id=10, code="A", qty=1)
    b = await BatchStore().replenish(
        session,
        BatchIn(
            branch_id=1,
            product_id=10,
            batch_number="NEW-2",
            usage_type="otc",
            quantity=5,
            unit_cost=Decimal("3.00"),
            expiration_date=date.today() + timedelta(days=90),
            received_date=date.today(),
            source_type=SourceType.PURCHASE.value,
            source_reference="PO-Y",
        ),
    )
    assert b.remaining_quantity == 5 and b.original_quantity == 5
    assert b.status == BatchStatus.ACTIVE.value
    mv = await movements_of(session, ref="PO-Y")
    assert [(m.reason, m.delta, m.after_qty) for m in mv] == [("RECEIPT", 5, 5)]


async def test_restore_reactivates_depleted_but_not_expired(session: AsyncSession):
    dep = await seed_batch(session, branch_id=1, product_id=10, code="DEP", qty=0, original=5, status="depleted")
    exp = await seed_batch(session, branch_id=1, product_id=10, code="EXP", qty=0, original=5, status="expired")
    store = BatchStore()

    r1 = await store.return_to_origin(session, origin_batch_id=dep.id, quantity=2, reason="return", ref="RT-1")
    r2 = await store.return_to_origin(session, origin_batch_id=exp.id, quantity=2, reason="return", ref="RT-1")

    assert r1.active is True and r1.fallback_used is False
    assert r2.active is False
    assert await remaining_of(session, dep.id) == (2, BatchStatus.ACTIVE.value)
    assert await remaining_of(session, exp.id) == (2, BatchStatus.EXPIRED.value)


async def test_restore_cannot_exceed_original_quantity(session: AsyncSession):
    b = await seed_batch(session, branch_id=1, product_id=10, code="FULLISH", qty=4, original=5)
    with pytest.raises(ValidationError):
        await BatchStore().return_to_origin(session, origin_batch_id=b.id, quantity=2, reason="return", ref="RT-2")
    assert await remaining_of(session, b.id) == (4, BatchStatus.ACTIVE.value)


async def test_return_to_missing_origin_uses_fallback_batch(session: AsyncSession):
    await seed_batch(session, branch_id=1, product_id=10, code="A", qty=1)
    store = BatchStore()

    with pytest.raises(BatchNotFound):
        await store.return_to_origin(session, origin_batch_id=424242, quantity=3, reason="return", ref="RT-3")

    res = await store.return_to_origin(
        session,
        origin_batch_id=424242,
        quantity=3,
        reason="return",
        ref="RT-3",
        fallback=BatchIn(
            branch_id=1,
            product_id=10,
            batch_number="",
            usage_type="otc",
            quantity=3,
            unit_cost=Decimal("7.50"),
            expiration_date=date.today() + timedelta(days=30),
            received_date=date.today(),
            source_type=SourceType.TRANSFER_IN.value,
            source_reference="RT-3",
        ),
    )
    assert res.fallback_used is True
    created = await store.require_batch(session, res.batch_id)
    assert created.batch_number == "RET-RT-3-001"
    assert created.remaining_quantity == 3
    assert len(await activities(session, "RETURN_FALLBACK_BATCH_CREATED")) == 1


async def test_sweep_expired_marks_and_reports_touched(session: AsyncSession):
    old = await seed_batch(session, branch_id=1, product_id=10, code="OLD", qty=4, days=-1)
    fresh = await seed_batch(session, branch_id=1, product_id=10, code="FRESH", qty=4, days=10)
    store = BatchStore()

    sweep = await store.sweep_expired(session, today=date.today())
    assert sweep.count == 1
    assert sweep.touched == [(1, 10)]
    assert sweep.deltas == {(1, 10): -4}
    assert await remaining_of(session, old.id) == (4, BatchStatus.EXPIRED.value)
    assert await remaining_of(session, fresh.id) == (4, BatchStatus.ACTIVE.value)
    assert await store.sum_remaining(session, branch_id=1, product_id=10) == 4


async def test_expiring_and_expired_queries(session: AsyncSession):
    await seed_batch(session, branch_id=1, product_id=10, code="SOON", qty=1, days=7)
    await seed_batch(session, branch_id=1, product_id=10, code="LATER", qty=1, days=120)
    await seed_batch(session, branch_id=1, product_id=10, code="PAST", qty=1, days=-3)
    store = BatchStore()

    soon = await store.expiring_batches(session, branch_id=1, days_ahead=30)
    assert [b.batch_number for b in soon] == ["SOON"]
    past = await store.expired_batches(session, branch_id=1)
    assert [b.batch_number for b in past] == ["PAST"]
