# tests/services/test_transfer_service.py
from __future__ import annotations

import re
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tests.helpers.inventory import activities, ensure_branch, movements_of, remaining_of, seed_batch

from branchstock.api.errors import InsufficientStock, InvalidStateTransition, ValidationError
from branchstock.models.batch_movement import BatchMovement
from branchstock.models.enums import BatchStatus, SourceType, TransferStatus, UsageType
from branchstock.models.stock_batch import StockBatch
from branchstock.services.transfer_ops_create import TransferLineIn
from branchstock.services.transfer_service import TransferService

pytestmark = pytest.mark.asyncio

FROM, TO, PID = 1, 2, 10


async def _seed(session: AsyncSession, qty: int = 10) -> StockBatch:
    await ensure_branch(session, TO)
    return await seed_batch(session, branch_id=FROM, product_id=PID, code="SRC-1", qty=qty, unit_cost="4.00")


async def _in_transit(session: AsyncSession, svc: TransferService, batch: StockBatch, qty: int = 4):
    tr = await svc.create_transfer(
        session,
        from_branch_id=FROM,
        to_branch_id=TO,
        lines=[TransferLineIn(product_id=PID, quantity=qty, batch_id=batch.id)],
        created_by="alice",
    )
    return await svc.dispatch(session, transfer_id=tr.id, acting_branch_id=FROM, performed_by="alice")


async def test_create_deducts_selected_batch_and_stays_pending(session: AsyncSession):
    src = await _seed(session)
    svc = TransferService()

    tr = await svc.create_transfer(
        session,
        from_branch_id=FROM,
        to_branch_id=TO,
        lines=[TransferLineIn(product_id=PID, quantity=4, batch_id=src.id)],
    )

    assert re.fullmatch(r"TR-1-2-\d{14}-[0-9a-f]{6}", tr.transfer_no)
    assert tr.trace_id == f"TRANSFER:{tr.transfer_no}"
    assert tr.status == TransferStatus.PENDING.value
    assert await remaining_of(session, src.id) == (6, BatchStatus.ACTIVE.value)
    assert await svc.ledger.current_stock(session, branch_id=FROM, product_id=PID) == 6

    mv = await movements_of(session, ref=tr.transfer_no)
    assert [(m.reason, m.delta, m.ref_line) for m in mv] == [("TRANSFER_OUT", -4, 10001)]
    assert len(await activities(session, "TRANSFER_CREATED")) == 1


async def test_create_requires_batch_selection_and_distinct_branches(session: AsyncSession):
    src = await _seed(session)
    svc = TransferService()

    with pytest.raises(ValidationError):
        await svc.create_transfer(
            session, from_branch_id=FROM, to_branch_id=TO, lines=[TransferLineIn(product_id=PID, quantity=1)]
        )
    with pytest.raises(ValidationError):
        await svc.create_transfer(
            session,
            from_branch_id=FROM,
            to_branch_id=FROM,
            lines=[TransferLineIn(product_id=PID, quantity=1, batch_id=src.id)],
        )
    assert await remaining_of(session, src.id) == (10, BatchStatus.ACTIVE.value)


async def test_create_is_all_or_nothing_across_lines(session: AsyncSession):
    src = await _seed(session, qty=5)
    svc = TransferService()

    # 同一批次跨行需求累加：3 + 3 > 5
    with pytest.raises(InsufficientStock):
        await svc.create_transfer(
            session,
            from_branch_id=FROM,
            to_branch_id=TO,
            lines=[
                TransferLineIn(product_id=PID, quantity=3, batch_id=src.id),
                TransferLineIn(product_id=PID, quantity=3, batch_id=src.id),
            ],
        )
    assert await remaining_of(session, src.id) == (5, BatchStatus.ACTIVE.value)


async def test_only_sender_dispatches_and_receive_needs_in_transit(session: AsyncSession):
    src = await _seed(session)
    svc = TransferService()
    tr = await svc.create_transfer(
        session,
        from_branch_id=FROM,
        to_branch_id=TO,
        lines=[TransferLineIn(product_id=PID, quantity=2, batch_id=src.id)],
    )

    with pytest.raises(InvalidStateTransition):
        await svc.receive(session, transfer_id=tr.id, acting_branch_id=TO)
    with pytest.raises(InvalidStateTransition):
        await svc.dispatch(session, transfer_id=tr.id, acting_branch_id=TO)

    tr = await svc.dispatch(session, transfer_id=tr.id, acting_branch_id=FROM)
    assert tr.status == TransferStatus.IN_TRANSIT.value
    with pytest.raises(InvalidStateTransition):
        await svc.receive(session, transfer_id=tr.id, acting_branch_id=FROM)


async def _batch_state(session: AsyncSession):
    rows = await session.execute(
        select(StockBatch.id, StockBatch.remaining_quantity, StockBatch.status)
        .order_by(StockBatch.id)
        .execution_options(populate_existing=True)
    )
    moves = (await session.execute(select(func.count()).select_from(BatchMovement))).scalar_one()
    return [tuple(r) for r in rows.all()], int(moves)


async def test_receive_on_pending_changes_no_batches(session: AsyncSession):
    src = await _seed(session)
    svc = TransferService()
    tr = await svc.create_transfer(
        session,
        from_branch_id=FROM,
        to_branch_id=TO,
        lines=[TransferLineIn(product_id=PID, quantity=3, batch_id=src.id)],
    )
    before = await _batch_state(session)

    with pytest.raises(InvalidStateTransition):
        await svc.receive(session, transfer_id=tr.id, acting_branch_id=TO)

    assert await _batch_state(session) == before
    assert await svc.store.sum_remaining(session, branch_id=TO, product_id=PID) == 0
    tr = await svc.get(session, tr.id)
    assert tr.status == TransferStatus.PENDING.value


async def test_receive_creates_transfer_in_batch_at_receiver(session: AsyncSession):
    src = await _seed(session)
    svc = TransferService()
    tr = await _in_transit(session, svc, src, qty=4)

    tr = await svc.receive(session, transfer_id=tr.id, acting_branch_id=TO, received_by="bob")
    assert tr.status == TransferStatus.COMPLETED.value
    assert tr.received_by == "bob"

    leg = tr.items[0].consumed_batches[0]
    got = await svc.store.require_batch(session, leg["received_batch_id"])
    assert got.batch_number == f"{tr.transfer_no}-BATCH-001"
    assert got.branch_id == TO
    assert got.remaining_quantity == 4
    assert got.source_type == SourceType.TRANSFER_IN.value
    assert got.source_reference == tr.transfer_no
    assert got.origin_batch_id == src.id
    assert got.expiration_date == src.expiration_date
    assert got.usage_type == UsageType.OTC.value

    assert await svc.ledger.current_stock(session, branch_id=FROM, product_id=PID) == 6
    assert await svc.ledger.current_stock(session, branch_id=TO, product_id=PID) == 4
    assert await activities(session, "RECONCILIATION_DIVERGENCE") == []


async def test_partial_return_restores_origin_batch(session: AsyncSession):
    src = await _seed(session)
    svc = TransferService()
    tr = await _in_transit(session, svc, src, qty=4)
    tr = await svc.receive(session, transfer_id=tr.id, acting_branch_id=TO)
    item_id = tr.items[0].id

    res = await svc.return_stock(
        session, transfer_id=tr.id, acting_branch_id=FROM, item_id=item_id, quantity=3, reason="overstock"
    )
    assert res.quantity == 3
    assert res.fallback_used is False
    assert res.transfer.items[0].returned_quantity == 3

    assert await remaining_of(session, src.id) == (9, BatchStatus.ACTIVE.value)
    assert await svc.store.sum_remaining(session, branch_id=TO, product_id=PID) == 1
    assert await svc.ledger.current_stock(session, branch_id=FROM, product_id=PID) == 9
    assert await svc.ledger.current_stock(session, branch_id=TO, product_id=PID) == 1

    # 剩余可退 1
    with pytest.raises(ValidationError):
        await svc.return_stock(session, transfer_id=tr.id, acting_branch_id=FROM, item_id=item_id, quantity=2)

    res = await svc.return_stock(session, transfer_id=tr.id, acting_branch_id=FROM, item_id=item_id, quantity=1)
    assert res.transfer.items[0].returned_quantity == 4
    assert await remaining_of(session, src.id) == (10, BatchStatus.ACTIVE.value)
    received_id = tr.items[0].consumed_batches[0]["received_batch_id"]
    assert await remaining_of(session, received_id) == (0, BatchStatus.DEPLETED.value)
    assert await svc.store.sum_remaining(session, branch_id=TO, product_id=PID) == 0
    assert await svc.ledger.current_stock(session, branch_id=TO, product_id=PID) == 0
    assert len(await activities(session, "TRANSFER_RETURNED")) == 2


async def test_return_only_by_sender_after_completion(session: AsyncSession):
    src = await _seed(session)
    svc = TransferService()
    tr = await _in_transit(session, svc, src, qty=2)

    with pytest.raises(InvalidStateTransition):
        await svc.return_stock(session, transfer_id=tr.id, acting_branch_id=FROM, item_id=tr.items[0].id, quantity=1)

    tr = await svc.receive(session, transfer_id=tr.id, acting_branch_id=TO)
    with pytest.raises(InvalidStateTransition):
        await svc.return_stock(session, transfer_id=tr.id, acting_branch_id=TO, item_id=tr.items[0].id, quantity=1)


async def test_return_falls_back_when_origin_batch_is_gone(session: AsyncSession):
    src = await _seed(session)
    svc = TransferService()
    tr = await _in_transit(session, svc, src, qty=4)
    tr = await svc.receive(session, transfer_id=tr.id, acting_branch_id=TO)

    src_id = src.id
    await session.execute(delete(BatchMovement).where(BatchMovement.batch_id == src_id))
    await session.execute(delete(StockBatch).where(StockBatch.id == src_id))

    res = await svc.return_stock(session, transfer_id=tr.id, acting_branch_id=FROM, item_id=tr.items[0].id, quantity=2)
    assert res.fallback_used is True

    created = await svc.store.require_batch(session, res.restored[0].batch_id)
    assert created.batch_number.startswith("RET-")
    assert created.branch_id == FROM
    assert created.remaining_quantity == 2
    assert created.unit_cost == Decimal("4.00")
    assert len(await activities(session, "RETURN_FALLBACK_BATCH_CREATED")) == 1


async def test_cancel_pending_restores_stock(session: AsyncSession):
    src = await _seed(session)
    svc = TransferService()
    tr = await svc.create_transfer(
        session,
        from_branch_id=FROM,
        to_branch_id=TO,
        lines=[TransferLineIn(product_id=PID, quantity=7, batch_id=src.id)],
    )
    assert await remaining_of(session, src.id) == (3, BatchStatus.ACTIVE.value)

    tr = await svc.cancel(session, transfer_id=tr.id, acting_branch_id=TO, reason="not needed")
    assert tr.status == TransferStatus.CANCELLED.value
    assert await remaining_of(session, src.id) == (10, BatchStatus.ACTIVE.value)
    assert await svc.ledger.current_stock(session, branch_id=FROM, product_id=PID) == 10

    mv = await movements_of(session, ref=tr.transfer_no)
    assert [(m.reason, m.delta) for m in mv] == [("TRANSFER_OUT", -7), ("CANCEL_IN", 7)]


async def test_cancel_in_transit_is_rejected(session: AsyncSession):
    src = await _seed(session)
    svc = TransferService()
    tr = await _in_transit(session, svc, src, qty=2)

    with pytest.raises(InvalidStateTransition):
        await svc.cancel(session, transfer_id=tr.id, acting_branch_id=FROM)
    assert await remaining_of(session, src.id) == (8, BatchStatus.ACTIVE.value)


async def test_list_for_branch_by_direction(session: AsyncSession):
    src = await _seed(session)
    svc = TransferService()
    tr = await _in_transit(session, svc, src, qty=1)

    outgoing = await svc.list_for_branch(session, branch_id=FROM, direction="outgoing")
    incoming = await svc.list_for_branch(session, branch_id=TO, direction="incoming")
    assert [x.id for x in outgoing] == [tr.id]
    assert [x.id for x in incoming] == [tr.id]
    assert await svc.list_for_branch(session, branch_id=TO, direction="outgoing") == []


async def test_list_in_range_covers_both_directions(session: AsyncSession):
    src = await _seed(session)
    svc = TransferService()
    tr = await _in_transit(session, svc, src, qty=1)

    lo = tr.created_at - timedelta(minutes=1)
    hi = tr.created_at + timedelta(minutes=1)
    assert [x.id for x in await svc.list_in_range(session, branch_id=TO, time_from=lo, time_to=hi)] == [tr.id]
    assert await svc.list_in_range(session, branch_id=FROM, time_from=hi, time_to=hi + timedelta(days=1)) == []


async def test_return_pickup_stays_within_usage_type(session: AsyncSession):
    await ensure_branch(session, TO)
    otc = await seed_batch(session, branch_id=FROM, product_id=PID, code="O1", qty=3)
    salon = await seed_batch(
        session, branch_id=FROM, product_id=PID, code="S1", qty=3, usage_type=UsageType.SALON_USE.value
    )
    svc = TransferService()
    tr = await svc.create_transfer(
        session,
        from_branch_id=FROM,
        to_branch_id=TO,
        lines=[
            TransferLineIn(product_id=PID, quantity=3, batch_id=otc.id),
            TransferLineIn(product_id=PID, quantity=3, batch_id=salon.id, usage_type=UsageType.SALON_USE.value),
        ],
    )
    tr = await svc.dispatch(session, transfer_id=tr.id, acting_branch_id=FROM)
    tr = await svc.receive(session, transfer_id=tr.id, acting_branch_id=TO)
    items = {it.usage_type: it for it in tr.items}

    # 收货方把 OTC 全部卖掉；院内耗用批次不能被拿来顶 OTC 的退回
    await svc.store.allocate_fifo(
        session, branch_id=TO, product_id=PID, quantity=3, usage_type=UsageType.OTC.value, ref="SO-TO-1"
    )
    with pytest.raises(InsufficientStock):
        await svc.return_stock(
            session, transfer_id=tr.id, acting_branch_id=FROM, item_id=items[UsageType.OTC.value].id, quantity=2
        )
    salon_in = items[UsageType.SALON_USE.value].consumed_batches[0]["received_batch_id"]
    assert await remaining_of(session, salon_in) == (3, BatchStatus.ACTIVE.value)
    assert await svc.store.sum_remaining(
        session, branch_id=TO, product_id=PID, usage_type=UsageType.SALON_USE.value
    ) == 3

    res = await svc.return_stock(
        session, transfer_id=tr.id, acting_branch_id=FROM, item_id=items[UsageType.SALON_USE.value].id, quantity=2
    )
    assert res.quantity == 2
    assert await remaining_of(session, salon_in) == (1, BatchStatus.ACTIVE.value)
    assert await remaining_of(session, salon.id) == (2, BatchStatus.ACTIVE.value)
    assert await remaining_of(session, otc.id) == (0, BatchStatus.DEPLETED.value)
