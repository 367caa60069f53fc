# tests/api/test_transfers_api.py
from __future__ import annotations

import httpx
import pytest

from tests.helpers.inventory import ensure_branch, seed_batch

pytestmark = pytest.mark.asyncio


async def _seed(async_session_maker) -> int:
    async with async_session_maker() as s:
        await ensure_branch(s, 2)
        b = await seed_batch(s, branch_id=1, product_id=10, code="API-SRC", qty=10)
        bid = b.id
        await s.commit()
    return bid


async def test_healthz(client: httpx.AsyncClient):
    r = await client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


async def test_transfer_lifecycle_over_http(client: httpx.AsyncClient, async_session_maker):
    bid = await _seed(async_session_maker)

    r = await client.post(
        "/transfers",
        json={
            "from_branch_id": 1,
            "to_branch_id": 2,
            "items": [{"product_id": 10, "quantity": 4, "batch_id": bid}],
            "created_by": "alice",
        },
    )
    assert r.status_code == 201, r.text
    tr = r.json()
    tid = tr["id"]
    assert tr["status"] == "Pending"
    assert tr["items"][0]["moved_quantity"] == 4

    r = await client.post(f"/transfers/{tid}/dispatch", json={"acting_branch_id": 1})
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "InTransit"

    r = await client.post(f"/transfers/{tid}/receive", json={"acting_branch_id": 2, "performed_by": "bob"})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["status"] == "Completed"
    assert body["received_by"] == "bob"
    item_id = body["items"][0]["id"]

    r = await client.get("/stock-ledger/current", params={"branch_id": 2, "product_id": 10})
    assert r.status_code == 200
    assert r.json()["current_stock"] == 4

    r = await client.post(
        f"/transfers/{tid}/return",
        json={"acting_branch_id": 1, "item_id": item_id, "quantity": 2, "reason": "overstock"},
    )
    assert r.status_code == 200, r.text
    ret = r.json()
    assert ret["quantity"] == 2
    assert ret["fallback_used"] is False
    assert ret["transfer"]["items"][0]["returned_quantity"] == 2

    r = await client.get("/batches/sum", params={"branch_id": 1, "product_id": 10})
    assert r.status_code == 200
    assert r.json()["remaining"] == 8


async def test_business_errors_use_problem_shape(client: httpx.AsyncClient, async_session_maker):
    bid = await _seed(async_session_maker)

    r = await client.post(
        "/transfers",
        json={"from_branch_id": 1, "to_branch_id": 2, "items": [{"product_id": 10, "quantity": 11, "batch_id": bid}]},
    )
    assert r.status_code == 409
    p = r.json()
    assert p["error_code"] == "insufficient_stock"
    assert p["http_status"] == 409
    assert "message" in p

    r = await client.get("/transfers/999999")
    assert r.status_code == 404
    assert r.json()["error_code"] == "not_found"

    # 请求体校验走同一 Problem 形状
    r = await client.post("/transfers", json={"from_branch_id": 1, "to_branch_id": 2, "items": []})
    assert r.status_code == 422
    assert r.json()["error_code"] == "request_validation_error"


async def test_borrow_over_http(client: httpx.AsyncClient, async_session_maker):
    async with async_session_maker() as s:
        await seed_batch(s, branch_id=1, product_id=10, code="LEND", qty=30)
        await seed_batch(s, branch_id=2, product_id=10, code="OWN", qty=1)
        await s.commit()

    r = await client.post(
        "/transfers/borrow",
        json={"requesting_branch_id": 2, "lending_branch_id": 1, "items": [{"product_id": 10, "quantity": 50}]},
    )
    assert r.status_code == 201, r.text
    tid = r.json()["id"]

    r = await client.get("/transfers/pending-borrows", params={"lending_branch_id": 1})
    assert [x["id"] for x in r.json()] == [tid]

    r = await client.post(f"/transfers/{tid}/approve", json={"acting_branch_id": 1})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["status"] == "InTransit"
    assert body["items"][0]["approved_quantity"] == 30


async def test_metrics_endpoint_exports_business_counters(client: httpx.AsyncClient):
    r = await client.get("/metrics")
    assert r.status_code == 200
    assert "transfer_transitions_total" in r.text


async def test_trace_id_is_echoed_and_unknown_route_is_problem(client: httpx.AsyncClient):
    r = await client.get("/transfers/424242", headers={"X-Trace-Id": "t_from_pos"})
    assert r.status_code == 404
    assert r.json()["trace_id"] == "t_from_pos"
    assert r.headers["X-Trace-Id"] == "t_from_pos"

    r = await client.get("/no-such-route")
    assert r.status_code == 404
    assert r.json()["error_code"] == "http_error"
