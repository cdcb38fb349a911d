import asyncio

import pytest
from aiohttp.test_utils import TestClient, TestServer

from asyncfsm.orders import Order, OrderFsm, OrderRegistry, create_app


def _order(order_id="order-1"):
    return Order(id=order_id, items=["book"], total=12)


async def _reach(handle, state):
    await asyncio.wait_for(handle.wait_for_state(state), timeout=3)


async def _stop_all(registry):
    for handle in registry.orders.values():
        handle.shutdown_immediate()
    await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_discovered_states():
    assert {member.name for member in OrderFsm.State} == {
        "Created",
        "Validated",
        "Charged",
        "Shipped",
        "Failed",
    }
    registry = OrderRegistry()
    handle = await registry.create(_order("order-0"))
    assert handle.current_state() is OrderFsm.State.Created
    assert await registry.status("order-0") == "Created"
    await _stop_all(registry)


@pytest.mark.asyncio
async def test_registry_full_workflow():
    registry = OrderRegistry()
    handle = await registry.create(_order())
    assert await registry.status("order-1") == "Created"

    assert await registry.dispatch("order-1", "Validate") is True
    await _reach(handle, "Validated")
    assert await registry.dispatch("order-1", "Charge") is True
    await _reach(handle, "Charged")
    assert await registry.dispatch("order-1", "Ship") is True
    await _reach(handle, "Shipped")

    assert await registry.status("order-1") == "Shipped"
    await _stop_all(registry)


@pytest.mark.asyncio
async def test_registry_error_fails_order_and_skipped_step_is_ignored():
    registry = OrderRegistry()
    handle = await registry.create(_order("order-2"))
    assert await registry.dispatch("order-2", "Ship") is True
    assert await registry.dispatch("order-2", "Error") is True
    await _reach(handle, "Failed")
    assert await registry.status("order-2") == "Failed"
    await _stop_all(registry)


@pytest.mark.asyncio
async def test_registry_unknown_order_and_event():
    registry = OrderRegistry()
    assert await registry.dispatch("missing", "Validate") is False
    assert await registry.status("missing") is None
    with pytest.raises(ValueError):
        await registry.dispatch("missing", "Refund")


@pytest.mark.asyncio
async def test_registry_closed_order_rejects_events():
    registry = OrderRegistry()
    handle = await registry.create(_order("order-3"))
    handle.shutdown_immediate()
    task = registry._tasks["order-3"]
    context = await task
    assert context.order.id == "order-3"
    assert await registry.dispatch("order-3", "Validate") is False


@pytest.mark.asyncio
async def test_http_routes():
    registry = OrderRegistry()
    async with TestClient(TestServer(create_app(registry))) as client:
        resp = await client.post(
            "/orders", json={"id": "order-1", "items": ["book"], "total": 12}
        )
        assert resp.status == 201
        assert await resp.json() == "Order created"

        resp = await client.get("/orders/order-1")
        assert resp.status == 200
        assert await resp.json() == "Created"

        resp = await client.post("/orders/order-1/validate")
        assert resp.status == 200
        assert await resp.json() == "Validation started"
        await _reach(registry.orders["order-1"], "Validated")

        resp = await client.get("/orders/order-1")
        assert await resp.json() == "Validated"

        resp = await client.post("/orders/order-1/charge")
        assert await resp.json() == "Charging started"

        resp = await client.post("/orders/missing/ship")
        assert resp.status == 404
        assert await resp.json() == "Order not found or closed"

        resp = await client.get("/orders/missing")
        assert resp.status == 404
        assert await resp.json() == "Order not found"

        resp = await client.post("/orders", json={"id": "order-9", "items": "book"})
        assert resp.status == 422
        assert "order-9" not in registry.orders
    await _stop_all(registry)