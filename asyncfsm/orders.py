"""An order workflow served over HTTP.

Each order runs its own machine: ``Created`` → ``Validated`` → ``Charged`` →
``Shipped``, with an ``Error`` event that fails an order that has not shipped.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import dataclass

from aiohttp import web

from .core import Transition
from .machine import ChannelClosed, EventMessage, Handle, Task, fsm
from .validation import on, targets

log = logging.getLogger(__name__)

VALIDATE_DELAY = 0.1
CHARGE_DELAY = 0.2
SHIP_DELAY = 0.3


@dataclass
class Order:
    """An order placed by a customer."""

    id: str
    items: list[str]
    total: int


@dataclass
class OrderContext:
    """The data owned by an order machine."""

    order: Order


@fsm(initial="Created")
class OrderFsm:
    """The life cycle of a single order."""

    Context = OrderContext
    Error = None

    @on("Created", "Validate")
    @targets("Validated")
    async def handle_validate(self) -> Transition[str]:
        log.info("Validating order %s", self.context.order.id)
        await asyncio.sleep(VALIDATE_DELAY)
        log.debug("Order %s validated", self.context.order.id)
        return Transition.to("Validated")

    @on("Validated", "Charge")
    @targets("Charged")
    async def handle_charge(self) -> Transition[str]:
        log.info("Charging order %s", self.context.order.id)
        await asyncio.sleep(CHARGE_DELAY)
        log.debug("Payment for order %s successful", self.context.order.id)
        return Transition.to("Charged")

    @on("Charged", "Ship")
    @targets("Shipped")
    async def handle_ship(self) -> Transition[str]:
        log.info("Shipping order %s", self.context.order.id)
        await asyncio.sleep(SHIP_DELAY)
        log.debug("Order %s shipped", self.context.order.id)
        return Transition.to("Shipped")

    @on("Created", "Error")
    @on("Validated", "Error")
    @on("Charged", "Error")
    @targets("Failed")
    async def handle_error(self) -> Transition[str]:
        log.error("Order %s failed", self.context.order.id)
        return Transition.to("Failed")


_EVENTS: dict[str, EventMessage] = {
    name: getattr(OrderFsm.Event, name) for name in ("Validate", "Charge", "Ship", "Error")
}


class OrderRegistry:
    """Keeps the running machine of every order by its id."""

    def __init__(self) -> None:
        self.orders: dict[str, Handle] = {}
        self._tasks: dict[str, Task] = {}
        self._lock = asyncio.Lock()

    async def create(self, order: Order) -> Handle:
        """Start a machine for ``order``, replacing any with the same id."""
        handle, task = OrderFsm.spawn(OrderContext(order))
        async with self._lock:
            self.orders[order.id] = handle
            self._tasks[order.id] = task
        return handle

    async def dispatch(self, order_id: str, event: str) -> bool:
        """Send the named event to an order; False if unknown or closed."""
        message = _EVENTS.get(event)
        if message is None:
            raise ValueError(f"Unknown order event {event!r}")
        async with self._lock:
            handle = self.orders.get(order_id)
            if handle is None:
                return False
            try:
                await handle.send(message)
            except ChannelClosed:
                return False
            return True

    async def status(self, order_id: str) -> str | None:
        """Return the name of an order's current state, or None if unknown."""
        async with self._lock:
            handle = self.orders.get(order_id)
            return None if handle is None else handle.current_state().name


def _order_from(payload: object) -> Order:
    if not isinstance(payload, dict):
        raise ValueError("expected a JSON object")
    order_id = payload.get("id")
    items = payload.get("items")
    total = payload.get("total")
    if not isinstance(order_id, str):
        raise ValueError("id must be a string")
    if not isinstance(items, list) or not all(isinstance(item, str) for item in items):
        raise ValueError("items must be a list of strings")
    if isinstance(total, bool) or not isinstance(total, int) or total < 0:
        raise ValueError("total must be a non-negative integer")
    return Order(id=order_id, items=list(items), total=total)


def create_app(registry: OrderRegistry | None = None) -> web.Application:
    """Build the web application serving ``registry``."""
    registry = registry if registry is not None else OrderRegistry()

    async def create_order(request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except json.JSONDecodeError as exc:
            return web.json_response(f"Invalid JSON: {exc}", status=400)
        try:
            order = _order_from(payload)
        except ValueError as exc:
            return web.json_response(str(exc), status=422)
        await registry.create(order)
        return web.json_response("Order created", status=201)

    def step(event: str, started: str):
        async def route(request: web.Request) -> web.Response:
            if await registry.dispatch(request.match_info["id"], event):
                return web.json_response(started, status=200)
            return web.json_response("Order not found or closed", status=404)

        return route

    async def get_order_status(request: web.Request) -> web.Response:
        state = await registry.status(request.match_info["id"])
        if state is None:
            return web.json_response("Order not found", status=404)
        return web.json_response(state, status=200)

    app = web.Application()
    app.router.add_post("/orders", create_order)
    app.router.add_post("/orders/{id}/validate", step("Validate", "Validation started"))
    app.router.add_post("/orders/{id}/charge", step("Charge", "Charging started"))
    app.router.add_post("/orders/{id}/ship", step("Ship", "Shipping started"))
    app.router.add_get("/orders/{id}", get_order_status)
    return app


def main(argv: list[str] | None = None) -> int:
    """Serve the order workflow over HTTP."""
    parser = argparse.ArgumentParser(
        prog="asyncfsm-orders", description="Serve order state machines over HTTP."
    )
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=3000)
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    log.info("Starting order server on %s:%s", args.host, args.port)
    web.run_app(create_app(), host=args.host, port=args.port)
    return 0