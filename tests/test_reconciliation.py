"""Tests for the sweep that re-publishes lost outcome events."""

import uuid
from decimal import Decimal

import pytest

from order_service.models import OrderStatus
from order_service.reconciliation import ReconciliationSweep
from order_service.store import PricedLine
from shared.events import ORDER_CANCELLED, ORDER_CONFIRMED, OrderCancelledEvent, parse_event
from tests.fakes import FlakyChannel

LINES = [
    PricedLine(product_id="widget", quantity=2, unit_price=Decimal("10.00")),
    PricedLine(product_id="gadget", quantity=1, unit_price=Decimal("4.50")),
]


async def _failed_after_created(order_store, reason="payment_declined"):
    order = await order_store.create("alice", LINES, "req-1")
    await order_store.mark_event_published(order.id, "created", uuid.uuid4())
    await order_store.transition(order.id, OrderStatus.FAILED, reason=reason)
    return order


class TestReconciliationSweep:

    @pytest.mark.asyncio
    async def test_republishes_missing_cancellation(self, order_store, channel):
        order = await _failed_after_created(order_store)
        sweep = ReconciliationSweep(order_store, channel)

        assert await sweep.run_once() == 1

        (message,) = channel.published(ORDER_CANCELLED)
        event = parse_event(message.body)
        assert isinstance(event, OrderCancelledEvent)
        assert event.order_id == order.id
        assert event.reason == "payment_declined"
        assert [(i.product_id, i.quantity) for i in event.items] == [("widget", 2), ("gadget", 1)]
        assert event.correlation_id == "req-1"

        stored = await order_store.get(order.id)
        assert stored.cancelled_event_id == event.event_id

    @pytest.mark.asyncio
    async def test_republishes_missing_confirmation(self, order_store, channel):
        order = await order_store.create("alice", LINES, "req-1")
        await order_store.mark_event_published(order.id, "created", uuid.uuid4())
        await order_store.transition(order.id, OrderStatus.CONFIRMED)

        assert await ReconciliationSweep(order_store, channel).run_once() == 1
        assert len(channel.published(ORDER_CONFIRMED)) == 1

    @pytest.mark.asyncio
    async def test_second_run_finds_nothing(self, order_store, channel):
        await _failed_after_created(order_store)
        sweep = ReconciliationSweep(order_store, channel)

        await sweep.run_once()

        assert await sweep.run_once() == 0
        assert len(channel.published(ORDER_CANCELLED)) == 1

    @pytest.mark.asyncio
    async def test_orders_that_never_went_out_need_no_compensation(self, order_store, channel):
        order = await order_store.create("alice", LINES, "req-1")
        await order_store.transition(order.id, OrderStatus.FAILED, reason="service_unavailable")

        assert await ReconciliationSweep(order_store, channel).run_once() == 0
        assert channel.published(ORDER_CANCELLED) == []

    @pytest.mark.asyncio
    async def test_broker_outage_leaves_orders_for_next_run(self, order_store):
        await _failed_after_created(order_store)
        channel = FlakyChannel(failures=100, publish_retries=1, publish_backoff=0)

        assert await ReconciliationSweep(order_store, channel).run_once() == 0
        assert len(await order_store.list_unreconciled()) == 1

        channel.failures = 0
        assert await ReconciliationSweep(order_store, channel).run_once() == 1
