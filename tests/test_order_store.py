"""Tests for OrderStore persistence and status transitions."""

import uuid
from decimal import Decimal

import pytest
from sqlalchemy import select

from order_service.models import OrderAuditEntry, OrderStatus, PaymentStatus
from order_service.store import PricedLine
from shared.errors import InvalidStateError, OrderNotFoundError

LINES = [
    PricedLine(product_id="widget", quantity=2, unit_price=Decimal("10.00")),
    PricedLine(product_id="gadget", quantity=3, unit_price=Decimal("4.50")),
]


class TestCreate:

    @pytest.mark.asyncio
    async def test_total_is_sum_of_subtotals(self, order_store):
        order = await order_store.create("alice", LINES, "req-1")

        assert order.status == OrderStatus.PENDING
        assert order.total_amount == Decimal("33.50")
        assert [item.subtotal for item in order.items] == [Decimal("20.00"), Decimal("13.50")]
        assert sum(item.subtotal for item in order.items) == order.total_amount

    @pytest.mark.asyncio
    async def test_items_keep_request_order(self, order_store):
        order = await order_store.create("alice", list(reversed(LINES)), "req-1")

        assert [item.product_id for item in order.items] == ["gadget", "widget"]

    @pytest.mark.asyncio
    async def test_get_unknown_order_returns_none(self, order_store):
        assert await order_store.get(uuid.uuid4()) is None


class TestTransition:

    @pytest.mark.asyncio
    async def test_pending_to_confirmed(self, order_store):
        order = await order_store.create("alice", LINES, "req-1")

        confirmed = await order_store.transition(order.id, OrderStatus.CONFIRMED)

        assert confirmed.status == OrderStatus.CONFIRMED
        assert confirmed.version == order.version + 1

    @pytest.mark.asyncio
    async def test_failed_records_reason(self, order_store):
        order = await order_store.create("alice", LINES, "req-1")

        failed = await order_store.transition(order.id, OrderStatus.FAILED, reason="payment_declined")

        assert failed.status == OrderStatus.FAILED
        assert failed.failure_reason == "payment_declined"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("second", [OrderStatus.CONFIRMED, OrderStatus.FAILED])
    async def test_terminal_orders_cannot_move(self, order_store, second):
        order = await order_store.create("alice", LINES, "req-1")
        await order_store.transition(order.id, OrderStatus.FAILED, reason="insufficient_stock")

        with pytest.raises(InvalidStateError):
            await order_store.transition(order.id, second)

        assert (await order_store.get(order.id)).status == OrderStatus.FAILED

    @pytest.mark.asyncio
    async def test_cannot_move_back_to_pending(self, order_store):
        order = await order_store.create("alice", LINES, "req-1")

        with pytest.raises(InvalidStateError):
            await order_store.transition(order.id, OrderStatus.PENDING)

    @pytest.mark.asyncio
    async def test_unknown_order(self, order_store):
        with pytest.raises(OrderNotFoundError):
            await order_store.transition(uuid.uuid4(), OrderStatus.CONFIRMED)

    @pytest.mark.asyncio
    async def test_every_status_change_is_audited(self, order_store, order_sessions):
        order = await order_store.create("alice", LINES, "req-1")
        await order_store.transition(order.id, OrderStatus.FAILED, reason="payment_declined")

        async with order_sessions() as db:
            entries = (
                await db.execute(
                    select(OrderAuditEntry)
                    .where(OrderAuditEntry.order_id == order.id)
                    .order_by(OrderAuditEntry.id)
                )
            ).scalars().all()

        assert [(e.from_status, e.to_status, e.reason) for e in entries] == [
            (None, "pending", None),
            ("pending", "failed", "payment_declined"),
        ]


class TestPaymentAttempts:

    @pytest.mark.asyncio
    async def test_attempts_are_loaded_with_the_order(self, order_store):
        order = await order_store.create("alice", LINES, "req-1")

        await order_store.record_payment_attempt(
            order.id,
            status=PaymentStatus.DECLINED,
            amount=order.total_amount,
            processing_time_ms=12,
        )

        attempts = (await order_store.get(order.id)).payment_attempts
        assert len(attempts) == 1
        assert attempts[0].status == PaymentStatus.DECLINED
        assert attempts[0].processing_time_ms == 12


class TestUnreconciled:

    @pytest.mark.asyncio
    async def test_confirmed_without_event_is_listed_until_marked(self, order_store):
        order = await order_store.create("alice", LINES, "req-1")
        await order_store.transition(order.id, OrderStatus.CONFIRMED)

        assert [o.id for o in await order_store.list_unreconciled()] == [order.id]

        await order_store.mark_event_published(order.id, "confirmed", uuid.uuid4())
        assert await order_store.list_unreconciled() == []

    @pytest.mark.asyncio
    async def test_failed_needs_cancellation_only_if_created_went_out(self, order_store):
        never_published = await order_store.create("alice", LINES, "req-1")
        await order_store.transition(never_published.id, OrderStatus.FAILED, reason="service_unavailable")

        published = await order_store.create("bob", LINES, "req-2")
        await order_store.mark_event_published(published.id, "created", uuid.uuid4())
        await order_store.transition(published.id, OrderStatus.FAILED, reason="payment_declined")

        unreconciled = await order_store.list_unreconciled()
        assert [o.id for o in unreconciled] == [published.id]
        assert [item.product_id for item in unreconciled[0].items] == ["widget", "gadget"]

    @pytest.mark.asyncio
    async def test_pending_orders_are_not_listed(self, order_store):
        order = await order_store.create("alice", LINES, "req-1")
        await order_store.mark_event_published(order.id, "created", uuid.uuid4())

        assert await order_store.list_unreconciled() == []
