"""End-to-end saga tests: orchestrator, in-memory channel and a running stock worker."""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from order_service.models import Order, OrderStatus, PaymentStatus
from order_service.catalog import StaticCatalog
from order_service.saga import RequestedItem
from shared.errors import MessagingUnavailableError, ReasonCode
from shared.events import (
    ORDER_CANCELLED,
    ORDER_CONFIRMED,
    ORDER_CREATED,
    OrderCancelledEvent,
    OrderConfirmedEvent,
    OrderCreatedEvent,
    parse_event,
)
from tests.fakes import PRICES, FakePaymentGateway, FlakyChannel, SwitchableCatalog, eventually


def _events(channel, queue):
    return [parse_event(m.body) for m in channel.published(queue)]


def _item_pairs(event):
    return [(item.product_id, item.quantity) for item in event.items]


async def _stock_is(stock_store, product_id, expected):
    async def check():
        return await stock_store.get_available(product_id) == expected

    await eventually(check)


class TestHappyPath:

    @pytest.mark.asyncio
    async def test_approved_payment_confirms_order(self, make_saga, channel, start_workers, order_store, stock_store):
        saga = make_saga(channel)
        start_workers(channel, saga)

        result = await saga.create_order("alice", [RequestedItem("widget", 2)], correlation_id="req-1")

        assert result.success
        assert result.status == OrderStatus.CONFIRMED
        order = await order_store.get(result.order_id)
        assert order.status == OrderStatus.CONFIRMED
        assert order.total_amount == Decimal("20.00")
        assert order.created_event_id is not None
        assert order.confirmed_event_id is not None
        assert [a.status for a in order.payment_attempts] == [PaymentStatus.SUCCESS]

        assert await stock_store.get_available("widget") == 3
        (confirmed,) = _events(channel, ORDER_CONFIRMED)
        assert isinstance(confirmed, OrderConfirmedEvent)
        assert confirmed.order_id == order.id
        assert confirmed.correlation_id == "req-1"
        assert _events(channel, ORDER_CANCELLED) == []

    @pytest.mark.asyncio
    async def test_order_created_carries_priced_snapshot(self, make_saga, channel, start_workers):
        saga = make_saga(channel)
        start_workers(channel, saga)

        result = await saga.create_order(
            "alice", [RequestedItem("gadget", 3), RequestedItem("widget", 1)], correlation_id="req-1"
        )

        (created,) = _events(channel, ORDER_CREATED)
        assert isinstance(created, OrderCreatedEvent)
        assert created.order_id == result.order_id
        assert created.reply_to == saga.reply_queue
        assert _item_pairs(created) == [("gadget", 3), ("widget", 1)]
        assert [item.unit_price for item in created.items] == [PRICES["gadget"], PRICES["widget"]]
        assert created.total_amount == Decimal("23.50")

    @pytest.mark.asyncio
    async def test_sub_cent_price_keeps_total_consistent(self, make_saga, channel, start_workers, order_store):
        saga = make_saga(channel, price_catalog=StaticCatalog({"widget": Decimal("0.125")}))
        start_workers(channel, saga)

        result = await saga.create_order("alice", [RequestedItem("widget", 2)])

        assert result.success
        order = await order_store.get(result.order_id)
        assert [item.unit_price for item in order.items] == [Decimal("0.13")]
        assert order.total_amount == Decimal("0.26")
        assert order.total_amount == sum(item.unit_price * item.quantity for item in order.items)
        (created,) = _events(channel, ORDER_CREATED)
        assert created.total_amount == sum(item.unit_price * item.quantity for item in created.items)

    @pytest.mark.asyncio
    async def test_concurrent_orders_never_oversell(self, make_saga, channel, start_workers, stock_store):
        saga = make_saga(channel)
        start_workers(channel, saga)

        results = await asyncio.gather(
            *(saga.create_order(f"user-{n}", [RequestedItem("widget", 1)]) for n in range(8))
        )

        assert sum(r.success for r in results) == 5
        assert [r.reason for r in results if not r.success] == [ReasonCode.INSUFFICIENT_STOCK] * 3
        assert await stock_store.get_available("widget") == 0
        assert len(_events(channel, ORDER_CONFIRMED)) == 5


class TestBusinessFailures:

    @pytest.mark.asyncio
    async def test_declined_payment_cancels_and_releases_stock(
        self, make_saga, channel, start_workers, order_store, stock_store
    ):
        saga = make_saga(channel, payment_gateway=FakePaymentGateway("decline"))
        start_workers(channel, saga)

        result = await saga.create_order("alice", [RequestedItem("widget", 2)])

        assert not result.success
        assert result.reason == ReasonCode.PAYMENT_DECLINED
        order = await order_store.get(result.order_id)
        assert order.status == OrderStatus.FAILED
        assert order.failure_reason == "payment_declined"
        assert [a.status for a in order.payment_attempts] == [PaymentStatus.DECLINED]

        (cancelled,) = _events(channel, ORDER_CANCELLED)
        (created,) = _events(channel, ORDER_CREATED)
        assert isinstance(cancelled, OrderCancelledEvent)
        assert cancelled.items == created.items
        assert _item_pairs(cancelled) == [("widget", 2)]
        assert _events(channel, ORDER_CONFIRMED) == []

        await _stock_is(stock_store, "widget", 5)

    @pytest.mark.asyncio
    async def test_insufficient_stock_fails_without_payment(
        self, make_saga, channel, start_workers, order_store, stock_store, gateway
    ):
        saga = make_saga(channel)
        start_workers(channel, saga)

        result = await saga.create_order("alice", [RequestedItem("widget", 10)])

        assert result.reason == ReasonCode.INSUFFICIENT_STOCK
        assert "widget" in result.detail
        assert gateway.calls == []
        order = await order_store.get(result.order_id)
        assert order.status == OrderStatus.FAILED
        assert order.payment_attempts == []
        assert await stock_store.get_available("widget") == 5
        assert len(_events(channel, ORDER_CANCELLED)) == 1

    @pytest.mark.asyncio
    async def test_multi_item_shortage_keeps_every_product_whole(
        self, make_saga, channel, start_workers, stock_store
    ):
        saga = make_saga(channel)
        start_workers(channel, saga)

        result = await saga.create_order(
            "alice", [RequestedItem("gadget", 2), RequestedItem("gizmo", 4)]
        )

        assert result.reason == ReasonCode.INSUFFICIENT_STOCK
        assert await stock_store.get_available("gadget") == 10
        assert await stock_store.get_available("gizmo") == 3


class TestInvalidInput:

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "owner_id, items",
        [
            ("alice", []),
            ("", [RequestedItem("widget", 1)]),
            ("alice", [RequestedItem("widget", 0)]),
            ("alice", [RequestedItem("widget", -2)]),
            ("alice", [RequestedItem("  ", 1)]),
            ("alice", [RequestedItem("x" * 65, 1)]),
            ("alice", [RequestedItem("widget", 10_001)]),
            ("alice", [RequestedItem("widget", 2**31)]),
        ],
    )
    async def test_rejected_before_anything_happens(self, make_saga, channel, owner_id, items):
        saga = make_saga(channel)

        result = await saga.create_order(owner_id, items)

        assert result.reason == ReasonCode.INVALID_INPUT
        assert result.order_id is None
        assert channel.published(ORDER_CREATED) == []

    @pytest.mark.asyncio
    async def test_unknown_product(self, make_saga, channel, order_sessions):
        saga = make_saga(channel)

        result = await saga.create_order("alice", [RequestedItem("widget", 1), RequestedItem("nope", 1)])

        assert result.reason == ReasonCode.INVALID_INPUT
        assert "nope" in result.detail
        async with order_sessions() as db:
            assert (await db.execute(select(Order))).scalars().all() == []


class TestDependencyFailures:

    @pytest.mark.asyncio
    async def test_price_lookup_failure_persists_nothing(self, make_saga, channel, order_sessions):
        catalog = SwitchableCatalog(PRICES)
        catalog.healthy = False
        saga = make_saga(channel, price_catalog=catalog)

        result = await saga.create_order("alice", [RequestedItem("widget", 1)])

        assert result.reason == ReasonCode.SERVICE_UNAVAILABLE
        assert result.order_id is None
        assert channel.published(ORDER_CREATED) == []
        async with order_sessions() as db:
            assert (await db.execute(select(Order))).scalars().all() == []

    @pytest.mark.asyncio
    async def test_recent_price_is_used_when_catalog_fails(self, make_saga, channel, start_workers):
        catalog = SwitchableCatalog(PRICES)
        saga = make_saga(channel, price_catalog=catalog)
        start_workers(channel, saga)

        first = await saga.create_order("alice", [RequestedItem("widget", 1)])
        catalog.healthy = False
        second = await saga.create_order("alice", [RequestedItem("widget", 1)])

        assert first.success and second.success
        created = _events(channel, ORDER_CREATED)
        assert created[1].items[0].unit_price == PRICES["widget"]

    @pytest.mark.asyncio
    async def test_payment_error_is_service_unavailable(
        self, make_saga, channel, start_workers, order_store, stock_store
    ):
        saga = make_saga(channel, payment_gateway=FakePaymentGateway("error"))
        start_workers(channel, saga)

        result = await saga.create_order("alice", [RequestedItem("widget", 2)])

        assert result.reason == ReasonCode.SERVICE_UNAVAILABLE
        order = await order_store.get(result.order_id)
        assert order.status == OrderStatus.FAILED
        assert order.payment_attempts[0].status == PaymentStatus.ERROR
        assert order.payment_attempts[0].error_message
        await _stock_is(stock_store, "widget", 5)

    @pytest.mark.asyncio
    async def test_payment_timeout_is_service_unavailable(self, make_saga, channel, start_workers, stock_store):
        saga = make_saga(
            channel,
            payment_gateway=FakePaymentGateway("approve", delay=1.0),
            payment_timeout=0.05,
        )
        start_workers(channel, saga)

        result = await saga.create_order("alice", [RequestedItem("widget", 2)])

        assert result.reason == ReasonCode.SERVICE_UNAVAILABLE
        assert _events(channel, ORDER_CONFIRMED) == []
        await _stock_is(stock_store, "widget", 5)

    @pytest.mark.asyncio
    async def test_open_payment_breaker_fails_fast(self, make_saga, channel, start_workers):
        gateway = FakePaymentGateway("error")
        saga = make_saga(channel, payment_gateway=gateway)
        start_workers(channel, saga)

        for _ in range(saga.payments.breaker.minimum_calls):
            await saga.create_order("alice", [RequestedItem("gadget", 1)])
        calls_before = len(gateway.calls)

        result = await saga.create_order("alice", [RequestedItem("gadget", 1)])

        assert result.reason == ReasonCode.SERVICE_UNAVAILABLE
        assert len(gateway.calls) == calls_before

    @pytest.mark.asyncio
    async def test_reservation_timeout_compensates(self, make_saga, channel, start_workers, order_store):
        saga = make_saga(channel, reservation_timeout=0.1)
        start_workers(channel, saga, stock=False)

        result = await saga.create_order("alice", [RequestedItem("widget", 2)])

        assert result.reason == ReasonCode.SERVICE_UNAVAILABLE
        assert (await order_store.get(result.order_id)).status == OrderStatus.FAILED
        (created,) = _events(channel, ORDER_CREATED)
        (cancelled,) = _events(channel, ORDER_CANCELLED)
        assert cancelled.items == created.items

    @pytest.mark.asyncio
    async def test_unpublishable_order_created_raises(self, make_saga, order_sessions):
        channel = FlakyChannel(failures=100, queues={ORDER_CREATED}, publish_retries=2, publish_backoff=0)
        saga = make_saga(channel)

        with pytest.raises(MessagingUnavailableError):
            await saga.create_order("alice", [RequestedItem("widget", 1)])

        async with order_sessions() as db:
            (order,) = (await db.execute(select(Order))).scalars().all()
        assert order.status == OrderStatus.FAILED
        assert order.failure_reason == "service_unavailable"
        assert order.created_event_id is None
        assert channel.published(ORDER_CANCELLED) == []

    @pytest.mark.asyncio
    async def test_unpublishable_cancellation_is_left_for_reconciliation(
        self, make_saga, start_workers, order_store
    ):
        channel = FlakyChannel(failures=100, queues={ORDER_CANCELLED}, publish_retries=2, publish_backoff=0)
        saga = make_saga(channel, payment_gateway=FakePaymentGateway("decline"))
        start_workers(channel, saga)

        result = await saga.create_order("alice", [RequestedItem("widget", 1)])

        assert result.reason == ReasonCode.PAYMENT_DECLINED
        order = await order_store.get(result.order_id)
        assert order.status == OrderStatus.FAILED
        assert order.cancelled_event_id is None
        assert [o.id for o in await order_store.list_unreconciled()] == [order.id]
