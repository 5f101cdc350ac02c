"""Tests for the notification consumer."""

import logging
import uuid

import pytest

from notification_service.consumer import notify
from shared.errors import PoisonMessageError
from shared.events import (
    ORDER_CANCELLED,
    ORDER_CONFIRMED,
    OrderCancelledEvent,
    OrderConfirmedEvent,
    StockReservedEvent,
)
from shared.messaging import dead_letter_queue, handle_delivery, publish_event


class TestNotify:

    @pytest.mark.asyncio
    async def test_confirmed_order(self, caplog):
        event = OrderConfirmedEvent(correlation_id="req-1", order_id=uuid.uuid4(), owner_id="alice")

        with caplog.at_level(logging.INFO, logger="notification_service.consumer"):
            await notify(event)

        assert "NOTIFICATION: Order confirmed" in caplog.messages

    @pytest.mark.asyncio
    async def test_cancelled_order(self, caplog):
        event = OrderCancelledEvent(
            correlation_id="req-1",
            order_id=uuid.uuid4(),
            owner_id="alice",
            items=(),
            reason="payment_declined",
        )

        with caplog.at_level(logging.INFO, logger="notification_service.consumer"):
            await notify(event)

        (record,) = [r for r in caplog.records if r.message == "NOTIFICATION: Order cancelled"]
        assert record.reason == "payment_declined"

    @pytest.mark.asyncio
    async def test_other_events_are_poison(self):
        with pytest.raises(PoisonMessageError):
            await notify(StockReservedEvent(correlation_id="req-1", order_id=uuid.uuid4()))

    @pytest.mark.asyncio
    async def test_wrong_event_on_queue_is_dead_lettered(self, channel):
        await publish_event(channel, ORDER_CONFIRMED, StockReservedEvent(correlation_id="req-1", order_id=uuid.uuid4()))

        delivery = await channel.consume(ORDER_CONFIRMED, "notification-service").__anext__()
        await handle_delivery(delivery, notify)

        assert len(channel.published(dead_letter_queue(ORDER_CONFIRMED))) == 1
        assert channel.published(dead_letter_queue(ORDER_CANCELLED)) == []
