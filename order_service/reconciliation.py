"""
Reconciliation sweep.

Closes the crash window between finalising an order and publishing its
outcome event: terminal orders whose event id was never recorded get the
event rebuilt from stored state and published again. Consumers are
idempotent per order, so a duplicate is harmless.
"""

import asyncio
import logging

from order_service.metrics import EVENTS_REPUBLISHED
from order_service.models import OrderStatus
from order_service.saga import build_cancelled_event, build_confirmed_event
from order_service.store import OrderStore
from shared.errors import MessagingUnavailableError
from shared.events import ORDER_CANCELLED, ORDER_CONFIRMED
from shared.messaging import MessageChannel, publish_event

logger = logging.getLogger(__name__)


class ReconciliationSweep:
    def __init__(self, store: OrderStore, channel: MessageChannel, *, batch_size: int = 100) -> None:
        self.store = store
        self.channel = channel
        self.batch_size = batch_size

    async def run_once(self) -> int:
        """Re-publish every missing outcome event; return how many went out."""
        republished = 0
        for order in await self.store.list_unreconciled(self.batch_size):
            if order.status == OrderStatus.CONFIRMED:
                queue, kind = ORDER_CONFIRMED, "confirmed"
                event = build_confirmed_event(order)
            else:
                queue, kind = ORDER_CANCELLED, "cancelled"
                event = build_cancelled_event(order, order.failure_reason or "unknown")

            try:
                await publish_event(self.channel, queue, event, key=str(order.id))
            except MessagingUnavailableError as exc:
                logger.warning(
                    "Broker still unavailable, stopping sweep",
                    extra={"order_id": str(order.id), "error": str(exc)},
                )
                break

            await self.store.mark_event_published(order.id, kind, event.event_id)
            EVENTS_REPUBLISHED.labels(queue).inc()
            republished += 1
            logger.info(
                "Re-published missing outcome event",
                extra={"order_id": str(order.id), "event_type": queue},
            )
        return republished

    async def run_forever(self, interval: float) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Reconciliation sweep failed")
            await asyncio.sleep(interval)
