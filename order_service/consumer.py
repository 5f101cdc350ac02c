"""
Reply consumer for the order service.

Feeds stock.reserved / stock.reservation_failed replies arriving on this
instance's reply queue into the ReservationTracker.
"""

import logging

from order_service.saga import ReservationTracker
from shared.errors import PoisonMessageError
from shared.events import EventBase, StockReservationFailedEvent, StockReservedEvent
from shared.messaging import MessageChannel, run_consumer

logger = logging.getLogger(__name__)


def reply_handler(tracker: ReservationTracker):
    async def handle(event: EventBase) -> None:
        if not isinstance(event, (StockReservedEvent, StockReservationFailedEvent)):
            raise PoisonMessageError(f"Unexpected {type(event).__name__} on reply queue")
        tracker.resolve(event)

    return handle


async def run_reply_consumer(
    channel: MessageChannel,
    reply_queue: str,
    group: str,
    tracker: ReservationTracker,
) -> None:
    await run_consumer(channel, reply_queue, group, reply_handler(tracker))
