"""
Stock reservation consumer.

Listens on:
  order.created    -> reserve every line item, reply on the order's reply queue
  order.cancelled  -> give back whatever the order holds

Both handlers are idempotent. The Reservation row claimed per order decides
whether a delivery is new work, a redelivery of an interrupted attempt, or a
duplicate; the movement ledger decides how much is still held.
"""

import logging
import uuid
from collections.abc import Iterable

from shared.errors import InsufficientStockError, PoisonMessageError
from shared.events import (
    EventBase,
    LineItemEvent,
    OrderCancelledEvent,
    OrderCreatedEvent,
    StockReservationFailedEvent,
    StockReservedEvent,
)
from shared.messaging import MessageChannel, publish_event
from stock_service.metrics import LOW_STOCK_WARNINGS, RELEASES, RESERVATIONS
from stock_service.models import MovementKind, ReservationStatus
from stock_service.store import CancelOutcome, StockStore

logger = logging.getLogger(__name__)


def consolidate(items: Iterable[LineItemEvent]) -> dict[str, int]:
    """Sum quantities per product, keeping first-seen order."""
    quantities: dict[str, int] = {}
    for item in items:
        quantities[item.product_id] = quantities.get(item.product_id, 0) + item.quantity
    return quantities


class StockReservationConsumer:
    def __init__(self, store: StockStore, channel: MessageChannel) -> None:
        self.store = store
        self.channel = channel

    async def handle(self, event: EventBase) -> None:
        if isinstance(event, OrderCreatedEvent):
            await self.on_order_created(event)
        elif isinstance(event, OrderCancelledEvent):
            await self.on_order_cancelled(event)
        else:
            raise PoisonMessageError(f"Stock service cannot handle {type(event).__name__}")

    # ------------------------------------------------------------------
    # order.created
    # ------------------------------------------------------------------

    async def on_order_created(self, event: OrderCreatedEvent) -> ReservationStatus:
        log_extra = {"order_id": str(event.order_id), "correlation_id": event.correlation_id}
        existing = await self.store.claim_reservation(event.order_id)

        if existing is not None and existing.status == ReservationStatus.CANCELLED:
            # Cancellation got here first (or while a previous attempt was running)
            await self._release_held(event.order_id)
            RESERVATIONS.labels("skipped_cancelled").inc()
            logger.info("Order already cancelled, reservation skipped", extra=log_extra)
            return ReservationStatus.CANCELLED

        if existing is not None and existing.status != ReservationStatus.PENDING:
            RESERVATIONS.labels("duplicate").inc()
            logger.info(
                "Duplicate order.created, replaying outcome",
                extra={**log_extra, "status": existing.status.value},
            )
            if existing.status == ReservationStatus.RESERVED:
                await self._reply_reserved(event)
            elif existing.status == ReservationStatus.REJECTED:
                await self._reply(
                    event,
                    StockReservationFailedEvent(
                        correlation_id=event.correlation_id,
                        order_id=event.order_id,
                        reason=existing.reason or "insufficient stock",
                    ),
                )
            return existing.status

        # New claim, or a PENDING claim left behind by an interrupted attempt
        wanted = consolidate(event.items)
        held = await self.store.held_quantities(event.order_id)
        try:
            for product_id, quantity in wanted.items():
                missing = quantity - held.get(product_id, 0)
                if missing <= 0:
                    continue
                level = await self.store.reserve(event.order_id, product_id, missing)
                if level.is_low:
                    LOW_STOCK_WARNINGS.labels(product_id).inc()
                    logger.warning(
                        "Stock at or below reorder level",
                        extra={
                            **log_extra,
                            "product_id": product_id,
                            "available": level.available,
                            "reorder_level": level.reorder_level,
                        },
                    )
        except InsufficientStockError as exc:
            await self._release_held(event.order_id)
            await self.store.complete_reservation(event.order_id, ReservationStatus.REJECTED, reason=str(exc))
            RESERVATIONS.labels("rejected").inc()
            logger.info(
                "Reservation rejected",
                extra={
                    **log_extra,
                    "product_id": exc.product_id,
                    "requested": exc.requested,
                    "available": exc.available,
                },
            )
            await self._reply(
                event,
                StockReservationFailedEvent(
                    correlation_id=event.correlation_id,
                    order_id=event.order_id,
                    reason=str(exc),
                    product_id=exc.product_id,
                    requested=exc.requested,
                    available=exc.available,
                ),
            )
            return ReservationStatus.REJECTED

        if not await self.store.complete_reservation(event.order_id, ReservationStatus.RESERVED):
            # order.cancelled arrived while reserving and deferred the release to us
            await self._release_held(event.order_id)
            RESERVATIONS.labels("skipped_cancelled").inc()
            logger.info("Order cancelled during reservation, stock returned", extra=log_extra)
            return ReservationStatus.CANCELLED

        RESERVATIONS.labels("reserved").inc()
        logger.info("Stock reserved", extra={**log_extra, "products": len(wanted)})
        await self._reply_reserved(event)
        return ReservationStatus.RESERVED

    async def _release_held(self, order_id: uuid.UUID) -> None:
        for product_id, quantity in (await self.store.held_quantities(order_id)).items():
            await self.store.release(order_id, product_id, quantity, MovementKind.COMPENSATE)

    async def _reply_reserved(self, event: OrderCreatedEvent) -> None:
        await self._reply(
            event,
            StockReservedEvent(correlation_id=event.correlation_id, order_id=event.order_id),
        )

    async def _reply(self, event: OrderCreatedEvent, reply: EventBase) -> None:
        if event.reply_to is None:
            logger.warning("order.created without reply_to, outcome not reported", extra={"order_id": str(event.order_id)})
            return
        await publish_event(self.channel, event.reply_to, reply, key=str(event.order_id))

    # ------------------------------------------------------------------
    # order.cancelled
    # ------------------------------------------------------------------

    async def on_order_cancelled(self, event: OrderCancelledEvent) -> CancelOutcome:
        outcome = await self.store.cancel_reservation(
            event.order_id, consolidate(event.items), reason=event.reason
        )
        RELEASES.labels(outcome.value).inc()
        logger.info(
            "Processed order.cancelled",
            extra={
                "order_id": str(event.order_id),
                "correlation_id": event.correlation_id,
                "outcome": outcome.value,
                "reason": event.reason,
            },
        )
        return outcome
