"""
Order saga orchestrator.

Steps run strictly in order for one saga:

    validate -> price (circuit breaker) -> persist PENDING -> publish
    order.created -> await stock reservation reply -> charge payment ->
    CONFIRMED + order.confirmed  |  FAILED + order.cancelled

Publishing order.created is the commit point: past it the only recovery is
compensation, never deletion. order.cancelled is published only after the
order is durably FAILED, and always carries the item snapshot that went out
in order.created. A crash between the two leaves a FAILED order without a
cancelled_event_id, which the reconciliation sweep re-publishes.

Business failures come back as OrderResult values; only broker outages
before the commit point propagate as MessagingUnavailableError.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal

from opentelemetry import trace

from order_service.catalog import PriceLookup
from order_service.metrics import SAGA_DURATION, SAGA_OUTCOMES
from order_service.models import Order, OrderStatus, PaymentStatus
from order_service.payment import PaymentProcessor
from order_service.store import OrderStore, PricedLine
from shared.errors import (
    DependencyUnavailableError,
    MessagingUnavailableError,
    ReasonCode,
    ValidationError,
)
from shared.events import (
    ORDER_CANCELLED,
    ORDER_CONFIRMED,
    ORDER_CREATED,
    LineItemEvent,
    OrderCancelledEvent,
    OrderConfirmedEvent,
    OrderCreatedEvent,
    ReservationReply,
    StockReservationFailedEvent,
)
from shared.messaging import MessageChannel, publish_event

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MAX_PRODUCT_ID_LENGTH = 64
MAX_QUANTITY = 10_000


@dataclass(frozen=True)
class RequestedItem:
    product_id: str
    quantity: int


@dataclass(frozen=True)
class OrderResult:
    success: bool
    order_id: uuid.UUID | None = None
    status: OrderStatus | None = None
    reason: ReasonCode | None = None
    detail: str | None = None

    @classmethod
    def confirmed(cls, order_id: uuid.UUID) -> "OrderResult":
        return cls(success=True, order_id=order_id, status=OrderStatus.CONFIRMED)

    @classmethod
    def failed(
        cls,
        reason: ReasonCode,
        detail: str,
        order_id: uuid.UUID | None = None,
    ) -> "OrderResult":
        return cls(
            success=False,
            order_id=order_id,
            status=OrderStatus.FAILED if order_id is not None else None,
            reason=reason,
            detail=detail,
        )


class ReservationTracker:
    """Routes stock reservation replies to the saga waiting on them."""

    def __init__(self) -> None:
        self._waiters: dict[uuid.UUID, asyncio.Future] = {}

    def expect(self, order_id: uuid.UUID) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self._waiters[order_id] = future
        return future

    def discard(self, order_id: uuid.UUID) -> None:
        future = self._waiters.pop(order_id, None)
        if future is not None and not future.done():
            future.cancel()

    def resolve(self, reply: ReservationReply) -> bool:
        future = self._waiters.pop(reply.order_id, None)
        if future is None or future.done():
            logger.info(
                "Reservation reply with no waiting saga",
                extra={"order_id": str(reply.order_id), "event_type": reply.event_type},
            )
            return False
        future.set_result(reply)
        return True

    async def wait(self, order_id: uuid.UUID, timeout: float) -> ReservationReply:
        future = self._waiters.get(order_id)
        if future is None:
            raise KeyError(order_id)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            self._waiters.pop(order_id, None)


def _line_items(order: Order) -> tuple[LineItemEvent, ...]:
    return tuple(
        LineItemEvent(product_id=item.product_id, quantity=item.quantity, unit_price=item.unit_price)
        for item in order.items
    )


def build_cancelled_event(order: Order, reason: str) -> OrderCancelledEvent:
    return OrderCancelledEvent(
        correlation_id=order.correlation_id,
        order_id=order.id,
        owner_id=order.owner_id,
        items=_line_items(order),
        reason=reason,
    )


def build_confirmed_event(order: Order) -> OrderConfirmedEvent:
    return OrderConfirmedEvent(
        correlation_id=order.correlation_id,
        order_id=order.id,
        owner_id=order.owner_id,
    )


class OrderSagaOrchestrator:
    def __init__(
        self,
        store: OrderStore,
        channel: MessageChannel,
        prices: PriceLookup,
        payments: PaymentProcessor,
        tracker: ReservationTracker,
        *,
        reply_queue: str,
        reservation_timeout: float = 10.0,
    ) -> None:
        self.store = store
        self.channel = channel
        self.prices = prices
        self.payments = payments
        self.tracker = tracker
        self.reply_queue = reply_queue
        self.reservation_timeout = reservation_timeout

    async def create_order(
        self,
        owner_id: str,
        requested_items: list[RequestedItem],
        correlation_id: str | None = None,
    ) -> OrderResult:
        correlation_id = correlation_id or uuid.uuid4().hex
        start = time.perf_counter()
        with tracer.start_as_current_span("saga.create_order") as span:
            span.set_attribute("order.owner_id", owner_id)
            try:
                result = await self._run(owner_id, requested_items, correlation_id)
            except MessagingUnavailableError:
                SAGA_OUTCOMES.labels(ReasonCode.SERVICE_UNAVAILABLE.value).inc()
                raise
            finally:
                SAGA_DURATION.observe(time.perf_counter() - start)

            outcome = "confirmed" if result.success else result.reason.value
            SAGA_OUTCOMES.labels(outcome).inc()
            span.set_attribute("order.outcome", outcome)
            if result.order_id is not None:
                span.set_attribute("order.id", str(result.order_id))
            return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _run(
        self,
        owner_id: str,
        requested_items: list[RequestedItem],
        correlation_id: str,
    ) -> OrderResult:
        # 1. Validate
        try:
            self._validate(owner_id, requested_items)
        except ValidationError as exc:
            logger.info("Rejected invalid order", extra={"owner_id": owner_id, "error": str(exc)})
            return OrderResult.failed(ReasonCode.INVALID_INPUT, str(exc))

        # 2. Price every item before anything is persisted
        try:
            lines = await self._price(requested_items)
        except ValidationError as exc:
            return OrderResult.failed(ReasonCode.INVALID_INPUT, str(exc))
        except DependencyUnavailableError as exc:
            logger.warning(
                "Price lookup unavailable, aborting before persistence",
                extra={"owner_id": owner_id, "error": str(exc)},
            )
            return OrderResult.failed(ReasonCode.SERVICE_UNAVAILABLE, str(exc))

        # 3. Persist PENDING
        order = await self.store.create(owner_id, lines, correlation_id)
        items = _line_items(order)

        # 4. Publish order.created (commit point)
        created = OrderCreatedEvent(
            correlation_id=correlation_id,
            order_id=order.id,
            owner_id=owner_id,
            total_amount=order.total_amount,
            items=items,
            reply_to=self.reply_queue,
        )
        self.tracker.expect(order.id)
        try:
            await publish_event(self.channel, ORDER_CREATED, created, key=str(order.id))
        except MessagingUnavailableError:
            self.tracker.discard(order.id)
            # Nothing went out, so there is nothing to compensate
            await self.store.transition(
                order.id, OrderStatus.FAILED, reason=ReasonCode.SERVICE_UNAVAILABLE.value
            )
            logger.error(
                "order.created could not be published, order failed without compensation",
                extra={"order_id": str(order.id), "correlation_id": correlation_id},
            )
            raise
        await self.store.mark_event_published(order.id, "created", created.event_id)
        logger.info(
            "Published order.created event",
            extra={"order_id": str(order.id), "correlation_id": correlation_id},
        )

        # 5. Wait for the stock reservation
        try:
            reply = await self.tracker.wait(order.id, self.reservation_timeout)
        except asyncio.TimeoutError:
            return await self._fail(
                order,
                items,
                ReasonCode.SERVICE_UNAVAILABLE,
                f"No stock reservation reply within {self.reservation_timeout}s",
            )
        if isinstance(reply, StockReservationFailedEvent):
            return await self._fail(order, items, ReasonCode.INSUFFICIENT_STOCK, reply.reason)

        # 6. Payment
        payment = await self.payments.charge(order.id, order.total_amount, correlation_id)
        if payment.approved:
            status = PaymentStatus.SUCCESS
        elif payment.declined:
            status = PaymentStatus.DECLINED
        else:
            status = PaymentStatus.ERROR
        await self.store.record_payment_attempt(
            order.id,
            status=status,
            amount=order.total_amount,
            processing_time_ms=payment.processing_time_ms,
            error_message=payment.error_message,
        )

        if payment.approved:
            return await self._confirm(order)
        if payment.declined:
            return await self._fail(order, items, ReasonCode.PAYMENT_DECLINED, "Payment declined")
        return await self._fail(
            order,
            items,
            ReasonCode.SERVICE_UNAVAILABLE,
            f"Payment unavailable: {payment.error_message}",
        )

    @staticmethod
    def _validate(owner_id: str, requested_items: list[RequestedItem]) -> None:
        if not owner_id or not owner_id.strip():
            raise ValidationError("owner_id is required")
        if not requested_items:
            raise ValidationError("An order needs at least one item")
        for item in requested_items:
            if not item.product_id or not item.product_id.strip():
                raise ValidationError("product_id is required")
            if len(item.product_id) > MAX_PRODUCT_ID_LENGTH:
                raise ValidationError(f"product_id too long: {item.product_id[:16]}...")
            if item.quantity <= 0:
                raise ValidationError(
                    f"Quantity for {item.product_id} must be positive, got {item.quantity}"
                )
            if item.quantity > MAX_QUANTITY:
                raise ValidationError(
                    f"Quantity for {item.product_id} exceeds {MAX_QUANTITY}, got {item.quantity}"
                )

    async def _price(self, requested_items: list[RequestedItem]) -> list[PricedLine]:
        lines: list[PricedLine] = []
        for item in requested_items:
            unit_price: Decimal = await self.prices.get_price(item.product_id)
            lines.append(
                PricedLine(product_id=item.product_id, quantity=item.quantity, unit_price=unit_price)
            )
        return lines

    async def _confirm(self, order: Order) -> OrderResult:
        confirmed = await self.store.transition(order.id, OrderStatus.CONFIRMED)
        event = build_confirmed_event(confirmed)
        try:
            await publish_event(self.channel, ORDER_CONFIRMED, event, key=str(order.id))
        except MessagingUnavailableError:
            logger.error(
                "order.confirmed not published, left for reconciliation",
                extra={"order_id": str(order.id)},
            )
        else:
            await self.store.mark_event_published(order.id, "confirmed", event.event_id)

        logger.info(
            "Order confirmed",
            extra={"order_id": str(order.id), "correlation_id": order.correlation_id},
        )
        return OrderResult.confirmed(order.id)

    async def _fail(
        self,
        order: Order,
        items: tuple[LineItemEvent, ...],
        reason: ReasonCode,
        detail: str,
    ) -> OrderResult:
        # Durably FAILED first; only then ask the stock service to compensate
        await self.store.transition(order.id, OrderStatus.FAILED, reason=reason.value)
        event = OrderCancelledEvent(
            correlation_id=order.correlation_id,
            order_id=order.id,
            owner_id=order.owner_id,
            items=items,
            reason=reason.value,
        )
        try:
            await publish_event(self.channel, ORDER_CANCELLED, event, key=str(order.id))
        except MessagingUnavailableError:
            logger.error(
                "order.cancelled not published, left for reconciliation",
                extra={"order_id": str(order.id), "reason": reason.value},
            )
        else:
            await self.store.mark_event_published(order.id, "cancelled", event.event_id)

        logger.warning(
            "Order failed",
            extra={
                "order_id": str(order.id),
                "correlation_id": order.correlation_id,
                "reason": reason.value,
                "detail": detail,
            },
        )
        return OrderResult.failed(reason, detail, order_id=order.id)
