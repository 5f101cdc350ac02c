"""
Pydantic event schemas shared across all services.
All events extend EventBase which carries correlation/tracing metadata.

The set of events is closed: ``parse_event`` only accepts the variants of
``OrderEvent`` and rejects unknown fields, so a malformed payload becomes a
PoisonMessageError instead of a half-filled object.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from shared.errors import PoisonMessageError

ORDER_CREATED = "order.created"
ORDER_CONFIRMED = "order.confirmed"
ORDER_CANCELLED = "order.cancelled"
STOCK_RESERVED = "stock.reserved"
STOCK_RESERVATION_FAILED = "stock.reservation_failed"


class EventBase(BaseModel):
    event_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_version: int = 1
    correlation_id: str  # carries X-Request-ID from the HTTP layer
    occurred_at: datetime = Field(default_factory=datetime.utcnow)

    model_config = {"extra": "forbid", "frozen": True}


class LineItemEvent(BaseModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    unit_price: Decimal

    model_config = {"extra": "forbid", "frozen": True}


class OrderCreatedEvent(EventBase):
    event_type: Literal["order.created"] = ORDER_CREATED
    order_id: uuid.UUID
    owner_id: str
    total_amount: Decimal
    items: tuple[LineItemEvent, ...] = Field(min_length=1)
    reply_to: str | None = None


class OrderConfirmedEvent(EventBase):
    event_type: Literal["order.confirmed"] = ORDER_CONFIRMED
    order_id: uuid.UUID
    owner_id: str


class OrderCancelledEvent(EventBase):
    event_type: Literal["order.cancelled"] = ORDER_CANCELLED
    order_id: uuid.UUID
    owner_id: str
    items: tuple[LineItemEvent, ...]
    reason: str


class StockReservedEvent(EventBase):
    event_type: Literal["stock.reserved"] = STOCK_RESERVED
    order_id: uuid.UUID


class StockReservationFailedEvent(EventBase):
    event_type: Literal["stock.reservation_failed"] = STOCK_RESERVATION_FAILED
    order_id: uuid.UUID
    reason: str
    product_id: str | None = None
    requested: int | None = None
    available: int | None = None


OrderEvent = Annotated[
    Union[
        OrderCreatedEvent,
        OrderConfirmedEvent,
        OrderCancelledEvent,
        StockReservedEvent,
        StockReservationFailedEvent,
    ],
    Field(discriminator="event_type"),
]

ReservationReply = Union[StockReservedEvent, StockReservationFailedEvent]

_event_adapter = TypeAdapter(OrderEvent)


def encode_event(event: EventBase) -> bytes:
    return event.model_dump_json().encode()


def parse_event(raw: bytes | str) -> EventBase:
    try:
        return _event_adapter.validate_json(raw)
    except PydanticValidationError as exc:
        raise PoisonMessageError(f"Undecodable event: {exc.error_count()} error(s)") from exc
