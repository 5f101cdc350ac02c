import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from order_service.models.order import OrderStatus
from order_service.models.payment import PaymentStatus
from shared.errors import ReasonCode


class OrderItemCreate(BaseModel):
    product_id: str
    quantity: int


class OrderCreate(BaseModel):
    owner_id: str
    items: list[OrderItemCreate] = Field(default_factory=list)


class OrderItemResponse(BaseModel):
    product_id: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal

    model_config = {"from_attributes": True}


class PaymentAttemptResponse(BaseModel):
    id: uuid.UUID
    status: PaymentStatus
    error_message: str | None
    processing_time_ms: int | None
    created_at: datetime

    model_config = {"from_attributes": True}


class OrderResponse(BaseModel):
    id: uuid.UUID
    owner_id: str
    status: OrderStatus
    total_amount: Decimal
    failure_reason: str | None
    created_at: datetime
    updated_at: datetime
    items: list[OrderItemResponse]
    payment_attempts: list[PaymentAttemptResponse]

    model_config = {"from_attributes": True}


class OrderFailureResponse(BaseModel):
    order_id: uuid.UUID | None
    status: OrderStatus | None
    reason: ReasonCode
    detail: str
