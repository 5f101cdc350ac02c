# Import all models here so SQLAlchemy registers them with Base.metadata
from order_service.models.order import (
    TERMINAL_STATUSES,
    Order,
    OrderAuditEntry,
    OrderItem,
    OrderStatus,
)
from order_service.models.payment import PaymentAttempt, PaymentStatus

__all__ = [
    "TERMINAL_STATUSES",
    "Order",
    "OrderAuditEntry",
    "OrderItem",
    "OrderStatus",
    "PaymentAttempt",
    "PaymentStatus",
]
