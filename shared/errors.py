"""
Error taxonomy shared by every service.

Business failures (declined payment, insufficient stock) are reported as
typed results by the code that detects them; these exceptions mark the
points where that detection happens.
"""

from enum import Enum


class ReasonCode(str, Enum):
    PAYMENT_DECLINED = "payment_declined"
    INSUFFICIENT_STOCK = "insufficient_stock"
    INVALID_INPUT = "invalid_input"
    SERVICE_UNAVAILABLE = "service_unavailable"


class OrderPlatformError(Exception):
    """Base class for all domain errors."""


class ValidationError(OrderPlatformError):
    """Bad input, rejected before anything is persisted."""


class ProductNotFoundError(ValidationError):
    def __init__(self, product_id: str) -> None:
        super().__init__(f"Unknown product: {product_id}")
        self.product_id = product_id


class DependencyUnavailableError(OrderPlatformError):
    """A synchronous collaborator failed or timed out."""


class CircuitBreakerOpenError(DependencyUnavailableError):
    """Circuit breaker is open; fail fast without calling the dependency."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Circuit breaker '{name}' is open")
        self.name = name


class MessagingUnavailableError(DependencyUnavailableError):
    """The broker did not durably accept a message after all retries."""


class InsufficientStockError(OrderPlatformError):
    def __init__(self, product_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for {product_id}: requested={requested}, available={available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class InvalidStateError(OrderPlatformError):
    """Attempted transition on an order that is no longer pending."""


class OrderNotFoundError(OrderPlatformError):
    pass


class PoisonMessageError(OrderPlatformError):
    """A message that can never be processed and belongs in the DLQ."""
