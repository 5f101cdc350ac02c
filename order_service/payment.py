"""
Payment collaborator.

  - MockPaymentGateway simulates a real gateway: random latency and a
    configurable probability of declining the charge
  - PaymentProcessor runs the charge under the payment circuit breaker
    (whose call timeout bounds the call) and folds every outcome into a
    PaymentResult; it never raises to the saga
"""

import asyncio
import logging
import random
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from order_service.circuit_breaker import CircuitBreaker
from shared.errors import CircuitBreakerOpenError

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    async def charge(self, order_id: uuid.UUID, amount: Decimal) -> bool:
        """Return True when approved, False when declined; raise on gateway failure."""
        ...


class MockPaymentGateway:
    def __init__(
        self,
        *,
        min_latency: float,
        max_latency: float,
        decline_rate: float,
        rng: random.Random | None = None,
    ) -> None:
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.decline_rate = decline_rate
        self._rng = rng or random.Random()

    async def charge(self, order_id: uuid.UUID, amount: Decimal) -> bool:
        processing_time = self._rng.uniform(self.min_latency, self.max_latency)
        logger.debug(
            "Calling payment gateway",
            extra={"order_id": str(order_id), "simulated_latency_s": round(processing_time, 2)},
        )
        await asyncio.sleep(processing_time)
        return self._rng.random() >= self.decline_rate


@dataclass
class PaymentResult:
    approved: bool
    processing_time_ms: int
    error_message: str | None = None

    @property
    def declined(self) -> bool:
        return not self.approved and self.error_message is None


class PaymentProcessor:
    def __init__(self, gateway: PaymentGateway, breaker: CircuitBreaker) -> None:
        self._gateway = gateway
        self._breaker = breaker

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def charge(self, order_id: uuid.UUID, amount: Decimal, request_id: str) -> PaymentResult:
        start = time.monotonic()
        try:
            approved = await self._breaker.call(self._gateway.charge, order_id, amount)
        except CircuitBreakerOpenError as exc:
            logger.warning(
                "Circuit breaker OPEN — rejecting payment without calling gateway",
                extra={"order_id": str(order_id), "request_id": request_id},
            )
            return PaymentResult(approved=False, processing_time_ms=0, error_message=str(exc))
        except Exception as exc:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            logger.error(
                "Payment call failed",
                extra={
                    "order_id": str(order_id),
                    "request_id": request_id,
                    "error": str(exc) or type(exc).__name__,
                    "processing_time_ms": elapsed_ms,
                },
            )
            return PaymentResult(
                approved=False,
                processing_time_ms=elapsed_ms,
                error_message=str(exc) or type(exc).__name__,
            )

        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Payment approved" if approved else "Payment declined",
            extra={
                "order_id": str(order_id),
                "request_id": request_id,
                "amount": float(amount),
                "processing_time_ms": elapsed_ms,
            },
        )
        return PaymentResult(approved=bool(approved), processing_time_ms=elapsed_ms)
