"""
Persistence for the order aggregate.

Each method runs in its own short transaction; the saga never holds a
session open across a broker or collaborator call. Status transitions are
conditional updates on ``status = 'pending'`` so two executions can never
both move the same order.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import selectinload

from order_service.models import (
    Order,
    OrderAuditEntry,
    OrderItem,
    OrderStatus,
    PaymentAttempt,
    PaymentStatus,
)
from shared.errors import InvalidStateError, OrderNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PricedLine:
    product_id: str
    quantity: int
    unit_price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


_EVENT_COLUMNS = {
    "created": Order.created_event_id,
    "confirmed": Order.confirmed_event_id,
    "cancelled": Order.cancelled_event_id,
}


class OrderStore:
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    async def create(self, owner_id: str, lines: list[PricedLine], correlation_id: str) -> Order:
        async with self._session_factory() as db:
            items = [
                OrderItem(
                    position=position,
                    product_id=line.product_id,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    subtotal=line.subtotal,
                )
                for position, line in enumerate(lines)
            ]
            order = Order(
                owner_id=owner_id,
                status=OrderStatus.PENDING,
                total_amount=Order.compute_total(items),
                correlation_id=correlation_id,
                items=items,
            )
            db.add(order)
            await db.flush()  # obtain order.id before writing the audit row
            db.add(OrderAuditEntry(order_id=order.id, from_status=None, to_status=OrderStatus.PENDING.value))
            await db.commit()

        logger.info(
            "Order persisted",
            extra={
                "order_id": str(order.id),
                "owner_id": owner_id,
                "amount": float(order.total_amount),
                "item_count": len(items),
            },
        )
        return await self.get(order.id)

    async def get(self, order_id: uuid.UUID) -> Order | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Order)
                .where(Order.id == order_id)
                .options(selectinload(Order.items), selectinload(Order.payment_attempts))
            )
            return result.scalars().first()

    async def transition(
        self,
        order_id: uuid.UUID,
        new_status: OrderStatus,
        *,
        reason: str | None = None,
    ) -> Order:
        """Move a pending order to a terminal status, exactly once."""
        async with self._session_factory() as db:
            order = await db.get(Order, order_id)
            if order is None:
                raise OrderNotFoundError(f"Order {order_id} not found")
            order.ensure_transition(new_status)

            result = await db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == OrderStatus.PENDING)
                .values(
                    status=new_status,
                    failure_reason=reason,
                    version=Order.version + 1,
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                raise InvalidStateError(f"Order {order_id} was already finalised concurrently")

            db.add(
                OrderAuditEntry(
                    order_id=order_id,
                    from_status=OrderStatus.PENDING.value,
                    to_status=new_status.value,
                    reason=reason,
                )
            )
            await db.commit()

        logger.info(
            "Order status changed",
            extra={"order_id": str(order_id), "status": new_status.value, "reason": reason},
        )
        return await self.get(order_id)

    async def record_payment_attempt(
        self,
        order_id: uuid.UUID,
        *,
        status: PaymentStatus,
        amount: Decimal,
        processing_time_ms: int,
        error_message: str | None = None,
    ) -> None:
        async with self._session_factory() as db:
            db.add(
                PaymentAttempt(
                    order_id=order_id,
                    status=status,
                    amount=amount,
                    processing_time_ms=processing_time_ms,
                    error_message=error_message,
                )
            )
            await db.commit()

    async def mark_event_published(self, order_id: uuid.UUID, kind: str, event_id: uuid.UUID) -> None:
        column = _EVENT_COLUMNS[kind]
        async with self._session_factory() as db:
            await db.execute(
                update(Order)
                .where(Order.id == order_id)
                .values({column.key: event_id, "updated_at": datetime.utcnow()})
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    async def list_unreconciled(self, limit: int = 100) -> list[Order]:
        """Terminal orders whose outcome event never reached the broker."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(Order)
                .where(
                    or_(
                        (Order.status == OrderStatus.CONFIRMED)
                        & Order.confirmed_event_id.is_(None),
                        (Order.status == OrderStatus.FAILED)
                        & Order.created_event_id.is_not(None)
                        & Order.cancelled_event_id.is_(None),
                    )
                )
                .options(selectinload(Order.items))
                .order_by(Order.updated_at)
                .limit(limit)
            )
            return list(result.scalars().all())
