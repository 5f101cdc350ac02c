"""
Stock persistence.

Every change to ``available`` is a single conditional UPDATE, so concurrent
reservations for the same product can never drive it below zero:

    UPDATE stock_items SET available = available - :q
     WHERE product_id = :p AND available >= :q

Each change writes a StockMovement row in the same transaction; the ledger
is what lets a redelivered order.created resume exactly where a crashed
attempt stopped.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from shared.errors import InsufficientStockError
from shared.seed import DEMO_PRODUCTS
from stock_service.models import (
    MovementKind,
    Reservation,
    ReservationStatus,
    StockItem,
    StockMovement,
)

logger = logging.getLogger(__name__)


class CancelOutcome(str, Enum):
    RELEASED = "released"  # held stock given back
    DEFERRED = "deferred"  # reservation in flight; its owner will give stock back
    TOMBSTONED = "tombstoned"  # cancellation arrived first; a later order.created is skipped
    NOTHING_HELD = "nothing_held"  # reservation had been rejected
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class StockLevel:
    product_id: str
    available: int
    reorder_level: int

    @property
    def is_low(self) -> bool:
        return self.available <= self.reorder_level


class StockStore:
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Stock records
    # ------------------------------------------------------------------

    async def set_stock(self, product_id: str, available: int, reorder_level: int | None = None) -> None:
        if available < 0:
            raise ValueError("available cannot be negative")
        async with self._session_factory() as db:
            item = await db.get(StockItem, product_id)
            if item is None:
                change = available
                db.add(
                    StockItem(
                        product_id=product_id,
                        available=available,
                        reorder_level=reorder_level if reorder_level is not None else 10,
                    )
                )
            else:
                change = available - item.available
                item.available = available
                item.version += 1
                if reorder_level is not None:
                    item.reorder_level = reorder_level
            if change:
                db.add(StockMovement(product_id=product_id, change=change, kind=MovementKind.RESTOCK))
            await db.commit()

    async def get_available(self, product_id: str) -> int | None:
        async with self._session_factory() as db:
            return await db.scalar(select(StockItem.available).where(StockItem.product_id == product_id))

    async def is_empty(self) -> bool:
        async with self._session_factory() as db:
            return (await db.scalar(select(func.count()).select_from(StockItem))) == 0

    async def reserve(self, order_id: uuid.UUID, product_id: str, quantity: int) -> StockLevel:
        """Atomically take ``quantity`` units or raise InsufficientStockError."""
        if quantity <= 0:
            raise ValueError("quantity must be positive")
        async with self._session_factory() as db:
            result = await db.execute(
                update(StockItem)
                .where(StockItem.product_id == product_id, StockItem.available >= quantity)
                .values(
                    available=StockItem.available - quantity,
                    version=StockItem.version + 1,
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                available = await db.scalar(
                    select(StockItem.available).where(StockItem.product_id == product_id)
                )
                await db.rollback()
                raise InsufficientStockError(product_id, quantity, available or 0)

            db.add(
                StockMovement(
                    order_id=order_id,
                    product_id=product_id,
                    change=-quantity,
                    kind=MovementKind.RESERVE,
                )
            )
            row = (
                await db.execute(
                    select(StockItem.available, StockItem.reorder_level).where(
                        StockItem.product_id == product_id
                    )
                )
            ).one()
            await db.commit()
        return StockLevel(product_id=product_id, available=row.available, reorder_level=row.reorder_level)

    async def release(
        self,
        order_id: uuid.UUID,
        product_id: str,
        quantity: int,
        kind: MovementKind = MovementKind.COMPENSATE,
    ) -> None:
        async with self._session_factory() as db:
            await self._increment(db, order_id, product_id, quantity, kind)
            await db.commit()

    @staticmethod
    async def _increment(db, order_id: uuid.UUID, product_id: str, quantity: int, kind: MovementKind) -> None:
        result = await db.execute(
            update(StockItem)
            .where(StockItem.product_id == product_id)
            .values(
                available=StockItem.available + quantity,
                version=StockItem.version + 1,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "Release for unknown product ignored",
                extra={"order_id": str(order_id), "product_id": product_id, "quantity": quantity},
            )
            return
        db.add(StockMovement(order_id=order_id, product_id=product_id, change=quantity, kind=kind))

    async def held_quantities(self, order_id: uuid.UUID) -> dict[str, int]:
        """Units currently held for ``order_id`` according to the ledger."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(StockMovement.product_id, func.sum(StockMovement.change))
                .where(StockMovement.order_id == order_id)
                .group_by(StockMovement.product_id)
            )
            return {product_id: -net for product_id, net in result.all() if net < 0}

    # ------------------------------------------------------------------
    # Reservations
    # ------------------------------------------------------------------

    async def claim_reservation(self, order_id: uuid.UUID) -> Reservation | None:
        """Insert a PENDING reservation; return the existing one if the order was seen before."""
        async with self._session_factory() as db:
            db.add(Reservation(order_id=order_id, status=ReservationStatus.PENDING))
            try:
                await db.commit()
                return None
            except IntegrityError:
                await db.rollback()
            return await db.get(Reservation, order_id)

    async def complete_reservation(
        self,
        order_id: uuid.UUID,
        status: ReservationStatus,
        reason: str | None = None,
    ) -> bool:
        """Move PENDING -> ``status``; False if the reservation was cancelled meanwhile."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(Reservation)
                .where(Reservation.order_id == order_id, Reservation.status == ReservationStatus.PENDING)
                .values(status=status, reason=reason, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1

    async def cancel_reservation(
        self,
        order_id: uuid.UUID,
        quantities: dict[str, int],
        reason: str,
    ) -> CancelOutcome:
        # A concurrent status change makes one attempt inconclusive; the second sees it settled
        for _ in range(3):
            outcome = await self._try_cancel(order_id, quantities, reason)
            if outcome is not None:
                return outcome
        raise RuntimeError(f"Reservation {order_id} kept changing during cancellation")

    async def _try_cancel(
        self,
        order_id: uuid.UUID,
        quantities: dict[str, int],
        reason: str,
    ) -> CancelOutcome | None:
        async with self._session_factory() as db:
            reservation = await db.get(Reservation, order_id)

            if reservation is None:
                db.add(Reservation(order_id=order_id, status=ReservationStatus.CANCELLED, reason=reason))
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    return None
                return CancelOutcome.TOMBSTONED

            if reservation.status == ReservationStatus.RESERVED:
                result = await db.execute(
                    update(Reservation)
                    .where(
                        Reservation.order_id == order_id,
                        Reservation.status == ReservationStatus.RESERVED,
                    )
                    .values(status=ReservationStatus.RELEASED, reason=reason, updated_at=datetime.utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await db.rollback()
                    return None
                for product_id, quantity in quantities.items():
                    await self._increment(db, order_id, product_id, quantity, MovementKind.RELEASE)
                await db.commit()
                return CancelOutcome.RELEASED

            if reservation.status == ReservationStatus.PENDING:
                result = await db.execute(
                    update(Reservation)
                    .where(
                        Reservation.order_id == order_id,
                        Reservation.status == ReservationStatus.PENDING,
                    )
                    .values(status=ReservationStatus.CANCELLED, reason=reason, updated_at=datetime.utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await db.rollback()
                    return None
                await db.commit()
                return CancelOutcome.DEFERRED

            if reservation.status == ReservationStatus.REJECTED:
                return CancelOutcome.NOTHING_HELD
            return CancelOutcome.DUPLICATE


async def seed_demo_stock(store: StockStore, reorder_level: int) -> bool:
    """Load DEMO_PRODUCTS into an empty stock table; False if stock already exists."""
    if not await store.is_empty():
        return False
    for product in DEMO_PRODUCTS:
        await store.set_stock(product["product_id"], product["stock"], reorder_level)
    logger.info("Seeded demo stock", extra={"products": len(DEMO_PRODUCTS)})
    return True
