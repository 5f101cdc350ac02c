"""
Stock-side tables. The stock service owns these; the order service never
touches them.
"""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import CheckConstraint, DateTime, Integer, String, Text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from stock_service.database import Base


class ReservationStatus(str, Enum):
    PENDING = "pending"  # claimed, items being reserved
    RESERVED = "reserved"
    REJECTED = "rejected"  # insufficient stock, nothing held
    RELEASED = "released"  # reserved then compensated by order.cancelled
    CANCELLED = "cancelled"  # cancellation seen before (or during) reservation


class MovementKind(str, Enum):
    RESERVE = "reserve"
    RELEASE = "release"  # order.cancelled compensation
    COMPENSATE = "compensate"  # local rollback of a partial reservation
    RESTOCK = "restock"


class StockItem(Base):
    __tablename__ = "stock_items"
    __table_args__ = (CheckConstraint("available >= 0", name="ck_stock_items_available_non_negative"),)

    product_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    available: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reorder_level: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Reservation(Base):
    """One row per order; its status makes order.created / order.cancelled idempotent."""

    __tablename__ = "reservations"

    order_id: Mapped[uuid.UUID] = mapped_column(primary_key=True)
    status: Mapped[ReservationStatus] = mapped_column(
        SAEnum(ReservationStatus, name="reservationstatus"), nullable=False
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class StockMovement(Base):
    """Signed ledger of every stock change, per order."""

    __tablename__ = "stock_movements"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    order_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    change: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[MovementKind] = mapped_column(
        SAEnum(MovementKind, name="movementkind"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
