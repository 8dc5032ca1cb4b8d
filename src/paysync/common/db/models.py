from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Any
from uuid import UUID, uuid4

from sqlalchemy import String, TIMESTAMP, Integer, JSON, Boolean, Numeric, ForeignKey, func, Index
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.ext.asyncio import AsyncAttrs


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "PendingPayment"
    PAID = "Paid"
    PAYMENT_FAILED = "PaymentFailed"


class LedgerState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Base(AsyncAttrs, DeclarativeBase):
    pass


class Order(Base):
    """
    A customer order and its payment state.

    Orders are created by checkout in PendingPayment/unpaid and from then on
    only change through the reconciliation engine. `paid` never flips back to
    False because of a pending observation; only an explicit FAILED, INVALID
    or REVERSED status from the gateway clears it.
    """
    __tablename__ = "orders"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Sent to the gateway as the order id; fallback correlation key for IPNs
    merchant_reference: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    # Assigned by the gateway once submission succeeds
    tracking_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True, nullable=True)

    items: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KES")
    address: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    status: Mapped[str] = mapped_column(
        String(50), nullable=False, index=True, default=OrderStatus.PENDING_PAYMENT.value
    )
    paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payment_method: Mapped[str] = mapped_column(String(50), nullable=False, default="Pesapal")
    last_gateway_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )

    events: Mapped[list["Event"]] = relationship(back_populates="order")


class Product(Base):
    """Catalog entry. Read here only to price checkout items."""
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class LedgerEntry(Base):
    """
    Idempotency record for gateway notifications, one row per tracking id.

    Idempotency Guarantee:
    - 'tracking_id' is unique and rows are created by a single INSERT ... ON CONFLICT.
    - The creating call sees retry_count == 0; every later arrival increments it.
    - Only the creating call (or a reclaim of a stale 'processing' row) reconciles.
    """
    __tablename__ = "ipn_ledger"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    tracking_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)

    processing_state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=LedgerState.PENDING.value
    )
    locked_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    result_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    __table_args__ = (
        Index("ix_ipn_ledger_state_locked", "processing_state", "locked_at"),
    )


class Event(Base):
    """
    Immutable audit log of order and payment events.
    """
    __tablename__ = "events"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    order_id: Mapped[Optional[UUID]] = mapped_column(ForeignKey("orders.id"), nullable=True, index=True)

    type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    ts: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False
    )

    order: Mapped[Optional["Order"]] = relationship(back_populates="events")
