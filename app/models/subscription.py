from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid as PG_UUID,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    TRIALING = "trialing"
    PAUSED = "paused"


class CancellationReason(str, Enum):
    CUSTOMER_REQUEST = "customer_request"
    PAYMENT_FAILED = "payment_failed"
    FRAUD = "fraud"
    OTHER = "other"


class BillingInterval(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    PAST_DUE = "past_due"


class Subscription(Base):
    """
    Long-lived recurring billing agreement.

    Owned by the billing subsystem. While an invoice is in dunning only the
    dunning engine transitions it (active <-> past_due -> cancelled).
    """

    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    customer_id: Mapped[UUID] = mapped_column(PG_UUID(), nullable=False, index=True)
    billing_interval: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BillingInterval.MONTHLY.value
    )
    interval_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value, index=True
    )
    payment_method_ref: Mapped[Optional[str]] = mapped_column(String(255))
    customer_email: Mapped[Optional[str]] = mapped_column(String(320))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False, default=Decimal("0")
    )

    next_billing_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True)
    )
    grace_period_ends_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True)
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(32))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


class SubscriptionInvoice(Base):
    """
    One invoice per billing cycle.

    `failed_attempts` only ever grows. `version` is an optimistic lock: two
    writers that read the same version cannot both commit.
    """

    __tablename__ = "subscription_invoices"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    subscription_id: Mapped[UUID] = mapped_column(
        PG_UUID(),
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InvoiceStatus.PENDING.value
    )

    failed_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Attempts recorded before the current dunning cycle began (grace resets).
    dunning_cycle_offset: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_failure_reason: Mapped[Optional[str]] = mapped_column(Text)
    late_fee: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2))

    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    gateway_transaction_id: Mapped[Optional[str]] = mapped_column(String(255))

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_subscription_invoices_status_next_retry", "status", "next_retry_at"),
    )

    @property
    def cycle_attempts(self) -> int:
        """Failed attempts counted toward the current dunning cycle."""
        return self.failed_attempts - self.dunning_cycle_offset

    @property
    def amount_due(self) -> Decimal:
        return self.amount + (self.late_fee or Decimal("0"))
