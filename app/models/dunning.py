from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid as PG_UUID,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base


class AttemptOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class NotificationType(str, Enum):
    FIRST_FAILURE = "first_failure"
    RETRY_FAILURE = "retry_failure"
    FINAL_NOTICE = "final_notice"
    CANCELLED = "cancelled"
    RECOVERED = "recovered"


class PaymentRetryAttempt(Base):
    """
    Immutable audit row for one charge attempt against an invoice.

    Append-only. Attempt numbers per invoice are 1..k without gaps; the unique
    constraint rejects a second writer recording the same attempt.
    """

    __tablename__ = "payment_retry_attempts"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    subscription_id: Mapped[UUID] = mapped_column(
        PG_UUID(),
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    invoice_id: Mapped[UUID] = mapped_column(
        PG_UUID(),
        ForeignKey("subscription_invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    attempted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    error_code: Mapped[Optional[str]] = mapped_column(String(64))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    payment_method_ref: Mapped[Optional[str]] = mapped_column(String(255))
    gateway_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255), index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint(
            "invoice_id",
            "attempt_number",
            name="uix_payment_retry_attempt_invoice_attempt",
        ),
    )


class DunningNotification(Base):
    """Record of a customer communication; one per (subscription, invoice, type)."""

    __tablename__ = "dunning_notifications"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    subscription_id: Mapped[UUID] = mapped_column(
        PG_UUID(),
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    invoice_id: Mapped[UUID] = mapped_column(
        PG_UUID(),
        ForeignKey("subscription_invoices.id", ondelete="CASCADE"),
        nullable=False,
    )
    notification_type: Mapped[str] = mapped_column(String(32), nullable=False)
    attempt_number: Mapped[Optional[int]] = mapped_column(Integer)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "subscription_id",
            "invoice_id",
            "notification_type",
            name="uix_dunning_notification_sub_invoice_type",
        ),
    )
