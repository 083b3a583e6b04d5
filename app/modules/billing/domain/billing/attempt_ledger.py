"""
Attempt Ledger - append-only record of every charge attempt.

Rows are never updated or deleted. Attempt numbers per invoice form the
gapless sequence 1..k; the unique (invoice_id, attempt_number) constraint is
the final arbiter when two writers race for the same number.
"""

from datetime import datetime
from typing import Optional, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.dunning import AttemptOutcome, PaymentRetryAttempt


class AttemptLedger:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(
        self,
        *,
        subscription_id: UUID,
        invoice_id: UUID,
        attempt_number: int,
        attempted_at: datetime,
        outcome: AttemptOutcome,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        next_retry_at: Optional[datetime] = None,
        payment_method_ref: Optional[str] = None,
        gateway_transaction_id: Optional[str] = None,
    ) -> PaymentRetryAttempt:
        """
        Stage a new row and flush it.

        Raises IntegrityError when the attempt number is already taken; the
        caller's transaction is unusable afterwards and must be rolled back.
        """
        attempt = PaymentRetryAttempt(
            subscription_id=subscription_id,
            invoice_id=invoice_id,
            attempt_number=attempt_number,
            attempted_at=attempted_at,
            outcome=AttemptOutcome(outcome).value,
            error_code=error_code,
            error_message=error_message,
            next_retry_at=next_retry_at,
            payment_method_ref=payment_method_ref,
            gateway_transaction_id=gateway_transaction_id,
            created_at=attempted_at,
        )
        self.db.add(attempt)
        await self.db.flush()
        return attempt

    async def last_attempt_number(self, invoice_id: UUID) -> int:
        result = await self.db.execute(
            select(func.max(PaymentRetryAttempt.attempt_number)).where(
                PaymentRetryAttempt.invoice_id == invoice_id
            )
        )
        return result.scalar_one_or_none() or 0

    async def exists_transaction(
        self, invoice_id: UUID, gateway_transaction_id: str
    ) -> bool:
        result = await self.db.execute(
            select(PaymentRetryAttempt.id)
            .where(
                PaymentRetryAttempt.invoice_id == invoice_id,
                PaymentRetryAttempt.gateway_transaction_id == gateway_transaction_id,
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def find_by_transaction(
        self, gateway_transaction_id: str
    ) -> Optional[PaymentRetryAttempt]:
        """Locate the invoice a webhook refers to when its metadata is missing."""
        result = await self.db.execute(
            select(PaymentRetryAttempt)
            .where(PaymentRetryAttempt.gateway_transaction_id == gateway_transaction_id)
            .order_by(PaymentRetryAttempt.attempt_number.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_for_invoice(self, invoice_id: UUID) -> Sequence[PaymentRetryAttempt]:
        result = await self.db.execute(
            select(PaymentRetryAttempt)
            .where(PaymentRetryAttempt.invoice_id == invoice_id)
            .order_by(PaymentRetryAttempt.attempt_number)
        )
        return result.scalars().all()

    async def list_for_subscription(
        self, subscription_id: UUID
    ) -> Sequence[PaymentRetryAttempt]:
        result = await self.db.execute(
            select(PaymentRetryAttempt)
            .where(PaymentRetryAttempt.subscription_id == subscription_id)
            .order_by(
                PaymentRetryAttempt.attempt_number, PaymentRetryAttempt.attempted_at
            )
        )
        return result.scalars().all()
