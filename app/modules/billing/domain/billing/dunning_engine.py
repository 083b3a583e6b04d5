"""
Dunning Engine - failed-payment state machine per (subscription, invoice).

    Healthy -> Dunning(attempt 1..N) -> Recovered | Cancelled

Healthy and Recovered are both subscription `active`; while dunning the
subscription is `past_due` and the invoice `failed` with a `next_retry_at`.

Every state change runs in one transaction that locks the invoice row
(SELECT ... FOR UPDATE, backed by the optimistic `version` column) before it
reads `status`/`failed_attempts`. The gateway call never holds that lock:

    read + lock -> release -> charge -> re-lock -> re-validate -> apply

Races (unique ledger conflict, version conflict, state already resolved)
resolve to a NoOp decision and are never raised to the caller. This is what
turns the scheduler's at-least-once delivery into exactly-once business
effects.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional, Sequence
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.models.background_job import BackgroundJob, JobStatus, JobType
from app.models.dunning import (
    AttemptOutcome,
    DunningNotification,
    NotificationType,
    PaymentRetryAttempt,
)
from app.models.subscription import (
    CancellationReason,
    InvoiceStatus,
    Subscription,
    SubscriptionInvoice,
    SubscriptionStatus,
)
from app.modules.billing.domain.billing.attempt_ledger import AttemptLedger
from app.modules.billing.domain.billing.dunning_config import (
    DunningConfig,
    GraceExtensionPolicy,
)
from app.modules.billing.domain.billing.gateway import ChargeRequest, PaymentGateway
from app.modules.billing.domain.billing.notifications import (
    DunningNotifier,
    select_failure_notification,
)
from app.modules.billing.domain.billing.retry_policy import next_retry_at
from app.shared.core.clock import Clock, SystemClock, ensure_utc
from app.shared.core.exceptions import (
    GatewayError,
    ResourceNotFoundError,
    ValidationError,
)
from app.shared.core.logging import audit_log
from app.shared.core.ops_metrics import (
    DUNNING_DECISIONS_TOTAL,
    DUNNING_NOOPS_TOTAL,
    GATEWAY_CHARGE_DURATION,
    GATEWAY_CHARGES_TOTAL,
)
from app.shared.core.tracing import get_tracer

logger = structlog.get_logger()

# A job firing slightly before `next_retry_at` (clock skew between workers)
# is still due.
DUE_TOLERANCE = timedelta(seconds=60)
UNREACHABLE_MESSAGE = "Could not reach payment gateway"
LIVE_JOB_STATUSES = frozenset({JobStatus.PENDING.value, JobStatus.RUNNING.value})


class DecisionKind(str, Enum):
    RETRY_SCHEDULED = "retry_scheduled"
    CANCELLED = "cancelled"
    RECOVERED = "recovered"
    NOOP = "noop"


@dataclass(frozen=True)
class Decision:
    kind: DecisionKind
    attempt_number: Optional[int] = None
    retry_at: Optional[datetime] = None
    reason: Optional[str] = None

    @classmethod
    def noop(cls, reason: str) -> "Decision":
        return cls(DecisionKind.NOOP, reason=reason)

    @property
    def is_noop(self) -> bool:
        return self.kind == DecisionKind.NOOP

    def as_dict(self) -> dict[str, Any]:
        return {
            "decision": self.kind.value,
            "attempt_number": self.attempt_number,
            "retry_at": self.retry_at.isoformat() if self.retry_at else None,
            "reason": self.reason,
        }


@dataclass
class _PendingNotification:
    notification_type: NotificationType
    subscription_id: UUID
    invoice_id: UUID
    attempt_number: Optional[int]
    template_vars: dict[str, Any]


@dataclass(frozen=True)
class GraceExtension:
    subscription_id: UUID
    invoice_id: UUID
    policy: GraceExtensionPolicy
    next_retry_at: datetime
    grace_period_ends_at: datetime
    cycle_attempts: int


@dataclass(frozen=True)
class DunningReset:
    subscription_id: UUID
    status: str
    reset: bool


@dataclass(frozen=True)
class DueRetry:
    invoice_id: UUID
    subscription_id: UUID
    next_retry_at: datetime
    attempt_number: int


@dataclass
class DunningHistory:
    subscription_id: UUID
    status: str
    grace_period_ends_at: Optional[datetime]
    cancelled_for_non_payment: bool
    attempts: Sequence[PaymentRetryAttempt] = field(default_factory=list)
    notifications: Sequence[DunningNotification] = field(default_factory=list)

    @property
    def total_attempts(self) -> int:
        return len(self.attempts)


@dataclass(frozen=True)
class DunningStats:
    past_due_subscriptions: int
    failed_invoices: int
    due_retries: int
    cancelled_for_non_payment: int
    retry_jobs: dict[str, int]


def retry_job_key(invoice_id: UUID, attempt_number: int) -> str:
    return f"{invoice_id}:{attempt_number}"


def charge_idempotency_key(invoice_id: UUID, attempt_number: int) -> str:
    return f"{invoice_id}:{attempt_number}"


class DunningEngine:
    """
    Orchestrates failure handling, retries and recovery.

    Collaborators are injected; the engine holds no global state. `config`
    is an immutable snapshot read once per operation, so `reload_config`
    only affects later decisions.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        notifier: DunningNotifier,
        scheduler: Any,
        config: DunningConfig,
        clock: Optional[Clock] = None,
    ):
        self.session_maker = session_maker
        self.gateway = gateway
        self.notifier = notifier
        self.scheduler = scheduler
        self.config = config
        self.clock = clock or SystemClock()

    def reload_config(self, config: DunningConfig) -> None:
        self.config = config
        logger.info(
            "dunning_config_replaced",
            max_retries=config.max_retries,
            retry_intervals_days=list(config.retry_intervals_days),
        )

    # ==================== Shared helpers ====================

    async def _lock(
        self, db: AsyncSession, subscription_id: UUID, invoice_id: UUID
    ) -> tuple[Subscription, SubscriptionInvoice]:
        invoice = (
            await db.execute(
                select(SubscriptionInvoice)
                .where(
                    SubscriptionInvoice.id == invoice_id,
                    SubscriptionInvoice.subscription_id == subscription_id,
                )
                .with_for_update()
            )
        ).scalar_one_or_none()
        if invoice is None:
            raise ResourceNotFoundError(
                f"Invoice {invoice_id} not found for subscription {subscription_id}"
            )
        subscription = (
            await db.execute(
                select(Subscription)
                .where(Subscription.id == subscription_id)
                .with_for_update()
            )
        ).scalar_one_or_none()
        if subscription is None:
            raise ResourceNotFoundError(f"Subscription {subscription_id} not found")
        return subscription, invoice

    def _noop(self, operation: str, reason: str, **context: Any) -> Decision:
        DUNNING_NOOPS_TOTAL.labels(reason=reason).inc()
        DUNNING_DECISIONS_TOTAL.labels(
            operation=operation, decision=DecisionKind.NOOP.value
        ).inc()
        logger.info("dunning_noop", operation=operation, reason=reason, **context)
        return Decision.noop(reason)

    def _decided(self, operation: str, decision: Decision) -> Decision:
        DUNNING_DECISIONS_TOTAL.labels(
            operation=operation, decision=decision.kind.value
        ).inc()
        return decision

    @staticmethod
    def _resolved_reason(
        subscription: Subscription, invoice: SubscriptionInvoice
    ) -> Optional[str]:
        if invoice.status == InvoiceStatus.PAID.value:
            return "invoice_paid"
        if subscription.status == SubscriptionStatus.CANCELLED.value:
            return "subscription_cancelled"
        return None

    def _template_vars(
        self,
        subscription: Subscription,
        invoice: SubscriptionInvoice,
        config: DunningConfig,
        *,
        attempt: Optional[int] = None,
        retry_at: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> dict[str, Any]:
        return {
            "subscription_id": str(subscription.id),
            "invoice_id": str(invoice.id),
            "customer_email": subscription.customer_email,
            "amount": str(invoice.amount_due),
            "currency": invoice.currency,
            "attempt": attempt,
            "max_attempts": config.max_retries + 1,
            "next_retry_date": retry_at.date().isoformat() if retry_at else None,
            "grace_period_ends": (
                ensure_utc(subscription.grace_period_ends_at).date().isoformat()
                if subscription.grace_period_ends_at
                else None
            ),
            "reason": reason,
        }

    async def _send(self, pending: Optional[_PendingNotification]) -> None:
        if pending is None:
            return
        await self.notifier.notify(
            pending.notification_type,
            pending.subscription_id,
            pending.invoice_id,
            attempt_number=pending.attempt_number,
            template_vars=pending.template_vars,
        )

    # ==================== ProcessFailure ====================

    async def process_failure(
        self,
        subscription_id: UUID,
        invoice_id: UUID,
        error_message: str,
        error_code: Optional[str] = None,
        *,
        gateway_transaction_id: Optional[str] = None,
        expected_attempt: Optional[int] = None,
    ) -> Decision:
        """
        Record a failed charge as the next attempt and decide retry vs cancel.

        `gateway_transaction_id` and `expected_attempt` identify the event:
        a failure whose transaction is already in the ledger, or that expects
        an attempt number which is no longer next, has already been handled.
        """
        return await self._process_failure(
            "process_failure",
            subscription_id,
            invoice_id,
            error_message,
            error_code,
            gateway_transaction_id=gateway_transaction_id,
            expected_attempt=expected_attempt,
        )

    async def _process_failure(
        self,
        operation: str,
        subscription_id: UUID,
        invoice_id: UUID,
        error_message: str,
        error_code: Optional[str],
        *,
        gateway_transaction_id: Optional[str] = None,
        expected_attempt: Optional[int] = None,
    ) -> Decision:
        config = self.config
        now = self.clock.now()
        context = {"subscription_id": str(subscription_id), "invoice_id": str(invoice_id)}

        async with self.session_maker() as db:
            try:
                subscription, invoice = await self._lock(db, subscription_id, invoice_id)
                resolved = self._resolved_reason(subscription, invoice)
                if resolved:
                    return self._noop(operation, resolved, **context)

                ledger = AttemptLedger(db)
                if gateway_transaction_id and await ledger.exists_transaction(
                    invoice.id, gateway_transaction_id
                ):
                    return self._noop(operation, "duplicate_event", **context)

                attempt_number = invoice.failed_attempts + 1
                if expected_attempt is not None and expected_attempt != attempt_number:
                    return self._noop(
                        operation,
                        "attempt_superseded",
                        expected_attempt=expected_attempt,
                        next_attempt=attempt_number,
                        **context,
                    )

                decision, pending = await self._record_failure(
                    db,
                    subscription,
                    invoice,
                    attempt_number,
                    now,
                    config,
                    error_message=error_message,
                    error_code=error_code,
                    gateway_transaction_id=gateway_transaction_id,
                )
                await db.commit()
            except (IntegrityError, StaleDataError) as exc:
                await db.rollback()
                return self._noop(
                    operation, "concurrent_update", error=type(exc).__name__, **context
                )

        await self._send(pending)
        return self._decided(operation, decision)

    async def _record_failure(
        self,
        db: AsyncSession,
        subscription: Subscription,
        invoice: SubscriptionInvoice,
        attempt_number: int,
        now: datetime,
        config: DunningConfig,
        *,
        error_message: str,
        error_code: Optional[str],
        gateway_transaction_id: Optional[str],
    ) -> tuple[Decision, Optional[_PendingNotification]]:
        cycle_attempt = attempt_number - invoice.dunning_cycle_offset
        retry_at = next_retry_at(cycle_attempt, now, config)

        await AttemptLedger(db).append(
            subscription_id=subscription.id,
            invoice_id=invoice.id,
            attempt_number=attempt_number,
            attempted_at=now,
            outcome=AttemptOutcome.FAILED,
            error_code=error_code,
            error_message=error_message,
            next_retry_at=retry_at,
            payment_method_ref=subscription.payment_method_ref,
            gateway_transaction_id=gateway_transaction_id,
        )

        invoice.failed_attempts = attempt_number
        invoice.last_failed_at = now
        invoice.last_failure_reason = error_message
        if (
            config.late_fee_after_retry is not None
            and invoice.late_fee is None
            and attempt_number >= config.late_fee_after_retry
        ):
            invoice.late_fee = config.late_fee_amount
            logger.info(
                "dunning_late_fee_applied",
                invoice_id=str(invoice.id),
                late_fee=str(config.late_fee_amount),
            )

        if retry_at is None:
            subscription.status = SubscriptionStatus.CANCELLED.value
            subscription.cancelled_at = now
            subscription.cancellation_reason = CancellationReason.PAYMENT_FAILED.value
            invoice.status = InvoiceStatus.PAST_DUE.value
            invoice.next_retry_at = None
            logger.warning(
                "dunning_subscription_cancelled",
                subscription_id=str(subscription.id),
                invoice_id=str(invoice.id),
                attempt_number=attempt_number,
                error_code=error_code,
            )
            pending = _PendingNotification(
                NotificationType.CANCELLED,
                subscription.id,
                invoice.id,
                attempt_number,
                self._template_vars(
                    subscription, invoice, config, attempt=cycle_attempt, reason=error_message
                ),
            )
            return Decision(DecisionKind.CANCELLED, attempt_number=attempt_number), pending

        if subscription.status != SubscriptionStatus.PAST_DUE.value:
            subscription.status = SubscriptionStatus.PAST_DUE.value
        if subscription.grace_period_ends_at is None:
            subscription.grace_period_ends_at = now + timedelta(
                days=config.grace_period_days
            )
        invoice.status = InvoiceStatus.FAILED.value
        invoice.next_retry_at = retry_at

        await self.scheduler.schedule(
            retry_job_key(invoice.id, attempt_number),
            retry_at,
            {
                "subscription_id": str(subscription.id),
                "invoice_id": str(invoice.id),
                "attempt_number": attempt_number + 1,
            },
            db=db,
        )
        logger.info(
            "dunning_payment_failed",
            subscription_id=str(subscription.id),
            invoice_id=str(invoice.id),
            attempt_number=attempt_number,
            cycle_attempt=cycle_attempt,
            error_code=error_code,
            next_retry_at=retry_at.isoformat(),
        )

        pending = None
        notification_type = select_failure_notification(cycle_attempt, config)
        if notification_type is not None:
            pending = _PendingNotification(
                notification_type,
                subscription.id,
                invoice.id,
                attempt_number,
                self._template_vars(
                    subscription,
                    invoice,
                    config,
                    attempt=cycle_attempt,
                    retry_at=retry_at,
                    reason=error_message,
                ),
            )
        decision = Decision(
            DecisionKind.RETRY_SCHEDULED, attempt_number=attempt_number, retry_at=retry_at
        )
        return decision, pending

    # ==================== RetryPayment ====================

    async def retry_payment(
        self,
        subscription_id: UUID,
        invoice_id: UUID,
        *,
        expected_attempt: Optional[int] = None,
        final_delivery: bool = False,
        force: bool = False,
    ) -> Decision:
        """
        Charge the stored payment method for the next attempt.

        Raises GatewayError(retryable=True) when the gateway is unreachable and
        this is not the final delivery, so the scheduler backs off without
        consuming a dunning attempt. `force` skips the due-time check.
        """
        operation = "retry_payment"
        config = self.config
        context = {"subscription_id": str(subscription_id), "invoice_id": str(invoice_id)}
        tracer = get_tracer(__name__)

        with tracer.start_as_current_span("dunning_retry_payment") as span:
            span.set_attribute("invoice_id", str(invoice_id))

            async with self.session_maker() as db:
                subscription, invoice = await self._lock(db, subscription_id, invoice_id)
                resolved = self._resolved_reason(subscription, invoice)
                if resolved:
                    return self._noop(operation, resolved, **context)
                if invoice.status not in (
                    InvoiceStatus.FAILED.value,
                    InvoiceStatus.PENDING.value,
                ):
                    return self._noop(operation, f"invoice_{invoice.status}", **context)

                attempt_number = invoice.failed_attempts + 1
                if expected_attempt is not None and expected_attempt != attempt_number:
                    return self._noop(
                        operation,
                        "attempt_superseded",
                        expected_attempt=expected_attempt,
                        next_attempt=attempt_number,
                        **context,
                    )
                now = self.clock.now()
                if (
                    not force
                    and invoice.next_retry_at is not None
                    and now < ensure_utc(invoice.next_retry_at) - DUE_TOLERANCE
                ):
                    return self._noop(
                        operation,
                        "not_due",
                        next_retry_at=ensure_utc(invoice.next_retry_at).isoformat(),
                        **context,
                    )

                payment_method_ref = subscription.payment_method_ref
                request = ChargeRequest(
                    payment_method_ref=payment_method_ref or "",
                    amount=invoice.amount_due,
                    currency=invoice.currency,
                    idempotency_key=charge_idempotency_key(invoice.id, attempt_number),
                    subscription_id=subscription.id,
                    invoice_id=invoice.id,
                    customer_email=subscription.customer_email,
                    metadata={"attempt_number": attempt_number},
                )
                # Release the row lock before the network call.
                await db.rollback()

            span.set_attribute("attempt_number", attempt_number)
            if not payment_method_ref:
                return await self._process_failure(
                    operation,
                    subscription_id,
                    invoice_id,
                    "No payment method on file",
                    "missing_payment_method",
                    expected_attempt=attempt_number,
                )

            outcome = await self._charge(request, config, final_delivery)
            span.set_attribute("charge_success", outcome.success)

        if outcome.success:
            return await self._apply_success(
                operation,
                subscription_id,
                invoice_id,
                outcome.gateway_transaction_id,
            )
        return await self._process_failure(
            operation,
            subscription_id,
            invoice_id,
            outcome.error_message or "Charge declined",
            outcome.error_code,
            gateway_transaction_id=outcome.gateway_transaction_id,
            expected_attempt=attempt_number,
        )

    async def _charge(
        self, request: ChargeRequest, config: DunningConfig, final_delivery: bool
    ) -> "_ChargeOutcome":
        provider = getattr(self.gateway, "provider", "unknown")
        started = asyncio.get_running_loop().time()
        try:
            result = await asyncio.wait_for(
                self.gateway.charge(request), timeout=config.gateway_timeout_seconds
            )
        except asyncio.TimeoutError:
            GATEWAY_CHARGES_TOTAL.labels(provider=provider, outcome="timeout").inc()
            logger.warning(
                "gateway_charge_timeout",
                provider=provider,
                invoice_id=str(request.invoice_id),
                timeout_seconds=config.gateway_timeout_seconds,
            )
            return _ChargeOutcome(
                False,
                error_code="gateway_timeout",
                error_message="Payment gateway did not respond in time",
            )
        except GatewayError as exc:
            txn = exc.details.get("gateway_transaction_id") if exc.details else None
            if exc.retryable:
                GATEWAY_CHARGES_TOTAL.labels(provider=provider, outcome="unreachable").inc()
                if not final_delivery:
                    raise
                logger.error(
                    "gateway_unreachable_final_delivery",
                    provider=provider,
                    invoice_id=str(request.invoice_id),
                    error=exc.message,
                )
                return _ChargeOutcome(
                    False,
                    error_code="gateway_unreachable",
                    error_message=UNREACHABLE_MESSAGE,
                )
            GATEWAY_CHARGES_TOTAL.labels(provider=provider, outcome="declined").inc()
            return _ChargeOutcome(
                False,
                error_code=exc.code,
                error_message=exc.message,
                gateway_transaction_id=txn,
            )
        finally:
            GATEWAY_CHARGE_DURATION.labels(provider=provider).observe(
                asyncio.get_running_loop().time() - started
            )

        if not result.success:
            GATEWAY_CHARGES_TOTAL.labels(provider=provider, outcome="declined").inc()
            return _ChargeOutcome(
                False,
                error_code=result.raw_status or "declined",
                error_message="Charge declined",
                gateway_transaction_id=result.gateway_transaction_id,
            )
        GATEWAY_CHARGES_TOTAL.labels(provider=provider, outcome="succeeded").inc()
        return _ChargeOutcome(True, gateway_transaction_id=result.gateway_transaction_id)

    # ==================== Recovery ====================

    async def process_recovery(
        self,
        subscription_id: UUID,
        invoice_id: UUID,
        gateway_transaction_id: Optional[str] = None,
    ) -> Decision:
        """Apply an out-of-band successful payment (webhook, manual payment)."""
        return await self._apply_success(
            "process_recovery", subscription_id, invoice_id, gateway_transaction_id
        )

    async def _apply_success(
        self,
        operation: str,
        subscription_id: UUID,
        invoice_id: UUID,
        gateway_transaction_id: Optional[str],
    ) -> Decision:
        config = self.config
        now = self.clock.now()
        context = {"subscription_id": str(subscription_id), "invoice_id": str(invoice_id)}

        async with self.session_maker() as db:
            try:
                subscription, invoice = await self._lock(db, subscription_id, invoice_id)
                if invoice.status == InvoiceStatus.PAID.value:
                    return self._noop(operation, "invoice_paid", **context)
                if subscription.status == SubscriptionStatus.CANCELLED.value:
                    # Money may have moved after cancellation; needs a human.
                    logger.warning(
                        "dunning_payment_after_cancellation",
                        gateway_transaction_id=gateway_transaction_id,
                        **context,
                    )
                    return self._noop(operation, "subscription_cancelled", **context)

                ledger = AttemptLedger(db)
                attempt_number = await ledger.last_attempt_number(invoice.id) + 1
                await ledger.append(
                    subscription_id=subscription.id,
                    invoice_id=invoice.id,
                    attempt_number=attempt_number,
                    attempted_at=now,
                    outcome=AttemptOutcome.SUCCEEDED,
                    payment_method_ref=subscription.payment_method_ref,
                    gateway_transaction_id=gateway_transaction_id,
                )
                invoice.status = InvoiceStatus.PAID.value
                invoice.paid_at = now
                invoice.next_retry_at = None
                invoice.gateway_transaction_id = gateway_transaction_id
                subscription.status = SubscriptionStatus.ACTIVE.value
                subscription.grace_period_ends_at = None
                template_vars = self._template_vars(
                    subscription, invoice, config, attempt=attempt_number
                )
                await db.commit()
            except (IntegrityError, StaleDataError) as exc:
                await db.rollback()
                return self._noop(
                    operation, "concurrent_update", error=type(exc).__name__, **context
                )

        logger.info(
            "dunning_payment_recovered",
            attempt_number=attempt_number,
            gateway_transaction_id=gateway_transaction_id,
            **context,
        )
        await self._send(
            _PendingNotification(
                NotificationType.RECOVERED,
                subscription_id,
                invoice_id,
                attempt_number,
                template_vars,
            )
        )
        return self._decided(
            operation, Decision(DecisionKind.RECOVERED, attempt_number=attempt_number)
        )

    # ==================== Operator actions ====================

    async def manual_retry(self, invoice_id: UUID, actor: str = "operator") -> Decision:
        """
        Immediate operator-triggered retry.

        Raises ValidationError unless the invoice is pending or failed and
        still has retries left. An unreachable gateway surfaces as
        TransientGatewayError without counting an attempt.
        """
        config = self.config
        async with self.session_maker() as db:
            invoice = await db.get(SubscriptionInvoice, invoice_id)
            if invoice is None:
                raise ResourceNotFoundError(f"Invoice {invoice_id} not found")
            subscription = await db.get(Subscription, invoice.subscription_id)
            if subscription is None:
                raise ResourceNotFoundError(
                    f"Subscription {invoice.subscription_id} not found"
                )
            if invoice.status not in (
                InvoiceStatus.PENDING.value,
                InvoiceStatus.FAILED.value,
            ):
                raise ValidationError(
                    f"Invoice is {invoice.status} and cannot be retried",
                    code="invoice_not_retryable",
                )
            if subscription.status == SubscriptionStatus.CANCELLED.value:
                raise ValidationError(
                    "Subscription is cancelled", code="subscription_cancelled"
                )
            if invoice.cycle_attempts > config.max_retries:
                raise ValidationError(
                    "Invoice has exhausted its retries", code="retries_exhausted"
                )
            subscription_id = subscription.id

        audit_log(
            "dunning_manual_retry",
            actor,
            str(subscription_id),
            {"invoice_id": str(invoice_id)},
        )
        return await self.retry_payment(subscription_id, invoice_id, force=True)

    async def extend_grace_period(
        self,
        subscription_id: UUID,
        invoice_id: UUID,
        days: int,
        actor: str = "operator",
    ) -> GraceExtension:
        """
        Push the next retry (and the grace deadline) back by `days`.

        Under `reset_attempts` the invoice also starts a fresh dunning cycle.
        The previously scheduled job stays queued and resolves to a NoOp
        because it is no longer due.
        """
        if days < 1:
            raise ValidationError("Extension must be at least one day")
        config = self.config
        now = self.clock.now()
        delta = timedelta(days=days)

        async with self.session_maker() as db:
            subscription, invoice = await self._lock(db, subscription_id, invoice_id)
            if (
                invoice.status != InvoiceStatus.FAILED.value
                or subscription.status == SubscriptionStatus.CANCELLED.value
            ):
                raise ValidationError(
                    "Invoice is not in dunning", code="invoice_not_in_dunning"
                )

            base_retry = (
                ensure_utc(invoice.next_retry_at) if invoice.next_retry_at else now
            )
            base_grace = (
                ensure_utc(subscription.grace_period_ends_at)
                if subscription.grace_period_ends_at
                else now
            )
            invoice.next_retry_at = base_retry + delta
            subscription.grace_period_ends_at = base_grace + delta
            policy = config.grace_extension_policy
            if policy == GraceExtensionPolicy.RESET_ATTEMPTS:
                invoice.dunning_cycle_offset = invoice.failed_attempts

            prefix = f"{retry_job_key(invoice.id, invoice.failed_attempts)}:ext:"
            previous_extensions = (
                await db.execute(
                    select(func.count())
                    .select_from(BackgroundJob)
                    .where(BackgroundJob.deduplication_key.like(f"{prefix}%"))
                )
            ).scalar_one()
            await self.scheduler.schedule(
                f"{prefix}{previous_extensions + 1}",
                invoice.next_retry_at,
                {
                    "subscription_id": str(subscription.id),
                    "invoice_id": str(invoice.id),
                    "attempt_number": invoice.failed_attempts + 1,
                },
                db=db,
            )
            extension = GraceExtension(
                subscription_id=subscription.id,
                invoice_id=invoice.id,
                policy=policy,
                next_retry_at=invoice.next_retry_at,
                grace_period_ends_at=subscription.grace_period_ends_at,
                cycle_attempts=invoice.cycle_attempts,
            )
            try:
                await db.commit()
            except (IntegrityError, StaleDataError) as exc:
                await db.rollback()
                raise ValidationError(
                    "Invoice changed concurrently; retry the extension",
                    code="concurrent_update",
                ) from exc

        audit_log(
            "dunning_grace_extended",
            actor,
            str(subscription_id),
            {
                "invoice_id": str(invoice_id),
                "days": days,
                "policy": policy.value,
                "next_retry_at": extension.next_retry_at.isoformat(),
            },
        )
        return extension

    async def reset_dunning_state(
        self, subscription_id: UUID, actor: str = "operator"
    ) -> DunningReset:
        """
        Return a past-due subscription to active, e.g. after the customer
        updated their payment method.

        Failed invoices keep their retry schedule and the next retry charges
        the new method; another failure puts the subscription back into
        dunning. Any other status is left untouched.
        """
        async with self.session_maker() as db:
            subscription = (
                await db.execute(
                    select(Subscription)
                    .where(Subscription.id == subscription_id)
                    .with_for_update()
                )
            ).scalar_one_or_none()
            if subscription is None:
                raise ResourceNotFoundError(f"Subscription {subscription_id} not found")
            if subscription.status != SubscriptionStatus.PAST_DUE.value:
                return DunningReset(subscription.id, subscription.status, False)

            subscription.status = SubscriptionStatus.ACTIVE.value
            subscription.grace_period_ends_at = None
            await db.commit()

        audit_log("dunning_state_reset", actor, str(subscription_id), {})
        return DunningReset(subscription_id, SubscriptionStatus.ACTIVE.value, True)

    # ==================== Queries ====================

    async def get_dunning_history(self, subscription_id: UUID) -> DunningHistory:
        async with self.session_maker() as db:
            subscription = await db.get(Subscription, subscription_id)
            if subscription is None:
                raise ResourceNotFoundError(f"Subscription {subscription_id} not found")
            attempts = await AttemptLedger(db).list_for_subscription(subscription_id)
            notifications = (
                (
                    await db.execute(
                        select(DunningNotification)
                        .where(DunningNotification.subscription_id == subscription_id)
                        .order_by(DunningNotification.sent_at)
                    )
                )
                .scalars()
                .all()
            )
        return DunningHistory(
            subscription_id=subscription.id,
            status=subscription.status,
            grace_period_ends_at=subscription.grace_period_ends_at,
            cancelled_for_non_payment=(
                subscription.status == SubscriptionStatus.CANCELLED.value
                and subscription.cancellation_reason
                == CancellationReason.PAYMENT_FAILED.value
            ),
            attempts=attempts,
            notifications=notifications,
        )

    def _due_filter(self, now: datetime) -> list[Any]:
        return [
            SubscriptionInvoice.status == InvoiceStatus.FAILED.value,
            SubscriptionInvoice.next_retry_at.is_not(None),
            SubscriptionInvoice.next_retry_at <= now,
            Subscription.status.in_(
                [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value]
            ),
        ]

    async def get_invoices_for_retry(self, limit: int = 100) -> list[DueRetry]:
        """Failed invoices whose next retry time has passed."""
        now = self.clock.now()
        async with self.session_maker() as db:
            rows = (
                await db.execute(
                    select(SubscriptionInvoice)
                    .join(
                        Subscription,
                        Subscription.id == SubscriptionInvoice.subscription_id,
                    )
                    .where(*self._due_filter(now))
                    .order_by(SubscriptionInvoice.next_retry_at)
                    .limit(limit)
                )
            ).scalars().all()
        return [
            DueRetry(
                invoice_id=invoice.id,
                subscription_id=invoice.subscription_id,
                next_retry_at=ensure_utc(invoice.next_retry_at),
                attempt_number=invoice.failed_attempts + 1,
            )
            for invoice in rows
        ]

    async def process_all_due_retries(self, limit: int = 500) -> dict[str, int]:
        """
        Reconciliation sweep: make sure every due invoice has a live retry job.

        A due invoice with a pending or running job is left alone. One with no
        job at all gets it back under the original idempotency key. One whose
        jobs all ended (dead-lettered after a crash on the final delivery, or
        completed without moving the invoice on) gets a `key:repair:n` job
        due now. Never charges directly.
        """
        due = await self.get_invoices_for_retry(limit=limit)
        now = self.clock.now()
        enqueued = 0
        repaired = 0
        for item in due:
            key = retry_job_key(item.invoice_id, item.attempt_number - 1)
            jobs = await self.scheduler.jobs_for_key(key)
            if any(job.status in LIVE_JOB_STATUSES for job in jobs):
                continue

            payload = {
                "subscription_id": str(item.subscription_id),
                "invoice_id": str(item.invoice_id),
                "attempt_number": item.attempt_number,
            }
            if not jobs:
                _, created = await self.scheduler.schedule(
                    key, item.next_retry_at, payload
                )
                if created:
                    enqueued += 1
                    logger.warning(
                        "dunning_retry_job_restored",
                        invoice_id=str(item.invoice_id),
                        attempt_number=item.attempt_number,
                    )
                continue

            repair_prefix = f"{key}:repair:"
            previous_repairs = sum(
                1
                for job in jobs
                if (job.deduplication_key or "").startswith(repair_prefix)
            )
            _, created = await self.scheduler.schedule(
                f"{repair_prefix}{previous_repairs + 1}", now, payload
            )
            if created:
                enqueued += 1
                repaired += 1
                logger.warning(
                    "dunning_retry_job_repaired",
                    invoice_id=str(item.invoice_id),
                    attempt_number=item.attempt_number,
                    last_job_status=jobs[-1].status,
                    repair=previous_repairs + 1,
                )
        logger.info(
            "dunning_sweep_complete",
            scanned=len(due),
            enqueued=enqueued,
            repaired=repaired,
        )
        return {"scanned": len(due), "enqueued": enqueued, "repaired": repaired}

    async def process_expired_grace_periods(self, limit: int = 500) -> dict[str, int]:
        """
        Cancel past-due subscriptions whose grace period has run out.

        A subscription is only cancelled when one of its failed invoices has
        used up its retries or has a retry that was due inside the grace
        window and never resolved. Retries still planned beyond the deadline
        keep running.
        """
        now = self.clock.now()
        async with self.session_maker() as db:
            candidates = (
                (
                    await db.execute(
                        select(Subscription.id)
                        .where(
                            Subscription.status == SubscriptionStatus.PAST_DUE.value,
                            Subscription.grace_period_ends_at.is_not(None),
                            Subscription.grace_period_ends_at <= now,
                        )
                        .order_by(Subscription.grace_period_ends_at)
                        .limit(limit)
                    )
                )
                .scalars()
                .all()
            )

        cancelled = 0
        for subscription_id in candidates:
            if await self._expire_grace_period(subscription_id):
                cancelled += 1
        if cancelled:
            logger.warning(
                "dunning_grace_periods_expired",
                scanned=len(candidates),
                cancelled=cancelled,
            )
        return {"scanned": len(candidates), "cancelled": cancelled}

    async def _expire_grace_period(self, subscription_id: UUID) -> bool:
        operation = "grace_expiry"
        config = self.config
        now = self.clock.now()
        context = {"subscription_id": str(subscription_id)}

        async with self.session_maker() as db:
            try:
                # Invoice rows first, then the subscription: same order as _lock.
                invoices = (
                    (
                        await db.execute(
                            select(SubscriptionInvoice)
                            .where(
                                SubscriptionInvoice.subscription_id == subscription_id,
                                SubscriptionInvoice.status == InvoiceStatus.FAILED.value,
                            )
                            .with_for_update()
                        )
                    )
                    .scalars()
                    .all()
                )
                subscription = (
                    await db.execute(
                        select(Subscription)
                        .where(Subscription.id == subscription_id)
                        .with_for_update()
                    )
                ).scalar_one_or_none()
                if (
                    subscription is None
                    or subscription.status != SubscriptionStatus.PAST_DUE.value
                    or subscription.grace_period_ends_at is None
                ):
                    return False
                grace_ends = ensure_utc(subscription.grace_period_ends_at)
                if grace_ends > now:
                    return False

                stalled = [
                    invoice
                    for invoice in invoices
                    if invoice.cycle_attempts >= config.max_retries
                    or invoice.next_retry_at is None
                    or ensure_utc(invoice.next_retry_at) <= grace_ends
                ]
                if not stalled:
                    return False

                subscription.status = SubscriptionStatus.CANCELLED.value
                subscription.cancelled_at = now
                subscription.cancellation_reason = CancellationReason.PAYMENT_FAILED.value
                pending = []
                for invoice in invoices:
                    invoice.status = InvoiceStatus.PAST_DUE.value
                    invoice.next_retry_at = None
                    pending.append(
                        _PendingNotification(
                            NotificationType.CANCELLED,
                            subscription.id,
                            invoice.id,
                            invoice.failed_attempts,
                            self._template_vars(
                                subscription,
                                invoice,
                                config,
                                attempt=invoice.cycle_attempts,
                                reason="Grace period expired",
                            ),
                        )
                    )
                await db.commit()
            except (IntegrityError, StaleDataError) as exc:
                await db.rollback()
                self._noop(operation, "concurrent_update", error=type(exc).__name__, **context)
                return False

        logger.warning(
            "dunning_subscription_cancelled",
            reason="grace_period_expired",
            grace_period_ends_at=grace_ends.isoformat(),
            invoices=[str(p.invoice_id) for p in pending],
            **context,
        )
        for item in pending:
            await self._send(item)
        self._decided(operation, Decision(DecisionKind.CANCELLED))
        return True

    async def get_stats(self) -> DunningStats:
        now = self.clock.now()
        async with self.session_maker() as db:
            past_due = (
                await db.execute(
                    select(func.count()).where(
                        Subscription.status == SubscriptionStatus.PAST_DUE.value
                    )
                )
            ).scalar_one()
            cancelled = (
                await db.execute(
                    select(func.count()).where(
                        Subscription.status == SubscriptionStatus.CANCELLED.value,
                        Subscription.cancellation_reason
                        == CancellationReason.PAYMENT_FAILED.value,
                    )
                )
            ).scalar_one()
            failed = (
                await db.execute(
                    select(func.count()).where(
                        SubscriptionInvoice.status == InvoiceStatus.FAILED.value
                    )
                )
            ).scalar_one()
            due = (
                await db.execute(
                    select(func.count())
                    .select_from(SubscriptionInvoice)
                    .join(
                        Subscription,
                        Subscription.id == SubscriptionInvoice.subscription_id,
                    )
                    .where(*self._due_filter(now))
                )
            ).scalar_one()
        jobs = await self.scheduler.count_by_status(JobType.DUNNING_RETRY.value)
        return DunningStats(
            past_due_subscriptions=past_due,
            failed_invoices=failed,
            due_retries=due,
            cancelled_for_non_payment=cancelled,
            retry_jobs=jobs,
        )


@dataclass(frozen=True)
class _ChargeOutcome:
    success: bool
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
