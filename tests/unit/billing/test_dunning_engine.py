"""
Tests for DunningEngine failure, retry and recovery paths.

Covers:
1. The 1/3/7 day schedule and cancellation after max_retries
2. Recovery at any attempt and stale jobs after recovery
3. Same-event idempotence (transaction id, expected attempt)
4. Webhook success racing a scheduled retry
5. Gateway timeouts, unreachable gateways and declines
"""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from app.models.background_job import JobStatus
from app.models.dunning import AttemptOutcome
from app.models.subscription import (
    CancellationReason,
    InvoiceStatus,
    Subscription,
    SubscriptionInvoice,
    SubscriptionStatus,
)
from app.modules.billing.domain.billing.attempt_ledger import AttemptLedger
from app.modules.billing.domain.billing.dunning_config import DunningConfig
from app.modules.billing.domain.billing.dunning_engine import (
    DecisionKind,
    charge_idempotency_key,
    retry_job_key,
)
from app.modules.jobs.domain.handlers.dunning import DunningRetryHandler
from app.shared.core.clock import ensure_utc
from app.shared.core.exceptions import (
    GatewayError,
    ResourceNotFoundError,
    TransientGatewayError,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


async def _attempts(session_maker, invoice_id):
    async with session_maker() as db:
        return list(await AttemptLedger(db).list_for_invoice(invoice_id))


class TestProcessFailure:
    @pytest.mark.asyncio
    async def test_first_failure_enters_past_due(self, engine, seed_invoice, load, port, scheduler):
        sub_id, inv_id = await seed_invoice()

        decision = await engine.process_failure(
            sub_id, inv_id, "Insufficient funds", "insufficient_funds"
        )

        assert decision.kind == DecisionKind.RETRY_SCHEDULED
        assert decision.attempt_number == 1
        assert decision.retry_at == T0 + timedelta(days=1)

        invoice = await load(SubscriptionInvoice, inv_id)
        assert invoice.status == InvoiceStatus.FAILED.value
        assert invoice.failed_attempts == 1
        assert ensure_utc(invoice.next_retry_at) == T0 + timedelta(days=1)
        assert invoice.last_failure_reason == "Insufficient funds"

        subscription = await load(Subscription, sub_id)
        assert subscription.status == SubscriptionStatus.PAST_DUE.value
        assert ensure_utc(subscription.grace_period_ends_at) == T0 + timedelta(days=14)

        job = await scheduler.get_job(retry_job_key(inv_id, 1))
        assert job is not None
        assert job.status == JobStatus.PENDING.value
        assert ensure_utc(job.scheduled_for) == T0 + timedelta(days=1)
        assert job.payload["attempt_number"] == 2

        assert port.types() == ["first_failure"]
        assert port.sent[0]["template_vars"]["next_retry_date"] == "2026-03-03"

        rows = await _attempts(engine.session_maker, inv_id)
        assert [(r.attempt_number, r.outcome, r.error_code) for r in rows] == [
            (1, AttemptOutcome.FAILED.value, "insufficient_funds")
        ]

    @pytest.mark.asyncio
    async def test_unknown_invoice_raises(self, engine, seed_invoice):
        sub_id, _ = await seed_invoice()

        with pytest.raises(ResourceNotFoundError):
            await engine.process_failure(sub_id, uuid4(), "declined")

    @pytest.mark.asyncio
    async def test_first_failure_email_can_be_disabled(self, engine, seed_invoice, port):
        engine.reload_config(
            DunningConfig(max_retries=3, email_on_first_failure=False)
        )
        sub_id, inv_id = await seed_invoice()

        await engine.process_failure(sub_id, inv_id, "declined")

        assert port.sent == []


class TestRetrySchedule:
    @pytest.mark.asyncio
    async def test_one_three_seven_schedule_then_cancel(
        self, engine, gateway, clock, seed_invoice, load, port, scheduler
    ):
        sub_id, inv_id = await seed_invoice()

        first = await engine.process_failure(sub_id, inv_id, "declined", "do_not_honor")
        assert first.retry_at == T0 + timedelta(days=1)

        clock.set(T0 + timedelta(days=1))
        gateway.decline()
        second = await engine.retry_payment(sub_id, inv_id, expected_attempt=2)
        assert second.kind == DecisionKind.RETRY_SCHEDULED
        assert second.attempt_number == 2
        assert second.retry_at == T0 + timedelta(days=4)

        clock.set(T0 + timedelta(days=4))
        gateway.decline()
        third = await engine.retry_payment(sub_id, inv_id, expected_attempt=3)
        assert third.attempt_number == 3
        assert third.retry_at == T0 + timedelta(days=11)

        clock.set(T0 + timedelta(days=11))
        gateway.decline()
        fourth = await engine.retry_payment(sub_id, inv_id, expected_attempt=4)
        assert fourth.kind == DecisionKind.CANCELLED
        assert fourth.attempt_number == 4
        assert fourth.retry_at is None

        invoice = await load(SubscriptionInvoice, inv_id)
        assert invoice.status == InvoiceStatus.PAST_DUE.value
        assert invoice.next_retry_at is None
        assert invoice.failed_attempts == 4

        subscription = await load(Subscription, sub_id)
        assert subscription.status == SubscriptionStatus.CANCELLED.value
        assert subscription.cancellation_reason == CancellationReason.PAYMENT_FAILED.value

        rows = await _attempts(engine.session_maker, inv_id)
        assert [r.attempt_number for r in rows] == [1, 2, 3, 4]
        assert await scheduler.get_job(retry_job_key(inv_id, 4)) is None

        assert port.types() == [
            "first_failure",
            "retry_failure",
            "final_notice",
            "cancelled",
        ]

        # Charges carry a per-attempt idempotency key.
        assert [c.idempotency_key for c in gateway.calls] == [
            charge_idempotency_key(inv_id, n) for n in (2, 3, 4)
        ]

    @pytest.mark.asyncio
    async def test_cancelled_subscription_ignores_further_events(
        self, engine, seed_invoice
    ):
        engine.reload_config(DunningConfig(max_retries=1, retry_intervals_days=(1,)))
        sub_id, inv_id = await seed_invoice()
        await engine.process_failure(sub_id, inv_id, "declined")
        cancelled = await engine.process_failure(sub_id, inv_id, "declined")
        assert cancelled.kind == DecisionKind.CANCELLED

        retry = await engine.retry_payment(sub_id, inv_id, force=True)
        again = await engine.process_failure(sub_id, inv_id, "declined")

        assert retry.is_noop and retry.reason == "subscription_cancelled"
        assert again.is_noop
        assert len(await _attempts(engine.session_maker, inv_id)) == 2

    @pytest.mark.asyncio
    async def test_final_notice_wins_when_single_retry(self, engine, seed_invoice, port):
        engine.reload_config(DunningConfig(max_retries=1, retry_intervals_days=(2,)))
        sub_id, inv_id = await seed_invoice()

        await engine.process_failure(sub_id, inv_id, "declined")

        assert port.types() == ["final_notice"]

    @pytest.mark.asyncio
    async def test_stale_job_is_noop_until_due(self, engine, gateway, clock, seed_invoice):
        sub_id, inv_id = await seed_invoice()
        await engine.process_failure(sub_id, inv_id, "declined")

        clock.set(T0 + timedelta(hours=12))
        decision = await engine.retry_payment(sub_id, inv_id, expected_attempt=2)

        assert decision.is_noop
        assert decision.reason == "not_due"
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_scheduler_drives_retries(
        self, engine, gateway, clock, seed_invoice, scheduler, load
    ):
        scheduler.register_handler("dunning_retry", DunningRetryHandler(engine))
        sub_id, inv_id = await seed_invoice()
        await engine.process_failure(sub_id, inv_id, "declined")

        # Not due yet.
        idle = await scheduler.process_pending_jobs()
        assert idle["processed"] == 0

        clock.set(T0 + timedelta(days=1))
        gateway.succeed("txn_recovered")
        results = await scheduler.process_pending_jobs()

        assert results["succeeded"] == 1
        job = await scheduler.get_job(retry_job_key(inv_id, 1))
        assert job.status == JobStatus.COMPLETED.value
        assert job.result["decision"] == DecisionKind.RECOVERED.value
        invoice = await load(SubscriptionInvoice, inv_id)
        assert invoice.status == InvoiceStatus.PAID.value


class TestRecovery:
    @pytest.mark.asyncio
    async def test_successful_retry_recovers(
        self, engine, gateway, clock, seed_invoice, load, port
    ):
        sub_id, inv_id = await seed_invoice()
        await engine.process_failure(sub_id, inv_id, "declined")

        clock.set(T0 + timedelta(days=1))
        gateway.succeed("txn_1")
        decision = await engine.retry_payment(sub_id, inv_id, expected_attempt=2)

        assert decision.kind == DecisionKind.RECOVERED
        assert decision.attempt_number == 2

        invoice = await load(SubscriptionInvoice, inv_id)
        assert invoice.status == InvoiceStatus.PAID.value
        assert invoice.next_retry_at is None
        assert invoice.gateway_transaction_id == "txn_1"
        assert ensure_utc(invoice.paid_at) == T0 + timedelta(days=1)

        subscription = await load(Subscription, sub_id)
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.grace_period_ends_at is None

        rows = await _attempts(engine.session_maker, inv_id)
        assert [(r.attempt_number, r.outcome) for r in rows] == [
            (1, AttemptOutcome.FAILED.value),
            (2, AttemptOutcome.SUCCEEDED.value),
        ]
        assert port.types() == ["first_failure", "recovered"]

    @pytest.mark.asyncio
    async def test_jobs_after_recovery_do_not_mutate(
        self, engine, gateway, clock, seed_invoice
    ):
        sub_id, inv_id = await seed_invoice()
        await engine.process_failure(sub_id, inv_id, "declined")
        await engine.process_recovery(sub_id, inv_id, "txn_manual")

        clock.set(T0 + timedelta(days=1))
        retry = await engine.retry_payment(sub_id, inv_id, expected_attempt=2)
        failure = await engine.process_failure(sub_id, inv_id, "late decline")
        recovery = await engine.process_recovery(sub_id, inv_id, "txn_other")

        assert retry.reason == "invoice_paid"
        assert failure.reason == "invoice_paid"
        assert recovery.reason == "invoice_paid"
        assert gateway.calls == []
        assert len(await _attempts(engine.session_maker, inv_id)) == 2

    @pytest.mark.asyncio
    async def test_payment_after_cancellation_is_noop(self, engine, seed_invoice, load):
        sub_id, inv_id = await seed_invoice(
            subscription_status=SubscriptionStatus.CANCELLED.value,
            invoice_status=InvoiceStatus.PAST_DUE.value,
        )

        decision = await engine.process_recovery(sub_id, inv_id, "txn_late")

        assert decision.is_noop
        assert decision.reason == "subscription_cancelled"
        invoice = await load(SubscriptionInvoice, inv_id)
        assert invoice.status == InvoiceStatus.PAST_DUE.value


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_duplicate_transaction_is_noop(self, engine, seed_invoice, port):
        sub_id, inv_id = await seed_invoice()

        first = await engine.process_failure(
            sub_id, inv_id, "declined", gateway_transaction_id="txn_a"
        )
        second = await engine.process_failure(
            sub_id, inv_id, "declined", gateway_transaction_id="txn_a"
        )

        assert first.kind == DecisionKind.RETRY_SCHEDULED
        assert second.is_noop
        assert second.reason == "duplicate_event"
        assert len(await _attempts(engine.session_maker, inv_id)) == 1
        assert port.types() == ["first_failure"]

    @pytest.mark.asyncio
    async def test_superseded_attempt_is_noop(self, engine, seed_invoice):
        sub_id, inv_id = await seed_invoice()

        await engine.process_failure(sub_id, inv_id, "declined", expected_attempt=1)
        replay = await engine.process_failure(
            sub_id, inv_id, "declined", expected_attempt=1
        )

        assert replay.reason == "attempt_superseded"
        assert len(await _attempts(engine.session_maker, inv_id)) == 1

    @pytest.mark.asyncio
    async def test_same_notification_type_sent_once_per_invoice(
        self, engine, seed_invoice, port
    ):
        engine.reload_config(DunningConfig(max_retries=5, retry_intervals_days=(1,)))
        sub_id, inv_id = await seed_invoice()

        for _ in range(3):
            await engine.process_failure(sub_id, inv_id, "declined")

        assert port.types() == ["first_failure", "retry_failure"]
        assert len(await _attempts(engine.session_maker, inv_id)) == 3

    @pytest.mark.asyncio
    async def test_concurrent_failures_record_one_attempt(self, engine, seed_invoice):
        sub_id, inv_id = await seed_invoice()

        decisions = await asyncio.gather(
            engine.process_failure(sub_id, inv_id, "declined", expected_attempt=1),
            engine.process_failure(sub_id, inv_id, "declined", expected_attempt=1),
        )

        kinds = sorted(d.kind.value for d in decisions)
        assert kinds == [DecisionKind.NOOP.value, DecisionKind.RETRY_SCHEDULED.value]
        noop = next(d for d in decisions if d.is_noop)
        assert noop.reason in {"attempt_superseded", "concurrent_update"}
        rows = await _attempts(engine.session_maker, inv_id)
        assert [r.attempt_number for r in rows] == [1]

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_block_transition(
        self, engine, seed_invoice, port, load
    ):
        port.error = RuntimeError("mail queue down")
        sub_id, inv_id = await seed_invoice()

        decision = await engine.process_failure(sub_id, inv_id, "declined")

        assert decision.kind == DecisionKind.RETRY_SCHEDULED
        invoice = await load(SubscriptionInvoice, inv_id)
        assert invoice.status == InvoiceStatus.FAILED.value


class TestWebhookRace:
    @pytest.mark.asyncio
    async def test_webhook_success_during_retry_charge(
        self, engine, gateway, clock, seed_invoice, port
    ):
        sub_id, inv_id = await seed_invoice()
        await engine.process_failure(sub_id, inv_id, "declined")

        clock.set(T0 + timedelta(days=1))
        gateway.release = asyncio.Event()
        gateway.succeed("txn_retry")
        retry_task = asyncio.create_task(
            engine.retry_payment(sub_id, inv_id, expected_attempt=2)
        )
        await asyncio.wait_for(gateway.entered.wait(), timeout=5)

        webhook = await engine.process_recovery(sub_id, inv_id, "txn_webhook")
        gateway.release.set()
        retry = await asyncio.wait_for(retry_task, timeout=5)

        assert webhook.kind == DecisionKind.RECOVERED
        assert retry.is_noop
        assert retry.reason == "invoice_paid"
        rows = await _attempts(engine.session_maker, inv_id)
        assert [(r.attempt_number, r.outcome) for r in rows] == [
            (1, AttemptOutcome.FAILED.value),
            (2, AttemptOutcome.SUCCEEDED.value),
        ]
        assert port.types().count("recovered") == 1


class TestGatewayErrors:
    @pytest.mark.asyncio
    async def test_unreachable_gateway_raises_without_counting(
        self, engine, gateway, clock, seed_invoice, load
    ):
        sub_id, inv_id = await seed_invoice()
        await engine.process_failure(sub_id, inv_id, "declined")
        clock.set(T0 + timedelta(days=1))
        gateway.fail_with(TransientGatewayError("Could not reach fake"))

        with pytest.raises(TransientGatewayError):
            await engine.retry_payment(sub_id, inv_id, expected_attempt=2)

        invoice = await load(SubscriptionInvoice, inv_id)
        assert invoice.failed_attempts == 1
        assert len(await _attempts(engine.session_maker, inv_id)) == 1

    @pytest.mark.asyncio
    async def test_unreachable_gateway_on_final_delivery_counts(
        self, engine, gateway, clock, seed_invoice
    ):
        sub_id, inv_id = await seed_invoice()
        await engine.process_failure(sub_id, inv_id, "declined")
        clock.set(T0 + timedelta(days=1))
        gateway.fail_with(TransientGatewayError("Could not reach fake"))

        decision = await engine.retry_payment(
            sub_id, inv_id, expected_attempt=2, final_delivery=True
        )

        assert decision.kind == DecisionKind.RETRY_SCHEDULED
        rows = await _attempts(engine.session_maker, inv_id)
        assert rows[-1].error_code == "gateway_unreachable"
        assert rows[-1].error_message == "Could not reach payment gateway"

    @pytest.mark.asyncio
    async def test_timeout_is_a_counted_failure(self, engine, gateway, seed_invoice):
        engine.reload_config(DunningConfig(gateway_timeout_seconds=0.05))
        sub_id, inv_id = await seed_invoice()
        gateway.release = asyncio.Event()

        decision = await engine.retry_payment(sub_id, inv_id)

        assert decision.kind == DecisionKind.RETRY_SCHEDULED
        assert decision.attempt_number == 1
        rows = await _attempts(engine.session_maker, inv_id)
        assert rows[0].error_code == "gateway_timeout"

    @pytest.mark.asyncio
    async def test_decline_error_records_code_and_transaction(
        self, engine, gateway, seed_invoice
    ):
        sub_id, inv_id = await seed_invoice()
        gateway.fail_with(
            GatewayError(
                "Insufficient Funds",
                code="insufficient_funds",
                details={"gateway_transaction_id": "ref_123"},
            )
        )

        decision = await engine.retry_payment(sub_id, inv_id)

        assert decision.kind == DecisionKind.RETRY_SCHEDULED
        rows = await _attempts(engine.session_maker, inv_id)
        assert rows[0].error_code == "insufficient_funds"
        assert rows[0].error_message == "Insufficient Funds"
        assert rows[0].gateway_transaction_id == "ref_123"

    @pytest.mark.asyncio
    async def test_missing_payment_method_skips_gateway(
        self, engine, gateway, seed_invoice
    ):
        sub_id, inv_id = await seed_invoice(payment_method_ref=None)

        decision = await engine.retry_payment(sub_id, inv_id)

        assert decision.kind == DecisionKind.RETRY_SCHEDULED
        assert gateway.calls == []
        rows = await _attempts(engine.session_maker, inv_id)
        assert rows[0].error_code == "missing_payment_method"

    @pytest.mark.asyncio
    async def test_late_fee_applied_once_and_charged(
        self, engine, gateway, seed_invoice, load
    ):
        engine.reload_config(
            DunningConfig(late_fee_after_retry=2, late_fee_amount=Decimal("5.00"))
        )
        sub_id, inv_id = await seed_invoice(amount=Decimal("49.00"))

        await engine.process_failure(sub_id, inv_id, "declined")
        assert (await load(SubscriptionInvoice, inv_id)).late_fee is None
        await engine.process_failure(sub_id, inv_id, "declined")
        await engine.process_failure(sub_id, inv_id, "declined")
        invoice = await load(SubscriptionInvoice, inv_id)
        assert invoice.late_fee == Decimal("5.00")

        gateway.succeed()
        await engine.retry_payment(sub_id, inv_id, force=True)

        assert gateway.calls[-1].amount == Decimal("54.00")
