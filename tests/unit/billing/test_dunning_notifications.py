from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from app.models.background_job import JobType
from app.models.dunning import DunningNotification, NotificationType
from app.modules.billing.domain.billing.dunning_config import DunningConfig
from app.modules.billing.domain.billing.notifications import (
    DunningNotifier,
    JobQueueNotificationPort,
    notification_dedup_key,
    render_notification,
    select_failure_notification,
)


class TestSelection:
    @pytest.mark.parametrize(
        "attempt,expected",
        [
            (1, NotificationType.FIRST_FAILURE),
            (2, NotificationType.RETRY_FAILURE),
            (3, NotificationType.FINAL_NOTICE),
        ],
    )
    def test_by_attempt(self, attempt, expected) -> None:
        assert select_failure_notification(attempt, DunningConfig(max_retries=3)) == expected

    def test_toggles(self) -> None:
        config = DunningConfig(
            max_retries=3, email_on_first_failure=False, email_on_final_failure=False
        )
        assert select_failure_notification(1, config) is None
        assert select_failure_notification(3, config) is None
        assert select_failure_notification(2, config) == NotificationType.RETRY_FAILURE

    def test_final_notice_wins_over_first(self) -> None:
        assert (
            select_failure_notification(1, DunningConfig(max_retries=1))
            == NotificationType.FINAL_NOTICE
        )


class TestRendering:
    def test_failure_template(self) -> None:
        rendered = render_notification(
            NotificationType.FIRST_FAILURE,
            {
                "amount": "49.00",
                "currency": "USD",
                "subscription_id": "sub-1",
                "next_retry_date": "2026-03-03",
            },
        )
        assert rendered.subject == "Payment failed for your subscription"
        assert "49.00 USD" in rendered.text
        assert "2026-03-03" in rendered.text

    def test_missing_values_render_as_dash(self) -> None:
        rendered = render_notification(
            NotificationType.RETRY_FAILURE, {"attempt": 2, "reason": None}
        )
        assert "attempt 2 of -" in rendered.text
        assert "failed: -." in rendered.text

    def test_accepts_string_type(self) -> None:
        rendered = render_notification("recovered", {"amount": "10", "currency": "NGN"})
        assert rendered.subject.startswith("Payment received")

    def test_dedup_key(self) -> None:
        key = notification_dedup_key("s", "i", NotificationType.CANCELLED)
        assert key == "notify:s:i:cancelled"


class TestDunningNotifier:
    @pytest.mark.asyncio
    async def test_sends_once_per_type(self, notifier, port, seed_invoice, session_maker):
        sub_id, inv_id = await seed_invoice()

        first = await notifier.notify(
            NotificationType.RETRY_FAILURE, sub_id, inv_id, attempt_number=2
        )
        second = await notifier.notify(
            NotificationType.RETRY_FAILURE, sub_id, inv_id, attempt_number=3
        )
        other = await notifier.notify(
            NotificationType.FINAL_NOTICE, sub_id, inv_id, attempt_number=3
        )

        assert (first, second, other) == (True, False, True)
        assert port.types() == ["retry_failure", "final_notice"]
        async with session_maker() as db:
            rows = (await db.execute(select(DunningNotification))).scalars().all()
        assert sorted(r.notification_type for r in rows) == ["final_notice", "retry_failure"]

    @pytest.mark.asyncio
    async def test_port_failure_is_swallowed(self, session_maker, clock, seed_invoice):
        sub_id, inv_id = await seed_invoice()
        port = AsyncMock()
        port.enqueue.side_effect = RuntimeError("queue unavailable")
        notifier = DunningNotifier(session_maker, port, clock)

        sent = await notifier.notify(NotificationType.CANCELLED, sub_id, inv_id)

        assert sent is False
        async with session_maker() as db:
            rows = (await db.execute(select(DunningNotification))).scalars().all()
        assert rows == []

    @pytest.mark.asyncio
    async def test_job_queue_port_enqueues_durable_job(
        self, session_maker, clock, scheduler, seed_invoice
    ):
        sub_id, inv_id = await seed_invoice()
        notifier = DunningNotifier(session_maker, JobQueueNotificationPort(scheduler), clock)

        await notifier.notify(
            NotificationType.FIRST_FAILURE,
            sub_id,
            inv_id,
            attempt_number=1,
            template_vars={"amount": "49.00", "customer_email": "customer@example.com"},
        )

        job = await scheduler.get_job(
            notification_dedup_key(sub_id, inv_id, NotificationType.FIRST_FAILURE)
        )
        assert job is not None
        assert job.job_type == JobType.DUNNING_NOTIFICATION.value
        assert job.payload["notification_type"] == "first_failure"
        assert job.payload["invoice_id"] == str(inv_id)
        assert job.payload["template_vars"]["amount"] == "49.00"

    @pytest.mark.asyncio
    async def test_job_queue_port_is_idempotent(self, scheduler, seed_invoice):
        sub_id, inv_id = await seed_invoice()
        port = JobQueueNotificationPort(scheduler)

        await port.enqueue(NotificationType.CANCELLED, sub_id, inv_id, {})
        await port.enqueue(NotificationType.CANCELLED, sub_id, inv_id, {})

        counts = await scheduler.count_by_status(JobType.DUNNING_NOTIFICATION.value)
        assert counts["pending"] == 1
