"""
Dunning customer communications.

The engine decides *which* message a decision point deserves; delivery goes
through a NotificationPort. Sending is idempotent per
(subscription, invoice, type): an existing DunningNotification row suppresses
the send, and the port itself deduplicates on the same triple.

Notification failures never propagate into the engine: a customer not
receiving an email must not stop the invoice from advancing.
"""

from dataclasses import dataclass
from typing import Any, Optional, Protocol
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.background_job import JobType
from app.models.dunning import DunningNotification, NotificationType
from app.modules.billing.domain.billing.dunning_config import DunningConfig
from app.modules.billing.domain.billing.retry_policy import is_final_attempt
from app.shared.core.clock import Clock, SystemClock
from app.shared.core.ops_metrics import DUNNING_NOTIFICATIONS_TOTAL

logger = structlog.get_logger()


class NotificationPort(Protocol):
    async def enqueue(
        self,
        notification_type: NotificationType,
        subscription_id: UUID,
        invoice_id: UUID,
        template_vars: dict[str, Any],
    ) -> None: ...


@dataclass(frozen=True)
class RenderedNotification:
    subject: str
    text: str


NOTIFICATION_TEMPLATES: dict[NotificationType, tuple[str, str]] = {
    NotificationType.FIRST_FAILURE: (
        "Payment failed for your subscription",
        "We were unable to charge {amount} {currency} for your subscription "
        "{subscription_id}. We will try again on {next_retry_date}. "
        "Please check that your payment method is up to date.",
    ),
    NotificationType.RETRY_FAILURE: (
        "Payment failed again",
        "Our attempt {attempt} of {max_attempts} to charge {amount} {currency} "
        "for subscription {subscription_id} failed: {reason}. "
        "Next attempt: {next_retry_date}.",
    ),
    NotificationType.FINAL_NOTICE: (
        "Final notice: update your payment method",
        "We could not charge {amount} {currency} for subscription "
        "{subscription_id}. We will make one last attempt on {next_retry_date}. "
        "If it fails, your subscription will be cancelled.",
    ),
    NotificationType.CANCELLED: (
        "Your subscription has been cancelled",
        "After {attempt} failed payment attempts, subscription {subscription_id} "
        "has been cancelled. You can resubscribe at any time.",
    ),
    NotificationType.RECOVERED: (
        "Payment received - thank you",
        "Your payment of {amount} {currency} for subscription {subscription_id} "
        "succeeded. Your subscription is active again.",
    ),
}


class _TemplateVars(dict):
    def __missing__(self, key: str) -> str:
        return "-"


def render_notification(
    notification_type: NotificationType, template_vars: dict[str, Any]
) -> RenderedNotification:
    subject, body = NOTIFICATION_TEMPLATES[NotificationType(notification_type)]
    values = _TemplateVars(
        {k: v for k, v in template_vars.items() if v is not None}
    )
    return RenderedNotification(
        subject=subject.format_map(values), text=body.format_map(values)
    )


def select_failure_notification(
    attempt_number: int, config: DunningConfig
) -> Optional[NotificationType]:
    """
    Message for a failed attempt that still has a retry ahead.

    `attempt_number` counts within the current dunning cycle. The final
    notice wins when the first attempt is also the last one.
    """
    if is_final_attempt(attempt_number, config):
        return NotificationType.FINAL_NOTICE if config.email_on_final_failure else None
    if attempt_number == 1:
        return NotificationType.FIRST_FAILURE if config.email_on_first_failure else None
    return NotificationType.RETRY_FAILURE


def notification_dedup_key(
    subscription_id: UUID, invoice_id: UUID, notification_type: NotificationType
) -> str:
    return f"notify:{subscription_id}:{invoice_id}:{NotificationType(notification_type).value}"


class JobQueueNotificationPort:
    """Hands messages to the durable queue; delivery retries independently."""

    def __init__(self, scheduler: Any):
        self.scheduler = scheduler

    async def enqueue(
        self,
        notification_type: NotificationType,
        subscription_id: UUID,
        invoice_id: UUID,
        template_vars: dict[str, Any],
    ) -> None:
        notification_type = NotificationType(notification_type)
        await self.scheduler.enqueue(
            JobType.DUNNING_NOTIFICATION.value,
            {
                "notification_type": notification_type.value,
                "subscription_id": str(subscription_id),
                "invoice_id": str(invoice_id),
                "template_vars": template_vars,
            },
            deduplication_key=notification_dedup_key(
                subscription_id, invoice_id, notification_type
            ),
        )


class DunningNotifier:
    """Deduplicating front for a NotificationPort."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        port: NotificationPort,
        clock: Optional[Clock] = None,
    ):
        self.session_maker = session_maker
        self.port = port
        self.clock = clock or SystemClock()

    async def notify(
        self,
        notification_type: NotificationType,
        subscription_id: UUID,
        invoice_id: UUID,
        *,
        attempt_number: Optional[int] = None,
        template_vars: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Returns True when the message was handed to the port."""
        notification_type = NotificationType(notification_type)
        label = notification_type.value
        try:
            async with self.session_maker() as db:
                already_sent = (
                    await db.execute(
                        select(DunningNotification.id).where(
                            DunningNotification.subscription_id == subscription_id,
                            DunningNotification.invoice_id == invoice_id,
                            DunningNotification.notification_type == label,
                        )
                    )
                ).scalar_one_or_none()
                if already_sent is not None:
                    DUNNING_NOTIFICATIONS_TOTAL.labels(
                        notification_type=label, outcome="deduplicated"
                    ).inc()
                    logger.info(
                        "dunning_notification_deduplicated",
                        subscription_id=str(subscription_id),
                        invoice_id=str(invoice_id),
                        notification_type=label,
                    )
                    return False

                # The port deduplicates on the same triple.
                await self.port.enqueue(
                    notification_type,
                    subscription_id,
                    invoice_id,
                    dict(template_vars or {}),
                )
                db.add(
                    DunningNotification(
                        subscription_id=subscription_id,
                        invoice_id=invoice_id,
                        notification_type=label,
                        attempt_number=attempt_number,
                        sent_at=self.clock.now(),
                    )
                )
                await db.commit()
        except IntegrityError:
            # A concurrent decision claimed the same notification first.
            DUNNING_NOTIFICATIONS_TOTAL.labels(
                notification_type=label, outcome="deduplicated"
            ).inc()
            return False
        except Exception as exc:  # noqa: BLE001 - notifications never block dunning
            DUNNING_NOTIFICATIONS_TOTAL.labels(
                notification_type=label, outcome="failed"
            ).inc()
            logger.warning(
                "dunning_notification_failed",
                subscription_id=str(subscription_id),
                invoice_id=str(invoice_id),
                notification_type=label,
                error=str(exc),
            )
            return False

        DUNNING_NOTIFICATIONS_TOTAL.labels(
            notification_type=label, outcome="enqueued"
        ).inc()
        logger.info(
            "dunning_notification_enqueued",
            subscription_id=str(subscription_id),
            invoice_id=str(invoice_id),
            notification_type=label,
            attempt_number=attempt_number,
        )
        return True
