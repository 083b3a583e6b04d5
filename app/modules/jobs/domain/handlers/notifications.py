"""
Dunning notification delivery.

Renders the message for a queued `dunning_notification` job and POSTs it to
the configured notification webhook (the email pipeline's intake). Delivery
retries independently of dunning through the scheduler's backoff.
"""

import ipaddress
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx
import structlog

from app.models.background_job import BackgroundJob
from app.models.dunning import NotificationType
from app.modules.billing.domain.billing.notifications import render_notification
from app.modules.jobs.domain.handlers.base import BaseJobHandler
from app.shared.core.config import Settings, get_settings
from app.shared.core.exceptions import ExternalAPIError

logger = structlog.get_logger()


def _is_private_or_link_local(host: str) -> bool:
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return False

    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
    )


def _host_allowed(host: str, allowlist: set[str]) -> bool:
    if not allowlist:
        return False
    if host in allowlist:
        return True
    return any(host.endswith(f".{allowed}") for allowed in allowlist)


def validate_webhook_url(
    url: str, allowlist: set[str], require_https: bool, block_private_ips: bool
) -> None:
    parsed = urlparse(url)
    if require_https and parsed.scheme.lower() != "https":
        raise ValueError("Webhook URL must use HTTPS")
    if not parsed.hostname:
        raise ValueError("Webhook URL must include a host")
    if parsed.username or parsed.password:
        raise ValueError("Webhook URL must not include credentials")

    host = parsed.hostname.lower()
    if block_private_ips and (host in {"localhost"} or host.endswith(".local")):
        raise ValueError("Webhook URL must not target local hostnames")
    if block_private_ips and _is_private_or_link_local(host):
        raise ValueError("Webhook URL must not target private or link-local addresses")

    if not _host_allowed(host, allowlist):
        raise ValueError("Webhook URL host is not in allowlist")


class DunningNotificationHandler(BaseJobHandler):
    """Deliver one rendered dunning email through the notification webhook."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            from app.shared.core.http import get_http_client

            self._client = get_http_client()
        return self._client

    async def execute(self, job: BackgroundJob) -> Dict[str, Any]:
        payload = job.payload or {}
        raw_type = payload.get("notification_type")
        if not raw_type:
            raise ValueError("notification_type required for dunning_notification")
        notification_type = NotificationType(raw_type)
        template_vars: dict[str, Any] = payload.get("template_vars") or {}
        rendered = render_notification(notification_type, template_vars)

        url = self.settings.NOTIFICATION_WEBHOOK_URL
        if not url:
            logger.info(
                "dunning_notification_skipped",
                reason="notification_webhook_not_configured",
                notification_type=notification_type.value,
                subscription_id=payload.get("subscription_id"),
            )
            return {"status": "skipped", "reason": "notification_webhook_not_configured"}

        validate_webhook_url(
            url=url,
            allowlist={d.lower() for d in self.settings.WEBHOOK_ALLOWED_DOMAINS if d},
            require_https=self.settings.WEBHOOK_REQUIRE_HTTPS,
            block_private_ips=self.settings.WEBHOOK_BLOCK_PRIVATE_IPS,
        )

        headers = {"Content-Type": "application/json"}
        if self.settings.NOTIFICATION_WEBHOOK_TOKEN:
            headers["Authorization"] = f"Bearer {self.settings.NOTIFICATION_WEBHOOK_TOKEN}"

        body = {
            "type": notification_type.value,
            "to": template_vars.get("customer_email"),
            "subject": rendered.subject,
            "text": rendered.text,
            "subscription_id": payload.get("subscription_id"),
            "invoice_id": payload.get("invoice_id"),
            "idempotency_key": job.deduplication_key,
        }
        try:
            response = await self.client.post(url, json=body, headers=headers, timeout=30)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "dunning_notification_delivery_failed",
                notification_type=notification_type.value,
                error=str(exc),
            )
            raise ExternalAPIError(
                "Notification delivery failed", details={"error": str(exc)}
            ) from exc

        logger.info(
            "dunning_notification_delivered",
            notification_type=notification_type.value,
            subscription_id=payload.get("subscription_id"),
            status_code=response.status_code,
        )
        return {"status": "completed", "status_code": response.status_code}
