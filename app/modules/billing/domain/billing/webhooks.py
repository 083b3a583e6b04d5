"""
Gateway webhook ingestion.

Webhooks are an alternate trigger for the same engine entry points the
scheduler uses, subject to the same preconditions. Events are correlated back
to (subscription, invoice) through the metadata attached at charge time, or
through the attempt ledger when a provider drops the metadata.
"""

import hashlib
import hmac
import json
from typing import Any, Mapping, Optional
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.subscription import SubscriptionInvoice
from app.modules.billing.domain.billing.attempt_ledger import AttemptLedger
from app.modules.billing.domain.billing.dunning_engine import Decision, DunningEngine
from app.modules.billing.domain.billing.gateway import (
    WebhookEvent,
    WebhookParser,
    parse_uuid,
)
from app.shared.core.exceptions import (
    ResourceNotFoundError,
    ValidationError,
    WebhookVerificationError,
)

logger = structlog.get_logger()


def parse_idempotency_key(key: Optional[str]) -> tuple[Optional[UUID], Optional[int]]:
    """Split an `invoice_id:attempt_number` charge key."""
    if not key:
        return None, None
    invoice_part, _, attempt_part = key.rpartition(":")
    try:
        return parse_uuid(invoice_part), int(attempt_part)
    except ValueError:
        return None, None


class InternalWebhookParser:
    """
    Provider-neutral events posted by other services:
    `{"gateway_transaction_id", "outcome", "error_message", "error_code", "metadata"}`
    signed with HMAC-SHA256 in `X-Signature`.
    """

    provider = "internal"

    def __init__(self, secret: str):
        self._secret = secret

    def verify_signature(self, payload: bytes, headers: Mapping[str, str]) -> bool:
        signature = headers.get("x-signature", "")
        if not signature or not self._secret:
            return False
        expected = hmac.new(self._secret.encode(), payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature)

    def parse_event(self, body: dict[str, Any]) -> Optional[WebhookEvent]:
        outcome = str(body.get("outcome") or "").lower()
        if outcome not in {"succeeded", "failed"}:
            return None
        metadata = body.get("metadata") or {}
        return WebhookEvent(
            provider=self.provider,
            event_type=f"charge.{outcome}",
            succeeded=outcome == "succeeded",
            gateway_transaction_id=body.get("gateway_transaction_id"),
            subscription_id=parse_uuid(metadata.get("subscription_id")),
            invoice_id=parse_uuid(metadata.get("invoice_id")),
            error_message=body.get("error_message"),
            error_code=body.get("error_code"),
            idempotency_key=metadata.get("idempotency_key"),
        )


class WebhookIngestor:
    def __init__(
        self,
        engine: DunningEngine,
        session_maker: async_sessionmaker[AsyncSession],
        parsers: Mapping[str, WebhookParser],
    ):
        self.engine = engine
        self.session_maker = session_maker
        self.parsers = dict(parsers)

    async def handle(
        self, provider: str, payload: bytes, headers: Mapping[str, str]
    ) -> dict[str, Any]:
        parser = self.parsers.get(provider.lower())
        if parser is None:
            raise ResourceNotFoundError(f"Unknown webhook provider: {provider}")

        normalized = {k.lower(): v for k, v in headers.items()}
        if not parser.verify_signature(payload, normalized):
            raise WebhookVerificationError(f"Invalid {provider} webhook signature")

        try:
            body = json.loads(payload)
        except ValueError as exc:
            raise ValidationError("Webhook body is not valid JSON") from exc
        if not isinstance(body, dict):
            raise ValidationError("Webhook body must be a JSON object")

        event = parser.parse_event(body)
        if event is None:
            logger.info("webhook_event_ignored", provider=provider)
            return {"status": "ignored"}

        decision = await self.ingest(event)
        return {"status": "processed", **decision.as_dict()}

    async def ingest(self, event: WebhookEvent) -> Decision:
        subscription_id, invoice_id = event.subscription_id, event.invoice_id
        key_invoice, expected_attempt = parse_idempotency_key(event.idempotency_key)
        invoice_id = invoice_id or key_invoice

        if invoice_id is None and event.gateway_transaction_id:
            async with self.session_maker() as db:
                attempt = await AttemptLedger(db).find_by_transaction(
                    event.gateway_transaction_id
                )
            if attempt is not None:
                subscription_id, invoice_id = attempt.subscription_id, attempt.invoice_id

        if invoice_id is not None and subscription_id is None:
            async with self.session_maker() as db:
                invoice = await db.get(SubscriptionInvoice, invoice_id)
            if invoice is not None:
                subscription_id = invoice.subscription_id

        if subscription_id is None or invoice_id is None:
            logger.warning(
                "webhook_uncorrelated",
                provider=event.provider,
                event_type=event.event_type,
                gateway_transaction_id=event.gateway_transaction_id,
            )
            return Decision.noop("uncorrelated")

        logger.info(
            "webhook_event_received",
            provider=event.provider,
            event_type=event.event_type,
            subscription_id=str(subscription_id),
            invoice_id=str(invoice_id),
            succeeded=event.succeeded,
        )
        if event.succeeded:
            return await self.engine.process_recovery(
                subscription_id, invoice_id, event.gateway_transaction_id
            )
        return await self.engine.process_failure(
            subscription_id,
            invoice_id,
            event.error_message or "Charge failed",
            event.error_code,
            gateway_transaction_id=event.gateway_transaction_id,
            expected_attempt=expected_attempt,
        )
