"""
Stripe adapter for the payment gateway port.

Off-session PaymentIntents confirmed immediately. The payment method
reference is either `pm_...` or `cus_.../pm_...`.
"""

import hashlib
import hmac
import time
from typing import Any, Mapping, Optional

import httpx
import structlog

from app.modules.billing.domain.billing.gateway import (
    ChargeRequest,
    HttpPaymentGateway,
    PaymentResult,
    WebhookEvent,
    parse_uuid,
    to_minor_units,
)
from app.shared.core.exceptions import GatewayError

logger = structlog.get_logger()

SIGNATURE_HEADER = "stripe-signature"
SIGNATURE_TOLERANCE_SECONDS = 300
SUCCESS_EVENTS = {"payment_intent.succeeded"}
FAILURE_EVENTS = {"payment_intent.payment_failed"}


def split_payment_method_ref(ref: str) -> tuple[Optional[str], str]:
    customer, sep, method = ref.partition("/")
    if not sep:
        return None, ref
    return customer or None, method


class StripeGateway(HttpPaymentGateway):
    provider = "stripe"
    BASE_URL = "https://api.stripe.com/v1"

    def __init__(
        self,
        secret_key: str,
        *,
        webhook_secret: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        connect_retries: int = 3,
        request_timeout: float = 30.0,
    ):
        super().__init__(
            client=client,
            connect_retries=connect_retries,
            request_timeout=request_timeout,
        )
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret

    def _form(self, request: ChargeRequest) -> dict[str, str]:
        customer, method = split_payment_method_ref(request.payment_method_ref)
        form = {
            "amount": str(to_minor_units(request.amount, request.currency)),
            "currency": request.currency.lower(),
            "payment_method": method,
            "confirm": "true",
            "off_session": "true",
        }
        if customer:
            form["customer"] = customer
        if request.customer_email:
            form["receipt_email"] = request.customer_email
        for key, value in request.correlation_metadata().items():
            form[f"metadata[{key}]"] = str(value)
        return form

    async def charge(self, request: ChargeRequest) -> PaymentResult:
        headers = {
            "Authorization": f"Bearer {self._secret_key}",
            "Idempotency-Key": request.idempotency_key,
        }
        response = await self._send(
            lambda: self.client.post(
                f"{self.BASE_URL}/payment_intents",
                headers=headers,
                data=self._form(request),
                timeout=self.request_timeout,
            )
        )

        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayError(
                "Invalid Stripe response payload",
                code="invalid_response",
                details={"status_code": response.status_code},
            ) from exc

        if response.is_success:
            status = str(payload.get("status") or "")
            intent_id = payload.get("id")
            if status == "succeeded":
                return PaymentResult(
                    success=True, gateway_transaction_id=intent_id, raw_status=status
                )
            raise GatewayError(
                f"Payment intent ended in status {status or 'unknown'}",
                code=status or "declined",
                details={"gateway_transaction_id": intent_id},
            )

        error = payload.get("error") or {}
        intent = error.get("payment_intent") or {}
        code = error.get("decline_code") or error.get("code") or "declined"
        logger.info(
            "stripe_charge_declined",
            invoice_id=str(request.invoice_id),
            http_status=response.status_code,
            code=code,
        )
        raise GatewayError(
            str(error.get("message") or "Charge declined"),
            code=str(code),
            details={"gateway_transaction_id": intent.get("id")},
        )

    def verify_signature(self, payload: bytes, headers: Mapping[str, str]) -> bool:
        """Verify the `t=...,v1=...` HMAC-SHA256 signature header."""
        header = headers.get(SIGNATURE_HEADER, "")
        if not header or not self._webhook_secret:
            logger.warning("stripe_webhook_missing_signature")
            return False

        parts: dict[str, list[str]] = {}
        for item in header.split(","):
            key, _, value = item.strip().partition("=")
            parts.setdefault(key, []).append(value)
        try:
            timestamp = int(parts.get("t", [""])[0])
        except ValueError:
            return False
        if abs(time.time() - timestamp) > SIGNATURE_TOLERANCE_SECONDS:
            logger.warning("stripe_webhook_signature_expired", timestamp=timestamp)
            return False

        signed = f"{timestamp}.".encode() + payload
        expected = hmac.new(
            self._webhook_secret.encode(), signed, hashlib.sha256
        ).hexdigest()
        is_valid = any(
            hmac.compare_digest(expected, candidate)
            for candidate in parts.get("v1", [])
        )
        if not is_valid:
            logger.warning("stripe_webhook_invalid_signature")
        return is_valid

    def parse_event(self, body: dict[str, Any]) -> Optional[WebhookEvent]:
        event_type = str(body.get("type") or "")
        if event_type not in SUCCESS_EVENTS | FAILURE_EVENTS:
            return None

        intent = (body.get("data") or {}).get("object") or {}
        metadata = intent.get("metadata") or {}
        last_error = intent.get("last_payment_error") or {}
        return WebhookEvent(
            provider=self.provider,
            event_type=event_type,
            succeeded=event_type in SUCCESS_EVENTS,
            gateway_transaction_id=intent.get("id"),
            subscription_id=parse_uuid(metadata.get("subscription_id")),
            invoice_id=parse_uuid(metadata.get("invoice_id")),
            error_message=last_error.get("message"),
            error_code=last_error.get("decline_code") or last_error.get("code"),
            idempotency_key=metadata.get("idempotency_key"),
        )
