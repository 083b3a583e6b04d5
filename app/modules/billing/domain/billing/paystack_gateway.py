"""
Paystack adapter for the payment gateway port.

Retries charge the stored authorization (`transaction/charge_authorization`).
Paystack references must be alphanumeric plus `-`, `.` and `=`, so the
`invoice:attempt` idempotency key is rewritten with dashes.
"""

import hashlib
import hmac
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

SIGNATURE_HEADER = "x-paystack-signature"
SUCCESS_EVENTS = {"charge.success"}
FAILURE_EVENTS = {"charge.failed", "invoice.payment_failed"}


def paystack_reference(idempotency_key: str) -> str:
    return idempotency_key.replace(":", "-")


class PaystackGateway(HttpPaymentGateway):
    """Charges stored Paystack authorizations."""

    provider = "paystack"
    BASE_URL = "https://api.paystack.co"

    def __init__(
        self,
        secret_key: str,
        *,
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
        self.headers: dict[str, str] = {
            "Authorization": f"Bearer {secret_key}",
            "Content-Type": "application/json",
        }

    async def charge(self, request: ChargeRequest) -> PaymentResult:
        if not request.customer_email:
            raise GatewayError(
                "Paystack charges require a customer email",
                code="missing_customer_email",
            )

        data = {
            "email": request.customer_email,
            "amount": to_minor_units(request.amount, request.currency),
            "currency": request.currency.upper(),
            "authorization_code": request.payment_method_ref,
            "reference": paystack_reference(request.idempotency_key),
            "metadata": request.correlation_metadata(),
        }
        response = await self._send(
            lambda: self.client.post(
                f"{self.BASE_URL}/transaction/charge_authorization",
                headers=self.headers,
                json=data,
                timeout=self.request_timeout,
            )
        )

        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayError(
                "Invalid Paystack response payload",
                code="invalid_response",
                details={"status_code": response.status_code},
            ) from exc
        if not isinstance(payload, dict):
            raise GatewayError(
                "Invalid Paystack response payload type", code="invalid_response"
            )

        charge_data = payload.get("data") or {}
        status = str(charge_data.get("status") or "")
        reference = charge_data.get("reference") or data["reference"]

        if response.is_success and payload.get("status") and status == "success":
            return PaymentResult(
                success=True,
                gateway_transaction_id=str(reference),
                raw_status=status,
            )

        message = (
            charge_data.get("gateway_response")
            or payload.get("message")
            or "Charge declined"
        )
        logger.info(
            "paystack_charge_declined",
            invoice_id=str(request.invoice_id),
            status=status or None,
            http_status=response.status_code,
        )
        raise GatewayError(
            str(message),
            code=status or "declined",
            details={"gateway_transaction_id": str(reference)},
        )

    def verify_signature(self, payload: bytes, headers: Mapping[str, str]) -> bool:
        """Verify Paystack webhook signature using HMAC-SHA512."""
        signature = headers.get(SIGNATURE_HEADER, "")
        if not signature:
            logger.warning("paystack_webhook_missing_signature")
            return False

        expected = hmac.new(
            self._secret_key.encode(), payload, hashlib.sha512
        ).hexdigest()
        is_valid = hmac.compare_digest(expected, signature)
        if not is_valid:
            logger.warning(
                "paystack_webhook_invalid_signature", provided_sig=signature[:8] + "..."
            )
        return is_valid

    def parse_event(self, body: dict[str, Any]) -> Optional[WebhookEvent]:
        event_type = str(body.get("event") or "")
        if event_type not in SUCCESS_EVENTS | FAILURE_EVENTS:
            return None

        data = body.get("data") or {}
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            metadata = {}
        reference = data.get("reference")
        return WebhookEvent(
            provider=self.provider,
            event_type=event_type,
            succeeded=event_type in SUCCESS_EVENTS,
            gateway_transaction_id=str(reference) if reference else None,
            subscription_id=parse_uuid(metadata.get("subscription_id")),
            invoice_id=parse_uuid(metadata.get("invoice_id")),
            error_message=data.get("gateway_response"),
            error_code=data.get("status") if event_type in FAILURE_EVENTS else None,
            idempotency_key=metadata.get("idempotency_key"),
        )
