"""
Payment Gateway Port

The dunning engine charges stored payment methods through this narrow
interface. One adapter per provider, chosen at construction time.

Adapter contract:
- return PaymentResult on success
- raise GatewayError(retryable=False) for declines and other business failures
- raise GatewayError(code="gateway_timeout") when the provider did not answer in time
- raise TransientGatewayError when the provider could not be reached
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol
from uuid import UUID

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from app.shared.core.config import Settings
from app.shared.core.exceptions import (
    ConfigurationError,
    GatewayError,
    TransientGatewayError,
)

logger = structlog.get_logger()

# Currencies charged in whole units by every supported provider.
ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW", "VND", "CLP", "XAF", "XOF", "UGX"}


@dataclass(frozen=True)
class ChargeRequest:
    payment_method_ref: str
    amount: Decimal
    currency: str
    idempotency_key: str
    subscription_id: UUID
    invoice_id: UUID
    customer_email: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def correlation_metadata(self) -> dict[str, Any]:
        """Metadata echoed back by provider webhooks to find the invoice again."""
        return {
            **self.metadata,
            "subscription_id": str(self.subscription_id),
            "invoice_id": str(self.invoice_id),
            "idempotency_key": self.idempotency_key,
        }


@dataclass(frozen=True)
class PaymentResult:
    success: bool
    gateway_transaction_id: Optional[str] = None
    raw_status: Optional[str] = None


@dataclass(frozen=True)
class WebhookEvent:
    """Provider-neutral outcome of a charge reported asynchronously."""

    provider: str
    event_type: str
    succeeded: bool
    gateway_transaction_id: Optional[str]
    subscription_id: Optional[UUID] = None
    invoice_id: Optional[UUID] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    idempotency_key: Optional[str] = None


class PaymentGateway(Protocol):
    provider: str

    async def charge(self, request: ChargeRequest) -> PaymentResult: ...


class WebhookParser(Protocol):
    provider: str

    def verify_signature(self, payload: bytes, headers: Mapping[str, str]) -> bool: ...

    def parse_event(self, body: dict[str, Any]) -> Optional[WebhookEvent]: ...


def parse_uuid(value: Any) -> Optional[UUID]:
    if value is None:
        return None
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


def to_minor_units(amount: Decimal, currency: str) -> int:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _is_connect_failure(exc: BaseException) -> bool:
    return isinstance(exc, httpx.TransportError) and not isinstance(
        exc, httpx.TimeoutException
    )


class HttpPaymentGateway:
    """Shared transport behaviour for HTTP based gateway adapters."""

    provider = "http"

    def __init__(
        self,
        *,
        client: Optional[httpx.AsyncClient] = None,
        connect_retries: int = 3,
        request_timeout: float = 30.0,
    ):
        self._client = client
        self.connect_retries = max(1, connect_retries)
        self.request_timeout = request_timeout

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            from app.shared.core.http import get_http_client

            self._client = get_http_client()
        return self._client

    async def _send(
        self, send: Callable[[], Awaitable[httpx.Response]]
    ) -> httpx.Response:
        """
        Issue one logical request. Connection failures are retried in-call
        (safe because every charge carries an idempotency key).
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.connect_retries),
                wait=wait_exponential(multiplier=0.2, max=2.0),
                retry=retry_if_exception(_is_connect_failure),
                reraise=True,
            ):
                with attempt:
                    response = await send()
        except httpx.TimeoutException as exc:
            raise GatewayError(
                f"{self.provider} did not respond in time",
                code="gateway_timeout",
                details={"error": str(exc)},
            ) from exc
        except httpx.TransportError as exc:
            logger.warning(
                "gateway_unreachable", provider=self.provider, error=str(exc)
            )
            raise TransientGatewayError(
                f"Could not reach {self.provider}", details={"error": str(exc)}
            ) from exc

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning(
                "gateway_unavailable",
                provider=self.provider,
                status_code=response.status_code,
            )
            raise TransientGatewayError(
                f"{self.provider} unavailable (HTTP {response.status_code})",
                details={"status_code": response.status_code},
            )
        return response


def build_payment_gateway(
    settings: Settings, client: Optional[httpx.AsyncClient] = None
) -> PaymentGateway:
    """Select the configured provider adapter."""
    provider = settings.PAYMENT_GATEWAY.strip().lower()
    if provider == "paystack":
        from app.modules.billing.domain.billing.paystack_gateway import (
            PaystackGateway,
        )

        if not settings.PAYSTACK_SECRET_KEY:
            raise ConfigurationError("PAYSTACK_SECRET_KEY not configured")
        return PaystackGateway(
            settings.PAYSTACK_SECRET_KEY,
            client=client,
            connect_retries=settings.GATEWAY_CONNECT_RETRIES,
            request_timeout=settings.DUNNING_GATEWAY_TIMEOUT_SECONDS,
        )
    if provider == "stripe":
        from app.modules.billing.domain.billing.stripe_gateway import StripeGateway

        if not settings.STRIPE_SECRET_KEY:
            raise ConfigurationError("STRIPE_SECRET_KEY not configured")
        return StripeGateway(
            settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            client=client,
            connect_retries=settings.GATEWAY_CONNECT_RETRIES,
            request_timeout=settings.DUNNING_GATEWAY_TIMEOUT_SECONDS,
        )
    raise ConfigurationError(f"Unsupported payment gateway: {provider}")
