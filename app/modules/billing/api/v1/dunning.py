"""
Dunning API Endpoints

Provides:
- POST /dunning/webhooks/{provider} - Signed gateway webhook ingestion
- GET  /dunning/subscriptions/{id}/history - Attempts and notifications
- GET  /dunning/retries/pending - Invoices due for a retry
- POST /dunning/invoices/{id}/retry - Manual retry (operator)
- POST /dunning/subscriptions/{id}/grace-extension - Postpone dunning (operator)
- POST /dunning/subscriptions/{id}/reset-dunning - Back to active after a payment-method update (operator)
- POST /dunning/retries/sweep - Reconciliation sweep (operator)
- POST /dunning/grace-periods/expire - Cancel subscriptions past their grace period (operator)
- GET  /dunning/stats - Queue and recovery counters
"""

import hmac
from typing import Annotated, Any, List
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from app.modules.billing.api.v1.dunning_models import (
    AttemptResponse,
    DecisionResponse,
    DunningHistoryResponse,
    DunningResetResponse,
    DunningStatsResponse,
    GraceExtensionRequest,
    GraceExtensionResponse,
    GraceExpiryResponse,
    NotificationResponse,
    PendingRetryResponse,
    SweepResponse,
    WebhookResponse,
)
from app.modules.billing.domain.billing.runtime import DunningRuntime
from app.shared.core.config import get_settings

logger = structlog.get_logger()
router = APIRouter(tags=["Dunning"])


def get_runtime(request: Request) -> DunningRuntime:
    runtime = getattr(request.app.state, "dunning", None)
    if runtime is None:
        raise HTTPException(503, "Dunning runtime is not initialized")
    return runtime


def require_operator(
    authorization: Annotated[str | None, Header()] = None,
) -> str:
    """Bearer INTERNAL_API_TOKEN guard for operator endpoints."""
    expected = get_settings().INTERNAL_API_TOKEN
    if not expected:
        raise HTTPException(503, "Operator API is not configured")
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token, expected):
        logger.warning("operator_auth_failed")
        raise HTTPException(401, "Invalid operator token")
    return "operator"


Runtime = Annotated[DunningRuntime, Depends(get_runtime)]
Operator = Annotated[str, Depends(require_operator)]


@router.post("/webhooks/{provider}", response_model=WebhookResponse)
async def ingest_webhook(provider: str, request: Request, runtime: Runtime) -> Any:
    """
    Gateway webhook. The signature is verified against the raw body before
    the event reaches the engine.
    """
    payload = await request.body()
    return await runtime.webhooks.handle(provider, payload, dict(request.headers))


@router.get(
    "/subscriptions/{subscription_id}/history",
    response_model=DunningHistoryResponse,
)
async def get_history(
    subscription_id: UUID, runtime: Runtime, _operator: Operator
) -> Any:
    history = await runtime.engine.get_dunning_history(subscription_id)
    return DunningHistoryResponse(
        subscription_id=history.subscription_id,
        status=history.status,
        grace_period_ends_at=history.grace_period_ends_at,
        cancelled_for_non_payment=history.cancelled_for_non_payment,
        total_attempts=history.total_attempts,
        attempts=[AttemptResponse.model_validate(a) for a in history.attempts],
        notifications=[
            NotificationResponse.model_validate(n) for n in history.notifications
        ],
    )


@router.get("/retries/pending", response_model=List[PendingRetryResponse])
async def list_pending_retries(
    runtime: Runtime,
    _operator: Operator,
    limit: int = Query(default=100, ge=1, le=1000),
) -> Any:
    due = await runtime.engine.get_invoices_for_retry(limit=limit)
    return [
        PendingRetryResponse(
            invoice_id=item.invoice_id,
            subscription_id=item.subscription_id,
            next_retry_at=item.next_retry_at,
            attempt_number=item.attempt_number,
        )
        for item in due
    ]


@router.post("/invoices/{invoice_id}/retry", response_model=DecisionResponse)
async def manual_retry(invoice_id: UUID, runtime: Runtime, actor: Operator) -> Any:
    decision = await runtime.engine.manual_retry(invoice_id, actor=actor)
    return DecisionResponse(**decision.as_dict())


@router.post(
    "/subscriptions/{subscription_id}/grace-extension",
    response_model=GraceExtensionResponse,
)
async def extend_grace_period(
    subscription_id: UUID,
    body: GraceExtensionRequest,
    runtime: Runtime,
    actor: Operator,
) -> Any:
    extension = await runtime.engine.extend_grace_period(
        subscription_id, body.invoice_id, body.days, actor=actor
    )
    return GraceExtensionResponse(
        subscription_id=extension.subscription_id,
        invoice_id=extension.invoice_id,
        policy=extension.policy.value,
        next_retry_at=extension.next_retry_at,
        grace_period_ends_at=extension.grace_period_ends_at,
        cycle_attempts=extension.cycle_attempts,
    )


@router.post(
    "/subscriptions/{subscription_id}/reset-dunning",
    response_model=DunningResetResponse,
)
async def reset_dunning_state(
    subscription_id: UUID, runtime: Runtime, actor: Operator
) -> Any:
    reset = await runtime.engine.reset_dunning_state(subscription_id, actor=actor)
    return DunningResetResponse(
        subscription_id=reset.subscription_id, status=reset.status, reset=reset.reset
    )


@router.post("/retries/sweep", response_model=SweepResponse)
async def sweep_due_retries(runtime: Runtime, _operator: Operator) -> Any:
    return await runtime.engine.process_all_due_retries()


@router.post("/grace-periods/expire", response_model=GraceExpiryResponse)
async def expire_grace_periods(runtime: Runtime, _operator: Operator) -> Any:
    return await runtime.engine.process_expired_grace_periods()


@router.get("/stats", response_model=DunningStatsResponse)
async def get_stats(runtime: Runtime, _operator: Operator) -> Any:
    stats = await runtime.engine.get_stats()
    return DunningStatsResponse(
        past_due_subscriptions=stats.past_due_subscriptions,
        failed_invoices=stats.failed_invoices,
        due_retries=stats.due_retries,
        cancelled_for_non_payment=stats.cancelled_for_non_payment,
        retry_jobs=stats.retry_jobs,
    )
