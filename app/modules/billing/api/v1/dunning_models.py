from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class DecisionResponse(BaseModel):
    decision: str
    attempt_number: Optional[int] = None
    retry_at: Optional[datetime] = None
    reason: Optional[str] = None


class WebhookResponse(BaseModel):
    status: str
    decision: Optional[str] = None
    attempt_number: Optional[int] = None
    retry_at: Optional[datetime] = None
    reason: Optional[str] = None


class AttemptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    invoice_id: UUID
    attempt_number: int
    attempted_at: datetime
    outcome: str
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    gateway_transaction_id: Optional[str] = None


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    invoice_id: UUID
    notification_type: str
    attempt_number: Optional[int] = None
    sent_at: datetime


class DunningHistoryResponse(BaseModel):
    subscription_id: UUID
    status: str
    grace_period_ends_at: Optional[datetime] = None
    cancelled_for_non_payment: bool
    total_attempts: int
    attempts: List[AttemptResponse]
    notifications: List[NotificationResponse]


class PendingRetryResponse(BaseModel):
    invoice_id: UUID
    subscription_id: UUID
    next_retry_at: datetime
    attempt_number: int


class GraceExtensionRequest(BaseModel):
    invoice_id: UUID
    days: int = Field(ge=1, le=90)


class GraceExtensionResponse(BaseModel):
    subscription_id: UUID
    invoice_id: UUID
    policy: str
    next_retry_at: datetime
    grace_period_ends_at: datetime
    cycle_attempts: int


class SweepResponse(BaseModel):
    scanned: int
    enqueued: int
    repaired: int = 0


class GraceExpiryResponse(BaseModel):
    scanned: int
    cancelled: int


class DunningResetResponse(BaseModel):
    subscription_id: UUID
    status: str
    reset: bool


class DunningStatsResponse(BaseModel):
    past_due_subscriptions: int
    failed_invoices: int
    due_retries: int
    cancelled_for_non_payment: int
    retry_jobs: Dict[str, int]
