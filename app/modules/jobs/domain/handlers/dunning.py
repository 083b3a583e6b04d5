"""
Dunning Retry Job Handler
"""

from typing import Any, Dict
from uuid import UUID

import structlog

from app.models.background_job import BackgroundJob
from app.modules.billing.domain.billing.dunning_engine import DunningEngine
from app.modules.jobs.domain.handlers.base import BaseJobHandler

logger = structlog.get_logger()


class DunningRetryHandler(BaseJobHandler):
    """
    Runs `DunningEngine.retry_payment` for a scheduled retry.

    Any decision (including NoOp) acknowledges the job. An unreachable
    gateway raises, which sends the job into the scheduler's backoff; on the
    final delivery the engine records the failure instead of raising.
    """

    def __init__(self, engine: DunningEngine):
        self.engine = engine

    async def execute(self, job: BackgroundJob) -> Dict[str, Any]:
        payload = job.payload or {}
        try:
            subscription_id = UUID(str(payload["subscription_id"]))
            invoice_id = UUID(str(payload["invoice_id"]))
        except (KeyError, ValueError) as exc:
            raise ValueError("subscription_id and invoice_id required for dunning_retry") from exc
        expected = payload.get("attempt_number")

        decision = await self.engine.retry_payment(
            subscription_id,
            invoice_id,
            expected_attempt=int(expected) if expected is not None else None,
            final_delivery=self.is_final_delivery(job),
        )
        return {"status": "completed", **decision.as_dict()}
