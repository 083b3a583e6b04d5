"""
Job handler registry for the retry scheduler.
"""

from typing import Optional

import httpx

from app.models.background_job import JobType
from app.modules.billing.domain.billing.dunning_engine import DunningEngine
from app.modules.jobs.domain.handlers.base import BaseJobHandler
from app.modules.jobs.domain.handlers.dunning import DunningRetryHandler
from app.modules.jobs.domain.handlers.notifications import DunningNotificationHandler
from app.shared.core.config import Settings

__all__ = [
    "BaseJobHandler",
    "DunningRetryHandler",
    "DunningNotificationHandler",
    "build_handlers",
]


def build_handlers(
    engine: DunningEngine,
    settings: Optional[Settings] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> dict[str, BaseJobHandler]:
    return {
        JobType.DUNNING_RETRY.value: DunningRetryHandler(engine),
        JobType.DUNNING_NOTIFICATION.value: DunningNotificationHandler(
            settings=settings, client=client
        ),
    }
