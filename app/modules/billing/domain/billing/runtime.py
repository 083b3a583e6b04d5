"""
Wires the dunning engine, its retry scheduler and webhook ingestion.

Nothing here is a module-level singleton: the FastAPI lifespan (or a worker
entrypoint, or a test) builds one runtime and owns its start/stop.
"""

from dataclasses import dataclass
from typing import Optional

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.modules.billing.domain.billing.dunning_config import (
    DunningConfig,
    get_dunning_config,
)
from app.modules.billing.domain.billing.dunning_engine import DunningEngine
from app.modules.billing.domain.billing.gateway import (
    PaymentGateway,
    WebhookParser,
    build_payment_gateway,
)
from app.modules.billing.domain.billing.notifications import (
    DunningNotifier,
    JobQueueNotificationPort,
    NotificationPort,
)
from app.modules.billing.domain.billing.webhooks import (
    InternalWebhookParser,
    WebhookIngestor,
)
from app.modules.jobs.domain.handlers import build_handlers
from app.modules.jobs.domain.processor import RetryScheduler
from app.shared.core.clock import Clock, SystemClock
from app.shared.core.config import Settings, get_settings

logger = structlog.get_logger()

SWEEP_INTERVAL_SECONDS = 3600


@dataclass
class DunningRuntime:
    engine: DunningEngine
    scheduler: RetryScheduler
    notifier: DunningNotifier
    webhooks: WebhookIngestor
    settings: Settings

    def start(self) -> None:
        if not self.settings.SCHEDULER_ENABLED:
            logger.info("retry_scheduler_disabled")
            return
        self.scheduler.add_periodic(
            self.engine.process_all_due_retries,
            SWEEP_INTERVAL_SECONDS,
            "dunning_reconciliation_sweep",
        )
        self.scheduler.add_periodic(
            self.engine.process_expired_grace_periods,
            SWEEP_INTERVAL_SECONDS,
            "dunning_grace_expiry",
        )
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()


def build_dunning_runtime(
    session_maker: async_sessionmaker[AsyncSession],
    *,
    settings: Optional[Settings] = None,
    config: Optional[DunningConfig] = None,
    gateway: Optional[PaymentGateway] = None,
    notification_port: Optional[NotificationPort] = None,
    clock: Optional[Clock] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> DunningRuntime:
    settings = settings or get_settings()
    clock = clock or SystemClock()
    config = config or get_dunning_config()
    gateway = gateway or build_payment_gateway(settings, client=http_client)

    scheduler = RetryScheduler(session_maker, clock=clock, settings=settings)
    notifier = DunningNotifier(
        session_maker, notification_port or JobQueueNotificationPort(scheduler), clock
    )
    engine = DunningEngine(
        session_maker,
        gateway,
        notifier,
        scheduler,
        config,
        clock=clock,
    )
    for job_type, handler in build_handlers(engine, settings, http_client).items():
        scheduler.register_handler(job_type, handler)

    parsers: dict[str, WebhookParser] = {}
    if hasattr(gateway, "verify_signature") and hasattr(gateway, "parse_event"):
        parsers[gateway.provider] = gateway  # type: ignore[assignment]
    if settings.INTERNAL_API_TOKEN:
        parsers[InternalWebhookParser.provider] = InternalWebhookParser(
            settings.INTERNAL_API_TOKEN
        )

    logger.info(
        "dunning_runtime_built",
        gateway=getattr(gateway, "provider", "custom"),
        webhook_providers=sorted(parsers),
        max_retries=config.max_retries,
    )
    return DunningRuntime(
        engine=engine,
        scheduler=scheduler,
        notifier=notifier,
        webhooks=WebhookIngestor(engine, session_maker, parsers),
        settings=settings,
    )
