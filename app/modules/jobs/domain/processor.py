"""
Retry Scheduler - durable, at-least-once job queue.

Jobs live in `background_jobs` and survive process restarts. A worker leases
due rows (`locked_until`/`locked_by`), runs the registered handler and only
acknowledges the row after the handler returns. A worker that dies mid-job
leaves an expired lease behind; the next poll reclaims it, so a handler may
run more than once for the same job. Handlers must be idempotent.

Infrastructure failures back off exponentially (`base * 2**(attempts-1)`)
and never consume a dunning attempt. Jobs that exhaust `max_attempts` move to
`dead_letter`.

Usage:
    scheduler = RetryScheduler(session_maker, handlers)
    await scheduler.schedule("<invoice_id>:2", at, {"subscription_id": ..., "invoice_id": ...})
    scheduler.start()      # APScheduler poll loop
    await scheduler.process_pending_jobs()   # or drive it by hand
"""

import asyncio
import json
import socket
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional
from uuid import UUID

import sqlalchemy as sa
import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.background_job import BackgroundJob, JobStatus, JobType
from app.modules.jobs.domain.handlers.base import BaseJobHandler
from app.shared.core.clock import Clock, SystemClock
from app.shared.core.config import Settings, get_settings
from app.shared.core.ops_metrics import (
    BACKGROUND_JOB_DURATION,
    BACKGROUND_JOBS_ENQUEUED,
    BACKGROUND_JOBS_PENDING,
    STALE_LEASES_RECLAIMED,
)
from app.shared.core.tracing import get_tracer

__all__ = ["RetryScheduler", "JobStatus", "enqueue_job"]

logger = structlog.get_logger()

MAX_JOB_RESULT_BYTES = 64 * 1024
MAX_JOB_RESULT_PREVIEW_CHARS = 2048
CANCELLED_REQUEUE_SECONDS = 60


def _prepare_result_for_storage(job_id: UUID, job_type: str, result: Any) -> Any:
    """Guard background_jobs.result against unbounded payload growth."""
    if result is None:
        return None

    serialized = json.dumps(result, default=str, separators=(",", ":"))
    result_bytes = len(serialized.encode("utf-8"))
    if result_bytes <= MAX_JOB_RESULT_BYTES:
        return json.loads(serialized)

    logger.warning(
        "job_result_truncated",
        job_id=str(job_id),
        job_type=job_type,
        result_bytes=result_bytes,
        max_bytes=MAX_JOB_RESULT_BYTES,
    )
    return {
        "_truncated": True,
        "_actual_bytes": result_bytes,
        "_preview_json": serialized[:MAX_JOB_RESULT_PREVIEW_CHARS],
    }


async def enqueue_job(
    db: AsyncSession,
    job_type: str,
    payload: Optional[Dict[str, Any]] = None,
    *,
    scheduled_for: datetime,
    max_attempts: int,
    deduplication_key: str | None = None,
    commit: bool = True,
) -> tuple[BackgroundJob, bool]:
    """
    Insert a job row unless one with the same deduplication key exists.

    Returns `(job, created)`. With `commit=False` the row joins the caller's
    transaction and becomes visible atomically with the caller's state change;
    a concurrent duplicate then surfaces as IntegrityError at flush or commit
    time for the caller to resolve.
    """
    job_type = job_type.value if isinstance(job_type, JobType) else job_type

    if deduplication_key:
        existing = (
            await db.execute(
                select(BackgroundJob).where(
                    BackgroundJob.deduplication_key == deduplication_key
                )
            )
        ).scalar_one_or_none()
        if existing is not None:
            logger.info(
                "job_enqueued_deduplicated",
                job_id=str(existing.id),
                job_type=job_type,
                deduplication_key=deduplication_key,
            )
            return existing, False

    job = BackgroundJob(
        job_type=job_type,
        payload=payload,
        deduplication_key=deduplication_key,
        status=JobStatus.PENDING.value,
        scheduled_for=scheduled_for,
        max_attempts=max_attempts,
    )
    db.add(job)

    if not commit:
        await db.flush()
    else:
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            if not deduplication_key:
                raise
            existing = (
                await db.execute(
                    select(BackgroundJob).where(
                        BackgroundJob.deduplication_key == deduplication_key
                    )
                )
            ).scalar_one_or_none()
            if existing is None:
                raise
            logger.info(
                "job_enqueued_deduplicated",
                job_id=str(existing.id),
                job_type=job_type,
                deduplication_key=deduplication_key,
            )
            return existing, False

    BACKGROUND_JOBS_ENQUEUED.labels(job_type=job_type).inc()
    logger.info(
        "job_enqueued",
        job_id=str(job.id),
        job_type=job_type,
        scheduled_for=scheduled_for.isoformat(),
        deduplication_key=deduplication_key,
    )
    return job, True


class RetryScheduler:
    """
    Durable job queue with its own start/stop lifecycle.

    Instances are independent: each owns its APScheduler, semaphore and
    handler table, so tests can run several against separate databases.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        handlers: Optional[Mapping[str, BaseJobHandler]] = None,
        *,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        worker_id: Optional[str] = None,
    ):
        self.session_maker = session_maker
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()
        self.handlers: dict[str, BaseJobHandler] = dict(handlers or {})
        self.worker_id = worker_id or f"{socket.gethostname()}:{id(self)}"
        self.semaphore = asyncio.Semaphore(max(1, self.settings.SCHEDULER_CONCURRENCY))
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self._last_run_time: Optional[str] = None
        self._last_results: Optional[Dict[str, Any]] = None

    # ==================== Producer side ====================

    def register_handler(self, job_type: str, handler: BaseJobHandler) -> None:
        self.handlers[job_type] = handler

    async def enqueue(
        self,
        job_type: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        scheduled_for: Optional[datetime] = None,
        deduplication_key: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> tuple[BackgroundJob, bool]:
        async with self.session_maker() as db:
            return await enqueue_job(
                db,
                job_type,
                payload,
                scheduled_for=scheduled_for or self.clock.now(),
                max_attempts=max_attempts or self.settings.JOB_MAX_ATTEMPTS,
                deduplication_key=deduplication_key,
            )

    async def schedule(
        self,
        key: str,
        at: datetime,
        payload: Dict[str, Any],
        *,
        db: Optional[AsyncSession] = None,
    ) -> tuple[BackgroundJob, bool]:
        """
        Schedule a dunning retry at or after `at`.

        `key` is the idempotency key; scheduling the same key twice returns the
        existing job. Passing `db` enrolls the job in the caller's transaction.
        """
        if db is None:
            return await self.enqueue(
                JobType.DUNNING_RETRY.value,
                payload,
                scheduled_for=at,
                deduplication_key=key,
            )
        return await enqueue_job(
            db,
            JobType.DUNNING_RETRY.value,
            payload,
            scheduled_for=at,
            max_attempts=self.settings.JOB_MAX_ATTEMPTS,
            deduplication_key=key,
            commit=False,
        )

    # ==================== Worker side ====================

    async def process_pending_jobs(
        self, limit: Optional[int] = None, *, job_type: Optional[str] = None
    ) -> Dict[str, Any]:
        """Lease one batch of due jobs and run them concurrently."""
        limit = limit or self.settings.SCHEDULER_BATCH_SIZE
        tracer = get_tracer(__name__)

        with tracer.start_as_current_span("process_pending_jobs") as span:
            span.set_attribute("batch_limit", limit)
            if job_type is not None:
                span.set_attribute("job_type_filter", job_type)

            results: Dict[str, Any] = {
                "processed": 0,
                "succeeded": 0,
                "failed": 0,
                "errors": [],
            }
            try:
                jobs = await self._fetch_and_lock_batch(limit, job_type=job_type)
            except sa.exc.SQLAlchemyError as e:
                logger.error("job_processor_batch_db_error", error=str(e))
                results["errors"].append({"batch_error": str(e)})
                return results

            if jobs:
                logger.info("job_processor_batch_start", pending_count=len(jobs))

            outcomes = await asyncio.gather(
                *(self._run_with_slot(job) for job in jobs), return_exceptions=True
            )
            for job, outcome in zip(jobs, outcomes):
                results["processed"] += 1
                if outcome is True:
                    results["succeeded"] += 1
                    continue
                results["failed"] += 1
                error = outcome if isinstance(outcome, BaseException) else job.error_message
                if error:
                    results["errors"].append(
                        {"job_id": str(job.id), "error": str(error)}
                    )

            if jobs:
                logger.info(
                    "job_processor_batch_complete",
                    processed=results["processed"],
                    succeeded=results["succeeded"],
                    failed=results["failed"],
                )
            self._last_run_time = self.clock.now().isoformat()
            self._last_results = results
            return results

    async def _run_with_slot(self, job: BackgroundJob) -> bool:
        async with self.semaphore:
            return await self._process_single_job(job)

    async def _reclaim_expired_leases(self, db: AsyncSession, now: datetime) -> None:
        result = await db.execute(
            select(BackgroundJob)
            .where(
                BackgroundJob.status == JobStatus.RUNNING.value,
                BackgroundJob.locked_until < now,
                sa.not_(BackgroundJob.is_deleted),
            )
            .with_for_update(skip_locked=True)
        )
        for job in result.scalars().all():
            STALE_LEASES_RECLAIMED.inc()
            logger.warning(
                "job_lease_expired",
                job_id=str(job.id),
                job_type=job.job_type,
                locked_by=job.locked_by,
                attempts=job.attempts,
            )
            job.locked_until = None
            job.locked_by = None
            if job.attempts >= job.max_attempts:
                job.status = JobStatus.DEAD_LETTER.value
                job.completed_at = now
                job.error_message = "Worker lease expired on final attempt"
            else:
                job.status = JobStatus.PENDING.value
                job.scheduled_for = now

    async def _fetch_and_lock_batch(
        self, limit: int, *, job_type: Optional[str] = None
    ) -> list[BackgroundJob]:
        """
        Atomically lease due jobs so no other worker picks them up.
        Uses SELECT FOR UPDATE SKIP LOCKED plus a time-bounded lease.
        """
        now = self.clock.now()
        lease = timedelta(seconds=self.settings.SCHEDULER_LEASE_SECONDS)
        filters = [
            BackgroundJob.status == JobStatus.PENDING.value,
            BackgroundJob.scheduled_for <= now,
            BackgroundJob.attempts < BackgroundJob.max_attempts,
            sa.not_(BackgroundJob.is_deleted),
        ]
        if job_type is not None:
            filters.append(BackgroundJob.job_type == job_type)

        async with self.session_maker() as db:
            await self._reclaim_expired_leases(db, now)
            result = await db.execute(
                select(BackgroundJob)
                .where(*filters)
                .order_by(BackgroundJob.priority.desc(), BackgroundJob.scheduled_for)
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            jobs = list(result.scalars().all())
            for job in jobs:
                job.status = JobStatus.RUNNING.value
                job.started_at = now
                job.attempts += 1
                job.locked_until = now + lease
                job.locked_by = self.worker_id
            await db.commit()
        return jobs

    async def _process_single_job(self, job: BackgroundJob) -> bool:
        """Run one leased job and acknowledge it. Returns True on success."""
        tracer = get_tracer(__name__)
        started = asyncio.get_running_loop().time()
        timeout = self.settings.JOB_TIMEOUT_SECONDS

        with tracer.start_as_current_span(f"job_process:{job.job_type}") as span:
            span.set_attribute("job_id", str(job.id))
            span.set_attribute("attempt", job.attempts)
            logger.info(
                "job_processing_start",
                job_id=str(job.id),
                job_type=job.job_type,
                attempt=job.attempts,
            )

            result: Any = None
            error: Optional[str] = None
            try:
                handler = self.handlers.get(job.job_type)
                if handler is None:
                    raise KeyError(f"No handler registered for job type {job.job_type}")
                result = await asyncio.wait_for(handler.execute(job), timeout=timeout)
            except asyncio.TimeoutError:
                error = f"Job timed out after {timeout}s"
                logger.error(
                    "job_processing_timeout",
                    job_id=str(job.id),
                    job_type=job.job_type,
                    timeout_seconds=timeout,
                )
            except asyncio.CancelledError:
                logger.warning("job_processing_cancelled", job_id=str(job.id))
                await self._release(job, "Job was cancelled")
                raise
            except Exception as e:  # noqa: BLE001 - job isolation
                error = str(e) or type(e).__name__
                logger.error(
                    "job_processing_failed",
                    job_id=str(job.id),
                    job_type=job.job_type,
                    attempt=job.attempts,
                    error=error,
                )

            status = await self._acknowledge(job, result, error)
            BACKGROUND_JOB_DURATION.labels(job_type=job.job_type, status=status).observe(
                asyncio.get_running_loop().time() - started
            )
            span.set_attribute("status", status)
            return status == JobStatus.COMPLETED.value

    async def _acknowledge(
        self, job: BackgroundJob, result: Any, error: Optional[str]
    ) -> str:
        now = self.clock.now()
        async with self.session_maker() as db:
            row = await db.get(BackgroundJob, job.id, with_for_update=True)
            if row is None:
                return JobStatus.FAILED.value
            if row.locked_by != self.worker_id or row.status != JobStatus.RUNNING.value:
                # Lease was reclaimed by another worker; its outcome wins.
                logger.warning(
                    "job_ack_lease_lost",
                    job_id=str(job.id),
                    locked_by=row.locked_by,
                    status=row.status,
                )
                return row.status

            row.locked_until = None
            row.locked_by = None
            if error is None:
                row.status = JobStatus.COMPLETED.value
                row.completed_at = now
                row.result = _prepare_result_for_storage(row.id, row.job_type, result)
                row.error_message = None
                logger.info(
                    "job_processing_success", job_id=str(row.id), job_type=row.job_type
                )
            elif row.attempts >= row.max_attempts:
                row.status = JobStatus.DEAD_LETTER.value
                row.completed_at = now
                row.error_message = error
                logger.error(
                    "job_dead_lettered",
                    job_id=str(row.id),
                    job_type=row.job_type,
                    attempts=row.attempts,
                    error=error,
                )
            else:
                backoff_seconds = self.settings.JOB_BACKOFF_BASE_SECONDS * (
                    2 ** (row.attempts - 1)
                )
                row.status = JobStatus.PENDING.value
                row.scheduled_for = now + timedelta(seconds=backoff_seconds)
                row.error_message = error
                logger.info(
                    "job_requeued_with_backoff",
                    job_id=str(row.id),
                    backoff_seconds=backoff_seconds,
                )
            status = row.status
            await db.commit()
            job.status = status
            job.error_message = row.error_message
            return status

    async def _release(self, job: BackgroundJob, reason: str) -> None:
        """Return a cancelled job to the queue without counting the attempt."""
        async with self.session_maker() as db:
            row = await db.get(BackgroundJob, job.id, with_for_update=True)
            if row is None or row.locked_by != self.worker_id:
                return
            row.status = JobStatus.PENDING.value
            row.attempts = max(0, row.attempts - 1)
            row.locked_until = None
            row.locked_by = None
            row.error_message = reason
            row.scheduled_for = self.clock.now() + timedelta(
                seconds=CANCELLED_REQUEUE_SECONDS
            )
            await db.commit()

    # ==================== Introspection ====================

    async def count_by_status(self, job_type: Optional[str] = None) -> dict[str, int]:
        stmt = select(BackgroundJob.status, sa.func.count()).where(
            sa.not_(BackgroundJob.is_deleted)
        )
        if job_type is not None:
            stmt = stmt.where(BackgroundJob.job_type == job_type)
        stmt = stmt.group_by(BackgroundJob.status)
        async with self.session_maker() as db:
            rows = (await db.execute(stmt)).all()
        counts = {status.value: 0 for status in JobStatus}
        counts.update({status: count for status, count in rows})
        if job_type is not None:
            BACKGROUND_JOBS_PENDING.labels(job_type=job_type).set(
                counts[JobStatus.PENDING.value]
            )
        return counts

    async def get_job(self, deduplication_key: str) -> Optional[BackgroundJob]:
        async with self.session_maker() as db:
            return (
                await db.execute(
                    select(BackgroundJob).where(
                        BackgroundJob.deduplication_key == deduplication_key
                    )
                )
            ).scalar_one_or_none()

    async def jobs_for_key(self, key: str) -> list[BackgroundJob]:
        """The job scheduled under `key` plus its `key:ext:n`/`key:repair:n` successors."""
        async with self.session_maker() as db:
            result = await db.execute(
                select(BackgroundJob)
                .where(
                    sa.or_(
                        BackgroundJob.deduplication_key == key,
                        BackgroundJob.deduplication_key.like(f"{key}:%"),
                    ),
                    sa.not_(BackgroundJob.is_deleted),
                )
                .order_by(BackgroundJob.created_at)
            )
            return list(result.scalars().all())

    # ==================== Lifecycle ====================

    def add_periodic(self, func: Any, seconds: int, job_id: str) -> None:
        """Run an extra coroutine on the scheduler's interval trigger."""
        self.scheduler.add_job(
            func,
            trigger="interval",
            seconds=seconds,
            id=job_id,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

    def start(self) -> None:
        """Starts the APScheduler poll loop."""
        self.add_periodic(
            self.process_pending_jobs,
            self.settings.SCHEDULER_POLL_INTERVAL_SECONDS,
            "retry_scheduler_poll",
        )
        self.scheduler.start()
        logger.info(
            "retry_scheduler_started",
            worker_id=self.worker_id,
            poll_interval_seconds=self.settings.SCHEDULER_POLL_INTERVAL_SECONDS,
        )

    def stop(self) -> None:
        if not self.scheduler.running:
            logger.debug("scheduler_stop_skipped_not_running")
            return
        self.scheduler.shutdown(wait=False)
        logger.info("retry_scheduler_stopped", worker_id=self.worker_id)

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.scheduler.running,
            "worker_id": self.worker_id,
            "last_run_time": self._last_run_time,
            "last_results": self._last_results,
            "handlers": sorted(self.handlers),
        }
