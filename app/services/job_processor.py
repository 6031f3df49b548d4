"""
Bounded, concurrent execution of queued sync jobs.

One pass: reclaim abandoned jobs, then claim and run up to `batch_size` jobs
with at most `max_concurrency` running at once. A job is claimed only when a
worker slot is free, so nothing sits in `processing` waiting for a thread.
Each job runs in its own session; one job failing never affects the others.
"""
import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings
from app.core.exceptions import (
    ProviderAuthenticationError,
    ProviderNotConfiguredError,
    QueueUnavailableError,
)
from app.db.session import SessionLocal
from app.models.sync_job import SyncJob, SyncJobProvider, SyncJobType
from app.models.website import Website
from app.schemas.sync import JobOutcome, ProcessJobsResponse, SyncResult
from app.services import job_queue
from app.services.providers import get_api_key, get_provider_config, get_provider_syncer
from app.services.scheduler import SyncerFactory, advance_sync_schedule

logger = logging.getLogger(__name__)

CLAIM_LOST = "Job was cancelled or reclaimed while running"


class JobProcessor:
    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        syncer_factory: SyncerFactory = get_provider_syncer,
        auth_errors_terminal: Optional[bool] = None,
    ):
        self.session_factory = session_factory
        self.syncer_factory = syncer_factory
        self.auth_errors_terminal = (
            settings.SYNC_AUTH_ERRORS_TERMINAL if auth_errors_terminal is None else auth_errors_terminal
        )

    def process_batch(self, batch_size: Optional[int] = None, max_concurrency: Optional[int] = None) -> ProcessJobsResponse:
        """
        Run one processing pass.

        Raises QueueUnavailableError when the job store fails while claiming
        or updating jobs; workers already running are joined first.
        """
        batch_size = batch_size or settings.JOB_BATCH_SIZE
        max_concurrency = max_concurrency or settings.JOB_MAX_CONCURRENCY

        db = self.session_factory()
        futures: List[Future] = []
        try:
            try:
                job_queue.reclaim_stale_jobs(db)
            except SQLAlchemyError as e:
                db.rollback()
                raise QueueUnavailableError(f"Failed to reclaim stale jobs: {e}") from e

            slots = threading.BoundedSemaphore(max_concurrency)
            with ThreadPoolExecutor(max_workers=max_concurrency, thread_name_prefix="sync-job") as pool:
                for _ in range(batch_size):
                    slots.acquire()
                    self._raise_worker_failure(futures, slots)
                    try:
                        job = job_queue.dequeue(db)
                    except SQLAlchemyError as e:
                        slots.release()
                        db.rollback()
                        raise QueueUnavailableError(f"Failed to claim sync job: {e}") from e
                    if job is None:
                        slots.release()
                        break

                    future = pool.submit(self._run_job, job.id, job.started_at)
                    future.add_done_callback(lambda _: slots.release())
                    futures.append(future)
        finally:
            db.close()

        outcomes = [future.result() for future in futures]
        logger.info("[PROCESSOR] Processed %s jobs", len(outcomes))
        return ProcessJobsResponse(processed=len(outcomes), jobs=outcomes)

    @staticmethod
    def _raise_worker_failure(futures: List[Future], slots: threading.BoundedSemaphore) -> None:
        for future in futures:
            if future.done() and future.exception() is not None:
                slots.release()
                raise future.exception()

    def _run_job(self, job_id: uuid.UUID, claimed_at: Optional[datetime] = None) -> JobOutcome:
        db = self.session_factory()
        try:
            try:
                job = job_queue.get_by_id(db, job_id)
            except SQLAlchemyError as e:
                raise QueueUnavailableError(f"Failed to load sync job {job_id}: {e}") from e
            if job is None:
                # Deleted by cleanup between claim and run
                return JobOutcome(job_id=job_id, status="failed", error="Job not found")

            logger.info("[PROCESSOR] Running %s %s job %s for website %s (attempt %s)",
                        job.type.value, job.provider.value, job.id, job.website_id, job.retry_count + 1)
            try:
                result = self._execute(db, job)
            except Exception as e:
                db.rollback()
                return self._handle_failure(db, job, e, claimed_at)

            try:
                completed = job_queue.mark_completed(db, job.id, result.model_dump(), claimed_at=claimed_at)
            except SQLAlchemyError as e:
                db.rollback()
                raise QueueUnavailableError(f"Failed to complete sync job {job.id}: {e}") from e
            if completed is None:
                return self._claim_lost(job.id)

            if job.type == SyncJobType.CRON and job.provider == SyncJobProvider.STRIPE:
                try:
                    advance_sync_schedule(db, job.website_id, job.provider)
                except SQLAlchemyError as e:
                    db.rollback()
                    logger.error("[PROCESSOR] Failed to advance sync schedule for website %s: %s", job.website_id, e)

            logger.info("[PROCESSOR] Job %s completed: %s synced, %s skipped, %s errors",
                        job.id, result.synced, result.skipped, result.errors)
            return JobOutcome(job_id=job.id, status="completed", result=result)
        finally:
            db.close()

    def _execute(self, db: Session, job: SyncJob) -> SyncResult:
        if db.get(Website, job.website_id) is None:
            raise ProviderNotConfiguredError(f"Website not found: {job.website_id}")

        config = get_provider_config(db, job.website_id, job.provider)
        syncer = self.syncer_factory(job.provider, get_api_key(config))

        end = job.end_date or datetime.utcnow()
        start = job.start_date or end - timedelta(hours=24)
        return syncer.sync_payments(db, job.website_id, start, end)

    def _handle_failure(
        self, db: Session, job: SyncJob, error: Exception, claimed_at: Optional[datetime] = None
    ) -> JobOutcome:
        message = str(error) or error.__class__.__name__
        if isinstance(error, ProviderAuthenticationError):
            message = error.hint

        terminal = job.retry_count >= job.max_retries or (
            self.auth_errors_terminal and isinstance(error, ProviderAuthenticationError)
        )
        try:
            if not terminal and job_queue.increment_retry(db, job.id, message, claimed_at=claimed_at) is not None:
                logger.warning("[PROCESSOR] Job %s failed (retry %s/%s): %s",
                               job.id, job.retry_count, job.max_retries, message)
                return JobOutcome(job_id=job.id, status="retrying", error=message)
            if job_queue.mark_failed(db, job.id, message, claimed_at=claimed_at) is None:
                return self._claim_lost(job.id)
        except SQLAlchemyError as e:
            db.rollback()
            raise QueueUnavailableError(f"Failed to record failure of sync job {job.id}: {e}") from e

        logger.error("[PROCESSOR] Job %s failed permanently after %s retries: %s", job.id, job.retry_count, message)
        return JobOutcome(job_id=job.id, status="failed", error=message)

    @staticmethod
    def _claim_lost(job_id: uuid.UUID) -> JobOutcome:
        # Cancelled (provider removed) or reclaimed by a later pass while running
        logger.warning("[PROCESSOR] Job %s was cancelled or reclaimed while running, outcome discarded", job_id)
        return JobOutcome(job_id=job_id, status="failed", error=CLAIM_LOST)
