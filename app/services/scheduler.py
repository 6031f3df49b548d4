"""
Turns provider sync schedules into queue work.

- enqueue_due_syncs: cron pass for hourly / every-6-hours / daily tenants.
- run_realtime_sweep: direct sync of the trailing window for realtime tenants.
- register_payment_provider_sync: historical backfill or one scheduled window.
- trigger_job_processing: fire-and-forget call to /jobs/process.
"""
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

import httpx
from sqlalchemy import or_
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings
from app.core.exceptions import PaymentSyncError, ProviderNotConfiguredError, UnsupportedProviderError
from app.db.session import SessionLocal
from app.models.provider_config import ProviderConfig, SyncFrequency
from app.models.sync_job import SyncJob, SyncJobProvider, SyncJobType, SyncRange
from app.schemas.sync import EnqueuedJob, TenantSyncResult
from app.services import job_queue
from app.services.providers import PaymentProviderSyncer, get_api_key, get_provider_config, get_provider_syncer

logger = logging.getLogger(__name__)

SyncerFactory = Callable[[SyncJobProvider, str], PaymentProviderSyncer]


def register_payment_provider_sync(
    db: Session,
    website_id: uuid.UUID,
    provider: SyncJobProvider,
    force_initial_sync: bool = False,
) -> List[SyncJob]:
    """
    Queue sync work for a freshly (re)configured provider.

    Without a completed sync (or when forced) the historical window is split
    into monthly periodic jobs at initial-sync priority so each finishes
    quickly. Otherwise one periodic job covers the frequency's window.
    """
    provider = SyncJobProvider(provider)
    if provider != SyncJobProvider.STRIPE:
        raise UnsupportedProviderError(f"Sync for provider {provider.value} is not yet implemented")

    config = get_provider_config(db, website_id, provider)
    if config is None or not config.api_key:
        raise ProviderNotConfiguredError("Stripe API key not configured")
    if not config.enabled:
        logger.info("[CRON] Sync disabled for website %s, nothing registered", website_id)
        return []

    if force_initial_sync or not job_queue.has_completed_sync(db, website_id, provider):
        end = datetime.utcnow()
        start = end - timedelta(days=settings.HISTORICAL_SYNC_DAYS)
        jobs = [
            job_queue.enqueue(
                db, website_id, provider, SyncJobType.PERIODIC,
                priority=job_queue.INITIAL_SYNC_PRIORITY,
                start_date=chunk_start, end_date=chunk_end, sync_range=SyncRange.CUSTOM,
            )
            for chunk_start, chunk_end in job_queue.get_monthly_chunks(start, end)
        ]
        logger.info("[CRON] Registered historical sync for website %s: %s monthly jobs", website_id, len(jobs))
        return jobs

    start, end, sync_range = job_queue.get_sync_date_range(config.frequency)
    job = job_queue.enqueue(
        db, website_id, provider, SyncJobType.PERIODIC,
        start_date=start, end_date=end, sync_range=sync_range,
    )
    return [job]


def enqueue_due_syncs(db: Session, now: Optional[datetime] = None) -> Tuple[int, List[EnqueuedJob]]:
    """
    Enqueue one cron job per enabled, non-realtime config whose next_sync_at has passed.

    Tenants that already have a pending or processing job are skipped so a
    slow backlog never stacks duplicate windows. next_sync_at only moves when
    a cron job completes. Returns (configs scanned, jobs created).
    """
    now = now or datetime.utcnow()
    configs = (
        db.query(ProviderConfig)
        .filter(
            ProviderConfig.enabled.is_(True),
            ProviderConfig.api_key.isnot(None),
            ProviderConfig.frequency != SyncFrequency.REALTIME,
            or_(ProviderConfig.next_sync_at.is_(None), ProviderConfig.next_sync_at <= now),
        )
        .all()
    )

    created = []
    for config in configs:
        if config.provider != SyncJobProvider.STRIPE:
            continue
        if job_queue.has_active_job(db, config.website_id, config.provider):
            logger.info("[CRON] Website %s already has an active %s job, skipping",
                        config.website_id, config.provider.value)
            continue

        start, end, sync_range = job_queue.get_sync_date_range(config.frequency, end_date=now)
        job = job_queue.enqueue(
            db, config.website_id, config.provider, SyncJobType.CRON,
            start_date=start, end_date=end, sync_range=sync_range,
        )
        created.append(EnqueuedJob(website_id=config.website_id, provider=config.provider, job_id=job.id))

    logger.info("[CRON] Scanned %s configs, created %s jobs", len(configs), len(created))
    return len(configs), created


def advance_sync_schedule(db: Session, website_id: uuid.UUID, provider: SyncJobProvider, synced_at: Optional[datetime] = None) -> Optional[ProviderConfig]:
    """last_sync_at = synced_at, next_sync_at = synced_at + the config's interval."""
    config = get_provider_config(db, website_id, provider)
    if config is None:
        return None
    config.last_sync_at = synced_at or datetime.utcnow()
    config.next_sync_at = job_queue.calculate_next_sync_date(config.frequency, config.last_sync_at)
    db.commit()
    return config


def _sync_realtime_tenant(
    session_factory: sessionmaker,
    syncer_factory: SyncerFactory,
    website_id: uuid.UUID,
    start: datetime,
    end: datetime,
) -> TenantSyncResult:
    db = session_factory()
    try:
        config = get_provider_config(db, website_id, SyncJobProvider.STRIPE)
        syncer = syncer_factory(SyncJobProvider.STRIPE, get_api_key(config))
        result = syncer.sync_payments(db, website_id, start, end)
        advance_sync_schedule(db, website_id, SyncJobProvider.STRIPE, synced_at=end)
        return TenantSyncResult(website_id=website_id, **result.model_dump())
    except Exception as e:
        db.rollback()
        level = logging.WARNING if isinstance(e, PaymentSyncError) else logging.ERROR
        logger.log(level, "[CRON] Realtime sync failed for website %s: %s", website_id, e, exc_info=level == logging.ERROR)
        return TenantSyncResult(website_id=website_id, error=str(e))
    finally:
        db.close()


def run_realtime_sweep(
    db: Session,
    session_factory: sessionmaker = SessionLocal,
    syncer_factory: SyncerFactory = get_provider_syncer,
    max_workers: Optional[int] = None,
) -> List[TenantSyncResult]:
    """
    Sync the trailing realtime window for every enabled realtime tenant.

    Runs inline rather than through the queue. One tenant failing is reported
    in its result entry and never affects the others.
    """
    end = datetime.utcnow()
    start = end - timedelta(minutes=settings.REALTIME_WINDOW_MINUTES)
    website_ids = [
        website_id
        for (website_id,) in db.query(ProviderConfig.website_id).filter(
            ProviderConfig.provider == SyncJobProvider.STRIPE,
            ProviderConfig.enabled.is_(True),
            ProviderConfig.api_key.isnot(None),
            ProviderConfig.frequency == SyncFrequency.REALTIME,
        )
    ]
    if not website_ids:
        return []

    workers = max_workers or settings.JOB_MAX_CONCURRENCY
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="realtime-sync") as pool:
        futures = [
            pool.submit(_sync_realtime_tenant, session_factory, syncer_factory, website_id, start, end)
            for website_id in website_ids
        ]
        results = [future.result() for future in futures]

    logger.info("[CRON] Realtime sweep over %s websites finished", len(results))
    return results


def trigger_job_processing(batch_size: Optional[int] = None, max_concurrency: Optional[int] = None) -> None:
    """
    POST /jobs/process on this service without waiting for the caller.

    Meant to run as a FastAPI background task. Failures are logged only; the
    next cron tick picks the jobs up anyway.
    """
    headers = {"Content-Type": "application/json"}
    if settings.CRON_SECRET:
        headers["Authorization"] = f"Bearer {settings.CRON_SECRET}"
    body = {
        "batchSize": batch_size or settings.JOB_BATCH_SIZE,
        "maxConcurrent": max_concurrency or settings.JOB_MAX_CONCURRENCY,
    }
    url = f"{settings.APP_URL.rstrip('/')}/jobs/process"
    try:
        response = httpx.post(url, json=body, headers=headers, timeout=settings.JOB_TRIGGER_TIMEOUT_SECONDS)
        if response.status_code >= 400:
            logger.error("[CRON] Job processing trigger returned %s: %s", response.status_code, response.text[:500])
        else:
            logger.info("[CRON] Job processing triggered")
    except httpx.ReadTimeout:
        # The request was delivered; the pass outlives our wait
        logger.info("[CRON] Job processing triggered, not waiting for the pass to finish")
    except httpx.HTTPError as e:
        logger.error("[CRON] Failed to trigger job processing at %s: %s", url, e)
