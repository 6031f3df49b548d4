"""
Durable sync-job queue backed by the sync_jobs table.

Every state change is a single conditional UPDATE filtered on the current
status, so concurrent processors (threads or separate processes) never both
win the same transition. There are no in-process locks here.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import update, delete
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.sync_job import (
    SyncJob,
    SyncJobProvider,
    SyncJobType,
    SyncJobStatus,
    SyncRange,
    TERMINAL_JOB_STATUSES,
    sources_for,
)
from app.models.provider_config import SyncFrequency

logger = logging.getLogger(__name__)

DEFAULT_PRIORITIES = {
    SyncJobType.WEBHOOK: 100,  # real-time events
    SyncJobType.MANUAL: 80,  # user requested
    SyncJobType.PERIODIC: 60,  # scheduled on connect / config change
    SyncJobType.CRON: 50,  # automated
}
INITIAL_SYNC_PRIORITY = 90

SYNC_INTERVALS = {
    SyncFrequency.REALTIME: timedelta(minutes=5),  # matches the realtime cron schedule
    SyncFrequency.HOURLY: timedelta(hours=1),
    SyncFrequency.EVERY_6_HOURS: timedelta(hours=6),
    SyncFrequency.DAILY: timedelta(hours=24),
}

# Trailing windows overlap the interval so late-arriving provider objects are caught
SYNC_WINDOWS = {
    SyncFrequency.REALTIME: (timedelta(minutes=15), SyncRange.CUSTOM),
    SyncFrequency.HOURLY: (timedelta(hours=26), SyncRange.LAST_24H),
    SyncFrequency.EVERY_6_HOURS: (timedelta(hours=48), SyncRange.LAST_24H),
    SyncFrequency.DAILY: (timedelta(days=8), SyncRange.LAST_7D),
}


def get_default_priority(job_type: SyncJobType) -> int:
    return DEFAULT_PRIORITIES.get(SyncJobType(job_type), 50)


def enqueue(
    db: Session,
    website_id: uuid.UUID,
    provider: SyncJobProvider,
    job_type: SyncJobType,
    priority: Optional[int] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    sync_range: Optional[SyncRange] = None,
    max_retries: Optional[int] = None,
) -> SyncJob:
    """Create a pending sync job."""
    job = SyncJob(
        website_id=website_id,
        provider=SyncJobProvider(provider),
        type=SyncJobType(job_type),
        status=SyncJobStatus.PENDING,
        priority=priority if priority is not None else get_default_priority(job_type),
        start_date=start_date,
        end_date=end_date,
        sync_range=SyncRange(sync_range) if sync_range else None,
        retry_count=0,
        max_retries=max_retries if max_retries is not None else settings.JOB_MAX_RETRIES,
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    logger.info("[QUEUE] Enqueued %s %s job %s for website %s (priority %s)",
                job.type.value, job.provider.value, job.id, website_id, job.priority)
    return job


def dequeue(db: Session) -> Optional[SyncJob]:
    """
    Claim the next pending job: highest priority first, then oldest.

    The claim is a compare-and-swap: UPDATE ... WHERE id = :id AND status = 'pending'.
    If another processor claimed the candidate first, zero rows match and the
    next candidate is tried until none is left. On PostgreSQL the candidate
    read also uses FOR UPDATE SKIP LOCKED so concurrent claimers spread over
    different rows.

    The claimed job's `started_at` is the claim token: later updates from the
    worker pass it back so a reclaimed or cancelled job is never overwritten.
    """
    lost = 0
    while True:
        candidate_id = (
            db.query(SyncJob.id)
            .filter(SyncJob.status == SyncJobStatus.PENDING)
            .order_by(SyncJob.priority.desc(), SyncJob.created_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar()
        )
        if candidate_id is None:
            db.rollback()
            if lost:
                logger.info("[QUEUE] Queue drained after losing %s claim races", lost)
            return None

        now = datetime.utcnow()
        claimed = db.execute(
            update(SyncJob)
            .where(SyncJob.id == candidate_id, SyncJob.status == SyncJobStatus.PENDING)
            .values(status=SyncJobStatus.PROCESSING, started_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        db.commit()

        if claimed == 1:
            job = db.get(SyncJob, candidate_id, populate_existing=True)
            logger.info("[QUEUE] Claimed job %s", candidate_id)
            return job
        lost += 1
        logger.debug("[QUEUE] Lost claim race for job %s, trying next candidate", candidate_id)


def _claim_filter(job_id: uuid.UUID, claimed_at: Optional[datetime]) -> list:
    conditions = [SyncJob.id == job_id]
    if claimed_at is not None:
        conditions.append(SyncJob.started_at == claimed_at)
    return conditions


def _transition(
    db: Session,
    job_id: uuid.UUID,
    target: SyncJobStatus,
    claimed_at: Optional[datetime] = None,
    **values,
) -> int:
    now = datetime.utcnow()
    values.setdefault("updated_at", now)
    if target in TERMINAL_JOB_STATUSES:
        values["completed_at"] = now
    rowcount = db.execute(
        update(SyncJob)
        .where(*_claim_filter(job_id, claimed_at), SyncJob.status.in_(sources_for(target)))
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()
    return rowcount


def mark_completed(
    db: Session, job_id: uuid.UUID, result: dict, claimed_at: Optional[datetime] = None
) -> Optional[SyncJob]:
    """
    processing -> completed. A job that is already completed is left as is.

    With `claimed_at`, the update only applies to that claim; None is
    returned when the job was cancelled or reclaimed in the meantime.
    """
    if not _transition(db, job_id, SyncJobStatus.COMPLETED, claimed_at, result=result, error=None):
        job = get_by_id(db, job_id)
        if claimed_at is not None:
            logger.warning("[QUEUE] Claim on job %s was lost, result discarded", job_id)
            return None
        if job is not None and job.status != SyncJobStatus.COMPLETED:
            logger.warning("[QUEUE] Job %s is %s, not marking completed", job_id, job.status.value)
        return job
    return get_by_id(db, job_id)


def mark_failed(
    db: Session, job_id: uuid.UUID, error: str, claimed_at: Optional[datetime] = None
) -> Optional[SyncJob]:
    """processing (or pending) -> failed. Returns None when `claimed_at` no longer matches."""
    if not _transition(db, job_id, SyncJobStatus.FAILED, claimed_at, error=error):
        if claimed_at is not None:
            logger.warning("[QUEUE] Claim on job %s was lost, failure discarded", job_id)
            return None
        logger.warning("[QUEUE] Job %s was not in a failable state", job_id)
    return get_by_id(db, job_id)


def increment_retry(
    db: Session, job_id: uuid.UUID, error: Optional[str] = None, claimed_at: Optional[datetime] = None
) -> Optional[SyncJob]:
    """
    Re-queue a failed attempt: retry_count += 1 and status back to pending.

    Only applies while retry_count < max_retries (and, with `claimed_at`,
    while that claim still holds); returns None otherwise.
    """
    now = datetime.utcnow()
    rowcount = db.execute(
        update(SyncJob)
        .where(
            *_claim_filter(job_id, claimed_at),
            SyncJob.status == SyncJobStatus.PROCESSING,
            SyncJob.retry_count < SyncJob.max_retries,
        )
        .values(
            status=SyncJobStatus.PENDING,
            retry_count=SyncJob.retry_count + 1,
            started_at=None,
            error=error,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()
    if not rowcount:
        return None
    return get_by_id(db, job_id)


def get_by_id(db: Session, job_id: uuid.UUID) -> Optional[SyncJob]:
    return db.get(SyncJob, job_id, populate_existing=True)


def reclaim_stale_jobs(db: Session, timeout_minutes: Optional[int] = None) -> Tuple[int, int]:
    """
    Return abandoned jobs to the queue.

    A job left in processing longer than the timeout belongs to a pass that
    died. The lost run counts as an attempt: it goes back to pending with
    retry_count + 1, or to failed once the retry cap is spent.
    Returns (requeued, failed).
    """
    timeout = timeout_minutes if timeout_minutes is not None else settings.JOB_CLAIM_TIMEOUT_MINUTES
    now = datetime.utcnow()
    cutoff = now - timedelta(minutes=timeout)
    stale = (
        SyncJob.status == SyncJobStatus.PROCESSING,
        SyncJob.started_at < cutoff,
    )

    failed = db.execute(
        update(SyncJob)
        .where(*stale, SyncJob.retry_count >= SyncJob.max_retries)
        .values(
            status=SyncJobStatus.FAILED,
            error=f"Abandoned: processing for more than {timeout} minutes",
            completed_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    ).rowcount
    requeued = db.execute(
        update(SyncJob)
        .where(*stale, SyncJob.retry_count < SyncJob.max_retries)
        .values(
            status=SyncJobStatus.PENDING,
            retry_count=SyncJob.retry_count + 1,
            started_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()

    if requeued or failed:
        logger.warning("[QUEUE] Reclaimed stale jobs: %s requeued, %s failed", requeued, failed)
    return requeued, failed


def cancel_jobs(db: Session, website_id: uuid.UUID, provider: Optional[SyncJobProvider] = None) -> int:
    """Fail every pending or processing job for a website (optionally one provider)."""
    now = datetime.utcnow()
    conditions = [
        SyncJob.website_id == website_id,
        SyncJob.status.in_([SyncJobStatus.PENDING, SyncJobStatus.PROCESSING]),
    ]
    if provider is not None:
        conditions.append(SyncJob.provider == SyncJobProvider(provider))

    cancelled = db.execute(
        update(SyncJob)
        .where(*conditions)
        .values(status=SyncJobStatus.FAILED, error="Cancelled", completed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()
    if cancelled:
        logger.info("[QUEUE] Cancelled %s jobs for website %s", cancelled, website_id)
    return cancelled


def has_active_job(db: Session, website_id: uuid.UUID, provider: SyncJobProvider) -> bool:
    """True when a pending or processing job already exists for the website/provider."""
    return db.query(SyncJob.id).filter(
        SyncJob.website_id == website_id,
        SyncJob.provider == SyncJobProvider(provider),
        SyncJob.status.in_([SyncJobStatus.PENDING, SyncJobStatus.PROCESSING]),
    ).first() is not None


def has_recent_sync(
    db: Session,
    website_id: uuid.UUID,
    provider: SyncJobProvider,
    time_window_minutes: int = 15,
) -> bool:
    cutoff = datetime.utcnow() - timedelta(minutes=time_window_minutes)
    return db.query(SyncJob.id).filter(
        SyncJob.website_id == website_id,
        SyncJob.provider == SyncJobProvider(provider),
        SyncJob.status == SyncJobStatus.COMPLETED,
        SyncJob.completed_at >= cutoff,
    ).first() is not None


def has_completed_sync(db: Session, website_id: uuid.UUID, provider: SyncJobProvider) -> bool:
    return db.query(SyncJob.id).filter(
        SyncJob.website_id == website_id,
        SyncJob.provider == SyncJobProvider(provider),
        SyncJob.status == SyncJobStatus.COMPLETED,
    ).first() is not None


def get_recent_jobs_for_website(db: Session, website_id: uuid.UUID, limit: int = 10) -> List[SyncJob]:
    return (
        db.query(SyncJob)
        .filter(SyncJob.website_id == website_id)
        .order_by(SyncJob.created_at.desc())
        .limit(limit)
        .all()
    )


def cleanup_old_jobs(db: Session, days_old: Optional[int] = None) -> int:
    """Delete terminal jobs that finished more than `days_old` days ago."""
    days = days_old if days_old is not None else settings.JOB_RETENTION_DAYS
    cutoff = datetime.utcnow() - timedelta(days=days)
    deleted = db.execute(
        delete(SyncJob)
        .where(
            SyncJob.status.in_(list(TERMINAL_JOB_STATUSES)),
            SyncJob.completed_at < cutoff,
        )
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()
    return deleted or 0


def calculate_next_sync_date(frequency: SyncFrequency, from_time: Optional[datetime] = None) -> datetime:
    """next_sync_at = from_time (normally last_sync_at) + the frequency's interval."""
    base = from_time or datetime.utcnow()
    try:
        interval = SYNC_INTERVALS[SyncFrequency(frequency)]
    except ValueError:
        interval = SYNC_INTERVALS[SyncFrequency.REALTIME]
    return base + interval


def get_sync_date_range(frequency: SyncFrequency, end_date: Optional[datetime] = None) -> Tuple[datetime, datetime, SyncRange]:
    """Trailing (start, end, sync_range) window a scheduled sync of this frequency covers."""
    end = end_date or datetime.utcnow()
    window, sync_range = SYNC_WINDOWS.get(SyncFrequency(frequency), SYNC_WINDOWS[SyncFrequency.REALTIME])
    return end - window, end, sync_range


def _add_month(value: datetime) -> datetime:
    year = value.year + value.month // 12
    month = value.month % 12 + 1
    # Clamp to the last day of the target month (Jan 31 -> Feb 28/29)
    for day in (value.day, 30, 29, 28):
        try:
            return value.replace(year=year, month=month, day=day)
        except ValueError:
            continue
    raise ValueError(f"Cannot add a month to {value}")


def get_monthly_chunks(start: datetime, end: datetime) -> List[Tuple[datetime, datetime]]:
    """Split [start, end] into consecutive month-long windows; the last one ends at `end`."""
    chunks = []
    chunk_start = start
    while chunk_start < end:
        chunk_end = _add_month(chunk_start)
        chunks.append((chunk_start, min(chunk_end, end)))
        chunk_start = chunk_end
    return chunks
