"""
Cron entry points.

Scheduled externally (e.g. every 5 minutes for the realtime sweep, hourly
for sync-payments). All POST routes require the CRON_SECRET bearer token
when one is configured; the GET variants are unauthenticated health checks.
"""
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Optional
import httpx
import logging

from app.db.session import get_db
from app.api.deps import verify_cron_secret, get_syncer_factory
from app.core.config import settings
from app.schemas.sync import EnqueueResponse, ProcessJobsRequest, RealtimeSweepResponse
from app.services import job_queue
from app.services.scheduler import SyncerFactory, enqueue_due_syncs, run_realtime_sweep, trigger_job_processing

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/sync-payments", response_model=EnqueueResponse, dependencies=[Depends(verify_cron_secret)])
def sync_payments(background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    """Enqueue cron sync jobs for every due scheduled tenant, then kick off processing."""
    scanned, jobs = enqueue_due_syncs(db)
    if jobs:
        background_tasks.add_task(trigger_job_processing)
    return EnqueueResponse(websites_scanned=scanned, jobs_created=len(jobs), jobs=jobs)


@router.get("/sync-payments")
def sync_payments_health():
    return {"status": "ok", "endpoint": "sync-payments", "timestamp": datetime.utcnow().isoformat()}


@router.post("/process-jobs", dependencies=[Depends(verify_cron_secret)])
def process_jobs(request: Optional[ProcessJobsRequest] = None):
    """Forward to /jobs/process so one cron target can drain the queue."""
    request = request or ProcessJobsRequest()
    headers = {"Content-Type": "application/json"}
    if settings.CRON_SECRET:
        headers["Authorization"] = f"Bearer {settings.CRON_SECRET}"
    url = f"{settings.APP_URL.rstrip('/')}/jobs/process"

    try:
        response = httpx.post(url, json=request.model_dump(by_alias=True), headers=headers, timeout=300.0)
    except httpx.HTTPError as e:
        logger.error("[CRON] Failed to reach %s: %s", url, e)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Failed to process jobs: {e}")

    if response.status_code >= 400:
        logger.error("[CRON] Job processing returned %s: %s", response.status_code, response.text[:500])
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to process jobs")
    return response.json()


@router.post("/sync-payment", response_model=RealtimeSweepResponse, dependencies=[Depends(verify_cron_secret)])
def sync_payment_realtime(
    db: Session = Depends(get_db),
    syncer_factory: SyncerFactory = Depends(get_syncer_factory),
):
    """Realtime sweep: sync the trailing window for every realtime tenant right now."""
    results = run_realtime_sweep(db, syncer_factory=syncer_factory)
    return RealtimeSweepResponse(
        websites_processed=len(results),
        total_synced=sum(r.synced for r in results),
        total_skipped=sum(r.skipped for r in results),
        total_errors=sum(r.errors for r in results),
        results=results,
    )


@router.get("/sync-payment")
def sync_payment_health():
    return {
        "status": "ok",
        "endpoint": "sync-payment",
        "windowMinutes": settings.REALTIME_WINDOW_MINUTES,
        "timestamp": datetime.utcnow().isoformat(),
    }


@router.post("/cleanup-jobs", dependencies=[Depends(verify_cron_secret)])
def cleanup_jobs(db: Session = Depends(get_db)):
    """Delete completed and failed jobs older than JOB_RETENTION_DAYS."""
    deleted = job_queue.cleanup_old_jobs(db)
    logger.info("[CRON] Deleted %s old sync jobs", deleted)
    return {"success": True, "deleted": deleted}
