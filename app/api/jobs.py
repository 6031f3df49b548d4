"""
Sync job processing and inspection.
"""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import Optional
import logging
import uuid

from app.db.session import get_db
from app.api.deps import verify_cron_secret, get_job_processor
from app.core.exceptions import QueueUnavailableError
from app.schemas.sync import ProcessJobsRequest, ProcessJobsResponse, SyncJobResponse
from app.services import job_queue
from app.services.job_processor import JobProcessor

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/process", response_model=ProcessJobsResponse, dependencies=[Depends(verify_cron_secret)])
def process_jobs(
    request: Optional[ProcessJobsRequest] = None,
    processor: JobProcessor = Depends(get_job_processor),
):
    """
    Claim and run pending sync jobs (highest priority first).

    Returns one entry per claimed job. A failing job is reported in its entry;
    only a failure of the job store itself fails the request.
    """
    request = request or ProcessJobsRequest()
    try:
        return processor.process_batch(request.batch_size, request.max_concurrency)
    except QueueUnavailableError as e:
        logger.error("[PROCESSOR] Processing pass aborted: %s", e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job queue unavailable",
        )


@router.get("/{job_id}", response_model=SyncJobResponse, dependencies=[Depends(verify_cron_secret)])
def get_job(job_id: uuid.UUID, db: Session = Depends(get_db)):
    job = job_queue.get_by_id(db, job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job
