from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import Optional
import logging
import secrets
import uuid

from app.core.audit import log_security_event
from app.core.config import settings
from app.db.session import get_db
from app.models.audit_log import AuditEventType
from app.models.website import Website
from app.services.job_processor import JobProcessor
from app.services.providers import get_provider_syncer
from app.services.scheduler import SyncerFactory

logger = logging.getLogger(__name__)

# auto_error=False: a missing header is only an error when CRON_SECRET is set
security = HTTPBearer(auto_error=False)


def verify_cron_secret(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> None:
    """
    Guard for cron and job-processing endpoints.

    When CRON_SECRET is configured the request must carry it as a bearer
    token. Rejections are audited. Without a secret (local dev) the endpoints
    are open.
    """
    if not settings.CRON_SECRET:
        return

    token = credentials.credentials if credentials else ""
    if secrets.compare_digest(token.encode(), settings.CRON_SECRET.encode()):
        return

    logger.warning("[AUTH] Rejected cron call to %s from %s",
                   request.url.path, request.client.host if request.client else "unknown")
    log_security_event(
        db,
        AuditEventType.UNAUTHORIZED_CRON_ACCESS,
        resource_type="cron",
        resource_id=request.url.path,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        details={"has_token": bool(credentials)},
    )
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_website(website_id: uuid.UUID, db: Session = Depends(get_db)) -> Website:
    website = db.get(Website, website_id)
    if website is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Website not found")
    return website


def get_syncer_factory() -> SyncerFactory:
    """Overridden in tests with a factory returning fake syncers."""
    return get_provider_syncer


def get_job_processor(syncer_factory: SyncerFactory = Depends(get_syncer_factory)) -> JobProcessor:
    return JobProcessor(syncer_factory=syncer_factory)
