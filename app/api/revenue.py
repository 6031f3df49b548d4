"""
Per-website revenue endpoints: Stripe connection lifecycle, manual syncs,
sync schedule and manually recorded payments.
"""
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, Response, status
from sqlalchemy.orm import Session
from datetime import datetime, timedelta, timezone
from typing import List, Optional
import logging
import stripe

from app.db.session import get_db
from app.api.deps import get_website, get_syncer_factory
from app.core.audit import log_security_event
from app.core.config import settings
from app.core.exceptions import ProviderAuthenticationError, ProviderNotConfiguredError
from app.models.audit_log import AuditEventType
from app.models.provider_config import ProviderConfig, SyncFrequency
from app.models.sync_job import SyncJobProvider
from app.models.website import Website
from app.schemas.sync import (
    ManualPaymentCreate,
    ManualSyncResponse,
    PaymentResponse,
    ProviderConfigResponse,
    ProviderConfigUpdate,
    StripeConnectRequest,
    SyncJobResponse,
)
from app.services import job_queue, stripe_sync
from app.services.payment_writer import PaymentFields, UpsertOutcome, to_minor_units, upsert_payment
from app.services.providers import get_api_key, get_provider_config
from app.services.scheduler import SyncerFactory, trigger_job_processing

logger = logging.getLogger(__name__)

router = APIRouter()


def _config_response(config: Optional[ProviderConfig]) -> ProviderConfigResponse:
    if config is None:
        return ProviderConfigResponse(
            provider=SyncJobProvider.STRIPE, connected=False, enabled=False, frequency=SyncFrequency.REALTIME,
        )
    return ProviderConfigResponse(
        provider=config.provider,
        connected=bool(config.api_key),
        enabled=config.enabled,
        frequency=config.frequency,
        last_sync_at=config.last_sync_at,
        next_sync_at=config.next_sync_at,
    )


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@router.post("/{website_id}/revenue/stripe/connect", response_model=ProviderConfigResponse)
def connect_stripe(
    payload: StripeConnectRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    website: Website = Depends(get_website),
    db: Session = Depends(get_db),
):
    """
    Connect Stripe with a restricted API key.

    The key is validated against Stripe before anything is stored. On success
    the historical backfill is queued and processing starts in the background.
    """
    api_key = payload.api_key.strip()
    if not api_key:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Stripe API key is required")

    validation = stripe_sync.validate_stripe_api_key(api_key)
    if not validation.ok:
        raise HTTPException(status_code=validation.status_code or status.HTTP_400_BAD_REQUEST, detail=validation.error)

    config = stripe_sync.connect_stripe(db, website.id, api_key)
    background_tasks.add_task(trigger_job_processing)

    log_security_event(
        db,
        AuditEventType.API_KEY_CONNECTED,
        website_id=website.id,
        resource_type="stripe",
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        details={"key_prefix": api_key[:3]},
    )
    logger.info("[STRIPE] Connected Stripe for website %s", website.id)
    return _config_response(config)


@router.post("/{website_id}/revenue/stripe/disconnect")
def disconnect_stripe(
    request: Request,
    website: Website = Depends(get_website),
    db: Session = Depends(get_db),
):
    config = get_provider_config(db, website.id, SyncJobProvider.STRIPE)
    if config is None or not config.api_key:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Stripe is not connected for this website")

    deleted = stripe_sync.disconnect_stripe(db, website.id)
    log_security_event(
        db,
        AuditEventType.API_KEY_DISCONNECTED,
        website_id=website.id,
        resource_type="stripe",
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        details={"payments_deleted": deleted},
    )
    logger.info("[STRIPE] Disconnected Stripe for website %s, %s payments deleted", website.id, deleted)
    return {"success": True, "paymentsDeleted": deleted}


@router.post("/{website_id}/revenue/stripe/sync", response_model=ManualSyncResponse)
def sync_stripe(
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    website: Website = Depends(get_website),
    db: Session = Depends(get_db),
    syncer_factory: SyncerFactory = Depends(get_syncer_factory),
):
    """Synchronous Stripe sync over [startDate, endDate] (default: the full history window)."""
    try:
        api_key = get_api_key(get_provider_config(db, website.id, SyncJobProvider.STRIPE))
    except ProviderNotConfiguredError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Stripe is not connected for this website")

    end = _naive_utc(end_date) or datetime.utcnow()
    start = _naive_utc(start_date) or end - timedelta(days=settings.MANUAL_SYNC_DEFAULT_DAYS)
    if start >= end:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="startDate must be before endDate")

    try:
        result = syncer_factory(SyncJobProvider.STRIPE, api_key).sync_payments(db, website.id, start, end)
    except ProviderAuthenticationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.hint)
    except ProviderNotConfiguredError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except stripe.StripeError as e:
        logger.error("[STRIPE] Manual sync failed for website %s: %s", website.id, e)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to sync Stripe payments")

    return ManualSyncResponse(
        synced=result.synced,
        skipped=result.skipped,
        errors=result.errors,
        message=f"Synced {result.synced} payments, skipped {result.skipped} duplicates, {result.errors} errors",
    )


@router.get("/{website_id}/revenue/stripe/config", response_model=ProviderConfigResponse)
def get_stripe_config(website: Website = Depends(get_website), db: Session = Depends(get_db)):
    return _config_response(get_provider_config(db, website.id, SyncJobProvider.STRIPE))


@router.put("/{website_id}/revenue/stripe/config", response_model=ProviderConfigResponse)
def update_stripe_config(
    payload: ProviderConfigUpdate,
    request: Request,
    background_tasks: BackgroundTasks,
    website: Website = Depends(get_website),
    db: Session = Depends(get_db),
):
    """
    Update the Stripe key and/or sync schedule.

    A new key is validated and triggers a historical sync, an explicit null
    key disconnects. Schedule-only changes take effect from the next cron tick.
    """
    config = get_provider_config(db, website.id, SyncJobProvider.STRIPE)

    if "api_key" in payload.model_fields_set:
        current_key = get_api_key(config) if config is not None and config.api_key else None
        new_key = payload.api_key.strip() if payload.api_key else None
        changes = stripe_sync.detect_stripe_changes(current_key, new_key)

        result = stripe_sync.process_stripe_config_changes(db, website.id, current_key, new_key)
        if not result.ok:
            raise HTTPException(status_code=result.status_code or status.HTTP_400_BAD_REQUEST, detail=result.error)
        if changes.is_new_key:
            background_tasks.add_task(trigger_job_processing)
        if changes.is_new_key or changes.is_removed:
            log_security_event(
                db,
                AuditEventType.API_KEY_CONNECTED if changes.is_new_key else AuditEventType.API_KEY_DISCONNECTED,
                website_id=website.id,
                resource_type="stripe",
                ip_address=_client_ip(request),
                user_agent=request.headers.get("user-agent"),
            )
        config = get_provider_config(db, website.id, SyncJobProvider.STRIPE)

    if payload.enabled is not None or payload.frequency is not None:
        if config is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Stripe is not connected for this website")
        if payload.enabled is not None:
            config.enabled = payload.enabled
        if payload.frequency is not None and payload.frequency != config.frequency:
            config.frequency = payload.frequency
            config.next_sync_at = (
                job_queue.calculate_next_sync_date(config.frequency, config.last_sync_at)
                if config.last_sync_at else None
            )
        db.commit()
        db.refresh(config)
        log_security_event(
            db,
            AuditEventType.PROVIDER_CONFIG_UPDATED,
            website_id=website.id,
            resource_type="stripe",
            ip_address=_client_ip(request),
            details={"enabled": config.enabled, "frequency": config.frequency.value},
        )

    return _config_response(config)


@router.get("/{website_id}/jobs", response_model=List[SyncJobResponse])
def list_website_jobs(
    limit: int = Query(10, ge=1, le=100),
    website: Website = Depends(get_website),
    db: Session = Depends(get_db),
):
    return job_queue.get_recent_jobs_for_website(db, website.id, limit=limit)


@router.post("/{website_id}/payments", response_model=PaymentResponse)
def record_payment(
    payload: ManualPaymentCreate,
    response: Response,
    website: Website = Depends(get_website),
    db: Session = Depends(get_db),
):
    """
    Record a payment from a provider without pull sync (amount in major units).

    Idempotent on (provider, providerPaymentId): repeating the call returns the stored row.
    """
    result = upsert_payment(db, PaymentFields(
        website_id=website.id,
        provider=payload.provider,
        provider_payment_id=payload.provider_payment_id,
        amount=to_minor_units(payload.amount),
        currency=payload.currency,
        customer_email=payload.customer_email,
        customer_id=payload.customer_id,
        visitor_id=payload.visitor_id,
        session_id=payload.session_id,
        metadata=payload.metadata or {},
        timestamp=_naive_utc(payload.timestamp),
    ))
    response.status_code = status.HTTP_201_CREATED if result.outcome == UpsertOutcome.CREATED else status.HTTP_200_OK
    return result.payment
