"""
Pull-based payment provider sync: common interface and lookup.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.core.encryption import decrypt_token
from app.core.exceptions import ProviderNotConfiguredError, UnsupportedProviderError
from app.models.provider_config import ProviderConfig
from app.models.sync_job import SyncJobProvider
from app.schemas.sync import SyncResult

logger = logging.getLogger(__name__)


class PaymentProviderSyncer:
    """One provider's way of pulling payments for a website over a date range."""

    provider: SyncJobProvider

    def sync_payments(self, db: Session, website_id: uuid.UUID, start_date: datetime, end_date: datetime) -> SyncResult:
        raise NotImplementedError

    def delete_payments(self, db: Session, website_id: uuid.UUID) -> int:
        raise NotImplementedError

    def validate_api_key(self, api_key: str):
        raise NotImplementedError


def get_provider_config(db: Session, website_id: uuid.UUID, provider: SyncJobProvider) -> Optional[ProviderConfig]:
    return db.query(ProviderConfig).filter(
        ProviderConfig.website_id == website_id,
        ProviderConfig.provider == SyncJobProvider(provider),
    ).first()


def get_api_key(config: Optional[ProviderConfig]) -> str:
    """Decrypted credential of a provider config, or ProviderNotConfiguredError."""
    if config is None or not config.api_key:
        raise ProviderNotConfiguredError("API key not configured")
    return decrypt_token(config.api_key)


def get_provider_syncer(provider: SyncJobProvider, api_key: str) -> PaymentProviderSyncer:
    """
    Syncer for a provider.

    LemonSqueezy, Polar and Paddle only deliver payments through webhooks, so
    jobs for them fail with UnsupportedProviderError.
    """
    provider = SyncJobProvider(provider)
    if provider == SyncJobProvider.STRIPE:
        from app.services.stripe_sync import StripePaymentSyncer
        return StripePaymentSyncer(api_key)
    raise UnsupportedProviderError(f"Sync for provider {provider.value} is not yet implemented")
