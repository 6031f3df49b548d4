from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import List, Optional, Dict, Any
from datetime import datetime
from uuid import UUID

from app.models.sync_job import SyncJobProvider, SyncJobType, SyncJobStatus, SyncRange
from app.models.payment import PaymentProvider
from app.models.provider_config import SyncFrequency


class CamelModel(BaseModel):
    """Responses and bodies use camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class SyncResult(CamelModel):
    synced: int = 0
    skipped: int = 0
    errors: int = 0

    def __add__(self, other: "SyncResult") -> "SyncResult":
        return SyncResult(
            synced=self.synced + other.synced,
            skipped=self.skipped + other.skipped,
            errors=self.errors + other.errors,
        )


class ProcessJobsRequest(CamelModel):
    batch_size: int = Field(10, ge=1, le=100)
    # wire name kept as "maxConcurrent" for existing cron callers
    max_concurrency: int = Field(3, ge=1, le=20, alias="maxConcurrent")


class JobOutcome(CamelModel):
    job_id: UUID
    status: str  # completed | retrying | failed
    result: Optional[SyncResult] = None
    error: Optional[str] = None


class ProcessJobsResponse(CamelModel):
    success: bool = True
    processed: int
    jobs: List[JobOutcome]


class SyncJobResponse(CamelModel):
    id: UUID
    website_id: UUID
    provider: SyncJobProvider
    type: SyncJobType
    status: SyncJobStatus
    priority: int
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    sync_range: Optional[SyncRange] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    retry_count: int
    max_retries: int
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class EnqueuedJob(CamelModel):
    website_id: UUID
    provider: SyncJobProvider
    job_id: UUID


class EnqueueResponse(CamelModel):
    success: bool = True
    websites_scanned: int
    jobs_created: int
    jobs: List[EnqueuedJob]


class TenantSyncResult(CamelModel):
    website_id: UUID
    synced: int = 0
    skipped: int = 0
    errors: int = 0
    error: Optional[str] = None


class RealtimeSweepResponse(CamelModel):
    success: bool = True
    websites_processed: int
    total_synced: int
    total_skipped: int
    total_errors: int
    results: List[TenantSyncResult]


class ManualSyncResponse(CamelModel):
    success: bool = True
    synced: int
    skipped: int
    errors: int
    message: str


class StripeConnectRequest(CamelModel):
    api_key: str = Field(..., min_length=1)


class ProviderConfigUpdate(CamelModel):
    # apiKey omitted = keep current key; explicit null = remove the key
    api_key: Optional[str] = None
    enabled: Optional[bool] = None
    frequency: Optional[SyncFrequency] = None


class ProviderConfigResponse(CamelModel):
    provider: SyncJobProvider
    connected: bool
    enabled: bool
    frequency: SyncFrequency
    last_sync_at: Optional[datetime] = None
    next_sync_at: Optional[datetime] = None


class ManualPaymentCreate(CamelModel):
    provider: PaymentProvider
    provider_payment_id: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)  # major units, e.g. 19.99
    currency: str = Field("usd", min_length=3, max_length=3)
    customer_email: Optional[str] = None
    customer_id: Optional[str] = None
    visitor_id: Optional[str] = None
    session_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: Optional[datetime] = None


class PaymentResponse(CamelModel):
    id: UUID
    provider: str
    provider_payment_id: str
    amount: int  # minor units
    currency: str
    renewal: bool
    refunded: bool
    visitor_id: Optional[str] = None
    session_id: Optional[str] = None
    timestamp: datetime
