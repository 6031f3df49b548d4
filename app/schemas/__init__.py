from app.schemas.sync import (
    SyncResult, ProcessJobsRequest, ProcessJobsResponse, JobOutcome, SyncJobResponse,
    EnqueueResponse, RealtimeSweepResponse, ManualSyncResponse,
    StripeConnectRequest, ProviderConfigUpdate, ProviderConfigResponse,
    ManualPaymentCreate, PaymentResponse,
)

__all__ = [
    "SyncResult", "ProcessJobsRequest", "ProcessJobsResponse", "JobOutcome", "SyncJobResponse",
    "EnqueueResponse", "RealtimeSweepResponse", "ManualSyncResponse",
    "StripeConnectRequest", "ProviderConfigUpdate", "ProviderConfigResponse",
    "ManualPaymentCreate", "PaymentResponse",
]
