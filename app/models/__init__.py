from app.models.website import Website
from app.models.sync_job import (
    SyncJob, SyncJobProvider, SyncJobType, SyncJobStatus, SyncRange,
    JOB_STATUS_TRANSITIONS, TERMINAL_JOB_STATUSES,
)
from app.models.provider_config import ProviderConfig, SyncFrequency
from app.models.payment import Payment, PaymentProvider
from app.models.visitor_session import VisitorSession
from app.models.audit_log import AuditLog, AuditEventType

__all__ = [
    "Website", "SyncJob", "SyncJobProvider", "SyncJobType", "SyncJobStatus", "SyncRange",
    "JOB_STATUS_TRANSITIONS", "TERMINAL_JOB_STATUSES",
    "ProviderConfig", "SyncFrequency", "Payment", "PaymentProvider",
    "VisitorSession", "AuditLog", "AuditEventType",
]
