"""
Error taxonomy for payment ingestion.

Credential problems are user-actionable and kept distinct from generic sync
failures so API routes can surface a specific message. Queue errors mean the
job store itself is unhealthy and abort the current processing pass.
"""
from typing import Optional


class PaymentSyncError(Exception):
    """Base class for ingestion errors."""


class ProviderAuthenticationError(PaymentSyncError):
    """The provider rejected the stored credential (invalid, revoked, missing permissions)."""

    def __init__(self, message: str, provider: str = "stripe", hint: Optional[str] = None):
        super().__init__(message)
        self.provider = provider
        self.hint = hint or message


class ProviderNotConfiguredError(PaymentSyncError):
    """The tenant has no usable configuration for the provider."""


class UnsupportedProviderError(PaymentSyncError):
    """The provider has no pull-based sync implementation."""


class QueueUnavailableError(PaymentSyncError):
    """Claiming or updating sync jobs failed at the storage layer."""
