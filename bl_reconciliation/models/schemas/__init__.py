"""
Pydantic schemas package.
"""
from .base import ResponseBase
from .verification import (
    DeliveryVerificationRequest,
    BulkVerificationRequest,
    BulkVerificationItemOut,
    VerificationResultOut,
    DeliveryVerificationOut,
    CacheStatsOut,
    CacheCleanupOut,
    ConnectionCheckOut,
)
from .reconciliation import ReconciliationTriggerResult, SchedulerStatus, ReconciliationRunOut

__all__ = [
    "ResponseBase",
    "DeliveryVerificationRequest",
    "BulkVerificationRequest",
    "BulkVerificationItemOut",
    "VerificationResultOut",
    "DeliveryVerificationOut",
    "CacheStatsOut",
    "CacheCleanupOut",
    "ConnectionCheckOut",
    "ReconciliationTriggerResult",
    "SchedulerStatus",
    "ReconciliationRunOut",
]
