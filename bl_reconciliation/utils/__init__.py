"""
Utilities package initialization.
"""
from .logger import (
    AuditLogger,
    get_audit_logger,
    get_logger,
    log_business_event,
    log_performance,
    setup_logging,
)

__all__ = [
    "AuditLogger",
    "get_audit_logger",
    "get_logger",
    "log_business_event",
    "log_performance",
    "setup_logging",
]
