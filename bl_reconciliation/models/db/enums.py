"""Central Enum definitions for reconciliation domain states.

These replace scattered string literals to ensure consistency across
DB models, schemas, and business logic.
"""
from __future__ import annotations
import enum


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    PLANNED = "planned"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

# ------------------ Verification / Reconciliation Enums ------------------ #

class MatchType(str, enum.Enum):
    """Which strategy (or failure mode) produced a verification result."""
    INVOICE_REF = "INVOICE_REF"
    BL_NUMBER = "BL_NUMBER"
    SUPPLIER_AMOUNT = "SUPPLIER_AMOUNT"
    SUPPLIER_DATE = "SUPPLIER_DATE"
    NONE = "NONE"
    CONFIG_ERROR = "CONFIG_ERROR"
    API_ERROR = "API_ERROR"
    SYSTEM_ERROR = "SYSTEM_ERROR"

    @property
    def is_match(self) -> bool:
        return self in _MATCH_TYPES

    @property
    def is_error(self) -> bool:
        return self in _ERROR_TYPES


_MATCH_TYPES = frozenset({
    MatchType.INVOICE_REF,
    MatchType.BL_NUMBER,
    MatchType.SUPPLIER_AMOUNT,
    MatchType.SUPPLIER_DATE,
})
_ERROR_TYPES = frozenset({
    MatchType.CONFIG_ERROR,
    MatchType.API_ERROR,
    MatchType.SYSTEM_ERROR,
})


class RunStatus(str, enum.Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class RunTrigger(str, enum.Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class ReconciliationOutcome(str, enum.Enum):
    """Per-delivery outcome recorded in a run's details."""
    RECONCILED = "reconciled"
    NOT_FOUND = "not_found"
    ALREADY_USED = "already_used"
    ERROR = "error"


__all__ = [
    "DeliveryStatus",
    "MatchType",
    "RunStatus",
    "RunTrigger",
    "ReconciliationOutcome",
]
