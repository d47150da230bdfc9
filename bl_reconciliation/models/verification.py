"""Domain value objects for delivery verification.

Plain dataclasses shared by the resolver, cache, orchestrator and scheduled
job. None of them carry ORM state.
"""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from bl_reconciliation.models.db.enums import MatchType
from bl_reconciliation.utils.time import utc_now


class StoreConfigError(ValueError):
    """Store configuration is missing or incomplete."""

    def __init__(self, store_id: int, missing: list[str] | None = None):
        self.store_id = store_id
        self.missing = missing or []
        if self.missing:
            message = f"Store {store_id} reconciliation config incomplete: missing {', '.join(self.missing)}"
        else:
            message = f"Store {store_id} has no reconciliation config"
        super().__init__(message)


@dataclass(frozen=True)
class VerificationKey:
    delivery_id: int
    store_id: int

    def __str__(self) -> str:  # pragma: no cover - logging helper
        return f"{self.store_id}:{self.delivery_id}"


@dataclass(frozen=True)
class ColumnMapping:
    """Names of the external table columns holding each business field."""
    invoice_ref: Optional[str]
    bl_number: Optional[str]
    amount: Optional[str]
    supplier: Optional[str]
    date: Optional[str] = None


@dataclass(frozen=True)
class StoreReconciliationConfig:
    store_id: int
    base_url: Optional[str]
    table_id: Optional[str]
    api_token: Optional[str]
    columns: ColumnMapping
    project_id: Optional[str] = None
    is_active: bool = True

    def missing_fields(self) -> list[str]:
        required = {
            "base_url": self.base_url,
            "table_id": self.table_id,
            "api_token": self.api_token,
            "invoice_column": self.columns.invoice_ref,
            "bl_column": self.columns.bl_number,
            "amount_column": self.columns.amount,
            "supplier_column": self.columns.supplier,
        }
        return [name for name, value in required.items() if not (value and str(value).strip())]

    def require_complete(self) -> "StoreReconciliationConfig":
        missing = self.missing_fields()
        if missing:
            raise StoreConfigError(self.store_id, missing)
        return self


@dataclass(frozen=True)
class DeliverySnapshot:
    """Read-only view of a delivery as needed for matching."""
    delivery_id: int
    store_id: int
    supplier_name: Optional[str] = None
    invoice_reference: Optional[str] = None
    bl_number: Optional[str] = None
    amount: Optional[Decimal] = None
    scheduled_date: Optional[date] = None

    @property
    def key(self) -> VerificationKey:
        return VerificationKey(self.delivery_id, self.store_id)


@dataclass(frozen=True)
class VerificationResult:
    exists: bool
    match_type: MatchType
    verified_at: datetime
    matched_record: Optional[dict[str, Any]] = None
    supplier_mismatch: bool = False
    ambiguous: bool = False
    candidate_count: int = 0
    error: Optional[str] = None

    @classmethod
    def matched(
        cls,
        match_type: MatchType,
        record: dict[str, Any],
        *,
        candidate_count: int,
        ambiguous: bool = False,
        supplier_mismatch: bool = False,
    ) -> "VerificationResult":
        if not match_type.is_match:
            raise ValueError(f"{match_type.value} is not a matching strategy")
        return cls(
            exists=True,
            match_type=match_type,
            verified_at=utc_now(),
            matched_record=dict(record),
            supplier_mismatch=supplier_mismatch,
            ambiguous=ambiguous,
            candidate_count=candidate_count,
        )

    @classmethod
    def not_found(cls, candidate_count: int = 0) -> "VerificationResult":
        return cls(exists=False, match_type=MatchType.NONE, verified_at=utc_now(), candidate_count=candidate_count)

    @classmethod
    def failure(cls, match_type: MatchType, error: str) -> "VerificationResult":
        if not match_type.is_error:
            raise ValueError(f"{match_type.value} is not an error type")
        return cls(exists=False, match_type=match_type, verified_at=utc_now(), error=error)

    @property
    def is_cacheable(self) -> bool:
        """Only definitive answers are worth remembering."""
        return self.exists or self.match_type == MatchType.NONE

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["match_type"] = self.match_type.value
        data["verified_at"] = self.verified_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VerificationResult":
        return cls(
            exists=bool(data["exists"]),
            match_type=MatchType(data["match_type"]),
            verified_at=datetime.fromisoformat(data["verified_at"]),
            matched_record=data.get("matched_record"),
            supplier_mismatch=bool(data.get("supplier_mismatch", False)),
            ambiguous=bool(data.get("ambiguous", False)),
            candidate_count=int(data.get("candidate_count", 0)),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class CacheStats:
    total_entries: int
    valid_entries: int
    expired_entries: int
    hits: int = 0
    misses: int = 0

    @property
    def hit_rate(self) -> float:
        reads = self.hits + self.misses
        return self.hits / reads if reads else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_entries": self.total_entries,
            "valid_entries": self.valid_entries,
            "expired_entries": self.expired_entries,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hit_rate, 4),
        }


@dataclass(frozen=True)
class BulkVerificationItem:
    delivery_id: int
    store_id: int
    result: VerificationResult
    cache_hit: bool = False

    @property
    def exists(self) -> bool:
        return self.result.exists

    @property
    def match_type(self) -> MatchType:
        return self.result.match_type


@dataclass
class ReconciliationRun:
    id: Optional[int]
    trigger: str
    status: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    processed_count: int = 0
    reconciled_count: int = 0
    error_count: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    details: list[dict[str, Any]] = field(default_factory=list)
    failure_reason: Optional[str] = None


__all__ = [
    "StoreConfigError",
    "VerificationKey",
    "ColumnMapping",
    "StoreReconciliationConfig",
    "DeliverySnapshot",
    "VerificationResult",
    "CacheStats",
    "BulkVerificationItem",
    "ReconciliationRun",
]
