"""
Pydantic schemas for delivery verification and cache management.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

from bl_reconciliation.models.verification import (
    BulkVerificationItem,
    CacheStats,
    DeliverySnapshot,
    VerificationResult,
)


class DeliveryVerificationRequest(BaseModel):
    """One delivery to verify, as sent by the store-operations frontend."""
    model_config = ConfigDict(populate_by_name=True)

    id: int = Field(description="Delivery id")
    group_id: int = Field(alias="groupId", description="Store (group) id owning the delivery")
    invoice_reference: Optional[str] = Field(None, alias="invoiceReference")
    supplier_name: Optional[str] = Field(None, alias="supplierName")
    bl_number: Optional[str] = Field(None, alias="blNumber")
    amount: Optional[Decimal] = None
    scheduled_date: Optional[date] = Field(None, alias="scheduledDate")

    def to_snapshot(self) -> DeliverySnapshot:
        return DeliverySnapshot(
            delivery_id=self.id,
            store_id=self.group_id,
            supplier_name=self.supplier_name,
            invoice_reference=self.invoice_reference,
            bl_number=self.bl_number,
            amount=self.amount,
            scheduled_date=self.scheduled_date,
        )


class BulkVerificationRequest(BaseModel):
    deliveries: List[DeliveryVerificationRequest] = Field(default_factory=list)


class BulkVerificationItemOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    delivery_id: int = Field(serialization_alias="deliveryId")
    exists: bool
    match_type: str = Field(serialization_alias="matchType")
    cache_hit: bool = Field(serialization_alias="cacheHit")
    supplier_mismatch: bool = Field(False, serialization_alias="supplierMismatch")
    ambiguous: bool = False
    error: Optional[str] = None

    @classmethod
    def from_item(cls, item: BulkVerificationItem) -> "BulkVerificationItemOut":
        return cls(
            delivery_id=item.delivery_id,
            exists=item.exists,
            match_type=item.match_type.value,
            cache_hit=item.cache_hit,
            supplier_mismatch=item.result.supplier_mismatch,
            ambiguous=item.result.ambiguous,
            error=item.result.error,
        )


class VerificationResultOut(BaseModel):
    exists: bool
    match_type: str = Field(serialization_alias="matchType")
    matched_record: Optional[Dict[str, Any]] = Field(None, serialization_alias="matchedRecord")
    verified_at: datetime = Field(serialization_alias="verifiedAt")
    supplier_mismatch: bool = Field(False, serialization_alias="supplierMismatch")
    ambiguous: bool = False
    candidate_count: int = Field(0, serialization_alias="candidateCount")
    error: Optional[str] = None

    @classmethod
    def from_result(cls, result: VerificationResult) -> "VerificationResultOut":
        return cls(
            exists=result.exists,
            match_type=result.match_type.value,
            matched_record=result.matched_record,
            verified_at=result.verified_at,
            supplier_mismatch=result.supplier_mismatch,
            ambiguous=result.ambiguous,
            candidate_count=result.candidate_count,
            error=result.error,
        )


class DeliveryVerificationOut(BaseModel):
    delivery_id: int = Field(serialization_alias="deliveryId")
    store_id: int = Field(serialization_alias="storeId")
    cache_hit: bool = Field(serialization_alias="cacheHit")
    result: VerificationResultOut


class CacheStatsOut(BaseModel):
    store_id: Optional[int] = Field(None, serialization_alias="storeId")
    total_entries: int = Field(serialization_alias="totalEntries")
    valid_entries: int = Field(serialization_alias="validEntries")
    expired_entries: int = Field(serialization_alias="expiredEntries")
    hits: int
    misses: int
    hit_rate: float = Field(serialization_alias="hitRate")

    @classmethod
    def from_stats(cls, stats: CacheStats, store_id: Optional[int] = None) -> "CacheStatsOut":
        return cls(
            store_id=store_id,
            total_entries=stats.total_entries,
            valid_entries=stats.valid_entries,
            expired_entries=stats.expired_entries,
            hits=stats.hits,
            misses=stats.misses,
            hit_rate=round(stats.hit_rate, 4),
        )


class CacheCleanupOut(BaseModel):
    store_id: Optional[int] = Field(None, serialization_alias="storeId")
    cleaned_count: int = Field(serialization_alias="cleanedCount")


class ConnectionCheckOut(BaseModel):
    store_id: int = Field(serialization_alias="storeId")
    success: bool
    record_count: int = Field(0, serialization_alias="recordCount")
    error_code: Optional[str] = Field(None, serialization_alias="errorCode")
    error_message: Optional[str] = Field(None, serialization_alias="errorMessage")
    status_code: Optional[int] = Field(None, serialization_alias="statusCode")
