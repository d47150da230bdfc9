"""
Pydantic schemas for reconciliation runs and scheduler control.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from bl_reconciliation.models.verification import ReconciliationRun


class ReconciliationTriggerResult(BaseModel):
    """Summary returned by a manual trigger; per-item failures are data, not HTTP errors."""
    run_id: Optional[int] = Field(None, serialization_alias="runId")
    status: str
    processed_deliveries: int = Field(serialization_alias="processedDeliveries")
    reconciled_deliveries: int = Field(serialization_alias="reconciledDeliveries")
    errors: List[str] = Field(default_factory=list)
    details: List[Dict[str, Any]] = Field(default_factory=list)
    failure_reason: Optional[str] = Field(None, serialization_alias="failureReason")

    @classmethod
    def from_run(cls, run: ReconciliationRun) -> "ReconciliationTriggerResult":
        return cls(
            run_id=run.id,
            status=run.status,
            processed_deliveries=run.processed_count,
            reconciled_deliveries=run.reconciled_count,
            errors=[f"Delivery {e['delivery_id']} (store {e['store_id']}): {e['error']}" for e in run.errors],
            failure_reason=run.failure_reason,
            details=run.details,
        )


class SchedulerStatus(BaseModel):
    active: bool
    next_run: Optional[datetime] = Field(None, serialization_alias="nextRun")
    interval_minutes: float = Field(serialization_alias="intervalMinutes")


class ReconciliationRunOut(BaseModel):
    id: Optional[int]
    trigger: str
    status: str
    started_at: datetime = Field(serialization_alias="startedAt")
    ended_at: Optional[datetime] = Field(None, serialization_alias="endedAt")
    processed_count: int = Field(serialization_alias="processedCount")
    reconciled_count: int = Field(serialization_alias="reconciledCount")
    error_count: int = Field(serialization_alias="errorCount")
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    failure_reason: Optional[str] = Field(None, serialization_alias="failureReason")

    @classmethod
    def from_run(cls, run: ReconciliationRun) -> "ReconciliationRunOut":
        return cls(
            id=run.id,
            trigger=run.trigger,
            status=run.status,
            started_at=run.started_at,
            ended_at=run.ended_at,
            processed_count=run.processed_count,
            reconciled_count=run.reconciled_count,
            error_count=run.error_count,
            errors=run.errors,
            failure_reason=run.failure_reason,
        )
