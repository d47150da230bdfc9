"""Collaborator interfaces consumed by the verification core, plus SQLAlchemy
implementations backed by the shared store-operations database.

The orchestrator and the scheduled job only see the Protocols below; tests
and alternative deployments can pass any object with the same methods.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, Protocol

from sqlalchemy import or_, and_
from sqlalchemy.orm import Session

from bl_reconciliation.models.db import Delivery, StoreConfigRecord, ReconciliationRunRecord
from bl_reconciliation.models.db.enums import DeliveryStatus, RunStatus, RunTrigger
from bl_reconciliation.models.verification import (
    ColumnMapping,
    DeliverySnapshot,
    ReconciliationRun,
    StoreReconciliationConfig,
)
from bl_reconciliation.utils import get_logger
from bl_reconciliation.utils.time import utc_now

logger = get_logger(__name__)

SessionFactory = Callable[[], Session]


class StoreConfigProvider(Protocol):
    def get_config(self, store_id: int) -> Optional[StoreReconciliationConfig]: ...


class DeliveryStore(Protocol):
    def get(self, delivery_id: int) -> Optional[DeliverySnapshot]: ...
    def list_pending(self, limit: int) -> list[DeliverySnapshot]: ...
    def is_invoice_used(self, invoice_reference: str, *, exclude_delivery_id: int) -> bool: ...
    def mark_reconciled(self, delivery_id: int, *, invoice_reference: Optional[str], amount: Optional[Decimal]) -> None: ...


class RunStore(Protocol):
    def create(self, run: ReconciliationRun) -> int: ...
    def finish(self, run: ReconciliationRun) -> None: ...
    def list_recent(self, limit: int) -> list[ReconciliationRun]: ...
    def fail_stale_runs(self) -> int: ...


def _blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def config_from_record(record: StoreConfigRecord) -> StoreReconciliationConfig:
    return StoreReconciliationConfig(
        store_id=record.store_id,
        base_url=record.base_url,
        table_id=record.table_id,
        api_token=record.api_token,
        project_id=record.project_id,
        is_active=bool(record.is_active),
        columns=ColumnMapping(
            invoice_ref=record.invoice_column,
            bl_number=record.bl_column,
            amount=record.amount_column,
            supplier=record.supplier_column,
            date=record.date_column,
        ),
    )


def snapshot_from_delivery(delivery: Delivery) -> DeliverySnapshot:
    amount = delivery.bl_amount if delivery.bl_amount is not None else delivery.invoice_amount
    return DeliverySnapshot(
        delivery_id=delivery.id,
        store_id=delivery.store_id,
        supplier_name=delivery.supplier_name,
        invoice_reference=delivery.invoice_reference,
        bl_number=delivery.bl_number,
        amount=amount,
        scheduled_date=delivery.scheduled_date,
    )


class SqlStoreConfigProvider:
    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def get_config(self, store_id: int) -> Optional[StoreReconciliationConfig]:
        session = self._session_factory()
        try:
            record = session.get(StoreConfigRecord, store_id)
            if record is None or not record.is_active:
                return None
            return config_from_record(record)
        finally:
            session.close()


class SqlDeliveryStore:
    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def get(self, delivery_id: int) -> Optional[DeliverySnapshot]:
        session = self._session_factory()
        try:
            delivery = session.get(Delivery, delivery_id)
            return snapshot_from_delivery(delivery) if delivery is not None else None
        finally:
            session.close()

    def list_pending(self, limit: int) -> list[DeliverySnapshot]:
        """Unreconciled, non-cancelled deliveries carrying an invoice ref or a BL number."""
        session = self._session_factory()
        try:
            has_invoice = and_(Delivery.invoice_reference.is_not(None), Delivery.invoice_reference != "")
            has_bl = and_(Delivery.bl_number.is_not(None), Delivery.bl_number != "")
            rows = (
                session.query(Delivery)
                .filter(
                    Delivery.reconciled == False,  # noqa: E712
                    Delivery.status != DeliveryStatus.CANCELLED,
                    or_(has_invoice, has_bl),
                )
                .order_by(Delivery.store_id, Delivery.id)
                .limit(limit)
                .all()
            )
            return [snapshot_from_delivery(d) for d in rows]
        finally:
            session.close()

    def is_invoice_used(self, invoice_reference: str, *, exclude_delivery_id: int) -> bool:
        if _blank(invoice_reference):
            return False
        session = self._session_factory()
        try:
            existing = (
                session.query(Delivery.id)
                .filter(
                    Delivery.invoice_reference == invoice_reference.strip(),
                    Delivery.reconciled == True,  # noqa: E712
                    Delivery.id != exclude_delivery_id,
                )
                .first()
            )
            return existing is not None
        finally:
            session.close()

    def mark_reconciled(self, delivery_id: int, *, invoice_reference: Optional[str], amount: Optional[Decimal]) -> None:
        session = self._session_factory()
        try:
            delivery = session.get(Delivery, delivery_id)
            if delivery is None:
                raise LookupError(f"Delivery {delivery_id} not found")
            if _blank(delivery.invoice_reference) and not _blank(invoice_reference):
                delivery.invoice_reference = str(invoice_reference).strip()
            if delivery.invoice_amount is None and amount is not None:
                delivery.invoice_amount = amount
            delivery.reconciled = True
            delivery.reconciled_at = utc_now()
            delivery.status = DeliveryStatus.DELIVERED
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def _run_from_record(record: ReconciliationRunRecord) -> ReconciliationRun:
    return ReconciliationRun(
        id=record.id,
        trigger=record.trigger.value,
        status=record.status.value,
        started_at=record.started_at,
        ended_at=record.ended_at,
        processed_count=record.processed_count or 0,
        reconciled_count=record.reconciled_count or 0,
        error_count=record.error_count or 0,
        errors=list(record.errors or []),
        details=list(record.details or []),
        failure_reason=record.failure_reason,
    )


class SqlRunStore:
    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def create(self, run: ReconciliationRun) -> int:
        session = self._session_factory()
        try:
            record = ReconciliationRunRecord(
                trigger=RunTrigger(run.trigger),
                status=RunStatus(run.status),
                started_at=run.started_at,
            )
            session.add(record)
            session.commit()
            return record.id
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def finish(self, run: ReconciliationRun) -> None:
        session = self._session_factory()
        try:
            record = session.get(ReconciliationRunRecord, run.id)
            if record is None:
                raise LookupError(f"Reconciliation run {run.id} not found")
            record.status = RunStatus(run.status)
            record.ended_at = run.ended_at
            record.processed_count = run.processed_count
            record.reconciled_count = run.reconciled_count
            record.error_count = run.error_count
            record.errors = list(run.errors)
            record.details = list(run.details)
            record.failure_reason = run.failure_reason
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def list_recent(self, limit: int) -> list[ReconciliationRun]:
        session = self._session_factory()
        try:
            rows = (
                session.query(ReconciliationRunRecord)
                .order_by(ReconciliationRunRecord.id.desc())
                .limit(limit)
                .all()
            )
            return [_run_from_record(r) for r in rows]
        finally:
            session.close()

    def fail_stale_runs(self) -> int:
        """Close runs left RUNNING by a previous process."""
        session = self._session_factory()
        try:
            stale = session.query(ReconciliationRunRecord).filter(ReconciliationRunRecord.status == RunStatus.RUNNING).all()
            now: datetime = utc_now()
            for record in stale:
                record.status = RunStatus.FAILED
                record.ended_at = now
                record.failure_reason = "interrupted by service restart"
            session.commit()
            if stale:
                logger.warning("Marked stale reconciliation runs as failed", count=len(stale))
            return len(stale)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


__all__ = [
    "StoreConfigProvider",
    "DeliveryStore",
    "RunStore",
    "SqlStoreConfigProvider",
    "SqlDeliveryStore",
    "SqlRunStore",
    "config_from_record",
    "snapshot_from_delivery",
]
