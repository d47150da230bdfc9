"""Reconciliation run: pending deliveries -> bulk verification -> side effects.

``ReconciliationRunner.run(trigger)`` is the single entry point used by both
the timer and the manual trigger:

1. Take the in-process run lock without blocking (return None if held).
2. Open a ReconciliationRun (RUNNING) in the run store.
3. Load pending deliveries and verify them in one bulk call.
4. Finalize serially: for each match, skip invoices already used by another
   delivery, otherwise mark the delivery reconciled and drop its cache entry.
5. Close the run: COMPLETED, or FAILED when loading, verification or a cache
   call raised (per-item errors only land in the run's error list).

The lock is released on every path.
"""
from __future__ import annotations

import asyncio
import threading
from collections import defaultdict
from decimal import Decimal
from typing import Any, Optional

from bl_reconciliation.config import SCHEDULER
from bl_reconciliation.models.db.enums import ReconciliationOutcome, RunStatus, RunTrigger
from bl_reconciliation.models.verification import BulkVerificationItem, DeliverySnapshot, ReconciliationRun
from bl_reconciliation.services.bulk_verifier import BulkVerificationOrchestrator
from bl_reconciliation.services.match_resolver import parse_amount
from bl_reconciliation.services.stores import DeliveryStore, RunStore
from bl_reconciliation.services.verification_cache import VerificationCache
from bl_reconciliation.utils import AuditLogger, get_audit_logger, get_logger, log_business_event
from bl_reconciliation.utils.time import elapsed_ms, format_elapsed, utc_now

logger = get_logger(__name__)


class ReconciliationRunner:
    def __init__(
        self,
        orchestrator: BulkVerificationOrchestrator,
        deliveries: DeliveryStore,
        runs: RunStore,
        *,
        cache: Optional[VerificationCache] = None,
        audit: Optional[AuditLogger] = None,
        pending_limit: Optional[int] = None,
    ):
        self.orchestrator = orchestrator
        self.deliveries = deliveries
        self.runs = runs
        self.cache = cache or orchestrator.cache
        self.audit = audit or get_audit_logger()
        self.pending_limit = int(pending_limit or SCHEDULER["pending_limit"])
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    async def run(self, trigger: RunTrigger = RunTrigger.SCHEDULED) -> Optional[ReconciliationRun]:
        if not self._lock.acquire(blocking=False):
            self.audit.warning("reconciliation_skipped", data={"trigger": trigger.value, "reason": "run already in progress"})
            return None
        try:
            return await self._run_locked(trigger)
        finally:
            self._lock.release()

    def run_sync(self, trigger: RunTrigger = RunTrigger.SCHEDULED) -> Optional[ReconciliationRun]:
        """Run to completion in a fresh event loop on the calling thread."""
        return asyncio.run(self.run(trigger))

    async def _run_locked(self, trigger: RunTrigger) -> ReconciliationRun:
        run = ReconciliationRun(id=None, trigger=trigger.value, status=RunStatus.RUNNING.value, started_at=utc_now())
        run.id = self.runs.create(run)
        self.audit.info("reconciliation_started", data={"run_id": run.id, "trigger": trigger.value})

        try:
            pending = self.deliveries.list_pending(self.pending_limit)
            by_store: dict[int, list[DeliverySnapshot]] = defaultdict(list)
            for delivery in pending:
                by_store[delivery.store_id].append(delivery)
            self.audit.info(
                "pending_deliveries_loaded",
                data={"run_id": run.id, "count": len(pending), "stores": sorted(by_store)},
            )
            requests = [d for store_id in sorted(by_store) for d in by_store[store_id]]
            items = await self.orchestrator.verify_bulk(requests)
            run.processed_count = len(items)
            for delivery, item in zip(requests, items):
                self._finalize(run, delivery, item)
        except Exception as e:
            run.status = RunStatus.FAILED.value
            run.failure_reason = f"{type(e).__name__}: {e}"
            run.ended_at = utc_now()
            self.runs.finish(run)
            self.audit.error("reconciliation_failed", e, data={"run_id": run.id})
            logger.error("Reconciliation run failed", run_id=run.id, error=str(e), exc_info=True)
            return run

        run.status = RunStatus.COMPLETED.value
        run.ended_at = utc_now()
        self.runs.finish(run)

        duration = elapsed_ms(run.started_at, run.ended_at)
        summary = {
            "run_id": run.id,
            "trigger": trigger.value,
            "processed": run.processed_count,
            "reconciled": run.reconciled_count,
            "errors": run.error_count,
        }
        self.audit.info("reconciliation_completed", data=summary, duration_ms=duration)
        logger.info("Reconciliation run completed", elapsed=format_elapsed(run.started_at, run.ended_at), **summary)
        log_business_event("reconciliation_run_completed", summary)
        return run

    def _finalize(self, run: ReconciliationRun, delivery: DeliverySnapshot, item: BulkVerificationItem) -> None:
        result = item.result
        detail: dict[str, Any] = {
            "delivery_id": delivery.delivery_id,
            "store_id": delivery.store_id,
            "match_type": result.match_type.value,
            "cache_hit": item.cache_hit,
        }

        if result.match_type.is_error:
            detail["status"] = ReconciliationOutcome.ERROR.value
            self._record_error(run, delivery, result.error or result.match_type.value, detail)
            return

        if not result.exists:
            detail["status"] = ReconciliationOutcome.NOT_FOUND.value
            detail["candidate_count"] = result.candidate_count
            run.details.append(detail)
            return

        invoice_ref, amount = self._invoice_fields(delivery, item)
        if invoice_ref and self.deliveries.is_invoice_used(invoice_ref, exclude_delivery_id=delivery.delivery_id):
            detail["status"] = ReconciliationOutcome.ALREADY_USED.value
            detail["invoice_reference"] = invoice_ref
            run.details.append(detail)
            self.audit.warning("invoice_already_used", group_id=delivery.store_id, data={"delivery_id": delivery.delivery_id, "invoice_reference": invoice_ref})
            return

        try:
            self.deliveries.mark_reconciled(delivery.delivery_id, invoice_reference=invoice_ref, amount=amount)
        except Exception as e:
            detail["status"] = ReconciliationOutcome.ERROR.value
            self._record_error(run, delivery, f"store update failed: {e}", detail)
            return

        self.cache.invalidate(delivery.key)
        run.reconciled_count += 1
        detail["status"] = ReconciliationOutcome.RECONCILED.value
        detail["invoice_reference"] = invoice_ref
        if result.supplier_mismatch:
            detail["supplier_mismatch"] = True
        run.details.append(detail)
        self.audit.info(
            "delivery_reconciled",
            group_id=delivery.store_id,
            data={"delivery_id": delivery.delivery_id, "match_type": result.match_type.value, "invoice_reference": invoice_ref},
        )

    def _invoice_fields(self, delivery: DeliverySnapshot, item: BulkVerificationItem) -> tuple[Optional[str], Optional[Decimal]]:
        """Invoice reference and amount to attach: delivery's own, else the matched record's."""
        invoice_ref = (delivery.invoice_reference or "").strip() or None
        amount: Optional[Decimal] = None
        record = item.result.matched_record or {}
        config = self.orchestrator.config_provider.get_config(delivery.store_id)
        if config is not None:
            if invoice_ref is None and config.columns.invoice_ref:
                value = record.get(config.columns.invoice_ref)
                invoice_ref = str(value).strip() if value not in (None, "") else None
            if config.columns.amount:
                amount = parse_amount(record.get(config.columns.amount))
        return invoice_ref, amount

    def _record_error(self, run: ReconciliationRun, delivery: DeliverySnapshot, message: str, detail: dict[str, Any]) -> None:
        run.error_count += 1
        run.errors.append({"delivery_id": delivery.delivery_id, "store_id": delivery.store_id, "error": message})
        detail["error"] = message
        run.details.append(detail)

    def recent_runs(self, limit: int = 20) -> list[ReconciliationRun]:
        return self.runs.list_recent(limit)


__all__ = ["ReconciliationRunner"]
