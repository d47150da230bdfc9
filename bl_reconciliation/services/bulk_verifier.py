"""Bulk verification orchestrator.

For each request: cache lookup, and on a miss the store config, one fetch of
candidates (with bounded caller-side retry), match resolution and a cache
write. Requests are processed by a fixed pool of asyncio workers so the load
on external store APIs is capped whatever the batch size.

Store config and cache I/O run through ``asyncio.to_thread`` so a Redis or
database round-trip never stalls the other workers.

Every per-item failure becomes a classified VerificationResult in that item's
slot. Only CacheUnavailableError escapes, since without a cache the whole
subsystem is down.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

from bl_reconciliation.config import BULK_VERIFICATION
from bl_reconciliation.models.db.enums import MatchType
from bl_reconciliation.models.verification import (
    BulkVerificationItem,
    DeliverySnapshot,
    StoreConfigError,
    StoreReconciliationConfig,
    VerificationKey,
    VerificationResult,
)
from bl_reconciliation.services.external_records import FetchOutcome
from bl_reconciliation.services.match_resolver import resolve
from bl_reconciliation.services.stores import StoreConfigProvider
from bl_reconciliation.services.verification_cache import CacheUnavailableError, VerificationCache
from bl_reconciliation.utils import AuditLogger, get_audit_logger, get_logger
from bl_reconciliation.utils.backoff import compute_backoff_seconds
from bl_reconciliation.utils.circuit_breaker import CircuitBreaker

logger = get_logger(__name__)

# Non-retryable HTTP statuses: bad token, wrong table, etc.
_PERMANENT_STATUSES = {400, 401, 403, 404}


class RecordClient(Protocol):
    async def fetch_candidates(self, config: StoreReconciliationConfig, invoice_ref: Optional[str]) -> FetchOutcome: ...


@dataclass
class _BatchCounters:
    cache_hits: int = 0
    api_calls: int = 0
    errors: int = 0


def _is_retryable(outcome: FetchOutcome) -> bool:
    if outcome.error_code == "http_status":
        return outcome.status_code not in _PERMANENT_STATUSES
    return outcome.error_code in {"timeout", "transport_error"}


class BulkVerificationOrchestrator:
    def __init__(
        self,
        cache: VerificationCache,
        config_provider: StoreConfigProvider,
        client: RecordClient,
        *,
        concurrency: Optional[int] = None,
        max_attempts: Optional[int] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        audit: Optional[AuditLogger] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.cache = cache
        self.config_provider = config_provider
        self.client = client
        self.concurrency = max(1, int(concurrency or BULK_VERIFICATION["concurrency"]))
        self.max_attempts = max(1, int(max_attempts or BULK_VERIFICATION["max_attempts"]))
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.audit = audit or get_audit_logger()
        self._sleep = sleep

    async def verify(self, request: DeliverySnapshot) -> BulkVerificationItem:
        return await self._verify_one(request, _BatchCounters())

    async def verify_bulk(self, requests: Sequence[DeliverySnapshot]) -> list[BulkVerificationItem]:
        """Verify a batch; output is 1:1 with ``requests`` in input order."""
        if not requests:
            return []
        started = time.perf_counter()
        counters = _BatchCounters()

        unique: dict[VerificationKey, DeliverySnapshot] = {}
        for req in requests:
            unique.setdefault(req.key, req)

        queue: asyncio.Queue[DeliverySnapshot] = asyncio.Queue()
        for req in unique.values():
            queue.put_nowait(req)
        done: dict[VerificationKey, BulkVerificationItem] = {}

        async def worker() -> None:
            while True:
                try:
                    req = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    done[req.key] = await self._verify_one(req, counters)
                finally:
                    queue.task_done()

        workers = [asyncio.create_task(worker()) for _ in range(min(self.concurrency, len(unique)))]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

        items = [self._item_for(req, done[req.key]) for req in requests]
        lookups = len(unique)
        duration_ms = (time.perf_counter() - started) * 1000
        self.audit.info(
            "bulk_verification",
            data={
                "requested": len(requests),
                "unique": lookups,
                "cache_hits": counters.cache_hits,
                "api_calls": counters.api_calls,
                "errors": counters.errors,
                "hit_ratio": round(counters.cache_hits / lookups, 4),
                "workers": len(workers),
            },
            duration_ms=duration_ms,
        )
        return items

    @staticmethod
    def _item_for(req: DeliverySnapshot, shared: BulkVerificationItem) -> BulkVerificationItem:
        if req.delivery_id == shared.delivery_id:
            return shared
        return BulkVerificationItem(delivery_id=req.delivery_id, store_id=req.store_id, result=shared.result, cache_hit=shared.cache_hit)

    async def _verify_one(self, req: DeliverySnapshot, counters: _BatchCounters) -> BulkVerificationItem:
        key = req.key
        try:
            cached, hit = await asyncio.to_thread(self.cache.get, key)
            if hit and cached is not None:
                counters.cache_hits += 1
                return BulkVerificationItem(delivery_id=req.delivery_id, store_id=req.store_id, result=cached, cache_hit=True)

            result = await self._verify_fresh(req, counters)
            if result.is_cacheable:
                await asyncio.to_thread(self.cache.put, key, result)
        except CacheUnavailableError:
            raise
        except Exception as e:
            logger.error("Unexpected verification failure", delivery_id=req.delivery_id, store_id=req.store_id, error=str(e), exc_info=True)
            result = VerificationResult.failure(MatchType.SYSTEM_ERROR, f"{type(e).__name__}: {e}")

        if result.match_type.is_error:
            counters.errors += 1
            self.audit.error("verify_delivery", result.error or result.match_type.value, group_id=req.store_id, data={"delivery_id": req.delivery_id, "match_type": result.match_type.value})
        else:
            self.audit.debug("verify_delivery", group_id=req.store_id, data={"delivery_id": req.delivery_id, "match_type": result.match_type.value, "exists": result.exists})
        return BulkVerificationItem(delivery_id=req.delivery_id, store_id=req.store_id, result=result, cache_hit=False)

    async def _verify_fresh(self, req: DeliverySnapshot, counters: _BatchCounters) -> VerificationResult:
        config = await asyncio.to_thread(self.config_provider.get_config, req.store_id)
        if config is None:
            return VerificationResult.failure(MatchType.CONFIG_ERROR, f"Store {req.store_id} has no reconciliation config")
        try:
            config.require_complete()
        except StoreConfigError as e:
            return VerificationResult.failure(MatchType.CONFIG_ERROR, str(e))

        outcome = await self._fetch_with_retry(config, req, counters)
        if not outcome.success:
            return VerificationResult.failure(MatchType.API_ERROR, f"{outcome.error_code}: {outcome.error_message}")
        return resolve(req, outcome.records, config.columns)

    async def _fetch_with_retry(self, config: StoreReconciliationConfig, req: DeliverySnapshot, counters: _BatchCounters) -> FetchOutcome:
        store_id = config.store_id
        attempt = 0
        while True:
            allow, reason = self.circuit_breaker.allow_call(store_id)
            if not allow:
                logger.warning("External fetch skipped due to circuit breaker", store_id=store_id, delivery_id=req.delivery_id, reason=reason)
                return FetchOutcome.failed(str(reason), f"Circuit breaker denies calls to store {store_id}")

            attempt += 1
            counters.api_calls += 1
            outcome = await self.client.fetch_candidates(config, req.invoice_reference)
            if outcome.success:
                self.circuit_breaker.record_success(store_id)
                return outcome

            self.circuit_breaker.record_failure(store_id)
            if attempt >= self.max_attempts or not _is_retryable(outcome):
                return outcome
            backoff = compute_backoff_seconds(attempt)
            logger.warning(
                "External fetch retry scheduled",
                store_id=store_id,
                delivery_id=req.delivery_id,
                attempt=attempt,
                backoff_seconds=round(backoff, 2),
                error_code=outcome.error_code,
            )
            await self._sleep(backoff)


__all__ = ["BulkVerificationOrchestrator", "RecordClient"]
