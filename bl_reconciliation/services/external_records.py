"""HTTP client for a store's external invoice table (NocoDB-style REST API).

One call = one GET with a hard timeout. Failures are classified into a
FetchOutcome instead of being raised; retry policy belongs to the caller.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

import aiohttp

from bl_reconciliation.config import EXTERNAL_API
from bl_reconciliation.models.verification import StoreReconciliationConfig
from bl_reconciliation.utils import get_logger
from bl_reconciliation.utils.observability import mask_secret
from bl_reconciliation.utils.time import utc_now, elapsed_ms

logger = get_logger(__name__)


@dataclass
class FetchOutcome:
    success: bool
    records: list[dict[str, Any]] = field(default_factory=list)
    error_code: str | None = None
    error_message: str | None = None
    status_code: int | None = None

    @classmethod
    def failed(cls, error_code: str, error_message: str, status_code: int | None = None) -> "FetchOutcome":
        return cls(success=False, error_code=error_code, error_message=error_message, status_code=status_code)


def build_records_url(config: StoreReconciliationConfig) -> str:
    base = (config.base_url or "").rstrip("/")
    if config.project_id:
        return f"{base}/api/v1/db/data/noco/{config.project_id}/{config.table_id}"
    return f"{base}/api/v2/tables/{config.table_id}/records"


def build_where(column: str, value: str) -> str:
    return f"({column},eq,{value})"


class ExternalRecordClient:
    """Fetches candidate invoice records for one delivery.

    A ``session`` may be injected (tests, connection reuse); otherwise a
    short-lived ``aiohttp.ClientSession`` is opened per call.
    """

    def __init__(self, *, timeout_seconds: Optional[float] = None, page_limit: Optional[int] = None, session: Optional[aiohttp.ClientSession] = None):
        self.timeout_seconds = float(timeout_seconds if timeout_seconds is not None else EXTERNAL_API["timeout_seconds"])
        self.page_limit = int(page_limit if page_limit is not None else EXTERNAL_API["page_limit"])
        self._session = session

    async def fetch_candidates(self, config: StoreReconciliationConfig, invoice_ref: Optional[str]) -> FetchOutcome:
        """Query rows whose invoice column equals ``invoice_ref`` exactly.

        An empty reference skips the filter and returns the first page, which
        lets BL/supplier strategies run for deliveries without an invoice.
        """
        params: dict[str, str] = {"limit": str(self.page_limit)}
        ref = (invoice_ref or "").strip()
        if ref:
            params["where"] = build_where(str(config.columns.invoice_ref), ref)
        return await self._get(config, params, operation="fetch_candidates")

    async def check_connection(self, config: StoreReconciliationConfig) -> FetchOutcome:
        """Fetch a single row to validate URL, table id and token."""
        return await self._get(config, {"limit": "1"}, operation="check_connection")

    async def _get(self, config: StoreReconciliationConfig, params: dict[str, str], *, operation: str) -> FetchOutcome:
        url = build_records_url(config)
        headers = {str(EXTERNAL_API["token_header"]): config.api_token or ""}
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        started = utc_now()

        logger.debug(
            "External records request",
            operation=operation,
            store_id=config.store_id,
            url=url,
            where=params.get("where"),
            token=mask_secret(config.api_token),
        )
        try:
            if self._session is not None:
                outcome = await self._request(self._session, url, headers, params, timeout)
            else:
                async with aiohttp.ClientSession(timeout=timeout) as session:
                    outcome = await self._request(session, url, headers, params, timeout)
        except asyncio.TimeoutError:
            outcome = FetchOutcome.failed("timeout", f"External API did not answer within {self.timeout_seconds:g}s")
        except aiohttp.ClientError as e:
            outcome = FetchOutcome.failed("transport_error", str(e) or type(e).__name__)

        duration = round(elapsed_ms(started), 2)
        if outcome.success:
            logger.debug(
                "External records fetched",
                operation=operation,
                store_id=config.store_id,
                record_count=len(outcome.records),
                duration_ms=duration,
            )
        else:
            logger.warning(
                "External records request failed",
                operation=operation,
                store_id=config.store_id,
                error_code=outcome.error_code,
                status_code=outcome.status_code,
                error=outcome.error_message,
                duration_ms=duration,
            )
        return outcome

    async def _request(
        self,
        session: aiohttp.ClientSession,
        url: str,
        headers: dict[str, str],
        params: dict[str, str],
        timeout: aiohttp.ClientTimeout,
    ) -> FetchOutcome:
        async with session.get(url, headers=headers, params=params, timeout=timeout) as response:
            if response.status < 200 or response.status >= 300:
                body = await response.text()
                return FetchOutcome.failed("http_status", f"HTTP {response.status}: {body[:200]}", status_code=response.status)
            try:
                data = await response.json(content_type=None)
            except ValueError as e:
                return FetchOutcome.failed("invalid_payload", f"Response is not JSON: {e}", status_code=response.status)

        rows = data.get("list") if isinstance(data, dict) else None
        if not isinstance(rows, list):
            return FetchOutcome.failed("invalid_payload", "Response has no 'list' array", status_code=response.status)
        records = [row for row in rows if isinstance(row, dict)]
        return FetchOutcome(success=True, records=records, status_code=response.status)


__all__ = ["ExternalRecordClient", "FetchOutcome", "build_records_url", "build_where"]
