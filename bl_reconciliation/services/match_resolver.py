"""Match strategy resolution.

Given a delivery and the candidate rows returned by the store's external
table, pick the first strategy of the cascade that finds a record:

    INVOICE_REF -> BL_NUMBER -> SUPPLIER_AMOUNT -> SUPPLIER_DATE -> NONE

Pure function of its inputs (apart from logging and the verified_at stamp).
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Optional

from bl_reconciliation.config import EXTERNAL_API
from bl_reconciliation.models.db.enums import MatchType
from bl_reconciliation.models.verification import ColumnMapping, DeliverySnapshot, VerificationResult
from bl_reconciliation.utils import get_logger
from bl_reconciliation.utils.time import parse_calendar_date

logger = get_logger(__name__)

_NON_ALNUM = re.compile(r"[^0-9a-z]+")
_AMOUNT_JUNK = re.compile(r"[^0-9,.\-]")


def normalize_reference(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip().lower()


def normalize_supplier(value: Any) -> str:
    if value is None:
        return ""
    return _NON_ALNUM.sub("", str(value).lower())


def supplier_matches(left: Any, right: Any) -> bool:
    """Loose supplier comparison: normalized equality or containment either way."""
    a = normalize_supplier(left)
    b = normalize_supplier(right)
    if not a or not b:
        return False
    return a == b or a in b or b in a


def parse_amount(value: Any) -> Optional[Decimal]:
    """Parse '1 234,50 €', '1234.5', 1234.5 ... into a Decimal (None if unparseable)."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    text = _AMOUNT_JUNK.sub("", str(value))
    if not text:
        return None
    if "," in text and "." in text:
        # Whichever separator comes last is the decimal one.
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        text = text.replace(",", ".")
    try:
        return Decimal(text)
    except InvalidOperation:
        return None


@dataclass
class _StrategyHit:
    record: dict[str, Any]
    ambiguous: bool


def _first_match(candidates: list[dict[str, Any]], predicate: Callable[[dict[str, Any]], bool]) -> Optional[_StrategyHit]:
    hits = [c for c in candidates if predicate(c)]
    if not hits:
        return None
    return _StrategyHit(record=hits[0], ambiguous=len(hits) > 1)


def _candidate_date(record: dict[str, Any], columns: ColumnMapping) -> Optional[date]:
    if columns.date and record.get(columns.date) not in (None, ""):
        return parse_calendar_date(record.get(columns.date))
    return parse_calendar_date(record.get(str(EXTERNAL_API["fallback_date_column"])))


def resolve(delivery: DeliverySnapshot, candidates: Iterable[dict[str, Any]], columns: ColumnMapping) -> VerificationResult:
    rows = list(candidates)
    log_ctx = {"delivery_id": delivery.delivery_id, "store_id": delivery.store_id}

    if not rows:
        logger.info("No candidates returned for delivery", candidate_count=0, **log_ctx)
        return VerificationResult.not_found(candidate_count=0)

    count = len(rows)

    invoice_ref = normalize_reference(delivery.invoice_reference)
    if invoice_ref and columns.invoice_ref:
        hit = _first_match(rows, lambda r: normalize_reference(r.get(columns.invoice_ref)) == invoice_ref)
        if hit:
            mismatch = False
            if columns.supplier and delivery.supplier_name:
                mismatch = not supplier_matches(delivery.supplier_name, hit.record.get(columns.supplier))
            if mismatch:
                logger.warning(
                    "Invoice reference matched but supplier differs",
                    invoice_reference=delivery.invoice_reference,
                    delivery_supplier=delivery.supplier_name,
                    record_supplier=hit.record.get(columns.supplier),
                    **log_ctx,
                )
            return _matched(MatchType.INVOICE_REF, hit, count, log_ctx, supplier_mismatch=mismatch)

    bl_number = normalize_reference(delivery.bl_number)
    if bl_number and columns.bl_number:
        hit = _first_match(rows, lambda r: normalize_reference(r.get(columns.bl_number)) == bl_number)
        if hit:
            return _matched(MatchType.BL_NUMBER, hit, count, log_ctx)

    if delivery.supplier_name and columns.supplier:
        same_supplier = [r for r in rows if supplier_matches(delivery.supplier_name, r.get(columns.supplier))]

        if delivery.amount is not None and columns.amount:
            target = parse_amount(delivery.amount)
            hit = _first_match(same_supplier, lambda r: target is not None and parse_amount(r.get(columns.amount)) == target)
            if hit:
                return _matched(MatchType.SUPPLIER_AMOUNT, hit, count, log_ctx)

        if delivery.scheduled_date is not None:
            hit = _first_match(same_supplier, lambda r: _candidate_date(r, columns) == delivery.scheduled_date)
            if hit:
                return _matched(MatchType.SUPPLIER_DATE, hit, count, log_ctx)

    logger.info("Candidates returned but no strategy matched", candidate_count=count, **log_ctx)
    return VerificationResult.not_found(candidate_count=count)


def _matched(match_type: MatchType, hit: _StrategyHit, count: int, log_ctx: dict[str, Any], *, supplier_mismatch: bool = False) -> VerificationResult:
    if hit.ambiguous:
        logger.warning("Several candidates satisfy the winning strategy; using the first", match_type=match_type.value, candidate_count=count, **log_ctx)
    else:
        logger.debug("Delivery matched", match_type=match_type.value, candidate_count=count, **log_ctx)
    return VerificationResult.matched(
        match_type,
        hit.record,
        candidate_count=count,
        ambiguous=hit.ambiguous,
        supplier_mismatch=supplier_mismatch,
    )


__all__ = ["resolve", "supplier_matches", "parse_amount", "normalize_supplier", "normalize_reference"]
