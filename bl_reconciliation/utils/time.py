"""Time utilities (UTC now, elapsed formatting, tolerant date parsing)."""
from __future__ import annotations
from datetime import date, datetime, timezone, timedelta
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC (SQLite drops tzinfo on round-trip)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def elapsed_ms(start: datetime, end: datetime | None = None) -> float:
    end_ts = end or utc_now()
    return (ensure_utc(end_ts) - ensure_utc(start)).total_seconds() * 1000


def format_elapsed(start: datetime, end: datetime | None = None) -> str:
    end_ts = end or utc_now()
    delta: timedelta = ensure_utc(end_ts) - ensure_utc(start)
    ms = int(delta.total_seconds() * 1000)
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60_000:
        return f"{ms/1000:.2f}s"
    return f"{delta.total_seconds()/60:.2f}m"


_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%Y/%m/%d")


def parse_calendar_date(value: Any) -> date | None:
    """Best-effort conversion of an external cell value to a calendar date.

    Accepts ``date``/``datetime`` objects, ISO-8601 strings (with or without a
    time part / offset) and the usual day-first French formats. Returns None
    for anything unparseable.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    iso = text.replace("Z", "+00:00") if text.endswith("Z") else text
    try:
        return datetime.fromisoformat(iso).date()
    except ValueError:
        pass
    head = text.split(" ")[0].split("T")[0]
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(head, fmt).date()
        except ValueError:
            continue
    return None


__all__ = ["utc_now", "ensure_utc", "elapsed_ms", "format_elapsed", "parse_calendar_date"]
