"""Observability helpers (correlation IDs, safe logging contexts)."""
from __future__ import annotations
import uuid
from typing import Mapping

REQUEST_ID_HEADER = "X-Request-ID"


def ensure_request_id(headers: Mapping[str, str]) -> str:
    return headers.get(REQUEST_ID_HEADER, None) or str(uuid.uuid4())


def mask_secret(value: str | None, visible: int = 6) -> str:
    """Render credentials for logs without leaking them."""
    if not value:
        return "NOT_SET"
    if len(value) <= visible:
        return "***"
    return f"{value[:visible]}..."


__all__ = ["ensure_request_id", "mask_secret", "REQUEST_ID_HEADER"]
