"""Core application configuration & tunable reconciliation rules.

Everything that may need tuning in production (external API timeout, cache
TTL, worker pool size, retry/circuit thresholds, scheduler interval) is
centralized here so it can be adjusted without diving into service logic.
Values are read from the environment once at import time; tests monkeypatch
the dicts directly.
"""
from __future__ import annotations

import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# --------------------------- External tabular API -------------------------- #
EXTERNAL_API: dict[str, float | int | str] = {
    # Hard per-request timeout; the client never retries on its own.
    "timeout_seconds": float(os.getenv("EXTERNAL_API_TIMEOUT", "10")),
    # Max rows requested per query (NocoDB caps pages at 1000).
    "page_limit": int(os.getenv("EXTERNAL_API_PAGE_LIMIT", "1000")),
    "token_header": "xc-token",
    # System column used for SUPPLIER_DATE when a store maps no date column.
    "fallback_date_column": "CreatedAt",
}

# ---------------------------- Verification Cache --------------------------- #
VERIFICATION_CACHE: dict[str, float | int | str] = {
    "backend": os.getenv("VERIFICATION_CACHE_BACKEND", "memory"),  # memory | redis
    "ttl_seconds": int(os.getenv("VERIFICATION_CACHE_TTL", str(24 * 3600))),
    "redis_url": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
    "redis_key_prefix": "blrecon:verification",
    # Redis keeps expired entries this much longer so stats/cleanup still see them.
    "redis_expiry_grace_seconds": 3600,
    "redis_socket_timeout": 2.0,
}

# ---------------------------- Bulk verification ---------------------------- #
BULK_VERIFICATION: dict[str, int] = {
    "concurrency": int(os.getenv("BULK_VERIFICATION_CONCURRENCY", "5")),
    # Total fetch attempts per item for API_ERROR outcomes (1 = no retry).
    "max_attempts": int(os.getenv("BULK_VERIFICATION_MAX_ATTEMPTS", "2")),
    "max_batch_size": 1000,
}

# --------------------------------- Backoff -------------------------------- #
BACKOFF_POLICY: dict[str, int | float] = {
    "base_seconds": 1,
    "factor": 2,          # Exponential factor
    "max_seconds": 10,
    "jitter_pct": 0.10,   # +/-10% jitter
}

# ----------------------------- Circuit Breaker ---------------------------- #
# Keyed per store: one store's broken API must not slow down the others.
CIRCUIT_BREAKER: dict[str, int | float] = {
    "failure_threshold": 5,          # Consecutive failures before OPEN
    "open_cooldown_seconds": 300,    # Stay OPEN for 5 minutes
    "half_open_probe_count": 3,      # Probes allowed in HALF_OPEN
}

# -------------------------------- Scheduler ------------------------------- #
SCHEDULER: dict[str, int | bool] = {
    "interval_minutes": int(os.getenv("RECONCILIATION_INTERVAL_MINUTES", "20")),
    "autostart": _env_bool("RECONCILIATION_AUTOSTART", True),
    "pending_limit": 5000,
}

# -------------------------------- Audit log ------------------------------- #
AUDIT_LOG: dict[str, int] = {
    "recent_buffer_size": int(os.getenv("AUDIT_RECENT_BUFFER", "500")),
}

__all__ = [
    "EXTERNAL_API",
    "VERIFICATION_CACHE",
    "BULK_VERIFICATION",
    "BACKOFF_POLICY",
    "CIRCUIT_BREAKER",
    "SCHEDULER",
    "AUDIT_LOG",
]
