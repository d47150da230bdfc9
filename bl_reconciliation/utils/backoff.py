"""Retry delays for external store API calls."""
from __future__ import annotations

import random
from typing import Mapping, Optional

from bl_reconciliation.config import BACKOFF_POLICY


def compute_backoff_seconds(
    attempt: int,
    *,
    policy: Optional[Mapping[str, float]] = None,
    rng: Optional[random.Random] = None,
) -> float:
    """Delay before retry number ``attempt`` (1-based).

    ``base * factor ** (attempt - 1)`` capped at ``max_seconds``, then spread by
    +/- ``jitter_pct``.
    Keys missing from ``policy`` fall back to BACKOFF_POLICY.
    """
    merged = {**BACKOFF_POLICY, **(policy or {})}
    exponent = max(attempt, 1) - 1
    delay = min(float(merged["base_seconds"]) * float(merged["factor"]) ** exponent, float(merged["max_seconds"]))

    spread = delay * float(merged["jitter_pct"])
    if spread > 0:
        delay = (rng or random).uniform(delay - spread, delay + spread)
    return max(delay, 0.0)


__all__ = ["compute_backoff_seconds"]
