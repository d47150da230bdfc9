"""In-memory circuit breaker for external store APIs (process-local, keyed per store)."""
from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Hashable

from bl_reconciliation.config import CIRCUIT_BREAKER
from bl_reconciliation.utils.time import utc_now


@dataclass
class BreakerState:
    failures: int = 0
    state: str = "CLOSED"
    opened_at: datetime | None = None
    half_open_probes: int = 0


class CircuitBreaker:
    def __init__(self, *, clock: Callable[[], datetime] = utc_now):
        self._states: Dict[Hashable, BreakerState] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _get(self, key: Hashable) -> BreakerState:
        return self._states.setdefault(key, BreakerState())

    def allow_call(self, key: Hashable) -> tuple[bool, str | None]:
        with self._lock:
            st = self._get(key)
            if st.state == "CLOSED":
                return True, None
            if st.state == "OPEN":
                cooldown = float(CIRCUIT_BREAKER["open_cooldown_seconds"])
                if st.opened_at and self._clock() - st.opened_at >= timedelta(seconds=cooldown):
                    st.state = "HALF_OPEN"
                    st.half_open_probes = 0
                else:
                    return False, "circuit_open"
            if st.state == "HALF_OPEN":
                probe_limit = int(CIRCUIT_BREAKER["half_open_probe_count"])
                if st.half_open_probes >= probe_limit:
                    return False, "half_open_probe_exhausted"
                st.half_open_probes += 1
                return True, None
            return True, None

    def record_success(self, key: Hashable) -> None:
        with self._lock:
            st = self._get(key)
            st.failures = 0
            if st.state in {"OPEN", "HALF_OPEN"}:
                st.state = "CLOSED"
                st.opened_at = None
                st.half_open_probes = 0

    def record_failure(self, key: Hashable) -> None:
        with self._lock:
            st = self._get(key)
            st.failures += 1
            threshold = int(CIRCUIT_BREAKER["failure_threshold"])
            if st.state == "CLOSED" and st.failures >= threshold:
                st.state = "OPEN"
                st.opened_at = self._clock()
            elif st.state == "HALF_OPEN":
                st.state = "OPEN"
                st.opened_at = self._clock()

    def reset(self) -> None:
        with self._lock:
            self._states.clear()

    def snapshot(self) -> dict[str, dict[str, object]]:
        with self._lock:
            return {
                str(k): {
                    "failures": v.failures,
                    "state": v.state,
                    "opened_at": v.opened_at.isoformat() if v.opened_at else None,
                    "half_open_probes": v.half_open_probes,
                }
                for k, v in self._states.items()
            }


__all__ = ["CircuitBreaker", "BreakerState"]
