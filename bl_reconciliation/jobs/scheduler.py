"""Background timer driving periodic reconciliation runs."""
from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from bl_reconciliation.config import SCHEDULER
from bl_reconciliation.jobs.reconciliation_runner import ReconciliationRunner
from bl_reconciliation.models.db.enums import RunTrigger
from bl_reconciliation.models.verification import ReconciliationRun
from bl_reconciliation.utils import get_logger
from bl_reconciliation.utils.time import utc_now

logger = get_logger(__name__)


class ReconciliationScheduler:
    """Runs ``runner.run(SCHEDULED)`` every ``interval_minutes`` on a daemon thread.

    Each tick runs in its own event loop via ``runner.run_sync``. Overlap with a
    manual run is handled by the runner's lock, so a tick that finds a run in
    flight is simply skipped.
    """

    def __init__(
        self,
        runner: ReconciliationRunner,
        interval_minutes: Optional[float] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.runner = runner
        self.interval_minutes = float(interval_minutes if interval_minutes is not None else SCHEDULER["interval_minutes"])
        if self.interval_minutes <= 0:
            raise ValueError("interval_minutes must be positive")
        self._clock = clock
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._state_lock = threading.Lock()
        self._started_at: datetime | None = None

    @property
    def interval(self) -> timedelta:
        return timedelta(minutes=self.interval_minutes)

    @property
    def active(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def start(self) -> bool:
        """Start the timer; returns False (and only logs) if already active."""
        with self._state_lock:
            if self.active:
                logger.info("Reconciliation scheduler already running", interval_minutes=self.interval_minutes)
                return False
            self._stop_event = threading.Event()
            self._started_at = self._clock()
            self._thread = threading.Thread(target=self._loop, args=(self._stop_event, self._started_at), name="reconciliation-scheduler", daemon=True)
            self._thread.start()
        logger.info("Reconciliation scheduler started", interval_minutes=self.interval_minutes)
        return True

    def stop(self, timeout: float | None = None) -> bool:
        """Stop the timer; an in-flight run finishes on its own."""
        with self._state_lock:
            if not self.active:
                logger.info("Reconciliation scheduler already stopped")
                return False
            self._stop_event.set()
            thread = self._thread
            self._started_at = None
        if timeout is not None and thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        logger.info("Reconciliation scheduler stop requested")
        return True

    async def trigger_manual(self) -> Optional[ReconciliationRun]:
        """Run a MANUAL pass on a worker thread; the caller's event loop stays free."""
        logger.info("Manual reconciliation triggered")
        return await asyncio.to_thread(self.runner.run_sync, RunTrigger.MANUAL)

    def next_run(self) -> datetime | None:
        with self._state_lock:
            started = self._started_at
        if started is None or not self.active:
            return None
        elapsed = self._clock() - started
        ticks = int(elapsed / self.interval) + 1
        return started + ticks * self.interval

    def status(self) -> dict[str, Any]:
        nxt = self.next_run()
        return {
            "active": self.active,
            "next_run": nxt.isoformat() if nxt else None,
            "interval_minutes": self.interval_minutes,
        }

    def _loop(self, stop_event: threading.Event, started: datetime) -> None:
        tick = 1
        while True:
            due = started + tick * self.interval
            wait_seconds = max(0.0, (due - self._clock()).total_seconds())
            if stop_event.wait(wait_seconds):
                return
            try:
                run = self.runner.run_sync(RunTrigger.SCHEDULED)
                if run is None:
                    logger.info("Scheduled reconciliation skipped; a run is already in progress")
            except Exception as e:  # pragma: no cover
                logger.error("Scheduled reconciliation tick failed", error=str(e), exc_info=True)
            # Stay on the start-aligned grid even if the run overran an interval.
            tick = int((self._clock() - started) / self.interval) + 1


__all__ = ["ReconciliationScheduler"]
