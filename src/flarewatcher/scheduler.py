"""Background cadence for one operator's reconciliation loop.

Detection runs every ``detect_interval_seconds``. Monitored records are
reconciled when the operator's ``intervalMinutes`` has elapsed since the last
pass, or straight away when detection sees the IP change.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import Callable, Optional

from flarewatcher.models import DEFAULT_INTERVAL_MINUTES
from flarewatcher.reconciler import ReconciliationLoop, TickResult

logger = logging.getLogger(__name__)

MIN_DETECT_INTERVAL_SECONDS = 5


class OperatorScheduler:
    def __init__(
        self,
        loop: ReconciliationLoop,
        detect_interval_seconds: float = 10,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.loop = loop
        self.detect_interval_seconds = max(MIN_DETECT_INTERVAL_SECONDS, detect_interval_seconds)
        self._clock = clock
        self._last_reconcile: Optional[float] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def reconcile_interval_seconds(self) -> float:
        try:
            settings = self.loop.settings_store.get(self.loop.operator.id)
        except Exception as e:
            logger.warning(f"Could not read settings for '{self.loop.operator.id}': {e}")
            settings = None
        minutes = settings.interval_minutes if settings else DEFAULT_INTERVAL_MINUTES
        return minutes * 60

    def reconcile_due(self, now: float) -> bool:
        if self._last_reconcile is None:
            return True
        return now - self._last_reconcile >= self.reconcile_interval_seconds()

    def run_pending(self) -> TickResult:
        """Run one detection pass, reconciling if due or if the IP moved."""
        now = self._clock()
        due = self.reconcile_due(now)
        result = self.loop.tick(reconcile=due)
        if result.error is not None:
            return result
        if due:
            self._last_reconcile = now
        elif result.changed:
            logger.info(f"IP changed for '{self.loop.operator.id}', reconciling now")
            result = replace(result, reconciled=True, outcomes=self.loop.reconcile(result.ip))
            self._last_reconcile = now
        return result

    def run_forever(self) -> None:
        logger.info(
            f"Scheduler for '{self.loop.operator.id}' started "
            f"(detect every {self.detect_interval_seconds}s)"
        )
        while not self._stop.is_set():
            try:
                self.run_pending()
            except Exception as e:
                logger.error(f"Tick for '{self.loop.operator.id}' failed: {e}", exc_info=True)
            self._stop.wait(self.detect_interval_seconds)
        logger.info(f"Scheduler for '{self.loop.operator.id}' stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self.run_forever,
            name=f"flarewatcher-{self.loop.operator.id}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
