from __future__ import annotations

import logging
import threading
from typing import Optional

from vikunja_gcal.sync_engine import SyncEngine


logger = logging.getLogger(__name__)

MIN_INTERVAL_SECONDS = 30


class SyncScheduler:
    """Runs sync cycles on a fixed interval in a background thread.

    Manual triggers set an event instead of starting a second cycle, so any
    number of triggers that arrive while a cycle is running collapse into a
    single follow-up run.
    """

    def __init__(self, sync_engine: SyncEngine, interval_seconds: int) -> None:
        self.sync_engine = sync_engine
        self.interval_seconds = max(MIN_INTERVAL_SECONDS, int(interval_seconds))
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="vikunja-gcal-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> bool:
        """Request a run; returns False when one was already pending."""
        already_pending = self._manual_trigger_event.is_set()
        self._manual_trigger_event.set()
        return not already_pending

    def _loop(self) -> None:
        self.sync_engine.run_once(trigger="startup")

        while not self._stop_event.is_set():
            manual = self._manual_trigger_event.wait(timeout=self.interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self.sync_engine.run_once(trigger="manual" if manual else "scheduled")
        logger.info("Scheduler stopped")
