from __future__ import annotations

import logging
import threading
from typing import Optional

from yogacal.config_manager import ConfigManager
from yogacal.sync_engine import SyncEngine


logger = logging.getLogger(__name__)


class SyncScheduler:
    """Background sweep over stale feeds, plus an on-demand trigger."""

    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="yogacal-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def run_sweep(self, trigger: str) -> None:
        if not self.config_manager.load().sync.enabled:
            logger.debug("Scheduled sync disabled, skipping %s sweep", trigger)
            return
        try:
            summary = self.sync_engine.sync_due_feeds(trigger=trigger)
        except Exception:
            logger.exception("%s sweep aborted", trigger)
            return
        if summary.failed:
            logger.warning("%s sweep: %d feeds failed", trigger, summary.failed)

    def _loop(self) -> None:
        self.run_sweep("startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(30, int(config.sync.interval_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self.run_sweep("manual" if manual else "scheduled")
