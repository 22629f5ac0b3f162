"""
Periodic task runner.

Runs a callback on a fixed interval on a daemon thread. Overlapping runs are
skipped, not queued: if a run is still in progress when the next one is due
(or when run_once() is called from another thread) the new run is dropped.
"""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run a callback every `interval_seconds` on a background thread."""

    def __init__(self, name: str, callback: Callable[[], object], interval_seconds: float):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.callback = callback
        self.interval = interval_seconds

        self.running = False
        self.thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._in_progress = threading.Lock()
        self.runs = 0
        self.skipped = 0
        self.failures = 0

    def start(self, run_immediately: bool = True):
        if self.running:
            logger.warning(f"Periodic task {self.name} already running")
            return

        self.running = True
        self._stop_event.clear()
        self.thread = threading.Thread(
            target=self._loop,
            args=(run_immediately,),
            name=f"periodic-{self.name}",
            daemon=True,
        )
        self.thread.start()
        logger.info(f"Started periodic task {self.name} (every {self.interval}s)")

    def stop(self, timeout: float = 5.0):
        self.running = False
        self._stop_event.set()
        if self.thread:
            self.thread.join(timeout=timeout)
            self.thread = None
        logger.info(f"Stopped periodic task {self.name}")

    def run_once(self) -> bool:
        """Run the callback now unless a run is already in progress."""
        if not self._in_progress.acquire(blocking=False):
            self.skipped += 1
            logger.debug(f"Periodic task {self.name} still in progress, skipping run")
            return False
        try:
            self.callback()
            self.runs += 1
            return True
        except Exception as e:
            self.failures += 1
            logger.error(f"Error in periodic task {self.name}: {e}", exc_info=True)
            return False
        finally:
            self._in_progress.release()

    @property
    def in_progress(self) -> bool:
        return self._in_progress.locked()

    def _loop(self, run_immediately: bool):
        if run_immediately:
            self.run_once()
        while self.running and not self._stop_event.wait(self.interval):
            self.run_once()
