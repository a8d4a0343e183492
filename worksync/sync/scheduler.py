"""Periodic background work with skip-if-busy ticks."""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run ``fn`` every ``interval`` seconds on a daemon thread.

    The task owns its cancellation handle: :meth:`stop` sets an event the
    loop waits on, so shutdown never waits out a full interval. A tick that
    finds the previous run still holding the lock (for example a manual
    :meth:`tick` racing the timer) is skipped rather than queued.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        fn: Callable[[], object],
        run_immediately: bool = False,
    ):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.name = name
        self.interval = interval
        self._fn = fn
        self._run_immediately = run_immediately
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0
        self.skipped = 0
        self.failures = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"worksync-{self.name}", daemon=True)
        self._thread.start()
        logger.debug(f"Started periodic task {self.name} every {self.interval}s")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def tick(self) -> bool:
        """Run once unless a run is already in progress. Returns whether it ran."""
        if not self._lock.acquire(blocking=False):
            self.skipped += 1
            logger.debug(f"Skipping {self.name} tick; previous run still in progress")
            return False
        try:
            self._fn()
            self.runs += 1
        except Exception as e:
            # The loop must outlive a failed tick; the next tick retries
            self.failures += 1
            logger.warning(f"Periodic task {self.name} failed: {e}")
        finally:
            self._lock.release()
        return True

    def _loop(self) -> None:
        if self._run_immediately and not self._stop.is_set():
            self.tick()
        while not self._stop.wait(self.interval):
            self.tick()
