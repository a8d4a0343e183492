"""Setup gating, shutdown bookkeeping and background scheduling."""

import logging
from typing import Dict

from worksync.sync.importer import LAST_APP_CLOSE
from worksync.sync.scheduler import PeriodicTask
from worksync.types import utc_now

logger = logging.getLogger(__name__)

SETUP_COMPLETE = "setup_complete"
SETUP_MODE = "setup_mode"
SETUP_MODES = frozenset({"remote", "local"})


class LifecycleMixin:
    """First-run gating and process lifecycle for the Replica facade."""

    def is_first_time_setup(self) -> bool:
        return self._storage.get_app_state(SETUP_COMPLETE) != "true"

    def get_setup_mode(self) -> str:
        return self._storage.get_app_state(SETUP_MODE, "remote")

    def complete_setup(self, mode: str = "remote") -> None:
        """Record that first-run setup finished.

        Args:
            mode: ``remote`` to sync with the service, ``local`` to keep
                every record on this machine only.
        """
        if mode not in SETUP_MODES:
            raise ValueError(f"Invalid setup mode: {mode}")
        self._storage.set_app_state(SETUP_MODE, mode)
        self._storage.set_app_state(SETUP_COMPLETE, "true")

    def mark_app_close(self) -> str:
        """Stamp a clean shutdown so the next delta import starts here."""
        now = utc_now()
        self._storage.set_app_state(LAST_APP_CLOSE, now)
        return now

    def start_background(self) -> Dict[str, bool]:
        """Start the queue drain and relay poll timers (whichever are configured)."""
        settings = self._ctx.settings
        if self._ctx.client is not None and "drain" not in self._tasks:
            self._tasks["drain"] = PeriodicTask("drain", settings.drain_interval, self.drain_outbound)
        if self._ctx.relay is not None and self._ctx.client is not None and "poll" not in self._tasks:
            self._tasks["poll"] = PeriodicTask("poll", settings.poll_interval, self.poll_events)
        for task in self._tasks.values():
            task.start()
        return {name: task.is_running for name, task in self._tasks.items()}

    def stop_background(self) -> None:
        for task in self._tasks.values():
            task.stop()

    def close(self, mark_close: bool = True) -> None:
        """Stop background work, record a clean close and release clients.

        Pass ``mark_close=False`` for short-lived processes (one CLI command)
        that should not move the delta import anchor.
        """
        self.cancel_import()
        self.stop_background()
        if mark_close:
            self.mark_app_close()
        for resource in (self._ctx.client, self._ctx.relay):
            closer = getattr(resource, "close", None)
            if closer is not None:
                closer()
        self._storage.close()
