"""Synchronization operations for the Replica facade."""

import logging
import threading
from typing import Any, Dict, List, Optional

from worksync.protocols import (
    ConfigError,
    ImportAbortedError,
    RemoteError,
    classify_error,
    error_message,
)
from worksync.sync.importer import LAST_APP_CLOSE, summary_key
from worksync.types import ImportMode, SyncState

logger = logging.getLogger(__name__)

# Error classes that mean "try again later" rather than "something is wrong"
_STATE_FOR_ERROR = {
    "network": SyncState.OFFLINE,
    "rate_limit": SyncState.SYNCING,
}


class SyncMixin:
    """Imports, queue drains, relay polls and the status summary."""

    def _set_state(self, state: SyncState, message: Optional[str] = None) -> None:
        with self._status_lock:
            self._state = state
            self._message = message

    def _record_error(self, error: BaseException) -> None:
        kind = classify_error(error)
        self._set_state(_STATE_FOR_ERROR.get(kind, SyncState.ERROR), error_message(kind))

    def _run_import(self, mode: str, entity_types: Optional[List[str]], **kwargs) -> Dict[str, Any]:
        if self._ctx.client is None:
            return {"mode": mode, "success": False, "error": "Remote service is not configured"}

        with self._import_lock:
            self._cancel.clear()
            self._set_state(SyncState.SYNCING, f"Running {mode} import")
            try:
                report = self._importer.run(mode, entity_types, self._cancel, **kwargs)
            except ImportAbortedError as e:
                self._record_error(e.__cause__ or e)
                result = e.report.to_dict() if e.report else {"mode": mode, "success": False}
                result["error"] = str(e)
                return result
            except (RemoteError, ConfigError) as e:
                self._record_error(e)
                return {"mode": mode, "success": False, "error": str(e)}
        self._set_state(SyncState.IDLE)
        return report.to_dict()

    def import_all(
        self, entity_types: Optional[List[str]] = None, resume: bool = True
    ) -> Dict[str, Any]:
        """Full import: every remote record, never overwriting local rows."""
        return self._run_import(ImportMode.FULL.value, entity_types, resume=resume)

    def import_active(self, entity_types: Optional[List[str]] = None) -> Dict[str, Any]:
        """Refresh every record that is not completed from the remote service."""
        return self._run_import(ImportMode.ACTIVE.value, entity_types)

    def import_delta(self, entity_types: Optional[List[str]] = None) -> Dict[str, Any]:
        """Upsert everything edited remotely since the last clean close."""
        return self._run_import(ImportMode.DELTA.value, entity_types)

    def cancel_import(self) -> None:
        """Stop a running import after the page in flight."""
        self._cancel.set()

    def drain_outbound(self, limit: Optional[int] = None) -> Dict[str, Any]:
        """Push queued local changes once.

        Returns:
            Dict with pushed/failed/dropped/trashed/remaining counts
        """
        if self._ctx.client is None:
            return {"success": False, "error": "Remote service is not configured"}
        result = self._drainer.drain(limit)
        if result.failed:
            self._set_state(
                SyncState.ERROR if result.pushed == 0 else SyncState.SYNCING,
                f"{result.failed} changes failed to sync",
            )
        else:
            self._set_state(SyncState.IDLE)
        return {
            "pushed": result.pushed,
            "failed": result.failed,
            "dropped": result.dropped,
            "trashed": result.trashed,
            "remaining": result.remaining,
            "errors": result.errors,
            "success": result.success,
        }

    def poll_events(self) -> Dict[str, Any]:
        """Apply pending relay events once."""
        if self._ctx.relay is None or self._ctx.client is None:
            return {"success": False, "error": "Event relay is not configured"}
        try:
            result = self._ingestor.poll_once()
        except RemoteError as e:
            self._record_error(e)
            return {"success": False, "error": str(e)}
        return {
            "received": result.received,
            "upserted": result.upserted,
            "trashed": result.trashed,
            "skipped": result.skipped,
            "last_event_ts": result.last_event_ts,
            "acknowledged": result.acknowledged,
            "errors": result.errors,
            "success": not result.errors,
        }

    def sync(self) -> Dict[str, Any]:
        """Push local changes, then pull remote edits since the last close."""
        pushed = self.drain_outbound()
        pulled = self.import_delta()
        success = bool(pushed.get("success") and pulled.get("success"))
        return {"push": pushed, "pull": pulled, "success": success}

    def get_pending_change_count(self) -> int:
        return self._storage.queue.count_pending()

    def get_sync_status(self) -> Dict[str, Any]:
        """Summary for the shell: engine state, queue depth and sync anchors."""
        queue = self._storage.queue.get_status()
        with self._status_lock:
            state, message = self._state, self._message
        if state == SyncState.IDLE and queue["failing"]:
            message = message or f"{queue['failing']} changes waiting to retry"
        return {
            "state": state.value,
            "message": message,
            "pending_items": queue["pending"],
            "failed_items": queue["failing"],
            "last_error": queue["last_error"],
            "last_app_close": self._storage.get_app_state(LAST_APP_CLOSE),
            "last_imports": {
                mode.value: self._storage.get_app_state_json(summary_key(mode.value))
                for mode in ImportMode
            },
            "remote_configured": self._ctx.client is not None,
            "relay_configured": self._ctx.relay is not None,
            "background_running": any(task.is_running for task in self._tasks.values()),
        }
