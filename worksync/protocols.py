"""
worksync Protocol Definitions
=============================

Interface contracts between the sync engines and their collaborators,
plus the error hierarchy every component raises.

Components:
- Local Store:    SQLite replica. Owns local ids and the outbound queue.
- Remote API:     The authoritative workspace service (paged queries, writes).
- Event Relay:    Push relay holding remote-originated change notifications.

Error handling philosophy:
- Transient remote failures (429/503/504, timeouts) raise TransientRemoteError
  once the component's own retry policy is exhausted
- Permanent remote failures (other 4xx/5xx, malformed bodies) raise
  PermanentRemoteError and are never retried automatically
- A stored snapshot that fails to parse is logged and skipped, never raised
- A duplicate remote unique id means "already synchronized", not an error
- Invalid arguments raise ValueError
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from worksync.types import PageResult, RemoteEvent

# =============================================================================
# ERRORS
# =============================================================================


class WorkSyncError(Exception):
    """Base for all worksync errors."""


class ConfigError(WorkSyncError):
    """Configuration is missing or invalid."""


class StorageError(WorkSyncError):
    """Local store operation failed."""


class MigrationError(StorageError):
    """A schema migration failed and was rolled back."""

    def __init__(self, migration_id: str, cause: Exception):
        self.migration_id = migration_id
        self.cause = cause
        super().__init__(f"Migration {migration_id} failed: {cause}")


class RemoteError(WorkSyncError):
    """A call to the remote service or relay failed.

    ``error_class`` is one of the kinds returned by :func:`classify_error`.
    """

    error_class = "unknown"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class TransientRemoteError(RemoteError):
    """Rate limit, unavailable, gateway timeout or network failure."""

    error_class = "network"

    def __init__(
        self, message: str, status_code: Optional[int] = None, timed_out: bool = False
    ):
        super().__init__(message, status_code)
        self.timed_out = timed_out
        if status_code == 429:
            self.error_class = "rate_limit"


class PermanentRemoteError(RemoteError):
    """A failure no retry policy covers."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, status_code)
        if status_code in (401, 403):
            self.error_class = "auth"
        elif status_code in (400, 409, 422):
            self.error_class = "validation"


class RecordNotFoundError(PermanentRemoteError):
    error_class = "not_found"

    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"Remote record not found: {record_id}", 404)


class ImportAbortedError(WorkSyncError):
    """An import stopped on a non-retryable error.

    ``report`` holds the counters for every page committed before the abort.
    """

    def __init__(self, message: str, report: Any = None):
        self.report = report
        super().__init__(message)


_ERROR_MESSAGES = {
    "network": "Unable to reach the remote service. Changes are saved locally.",
    "auth": "The remote service rejected the credentials. Check the API key.",
    "rate_limit": "The remote service is rate limiting requests. Retrying shortly.",
    "not_found": "The remote record no longer exists.",
    "validation": "The remote service rejected the change as invalid.",
    "unknown": "Sync failed with an unexpected error.",
}


def classify_error(exc: BaseException) -> str:
    """Map an exception to one of: network, auth, rate_limit, not_found, validation, unknown."""
    if isinstance(exc, RemoteError):
        return exc.error_class
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return "network"
    return "unknown"


def error_message(error_class: str) -> str:
    return _ERROR_MESSAGES.get(error_class, _ERROR_MESSAGES["unknown"])


# =============================================================================
# PROTOCOLS
# =============================================================================


@runtime_checkable
class RemoteAPI(Protocol):
    """The remote workspace service as seen by the engines."""

    def resolve_data_source(self, resource_id: str) -> str: ...

    def query_page(
        self,
        resource_id: str,
        cursor: Optional[str] = None,
        filter: Optional[Dict[str, Any]] = None,
        sorts: Optional[List[Dict[str, Any]]] = None,
        page_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ) -> PageResult: ...

    def fetch_one(
        self, record_id: str, filter_properties: Optional[List[str]] = None
    ) -> Optional[Dict[str, Any]]: ...

    def create_record(self, resource_id: str, properties: Dict[str, Any]) -> Dict[str, Any]: ...

    def update_record(self, record_id: str, properties: Dict[str, Any]) -> Dict[str, Any]: ...

    def archive_record(self, record_id: str) -> Dict[str, Any]: ...


@runtime_checkable
class EventRelay(Protocol):
    """Push relay buffering remote change notifications."""

    def fetch_events(self, since: Optional[int] = None) -> List[RemoteEvent]: ...

    def acknowledge(self, before: int) -> None: ...
