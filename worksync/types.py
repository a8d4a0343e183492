"""Shared types for worksync.

Enums, record dataclasses and the result objects returned by the import,
drain and event-ingestion engines. Everything here is plain data so the
shell layer can serialize it without touching storage or the network.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

EPOCH = "1970-01-01T00:00:00+00:00"


def utc_now() -> str:
    """Get current timestamp as ISO string in UTC."""
    return datetime.now(timezone.utc).isoformat()


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse an ISO datetime string, returning None for empty or invalid input.

    Naive values are assumed to be UTC so remote and local timestamps compare.
    """
    if not s:
        return None
    try:
        parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# === Enums ===


class EntityType(str, Enum):
    """Domain types replicated locally."""

    TASK = "task"
    PROJECT = "project"
    TIME_LOG = "time_log"


class SyncStatus(str, Enum):
    """Sync status for a local record."""

    PENDING = "pending"  # Local changes waiting in the outbound queue
    SYNCED = "synced"  # Matches the last known remote state
    CONFLICT = "conflict"  # Remote overwrote a row that still has a queued change
    LOCAL_ONLY = "local_only"  # Never pushed (local setup mode)
    TRASHED = "trashed"  # Hidden from default queries until purged


class ChangeOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class EventKind(str, Enum):
    """Normalized relay event types."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    RESTORED = "restored"


class ImportMode(str, Enum):
    FULL = "full"
    ACTIVE = "active"
    DELTA = "delta"


class SyncState(str, Enum):
    """Coarse engine state reported to the shell."""

    IDLE = "idle"
    SYNCING = "syncing"
    OFFLINE = "offline"
    ERROR = "error"


# === Records ===


@dataclass
class EntityRecord:
    """One row of an entity table, with typed fields unpacked into ``fields``."""

    local_id: str
    entity_type: str
    fields: Dict[str, Any] = field(default_factory=dict)
    remote_id: Optional[str] = None
    remote_unique_id: Optional[str] = None
    sync_status: str = SyncStatus.PENDING.value
    local_modified_at: Optional[str] = None
    remote_modified_at: Optional[str] = None
    field_local_ts: Dict[str, str] = field(default_factory=dict)
    field_notion_ts: Dict[str, str] = field(default_factory=dict)
    trashed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RemoteRecord:
    """A remote page mapped onto local field names."""

    remote_id: str
    fields: Dict[str, Any] = field(default_factory=dict)
    unique_id: Optional[str] = None
    remote_modified_at: Optional[str] = None
    relation_ids: List[str] = field(default_factory=list)
    archived: bool = False
    parent_id: Optional[str] = None


@dataclass
class QueuedChange:
    """A local mutation waiting to be pushed."""

    id: int
    entity_type: str
    local_id: str
    operation: str  # 'create', 'update', 'delete'
    payload: Dict[str, Any] = field(default_factory=dict)
    changed_fields: List[str] = field(default_factory=list)
    remote_id: Optional[str] = None
    retry_count: int = 0
    last_error: Optional[str] = None
    pending_since: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class RemoteEvent:
    """A remote-originated change notification delivered by the relay."""

    id: str
    kind: Optional[EventKind]  # None for event types the replica ignores
    timestamp: int  # Relay timestamps are epoch milliseconds
    entity_id: str
    raw_type: str = ""


# === Results ===


@dataclass
class PageResult:
    """One page of a remote collection query."""

    records: List[Dict[str, Any]] = field(default_factory=list)
    has_more: bool = False
    next_cursor: Optional[str] = None
    page_size: Optional[int] = None
    skipped_cursor: Optional[str] = None


@dataclass
class ImportResult:
    """Progress counters for one entity type in one import run."""

    entity_type: str
    mode: str
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    links: int = 0
    pages: int = 0
    retries: int = 0
    completed: bool = False
    cancelled: bool = False
    skipped_cursors: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.inserted + self.updated + self.skipped


@dataclass
class ImportReport:
    """Combined result of an import across entity types."""

    mode: str
    results: Dict[str, ImportResult] = field(default_factory=dict)
    time_ms: int = 0

    @property
    def success(self) -> bool:
        return all(r.completed and not r.errors for r in self.results.values())

    @property
    def cancelled(self) -> bool:
        return any(r.cancelled for r in self.results.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "success": self.success,
            "cancelled": self.cancelled,
            "time_ms": self.time_ms,
            "results": {name: asdict(r) for name, r in self.results.items()},
        }


@dataclass
class DrainResult:
    """Outcome of one outbound queue drain cycle."""

    pushed: int = 0
    failed: int = 0
    dropped: int = 0
    trashed: int = 0
    remaining: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0


@dataclass
class PollResult:
    """Outcome of one relay poll."""

    received: int = 0
    upserted: int = 0
    trashed: int = 0
    skipped: int = 0
    last_event_ts: Optional[int] = None
    acknowledged: bool = False
    errors: List[str] = field(default_factory=list)
