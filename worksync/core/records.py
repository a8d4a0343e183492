"""Record reads and local writes for the Replica facade."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from worksync.types import EntityType

logger = logging.getLogger(__name__)


class RecordsMixin:
    """Shell-facing record operations. Everything returns plain dicts."""

    def get_records(
        self,
        entity_type: str = EntityType.TASK.value,
        include_trashed: bool = False,
        status: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        records = self._storage.get_records(
            entity_type, include_trashed=include_trashed, status=status, limit=limit
        )
        return [record.to_dict() for record in records]

    def get_record(
        self, record_id: str, entity_type: str = EntityType.TASK.value
    ) -> Optional[Dict[str, Any]]:
        record = self._storage.get_record(entity_type, record_id)
        return record.to_dict() if record else None

    def create_local(
        self, payload: Dict[str, Any], entity_type: str = EntityType.TASK.value
    ) -> Dict[str, Any]:
        """Create a record locally. It is queued for push unless setup mode is local."""
        local_only = self.get_setup_mode() == "local"
        record = self._storage.create_local(entity_type, payload, local_only=local_only)
        return record.to_dict()

    def update_local(
        self, record_id: str, patch: Dict[str, Any], entity_type: str = EntityType.TASK.value
    ) -> Dict[str, Any]:
        """Apply ``patch`` to a record found by local id, remote id or unique id."""
        return self._storage.update_local(entity_type, record_id, patch).to_dict()

    def trash_local(self, record_id: str, entity_type: str = EntityType.TASK.value) -> Dict[str, Any]:
        return self._storage.trash_local(entity_type, record_id).to_dict()

    def purge_trash(self, older_than_days: Optional[int] = None) -> int:
        """Permanently delete trashed records, optionally only those older than N days."""
        older_than = None
        if older_than_days is not None:
            if older_than_days < 0:
                raise ValueError("older_than_days must not be negative")
            cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
            older_than = cutoff.isoformat()
        return self._storage.purge_trashed(older_than)

    def get_counts(self) -> Dict[str, int]:
        return self._storage.get_counts()

    def is_database_empty(self) -> bool:
        return self._storage.is_empty()
