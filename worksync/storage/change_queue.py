"""Outbound change queue.

One entry per (entity_type, local_id). A new mutation of the same record
merges into the pending entry, so the drain pushes the latest state once.
Entries are deleted only after the remote service acknowledges them.
"""

import logging
import sqlite3
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from worksync.types import ChangeOperation, QueuedChange

if TYPE_CHECKING:
    from worksync.storage.sqlite import SQLiteStorage

logger = logging.getLogger(__name__)


class ChangeQueue:
    """Queue operations over the ``sync_queue`` table.

    Methods taking a ``conn`` run inside the caller's transaction, so the
    entry is written atomically with the local mutation it describes.
    """

    def __init__(self, host: "SQLiteStorage"):
        self._host = host

    def enqueue(
        self,
        conn: sqlite3.Connection,
        entity_type: str,
        local_id: str,
        operation: str,
        payload: Optional[Dict[str, Any]] = None,
        changed_fields: Optional[List[str]] = None,
        remote_id: Optional[str] = None,
    ) -> int:
        """Queue a change, merging into an existing entry for the same record.

        Returns:
            The queue entry id, or 0 if the change cancelled a never-pushed create.
        """
        now = self._host._now()
        payload = dict(payload or {})
        changed = list(changed_fields or payload.keys())

        existing = conn.execute(
            "SELECT * FROM sync_queue WHERE entity_type = ? AND local_id = ?",
            (entity_type, local_id),
        ).fetchone()

        if existing is None:
            cursor = conn.execute(
                """INSERT INTO sync_queue
                   (entity_type, local_id, remote_id, operation, payload, changed_fields,
                    retry_count, pending_since, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)""",
                (
                    entity_type,
                    local_id,
                    remote_id,
                    operation,
                    self._host._to_json(payload),
                    self._host._to_json(changed),
                    now,
                    now,
                ),
            )
            return cursor.lastrowid

        previous_op = existing["operation"]
        if previous_op == ChangeOperation.CREATE.value and operation == ChangeOperation.DELETE.value:
            # Never reached the remote side, nothing to delete there
            conn.execute("DELETE FROM sync_queue WHERE id = ?", (existing["id"],))
            return 0

        merged_payload = self._host._from_json(existing["payload"]) or {}
        merged_payload.update(payload)
        merged_fields = self._host._from_json(existing["changed_fields"]) or []
        merged_fields += [f for f in changed if f not in merged_fields]
        if previous_op == ChangeOperation.CREATE.value:
            operation = ChangeOperation.CREATE.value

        conn.execute(
            """UPDATE sync_queue
               SET operation = ?,
                   payload = ?,
                   changed_fields = ?,
                   remote_id = COALESCE(?, remote_id),
                   updated_at = ?
               WHERE id = ?""",
            (
                operation,
                self._host._to_json(merged_payload),
                self._host._to_json(merged_fields),
                remote_id,
                now,
                existing["id"],
            ),
        )
        return existing["id"]

    def list_pending(self, limit: int = 25) -> List[QueuedChange]:
        """Oldest entries first."""
        with self._host._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_queue ORDER BY pending_since, id LIMIT ?", (limit,)
            ).fetchall()
        return [self._row_to_change(row) for row in rows]

    def get_entry(self, entity_type: str, local_id: str) -> Optional[QueuedChange]:
        with self._host._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sync_queue WHERE entity_type = ? AND local_id = ?",
                (entity_type, local_id),
            ).fetchone()
        return self._row_to_change(row) if row else None

    def count_pending(self) -> int:
        with self._host._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM sync_queue").fetchone()[0]

    def count_failed(self) -> int:
        """Entries that have failed at least once and are still queued."""
        with self._host._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM sync_queue WHERE retry_count > 0").fetchone()[
                0
            ]

    def has_pending(self, conn: sqlite3.Connection, entity_type: str, local_id: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM sync_queue WHERE entity_type = ? AND local_id = ?",
            (entity_type, local_id),
        ).fetchone()
        return row is not None

    def complete(self, conn: sqlite3.Connection, change: QueuedChange) -> bool:
        """Delete an acknowledged entry unless it was merged with a newer change.

        Returns:
            True if the entry was removed.
        """
        cursor = conn.execute(
            "DELETE FROM sync_queue WHERE id = ? AND updated_at = ?",
            (change.id, change.updated_at),
        )
        if cursor.rowcount == 0:
            logger.debug(
                f"Queue entry {change.id} changed during push; keeping it for the next drain"
            )
            return False
        return True

    def promote_create(self, conn: sqlite3.Connection, change_id: int, remote_id: str) -> bool:
        """Turn a surviving create entry into an update of ``remote_id``.

        Used when a create was acknowledged but the entry picked up newer
        local edits during the push; pushing it as a create again would make
        a second remote record.
        """
        cursor = conn.execute(
            """UPDATE sync_queue
               SET operation = ?, remote_id = ?
               WHERE id = ? AND operation = ?""",
            (
                ChangeOperation.UPDATE.value,
                remote_id,
                change_id,
                ChangeOperation.CREATE.value,
            ),
        )
        return cursor.rowcount > 0

    def mark_failed(self, change_id: int, error: str) -> int:
        """Record a delivery failure and increment the retry count."""
        with self._host._connect() as conn:
            conn.execute(
                """UPDATE sync_queue
                   SET retry_count = retry_count + 1,
                       last_error = ?
                   WHERE id = ?""",
                (error[:500], change_id),
            )
            row = conn.execute(
                "SELECT retry_count FROM sync_queue WHERE id = ?", (change_id,)
            ).fetchone()
        return row["retry_count"] if row else 0

    def drop(self, change_id: int) -> None:
        with self._host._connect() as conn:
            conn.execute("DELETE FROM sync_queue WHERE id = ?", (change_id,))

    def clear_for_entity(self, conn: sqlite3.Connection, entity_type: str, local_id: str) -> None:
        conn.execute(
            "DELETE FROM sync_queue WHERE entity_type = ? AND local_id = ?",
            (entity_type, local_id),
        )

    def get_status(self) -> Dict[str, Any]:
        """Counts of queued changes by entity type and operation."""
        with self._host._connect() as conn:
            rows = conn.execute(
                """SELECT entity_type, operation, COUNT(*) AS n,
                          SUM(CASE WHEN retry_count > 0 THEN 1 ELSE 0 END) AS failing
                   FROM sync_queue
                   GROUP BY entity_type, operation"""
            ).fetchall()
            last_error = conn.execute(
                """SELECT last_error FROM sync_queue
                   WHERE last_error IS NOT NULL
                   ORDER BY updated_at DESC LIMIT 1"""
            ).fetchone()

        by_entity: Dict[str, Dict[str, int]] = {}
        total = failing = 0
        for row in rows:
            by_entity.setdefault(row["entity_type"], {})[row["operation"]] = row["n"]
            total += row["n"]
            failing += row["failing"] or 0
        return {
            "pending": total,
            "failing": failing,
            "by_entity": by_entity,
            "last_error": last_error["last_error"] if last_error else None,
        }

    def _row_to_change(self, row: sqlite3.Row) -> QueuedChange:
        return QueuedChange(
            id=row["id"],
            entity_type=row["entity_type"],
            local_id=row["local_id"],
            operation=row["operation"],
            payload=self._host._from_json(row["payload"]) or {},
            changed_fields=self._host._from_json(row["changed_fields"]) or [],
            remote_id=row["remote_id"],
            retry_count=row["retry_count"] or 0,
            last_error=row["last_error"],
            pending_since=row["pending_since"],
            updated_at=row["updated_at"],
        )
