"""SQLite-backed local replica.

Every public method opens its own connection and runs one short
transaction, so pollers, drains and imports on different threads never
hold long-lived locks. Typed columns are the source of truth; the legacy
``payload`` column is only read by the migration back-fill.
"""

import contextlib
import json
import logging
import sqlite3
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from worksync.storage.change_queue import ChangeQueue
from worksync.storage.schema import (
    BACKFILL_MIGRATION,
    ENTITY_TABLES,
    backfill_typed_columns,
    field_types,
    run_migrations,
    table_for,
    validate_table_name,
)
from worksync.types import (
    ChangeOperation,
    EntityRecord,
    EntityType,
    ImportMode,
    QueuedChange,
    RemoteRecord,
    SyncStatus,
    parse_datetime,
    utc_now,
)

logger = logging.getLogger(__name__)

LOCAL_ID_PREFIX = "local-"
RELATION_FIELD = "project_ids"
TITLE_REQUIRED = frozenset({EntityType.TASK.value, EntityType.PROJECT.value})

INSERTED = "inserted"
UPDATED = "updated"
SKIPPED = "skipped"


class SQLiteStorage:
    """Local replica of the remote workspace.

    Args:
        db_path: Path to the database file. Parent directories are created.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.queue = ChangeQueue(self)
        self.applied_migrations = self.migrate()

    # === Connection handling ===

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Yield a connection; commit on success, roll back on error, always close."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def close(self):
        """Connections are per-operation; nothing to release."""

    def migrate(self, force_backfill: bool = False) -> List[str]:
        """Apply pending migrations and, when they introduce typed columns, back-fill them."""
        with self._connect() as conn:
            applied = run_migrations(conn)
            if force_backfill or BACKFILL_MIGRATION in applied:
                backfill_typed_columns(conn)
        return applied

    # === Helpers ===

    def _now(self) -> str:
        return utc_now()

    def _to_json(self, data: Any) -> Optional[str]:
        if data is None:
            return None
        return json.dumps(data)

    def _from_json(self, s: Optional[str]) -> Any:
        if not s:
            return None
        try:
            return json.loads(s)
        except json.JSONDecodeError:
            return None

    def _columns(self, entity_type: str) -> Dict[str, str]:
        return field_types(entity_type)

    def _to_column(self, value: Any, sql_type: str) -> Any:
        if value is None:
            return None
        if sql_type == "INTEGER":
            return 1 if value else 0
        if sql_type == "REAL":
            return float(value)
        return str(value)

    def _from_column(self, value: Any, sql_type: str) -> Any:
        if value is None:
            return None
        if sql_type == "INTEGER":
            return bool(value)
        return value

    def _validate_fields(self, entity_type: str, fields: Dict[str, Any]) -> None:
        allowed = set(self._columns(entity_type))
        if entity_type == EntityType.TASK.value:
            allowed.add(RELATION_FIELD)
        unknown = sorted(set(fields) - allowed)
        if unknown:
            raise ValueError(f"Unknown {entity_type} fields: {', '.join(unknown)}")

    def _row_to_record(
        self, entity_type: str, row: sqlite3.Row, project_ids: Optional[List[str]] = None
    ) -> EntityRecord:
        fields = {
            name: self._from_column(row[name], sql_type)
            for name, sql_type in self._columns(entity_type).items()
        }
        if entity_type == EntityType.TASK.value:
            fields[RELATION_FIELD] = project_ids or []
        return EntityRecord(
            local_id=row["local_id"],
            entity_type=entity_type,
            fields=fields,
            remote_id=row["remote_id"],
            remote_unique_id=row["remote_unique_id"],
            sync_status=row["sync_status"],
            local_modified_at=row["local_modified_at"],
            remote_modified_at=row["remote_modified_at"],
            field_local_ts=self._from_json(row["field_local_ts"]) or {},
            field_notion_ts=self._from_json(row["field_notion_ts"]) or {},
            trashed_at=row["trashed_at"],
        )

    def _links_for(self, conn: sqlite3.Connection, task_ids: List[str]) -> Dict[str, List[str]]:
        links: Dict[str, List[str]] = {}
        if not task_ids:
            return links
        placeholders = ",".join("?" for _ in task_ids)
        rows = conn.execute(
            f"""SELECT task_id, project_id FROM task_project_links
                WHERE task_id IN ({placeholders}) ORDER BY project_id""",
            task_ids,
        ).fetchall()
        for row in rows:
            links.setdefault(row["task_id"], []).append(row["project_id"])
        return links

    def _find_row(
        self, conn: sqlite3.Connection, table: str, record_id: str
    ) -> Optional[sqlite3.Row]:
        return conn.execute(
            f"""SELECT * FROM {table}
                WHERE local_id = ? OR remote_id = ? OR remote_unique_id = ?
                ORDER BY CASE WHEN local_id = ? THEN 0 ELSE 1 END
                LIMIT 1""",
            (record_id, record_id, record_id, record_id),
        ).fetchone()

    def _find_remote_match(
        self, conn: sqlite3.Connection, table: str, remote: RemoteRecord
    ) -> Optional[sqlite3.Row]:
        """Dedup lookup: unique id first (survives renames), then remote id."""
        if remote.unique_id:
            row = conn.execute(
                f"SELECT * FROM {table} WHERE remote_unique_id = ?", (remote.unique_id,)
            ).fetchone()
            if row is not None:
                return row
        return conn.execute(
            f"SELECT * FROM {table} WHERE remote_id = ?", (remote.remote_id,)
        ).fetchone()

    # === Reads ===

    def get_records(
        self,
        entity_type: str = EntityType.TASK.value,
        include_trashed: bool = False,
        status: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[EntityRecord]:
        """Records newest local edit first. Trashed rows are excluded by default."""
        table = validate_table_name(table_for(entity_type))
        query = f"SELECT * FROM {table}"
        clauses, params = [], []
        if not include_trashed:
            clauses.append("sync_status != ?")
            params.append(SyncStatus.TRASHED.value)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY local_modified_at DESC, remote_modified_at DESC, local_id"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
            links = {}
            if entity_type == EntityType.TASK.value:
                links = self._links_for(conn, [row["local_id"] for row in rows])
        return [self._row_to_record(entity_type, row, links.get(row["local_id"])) for row in rows]

    def get_record(self, entity_type: str, record_id: str) -> Optional[EntityRecord]:
        """Look a record up by local id, remote id or remote unique id (trashed included)."""
        table = validate_table_name(table_for(entity_type))
        with self._connect() as conn:
            row = self._find_row(conn, table, record_id)
            if row is None:
                return None
            links = {}
            if entity_type == EntityType.TASK.value:
                links = self._links_for(conn, [row["local_id"]])
        return self._row_to_record(entity_type, row, links.get(row["local_id"]))

    def count_records(self, entity_type: str, include_trashed: bool = False) -> int:
        table = validate_table_name(table_for(entity_type))
        query = f"SELECT COUNT(*) FROM {table}"
        params: Tuple = ()
        if not include_trashed:
            query += " WHERE sync_status != ?"
            params = (SyncStatus.TRASHED.value,)
        with self._connect() as conn:
            return conn.execute(query, params).fetchone()[0]

    def get_counts(self) -> Dict[str, int]:
        """Row counts per entity type plus the link table, trashed rows included."""
        counts = {}
        with self._connect() as conn:
            for entity_type, table in ENTITY_TABLES.items():
                counts[entity_type] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            counts["task_project_links"] = conn.execute(
                "SELECT COUNT(*) FROM task_project_links"
            ).fetchone()[0]
        return counts

    def is_empty(self) -> bool:
        counts = self.get_counts()
        return all(counts[entity_type] == 0 for entity_type in ENTITY_TABLES)

    def count_links(self, task_id: Optional[str] = None) -> int:
        with self._connect() as conn:
            if task_id is None:
                return conn.execute("SELECT COUNT(*) FROM task_project_links").fetchone()[0]
            return conn.execute(
                "SELECT COUNT(*) FROM task_project_links WHERE task_id = ?", (task_id,)
            ).fetchone()[0]

    # === Local writes ===

    def create_local(
        self, entity_type: str, fields: Dict[str, Any], local_only: bool = False
    ) -> EntityRecord:
        """Insert a locally created record and queue it for push.

        ``local_only`` records are never queued and never get a remote id.

        Raises:
            ValueError: On unknown fields or a missing title.
        """
        table = validate_table_name(table_for(entity_type))
        fields = dict(fields)
        self._validate_fields(entity_type, fields)
        if entity_type in TITLE_REQUIRED and not str(fields.get("title") or "").strip():
            raise ValueError(f"A {entity_type} needs a title")

        columns = self._columns(entity_type)
        project_ids = fields.pop(RELATION_FIELD, None) or []
        local_id = f"{LOCAL_ID_PREFIX}{uuid.uuid4()}"
        now = self._now()
        status = SyncStatus.LOCAL_ONLY if local_only else SyncStatus.PENDING
        values = {name: self._to_column(fields.get(name), columns[name]) for name in fields}
        touched = {name: now for name in fields}
        if project_ids:
            touched[RELATION_FIELD] = now

        names = ["local_id", "sync_status", "local_modified_at", "field_local_ts", *values]
        placeholders = ", ".join("?" for _ in names)
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO {table} ({', '.join(names)}) VALUES ({placeholders})",
                (local_id, status.value, now, self._to_json(touched), *values.values()),
            )
            self._add_links(conn, local_id, project_ids)
            if not local_only:
                payload = dict(fields)
                if project_ids:
                    payload[RELATION_FIELD] = list(project_ids)
                self.queue.enqueue(
                    conn, entity_type, local_id, ChangeOperation.CREATE.value, payload
                )
        logger.debug(f"Created local {entity_type} {local_id}")
        return self.get_record(entity_type, local_id)

    def update_local(self, entity_type: str, record_id: str, patch: Dict[str, Any]) -> EntityRecord:
        """Apply a local edit and queue it.

        Only fields whose value actually changes are stamped and queued.

        Raises:
            ValueError: If the record does not exist or the patch has unknown fields.
        """
        table = validate_table_name(table_for(entity_type))
        self._validate_fields(entity_type, patch)
        if "title" in patch and entity_type in TITLE_REQUIRED and not str(patch["title"] or "").strip():
            raise ValueError(f"A {entity_type} needs a title")

        current = self.get_record(entity_type, record_id)
        if current is None:
            raise ValueError(f"Unable to find {entity_type} {record_id}")

        changed = {k: v for k, v in patch.items() if current.fields.get(k) != v}
        if not changed:
            return current

        columns = self._columns(entity_type)
        now = self._now()
        local_ts = dict(current.field_local_ts)
        local_ts.update({name: now for name in changed})
        local_only = current.sync_status == SyncStatus.LOCAL_ONLY.value
        status = SyncStatus.LOCAL_ONLY if local_only else SyncStatus.PENDING
        column_values = {
            name: self._to_column(value, columns[name])
            for name, value in changed.items()
            if name in columns
        }

        assignments = ["sync_status = ?", "local_modified_at = ?", "field_local_ts = ?"]
        assignments += [f"{name} = ?" for name in column_values]
        with self._connect() as conn:
            conn.execute(
                f"UPDATE {table} SET {', '.join(assignments)} WHERE local_id = ?",
                (
                    status.value,
                    now,
                    self._to_json(local_ts),
                    *column_values.values(),
                    current.local_id,
                ),
            )
            if RELATION_FIELD in changed:
                conn.execute(
                    "DELETE FROM task_project_links WHERE task_id = ?", (current.local_id,)
                )
                self._add_links(conn, current.local_id, changed[RELATION_FIELD] or [])
            if not local_only:
                if current.remote_id:
                    self.queue.enqueue(
                        conn,
                        entity_type,
                        current.local_id,
                        ChangeOperation.UPDATE.value,
                        changed,
                        remote_id=current.remote_id,
                    )
                else:
                    full = {k: v for k, v in current.fields.items() if v not in (None, [])}
                    full.update(changed)
                    self.queue.enqueue(
                        conn, entity_type, current.local_id, ChangeOperation.CREATE.value, full
                    )
        return self.get_record(entity_type, current.local_id)

    def trash_local(self, entity_type: str, record_id: str) -> EntityRecord:
        """Move a record to the trash and queue the remote archive if it was pushed.

        Raises:
            ValueError: If the record does not exist.
        """
        table = validate_table_name(table_for(entity_type))
        current = self.get_record(entity_type, record_id)
        if current is None:
            raise ValueError(f"Unable to find {entity_type} {record_id}")
        now = self._now()
        with self._connect() as conn:
            conn.execute(
                f"""UPDATE {table}
                    SET sync_status = ?, trashed_at = ?, local_modified_at = ?
                    WHERE local_id = ?""",
                (SyncStatus.TRASHED.value, now, now, current.local_id),
            )
            if current.remote_id:
                self.queue.enqueue(
                    conn,
                    entity_type,
                    current.local_id,
                    ChangeOperation.DELETE.value,
                    remote_id=current.remote_id,
                )
            else:
                self.queue.clear_for_entity(conn, entity_type, current.local_id)
        return self.get_record(entity_type, current.local_id)

    def purge_trashed(self, older_than: Optional[str] = None) -> int:
        """Hard-delete trashed rows (optionally only those trashed before ``older_than``)."""
        cutoff = parse_datetime(older_than) if older_than else None
        purged = 0
        with self._connect() as conn:
            for entity_type, table in ENTITY_TABLES.items():
                rows = conn.execute(
                    f"SELECT local_id, trashed_at FROM {table} WHERE sync_status = ?",
                    (SyncStatus.TRASHED.value,),
                ).fetchall()
                for row in rows:
                    trashed = parse_datetime(row["trashed_at"])
                    if cutoff is not None and trashed is not None and trashed >= cutoff:
                        continue
                    if self.queue.has_pending(conn, entity_type, row["local_id"]):
                        # The remote archive has not been delivered yet
                        continue
                    conn.execute(f"DELETE FROM {table} WHERE local_id = ?", (row["local_id"],))
                    if entity_type == EntityType.TASK.value:
                        conn.execute(
                            "DELETE FROM task_project_links WHERE task_id = ?", (row["local_id"],)
                        )
                    purged += 1
        if purged:
            logger.info(f"Purged {purged} trashed records")
        return purged

    # === Remote writes ===

    def _add_links(self, conn: sqlite3.Connection, task_id: str, project_ids: Iterable[str]) -> int:
        added = 0
        for project_id in project_ids:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO task_project_links (task_id, project_id) VALUES (?, ?)",
                (task_id, project_id),
            )
            added += cursor.rowcount
        return added

    def _remote_values(
        self, entity_type: str, remote: RemoteRecord
    ) -> Tuple[Dict[str, Any], Dict[str, str]]:
        columns = self._columns(entity_type)
        stamp = remote.remote_modified_at or self._now()
        values = {
            name: self._to_column(value, columns[name])
            for name, value in remote.fields.items()
            if name in columns
        }
        touched = {name: stamp for name in values}
        if entity_type == EntityType.TASK.value and remote.relation_ids:
            touched[RELATION_FIELD] = stamp
        return values, touched

    def _insert_remote(
        self, conn: sqlite3.Connection, entity_type: str, remote: RemoteRecord, ignore: bool
    ) -> Optional[str]:
        table = table_for(entity_type)
        values, touched = self._remote_values(entity_type, remote)
        local_id = f"{LOCAL_ID_PREFIX}{uuid.uuid4()}"
        names = [
            "local_id",
            "remote_id",
            "remote_unique_id",
            "sync_status",
            "remote_modified_at",
            "field_notion_ts",
            *values,
        ]
        placeholders = ", ".join("?" for _ in names)
        verb = "INSERT OR IGNORE" if ignore else "INSERT"
        cursor = conn.execute(
            f"{verb} INTO {table} ({', '.join(names)}) VALUES ({placeholders})",
            (
                local_id,
                remote.remote_id,
                remote.unique_id,
                SyncStatus.SYNCED.value,
                remote.remote_modified_at or self._now(),
                self._to_json(touched),
                *values.values(),
            ),
        )
        if cursor.rowcount == 0:
            return None
        return local_id

    def _upsert_remote(
        self, conn: sqlite3.Connection, entity_type: str, remote: RemoteRecord
    ) -> Tuple[str, Optional[str]]:
        table = table_for(entity_type)
        existing = self._find_remote_match(conn, table, remote)

        if existing is None:
            if remote.archived:
                return SKIPPED, None
            local_id = self._insert_remote(conn, entity_type, remote, ignore=False)
            return INSERTED, local_id

        local_id = existing["local_id"]
        pending = self.queue.has_pending(conn, entity_type, local_id)
        if existing["sync_status"] == SyncStatus.TRASHED.value and pending:
            # Local delete not delivered yet; the archive push wins
            return SKIPPED, local_id
        if remote.archived:
            conn.execute(
                f"UPDATE {table} SET sync_status = ?, trashed_at = COALESCE(trashed_at, ?) "
                "WHERE local_id = ?",
                (SyncStatus.TRASHED.value, self._now(), local_id),
            )
            return UPDATED, local_id

        values, touched = self._remote_values(entity_type, remote)
        notion_ts = self._from_json(existing["field_notion_ts"]) or {}
        notion_ts.update(touched)
        status = SyncStatus.CONFLICT if pending else SyncStatus.SYNCED
        assignments = [
            "remote_id = ?",
            "remote_unique_id = COALESCE(?, remote_unique_id)",
            "sync_status = ?",
            "remote_modified_at = ?",
            "field_notion_ts = ?",
            "trashed_at = NULL",
        ]
        assignments += [f"{name} = ?" for name in values]
        conn.execute(
            f"UPDATE {table} SET {', '.join(assignments)} WHERE local_id = ?",
            (
                remote.remote_id,
                remote.unique_id,
                status.value,
                remote.remote_modified_at or self._now(),
                self._to_json(notion_ts),
                *values.values(),
                local_id,
            ),
        )
        if pending:
            logger.info(f"Remote update overwrote {entity_type} {local_id} with a queued change")
        return UPDATED, local_id

    def upsert_remote(self, entity_type: str, remote: RemoteRecord) -> str:
        """Insert or fully replace the local row for a remote record, keeping its local id."""
        counts = self.apply_page(entity_type, [remote], ImportMode.ACTIVE.value)
        for outcome in (INSERTED, UPDATED):
            if counts[outcome]:
                return outcome
        return SKIPPED

    def insert_remote_if_absent(self, entity_type: str, remote: RemoteRecord) -> str:
        """Insert a remote record unless a row with its remote or unique id exists."""
        counts = self.apply_page(entity_type, [remote], ImportMode.FULL.value)
        return INSERTED if counts[INSERTED] else SKIPPED

    def apply_page(self, entity_type: str, remotes: List[RemoteRecord], mode: str) -> Dict[str, int]:
        """Write one page of remote records in a single transaction.

        ``full`` mode never overwrites existing rows. ``active`` and ``delta``
        upsert. Duplicate unique ids count as skipped.
        """
        validate_table_name(table_for(entity_type))
        counts = {INSERTED: 0, UPDATED: 0, SKIPPED: 0, "links": 0}
        with self._connect() as conn:
            for remote in remotes:
                try:
                    if mode == ImportMode.FULL.value:
                        local_id = (
                            None
                            if remote.archived
                            else self._insert_remote(conn, entity_type, remote, ignore=True)
                        )
                        outcome = INSERTED if local_id else SKIPPED
                    else:
                        outcome, local_id = self._upsert_remote(conn, entity_type, remote)
                except sqlite3.IntegrityError as e:
                    logger.warning(
                        f"Skipping remote {entity_type} {remote.remote_id}: {e}",
                        extra={"remote_id": remote.remote_id, "unique_id": remote.unique_id},
                    )
                    counts[SKIPPED] += 1
                    continue
                counts[outcome] += 1
                if local_id and entity_type == EntityType.TASK.value and remote.relation_ids:
                    counts["links"] += self._add_links(conn, local_id, remote.relation_ids)
        return counts

    def mark_trashed_by_remote_id(self, remote_id: str) -> bool:
        """Trash whichever local row mirrors ``remote_id``. Returns False if none does."""
        compact = remote_id.replace("-", "")
        now = self._now()
        with self._connect() as conn:
            for table in ENTITY_TABLES.values():
                cursor = conn.execute(
                    f"""UPDATE {table}
                        SET sync_status = ?, trashed_at = COALESCE(trashed_at, ?)
                        WHERE remote_id = ? OR REPLACE(remote_id, '-', '') = ?""",
                    (SyncStatus.TRASHED.value, now, remote_id, compact),
                )
                if cursor.rowcount:
                    return True
        return False

    def mark_trashed(self, entity_type: str, local_id: str) -> None:
        table = validate_table_name(table_for(entity_type))
        with self._connect() as conn:
            conn.execute(
                f"""UPDATE {table}
                    SET sync_status = ?, trashed_at = COALESCE(trashed_at, ?)
                    WHERE local_id = ?""",
                (SyncStatus.TRASHED.value, self._now(), local_id),
            )

    def confirm_push(self, change: QueuedChange, remote: Optional[RemoteRecord] = None) -> bool:
        """Record a remote acknowledgement for a queued change.

        Fills in remote identity from ``remote``, drops any imported copy of
        the same remote record, deletes the queue entry and marks the row
        synced. If the entry was merged with a newer change during the push
        the row stays pending.

        Returns:
            True if the queue entry was removed.
        """
        table = validate_table_name(table_for(change.entity_type))
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM {table} WHERE local_id = ?", (change.local_id,)).fetchone()
            if row is not None and remote is not None:
                self._absorb_duplicates(conn, change.entity_type, change.local_id, remote)
                conn.execute(
                    f"""UPDATE {table}
                        SET remote_id = ?,
                            remote_unique_id = COALESCE(?, remote_unique_id),
                            remote_modified_at = COALESCE(?, remote_modified_at),
                            url = COALESCE(?, url),
                            last_edited = COALESCE(?, last_edited)
                        WHERE local_id = ?""",
                    (
                        remote.remote_id,
                        remote.unique_id,
                        remote.remote_modified_at,
                        remote.fields.get("url"),
                        remote.fields.get("last_edited"),
                        change.local_id,
                    ),
                )
            removed = self.queue.complete(conn, change)
            if not removed and remote is not None and change.operation == ChangeOperation.CREATE.value:
                self._hand_off_create(conn, change, remote, row)
            if removed and row is not None and row["sync_status"] != SyncStatus.TRASHED.value:
                conn.execute(
                    f"UPDATE {table} SET sync_status = ? WHERE local_id = ?",
                    (SyncStatus.SYNCED.value, change.local_id),
                )
        return removed

    def _hand_off_create(
        self,
        conn: sqlite3.Connection,
        change: QueuedChange,
        remote: RemoteRecord,
        row: Optional[sqlite3.Row],
    ) -> None:
        """Keep follow-up work for a create that changed while it was in flight."""
        if self.queue.promote_create(conn, change.id, remote.remote_id):
            logger.debug(f"Queued edits for {change.local_id} will be pushed as an update")
            return
        if row is not None and row["sync_status"] == SyncStatus.TRASHED.value:
            # Trashed before the create came back; archive the new remote record
            self.queue.enqueue(
                conn,
                change.entity_type,
                change.local_id,
                ChangeOperation.DELETE.value,
                remote_id=remote.remote_id,
            )

    def _absorb_duplicates(
        self, conn: sqlite3.Connection, entity_type: str, local_id: str, remote: RemoteRecord
    ) -> None:
        """Remove rows an import created for a record this replica pushed itself."""
        table = table_for(entity_type)
        rows = conn.execute(
            f"""SELECT local_id FROM {table}
                WHERE local_id != ? AND (remote_id = ? OR (? IS NOT NULL AND remote_unique_id = ?))""",
            (local_id, remote.remote_id, remote.unique_id, remote.unique_id),
        ).fetchall()
        for dup in rows:
            if entity_type == EntityType.TASK.value:
                conn.execute(
                    "UPDATE OR IGNORE task_project_links SET task_id = ? WHERE task_id = ?",
                    (local_id, dup["local_id"]),
                )
                conn.execute("DELETE FROM task_project_links WHERE task_id = ?", (dup["local_id"],))
            conn.execute(f"DELETE FROM {table} WHERE local_id = ?", (dup["local_id"],))
            logger.info(f"Merged imported duplicate {dup['local_id']} into {local_id}")

    # === App state ===

    def get_app_state(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM app_state WHERE key = ?", (key,)).fetchone()
        return row["value"] if row and row["value"] is not None else default

    def set_app_state(self, key: str, value: Optional[str]) -> None:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO app_state (key, value, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                                  updated_at = excluded.updated_at""",
                (key, value, self._now()),
            )

    def get_app_state_json(self, key: str, default: Any = None) -> Any:
        value = self._from_json(self.get_app_state(key))
        return default if value is None else value

    def set_app_state_json(self, key: str, value: Any) -> None:
        self.set_app_state(key, self._to_json(value))
