"""Database schema and migration logic for worksync SQLite storage.

Contains:
- Entity table layout (ENTITY_TABLES, TYPED_COLUMNS)
- Table allowlist (ALLOWED_TABLES, validate_table_name)
- Ordered forward-only migrations (MIGRATIONS, run_migrations)
- One-time back-fill of typed columns from the legacy payload snapshot
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from worksync.protocols import MigrationError
from worksync.types import utc_now

logger = logging.getLogger(__name__)

ENTITY_TABLES = {
    "task": "tasks",
    "project": "projects",
    "time_log": "time_logs",
}

# Typed columns promoted out of the legacy payload snapshot.
# SQL types: TEXT for strings and ISO dates, INTEGER for flags, REAL for numbers.
TYPED_COLUMNS: Dict[str, List[Tuple[str, str]]] = {
    "tasks": [
        ("title", "TEXT"),
        ("status", "TEXT"),
        ("due_date", "TEXT"),
        ("due_date_end", "TEXT"),
        ("urgent", "INTEGER"),
        ("important", "INTEGER"),
        ("hard_deadline", "INTEGER"),
        ("main_entry", "TEXT"),
        ("body", "TEXT"),
        ("session_length_minutes", "REAL"),
        ("estimated_length_minutes", "REAL"),
        ("parent_task_id", "TEXT"),
        ("url", "TEXT"),
        ("last_edited", "TEXT"),
    ],
    "projects": [
        ("title", "TEXT"),
        ("status", "TEXT"),
        ("description", "TEXT"),
        ("start_date", "TEXT"),
        ("end_date", "TEXT"),
        ("url", "TEXT"),
        ("last_edited", "TEXT"),
    ],
    "time_logs": [
        ("title", "TEXT"),
        ("status", "TEXT"),
        ("task_id", "TEXT"),
        ("start_time", "TEXT"),
        ("end_time", "TEXT"),
        ("duration_minutes", "REAL"),
        ("url", "TEXT"),
        ("last_edited", "TEXT"),
    ],
}

# Allowed table names for SQL queries (prevents SQL injection via table names)
ALLOWED_TABLES = frozenset(
    {
        *ENTITY_TABLES.values(),
        "migrations",
        "sync_queue",
        "app_state",
        "task_project_links",
    }
)


def validate_table_name(table: str) -> str:
    """Validate table name against allowlist to prevent SQL injection.

    Raises:
        ValueError: If table name is not in allowlist
    """
    if table not in ALLOWED_TABLES:
        raise ValueError(f"Invalid table name: {table}")
    return table


def table_for(entity_type: str) -> str:
    try:
        return ENTITY_TABLES[entity_type]
    except KeyError:
        raise ValueError(f"Unknown entity type: {entity_type}") from None


def field_types(entity_type: str) -> Dict[str, str]:
    return dict(TYPED_COLUMNS[table_for(entity_type)])


@dataclass(frozen=True)
class Migration:
    id: str
    statements: Tuple[str, ...]


def _legacy_entity_table(table: str) -> Tuple[str, ...]:
    return (
        f"""
        CREATE TABLE IF NOT EXISTS {table} (
            local_id TEXT PRIMARY KEY,
            remote_id TEXT,
            payload TEXT NOT NULL DEFAULT '{{}}',
            sync_status TEXT NOT NULL DEFAULT 'pending',
            local_modified_at TEXT,
            remote_modified_at TEXT,
            field_local_ts TEXT NOT NULL DEFAULT '{{}}',
            field_notion_ts TEXT NOT NULL DEFAULT '{{}}'
        )
        """,
        f"CREATE INDEX IF NOT EXISTS idx_{table}_remote_id ON {table}(remote_id)",
    )


def _typed_columns(table: str) -> Tuple[str, ...]:
    statements = [
        f"ALTER TABLE {table} ADD COLUMN remote_unique_id TEXT",
        f"ALTER TABLE {table} ADD COLUMN trashed_at TEXT",
    ]
    statements += [
        f"ALTER TABLE {table} ADD COLUMN {name} {sql_type}" for name, sql_type in TYPED_COLUMNS[table]
    ]
    statements += [
        f"DROP INDEX IF EXISTS idx_{table}_remote_id",
        f"CREATE UNIQUE INDEX idx_{table}_remote_id ON {table}(remote_id) "
        "WHERE remote_id IS NOT NULL",
        f"CREATE UNIQUE INDEX idx_{table}_unique_id ON {table}(remote_unique_id) "
        "WHERE remote_unique_id IS NOT NULL",
        f"CREATE INDEX idx_{table}_status ON {table}(sync_status, local_modified_at)",
    ]
    return tuple(statements)


# Append only. Never edit a migration once it has shipped.
MIGRATIONS: List[Migration] = [
    Migration(
        "001_initial_schema",
        (
            *_legacy_entity_table("tasks"),
            *_legacy_entity_table("projects"),
            *_legacy_entity_table("time_logs"),
            """
            CREATE TABLE IF NOT EXISTS sync_queue (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                entity_type TEXT NOT NULL,
                local_id TEXT NOT NULL,
                remote_id TEXT,
                operation TEXT NOT NULL,
                payload TEXT NOT NULL DEFAULT '{}',
                changed_fields TEXT NOT NULL DEFAULT '[]',
                retry_count INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                pending_since TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(entity_type, local_id)
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_sync_queue_pending ON sync_queue(pending_since)",
            """
            CREATE TABLE IF NOT EXISTS app_state (
                key TEXT PRIMARY KEY,
                value TEXT,
                updated_at TEXT NOT NULL
            )
            """,
        ),
    ),
    Migration(
        "002_typed_columns",
        (*_typed_columns("tasks"), *_typed_columns("projects"), *_typed_columns("time_logs")),
    ),
    Migration(
        "003_task_project_links",
        (
            """
            CREATE TABLE IF NOT EXISTS task_project_links (
                task_id TEXT NOT NULL,
                project_id TEXT NOT NULL,
                PRIMARY KEY (task_id, project_id)
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_links_project ON task_project_links(project_id)",
        ),
    ),
]

BACKFILL_MIGRATION = "002_typed_columns"


def get_applied_migrations(conn: sqlite3.Connection) -> List[str]:
    rows = conn.execute("SELECT id FROM migrations ORDER BY applied_at, id").fetchall()
    return [row[0] for row in rows]


def run_migrations(conn: sqlite3.Connection, migrations: List[Migration] = None) -> List[str]:
    """Apply every migration not yet in the ledger, in declaration order.

    Each migration runs in its own transaction together with its ledger
    insert, so a failing statement leaves no trace of that migration.

    Returns:
        Ids of the migrations applied by this call.

    Raises:
        MigrationError: On the first failing migration. Earlier ones stay applied.
    """
    migrations = MIGRATIONS if migrations is None else migrations
    if conn.in_transaction:
        conn.commit()
    conn.execute(
        "CREATE TABLE IF NOT EXISTS migrations (id TEXT PRIMARY KEY, applied_at TEXT NOT NULL)"
    )
    conn.commit()

    done = set(get_applied_migrations(conn))
    applied = []
    for migration in migrations:
        if migration.id in done:
            continue
        try:
            conn.execute("BEGIN")
            for statement in migration.statements:
                conn.execute(statement)
            conn.execute(
                "INSERT INTO migrations (id, applied_at) VALUES (?, ?)",
                (migration.id, utc_now()),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(f"Migration {migration.id} failed, rolled back: {e}")
            raise MigrationError(migration.id, e) from e
        logger.info(f"Applied migration {migration.id}")
        applied.append(migration.id)
    return applied


# === Legacy payload back-fill ===


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _legacy_value(payload: Dict[str, Any], name: str) -> Tuple[bool, Any]:
    for key in (name, _camel(name)):
        if key in payload:
            return True, payload[key]
    return False, None


def _coerce(value: Any, sql_type: str) -> Any:
    if value is None:
        return None
    if sql_type == "INTEGER":
        return 1 if value else 0
    if sql_type == "REAL":
        return float(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def backfill_typed_columns(conn: sqlite3.Connection) -> Dict[str, int]:
    """Populate typed columns from the legacy ``payload`` snapshot.

    Re-running overwrites the columns with the same derived values. Rows
    whose snapshot does not parse are logged and skipped, as are rows whose
    unique id collides with another row (that record is already present).
    The caller commits.
    """
    counts = {"updated": 0, "skipped": 0}
    for table, columns in TYPED_COLUMNS.items():
        validate_table_name(table)
        rows = conn.execute(
            f"SELECT local_id, payload FROM {table} WHERE payload IS NOT NULL AND payload != '{{}}'"
        ).fetchall()
        for row in rows:
            local_id, raw = row[0], row[1]
            try:
                payload = json.loads(raw)
                if not isinstance(payload, dict):
                    raise ValueError("snapshot is not an object")
                assignments = {}
                for name, sql_type in columns:
                    found, value = _legacy_value(payload, name)
                    if found:
                        assignments[name] = _coerce(value, sql_type)
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping back-fill of {table}/{local_id}: {e}")
                counts["skipped"] += 1
                continue

            found, unique_id = _legacy_value(payload, "unique_id")
            if found and unique_id is not None:
                assignments["remote_unique_id"] = str(unique_id)
            if not assignments:
                continue

            sets = ", ".join(f"{name} = ?" for name in assignments)
            try:
                conn.execute(
                    f"UPDATE {table} SET {sets} WHERE local_id = ?",
                    (*assignments.values(), local_id),
                )
            except sqlite3.IntegrityError as e:
                logger.warning(f"Skipping back-fill of {table}/{local_id}: {e}")
                counts["skipped"] += 1
                continue
            counts["updated"] += 1

            found, project_ids = _legacy_value(payload, "project_ids")
            if table == "tasks" and found and isinstance(project_ids, list):
                conn.executemany(
                    "INSERT OR IGNORE INTO task_project_links (task_id, project_id) VALUES (?, ?)",
                    [(local_id, str(pid)) for pid in project_ids if pid],
                )
    logger.info(f"Back-filled typed columns: {counts['updated']} rows, {counts['skipped']} skipped")
    return counts
