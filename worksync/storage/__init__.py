"""Local store: SQLite replica, schema migrations and the outbound change queue."""

from worksync.storage.change_queue import ChangeQueue
from worksync.storage.schema import MIGRATIONS, backfill_typed_columns, run_migrations
from worksync.storage.sqlite import SQLiteStorage

__all__ = [
    "ChangeQueue",
    "MIGRATIONS",
    "SQLiteStorage",
    "backfill_typed_columns",
    "run_migrations",
]
