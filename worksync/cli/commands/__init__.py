"""CLI command handlers."""

from worksync.cli.commands.records import cmd_add, cmd_edit, cmd_purge, cmd_records, cmd_trash
from worksync.cli.commands.setup import cmd_close, cmd_migrate, cmd_setup
from worksync.cli.commands.sync import (
    cmd_import,
    cmd_poll,
    cmd_push,
    cmd_status,
    cmd_sync,
    cmd_watch,
)

__all__ = [
    "cmd_add",
    "cmd_close",
    "cmd_edit",
    "cmd_import",
    "cmd_migrate",
    "cmd_poll",
    "cmd_purge",
    "cmd_push",
    "cmd_records",
    "cmd_setup",
    "cmd_status",
    "cmd_sync",
    "cmd_trash",
    "cmd_watch",
]
