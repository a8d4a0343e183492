"""
Worksync CLI - keep a local replica of a remote task workspace in sync.

Usage:
    worksync setup --mode remote --import
    worksync import active
    worksync records --type task
    worksync add "Write report" --set status=Todo
    worksync push
    worksync status --json
"""

import argparse
import logging
import sys
from pathlib import Path

from worksync.cli.commands import (
    cmd_add,
    cmd_close,
    cmd_edit,
    cmd_import,
    cmd_migrate,
    cmd_poll,
    cmd_purge,
    cmd_push,
    cmd_records,
    cmd_setup,
    cmd_status,
    cmd_sync,
    cmd_trash,
    cmd_watch,
)
from worksync.config import load_settings
from worksync.core.replica import Replica
from worksync.protocols import ConfigError, WorkSyncError
from worksync.types import EntityType

logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

ENTITY_CHOICES = [e.value for e in EntityType]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="worksync",
        description="Local-first replica of a remote task workspace",
    )
    parser.add_argument("--db", help="Path to the local database (default: $WORKSYNC_HOME/worksync.db)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable info logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # status
    p_status = subparsers.add_parser("status", help="Show sync state and queue depth")
    p_status.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    # migrate
    p_migrate = subparsers.add_parser("migrate", help="Apply schema migrations")
    p_migrate.add_argument(
        "--backfill", action="store_true", help="Re-run the typed column back-fill"
    )

    # setup
    p_setup = subparsers.add_parser("setup", help="Complete first-run setup")
    p_setup.add_argument("--mode", choices=["remote", "local"], default="remote")
    p_setup.add_argument(
        "--import", dest="import_all", action="store_true", help="Run a full import first"
    )
    p_setup.add_argument("--force", action="store_true", help="Redo setup if already complete")

    # import
    p_import = subparsers.add_parser("import", help="Pull records from the remote service")
    p_import.add_argument("mode", choices=["all", "active", "delta"])
    p_import.add_argument(
        "--type", "-t", action="append", choices=ENTITY_CHOICES, help="Limit to entity type"
    )
    p_import.add_argument(
        "--restart", action="store_true", help="Ignore a saved cursor (full import only)"
    )
    p_import.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    # push
    p_push = subparsers.add_parser("push", help="Push queued local changes")
    p_push.add_argument("--limit", "-l", type=int, help="Maximum changes to push")
    p_push.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    # poll
    p_poll = subparsers.add_parser("poll", help="Apply pending relay events")
    p_poll.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    # sync
    p_sync = subparsers.add_parser("sync", help="Push, then pull edits since last close")
    p_sync.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    # watch
    subparsers.add_parser("watch", help="Run background push and poll until interrupted")

    # records
    p_records = subparsers.add_parser("records", help="List local records")
    p_records.add_argument("--type", "-t", choices=ENTITY_CHOICES, default="task")
    p_records.add_argument("--status", "-s", help="Only records with this status")
    p_records.add_argument("--limit", "-l", type=int, help="Maximum records")
    p_records.add_argument("--trashed", action="store_true", help="Include trashed records")
    p_records.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    # add
    p_add = subparsers.add_parser("add", help="Create a record locally")
    p_add.add_argument("title")
    p_add.add_argument("--type", "-t", choices=ENTITY_CHOICES, default="task")
    p_add.add_argument("--set", action="append", metavar="FIELD=VALUE", help="Extra field")

    # edit
    p_edit = subparsers.add_parser("edit", help="Edit a record locally")
    p_edit.add_argument("id", help="Local id, remote id or unique id")
    p_edit.add_argument("--type", "-t", choices=ENTITY_CHOICES, default="task")
    p_edit.add_argument("--set", action="append", metavar="FIELD=VALUE", help="Field to change")

    # trash
    p_trash = subparsers.add_parser("trash", help="Trash a record locally")
    p_trash.add_argument("id", help="Local id, remote id or unique id")
    p_trash.add_argument("--type", "-t", choices=ENTITY_CHOICES, default="task")

    # purge
    p_purge = subparsers.add_parser("purge", help="Permanently delete trashed records")
    p_purge.add_argument(
        "--older-than", type=int, metavar="DAYS", help="Only records trashed this many days ago"
    )

    # close
    subparsers.add_parser("close", help="Record a clean shutdown for the next delta import")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger("worksync").setLevel(logging.INFO)

    try:
        settings = load_settings()
        if args.db:
            settings.db_path = Path(args.db).expanduser()
        r = Replica(settings=settings)
    except (ValueError, TypeError, WorkSyncError) as e:
        logger.error(f"Failed to initialize worksync: {e}")
        sys.exit(1)

    try:
        if args.command == "status":
            cmd_status(args, r)
        elif args.command == "migrate":
            cmd_migrate(args, r)
        elif args.command == "setup":
            cmd_setup(args, r)
        elif args.command == "import":
            cmd_import(args, r)
        elif args.command == "push":
            cmd_push(args, r)
        elif args.command == "poll":
            cmd_poll(args, r)
        elif args.command == "sync":
            cmd_sync(args, r)
        elif args.command == "watch":
            cmd_watch(args, r)
        elif args.command == "records":
            cmd_records(args, r)
        elif args.command == "add":
            cmd_add(args, r)
        elif args.command == "edit":
            cmd_edit(args, r)
        elif args.command == "trash":
            cmd_trash(args, r)
        elif args.command == "purge":
            cmd_purge(args, r)
        elif args.command == "close":
            cmd_close(args, r)
    except (ValueError, TypeError, ConfigError) as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)
    finally:
        r.close(mark_close=False)


if __name__ == "__main__":
    main()
