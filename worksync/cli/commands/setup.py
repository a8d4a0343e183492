"""Setup, migration and shutdown commands."""

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from worksync import Replica

logger = logging.getLogger(__name__)


def cmd_setup(args, r: "Replica"):
    """Finish first-run setup, optionally running the initial full import."""
    if not r.is_first_time_setup() and not args.force:
        print(f"Setup already complete (mode: {r.get_setup_mode()}). Use --force to redo it.")
        return
    if args.mode == "remote" and args.import_all:
        result = r.import_all()
        if not result.get("success"):
            print(f"✗ Initial import failed: {result.get('error')}")
            print("  Run `worksync setup --import` again to resume.")
            return
    r.complete_setup(args.mode)
    print(f"✓ Setup complete (mode: {args.mode})")


def cmd_migrate(args, r: "Replica"):
    """Apply pending schema migrations and optionally re-run the back-fill."""
    applied = r.storage.migrate(force_backfill=args.backfill)
    applied = applied or r.storage.applied_migrations
    if applied:
        print(f"✓ Applied migrations: {', '.join(applied)}")
    else:
        print("Schema is up to date.")
    if args.backfill:
        print("✓ Re-ran typed column back-fill")


def cmd_close(args, r: "Replica"):
    """Record a clean shutdown so the next delta import starts from now."""
    stamp = r.mark_app_close()
    print(f"✓ Marked app close at {stamp}")
