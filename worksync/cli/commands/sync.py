"""Sync commands: imports, outbound push, relay poll and status."""

import json
import logging
import sys
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from worksync import Replica

logger = logging.getLogger(__name__)


def _print_import(result):
    if "results" not in result:
        print(f"✗ {result['mode']} import failed: {result.get('error')}")
        return
    mark = "✓" if result["success"] else "✗"
    print(f"{mark} {result['mode']} import ({result['time_ms']}ms)")
    for entity_type, counts in result["results"].items():
        line = (
            f"  {entity_type}: {counts['inserted']} inserted, {counts['updated']} updated, "
            f"{counts['skipped']} skipped over {counts['pages']} pages"
        )
        if counts["links"]:
            line += f", {counts['links']} links"
        if counts["skipped_cursors"]:
            line += f", {len(counts['skipped_cursors'])} cursor(s) skipped"
        print(line)
    if result.get("cancelled"):
        print("  (cancelled; run again to continue)")
    if result.get("error"):
        print(f"  error: {result['error']}")


def cmd_import(args, r: "Replica"):
    """Run a full, active-only or delta import."""
    entity_types = args.type or None
    if args.mode == "all":
        result = r.import_all(entity_types, resume=not args.restart)
    elif args.mode == "active":
        result = r.import_active(entity_types)
    else:
        result = r.import_delta(entity_types)

    if args.json:
        print(json.dumps(result, indent=2, default=str))
    else:
        _print_import(result)
    if not result.get("success"):
        sys.exit(1)


def cmd_push(args, r: "Replica"):
    """Drain the outbound change queue once."""
    result = r.drain_outbound(limit=args.limit)
    if args.json:
        print(json.dumps(result, indent=2, default=str))
    elif "error" in result:
        print(f"✗ {result['error']}")
    else:
        print(
            f"Pushed {result['pushed']}, failed {result['failed']}, "
            f"{result['remaining']} still queued"
        )
        for error in result["errors"][:5]:
            print(f"  - {error}")
    if not result.get("success"):
        sys.exit(1)


def cmd_poll(args, r: "Replica"):
    """Apply pending relay events once."""
    result = r.poll_events()
    if args.json:
        print(json.dumps(result, indent=2, default=str))
    elif "error" in result:
        print(f"✗ {result['error']}")
    else:
        print(
            f"{result['received']} events: {result['upserted']} upserted, "
            f"{result['trashed']} trashed, {result['skipped']} skipped"
        )
    if not result.get("success"):
        sys.exit(1)


def cmd_sync(args, r: "Replica"):
    """Push local changes, then pull remote edits since the last close."""
    result = r.sync()
    if args.json:
        print(json.dumps(result, indent=2, default=str))
    else:
        push = result["push"]
        if "error" in push:
            print(f"✗ push: {push['error']}")
        else:
            print(f"Pushed {push['pushed']}, {push['remaining']} still queued")
        _print_import(result["pull"])
    if not result["success"]:
        sys.exit(1)


def cmd_status(args, r: "Replica"):
    """Show engine state and queue depth."""
    status = r.get_sync_status()
    if args.json:
        print(json.dumps(status, indent=2, default=str))
        return

    print(f"State:          {status['state']}")
    if status["message"]:
        print(f"Message:        {status['message']}")
    print(f"Pending:        {status['pending_items']} ({status['failed_items']} retrying)")
    print(f"Last close:     {status['last_app_close'] or 'never'}")
    print(f"Remote:         {'configured' if status['remote_configured'] else 'not configured'}")
    print(f"Relay:          {'configured' if status['relay_configured'] else 'not configured'}")
    for mode, summary in status["last_imports"].items():
        if summary:
            state = "ok" if summary.get("success") else "incomplete"
            print(f"Last {mode:<8}  {summary.get('finished_at')} ({state})")
    if status["last_error"]:
        print(f"Last error:     {status['last_error']}")


def cmd_watch(args, r: "Replica"):
    """Run the drain and poll timers in the foreground until interrupted."""
    started = r.start_background()
    if not started:
        print("Nothing to run: neither the remote service nor the relay is configured.")
        return
    print(f"Running {', '.join(started)} every few seconds. Press Ctrl+C to stop.")
    stop = threading.Event()
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        print("\nStopping...")
    finally:
        r.stop_background()
    r.mark_app_close()
