"""Record commands: list, add, edit, trash and purge."""

import json
import logging
from typing import TYPE_CHECKING, Any, Dict, List

if TYPE_CHECKING:
    from worksync import Replica

logger = logging.getLogger(__name__)


def parse_assignments(pairs: List[str]) -> Dict[str, Any]:
    """Turn ``field=value`` pairs into a patch. Values are JSON when they parse."""
    patch: Dict[str, Any] = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise ValueError(f"Expected field=value, got {pair!r}")
        name, raw = pair.split("=", 1)
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            value = raw
        patch[name.strip()] = value
    return patch


def _summary(record: Dict[str, Any]) -> str:
    fields = record["fields"]
    ident = record["remote_unique_id"] or record["local_id"][:14]
    status = fields.get("status") or "-"
    return f"{ident:<16} [{record['sync_status']:<8}] {status:<12} {fields.get('title') or ''}"


def cmd_records(args, r: "Replica"):
    """List records from the local replica."""
    records = r.get_records(
        args.type, include_trashed=args.trashed, status=args.status, limit=args.limit
    )
    if args.json:
        print(json.dumps(records, indent=2, default=str))
        return
    if not records:
        print(f"No {args.type} records.")
        return
    for record in records:
        print(_summary(record))
    print(f"\n{len(records)} {args.type} record(s)")


def cmd_add(args, r: "Replica"):
    """Create a record locally."""
    payload = parse_assignments(args.set)
    payload["title"] = args.title
    record = r.create_local(payload, entity_type=args.type)
    print(f"✓ Created {args.type} {record['local_id']} ({record['sync_status']})")


def cmd_edit(args, r: "Replica"):
    """Edit a record locally."""
    patch = parse_assignments(args.set)
    if not patch:
        raise ValueError("Nothing to change; pass --set field=value")
    record = r.update_local(args.id, patch, entity_type=args.type)
    print(f"✓ Updated {args.type} {record['local_id']} ({record['sync_status']})")


def cmd_trash(args, r: "Replica"):
    record = r.trash_local(args.id, entity_type=args.type)
    print(f"✓ Trashed {args.type} {record['local_id']}")


def cmd_purge(args, r: "Replica"):
    purged = r.purge_trash(args.older_than)
    print(f"✓ Purged {purged} trashed record(s)")
