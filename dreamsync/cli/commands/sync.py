"""Sync commands for dreamsync CLI: metadata pull, push, status, conflicts."""

import json
import logging
import sys
from typing import TYPE_CHECKING

from dreamsync.types import SyncError

if TYPE_CHECKING:
    from dreamsync import DreamSync

logger = logging.getLogger(__name__)


def _fail(ds: "DreamSync", e: Exception) -> None:
    info = ds.describe_error(e)
    if info["offline"]:
        print(f"⚠ {info['message']} (offline, try again later)")
    else:
        print(f"✗ {info['message']}: {e}")
    sys.exit(1)


def cmd_sync(args, ds: "DreamSync"):
    """Pull remote metadata, optionally pushing pending local dreams first."""
    output = {}
    try:
        if args.push:
            push = ds.push_pending(args.owner)
            output["push"] = {"pushed": push.pushed, "failed": push.failed, "errors": push.errors}
        result = ds.sync_metadata(args.owner)
    except SyncError as e:
        _fail(ds, e)
        return

    output["pull"] = {
        "inserted": result.inserted,
        "updated": result.updated,
        "unchanged": result.unchanged,
        "skipped": result.skipped,
        "conflicts": result.conflict_count,
        "errors": result.errors,
    }

    if args.json:
        print(json.dumps(output, indent=2, default=str))
        return

    if "push" in output:
        push = output["push"]
        print(f"↑ Pushed {push['pushed']} dream(s), {push['failed']} failed")
    print(
        f"✓ Synced: {result.inserted} new, {result.updated} updated, "
        f"{result.unchanged} unchanged"
    )
    if result.skipped:
        print(f"⚠ Skipped {result.skipped} malformed document(s):")
        for error in result.errors[:5]:
            print(f"  - {error}")
    if result.conflicts:
        print(f"⚠ {result.conflict_count} conflict(s) resolved (see `dreamsync conflicts`)")


def cmd_status(args, ds: "DreamSync"):
    """Show sync and cache status for the owner."""
    status = ds.sync_status(args.owner)
    if args.json:
        print(json.dumps(status, indent=2, default=str))
        return

    print(f"Owner: {status['owner_id']}")
    print(f"  Dreams:      {status['total']} ({status['cached']} cached on this device)")
    print(f"  Pending:     {status['pending']}")
    print(f"  Last sync:   {status['last_sync'] or 'never'}")
    print(f"  Conflicts:   {status['conflicts']}")
    print(f"  Cloud:       {'configured' if status['cloud_configured'] else 'not configured'}")


def cmd_conflicts(args, ds: "DreamSync"):
    """List conflicts the reconciler resolved."""
    conflicts = ds.get_sync_conflicts(owner_id=args.owner, limit=args.limit)
    if args.json:
        print(
            json.dumps(
                [
                    {
                        "id": c.id,
                        "record_id": c.record_id,
                        "resolution": c.resolution,
                        "policy_decision": c.policy_decision,
                        "resolved_at": c.resolved_at.isoformat(),
                        "local_title": c.local_version.get("title"),
                        "remote_title": c.remote_version.get("title"),
                    }
                    for c in conflicts
                ],
                indent=2,
            )
        )
        return

    if not conflicts:
        print("No sync conflicts.")
        return
    for c in conflicts:
        print(
            f"{c.resolved_at.strftime('%Y-%m-%d %H:%M')}  {c.record_id[:8]}  {c.resolution:<12} "
            f"local={c.local_version.get('title')!r} remote={c.remote_version.get('title')!r}"
        )
