"""Dream listing and media cache commands for dreamsync CLI."""

import json
import logging
import sys
from typing import TYPE_CHECKING

from dreamsync.types import CacheError, DreamSyncError

if TYPE_CHECKING:
    from dreamsync import DreamSync

logger = logging.getLogger(__name__)


def cmd_list(args, ds: "DreamSync"):
    """List the owner's dreams, newest first."""
    dreams = ds.dreams(args.owner)[: args.limit]
    if args.json:
        print(
            json.dumps(
                [
                    {
                        "id": d.id,
                        "title": d.title,
                        "dream_date": d.dream_date.isoformat() if d.dream_date else None,
                        "sync_state": d.sync_state.value,
                        "processing_state": d.processing_state.value,
                        "cached": ds.is_local(d),
                    }
                    for d in dreams
                ],
                indent=2,
            )
        )
        return

    if not dreams:
        print("No dreams yet.")
        return
    for d in dreams:
        when = d.dream_date.strftime("%Y-%m-%d") if d.dream_date else "????-??-??"
        cached = "●" if ds.is_local(d) else "○"
        print(f"{cached} {when}  {d.id[:8]}  {d.title}  [{d.sync_state.value}]")


def cmd_fetch(args, ds: "DreamSync"):
    """Make sure a dream's video is on this device and print its path."""
    dream = ds.storage.get(args.id)
    if dream is None or dream.owner_id != args.owner:
        print(f"✗ Dream {args.id} not found")
        sys.exit(1)
    try:
        path = ds.ensure_local(dream)
    except CacheError as e:
        print(f"✗ {ds.describe_error(e)['message']}: {e}")
        sys.exit(1)
    print(path)


def cmd_cleanup(args, ds: "DreamSync"):
    """Delete cached files no dream references any more."""
    try:
        result = ds.cleanup(args.owner)
    except DreamSyncError as e:
        print(f"✗ {ds.describe_error(e)['message']}: {e}")
        sys.exit(1)

    if args.json:
        print(
            json.dumps(
                {"removed": result.removed, "kept": result.kept, "failed": result.failed},
                indent=2,
            )
        )
        return
    print(f"✓ Removed {len(result.removed)} file(s), kept {len(result.kept)}")
    if result.failed:
        print(f"⚠ Could not delete {len(result.failed)} file(s): {', '.join(result.failed)}")
