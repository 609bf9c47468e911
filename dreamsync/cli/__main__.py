"""
dreamsync CLI - sync dream metadata and manage the on-device video cache.

Usage:
    dreamsync --owner ID sync [--push] [--json]
    dreamsync --owner ID list [--limit N] [--json]
    dreamsync --owner ID fetch DREAM_ID
    dreamsync --owner ID cleanup [--json]
    dreamsync --owner ID status [--json]
    dreamsync --owner ID conflicts [--limit N] [--json]
"""

import argparse
import logging
import os
import sys

from dreamsync import DreamSync
from dreamsync.cli.commands import (
    cmd_cleanup,
    cmd_conflicts,
    cmd_fetch,
    cmd_list,
    cmd_status,
    cmd_sync,
)
from dreamsync.core.validation import validate_owner_id
from dreamsync.logging_config import setup_dreamsync_logging
from dreamsync.types import DreamSyncError

# Set up logging
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

COMMANDS = {
    "sync": cmd_sync,
    "list": cmd_list,
    "fetch": cmd_fetch,
    "cleanup": cmd_cleanup,
    "status": cmd_status,
    "conflicts": cmd_conflicts,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dreamsync",
        description="Local-first sync and media cache for your dream journal",
    )
    parser.add_argument(
        "--owner",
        "-o",
        default=os.environ.get("DREAMSYNC_OWNER_ID"),
        help="Owner (user) ID, defaults to DREAMSYNC_OWNER_ID",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_sync = subparsers.add_parser("sync", help="Pull remote dream metadata")
    p_sync.add_argument("--push", action="store_true", help="Upload pending dreams first")
    p_sync.add_argument("--json", "-j", action="store_true")

    p_list = subparsers.add_parser("list", help="List dreams")
    p_list.add_argument("--limit", "-l", type=int, default=50)
    p_list.add_argument("--json", "-j", action="store_true")

    p_fetch = subparsers.add_parser("fetch", help="Download a dream's video if needed")
    p_fetch.add_argument("id", help="Dream ID")

    p_cleanup = subparsers.add_parser("cleanup", help="Delete unreferenced cached files")
    p_cleanup.add_argument("--json", "-j", action="store_true")

    p_status = subparsers.add_parser("status", help="Show sync status")
    p_status.add_argument("--json", "-j", action="store_true")

    p_conflicts = subparsers.add_parser("conflicts", help="Show resolved sync conflicts")
    p_conflicts.add_argument("--limit", "-l", type=int, default=20)
    p_conflicts.add_argument("--json", "-j", action="store_true")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if not args.owner:
            parser.error("--owner is required (or set DREAMSYNC_OWNER_ID)")
        args.owner = validate_owner_id(args.owner)

        log_level = os.environ.get("DREAMSYNC_LOG_LEVEL")
        if log_level:
            setup_dreamsync_logging(args.owner, log_level)

        ds = DreamSync()
    except ValueError as e:
        logger.error(f"Failed to initialize dreamsync: {e}")
        sys.exit(1)
    except DreamSyncError as e:
        logger.error(f"Failed to open local store: {e}")
        sys.exit(1)

    try:
        COMMANDS[args.command](args, ds)
    except ValueError as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)
    except DreamSyncError as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)
    finally:
        ds.close()


if __name__ == "__main__":
    main()
