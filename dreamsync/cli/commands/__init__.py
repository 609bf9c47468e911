"""CLI command handlers."""

from dreamsync.cli.commands.media import cmd_cleanup, cmd_fetch, cmd_list
from dreamsync.cli.commands.sync import cmd_conflicts, cmd_status, cmd_sync

__all__ = [
    "cmd_cleanup",
    "cmd_conflicts",
    "cmd_fetch",
    "cmd_list",
    "cmd_status",
    "cmd_sync",
]
