"""dreamsync core.

This package provides the DreamSync class, the primary interface for
syncing dream metadata and managing cached media:
    from dreamsync.core import DreamSync
"""

from dreamsync.core.client import DreamSync

__all__ = ["DreamSync"]
