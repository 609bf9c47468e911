"""
dreamsync - Local-first sync and media caching for a dream journal.

Keeps a local store of dreams in step with a remote document collection and
caches their videos on the device.
"""

from .core import DreamSync

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("dreamsync")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = ["DreamSync"]
