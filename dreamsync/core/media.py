"""Media cache operations for DreamSync."""

import threading
from pathlib import Path
from typing import Optional

from dreamsync.types import CleanupResult, Dream


class MediaMixin:
    """Media cache operations for DreamSync."""

    def ensure_local(self, dream: Dream, cancel: Optional[threading.Event] = None) -> Path:
        """Return the dream's video on disk, downloading it on first use."""
        return self._cache.ensure_local(dream, cancel=cancel)

    def is_local(self, dream: Dream) -> bool:
        return self._cache.is_local(dream)

    def cleanup(self, owner_id: str) -> CleanupResult:
        """Delete cached files no local dream of the owner references."""
        return self._cache.cleanup(owner_id)
