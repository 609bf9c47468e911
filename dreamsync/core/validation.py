"""Input checks shared by the store, the cloud clients, the cache and the CLI.

Every helper either returns a cleaned value or raises ValueError, except
``validate_backend_url`` which logs and returns None so that a bad URL in
one credentials source does not mask a good one in the next.
"""

import logging
import re
from typing import Any
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

MAX_OWNER_ID_LENGTH = 128
MAX_FILENAME_LENGTH = 255

# C0 controls and DEL, keeping \t \n \r
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1"})


def sanitize_string(
    value: Any, field_name: str, max_length: int = 1000, required: bool = True
) -> str:
    """Check that ``value`` is a usable string and drop control characters.

    ``None`` is accepted (as ``""``) only when ``required`` is False.
    Blank strings are rejected when ``required`` is True.
    """
    if value is None:
        if not required:
            return ""
        raise ValueError(f"{field_name} must be a string, got NoneType")
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string, got {type(value).__name__}")
    if required and value.strip() == "":
        raise ValueError(f"{field_name} cannot be empty")
    if len(value) > max_length:
        raise ValueError(f"{field_name} is too long ({len(value)} > {max_length} characters)")
    return _CONTROL_CHARS.sub("", value)


def _is_single_component(value: str) -> bool:
    return not ("/" in value or "\\" in value or value in (".", ".."))


def validate_owner_id(owner_id: Any) -> str:
    """Owner ids name directories in the media cache, so they must be one path component."""
    value = sanitize_string(owner_id, "owner_id", MAX_OWNER_ID_LENGTH).strip()
    if not _is_single_component(value):
        raise ValueError("owner_id must not contain path separators or traversal sequences")
    return value


def validate_media_filename(filename: Any) -> str:
    value = sanitize_string(filename, "filename", MAX_FILENAME_LENGTH).strip()
    if not _is_single_component(value) or value.startswith("."):
        raise ValueError(f"Invalid media filename: {value!r}")
    return value


def validate_backend_url(url: str, *, allow_localhost_http: bool = True) -> "str | None":
    """Return ``url`` if credentials may be sent to it, otherwise None.

    https is always accepted. Plain http is accepted only for a loopback
    host, and only while ``allow_localhost_http`` is set.
    """
    if not url:
        return None

    parsed = urlparse(url)
    reason = None
    if parsed.scheme not in ("http", "https"):
        reason = f"unsupported scheme {parsed.scheme!r}"
    elif not parsed.netloc:
        reason = "no host"
    elif parsed.scheme == "http" and not allow_localhost_http:
        reason = "plain http is disabled here"
    elif parsed.scheme == "http" and (parsed.hostname or "") not in _LOCAL_HOSTS:
        reason = "plain http is only allowed for localhost"

    if reason:
        logger.warning(f"Ignoring backend_url: {reason}")
        return None
    return url
