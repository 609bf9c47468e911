"""Remote document collection and blob store clients.

Handles cloud credential loading, the dream document collection and binary
media transfer. No DB coupling, only HTTP and credential logic. All httpx
failures are translated into the ``SyncError`` family at this boundary.
"""

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote, unquote, urlparse

import httpx

from dreamsync.core.documents import dream_to_document
from dreamsync.core.validation import validate_backend_url
from dreamsync.types import (
    DownloadCancelledError,
    Dream,
    NetworkError,
    NoNetworkError,
    RemoteDataError,
    SyncError,
)
from dreamsync.utils import get_dreamsync_home

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
CHUNK_SIZE = 64 * 1024

# Status codes that mean the server rejected the payload itself
REJECTED_STATUS_CODES = frozenset({400, 409, 422})


def load_cloud_credentials() -> Optional[Dict[str, str]]:
    """Load cloud credentials from config files or environment variables.

    Priority:
    1. <data_home>/credentials.json
    2. Environment variables (DREAMSYNC_BACKEND_URL, DREAMSYNC_AUTH_TOKEN)
    3. <data_home>/config.json

    Returns:
        Dict with 'backend_url' and 'auth_token', or None if not configured.
    """
    home = get_dreamsync_home()
    backend_url = None
    auth_token = None

    credentials_path = home / "credentials.json"
    if credentials_path.exists():
        try:
            with open(credentials_path) as f:
                creds = json.load(f)
            backend_url = creds.get("backend_url")
            auth_token = creds.get("auth_token") or creds.get("token")
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Could not read {credentials_path}: {e}")

    # Environment overrides the credentials file
    backend_url = os.environ.get("DREAMSYNC_BACKEND_URL") or backend_url
    auth_token = os.environ.get("DREAMSYNC_AUTH_TOKEN") or auth_token

    if not backend_url or not auth_token:
        config_path = home / "config.json"
        if config_path.exists():
            try:
                with open(config_path) as f:
                    config = json.load(f)
                backend_url = backend_url or config.get("backend_url")
                auth_token = auth_token or config.get("auth_token")
            except (json.JSONDecodeError, OSError) as e:
                logger.warning(f"Could not read {config_path}: {e}")

    if backend_url:
        backend_url = validate_backend_url(backend_url)

    if backend_url and auth_token:
        return {"backend_url": backend_url.rstrip("/"), "auth_token": auth_token}
    return None


def translate_http_error(exc: Exception, action: str) -> SyncError:
    """Map an httpx exception onto the sync error taxonomy."""
    if isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout)):
        return NoNetworkError(f"{action}: no network connection ({exc})", cause=exc)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in REJECTED_STATUS_CODES:
            return RemoteDataError(f"{action}: server rejected request (HTTP {status})", cause=exc)
        return NetworkError(f"{action}: HTTP {status}", cause=exc, status_code=status)
    return NetworkError(f"{action}: {exc}", cause=exc)


class _BackendClient:
    """Shared HTTP plumbing for the backend clients.

    Args:
        backend_url: Base URL of the backend (validated, no trailing slash).
        auth_token: Bearer token sent to the backend host only.
        client: Optional pre-built ``httpx.Client`` (tests pass one with a
            ``MockTransport``).
        timeout: Request timeout in seconds for an owned client.
    """

    def __init__(
        self,
        backend_url: str,
        auth_token: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        validated = validate_backend_url(backend_url)
        if not validated:
            raise ValueError(f"Refusing unsafe backend URL: {backend_url}")
        self.backend_url = validated.rstrip("/")
        self.auth_token = auth_token
        self._backend_host = urlparse(self.backend_url).netloc
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    @classmethod
    def from_credentials(cls, client: Optional[httpx.Client] = None):
        """Build a client from stored credentials, or None if not configured."""
        creds = load_cloud_credentials()
        if not creds:
            return None
        return cls(creds["backend_url"], creds["auth_token"], client=client)

    def _headers(self, url: Optional[str] = None) -> Dict[str, str]:
        """Auth headers, only for requests to the backend host."""
        if not self.auth_token:
            return {}
        if url is not None and urlparse(url).netloc != self._backend_host:
            return {}
        return {"Authorization": f"Bearer {self.auth_token}"}

    def _request(self, method: str, url: str, action: str, **kwargs: Any) -> httpx.Response:
        headers = {**self._headers(url), **kwargs.pop("headers", {})}
        try:
            response = self._client.request(method, url, headers=headers, **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise translate_http_error(e, action) from e
        return response

    def health_check(self, timeout: float = 3.0) -> Dict[str, Any]:
        """Test backend connectivity.

        Returns:
            Dict with 'healthy', plus 'latency_ms' when healthy or 'error'
            and 'offline' when not.
        """
        start = time.time()
        try:
            self._request("GET", f"{self.backend_url}/health", "Health check", timeout=timeout)
        except SyncError as e:
            logger.debug("Backend health check failed: %s", e)
            return {"healthy": False, "offline": isinstance(e, NoNetworkError), "error": str(e)}
        return {"healthy": True, "latency_ms": round((time.time() - start) * 1000, 2)}

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


class RemoteMirror(_BackendClient):
    """Client for the remote dream document collection."""

    def __init__(self, *args: Any, collection: str = "dreams", **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.collection = collection

    def _documents_url(self, record_id: Optional[str] = None) -> str:
        url = f"{self.backend_url}/collections/{quote(self.collection, safe='')}/documents"
        if record_id is not None:
            url += f"/{quote(record_id, safe='')}"
        return url

    def fetch_all(self, owner_id: str) -> List[Dict[str, Any]]:
        """Fetch every document where ``ownerId == owner_id``.

        Raises:
            NoNetworkError, NetworkError: Transport failures.
            RemoteDataError: The response is not a document list.
        """
        response = self._request(
            "GET", self._documents_url(), "Fetch documents", params={"ownerId": owner_id}
        )
        try:
            payload = response.json()
        except ValueError as e:
            raise RemoteDataError(f"Fetch documents: response is not JSON ({e})", cause=e) from e

        if isinstance(payload, dict):
            payload = payload.get("documents")
        if not isinstance(payload, list):
            raise RemoteDataError("Fetch documents: expected a list of documents")

        logger.debug(f"Fetched {len(payload)} remote documents for owner {owner_id}")
        return payload

    def put(self, dream: Dream) -> None:
        """Merge-write a dream's document. Cache fields are never sent."""
        self._request(
            "PUT",
            self._documents_url(dream.id),
            f"Write document {dream.id}",
            params={"merge": "true"},
            json=dream_to_document(dream),
        )

    def delete(self, record_id: str) -> None:
        """Delete a document. A document that is already gone is not an error."""
        try:
            self._request("DELETE", self._documents_url(record_id), f"Delete document {record_id}")
        except NetworkError as e:
            if e.status_code == 404:
                logger.debug(f"Document {record_id} already deleted remotely")
                return
            raise


class BlobStore(_BackendClient):
    """Client for binary media objects."""

    @staticmethod
    def object_path(owner_id: str, kind: str, record_id: str, ext: str) -> str:
        """Object path convention: ``<owner>/<kind>/<id>.<ext>``."""
        return f"{owner_id}/{kind}/{record_id}.{ext.lstrip('.')}"

    def upload(
        self, local_file: Path, object_path: str, content_type: str = "video/mp4"
    ) -> str:
        """Upload a local file and return its download URL."""
        local_file = Path(local_file)
        try:
            data = local_file.read_bytes()
        except OSError as e:
            raise NetworkError(
                f"Upload {object_path}: cannot read {local_file} ({e})", cause=e
            ) from e

        response = self._request(
            "PUT",
            f"{self.backend_url}/storage/{quote(object_path)}",
            f"Upload {object_path}",
            content=data,
            headers={"Content-Type": content_type},
        )

        try:
            url = response.json().get("url")
        except (ValueError, AttributeError) as e:
            raise RemoteDataError(f"Upload {object_path}: invalid response ({e})", cause=e) from e
        if not isinstance(url, str) or not url:
            raise RemoteDataError(f"Upload {object_path}: response has no url")
        logger.info(f"Uploaded {local_file.name} ({len(data)} bytes) to {object_path}")
        return url

    def download(
        self,
        url: str,
        dest: Path,
        cancel: Optional[threading.Event] = None,
    ) -> int:
        """Stream ``url`` into ``dest`` and return the number of bytes written.

        ``file://`` URLs (placeholders for media not yet uploaded) are copied.

        Raises:
            DownloadCancelledError: ``cancel`` was set mid-transfer.
            NoNetworkError, NetworkError: Transport failures.
        """
        try:
            parsed = urlparse(url)
        except ValueError as e:
            raise NetworkError(f"Download {url}: invalid URL ({e})", cause=e) from e
        if parsed.scheme == "file":
            return self._copy_local(Path(unquote(parsed.path)), Path(dest), cancel)
        if parsed.scheme not in ("http", "https"):
            raise NetworkError(f"Unsupported media URL scheme: {parsed.scheme or url}")
        if not parsed.hostname:
            raise NetworkError(f"Media URL has no host: {url!r}")

        written = 0
        try:
            with self._client.stream("GET", url, headers=self._headers(url)) as response:
                response.raise_for_status()
                with open(dest, "wb") as f:
                    for chunk in response.iter_bytes(CHUNK_SIZE):
                        if cancel is not None and cancel.is_set():
                            raise DownloadCancelledError(f"Download of {url} cancelled")
                        f.write(chunk)
                        written += len(chunk)
        except httpx.HTTPError as e:
            raise translate_http_error(e, f"Download {url}") from e
        except (httpx.InvalidURL, ValueError) as e:
            raise NetworkError(f"Download {url}: invalid URL ({e})", cause=e) from e
        return written

    def _copy_local(self, source: Path, dest: Path, cancel: Optional[threading.Event]) -> int:
        written = 0
        try:
            with open(source, "rb") as src, open(dest, "wb") as dst:
                while True:
                    if cancel is not None and cancel.is_set():
                        raise DownloadCancelledError(f"Copy of {source} cancelled")
                    chunk = src.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    dst.write(chunk)
                    written += len(chunk)
        except OSError as e:
            raise NetworkError(f"Copy {source}: {e}", cause=e) from e
        return written
