"""
Pytest fixtures and test configuration for dreamsync tests.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import unquote

import httpx
import pytest

from dreamsync.core.documents import timestamp_to_wire
from dreamsync.storage import BlobStore, DreamStore, MediaCache, Reconciler, RemoteMirror
from dreamsync.types import Dream

BACKEND_URL = "https://api.dreams.test"
T0 = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)


class FakeBackend:
    """In-memory document collection and blob store behind an httpx MockTransport."""

    def __init__(self):
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.blobs: Dict[str, bytes] = {}
        self.requests: List[httpx.Request] = []
        self.offline = False
        self.fail_status: Optional[int] = None
        self.fetch_payload: Any = None
        self.unreachable_hosts = {"unreachable.invalid"}

    def add(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        self.documents[doc["id"]] = doc
        return doc

    def requests_to(self, prefix: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.startswith(prefix)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.offline or request.url.host in self.unreachable_hosts:
            raise httpx.ConnectError("Name or service not known", request=request)
        if self.fail_status is not None:
            return httpx.Response(self.fail_status, json={"error": "boom"})

        path = request.url.path
        method = request.method

        if path == "/health":
            return httpx.Response(200, json={"status": "ok"})

        if path == "/collections/dreams/documents" and method == "GET":
            if self.fetch_payload is not None:
                return httpx.Response(200, json=self.fetch_payload)
            owner = request.url.params.get("ownerId")
            docs = [d for d in self.documents.values() if d.get("ownerId") == owner]
            return httpx.Response(200, json={"documents": docs})

        if path.startswith("/collections/dreams/documents/"):
            doc_id = unquote(path.rsplit("/", 1)[-1])
            if method == "PUT":
                body = json.loads(request.content)
                merged = {**self.documents.get(doc_id, {}), **body}
                self.documents[doc_id] = merged
                return httpx.Response(200, json=merged)
            if method == "DELETE":
                if doc_id not in self.documents:
                    return httpx.Response(404, json={"error": "not found"})
                del self.documents[doc_id]
                return httpx.Response(204)

        if path.startswith("/storage/") and method == "PUT":
            object_path = path[len("/storage/") :]
            self.blobs[object_path] = request.content
            return httpx.Response(200, json={"url": f"{BACKEND_URL}/media/{object_path}"})

        if path.startswith("/media/") and method == "GET":
            key = path[len("/media/") :]
            if key not in self.blobs:
                return httpx.Response(404)
            return httpx.Response(200, content=self.blobs[key])

        return httpx.Response(404, json={"error": f"no route for {method} {path}"})


@pytest.fixture(autouse=True)
def dreamsync_home(tmp_path, monkeypatch):
    """Point the data directory at a temp dir and clear config env vars."""
    home = tmp_path / "home"
    monkeypatch.setenv("DREAMSYNC_DATA_DIR", str(home))
    for var in (
        "DREAMSYNC_BACKEND_URL",
        "DREAMSYNC_AUTH_TOKEN",
        "DREAMSYNC_CONFLICT_POLICY",
        "DREAMSYNC_OWNER_ID",
        "DREAMSYNC_LOG_LEVEL",
    ):
        monkeypatch.delenv(var, raising=False)
    return home


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def http_client(backend):
    client = httpx.Client(transport=httpx.MockTransport(backend.handler))
    yield client
    client.close()


@pytest.fixture
def store(tmp_path):
    """Create a DreamStore on a temporary database."""
    store = DreamStore(db_path=tmp_path / "dreams.db")
    yield store
    store.close()


@pytest.fixture
def mirror(http_client):
    return RemoteMirror(BACKEND_URL, "test-token", client=http_client)


@pytest.fixture
def blobs(http_client):
    return BlobStore(BACKEND_URL, "test-token", client=http_client)


@pytest.fixture
def reconciler(store, mirror):
    return Reconciler(store, mirror)


@pytest.fixture
def cache(store, blobs, tmp_path):
    return MediaCache(store, blobs, root=tmp_path / "media")


@pytest.fixture
def make_doc():
    """Factory for complete remote dream documents."""

    def _make_doc(
        doc_id: str = "d1",
        owner_id: str = "u1",
        title: str = "T1",
        updated_at: datetime = T0,
        **overrides: Any,
    ) -> Dict[str, Any]:
        doc = {
            "id": doc_id,
            "ownerId": owner_id,
            "title": title,
            "description": "I was flying over a city made of glass",
            "date": timestamp_to_wire(T0),
            "mediaURL": f"{BACKEND_URL}/media/{owner_id}/dreams/{doc_id}.mp4",
            "createdAt": timestamp_to_wire(T0),
            "updatedAt": timestamp_to_wire(updated_at),
            "dreamDate": timestamp_to_wire(T0),
            "processingStatus": "completed",
            "tags": ["flying"],
        }
        doc.update(overrides)
        return doc

    return _make_doc


@pytest.fixture
def make_dream():
    """Factory for local dream records."""

    def _make_dream(
        dream_id: str = "d1",
        owner_id: str = "u1",
        title: str = "T1",
        updated_at: datetime = T0,
        **overrides: Any,
    ) -> Dream:
        values = dict(
            id=dream_id,
            owner_id=owner_id,
            title=title,
            description="I was flying over a city made of glass",
            media_url=f"{BACKEND_URL}/media/{owner_id}/dreams/{dream_id}.mp4",
            date=T0,
            dream_date=T0,
            created_at=T0,
            updated_at=updated_at,
            tags=["flying"],
        )
        values.update(overrides)
        return Dream(**values)

    return _make_dream
