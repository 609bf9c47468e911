"""Tests for cloud credentials and the document/blob HTTP clients."""

import json
import threading

import httpx
import pytest

from dreamsync.storage.cloud import (
    BlobStore,
    RemoteMirror,
    load_cloud_credentials,
    translate_http_error,
)
from dreamsync.types import (
    DownloadCancelledError,
    NetworkError,
    NoNetworkError,
    RemoteDataError,
)

from conftest import BACKEND_URL


class TestLoadCloudCredentials:
    def test_none_when_unconfigured(self):
        assert load_cloud_credentials() is None

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("DREAMSYNC_BACKEND_URL", "https://api.example.com/")
        monkeypatch.setenv("DREAMSYNC_AUTH_TOKEN", "tok")

        creds = load_cloud_credentials()

        assert creds == {"backend_url": "https://api.example.com", "auth_token": "tok"}

    def test_credentials_file(self, dreamsync_home):
        dreamsync_home.mkdir(parents=True)
        (dreamsync_home / "credentials.json").write_text(
            json.dumps({"backend_url": "https://file.example.com", "token": "file-tok"})
        )

        creds = load_cloud_credentials()

        assert creds["backend_url"] == "https://file.example.com"
        assert creds["auth_token"] == "file-tok"

    def test_env_overrides_credentials_file(self, dreamsync_home, monkeypatch):
        dreamsync_home.mkdir(parents=True)
        (dreamsync_home / "credentials.json").write_text(
            json.dumps({"backend_url": "https://file.example.com", "auth_token": "file-tok"})
        )
        monkeypatch.setenv("DREAMSYNC_AUTH_TOKEN", "env-tok")

        creds = load_cloud_credentials()

        assert creds["backend_url"] == "https://file.example.com"
        assert creds["auth_token"] == "env-tok"

    def test_config_fills_gaps(self, dreamsync_home, monkeypatch):
        dreamsync_home.mkdir(parents=True)
        (dreamsync_home / "config.json").write_text(json.dumps({"auth_token": "cfg-tok"}))
        monkeypatch.setenv("DREAMSYNC_BACKEND_URL", "https://api.example.com")

        assert load_cloud_credentials()["auth_token"] == "cfg-tok"

    def test_corrupt_file_is_ignored(self, dreamsync_home):
        dreamsync_home.mkdir(parents=True)
        (dreamsync_home / "credentials.json").write_text("{not json")
        assert load_cloud_credentials() is None

    def test_plain_http_remote_rejected(self, monkeypatch):
        monkeypatch.setenv("DREAMSYNC_BACKEND_URL", "http://api.example.com")
        monkeypatch.setenv("DREAMSYNC_AUTH_TOKEN", "tok")
        assert load_cloud_credentials() is None

    def test_localhost_http_allowed(self, monkeypatch):
        monkeypatch.setenv("DREAMSYNC_BACKEND_URL", "http://localhost:8080")
        monkeypatch.setenv("DREAMSYNC_AUTH_TOKEN", "tok")
        assert load_cloud_credentials()["backend_url"] == "http://localhost:8080"


class TestErrorTranslation:
    def _status_error(self, status):
        request = httpx.Request("GET", BACKEND_URL)
        response = httpx.Response(status, request=request)
        return httpx.HTTPStatusError("boom", request=request, response=response)

    def test_connect_error_is_no_network(self):
        request = httpx.Request("GET", BACKEND_URL)
        err = translate_http_error(httpx.ConnectError("dns", request=request), "Fetch")
        assert isinstance(err, NoNetworkError)

    @pytest.mark.parametrize("status", [400, 409, 422])
    def test_rejected_payload_is_remote_data_error(self, status):
        assert isinstance(translate_http_error(self._status_error(status), "Put"), RemoteDataError)

    def test_server_error_keeps_status(self):
        err = translate_http_error(self._status_error(503), "Fetch")
        assert type(err) is NetworkError
        assert err.status_code == 503


class TestClientConstruction:
    def test_rejects_unsafe_url(self, http_client):
        with pytest.raises(ValueError):
            RemoteMirror("ftp://api.example.com", "tok", client=http_client)

    def test_from_credentials_none_when_unconfigured(self):
        assert RemoteMirror.from_credentials() is None

    def test_from_credentials(self, monkeypatch, http_client):
        monkeypatch.setenv("DREAMSYNC_BACKEND_URL", BACKEND_URL)
        monkeypatch.setenv("DREAMSYNC_AUTH_TOKEN", "tok")

        mirror = RemoteMirror.from_credentials(client=http_client)

        assert mirror.backend_url == BACKEND_URL
        assert mirror.auth_token == "tok"

    def test_close_leaves_shared_client_open(self, mirror, http_client):
        mirror.close()
        assert not http_client.is_closed


class TestRemoteMirror:
    def test_fetch_all_filters_by_owner(self, backend, mirror, make_doc):
        backend.add(make_doc("a1", owner_id="alice"))
        backend.add(make_doc("b1", owner_id="bob"))

        docs = mirror.fetch_all("alice")

        assert [d["id"] for d in docs] == ["a1"]
        request = backend.requests[-1]
        assert request.url.params["ownerId"] == "alice"
        assert request.headers["Authorization"] == "Bearer test-token"

    def test_fetch_all_accepts_bare_list(self, backend, mirror, make_doc):
        backend.fetch_payload = [make_doc()]
        assert len(mirror.fetch_all("u1")) == 1

    @pytest.mark.parametrize("payload", [{"items": []}, {"documents": "nope"}, "text"])
    def test_fetch_all_bad_payload(self, backend, mirror, payload):
        backend.fetch_payload = payload
        with pytest.raises(RemoteDataError):
            mirror.fetch_all("u1")

    def test_offline(self, backend, mirror):
        backend.offline = True
        with pytest.raises(NoNetworkError):
            mirror.fetch_all("u1")

    def test_server_error(self, backend, mirror):
        backend.fail_status = 503
        with pytest.raises(NetworkError) as exc_info:
            mirror.fetch_all("u1")
        assert exc_info.value.status_code == 503

    def test_put_never_sends_cache_fields(self, backend, mirror, make_dream):
        mirror.put(make_dream(local_media_path="cached-d1.mp4", local_audio_path="cached-d1.m4a"))

        request = backend.requests_to("/collections/dreams/documents/d1")[-1]
        assert request.method == "PUT"
        assert request.url.params["merge"] == "true"
        body = json.loads(request.content)
        assert body["title"] == "T1"
        assert "cached-d1" not in json.dumps(body)
        assert "syncState" not in body
        assert backend.documents["d1"]["ownerId"] == "u1"

    def test_put_rejected(self, backend, mirror, make_dream):
        backend.fail_status = 422
        with pytest.raises(RemoteDataError):
            mirror.put(make_dream())

    def test_delete(self, backend, mirror, make_doc):
        backend.add(make_doc())
        mirror.delete("d1")
        assert "d1" not in backend.documents

    def test_delete_missing_is_ok(self, mirror):
        mirror.delete("never-existed")

    def test_health_check(self, backend, mirror):
        assert mirror.health_check()["healthy"] is True

        backend.offline = True
        status = mirror.health_check()
        assert status["healthy"] is False
        assert status["offline"] is True


class TestBlobStore:
    def test_object_path(self):
        assert BlobStore.object_path("u1", "dreams", "d1", ".mp4") == "u1/dreams/d1.mp4"

    def test_upload_returns_download_url(self, backend, blobs, tmp_path):
        source = tmp_path / "clip.mp4"
        source.write_bytes(b"video-bytes")

        url = blobs.upload(source, "u1/dreams/d1.mp4")

        assert url == f"{BACKEND_URL}/media/u1/dreams/d1.mp4"
        assert backend.blobs["u1/dreams/d1.mp4"] == b"video-bytes"
        assert backend.requests[-1].headers["Content-Type"] == "video/mp4"

    def test_upload_missing_file(self, blobs, tmp_path):
        with pytest.raises(NetworkError):
            blobs.upload(tmp_path / "nope.mp4", "u1/dreams/d1.mp4")

    def test_download(self, backend, blobs, tmp_path):
        backend.blobs["u1/dreams/d1.mp4"] = b"abc" * 1000
        dest = tmp_path / "out.mp4"

        written = blobs.download(f"{BACKEND_URL}/media/u1/dreams/d1.mp4", dest)

        assert written == 3000
        assert dest.read_bytes() == b"abc" * 1000

    def test_download_missing_blob(self, blobs, tmp_path):
        with pytest.raises(NetworkError) as exc_info:
            blobs.download(f"{BACKEND_URL}/media/u1/dreams/nope.mp4", tmp_path / "out.mp4")
        assert exc_info.value.status_code == 404

    def test_token_not_sent_to_other_hosts(self, backend, blobs, tmp_path):
        backend.unreachable_hosts = set()
        backend.blobs["x.mp4"] = b"x"
        blobs.download("https://cdn.other.test/media/x.mp4", tmp_path / "out.mp4")
        assert "Authorization" not in backend.requests[-1].headers

    def test_unreachable_host(self, blobs, tmp_path):
        with pytest.raises(NoNetworkError):
            blobs.download("https://unreachable.invalid/x.mp4", tmp_path / "out.mp4")

    def test_cancelled(self, backend, blobs, tmp_path):
        backend.blobs["u1/dreams/d1.mp4"] = b"x" * 10
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(DownloadCancelledError):
            blobs.download(f"{BACKEND_URL}/media/u1/dreams/d1.mp4", tmp_path / "out.mp4", cancel)

    def test_file_url_is_copied(self, blobs, tmp_path):
        source = tmp_path / "local clip.mp4"
        source.write_bytes(b"local")
        dest = tmp_path / "out.mp4"

        assert blobs.download(source.as_uri(), dest) == 5
        assert dest.read_bytes() == b"local"

    def test_unsupported_scheme(self, blobs, tmp_path):
        with pytest.raises(NetworkError):
            blobs.download("ftp://example.com/x.mp4", tmp_path / "out.mp4")
