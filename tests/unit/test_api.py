"""
API tests through FastAPI's TestClient.

The app runs with both mock modes on: MockObjectStore for the bucket and
MockSnowflakeConnection for the registry.
"""

import asyncio
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from fieldreel.config.settings import Settings
from fieldreel.core.uploads import SignedURL, StoreOperation
from fieldreel.core.uploads.models import utcnow
from fieldreel.main import create_app, sweep_once

HEADERS = {"X-API-Key": "test-key", "X-Company-Id": "acme", "X-Worker-Id": "w-1"}
KEY = "recordings/acme/2024/03/09/PKG-1_1709985600000.webm"
DATA = bytes(i % 251 for i in range(1000))


def make_settings(**overrides) -> Settings:
    values = dict(
        api_keys="test-key",
        s3_mock_mode=True,
        snowflake_mock_mode=True,
        reaper_interval_seconds=3600,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def client():
    with TestClient(create_app(make_settings())) as client:
        yield client


@pytest.fixture
def seeded(client):
    """A completed recording with 1000 bytes behind it."""
    client.app.state.object_store._put_object(KEY, DATA)
    client.app.state.snowflake_mock._add_recording(
        "rec-1", "acme",
        status="completed",
        storage_key=KEY,
        content_type="video/webm",
        barcode="PKG-1",
    )
    return client


def write_part(client, url: str, key: str, data: bytes) -> str:
    """Play the client's role: PUT a part to its signed URL."""
    credential = SignedURL(
        url=url,
        operation=StoreOperation.UPLOAD_PART,
        object_key=key,
        expires_in=60,
        expires_at=utcnow() + timedelta(seconds=60),
    )
    return asyncio.run(client.app.state.object_store.put_signed(credential, data))


class TestAuthAndHealth:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["details"]["mock_mode"] == {"snowflake": True, "s3": True}

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_failed_ticket_sweep_still_sweeps_sessions(self, client, monkeypatch):
        async def broken_sweep():
            raise RuntimeError("store unavailable")

        async def session_sweep():
            return 2

        monkeypatch.setattr(client.app.state.coordinator, "sweep", broken_sweep)
        monkeypatch.setattr(client.app.state.session_manager, "sweep", session_sweep)

        assert asyncio.run(sweep_once(client.app)) == (0, 2)

    def test_missing_api_key(self, client):
        response = client.post("/api/v1/upload/multipart/init", json={"barcode": "PKG-1"})
        assert response.status_code == 403

    def test_missing_identity(self, client):
        response = client.post(
            "/api/v1/upload/multipart/init",
            json={"barcode": "PKG-1"},
            headers={"X-API-Key": "test-key"},
        )
        assert response.status_code == 401


class TestPresignedUpload:

    def test_issues_put_url(self, client):
        response = client.post(
            "/api/v1/upload/presigned-url",
            json={"barcode": "PKG-1", "file_size": 1024},
            headers=HEADERS,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["key"].startswith("recordings/acme/")
        assert body["upload"]["method"] == "PUT"
        assert body["upload"]["headers"]["x-amz-meta-barcode"] == "PKG-1"
        assert body["upload"]["headers"]["x-amz-meta-worker-id"] == "w-1"

    def test_too_large_for_single_put(self, client):
        response = client.post(
            "/api/v1/upload/presigned-url",
            json={"barcode": "PKG-1", "file_size": 101 * 1024 * 1024},
            headers=HEADERS,
        )

        assert response.status_code == 413
        assert response.json()["error"] == "PayloadTooLargeError"


class TestMultipartUpload:

    def test_full_flow_with_unordered_parts(self, client):
        init = client.post(
            "/api/v1/upload/multipart/init",
            json={"barcode": "PKG-1", "file_size": 6},
            headers=HEADERS,
        )
        assert init.status_code == 201
        ticket = init.json()

        parts = []
        for number, data in ((1, b"aaa"), (2, b"bbb")):
            signed = client.post(
                "/api/v1/upload/multipart/part-url",
                json={"upload_id": ticket["upload_id"], "part_number": number},
                headers=HEADERS,
            ).json()
            etag = write_part(client, signed["url"], ticket["key"], data)
            parts.append({"part_number": number, "etag": etag})

        response = client.post(
            "/api/v1/upload/multipart/complete",
            json={"upload_id": ticket["upload_id"], "parts": list(reversed(parts))},
            headers=HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["key"] == ticket["key"]
        store = client.app.state.object_store
        assert store.completed_manifests[-1] == [1, 2]
        assert store._get_object(ticket["key"]) == b"aaabbb"

        status = client.get(f"/api/v1/upload/multipart/{ticket['upload_id']}", headers=HEADERS)
        assert status.json()["status"] == "completed"
        assert status.json()["requested_parts"] == [1, 2]

    def test_empty_part_list(self, client):
        ticket = client.post(
            "/api/v1/upload/multipart/init", json={"barcode": "PKG-1"}, headers=HEADERS
        ).json()

        response = client.post(
            "/api/v1/upload/multipart/complete",
            json={"upload_id": ticket["upload_id"], "parts": []},
            headers=HEADERS,
        )

        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    def test_abort_is_idempotent(self, client):
        ticket = client.post(
            "/api/v1/upload/multipart/init", json={"barcode": "PKG-1"}, headers=HEADERS
        ).json()

        for _ in range(2):
            response = client.post(
                "/api/v1/upload/multipart/abort",
                json={"upload_id": ticket["upload_id"]},
                headers=HEADERS,
            )
            assert response.status_code == 200
            assert response.json()["status"] == "aborted"

        part = client.post(
            "/api/v1/upload/multipart/part-url",
            json={"upload_id": ticket["upload_id"], "part_number": 1},
            headers=HEADERS,
        )
        assert part.status_code == 409

    def test_other_company_cannot_see_ticket(self, client):
        ticket = client.post(
            "/api/v1/upload/multipart/init", json={"barcode": "PKG-1"}, headers=HEADERS
        ).json()

        response = client.get(
            f"/api/v1/upload/multipart/{ticket['upload_id']}",
            headers={**HEADERS, "X-Company-Id": "globex"},
        )

        assert response.status_code == 404
        assert response.json()["error"] == "NotFoundError"

    def test_cannot_attach_to_other_company_recording(self, client):
        mock = client.app.state.snowflake_mock
        mock._add_recording("rec-b", "globex", storage_key="recordings/globex/B-1.webm")

        response = client.post(
            "/api/v1/upload/multipart/init",
            json={"barcode": "A-1", "recording_id": "rec-b"},
            headers=HEADERS,
        )

        assert response.status_code == 404
        assert mock._get_recording("rec-b")["storage_key"] == "recordings/globex/B-1.webm"

    def test_completion_marks_own_recording(self, client):
        mock = client.app.state.snowflake_mock
        mock._add_recording("rec-a", "acme")
        ticket = client.post(
            "/api/v1/upload/multipart/init",
            json={"barcode": "A-1", "recording_id": "rec-a"},
            headers=HEADERS,
        ).json()
        signed = client.post(
            "/api/v1/upload/multipart/part-url",
            json={"upload_id": ticket["upload_id"], "part_number": 1},
            headers=HEADERS,
        ).json()
        etag = write_part(client, signed["url"], ticket["key"], b"abc")

        response = client.post(
            "/api/v1/upload/multipart/complete",
            json={"upload_id": ticket["upload_id"], "parts": [{"part_number": 1, "etag": etag}]},
            headers=HEADERS,
        )

        assert response.status_code == 200
        row = mock._get_recording("rec-a")
        assert row["status"] == "completed"
        assert row["storage_key"] == ticket["key"]


class TestChunkedUpload:

    def test_chunks_in_any_order(self, client):
        session = client.post(
            "/api/v1/chunked/sessions",
            json={"barcode": "PKG-1", "total_chunks": 3, "total_size": 6},
            headers=HEADERS,
        ).json()
        url = f"/api/v1/chunked/sessions/{session['session_id']}"

        client.put(f"{url}/chunks/2", content=b"cc", headers=HEADERS)
        client.put(f"{url}/chunks/0", content=b"aa", headers=HEADERS)
        status = client.get(url, headers=HEADERS).json()
        assert status["missing_indexes"] == [1]
        assert status["buffered_bytes"] == 4

        response = client.put(f"{url}/chunks/1", content=b"bb", headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["is_final"]
        stored = client.app.state.object_store._get_object(body["stored"]["key"])
        assert stored == b"aabbcc"

    def test_chunk_over_declared_size(self, client):
        session = client.post(
            "/api/v1/chunked/sessions",
            json={"barcode": "PKG-1", "total_chunks": 2, "total_size": 4},
            headers=HEADERS,
        ).json()

        response = client.put(
            f"/api/v1/chunked/sessions/{session['session_id']}/chunks/0",
            content=b"12345",
            headers=HEADERS,
        )

        assert response.status_code == 413

    def test_oversized_streamed_chunk_rejected(self, client):
        """A body sent without Content-Length is cut off once it passes the allowance."""
        session = client.post(
            "/api/v1/chunked/sessions",
            json={"barcode": "PKG-1", "total_chunks": 2, "total_size": 10},
            headers=HEADERS,
        ).json()
        url = f"/api/v1/chunked/sessions/{session['session_id']}"

        response = client.put(
            f"{url}/chunks/0",
            content=iter([b"x" * 6, b"x" * 6, b"x" * 6]),
            headers=HEADERS,
        )

        assert response.status_code == 413
        assert response.json()["error"] == "PayloadTooLargeError"
        assert client.get(url, headers=HEADERS).json()["buffered_bytes"] == 0

    def test_chunk_over_remaining_allowance(self, client):
        session = client.post(
            "/api/v1/chunked/sessions",
            json={"barcode": "PKG-1", "total_chunks": 2, "total_size": 10},
            headers=HEADERS,
        ).json()
        url = f"/api/v1/chunked/sessions/{session['session_id']}"
        client.put(f"{url}/chunks/0", content=b"123456", headers=HEADERS)

        too_big = client.put(f"{url}/chunks/1", content=b"12345", headers=HEADERS)
        overwrite = client.put(f"{url}/chunks/0", content=b"1234567890", headers=HEADERS)

        assert too_big.status_code == 413
        assert overwrite.status_code == 200

    def test_session_for_other_company_recording(self, client):
        client.app.state.snowflake_mock._add_recording("rec-b", "globex")

        response = client.post(
            "/api/v1/chunked/sessions",
            json={"barcode": "A-1", "total_chunks": 1, "total_size": 2, "recording_id": "rec-b"},
            headers=HEADERS,
        )

        assert response.status_code == 404

    def test_direct_upload_too_large(self):
        with TestClient(create_app(make_settings(max_chunk_session_mb=1))) as client:
            response = client.post(
                "/api/v1/chunked/direct",
                files={"file": ("clip.webm", b"x" * (1024 * 1024 + 1), "video/webm")},
                data={"barcode": "PKG-1"},
                headers=HEADERS,
            )

        assert response.status_code == 413

    def test_cancel(self, client):
        session = client.post(
            "/api/v1/chunked/sessions",
            json={"barcode": "PKG-1", "total_chunks": 2, "total_size": 4},
            headers=HEADERS,
        ).json()
        url = f"/api/v1/chunked/sessions/{session['session_id']}"

        assert client.delete(url, headers=HEADERS).status_code == 204
        assert client.get(url, headers=HEADERS).status_code == 404

    def test_direct_upload(self, client):
        response = client.post(
            "/api/v1/chunked/direct",
            files={"file": ("clip.webm", b"video-bytes", "video/webm")},
            data={"barcode": "PKG-1"},
            headers=HEADERS,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["size"] == 11
        assert body["key"].endswith(".webm")

    def test_disabled(self):
        app = create_app(make_settings(chunked_upload_enabled=False))
        with TestClient(app) as client:
            response = client.post(
                "/api/v1/chunked/sessions",
                json={"barcode": "PKG-1", "total_chunks": 1, "total_size": 1},
                headers=HEADERS,
            )
        assert response.status_code == 404


class TestVideo:

    def test_partial_stream(self, seeded):
        response = seeded.get(
            "/api/v1/video/stream/rec-1", headers={**HEADERS, "Range": "bytes=100-199"}
        )

        assert response.status_code == 206
        assert response.headers["content-range"] == "bytes 100-199/1000"
        assert response.headers["accept-ranges"] == "bytes"
        assert response.content == DATA[100:200]

    def test_full_stream(self, seeded):
        response = seeded.get("/api/v1/video/stream/rec-1", headers=HEADERS)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("video/webm")
        assert response.content == DATA

    def test_range_not_satisfiable(self, seeded):
        response = seeded.get(
            "/api/v1/video/stream/rec-1", headers={**HEADERS, "Range": "bytes=2000-"}
        )

        assert response.status_code == 416
        assert response.headers["content-range"] == "bytes */1000"

    def test_unknown_recording(self, seeded):
        response = seeded.get("/api/v1/video/stream/nope", headers=HEADERS)
        assert response.status_code == 404

    def test_other_company(self, seeded):
        response = seeded.get(
            "/api/v1/video/url/rec-1", headers={**HEADERS, "X-Company-Id": "globex"}
        )
        assert response.status_code == 404

    def test_playback_url(self, seeded):
        response = seeded.get("/api/v1/video/url/rec-1", headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert "op=get_object" in body["url"]
        assert body["recording"]["barcode"] == "PKG-1"

    def test_list(self, seeded):
        response = seeded.get("/api/v1/video/list", params={"barcode": "PKG"}, headers=HEADERS)

        assert response.status_code == 200
        assert [v["recording"]["recording_id"] for v in response.json()["videos"]] == ["rec-1"]

    def test_list_bad_limit(self, seeded):
        response = seeded.get("/api/v1/video/list", params={"limit": 0}, headers=HEADERS)
        assert response.status_code == 400
