"""
Unit tests for the S3 object store.

boto3 signs locally, so presigning needs no network. The httpx data
plane is exercised through httpx.MockTransport.
"""

import httpx
import pytest

from fieldreel.core.uploads import CredentialError, CredentialIssuer, NotFoundError
from fieldreel.infrastructure.storage.client import (
    MockObjectStore,
    S3ObjectStore,
    StorageConfig,
    StorageError,
    create_object_store,
)

CONFIG = StorageConfig(
    access_key_id="AKIAEXAMPLE",
    secret_access_key="secret",
    bucket_name="fieldreel-test",
    region="ap-northeast-2",
)


def store_with(handler) -> S3ObjectStore:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return S3ObjectStore(CONFIG, http_client=client)


class TestConfiguration:

    def test_missing_credentials(self):
        config = StorageConfig(
            access_key_id="", secret_access_key="", bucket_name="b", region="r"
        )

        with pytest.raises(CredentialError, match="access key id"):
            S3ObjectStore(config)

    def test_factory_mock_mode(self):
        assert isinstance(create_object_store(mock_mode=True), MockObjectStore)

    def test_factory_needs_config(self):
        with pytest.raises(ValueError):
            create_object_store()


class TestPresign:

    def test_put_url_is_signed(self):
        issuer = CredentialIssuer(S3ObjectStore(CONFIG))

        credential = issuer.issue_write_credential(
            "recordings/acme/PKG-1.webm", "video/webm", {"barcode": "PKG-1"}, ttl=600
        )

        assert "fieldreel-test" in credential.url
        assert "X-Amz-Signature=" in credential.url
        assert "X-Amz-Expires=600" in credential.url

    def test_part_url_carries_upload_id(self):
        issuer = CredentialIssuer(S3ObjectStore(CONFIG))

        credential = issuer.issue_write_credential("k", upload_id="up-1", part_number=2)

        assert "uploadId=up-1" in credential.url
        assert "partNumber=2" in credential.url

    def test_public_url(self):
        store = S3ObjectStore(CONFIG)
        assert store.public_url("a/b.webm") == (
            "https://fieldreel-test.s3.ap-northeast-2.amazonaws.com/a/b.webm"
        )


@pytest.mark.asyncio
class TestDataPlane:

    async def test_put_sends_signed_headers(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["headers"] = request.headers
            seen["body"] = request.content
            return httpx.Response(200, headers={"ETag": '"abc"'})

        store = store_with(handler)
        credential = CredentialIssuer(store).issue_write_credential(
            "k", "video/webm", {"barcode": "PKG-1"}
        )

        etag = await store.put_signed(credential, b"bytes")

        assert etag == '"abc"'
        assert seen["body"] == b"bytes"
        assert seen["headers"]["x-amz-meta-barcode"] == "PKG-1"
        assert seen["headers"]["content-type"] == "video/webm"

    async def test_put_rejection_carries_code(self):
        def handler(request):
            return httpx.Response(
                403, text="<Error><Code>SignatureDoesNotMatch</Code></Error>"
            )

        store = store_with(handler)
        credential = CredentialIssuer(store).issue_write_credential("k")

        with pytest.raises(StorageError) as exc_info:
            await store.put_signed(credential, b"bytes")
        assert exc_info.value.code == "SignatureDoesNotMatch"

    async def test_ranged_stream(self):
        data = bytes(range(256)) * 4
        seen = {}

        def handler(request):
            seen["range"] = request.headers.get("range")
            seen["if_match"] = request.headers.get("if-match")
            return httpx.Response(
                206,
                content=data[100:200],
                headers={"Content-Range": f"bytes 100-199/{len(data)}"},
            )

        store = store_with(handler)
        credential = CredentialIssuer(store).issue_read_credential("k")

        chunks = [c async for c in store.stream_signed(credential, 100, 199, 64, etag='"v1"')]

        assert seen["range"] == "bytes=100-199"
        assert seen["if_match"] == '"v1"'
        assert b"".join(chunks) == data[100:200]

    async def test_ignored_range_is_refused(self):
        """A 200 with the whole object must not be passed off as the requested range."""
        data = bytes(range(256)) * 4
        store = store_with(lambda request: httpx.Response(200, content=data))
        credential = CredentialIssuer(store).issue_read_credential("k")

        with pytest.raises(StorageError) as exc_info:
            [c async for c in store.stream_signed(credential, 100, 199, 64)]
        assert exc_info.value.code == "RangeMismatch"

    async def test_wrong_content_range_is_refused(self):
        store = store_with(lambda request: httpx.Response(
            206, content=b"x" * 100, headers={"Content-Range": "bytes 0-99/1000"}
        ))
        credential = CredentialIssuer(store).issue_read_credential("k")

        with pytest.raises(StorageError):
            [c async for c in store.stream_signed(credential, 100, 199, 64)]

    async def test_open_ended_range(self):
        store = store_with(lambda request: httpx.Response(
            206, content=b"tail", headers={"Content-Range": "bytes 996-999/1000"}
        ))
        credential = CredentialIssuer(store).issue_read_credential("k")

        assert b"".join([c async for c in store.stream_signed(credential, 996, None, 64)]) == b"tail"

    async def test_changed_object_fails(self):
        def handler(request):
            return httpx.Response(
                412,
                text=(
                    '<Error xmlns="http://s3.amazonaws.com/doc/2006-03-01/">'
                    "<Code>PreconditionFailed</Code></Error>"
                ),
            )

        store = store_with(handler)
        credential = CredentialIssuer(store).issue_read_credential("k")

        with pytest.raises(StorageError) as exc_info:
            [c async for c in store.stream_signed(credential, 0, None, 64, etag='"old"')]
        assert exc_info.value.code == "PreconditionFailed"

    async def test_malformed_error_body(self):
        store = store_with(lambda request: httpx.Response(500, text="<Error><Code>Internal"))
        credential = CredentialIssuer(store).issue_write_credential("k")

        with pytest.raises(StorageError) as exc_info:
            await store.put_signed(credential, b"bytes")
        assert exc_info.value.code is None

    async def test_full_stream_sends_no_range(self):
        seen = {}

        def handler(request):
            seen["range"] = request.headers.get("range")
            return httpx.Response(200, content=b"all")

        store = store_with(handler)
        credential = CredentialIssuer(store).issue_read_credential("k")

        assert b"".join([c async for c in store.stream_signed(credential, 0, None, 64)]) == b"all"
        assert seen["range"] is None

    async def test_stream_missing_object(self):
        store = store_with(lambda request: httpx.Response(404, text="<Code>NoSuchKey</Code>"))
        credential = CredentialIssuer(store).issue_read_credential("k")

        with pytest.raises(NotFoundError):
            [c async for c in store.stream_signed(credential, 0, None, 64)]
