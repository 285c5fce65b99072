"""
Object storage client for recordings.

Talks to S3 (or any S3-compatible store such as R2 or MinIO) in two ways:
- Control plane (multipart create/complete/abort, HEAD) and request
  signing go through boto3.
- Data plane (the bytes) only ever moves through presigned URLs, fetched
  or written with httpx. The same credentials we hand to clients are the
  ones we use ourselves.

Mock mode keeps objects in memory and understands its own `mock://`
credentials, enabling the full API flow without provisioning a bucket.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Optional
from urllib.parse import parse_qs, quote, unquote, urlencode, urlparse
from uuid import uuid4
from xml.etree import ElementTree

import httpx

from ...core.uploads.errors import CredentialError, NotFoundError, UpstreamError
from ...core.uploads.keys import public_url
from ...core.uploads.models import (
    ObjectInfo,
    ObjectStore,
    PartDescriptor,
    SignedURL,
    StoreOperation,
)

logger = logging.getLogger(__name__)


class StorageError(UpstreamError):
    """Raised when storage operations fail."""
    pass


class ObjectNotFoundError(NotFoundError):
    """Raised when the requested object doesn't exist in the bucket."""
    pass


@dataclass
class StorageConfig:
    """Configuration for S3-compatible storage."""
    access_key_id: str
    secret_access_key: str
    bucket_name: str
    region: str
    endpoint_url: Optional[str] = None  # R2/MinIO; None means AWS


class S3ObjectStore:
    """
    S3 object store.

    boto3 is synchronous, so its network calls run in a worker thread to
    keep the event loop free while the store is slow. Presigning is local
    and runs inline.
    """

    def __init__(
        self,
        config: StorageConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 300.0,
    ) -> None:
        try:
            import boto3
            from botocore.config import Config
        except ImportError:
            raise ImportError(
                "boto3 is required for S3 storage. Install with: pip install boto3"
            )

        missing = [
            name
            for name, value in (
                ("access key id", config.access_key_id),
                ("secret access key", config.secret_access_key),
                ("bucket name", config.bucket_name),
                ("region", config.region),
            )
            if not value
        ]
        if missing:
            raise CredentialError(
                f"Object storage is not configured: missing {', '.join(missing)}"
            )

        self._config = config

        boto_config = Config(
            signature_version="s3v4",
            s3={"addressing_style": "path" if config.endpoint_url else "virtual"},
        )

        self._s3_client = boto3.client(
            "s3",
            endpoint_url=config.endpoint_url,
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            region_name=config.region,
            config=boto_config,
        )
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

        logger.info(
            "Initialized S3 storage client",
            extra={"bucket": config.bucket_name, "endpoint": config.endpoint_url or "aws"},
        )

    def presign(
        self,
        operation: StoreOperation,
        object_key: str,
        expires_in: int,
        params: dict,
    ) -> str:
        from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

        try:
            return self._s3_client.generate_presigned_url(
                operation.value,
                Params={"Bucket": self._config.bucket_name, "Key": object_key, **params},
                ExpiresIn=expires_in,
            )
        except NoCredentialsError as e:
            raise CredentialError(f"No signing credentials available: {e}")
        except (BotoCoreError, ClientError) as e:
            logger.error(
                "Failed to presign request",
                extra={"key": object_key, "operation": operation.value, "error": str(e)},
            )
            raise StorageError(f"Presigning failed: {e}")

    def public_url(self, object_key: str) -> str:
        if self._config.endpoint_url:
            return f"{self._config.endpoint_url.rstrip('/')}/{self._config.bucket_name}/{object_key}"
        return public_url(self._config.bucket_name, self._config.region, object_key)

    async def create_multipart_upload(
        self,
        object_key: str,
        content_type: str,
        metadata: dict[str, str],
    ) -> str:
        response = await self._call(
            "Create multipart upload",
            self._s3_client.create_multipart_upload,
            Bucket=self._config.bucket_name,
            Key=object_key,
            ContentType=content_type,
            Metadata=metadata,
        )
        return response["UploadId"]

    async def complete_multipart_upload(
        self,
        object_key: str,
        upload_id: str,
        parts: list[PartDescriptor],
    ) -> dict:
        response = await self._call(
            "Complete multipart upload",
            self._s3_client.complete_multipart_upload,
            Bucket=self._config.bucket_name,
            Key=object_key,
            UploadId=upload_id,
            MultipartUpload={
                "Parts": [{"PartNumber": p.part_number, "ETag": p.etag} for p in parts]
            },
        )
        return {"etag": response.get("ETag"), "location": response.get("Location")}

    async def abort_multipart_upload(self, object_key: str, upload_id: str) -> None:
        await self._call(
            "Abort multipart upload",
            self._s3_client.abort_multipart_upload,
            Bucket=self._config.bucket_name,
            Key=object_key,
            UploadId=upload_id,
        )

    async def head_object(self, object_key: str) -> ObjectInfo:
        try:
            response = await self._call(
                "Head object",
                self._s3_client.head_object,
                Bucket=self._config.bucket_name,
                Key=object_key,
            )
        except StorageError as e:
            if e.code in ("404", "NoSuchKey", "NotFound"):
                raise ObjectNotFoundError(f"Object not found: {object_key}")
            raise

        return ObjectInfo(
            size=int(response["ContentLength"]),
            content_type=response.get("ContentType"),
            etag=response.get("ETag"),
        )

    async def put_signed(self, credential: SignedURL, data: bytes) -> Optional[str]:
        """PUT `data` to a presigned URL, sending the headers it was signed with."""
        try:
            response = await self._http.put(
                credential.url,
                content=data,
                headers=credential.headers,
            )
        except httpx.HTTPError as e:
            logger.error(
                "Signed upload failed",
                extra={"key": credential.object_key, "error": str(e)},
            )
            raise StorageError(f"Upload failed: {e}")

        if response.status_code >= 400:
            code = _error_code(response.text)
            logger.error(
                "Store rejected signed upload",
                extra={
                    "key": credential.object_key,
                    "status": response.status_code,
                    "code": code,
                },
            )
            raise StorageError(f"Upload rejected with HTTP {response.status_code}", code=code)

        logger.info(
            "Uploaded object",
            extra={"key": credential.object_key, "size_bytes": len(data)},
        )

        return response.headers.get("ETag")

    async def stream_signed(
        self,
        credential: SignedURL,
        start: int,
        end: Optional[int],
        chunk_size: int,
        etag: Optional[str] = None,
    ) -> AsyncIterator[bytes]:
        """
        GET from a presigned URL and yield the body as it arrives.

        The response must be exactly what was asked for: 206 with the
        requested Content-Range for a ranged read, 200 for a full one.
        `etag` pins the object version through If-Match.
        """
        headers = {}
        ranged = bool(start) or end is not None
        if ranged:
            headers["Range"] = f"bytes={start}-{'' if end is None else end}"
        if etag:
            headers["If-Match"] = etag

        try:
            async with self._http.stream("GET", credential.url, headers=headers) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    code = _error_code(body.decode("utf-8", "replace"))
                    if response.status_code == 404:
                        raise ObjectNotFoundError(f"Object not found: {credential.object_key}")
                    raise StorageError(
                        f"Download rejected with HTTP {response.status_code}", code=code
                    )
                _check_served_range(response, credential.object_key, ranged, start, end)
                async for chunk in response.aiter_bytes(chunk_size):
                    yield chunk
        except httpx.HTTPError as e:
            logger.error(
                "Signed download failed",
                extra={"key": credential.object_key, "error": str(e)},
            )
            raise StorageError(f"Download failed: {e}")

    async def close(self) -> None:
        await self._http.aclose()

    async def _call(self, action: str, method, **kwargs) -> dict:
        from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

        try:
            return await asyncio.to_thread(method, **kwargs)
        except NoCredentialsError as e:
            raise CredentialError(f"No signing credentials available: {e}")
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            logger.error(
                f"{action} failed",
                extra={"key": kwargs.get("Key"), "code": code, "error": str(e)},
            )
            raise StorageError(f"{action} failed: {e}", code=code)
        except BotoCoreError as e:
            logger.error(
                f"{action} failed",
                extra={"key": kwargs.get("Key"), "error": str(e)},
            )
            raise StorageError(f"{action} failed: {e}")


def _error_code(body: str) -> Optional[str]:
    """`<Code>` of an S3 XML error body, namespaced or not."""
    try:
        root = ElementTree.fromstring(body)
    except ElementTree.ParseError:
        return None
    for element in root.iter():
        if element.tag.rsplit("}", 1)[-1] == "Code":
            return (element.text or "").strip() or None
    return None


def _check_served_range(
    response: httpx.Response,
    object_key: str,
    ranged: bool,
    start: int,
    end: Optional[int],
) -> None:
    """Refuse a response that doesn't carry exactly the requested bytes."""
    if not ranged:
        if response.status_code != 200:
            raise StorageError(
                f"Expected HTTP 200 for {object_key}, got {response.status_code}"
            )
        return

    content_range = response.headers.get("Content-Range", "")
    expected = f"bytes {start}-{'' if end is None else end}"
    if end is not None:
        expected += "/"
    if response.status_code != 206 or not content_range.startswith(expected):
        logger.error(
            "Store ignored requested range",
            extra={
                "key": object_key,
                "status": response.status_code,
                "content_range": content_range,
            },
        )
        raise StorageError(
            f"Store answered HTTP {response.status_code} ({content_range or 'no Content-Range'}) "
            f"to a request for {expected.rstrip('/')}",
            code="RangeMismatch",
        )


def _etag(data: bytes) -> str:
    return f'"{hashlib.md5(data).hexdigest()}"'


# ---------------------------------------------------------------------------
# Mock Storage for Local Development
# ---------------------------------------------------------------------------

class MockObjectStore:
    """
    In-memory object store.

    Credentials are `mock://bucket/key?op=...` URLs that only this class
    understands, so the server-side paths (chunk reassembly, proxy
    streaming) work end to end. Multipart completion validates part order
    and etags the way S3 does, which is what the coordinator relies on.

    Not suitable for production, but perfect for development and testing.
    """

    def __init__(self, bucket_name: str = "mock-bucket") -> None:
        self._bucket = bucket_name
        # {key: (data, content_type, metadata)}
        self._objects: dict[str, tuple[bytes, Optional[str], dict[str, str]]] = {}
        # {upload_id: {"key", "content_type", "metadata", "parts": {n: bytes}}}
        self._uploads: dict[str, dict] = {}
        self._failures: dict[str, Exception] = {}
        self.completed_manifests: list[list[int]] = []
        logger.info("Initialized mock storage client (in-memory)")

    def presign(
        self,
        operation: StoreOperation,
        object_key: str,
        expires_in: int,
        params: dict,
    ) -> str:
        query = {"op": operation.value, "expires": expires_in}
        for name, value in params.items():
            if isinstance(value, (str, int)):
                query[name] = value
        return f"mock://{self._bucket}/{quote(object_key)}?{urlencode(query)}"

    def public_url(self, object_key: str) -> str:
        return f"mock://{self._bucket}/{object_key}"

    async def create_multipart_upload(
        self,
        object_key: str,
        content_type: str,
        metadata: dict[str, str],
    ) -> str:
        self._maybe_fail("create_multipart_upload")
        upload_id = uuid4().hex
        self._uploads[upload_id] = {
            "key": object_key,
            "content_type": content_type,
            "metadata": dict(metadata),
            "parts": {},
        }
        return upload_id

    async def complete_multipart_upload(
        self,
        object_key: str,
        upload_id: str,
        parts: list[PartDescriptor],
    ) -> dict:
        self._maybe_fail("complete_multipart_upload")
        upload = self._uploads.get(upload_id)
        if upload is None or upload["key"] != object_key:
            raise StorageError(f"No such upload: {upload_id}", code="NoSuchUpload")

        numbers = [p.part_number for p in parts]
        self.completed_manifests.append(numbers)
        if numbers != sorted(numbers):
            raise StorageError("Parts are not in ascending order", code="InvalidPartOrder")

        for part in parts:
            data = upload["parts"].get(part.part_number)
            if data is None or _etag(data) != part.etag:
                raise StorageError(f"Part {part.part_number} is invalid", code="InvalidPart")

        body = b"".join(upload["parts"][n] for n in numbers)
        self._objects[object_key] = (body, upload["content_type"], upload["metadata"])
        del self._uploads[upload_id]

        return {"etag": _etag(body), "location": self.public_url(object_key)}

    async def abort_multipart_upload(self, object_key: str, upload_id: str) -> None:
        self._maybe_fail("abort_multipart_upload")
        if upload_id not in self._uploads:
            raise StorageError(f"No such upload: {upload_id}", code="NoSuchUpload")
        del self._uploads[upload_id]

    async def head_object(self, object_key: str) -> ObjectInfo:
        self._maybe_fail("head_object")
        if object_key not in self._objects:
            raise ObjectNotFoundError(f"Object not found: {object_key}")
        data, content_type, _ = self._objects[object_key]
        return ObjectInfo(size=len(data), content_type=content_type, etag=_etag(data))

    async def put_signed(self, credential: SignedURL, data: bytes) -> Optional[str]:
        self._maybe_fail("put_signed")
        key, query = self._parse(credential.url)

        if query.get("op") == StoreOperation.UPLOAD_PART.value:
            upload = self._uploads.get(query.get("UploadId", ""))
            if upload is None:
                raise StorageError("No such upload", code="NoSuchUpload")
            upload["parts"][int(query["PartNumber"])] = bytes(data)
            return _etag(data)

        if query.get("op") != StoreOperation.PUT_OBJECT.value:
            raise StorageError("Credential does not allow writes", code="AccessDenied")

        metadata = {
            name[len("x-amz-meta-"):]: value
            for name, value in credential.headers.items()
            if name.startswith("x-amz-meta-")
        }
        self._objects[key] = (bytes(data), credential.headers.get("Content-Type"), metadata)
        return _etag(data)

    async def stream_signed(
        self,
        credential: SignedURL,
        start: int,
        end: Optional[int],
        chunk_size: int,
        etag: Optional[str] = None,
    ) -> AsyncIterator[bytes]:
        self._maybe_fail("stream_signed")
        key, query = self._parse(credential.url)
        if query.get("op") != StoreOperation.GET_OBJECT.value:
            raise StorageError("Credential does not allow reads", code="AccessDenied")
        if key not in self._objects:
            raise ObjectNotFoundError(f"Object not found: {key}")

        data = self._objects[key][0]
        if etag and etag != _etag(data):
            raise StorageError("Object changed since it was probed", code="PreconditionFailed")
        selected = data[start:] if end is None else data[start:end + 1]
        for offset in range(0, len(selected), chunk_size):
            yield selected[offset:offset + chunk_size]

    async def close(self) -> None:
        pass

    def _parse(self, url: str) -> tuple[str, dict[str, str]]:
        parsed = urlparse(url)
        if parsed.scheme != "mock" or parsed.netloc != self._bucket:
            raise StorageError(f"Not a credential for this store: {url}", code="AccessDenied")
        query = {name: values[0] for name, values in parse_qs(parsed.query).items()}
        return unquote(parsed.path.lstrip("/")), query

    def _maybe_fail(self, operation: str) -> None:
        error = self._failures.pop(operation, None)
        if error is not None:
            raise error

    # Helper methods for testing
    def _inject_failure(self, operation: str, error: Exception) -> None:
        """Make the next call to `operation` raise `error`."""
        self._failures[operation] = error

    def _put_object(self, object_key: str, data: bytes, content_type: str = "video/webm") -> None:
        """Add an object directly (for test setup)."""
        self._objects[object_key] = (data, content_type, {})

    def _get_object(self, object_key: str) -> Optional[bytes]:
        """Get stored bytes (for test assertions)."""
        entry = self._objects.get(object_key)
        return entry[0] if entry else None

    def _has_upload(self, upload_id: str) -> bool:
        return upload_id in self._uploads


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

def create_object_store(
    config: Optional[StorageConfig] = None,
    mock_mode: bool = False,
) -> ObjectStore:
    """
    Create object store based on configuration.

    Args:
        config: Storage configuration (required if not mock_mode)
        mock_mode: If True, return the in-memory store

    Returns:
        ObjectStore implementation (S3 or Mock)
    """
    if mock_mode:
        return MockObjectStore()

    if config is None:
        raise ValueError("config is required when not in mock mode")

    return S3ObjectStore(config)
