"""
Domain models for upload orchestration and delivery.

These models have no dependencies on FastAPI, boto3 or Snowflake. The
object store and the recording registry are described by protocols at
the bottom of this module; infrastructure provides the implementations.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Optional, Protocol

from .errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TicketStatus(Enum):
    """Lifecycle of a multipart upload ticket."""
    INITIATED = "initiated"
    PARTS_IN_FLIGHT = "parts_in_flight"
    COMPLETING = "completing"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (TicketStatus.COMPLETED, TicketStatus.ABORTED)


class StoreOperation(Enum):
    """Object store operations a credential can be scoped to."""
    PUT_OBJECT = "put_object"
    UPLOAD_PART = "upload_part"
    GET_OBJECT = "get_object"


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ResponseOverrides:
    """Response headers the store should send back on a signed GET."""
    content_type: Optional[str] = None
    content_disposition: Optional[str] = None


@dataclass(frozen=True)
class SignedURL:
    """
    A presigned credential for exactly one operation on one object.

    `headers` lists request headers that are part of the signature; the
    client must send them verbatim or the store rejects the request.
    """
    url: str
    operation: StoreOperation
    object_key: str
    expires_in: int
    expires_at: datetime
    method: str = "PUT"
    headers: dict[str, str] = field(default_factory=dict)
    part_number: Optional[int] = None


# ---------------------------------------------------------------------------
# Multipart
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PartDescriptor:
    """One written part, as reported back by the client at completion."""
    part_number: int
    etag: str

    def __post_init__(self) -> None:
        if isinstance(self.part_number, bool) or not isinstance(self.part_number, int):
            raise ValidationError("part_number must be an integer")
        if self.part_number < 1:
            raise ValidationError("part_number must be a positive integer")
        if not self.etag or not self.etag.strip():
            raise ValidationError(f"part {self.part_number} is missing its etag")


@dataclass
class CompletedUpload:
    """Outcome of a successful multipart completion."""
    object_key: str
    public_url: str
    etag: Optional[str]
    location: Optional[str] = None
    size: Optional[int] = None


@dataclass
class UploadTicket:
    """
    One in-flight multipart upload.

    Owned by the coordinator. Once COMPLETED or ABORTED it only lives on
    as a tombstone so repeated abort calls stay idempotent.
    """
    upload_id: str
    object_key: str
    tenant_id: str
    owner_id: str
    expires_at: datetime
    content_type: str = "video/webm"
    expected_size: Optional[int] = None
    recording_id: Optional[str] = None
    status: TicketStatus = TicketStatus.INITIATED
    created_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    requested_parts: set[int] = field(default_factory=set)
    result: Optional[CompletedUpload] = None
    registry_synced: bool = True

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


# ---------------------------------------------------------------------------
# Chunk reassembly
# ---------------------------------------------------------------------------

@dataclass
class StoredObject:
    """Where a reassembled upload ended up."""
    object_key: str
    public_url: str
    etag: Optional[str]
    size: int


@dataclass
class UploadSession:
    """
    Server-side reassembly session for clients without multipart support.

    `chunks` maps chunk index to bytes; it never holds more than
    `total_chunks` entries because indexes are range-checked on arrival.
    `stored` is set once the blob is in the store but the registry has
    not been told yet.
    """
    session_id: str
    owner_id: str
    tenant_id: str
    logical_identifier: str
    total_chunks: int
    declared_size: int
    expires_at: datetime
    content_type: str = "video/webm"
    recording_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    chunks: dict[int, bytes] = field(default_factory=dict)
    assembling: bool = False
    failed_attempts: int = 0
    stored: Optional[StoredObject] = None

    @property
    def uploaded_count(self) -> int:
        return len(self.chunks)

    @property
    def buffered_bytes(self) -> int:
        return sum(len(chunk) for chunk in self.chunks.values())

    @property
    def progress_percent(self) -> float:
        return round(self.uploaded_count / self.total_chunks * 100, 2)

    @property
    def is_ready(self) -> bool:
        return self.uploaded_count == self.total_chunks

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def missing_indexes(self) -> list[int]:
        return [i for i in range(self.total_chunks) if i not in self.chunks]


@dataclass
class ChunkProgress:
    """Result of accepting one chunk."""
    session_id: str
    uploaded_count: int
    total_chunks: int
    is_final: bool
    progress_percent: float
    stored: Optional[StoredObject] = None


@dataclass
class SessionProgress:
    """Read-only snapshot of a reassembly session."""
    session_id: str
    logical_identifier: str
    uploaded_count: int
    total_chunks: int
    buffered_bytes: int
    declared_size: int
    progress_percent: float
    missing_indexes: list[int]
    expires_at: datetime
    assembling: bool


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StreamRange:
    """An inclusive, validated byte range of an object."""
    start: int
    end: int
    total_size: int

    def __post_init__(self) -> None:
        if not 0 <= self.start <= self.end < self.total_size:
            raise ValidationError(
                f"invalid range {self.start}-{self.end} for size {self.total_size}"
            )

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    @property
    def content_range(self) -> str:
        return f"bytes {self.start}-{self.end}/{self.total_size}"


@dataclass
class ObjectInfo:
    """Metadata returned by a HEAD probe."""
    size: int
    content_type: Optional[str] = None
    etag: Optional[str] = None


@dataclass
class RecordingLocation:
    """What the recording registry knows about a stored recording."""
    recording_id: str
    stored_object_key: str
    content_type: str = "video/webm"
    filename_hint: Optional[str] = None
    barcode: Optional[str] = None
    duration_seconds: Optional[float] = None
    file_size_bytes: Optional[int] = None
    resolution: Optional[str] = None
    recorded_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Protocols (interfaces)
# ---------------------------------------------------------------------------

class ObjectStore(Protocol):
    """
    S3-compatible object store, reached only through signed requests
    and a handful of control-plane calls.
    """

    def presign(
        self,
        operation: StoreOperation,
        object_key: str,
        expires_in: int,
        params: dict,
    ) -> str:
        """Sign one request locally and return its URL."""
        ...

    def public_url(self, object_key: str) -> str:
        """Permanent (unsigned) URL of an object."""
        ...

    async def create_multipart_upload(
        self,
        object_key: str,
        content_type: str,
        metadata: dict[str, str],
    ) -> str:
        """Allocate a multipart upload and return its upload id."""
        ...

    async def complete_multipart_upload(
        self,
        object_key: str,
        upload_id: str,
        parts: list[PartDescriptor],
    ) -> dict:
        """Submit the ordered part manifest. Returns etag/location."""
        ...

    async def abort_multipart_upload(self, object_key: str, upload_id: str) -> None:
        """Release storage held by uncommitted parts."""
        ...

    async def head_object(self, object_key: str) -> ObjectInfo:
        """Probe an object's size and content type."""
        ...

    async def put_signed(self, credential: SignedURL, data: bytes) -> Optional[str]:
        """Execute a signed PUT. Returns the stored etag."""
        ...

    def stream_signed(
        self,
        credential: SignedURL,
        start: int,
        end: Optional[int],
        chunk_size: int,
        etag: Optional[str] = None,
    ) -> AsyncIterator[bytes]:
        """
        Execute a signed GET (ranged unless start is 0 and end is None)
        and yield the body.

        With `etag`, the read fails instead of returning bytes of a
        different version of the object.
        """
        ...


class RecordingRegistry(Protocol):
    """External registry that owns recording metadata."""

    async def lookup(self, tenant_id: str, recording_id: str) -> Optional[RecordingLocation]:
        ...

    async def record_completion(
        self,
        tenant_id: str,
        recording_id: str,
        stored_object_key: str,
        size: Optional[int],
    ) -> None:
        """Mark the tenant's recording completed. Raises NotFoundError on a miss."""
        ...

    async def list_completed(
        self,
        tenant_id: str,
        limit: int = 20,
        offset: int = 0,
        identifier_filter: Optional[str] = None,
    ) -> list[RecordingLocation]:
        ...
