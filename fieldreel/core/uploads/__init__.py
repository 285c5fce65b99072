"""
Upload orchestration and delivery.

Key naming, credential issuing, the multipart coordinator, the chunk
reassembly session manager and the range streaming proxy.
"""

from .credentials import CredentialIssuer, inline_disposition, ttl_within
from .errors import (
    ConfigurationError,
    ConflictError,
    CredentialError,
    NotFoundError,
    PayloadTooLargeError,
    RangeNotSatisfiableError,
    UploadError,
    UpstreamError,
    ValidationError,
)
from .keys import KeyClock, derive_key, public_url
from .models import (
    ChunkProgress,
    CompletedUpload,
    ObjectInfo,
    ObjectStore,
    PartDescriptor,
    RecordingLocation,
    RecordingRegistry,
    ResponseOverrides,
    SessionProgress,
    SignedURL,
    StoredObject,
    StoreOperation,
    StreamRange,
    TicketStatus,
    UploadSession,
    UploadTicket,
)
from .multipart import MultipartUploadCoordinator
from .sessions import ChunkSessionManager
from .streaming import PlaybackLink, RangeStreamingProxy, StreamResult, parse_range

__all__ = [
    "ChunkProgress",
    "ChunkSessionManager",
    "CompletedUpload",
    "ConfigurationError",
    "ConflictError",
    "CredentialError",
    "CredentialIssuer",
    "KeyClock",
    "MultipartUploadCoordinator",
    "NotFoundError",
    "ObjectInfo",
    "ObjectStore",
    "PartDescriptor",
    "PayloadTooLargeError",
    "PlaybackLink",
    "RangeNotSatisfiableError",
    "RangeStreamingProxy",
    "RecordingLocation",
    "RecordingRegistry",
    "ResponseOverrides",
    "SessionProgress",
    "SignedURL",
    "StoreOperation",
    "StoredObject",
    "StreamRange",
    "StreamResult",
    "TicketStatus",
    "UploadError",
    "UploadSession",
    "UploadTicket",
    "UpstreamError",
    "ValidationError",
    "derive_key",
    "inline_disposition",
    "parse_range",
    "public_url",
    "ttl_within",
]
