"""
Range-aware delivery of stored recordings.

Two strategies:
- Redirect: hand the client a short-lived read credential and let it
  fetch from the store directly. No server bandwidth.
- Proxy: fetch through a signed ranged GET and forward the bytes,
  honouring the client's `Range` header so players can seek.

Both resolve the object key through the recording registry first; a miss
never touches the store.

Only single ranges are served. Multi-range requests (`bytes=0-1,5-9`) are
rejected with 416 rather than collapsed to their first range, because a
client that asked for several ranges would otherwise receive bytes it
can't place.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Optional

from .credentials import CredentialIssuer, inline_disposition
from .errors import NotFoundError, RangeNotSatisfiableError, ValidationError
from .models import (
    ObjectStore,
    RecordingLocation,
    RecordingRegistry,
    ResponseOverrides,
    StreamRange,
)

logger = logging.getLogger(__name__)

_DIGITS = re.compile(r"[0-9]+")


def parse_range(header: Optional[str], total_size: int) -> Optional[StreamRange]:
    """
    Parse a `Range` header against an object of `total_size` bytes.

    Returns None when no range was asked for. Supports `bytes=a-b`,
    `bytes=a-` and the suffix form `bytes=-n`. An end past the object is
    cut to the last byte; anything else that can't be served exactly
    raises RangeNotSatisfiableError.
    """
    if header is None or not header.strip():
        return None

    unit, sep, spec = header.strip().partition("=")
    if not sep or unit.strip().lower() != "bytes":
        raise RangeNotSatisfiableError(f"unsupported range: {header!r}", total_size)

    spec = spec.strip()
    if "," in spec:
        raise RangeNotSatisfiableError("multiple ranges are not supported", total_size)

    first, dash, last = spec.partition("-")
    first, last = first.strip(), last.strip()
    if not dash or (not first and not last):
        raise RangeNotSatisfiableError(f"malformed range: {header!r}", total_size)
    if (first and not _DIGITS.fullmatch(first)) or (last and not _DIGITS.fullmatch(last)):
        raise RangeNotSatisfiableError(f"malformed range: {header!r}", total_size)

    if total_size <= 0:
        raise RangeNotSatisfiableError("object is empty", total_size)

    if not first:
        suffix = int(last)
        if suffix == 0:
            raise RangeNotSatisfiableError("zero-length suffix range", total_size)
        return StreamRange(max(0, total_size - suffix), total_size - 1, total_size)

    start = int(first)
    end = int(last) if last else total_size - 1
    if start >= total_size:
        raise RangeNotSatisfiableError(
            f"range starts at {start}, object has {total_size} bytes", total_size
        )
    if end < start:
        raise RangeNotSatisfiableError(f"range end {end} is before start {start}", total_size)

    return StreamRange(start, min(end, total_size - 1), total_size)


async def _empty_body() -> AsyncIterator[bytes]:
    for chunk in ():
        yield chunk


@dataclass
class PlaybackLink:
    """A read credential plus what we know about the recording."""
    url: str
    expires_in: int
    expires_at: datetime
    recording: RecordingLocation


@dataclass
class StreamResult:
    """Everything the transport needs to send a (partial) response."""
    status_code: int
    headers: dict[str, str]
    body: AsyncIterator[bytes]
    content_length: int
    range: Optional[StreamRange] = None
    media_type: str = "application/octet-stream"


class RangeStreamingProxy:
    """Resolves recordings and serves them by redirect or by proxy."""

    def __init__(
        self,
        store: ObjectStore,
        issuer: CredentialIssuer,
        registry: RecordingRegistry,
        read_ttl: int = 3600,
        chunk_size: int = 1024 * 1024,
    ) -> None:
        self._store = store
        self._issuer = issuer
        self._registry = registry
        self._read_ttl = read_ttl
        self._chunk_size = chunk_size

    async def resolve(self, tenant_id: str, recording_id: str) -> RecordingLocation:
        """Look the recording up in the registry, scoped to the tenant."""
        location = await self._registry.lookup(tenant_id, recording_id)
        if location is None:
            raise NotFoundError(f"Recording {recording_id} not found")
        if not location.stored_object_key:
            raise NotFoundError(f"Video file for recording {recording_id} is not available")
        return location

    async def resolve_playback_url(
        self,
        tenant_id: str,
        recording_id: str,
        ttl: Optional[int] = None,
    ) -> PlaybackLink:
        """Redirect mode: a read credential that plays inline."""
        location = await self.resolve(tenant_id, recording_id)
        link = self._playback_link(location, ttl)

        logger.info(
            "Playback URL issued",
            extra={"recording_id": recording_id, "tenant_id": tenant_id},
        )

        return link

    async def resolve_and_stream(
        self,
        tenant_id: str,
        recording_id: str,
        range_header: Optional[str] = None,
    ) -> StreamResult:
        """
        Proxy mode.

        The true object size comes from a HEAD probe; Content-Range and
        Content-Length are computed from it, never from the registry.
        """
        location = await self.resolve(tenant_id, recording_id)
        info = await self._store.head_object(location.stored_object_key)
        stream_range = parse_range(range_header, info.size)

        media_type = location.content_type or info.content_type or "application/octet-stream"
        headers = {
            "Accept-Ranges": "bytes",
            "Cache-Control": "no-cache",
        }

        if stream_range is None:
            headers["Content-Length"] = str(info.size)
            if info.size == 0:
                body = _empty_body()
            else:
                credential = self._issuer.issue_read_credential(
                    location.stored_object_key, ttl=self._read_ttl
                )
                body = self._store.stream_signed(
                    credential, 0, None, self._chunk_size, etag=info.etag
                )
            return StreamResult(
                status_code=200,
                headers=headers,
                body=body,
                content_length=info.size,
                media_type=media_type,
            )

        credential = self._issuer.issue_read_credential(
            location.stored_object_key, ttl=self._read_ttl
        )
        headers["Content-Range"] = stream_range.content_range
        headers["Content-Length"] = str(stream_range.length)

        logger.debug(
            "Streaming partial content",
            extra={"recording_id": recording_id, "range": stream_range.content_range},
        )

        return StreamResult(
            status_code=206,
            headers=headers,
            body=self._store.stream_signed(
                credential, stream_range.start, stream_range.end, self._chunk_size,
                etag=info.etag,
            ),
            content_length=stream_range.length,
            range=stream_range,
            media_type=media_type,
        )

    async def list_playable(
        self,
        tenant_id: str,
        limit: int = 20,
        offset: int = 0,
        identifier_filter: Optional[str] = None,
    ) -> list[PlaybackLink]:
        """Completed recordings of a tenant, each with its own play URL."""
        if not 1 <= limit <= 100:
            raise ValidationError("limit must be between 1 and 100")
        if offset < 0:
            raise ValidationError("offset cannot be negative")

        recordings = await self._registry.list_completed(
            tenant_id, limit=limit, offset=offset, identifier_filter=identifier_filter
        )
        return [
            self._playback_link(location)
            for location in recordings
            if location.stored_object_key
        ]

    def _playback_link(
        self,
        location: RecordingLocation,
        ttl: Optional[int] = None,
    ) -> PlaybackLink:
        filename = location.filename_hint or location.stored_object_key.rsplit("/", 1)[-1]
        credential = self._issuer.issue_read_credential(
            location.stored_object_key,
            ttl=ttl or self._read_ttl,
            response_overrides=ResponseOverrides(
                content_type=location.content_type,
                content_disposition=inline_disposition(filename),
            ),
        )
        return PlaybackLink(
            url=credential.url,
            expires_in=credential.expires_in,
            expires_at=credential.expires_at,
            recording=location,
        )
