"""
Chunk reassembly session manager.

For clients that can't speak multipart (the cheap Android scanners on
the packing floor, mostly). They POST fixed-size chunks to us, we buffer
them in memory, and once every index has arrived we join them in index
order and write the blob to the store through a signed PUT.

Sessions have an absolute deadline (30 minutes from creation by
default), independent of activity. Expiry is checked on every access and
by the periodic reaper; neither ever removes a session that is in the
middle of its final write.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import uuid4

from .credentials import CredentialIssuer
from .errors import (
    ConflictError,
    NotFoundError,
    PayloadTooLargeError,
    ValidationError,
)
from .keys import KeyClock, derive_key
from .locks import KeyedLocks
from .models import (
    ChunkProgress,
    ObjectStore,
    RecordingRegistry,
    SessionProgress,
    StoredObject,
    UploadSession,
    utcnow,
)
from .multipart import extension_for, recording_metadata, require_recording

logger = logging.getLogger(__name__)

# the final write credential never leaves this process
FINAL_WRITE_TTL_SECONDS = 300


class ChunkSessionManager:
    """
    In-memory table of reassembly sessions.

    Each session is touched under its own lock, so two chunks for the same
    session never interleave their buffer writes, while different
    sessions proceed in parallel.
    """

    def __init__(
        self,
        store: ObjectStore,
        issuer: CredentialIssuer,
        registry: Optional[RecordingRegistry] = None,
        session_ttl: timedelta = timedelta(minutes=30),
        max_session_bytes: int = 100 * 1024 * 1024,
        max_total_chunks: int = 10_000,
        max_finalize_attempts: int = 2,
        time_source: Callable[[], datetime] = utcnow,
        clock: Optional[KeyClock] = None,
    ) -> None:
        self._store = store
        self._issuer = issuer
        self._registry = registry
        self._session_ttl = session_ttl
        self._max_session_bytes = max_session_bytes
        self._max_total_chunks = max_total_chunks
        self._max_finalize_attempts = max_finalize_attempts
        self._now = time_source
        self._clock = clock or KeyClock()
        self._sessions: dict[str, UploadSession] = {}
        self._locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def start_session(
        self,
        owner_id: str,
        tenant_id: str,
        logical_identifier: str,
        total_chunks: int,
        declared_size: int,
        content_type: str = "video/webm",
        recording_id: Optional[str] = None,
    ) -> UploadSession:
        """Open a session. Its deadline is fixed now and never extended."""
        if not logical_identifier or not logical_identifier.strip():
            raise ValidationError("logical_identifier is required")
        if isinstance(total_chunks, bool) or not isinstance(total_chunks, int) or total_chunks < 1:
            raise ValidationError("total_chunks must be a positive integer")
        if total_chunks > self._max_total_chunks:
            raise ValidationError(
                f"total_chunks {total_chunks} exceeds the maximum of {self._max_total_chunks}"
            )
        if isinstance(declared_size, bool) or not isinstance(declared_size, int) or declared_size < 1:
            raise ValidationError("declared_size must be a positive integer")
        if declared_size > self._max_session_bytes:
            raise PayloadTooLargeError(
                f"declared_size {declared_size} exceeds the session limit of "
                f"{self._max_session_bytes} bytes"
            )
        if total_chunks > declared_size:
            raise ValidationError("total_chunks cannot exceed declared_size")
        if recording_id:
            await require_recording(self._registry, tenant_id, recording_id)

        now = self._now()
        session = UploadSession(
            session_id=uuid4().hex,
            owner_id=owner_id,
            tenant_id=tenant_id,
            logical_identifier=logical_identifier,
            total_chunks=total_chunks,
            declared_size=declared_size,
            content_type=content_type,
            recording_id=recording_id,
            created_at=now,
            expires_at=now + self._session_ttl,
        )
        self._sessions[session.session_id] = session

        logger.info(
            "Upload session started",
            extra={
                "session_id": session.session_id,
                "tenant_id": tenant_id,
                "total_chunks": total_chunks,
                "declared_size": declared_size,
            },
        )

        return session

    async def submit_chunk(
        self,
        session_id: str,
        index: int,
        data: bytes,
        owner_id: Optional[str] = None,
    ) -> ChunkProgress:
        """
        Accept one chunk.

        Re-sending an index overwrites the earlier bytes. Invalid chunks
        are rejected without touching the session. The chunk that fills
        the last gap triggers the final write.
        """
        async with self._locks.hold(session_id):
            session = self._get_live(session_id, owner_id)

            if isinstance(index, bool) or not isinstance(index, int):
                raise ValidationError("chunk index must be an integer")
            if not 0 <= index < session.total_chunks:
                raise ValidationError(
                    f"chunk index {index} out of range 0..{session.total_chunks - 1}"
                )
            if not data:
                raise ValidationError("chunk is empty")

            ceiling = min(session.declared_size, self._max_session_bytes)
            buffered = session.buffered_bytes - len(session.chunks.get(index, b"")) + len(data)
            if buffered > ceiling:
                logger.warning(
                    "Chunk rejected, session over size",
                    extra={"session_id": session_id, "buffered": buffered, "ceiling": ceiling},
                )
                raise PayloadTooLargeError(
                    f"session would hold {buffered} bytes, limit is {ceiling}"
                )

            session.chunks[index] = bytes(data)

            logger.debug(
                "Chunk received",
                extra={
                    "session_id": session_id,
                    "index": index,
                    "uploaded": session.uploaded_count,
                    "total": session.total_chunks,
                },
            )

            if not session.is_ready:
                return self._progress(session)

            stored = await self._finalize(session)
            return self._progress(session, stored)

    async def retry_finalize(
        self,
        session_id: str,
        owner_id: Optional[str] = None,
    ) -> ChunkProgress:
        """Retry the final write after it failed, without re-uploading chunks."""
        async with self._locks.hold(session_id):
            session = self._get_live(session_id, owner_id)
            if not session.is_ready:
                raise ConflictError(
                    f"Session {session_id} is missing chunks {session.missing_indexes()}"
                )
            stored = await self._finalize(session)
            return self._progress(session, stored)

    def session_status(
        self,
        session_id: str,
        owner_id: Optional[str] = None,
    ) -> SessionProgress:
        session = self._get_live(session_id, owner_id)
        return SessionProgress(
            session_id=session.session_id,
            logical_identifier=session.logical_identifier,
            uploaded_count=session.uploaded_count,
            total_chunks=session.total_chunks,
            buffered_bytes=session.buffered_bytes,
            declared_size=session.declared_size,
            progress_percent=session.progress_percent,
            missing_indexes=session.missing_indexes(),
            expires_at=session.expires_at,
            assembling=session.assembling,
        )

    async def cancel_session(
        self,
        session_id: str,
        owner_id: Optional[str] = None,
    ) -> None:
        """
        Drop a session and its buffered bytes.

        Waits for an in-flight final write; if that write finished the
        session, cancelling reports it as not found.
        """
        async with self._locks.hold(session_id):
            self._get_live(session_id, owner_id)
            self._discard(session_id)
            logger.info("Upload session cancelled", extra={"session_id": session_id})

    async def upload_direct(
        self,
        owner_id: str,
        tenant_id: str,
        logical_identifier: str,
        data: bytes,
        content_type: str = "video/webm",
        recording_id: Optional[str] = None,
    ) -> StoredObject:
        """Write a small file in one go, through the same final-write path."""
        if not logical_identifier or not logical_identifier.strip():
            raise ValidationError("logical_identifier is required")
        if not data:
            raise ValidationError("no file provided")
        if len(data) > self._max_session_bytes:
            raise PayloadTooLargeError(
                f"file of {len(data)} bytes exceeds the limit of {self._max_session_bytes}"
            )
        if recording_id:
            await require_recording(self._registry, tenant_id, recording_id)

        stored = await self._persist(
            tenant_id, owner_id, logical_identifier, data, content_type
        )
        if recording_id:
            await self._registry.record_completion(
                tenant_id, recording_id, stored.object_key, stored.size
            )
        return stored

    def chunk_allowance(
        self,
        session_id: str,
        index: int,
        owner_id: Optional[str] = None,
    ) -> int:
        """
        Most bytes a chunk at `index` could carry right now.

        Counts the bytes an overwrite of `index` would free. Lets the HTTP
        layer stop reading a body early; `submit_chunk` still enforces
        the ceiling itself.
        """
        session = self._get_live(session_id, owner_id)
        ceiling = min(session.declared_size, self._max_session_bytes)
        return max(ceiling - session.buffered_bytes + len(session.chunks.get(index, b"")), 0)

    @property
    def max_session_bytes(self) -> int:
        return self._max_session_bytes

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """Remove expired sessions. Returns how many were removed."""
        now = now or self._now()
        removed = 0

        for session_id, session in list(self._sessions.items()):
            if not session.is_expired(now):
                continue
            if session.assembling or self._locks.is_held(session_id):
                continue
            self._discard(session_id)
            removed += 1
            logger.warning(
                "Upload session expired",
                extra={
                    "session_id": session_id,
                    "uploaded": session.uploaded_count,
                    "total": session.total_chunks,
                },
            )

        return removed

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get_live(self, session_id: str, owner_id: Optional[str]) -> UploadSession:
        session = self._sessions.get(session_id)
        if session is None or (owner_id is not None and session.owner_id != owner_id):
            raise NotFoundError(f"Session {session_id} not found")

        if session.is_expired(self._now()) and not session.assembling:
            self._discard(session_id)
            logger.warning("Upload session expired", extra={"session_id": session_id})
            raise NotFoundError(f"Session {session_id} has expired")

        return session

    def _discard(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            session.chunks.clear()

    def _progress(
        self,
        session: UploadSession,
        stored: Optional[StoredObject] = None,
    ) -> ChunkProgress:
        return ChunkProgress(
            session_id=session.session_id,
            uploaded_count=session.uploaded_count if stored is None else session.total_chunks,
            total_chunks=session.total_chunks,
            is_final=stored is not None,
            progress_percent=100.0 if stored is not None else session.progress_percent,
            stored=stored,
        )

    async def _finalize(self, session: UploadSession) -> StoredObject:
        """
        Join chunks in index order, store the blob, tell the registry.

        A failure keeps the session (and its chunks) for another attempt;
        after `max_finalize_attempts` failures the session is dropped.
        """
        session.assembling = True
        try:
            if session.stored is None:
                payload = b"".join(session.chunks[i] for i in range(session.total_chunks))
                session.stored = await self._persist(
                    session.tenant_id,
                    session.owner_id,
                    session.logical_identifier,
                    payload,
                    session.content_type,
                )
            if session.recording_id:
                await self._registry.record_completion(
                    session.tenant_id,
                    session.recording_id,
                    session.stored.object_key,
                    session.stored.size,
                )
        except (Exception, asyncio.CancelledError) as exc:
            session.assembling = False
            session.failed_attempts += 1
            logger.error(
                "Final assembly failed",
                extra={
                    "session_id": session.session_id,
                    "attempt": session.failed_attempts,
                    "error": str(exc),
                },
            )
            if session.failed_attempts >= self._max_finalize_attempts:
                self._discard(session.session_id)
                logger.error(
                    "Upload session discarded after repeated failures",
                    extra={"session_id": session.session_id},
                )
            raise

        stored = session.stored
        session.assembling = False
        self._discard(session.session_id)

        logger.info(
            "Upload session finalized",
            extra={
                "session_id": session.session_id,
                "key": stored.object_key,
                "size_bytes": stored.size,
            },
        )

        return stored

    async def _persist(
        self,
        tenant_id: str,
        owner_id: str,
        identifier: str,
        payload: bytes,
        content_type: str,
    ) -> StoredObject:
        object_key = derive_key(
            tenant_id, identifier, self._clock.now_ms(), extension_for(content_type)
        )
        credential = self._issuer.issue_write_credential(
            object_key,
            content_type,
            recording_metadata(tenant_id, owner_id, identifier, {"file-size": str(len(payload))}),
            ttl=min(self._issuer.default_ttl, FINAL_WRITE_TTL_SECONDS),
        )
        etag = await self._store.put_signed(credential, payload)

        return StoredObject(
            object_key=object_key,
            public_url=self._store.public_url(object_key),
            etag=etag,
            size=len(payload),
        )
