"""
Server-side chunk reassembly endpoints.

For scanners whose browsers can't drive a multipart upload. Chunks are
sent as raw request bodies, one index per request, in any order. The
chunk that completes the set triggers the write to the store, and its
response carries the stored object.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, File, Form, Request, Response, UploadFile, status
from pydantic import BaseModel, Field

from ...core.uploads import ChunkProgress, PayloadTooLargeError, StoredObject
from ..dependencies import SessionManagerDep, WorkerDep

logger = logging.getLogger(__name__)

router = APIRouter()


async def read_limited(request: Request, limit: int) -> bytes:
    """
    Read the request body, refusing anything over `limit` bytes.

    Checks the declared Content-Length first, then stops reading as soon
    as the running total passes the limit, so an oversized body is never
    held in memory.
    """
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise PayloadTooLargeError(f"chunk of {declared} bytes exceeds the {limit} bytes left")

    body = bytearray()
    async for piece in request.stream():
        body.extend(piece)
        if len(body) > limit:
            raise PayloadTooLargeError(f"chunk exceeds the {limit} bytes left")
    return bytes(body)


# ---------------------------------------------------------------------------
# Request/Response Models
# ---------------------------------------------------------------------------

class StartSessionRequest(BaseModel):
    barcode: str = Field(min_length=1, description="Barcode of the packed item")
    total_chunks: int = Field(description="How many chunks the client will send")
    total_size: int = Field(description="Total size of the file in bytes")
    content_type: str = Field(default="video/webm", description="MIME type of the video")
    recording_id: Optional[str] = Field(
        default=None,
        description="Recording to mark completed once the file is stored"
    )


class StartSessionResponse(BaseModel):
    session_id: str
    total_chunks: int
    expires_at: datetime


class StoredObjectResponse(BaseModel):
    key: str
    public_url: str
    etag: Optional[str] = None
    size: int

    @classmethod
    def from_stored(cls, stored: StoredObject) -> "StoredObjectResponse":
        return cls(
            key=stored.object_key,
            public_url=stored.public_url,
            etag=stored.etag,
            size=stored.size,
        )


class ChunkProgressResponse(BaseModel):
    session_id: str
    uploaded_count: int
    total_chunks: int
    is_final: bool
    progress_percent: float
    stored: Optional[StoredObjectResponse] = None

    @classmethod
    def from_progress(cls, progress: ChunkProgress) -> "ChunkProgressResponse":
        return cls(
            session_id=progress.session_id,
            uploaded_count=progress.uploaded_count,
            total_chunks=progress.total_chunks,
            is_final=progress.is_final,
            progress_percent=progress.progress_percent,
            stored=StoredObjectResponse.from_stored(progress.stored) if progress.stored else None,
        )


class SessionStatusResponse(BaseModel):
    session_id: str
    barcode: str
    uploaded_count: int
    total_chunks: int
    buffered_bytes: int
    declared_size: int
    progress_percent: float
    missing_indexes: list[int]
    expires_at: datetime
    assembling: bool


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/sessions",
    response_model=StartSessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open a chunk reassembly session",
)
async def start_session(
    request: StartSessionRequest,
    worker: WorkerDep,
    sessions: SessionManagerDep,
) -> StartSessionResponse:
    session = await sessions.start_session(
        owner_id=worker.worker_id,
        tenant_id=worker.company_id,
        logical_identifier=request.barcode,
        total_chunks=request.total_chunks,
        declared_size=request.total_size,
        content_type=request.content_type,
        recording_id=request.recording_id,
    )
    return StartSessionResponse(
        session_id=session.session_id,
        total_chunks=session.total_chunks,
        expires_at=session.expires_at,
    )


@router.put(
    "/sessions/{session_id}/chunks/{index}",
    response_model=ChunkProgressResponse,
    summary="Upload one chunk",
    description="The request body is the raw chunk. Re-sending an index replaces it.",
)
async def put_chunk(
    session_id: str,
    index: int,
    request: Request,
    worker: WorkerDep,
    sessions: SessionManagerDep,
) -> ChunkProgressResponse:
    allowance = sessions.chunk_allowance(session_id, index, owner_id=worker.worker_id)
    data = await read_limited(request, allowance)
    progress = await sessions.submit_chunk(session_id, index, data, owner_id=worker.worker_id)
    return ChunkProgressResponse.from_progress(progress)


@router.post(
    "/sessions/{session_id}/finalize",
    response_model=ChunkProgressResponse,
    summary="Retry the final write",
    description="Use after the last chunk's write failed; chunks don't need to be re-sent.",
)
async def finalize_session(
    session_id: str,
    worker: WorkerDep,
    sessions: SessionManagerDep,
) -> ChunkProgressResponse:
    progress = await sessions.retry_finalize(session_id, owner_id=worker.worker_id)
    return ChunkProgressResponse.from_progress(progress)


@router.get(
    "/sessions/{session_id}",
    response_model=SessionStatusResponse,
    summary="Session progress",
)
async def get_session(
    session_id: str,
    worker: WorkerDep,
    sessions: SessionManagerDep,
) -> SessionStatusResponse:
    progress = sessions.session_status(session_id, owner_id=worker.worker_id)
    return SessionStatusResponse(
        session_id=progress.session_id,
        barcode=progress.logical_identifier,
        uploaded_count=progress.uploaded_count,
        total_chunks=progress.total_chunks,
        buffered_bytes=progress.buffered_bytes,
        declared_size=progress.declared_size,
        progress_percent=progress.progress_percent,
        missing_indexes=progress.missing_indexes,
        expires_at=progress.expires_at,
        assembling=progress.assembling,
    )


@router.delete(
    "/sessions/{session_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Cancel a session",
)
async def cancel_session(
    session_id: str,
    worker: WorkerDep,
    sessions: SessionManagerDep,
) -> Response:
    await sessions.cancel_session(session_id, owner_id=worker.worker_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/direct",
    response_model=StoredObjectResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload a small file in one request",
)
async def upload_direct(
    worker: WorkerDep,
    sessions: SessionManagerDep,
    file: UploadFile = File(..., description="Video file"),
    barcode: str = Form(..., description="Barcode of the packed item"),
    recording_id: Optional[str] = Form(None, description="Recording to mark completed"),
) -> StoredObjectResponse:
    limit = sessions.max_session_bytes
    if file.size is not None and file.size > limit:
        raise PayloadTooLargeError(f"file of {file.size} bytes exceeds the limit of {limit}")
    data = await file.read(limit + 1)
    if len(data) > limit:
        raise PayloadTooLargeError(f"file exceeds the limit of {limit} bytes")

    stored = await sessions.upload_direct(
        owner_id=worker.worker_id,
        tenant_id=worker.company_id,
        logical_identifier=barcode,
        data=data,
        content_type=file.content_type or "video/webm",
        recording_id=recording_id,
    )

    logger.info(
        "Direct upload stored",
        extra={"key": stored.object_key, "size_bytes": stored.size},
    )

    return StoredObjectResponse.from_stored(stored)
