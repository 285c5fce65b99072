"""
Direct-to-store upload endpoints.

Clients never send video bytes through this service on these routes.
They ask for a signed credential, PUT straight to the bucket, and come
back to us only to complete or abort.

Two flavours:
- Single PUT for files up to `max_single_upload_mb`
- Multipart for anything larger, one signed URL per part
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from ...core.uploads import PartDescriptor, PayloadTooLargeError, SignedURL, derive_key
from ...core.uploads.multipart import extension_for, recording_metadata
from ..dependencies import (
    CoordinatorDep,
    CredentialIssuerDep,
    KeyClockDep,
    ObjectStoreDep,
    SettingsDep,
    WorkerDep,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Request/Response Models
# ---------------------------------------------------------------------------

class SignedURLResponse(BaseModel):
    """A signed request the client executes against the store."""
    url: str = Field(description="Signed URL")
    method: str = Field(description="HTTP method to use")
    headers: dict[str, str] = Field(
        default_factory=dict,
        description="Headers that are part of the signature and must be sent verbatim"
    )
    expires_in: int = Field(description="Seconds until the URL stops working")
    expires_at: datetime = Field(description="Absolute expiry (UTC)")

    @classmethod
    def from_credential(cls, credential: SignedURL) -> "SignedURLResponse":
        return cls(
            url=credential.url,
            method=credential.method,
            headers=credential.headers,
            expires_in=credential.expires_in,
            expires_at=credential.expires_at,
        )


class PresignedUploadRequest(BaseModel):
    """Request for a single-PUT upload credential."""
    barcode: str = Field(min_length=1, description="Barcode of the packed item")
    content_type: str = Field(default="video/webm", description="MIME type of the video")
    file_size: int = Field(ge=1, description="Size of the file in bytes")


class PresignedUploadResponse(BaseModel):
    """Credential plus where the object will live once written."""
    upload: SignedURLResponse
    key: str = Field(description="Object key the file will be stored under")
    public_url: str = Field(description="Permanent URL of the object")


class MultipartInitRequest(BaseModel):
    """Start a multipart upload."""
    barcode: str = Field(min_length=1, description="Barcode of the packed item")
    content_type: str = Field(default="video/webm", description="MIME type of the video")
    file_size: Optional[int] = Field(default=None, description="Expected total size in bytes")
    recording_id: Optional[str] = Field(
        default=None,
        description="Recording to mark completed in the registry once the upload lands"
    )
    metadata: dict[str, str] = Field(
        default_factory=dict,
        description="Extra object metadata"
    )


class TicketResponse(BaseModel):
    """State of a multipart upload."""
    upload_id: str
    key: str
    status: str
    expires_at: datetime
    created_at: datetime
    requested_parts: list[int] = Field(default_factory=list)
    finished_at: Optional[datetime] = None


class PartURLRequest(BaseModel):
    upload_id: str = Field(min_length=1)
    part_number: int = Field(description="1-based part number")


class PartURLResponse(SignedURLResponse):
    part_number: int


class CompletedPart(BaseModel):
    part_number: int
    etag: str


class MultipartCompleteRequest(BaseModel):
    """Finish a multipart upload with the parts the client wrote."""
    upload_id: str = Field(min_length=1)
    parts: list[CompletedPart] = Field(description="Parts in any order; sorted server-side")


class MultipartCompleteResponse(BaseModel):
    key: str
    public_url: str
    etag: Optional[str] = None
    location: Optional[str] = None
    size: Optional[int] = None


class MultipartAbortRequest(BaseModel):
    upload_id: str = Field(min_length=1)


class MultipartAbortResponse(BaseModel):
    upload_id: str
    status: str


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/presigned-url",
    response_model=PresignedUploadResponse,
    summary="Get a single-PUT upload URL",
    description="For files up to the single-upload limit. Larger files must use multipart.",
)
async def create_presigned_upload(
    request: PresignedUploadRequest,
    worker: WorkerDep,
    settings: SettingsDep,
    issuer: CredentialIssuerDep,
    store: ObjectStoreDep,
    clock: KeyClockDep,
) -> PresignedUploadResponse:
    if request.file_size > settings.max_single_upload_bytes:
        raise PayloadTooLargeError(
            f"File is larger than {settings.max_single_upload_mb}MB; use multipart upload"
        )

    key = derive_key(
        worker.company_id,
        request.barcode,
        clock.now_ms(),
        extension_for(request.content_type),
    )
    credential = issuer.issue_write_credential(
        key,
        request.content_type,
        recording_metadata(worker.company_id, worker.worker_id, request.barcode),
        ttl=settings.presigned_url_expires_seconds,
    )

    logger.info(
        "Presigned upload URL issued",
        extra={"key": key, "company_id": worker.company_id, "file_size": request.file_size},
    )

    return PresignedUploadResponse(
        upload=SignedURLResponse.from_credential(credential),
        key=key,
        public_url=store.public_url(key),
    )


@router.post(
    "/multipart/init",
    response_model=TicketResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a multipart upload",
)
async def init_multipart(
    request: MultipartInitRequest,
    worker: WorkerDep,
    coordinator: CoordinatorDep,
) -> TicketResponse:
    ticket = await coordinator.initiate_upload(
        tenant_id=worker.company_id,
        owner_id=worker.worker_id,
        identifier=request.barcode,
        content_type=request.content_type,
        metadata=request.metadata,
        expected_size=request.file_size,
        recording_id=request.recording_id,
    )
    return _ticket_response(ticket)


@router.post(
    "/multipart/part-url",
    response_model=PartURLResponse,
    summary="Get a signed URL for one part",
)
async def part_url(
    request: PartURLRequest,
    worker: WorkerDep,
    coordinator: CoordinatorDep,
) -> PartURLResponse:
    credential = await coordinator.request_part_credential(
        worker.company_id, request.upload_id, request.part_number
    )
    return PartURLResponse(
        **SignedURLResponse.from_credential(credential).model_dump(),
        part_number=credential.part_number,
    )


@router.post(
    "/multipart/complete",
    response_model=MultipartCompleteResponse,
    summary="Complete a multipart upload",
    description="Parts may arrive in any order; they are sorted by part number before submission.",
)
async def complete_multipart(
    request: MultipartCompleteRequest,
    worker: WorkerDep,
    coordinator: CoordinatorDep,
) -> MultipartCompleteResponse:
    parts = [PartDescriptor(part.part_number, part.etag) for part in request.parts]
    result = await coordinator.complete_upload(worker.company_id, request.upload_id, parts)
    return MultipartCompleteResponse(
        key=result.object_key,
        public_url=result.public_url,
        etag=result.etag,
        location=result.location,
        size=result.size,
    )


@router.post(
    "/multipart/abort",
    response_model=MultipartAbortResponse,
    summary="Abort a multipart upload",
    description="Idempotent: aborting a finished upload succeeds without doing anything.",
)
async def abort_multipart(
    request: MultipartAbortRequest,
    worker: WorkerDep,
    coordinator: CoordinatorDep,
) -> MultipartAbortResponse:
    final_status = await coordinator.abort_upload(worker.company_id, request.upload_id)
    return MultipartAbortResponse(upload_id=request.upload_id, status=final_status.value)


@router.get(
    "/multipart/{upload_id}",
    response_model=TicketResponse,
    summary="Inspect a multipart upload",
)
async def get_multipart(
    upload_id: str,
    worker: WorkerDep,
    coordinator: CoordinatorDep,
) -> TicketResponse:
    return _ticket_response(coordinator.get_ticket(worker.company_id, upload_id))


def _ticket_response(ticket) -> TicketResponse:
    return TicketResponse(
        upload_id=ticket.upload_id,
        key=ticket.object_key,
        status=ticket.status.value,
        expires_at=ticket.expires_at,
        created_at=ticket.created_at,
        requested_parts=sorted(ticket.requested_parts),
        finished_at=ticket.finished_at,
    )
