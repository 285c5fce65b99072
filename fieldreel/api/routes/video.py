"""
Video delivery endpoints.

Two ways to play a recording:
- /url: a short-lived signed URL the player fetches from the store itself
- /stream: we proxy the bytes, honouring HTTP Range so players can seek

Every lookup is scoped to the caller's company.
"""

import logging
from datetime import datetime
from typing import Annotated, Optional

from fastapi import APIRouter, Header, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ...core.uploads import PlaybackLink
from ..dependencies import StreamingProxyDep, WorkerDep

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Response Models
# ---------------------------------------------------------------------------

class RecordingInfo(BaseModel):
    recording_id: str
    barcode: Optional[str] = None
    content_type: str
    duration_seconds: Optional[float] = None
    file_size_bytes: Optional[int] = None
    resolution: Optional[str] = None
    recorded_at: Optional[datetime] = None


class PlaybackURLResponse(BaseModel):
    """Signed URL that plays the recording inline."""
    url: str = Field(description="Signed GET URL")
    expires_in: int = Field(description="Seconds until the URL stops working")
    expires_at: datetime
    recording: RecordingInfo

    @classmethod
    def from_link(cls, link: PlaybackLink) -> "PlaybackURLResponse":
        location = link.recording
        return cls(
            url=link.url,
            expires_in=link.expires_in,
            expires_at=link.expires_at,
            recording=RecordingInfo(
                recording_id=location.recording_id,
                barcode=location.barcode,
                content_type=location.content_type,
                duration_seconds=location.duration_seconds,
                file_size_bytes=location.file_size_bytes,
                resolution=location.resolution,
                recorded_at=location.recorded_at,
            ),
        )


class VideoListResponse(BaseModel):
    videos: list[PlaybackURLResponse]
    limit: int
    offset: int


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get(
    "/url/{recording_id}",
    response_model=PlaybackURLResponse,
    summary="Get a playback URL",
)
async def playback_url(
    recording_id: str,
    worker: WorkerDep,
    proxy: StreamingProxyDep,
) -> PlaybackURLResponse:
    link = await proxy.resolve_playback_url(worker.company_id, recording_id)
    return PlaybackURLResponse.from_link(link)


@router.get(
    "/stream/{recording_id}",
    summary="Stream a recording",
    description="Supports a single `Range: bytes=...` request for seeking.",
    responses={
        206: {"description": "Partial content"},
        416: {"description": "Requested range not satisfiable"},
    },
)
async def stream_video(
    recording_id: str,
    worker: WorkerDep,
    proxy: StreamingProxyDep,
    range_header: Annotated[Optional[str], Header(alias="Range")] = None,
) -> StreamingResponse:
    result = await proxy.resolve_and_stream(worker.company_id, recording_id, range_header)

    return StreamingResponse(
        result.body,
        status_code=result.status_code,
        headers=result.headers,
        media_type=result.media_type,
    )


@router.get(
    "/list",
    response_model=VideoListResponse,
    summary="List playable recordings",
)
async def list_videos(
    worker: WorkerDep,
    proxy: StreamingProxyDep,
    limit: int = Query(default=20, description="Page size (1-100)"),
    offset: int = Query(default=0, description="Rows to skip"),
    barcode: Optional[str] = Query(default=None, description="Filter by barcode substring"),
) -> VideoListResponse:
    links = await proxy.list_playable(
        worker.company_id, limit=limit, offset=offset, identifier_filter=barcode
    )
    return VideoListResponse(
        videos=[PlaybackURLResponse.from_link(link) for link in links],
        limit=limit,
        offset=offset,
    )
