"""
FastAPI dependency injection.

Dependencies provide instances of services, clients, and configuration
to route handlers. Using dependency injection means:
- Routes don't instantiate their own dependencies (easier to test)
- Configuration is centralized
- Resource lifecycle (HTTP clients, background tasks) is managed in one place

The upload services hold in-memory state (open tickets, buffered chunks),
so they are built once in the application lifespan and live on
`app.state`. The functions here just hand them to routes.
"""

import logging
from dataclasses import dataclass
from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

from ..config.settings import Settings
from ..core.uploads import (
    ChunkSessionManager,
    CredentialIssuer,
    KeyClock,
    MultipartUploadCoordinator,
    ObjectStore,
    RangeStreamingProxy,
)

logger = logging.getLogger(__name__)

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_app_settings(request: Request) -> Settings:
    """Settings the running application was created with."""
    return request.app.state.settings


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

async def verify_api_key(
    settings: Annotated[Settings, Depends(get_app_settings)],
    api_key: str = Security(api_key_header),
) -> str:
    """
    Validate API key from request header.

    Raises 403 if key is invalid or missing.
    """
    if not api_key:
        logger.warning("Request missing API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="API key required. Provide X-API-Key header.",
        )

    if api_key not in settings.api_keys_list:
        logger.warning(
            "Invalid API key attempt",
            extra={"key_prefix": api_key[:8] if api_key else ""}
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )

    return api_key


@dataclass(frozen=True)
class WorkerContext:
    """Who is calling: the worker and the company they belong to."""
    company_id: str
    worker_id: str


async def get_worker_context(
    _api_key: Annotated[str, Depends(verify_api_key)],
    x_company_id: Annotated[Optional[str], Header()] = None,
    x_worker_id: Annotated[Optional[str], Header()] = None,
) -> WorkerContext:
    """
    Identity of the calling worker.

    The gateway in front of us authenticates workers and forwards these
    headers; we trust them as given.
    """
    if not x_company_id or not x_worker_id:
        logger.warning(
            "Request missing worker identity",
            extra={"has_company": bool(x_company_id), "has_worker": bool(x_worker_id)},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Company-Id and X-Worker-Id headers are required",
        )

    return WorkerContext(company_id=x_company_id.strip(), worker_id=x_worker_id.strip())


# ---------------------------------------------------------------------------
# Service Dependencies
# ---------------------------------------------------------------------------

def get_object_store(request: Request) -> ObjectStore:
    return request.app.state.object_store


def get_credential_issuer(request: Request) -> CredentialIssuer:
    return request.app.state.issuer


def get_key_clock(request: Request) -> KeyClock:
    return request.app.state.key_clock


def get_coordinator(request: Request) -> MultipartUploadCoordinator:
    return request.app.state.coordinator


def get_session_manager(
    request: Request,
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> ChunkSessionManager:
    """
    Chunk reassembly sessions, when the deployment offers them.

    Returns 404 when the feature is switched off so clients fall back
    to multipart.
    """
    if not settings.chunked_upload_enabled:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Chunked uploads are not enabled on this server",
        )
    return request.app.state.session_manager


def get_streaming_proxy(request: Request) -> RangeStreamingProxy:
    return request.app.state.streaming_proxy


# ---------------------------------------------------------------------------
# Convenience Type Aliases
# ---------------------------------------------------------------------------

# These type aliases make route signatures cleaner
WorkerDep = Annotated[WorkerContext, Depends(get_worker_context)]
SettingsDep = Annotated[Settings, Depends(get_app_settings)]
ObjectStoreDep = Annotated[ObjectStore, Depends(get_object_store)]
CredentialIssuerDep = Annotated[CredentialIssuer, Depends(get_credential_issuer)]
KeyClockDep = Annotated[KeyClock, Depends(get_key_clock)]
CoordinatorDep = Annotated[MultipartUploadCoordinator, Depends(get_coordinator)]
SessionManagerDep = Annotated[ChunkSessionManager, Depends(get_session_manager)]
StreamingProxyDep = Annotated[RangeStreamingProxy, Depends(get_streaming_proxy)]
