"""
FastAPI application entry point.

This module creates and configures the FastAPI application.
Using an application factory pattern (create_app function) because:
- Easier to test with different configurations
- Explicit about initialization order

For local development:
    uvicorn fieldreel.main:app --reload

Run a single worker process: open tickets and buffered chunks live in
this process's memory.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .api.routes import chunked, health, uploads, video
from .config.settings import Settings, get_settings
from .core.uploads import (
    ChunkSessionManager,
    ConfigurationError,
    ConflictError,
    CredentialIssuer,
    KeyClock,
    MultipartUploadCoordinator,
    NotFoundError,
    PayloadTooLargeError,
    RangeNotSatisfiableError,
    RangeStreamingProxy,
    UploadError,
    UpstreamError,
    ValidationError,
)
from .infrastructure.snowflake.client import MockSnowflakeConnection, create_connection_factory
from .infrastructure.snowflake.repositories import RecordingRepository
from .infrastructure.storage.client import create_object_store

logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS: list[tuple[type[UploadError], int]] = [
    (RangeNotSatisfiableError, 416),
    (PayloadTooLargeError, 413),
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (UpstreamError, 502),
    (ConfigurationError, 500),
]


def status_for(exc: UploadError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def sweep_once(app: FastAPI) -> tuple[int, int]:
    """
    Run both expiry sweeps. A failing sweep is logged and counts as
    zero; it never stops the other one.
    """
    dropped = []
    for name, service in (
        ("tickets", app.state.coordinator),
        ("sessions", app.state.session_manager),
    ):
        try:
            dropped.append(await service.sweep())
        except Exception as e:
            logger.error(
                "Expiry sweep failed",
                extra={"sweep": name, "error": str(e)},
                exc_info=e,
            )
            dropped.append(0)
    return dropped[0], dropped[1]


async def reap_expired(app: FastAPI, interval: float) -> None:
    """Periodically drop expired tickets and sessions."""
    while True:
        await asyncio.sleep(interval)
        tickets, sessions = await sweep_once(app)

        if tickets or sessions:
            logger.info(
                "Expiry sweep",
                extra={"tickets_dropped": tickets, "sessions_dropped": sessions},
            )


def build_services(app: FastAPI, settings: Settings) -> None:
    """Wire the store, registry and upload services onto `app.state`."""
    store = create_object_store(
        config=None if settings.s3_mock_mode else settings.storage_config(),
        mock_mode=settings.s3_mock_mode,
    )

    if settings.snowflake_mock_mode:
        app.state.snowflake_mock = MockSnowflakeConnection()
        connection_factory = create_connection_factory(mock_connection=app.state.snowflake_mock)
    else:
        connection_factory = create_connection_factory(config=settings.snowflake_config())
    registry = RecordingRepository(connection_factory)

    issuer = CredentialIssuer(
        store,
        default_ttl=settings.presigned_url_expires_seconds,
        max_ttl=settings.max_credential_ttl_seconds,
    )
    clock = KeyClock()

    app.state.object_store = store
    app.state.registry = registry
    app.state.issuer = issuer
    app.state.key_clock = clock
    app.state.coordinator = MultipartUploadCoordinator(
        store,
        issuer,
        registry,
        ticket_lifetime=timedelta(hours=settings.multipart_ticket_lifetime_hours),
        tombstone_retention=timedelta(minutes=settings.ticket_retention_minutes),
        clock=clock,
    )
    app.state.session_manager = ChunkSessionManager(
        store,
        issuer,
        registry,
        session_ttl=timedelta(minutes=settings.chunk_session_ttl_minutes),
        max_session_bytes=settings.max_chunk_session_bytes,
        max_total_chunks=settings.max_total_chunks,
        clock=clock,
    )
    app.state.streaming_proxy = RangeStreamingProxy(
        store,
        issuer,
        registry,
        read_ttl=settings.read_url_expires_seconds,
        chunk_size=settings.stream_chunk_size_bytes,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Builds the upload services on startup, runs the expiry sweeper while
    the app is up, and closes the store's HTTP client on shutdown.
    """
    settings: Settings = app.state.settings

    logger.info(
        "FieldReel API starting",
        extra={
            "version": settings.api_version,
            "mock_mode": {
                "snowflake": settings.snowflake_mock_mode,
                "s3": settings.s3_mock_mode,
            }
        }
    )

    missing_fields = settings.validate_required_fields()
    if missing_fields:
        logger.error(
            "Missing required configuration",
            extra={"missing_fields": missing_fields}
        )

    build_services(app, settings)
    app.state.reaper = asyncio.create_task(
        reap_expired(app, settings.reaper_interval_seconds)
    )

    yield

    logger.info("FieldReel API shutting down")
    app.state.reaper.cancel()
    try:
        await app.state.reaper
    except asyncio.CancelledError:
        pass
    await app.state.object_store.close()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Application factory.

    Pass `settings` to build an app with a specific configuration
    (tests); otherwise environment settings are used.
    """
    settings = settings or get_settings()

    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=settings.log_level.upper(),
    )

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description="""
        Upload and playback service for packing-station recordings.

        ## Uploading

        - **Small files**: `POST /api/v1/upload/presigned-url`, then PUT to the returned URL
        - **Large files**: `POST /api/v1/upload/multipart/init`, one `part-url` per part,
          then `complete` (or `abort`)
        - **No multipart support**: open a session at `POST /api/v1/chunked/sessions`
          and PUT chunks to it

        ## Playback

        - `GET /api/v1/video/url/{recording_id}` for a signed URL
        - `GET /api/v1/video/stream/{recording_id}` to stream through us with Range support

        ## Authentication

        Every endpoint requires `X-API-Key`, plus `X-Company-Id` and `X-Worker-Id`.
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Range", "Accept-Ranges", "Content-Length"],
    )

    # Include routers
    app.include_router(
        health.router,
        prefix="/health",
        tags=["Health"],
    )

    app.include_router(
        uploads.router,
        prefix="/api/v1/upload",
        tags=["Uploads"],
    )

    app.include_router(
        chunked.router,
        prefix="/api/v1/chunked",
        tags=["Chunked Uploads"],
    )

    app.include_router(
        video.router,
        prefix="/api/v1/video",
        tags=["Video"],
    )

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "message": "FieldReel Upload API",
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
        }

    @app.exception_handler(UploadError)
    async def upload_error_handler(request: Request, exc: UploadError):
        """Translate domain errors into HTTP responses."""
        status_code = status_for(exc)
        headers = None
        if isinstance(exc, RangeNotSatisfiableError):
            headers = {"Content-Range": f"bytes */{exc.total_size}"}

        log = logger.error if status_code >= 500 else logger.warning
        log(
            "Request failed",
            extra={
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "error": str(exc),
            },
        )

        return JSONResponse(
            status_code=status_code,
            content={"detail": str(exc), "error": type(exc).__name__},
            headers=headers,
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        """
        Catch-all exception handler.

        Prevents stack traces from leaking to clients. We log the full
        error server-side but return a generic message.
        """
        logger.error(
            "Unhandled exception",
            extra={
                "path": request.url.path,
                "method": request.method,
                "error": str(exc),
            },
            exc_info=exc,
        )

        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error. Please contact support if this persists."
            }
        )

    logger.info(
        "FastAPI application created",
        extra={
            "title": settings.api_title,
            "version": settings.api_version,
        }
    )

    return app


# Create the application instance
# This is what uvicorn will import
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "fieldreel.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level=settings.log_level.lower(),
    )
