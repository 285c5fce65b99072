"""
Snowflake repository for the recording registry.

The registry belongs to the recording service; we only read where a
recording's video lives and mark it completed once the upload lands.
The repository keeps every SQL statement in one place and hands domain
objects back to the core.

Snowflake's connector is synchronous, so each public method runs its
query in a worker thread and opens its own connection.
"""

import asyncio
import logging
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Protocol

from ....core.uploads.errors import NotFoundError, UpstreamError
from ....core.uploads.models import RecordingLocation
from ....core.uploads.multipart import extension_for

logger = logging.getLogger(__name__)

RECORDING_COLUMNS = (
    "recording_id",
    "storage_key",
    "cloud_url",
    "content_type",
    "barcode",
    "duration_seconds",
    "file_size_bytes",
    "resolution",
    "start_time",
)

_SELECT = f"SELECT {', '.join(RECORDING_COLUMNS)} FROM recordings"


class SnowflakeConnection(Protocol):
    """
    Protocol for Snowflake connections.

    Using a protocol means tests can provide a mock without
    importing the actual snowflake-connector-python.
    """

    def cursor(self): ...
    def commit(self) -> None: ...


ConnectionFactory = Callable[[], AbstractContextManager]


@dataclass
class SnowflakeConfig:
    """Configuration for Snowflake connection."""
    account: str
    user: str
    password: Optional[str] = None
    private_key_path: Optional[str] = None
    private_key_base64: Optional[str] = None
    database: str = "FIELDREEL"
    schema: str = "RECORDINGS"
    warehouse: str = "COMPUTE_WH"
    role: Optional[str] = None


class RegistryError(UpstreamError):
    """Raised when the recording registry can't be reached or queried."""
    pass


def key_from_url(cloud_url: Optional[str]) -> Optional[str]:
    """
    Object key from a stored public URL.

    Older rows only carry `cloud_url`
    (`https://bucket.s3.region.amazonaws.com/<key>`).
    """
    if not cloud_url or ".amazonaws.com/" not in cloud_url:
        return None
    return cloud_url.split(".amazonaws.com/", 1)[1] or None


class RecordingRepository:
    """
    Recording registry backed by the `recordings` table.

    Every lookup is scoped by company, so a worker can never resolve
    another tenant's recording even with a valid id.
    """

    def __init__(self, connection_factory: ConnectionFactory) -> None:
        self._connect = connection_factory

    async def lookup(self, tenant_id: str, recording_id: str) -> Optional[RecordingLocation]:
        return await asyncio.to_thread(self._lookup, tenant_id, recording_id)

    async def record_completion(
        self,
        tenant_id: str,
        recording_id: str,
        stored_object_key: str,
        size: Optional[int],
    ) -> None:
        await asyncio.to_thread(
            self._record_completion, tenant_id, recording_id, stored_object_key, size
        )

    async def list_completed(
        self,
        tenant_id: str,
        limit: int = 20,
        offset: int = 0,
        identifier_filter: Optional[str] = None,
    ) -> list[RecordingLocation]:
        return await asyncio.to_thread(
            self._list_completed, tenant_id, limit, offset, identifier_filter
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _lookup(self, tenant_id: str, recording_id: str) -> Optional[RecordingLocation]:
        with self._cursor("lookup recording") as cursor:
            cursor.execute(
                f"{_SELECT} WHERE recording_id = %s AND company_id = %s",
                (str(recording_id), str(tenant_id)),
            )
            row = cursor.fetchone()

        if not row:
            return None
        return self._build_location(row)

    def _record_completion(
        self,
        tenant_id: str,
        recording_id: str,
        stored_object_key: str,
        size: Optional[int],
    ) -> None:
        with self._cursor("record completion", commit=True) as cursor:
            cursor.execute("""
                UPDATE recordings
                SET storage_key = %s,
                    file_size_bytes = COALESCE(%s, file_size_bytes),
                    status = 'completed',
                    updated_at = CURRENT_TIMESTAMP()
                WHERE recording_id = %s AND company_id = %s
            """, (stored_object_key, size, str(recording_id), str(tenant_id)))
            updated = cursor.rowcount

        if not updated:
            raise NotFoundError(f"Recording {recording_id} not found")

        logger.info(
            "Recording marked completed",
            extra={"recording_id": recording_id, "key": stored_object_key},
        )

    def _list_completed(
        self,
        tenant_id: str,
        limit: int,
        offset: int,
        identifier_filter: Optional[str],
    ) -> list[RecordingLocation]:
        query = f"{_SELECT} WHERE company_id = %s AND status = 'completed'"
        params: list = [str(tenant_id)]
        if identifier_filter:
            query += " AND barcode ILIKE %s"
            params.append(f"%{identifier_filter}%")
        query += " ORDER BY created_at DESC LIMIT %s OFFSET %s"
        params.extend([limit, offset])

        with self._cursor("list recordings") as cursor:
            cursor.execute(query, tuple(params))
            rows = cursor.fetchall()

        return [self._build_location(row) for row in rows]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _cursor(self, action: str, commit: bool = False) -> Iterator:
        """
        Connection + cursor scope that turns driver failures into RegistryError.
        """
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                try:
                    yield cursor
                    if commit:
                        conn.commit()
                finally:
                    cursor.close()
        except (NotFoundError, RegistryError):
            raise
        except Exception as e:
            logger.error(
                "Registry query failed",
                extra={"action": action, "error": str(e)},
            )
            raise RegistryError(f"Failed to {action}: {e}") from e

    @staticmethod
    def _build_location(row) -> RecordingLocation:
        values = dict(zip(RECORDING_COLUMNS, row))
        barcode = values["barcode"]
        content_type = values["content_type"] or "video/webm"
        extension = extension_for(content_type)

        return RecordingLocation(
            recording_id=str(values["recording_id"]),
            stored_object_key=values["storage_key"] or key_from_url(values["cloud_url"]) or "",
            content_type=content_type,
            filename_hint=f"{barcode}.{extension}" if barcode else None,
            barcode=barcode,
            duration_seconds=values["duration_seconds"],
            file_size_bytes=values["file_size_bytes"],
            resolution=values["resolution"],
            recorded_at=values["start_time"],
        )
