"""
Snowflake database connection management.

Provides connection factory and context manager for Snowflake operations.
Includes mock mode with an in-memory `recordings` table for local development.

Most code never touches this module directly - it goes through
RecordingRepository, which only needs a callable returning a connection
context manager.
"""

import base64
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator, Optional

from .repositories.recordings import (
    RECORDING_COLUMNS,
    ConnectionFactory,
    SnowflakeConfig,
    SnowflakeConnection,
)

logger = logging.getLogger(__name__)


class SnowflakeConnectionError(Exception):
    """Raised when Snowflake connection fails."""
    pass


def _load_private_key(key_path: Optional[str] = None, key_base64: Optional[str] = None) -> bytes:
    """
    Load a PEM private key for key-pair authentication.

    Snowflake wants DER-encoded PKCS8 bytes, not a file path. The key can
    come from a file or, for container deployments, from a base64 env var.
    """
    from cryptography.hazmat.backends import default_backend
    from cryptography.hazmat.primitives import serialization

    if key_base64:
        pem = base64.b64decode(key_base64)
    else:
        with open(key_path, 'rb') as key_file:
            pem = key_file.read()

    private_key = serialization.load_pem_private_key(
        pem,
        password=None,  # No password on the key
        backend=default_backend()
    )

    return private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )


@contextmanager
def get_snowflake_connection(config: SnowflakeConfig) -> Generator[SnowflakeConnection, None, None]:
    """
    Provide Snowflake connection with automatic cleanup.

    Key-pair auth is used when a private key (path or base64) is set,
    otherwise password auth.

    Usage:
        with get_snowflake_connection(config) as conn:
            cursor = conn.cursor()
            # do work
            conn.commit()
    """
    try:
        import snowflake.connector
    except ImportError:
        raise ImportError(
            "snowflake-connector-python is required. "
            "Install with: pip install snowflake-connector-python"
        )

    connect_params = {
        'account': config.account,
        'user': config.user,
        'database': config.database,
        'schema': config.schema,
        'warehouse': config.warehouse,
        'role': config.role,
        'client_session_keep_alive': True,
    }

    if config.private_key_path or config.private_key_base64:
        logger.info("Using key-pair authentication for Snowflake")
        connect_params['private_key'] = _load_private_key(
            config.private_key_path, config.private_key_base64
        )
    elif config.password:
        logger.info("Using password authentication for Snowflake")
        connect_params['password'] = config.password
    else:
        raise SnowflakeConnectionError(
            "Either password or a private key must be provided"
        )

    try:
        conn = snowflake.connector.connect(**connect_params)
    except snowflake.connector.errors.DatabaseError as e:
        logger.error(
            "Snowflake connection failed",
            extra={"error": str(e), "account": config.account}
        )
        raise SnowflakeConnectionError(f"Database connection failed: {e}") from e

    logger.debug(
        "Established Snowflake connection",
        extra={
            "account": config.account,
            "database": config.database,
            "schema": config.schema,
        }
    )

    try:
        yield conn
    finally:
        try:
            conn.close()
            logger.debug("Closed Snowflake connection")
        except Exception as e:
            logger.warning(
                "Error closing Snowflake connection",
                extra={"error": str(e)}
            )


# ---------------------------------------------------------------------------
# Mock Connection for Local Development
# ---------------------------------------------------------------------------

class MockSnowflakeCursor:
    """
    Mock Snowflake cursor for testing.

    Implements just enough of the cursor interface to support
    RecordingRepository without a real database. Queries are recognised
    by pattern matching, not parsed.
    """

    def __init__(self, storage: dict) -> None:
        self._storage = storage
        self._results: list = []
        self._rowcount: int = 0

    def execute(self, query: str, params: Optional[tuple] = None) -> 'MockSnowflakeCursor':
        logger.debug(
            "Mock cursor execute",
            extra={"query": query[:100], "params": params}
        )

        query_upper = " ".join(query.upper().split())
        self._results = []
        self._rowcount = 0

        if query_upper.startswith('SELECT'):
            self._handle_select(query_upper, params or ())
        elif query_upper.startswith('UPDATE RECORDINGS'):
            self._handle_update(params or ())

        return self

    def _handle_select(self, query: str, params: tuple) -> None:
        recordings = self._storage['recordings']

        if 'WHERE RECORDING_ID = %S AND COMPANY_ID = %S' in query:
            recording_id, company_id = params[0], params[1]
            row = recordings.get(str(recording_id))
            if row and row.get('company_id') == str(company_id):
                self._results = [self._as_tuple(row)]
            return

        if "STATUS = 'COMPLETED'" in query:
            company_id = params[0]
            pattern = params[1].strip('%').lower() if 'ILIKE' in query else None
            limit, offset = params[-2], params[-1]

            rows = [
                row for row in recordings.values()
                if row.get('company_id') == str(company_id)
                and row.get('status') == 'completed'
                and (pattern is None or pattern in (row.get('barcode') or '').lower())
            ]
            rows.sort(key=lambda r: r['created_at'], reverse=True)
            self._results = [self._as_tuple(row) for row in rows[offset:offset + limit]]

    def _handle_update(self, params: tuple) -> None:
        storage_key, size, recording_id, company_id = params
        row = self._storage['recordings'].get(str(recording_id))
        if row is None or row.get('company_id') != str(company_id):
            return

        row['storage_key'] = storage_key
        if size is not None:
            row['file_size_bytes'] = size
        row['status'] = 'completed'
        row['updated_at'] = datetime.now(timezone.utc)
        self._rowcount = 1

    @staticmethod
    def _as_tuple(row: dict) -> tuple:
        return tuple(row.get(column) for column in RECORDING_COLUMNS)

    def fetchone(self):
        if not self._results:
            return None
        return self._results[0]

    def fetchall(self) -> list:
        return self._results

    def close(self) -> None:
        pass

    @property
    def rowcount(self) -> int:
        return self._rowcount


class MockSnowflakeConnection:
    """
    Mock Snowflake connection for local development.

    Stores recordings in memory so the whole API can run without a
    real database. Not suitable for production.
    """

    def __init__(self) -> None:
        # In-memory storage: {table_name: {id: row_dict}}
        self._storage: dict[str, dict[str, dict]] = {
            'recordings': {},
        }
        self.commits = 0

        logger.info("Initialized mock Snowflake connection (in-memory)")

    def cursor(self) -> MockSnowflakeCursor:
        return MockSnowflakeCursor(self._storage)

    def commit(self) -> None:
        self.commits += 1
        logger.debug("Mock connection commit")

    def close(self) -> None:
        logger.debug("Mock connection close")

    # Helper methods for testing
    def _add_recording(
        self,
        recording_id: str,
        company_id: str,
        status: str = 'recording',
        created_at: Optional[datetime] = None,
        **columns,
    ) -> None:
        """Add a recording row to mock storage (for test setup)."""
        row = {column: None for column in RECORDING_COLUMNS}
        row.update(columns)
        row.update(
            recording_id=str(recording_id),
            company_id=str(company_id),
            status=status,
            created_at=created_at or datetime.now(timezone.utc),
        )
        self._storage['recordings'][str(recording_id)] = row

    def _get_recording(self, recording_id: str) -> Optional[dict]:
        """Get a recording row from mock storage (for test assertions)."""
        return self._storage['recordings'].get(str(recording_id))


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

def create_connection_factory(
    config: Optional[SnowflakeConfig] = None,
    mock_mode: bool = False,
    mock_connection: Optional[MockSnowflakeConnection] = None,
) -> ConnectionFactory:
    """
    Create a connection factory for RecordingRepository.

    In mock mode every call hands out the same in-memory connection so
    data survives between queries. Otherwise each call opens a fresh
    Snowflake connection.

    Args:
        config: Snowflake configuration (required if not mock_mode)
        mock_mode: If True, use an in-memory connection
        mock_connection: Existing mock connection to share (tests)
    """
    if mock_mode or mock_connection is not None:
        connection = mock_connection or MockSnowflakeConnection()

        @contextmanager
        def mock_factory() -> Generator[MockSnowflakeConnection, None, None]:
            yield connection

        return mock_factory

    if config is None:
        raise ValueError("config is required when not in mock mode")

    def factory():
        return get_snowflake_connection(config)

    return factory
