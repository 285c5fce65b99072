"""
Object key naming.

Keys are date-partitioned (`recordings/{tenant}/{YYYY}/{MM}/{DD}/...`) so
lifecycle rules and listing tools can range-scan by day without a
secondary index.
"""

import hashlib
import re
import threading
import time
from datetime import datetime, timezone
from typing import Union

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")

Timestamp = Union[int, datetime]


def _segment(value: str) -> str:
    """Make a value safe for use as one key segment."""
    raw = str(value)
    cleaned = _UNSAFE.sub("-", raw).strip(".-") or "x"
    if cleaned != raw:
        # keep distinct raw values distinct after cleaning
        digest = hashlib.blake2s(raw.encode("utf-8"), digest_size=4).hexdigest()
        cleaned = f"{cleaned}-{digest}"
    return cleaned


def _to_epoch_ms(timestamp: Timestamp) -> int:
    if isinstance(timestamp, datetime):
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return int(timestamp.timestamp() * 1000)
    return int(timestamp)


def derive_key(
    tenant_id: str,
    identifier: str,
    timestamp: Timestamp,
    extension: str = "webm",
) -> str:
    """
    Derive the object key for one logical upload.

    Pure function: the same inputs always give the same key. Uniqueness
    across calls comes from the timestamp, so callers should take it from
    a `KeyClock`.

    Args:
        tenant_id: Company the recording belongs to
        identifier: Logical identifier (barcode) of the recording
        timestamp: Epoch milliseconds or a datetime (naive = UTC)
        extension: File extension without the dot

    Returns:
        Key like `recordings/acme/2024/03/09/PKG-1_1709990000000.webm`
    """
    epoch_ms = _to_epoch_ms(timestamp)
    day = datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)

    return (
        f"recordings/{_segment(tenant_id)}/"
        f"{day.year:04d}/{day.month:02d}/{day.day:02d}/"
        f"{_segment(identifier)}_{epoch_ms}.{_segment(extension)}"
    )


def public_url(bucket: str, region: str, key: str) -> str:
    """Virtual-hosted style URL of a stored object."""
    return f"https://{bucket}.s3.{region}.amazonaws.com/{key}"


class KeyClock:
    """
    Millisecond clock that never returns the same value twice.

    Two initiations for the same tenant and barcode inside one millisecond
    would otherwise derive the same key.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last = 0

    def now_ms(self) -> int:
        with self._lock:
            current = int(time.time() * 1000)
            if current <= self._last:
                current = self._last + 1
            self._last = current
            return current
