"""
Shared fixtures for unit tests.

Everything runs against in-memory fakes: MockObjectStore for the bucket
and FakeRegistry for the recording registry.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from fieldreel.core.uploads import CredentialIssuer, NotFoundError, RecordingLocation
from fieldreel.infrastructure.storage.client import MockObjectStore


class FakeRegistry:
    """In-memory recording registry."""

    def __init__(self) -> None:
        self.locations: dict[tuple[str, str], RecordingLocation] = {}
        self.completions: list[tuple[str, str, Optional[int]]] = []
        self.failures: list[Exception] = []

    def add(self, tenant_id: str, location: RecordingLocation) -> None:
        self.locations[(tenant_id, location.recording_id)] = location

    def add_pending(self, tenant_id: str, recording_id: str) -> None:
        """A recording whose video hasn't been uploaded yet."""
        self.add(tenant_id, RecordingLocation(recording_id=recording_id, stored_object_key=""))

    async def lookup(self, tenant_id, recording_id):
        return self.locations.get((tenant_id, recording_id))

    async def record_completion(self, tenant_id, recording_id, stored_object_key, size):
        if self.failures:
            raise self.failures.pop(0)
        location = self.locations.get((tenant_id, recording_id))
        if location is None:
            raise NotFoundError(f"Recording {recording_id} not found")
        location.stored_object_key = stored_object_key
        self.completions.append((recording_id, stored_object_key, size))

    async def list_completed(self, tenant_id, limit=20, offset=0, identifier_filter=None):
        matches = [
            location for (tenant, _), location in self.locations.items()
            if tenant == tenant_id
            and (not identifier_filter or identifier_filter in (location.barcode or ""))
        ]
        return matches[offset:offset + limit]


class FakeClock:
    """Controllable time source for expiry tests."""

    def __init__(self) -> None:
        self.now = datetime(2024, 3, 9, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def store() -> MockObjectStore:
    return MockObjectStore()


@pytest.fixture
def issuer(store) -> CredentialIssuer:
    return CredentialIssuer(store, default_ttl=3600, max_ttl=43200)


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
