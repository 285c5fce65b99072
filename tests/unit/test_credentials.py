"""
Unit tests for the credential issuer.

Signing is local, so these run against MockObjectStore and inspect the
signed URL it produces.
"""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from fieldreel.core.uploads import (
    CredentialIssuer,
    ResponseOverrides,
    StoreOperation,
    ValidationError,
    inline_disposition,
    ttl_within,
)
from fieldreel.core.uploads.models import utcnow


def query_of(url: str) -> dict[str, str]:
    return {name: values[0] for name, values in parse_qs(urlparse(url).query).items()}


class TestWriteCredential:

    def test_whole_object_credential(self, issuer):
        """Content type and metadata come back as headers the client must send."""
        credential = issuer.issue_write_credential(
            "recordings/acme/a.webm",
            "video/webm",
            {"barcode": "PKG-1"},
        )

        assert credential.operation is StoreOperation.PUT_OBJECT
        assert credential.method == "PUT"
        assert credential.expires_in == 3600
        assert credential.headers == {
            "Content-Type": "video/webm",
            "x-amz-meta-barcode": "PKG-1",
        }
        assert query_of(credential.url)["op"] == "put_object"

    def test_expires_at_matches_ttl(self, issuer):
        before = utcnow()
        credential = issuer.issue_write_credential("k", ttl=120)

        assert credential.expires_in == 120
        assert before + timedelta(seconds=120) <= credential.expires_at
        assert credential.expires_at <= utcnow() + timedelta(seconds=120)

    def test_part_credential_is_scoped_to_upload_and_part(self, issuer):
        credential = issuer.issue_write_credential("k", upload_id="up-1", part_number=3)
        query = query_of(credential.url)

        assert credential.operation is StoreOperation.UPLOAD_PART
        assert credential.part_number == 3
        assert query["UploadId"] == "up-1"
        assert query["PartNumber"] == "3"
        assert credential.headers == {}

    def test_part_number_must_be_positive(self, issuer):
        with pytest.raises(ValidationError):
            issuer.issue_write_credential("k", upload_id="up-1", part_number=0)

    def test_part_number_without_upload_id_rejected(self, issuer):
        with pytest.raises(ValidationError, match="upload_id"):
            issuer.issue_write_credential("k", part_number=1)

    def test_empty_key_rejected(self, issuer):
        with pytest.raises(ValidationError):
            issuer.issue_write_credential("")


class TestTtlBounds:
    """TTLs are caller-chosen but bounded."""

    @pytest.mark.parametrize("ttl", [0, -5, 43201])
    def test_out_of_range_ttl_rejected(self, issuer, ttl):
        with pytest.raises(ValidationError):
            issuer.issue_write_credential("k", ttl=ttl)

    def test_non_integer_ttl_rejected(self, issuer):
        with pytest.raises(ValidationError):
            issuer.issue_write_credential("k", ttl=True)

    def test_max_ttl_accepted(self, issuer):
        assert issuer.issue_read_credential("k", ttl=43200).expires_in == 43200

    def test_credential_cannot_outlive_deadline(self, issuer):
        deadline = utcnow() + timedelta(seconds=10)

        with pytest.raises(ValidationError, match="outlive"):
            issuer.issue_write_credential("k", ttl=3600, not_after=deadline)

    def test_bad_default_ttl_rejected(self, store):
        with pytest.raises(ValueError):
            CredentialIssuer(store, default_ttl=0)
        with pytest.raises(ValueError):
            CredentialIssuer(store, default_ttl=100, max_ttl=50)


class TestTtlWithin:

    def test_shrinks_to_deadline(self):
        now = utcnow()
        assert ttl_within(now + timedelta(seconds=100), 3600, now) == 99

    def test_keeps_shorter_ttl(self):
        now = utcnow()
        assert ttl_within(now + timedelta(hours=5), 3600, now) == 3600

    def test_never_below_one_second(self):
        now = utcnow()
        assert ttl_within(now - timedelta(seconds=30), 3600, now) == 1


class TestReadCredential:

    def test_read_credential_carries_overrides(self, issuer):
        credential = issuer.issue_read_credential(
            "recordings/acme/a.webm",
            response_overrides=ResponseOverrides(
                content_type="video/webm",
                content_disposition=inline_disposition("PKG-1.webm"),
            ),
        )
        query = query_of(credential.url)

        assert credential.method == "GET"
        assert credential.operation is StoreOperation.GET_OBJECT
        assert query["ResponseContentType"] == "video/webm"
        assert query["ResponseContentDisposition"] == 'inline; filename="PKG-1.webm"'

    def test_inline_disposition_strips_quotes(self):
        assert inline_disposition('a"b\\c.webm') == 'inline; filename="abc.webm"'
