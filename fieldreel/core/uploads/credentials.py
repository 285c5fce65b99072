"""
Credential issuer.

Mints presigned URLs that let a client talk to the object store directly
for exactly one operation on exactly one object. Signing happens locally
against the store's credential scheme; no request is sent here.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from .errors import ValidationError
from .models import (
    ObjectStore,
    ResponseOverrides,
    SignedURL,
    StoreOperation,
    utcnow,
)

logger = logging.getLogger(__name__)


def inline_disposition(filename: str) -> str:
    """Content-Disposition that plays the file in the browser."""
    safe = filename.replace('"', "").replace("\\", "")
    return f'inline; filename="{safe}"'


def ttl_within(deadline: datetime, ttl: int, now: Optional[datetime] = None) -> int:
    """Shrink `ttl` so a credential expires no later than `deadline`."""
    # one second of slack for the time spent between here and signing
    remaining = int((deadline - (now or utcnow())).total_seconds()) - 1
    return max(1, min(ttl, remaining))


class CredentialIssuer:
    """
    Issues scoped, time-limited credentials.

    TTLs are caller-specified but bounded: never above `max_ttl`, and
    never past the `not_after` deadline of the session or ticket the
    credential backs.
    """

    def __init__(
        self,
        store: ObjectStore,
        default_ttl: int = 3600,
        max_ttl: int = 12 * 3600,
    ) -> None:
        if not 1 <= default_ttl <= max_ttl:
            raise ValueError("default_ttl must be between 1 and max_ttl")
        self._store = store
        self.default_ttl = default_ttl
        self.max_ttl = max_ttl

    def issue_write_credential(
        self,
        object_key: str,
        content_type: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
        ttl: Optional[int] = None,
        *,
        upload_id: Optional[str] = None,
        part_number: Optional[int] = None,
        not_after: Optional[datetime] = None,
    ) -> SignedURL:
        """
        Sign a PUT for a whole object, or for one part of a multipart upload.

        Content type and metadata are baked into whole-object signatures,
        so they come back in `SignedURL.headers` for the client to send.
        Part uploads carry no metadata; it was fixed at initiation.
        """
        if not object_key:
            raise ValidationError("object_key is required")

        expires_in = self._check_ttl(ttl, not_after)

        if upload_id is not None or part_number is not None:
            if not upload_id:
                raise ValidationError("upload_id is required for a part credential")
            self._check_part_number(part_number)
            params = {"UploadId": upload_id, "PartNumber": part_number}
            url = self._store.presign(StoreOperation.UPLOAD_PART, object_key, expires_in, params)

            logger.debug(
                "Issued part credential",
                extra={"key": object_key, "upload_id": upload_id, "part_number": part_number},
            )

            return SignedURL(
                url=url,
                operation=StoreOperation.UPLOAD_PART,
                object_key=object_key,
                expires_in=expires_in,
                expires_at=utcnow() + timedelta(seconds=expires_in),
                method="PUT",
                part_number=part_number,
            )

        params: dict = {}
        headers: dict[str, str] = {}
        if content_type:
            params["ContentType"] = content_type
            headers["Content-Type"] = content_type
        if metadata:
            params["Metadata"] = dict(metadata)
            for name, value in metadata.items():
                headers[f"x-amz-meta-{name}"] = value

        url = self._store.presign(StoreOperation.PUT_OBJECT, object_key, expires_in, params)

        logger.debug(
            "Issued write credential",
            extra={"key": object_key, "expires_in": expires_in},
        )

        return SignedURL(
            url=url,
            operation=StoreOperation.PUT_OBJECT,
            object_key=object_key,
            expires_in=expires_in,
            expires_at=utcnow() + timedelta(seconds=expires_in),
            method="PUT",
            headers=headers,
        )

    def issue_read_credential(
        self,
        object_key: str,
        ttl: Optional[int] = None,
        response_overrides: Optional[ResponseOverrides] = None,
        *,
        not_after: Optional[datetime] = None,
    ) -> SignedURL:
        """
        Sign a GET for one object.

        Overrides make the store answer with our content type and
        disposition, which is how recordings play inline with a readable
        filename instead of downloading as an opaque key.
        """
        if not object_key:
            raise ValidationError("object_key is required")

        expires_in = self._check_ttl(ttl, not_after)

        params: dict = {}
        if response_overrides is not None:
            if response_overrides.content_type:
                params["ResponseContentType"] = response_overrides.content_type
            if response_overrides.content_disposition:
                params["ResponseContentDisposition"] = response_overrides.content_disposition

        url = self._store.presign(StoreOperation.GET_OBJECT, object_key, expires_in, params)

        return SignedURL(
            url=url,
            operation=StoreOperation.GET_OBJECT,
            object_key=object_key,
            expires_in=expires_in,
            expires_at=utcnow() + timedelta(seconds=expires_in),
            method="GET",
        )

    def _check_ttl(self, ttl: Optional[int], not_after: Optional[datetime]) -> int:
        expires_in = self.default_ttl if ttl is None else ttl
        if isinstance(expires_in, bool) or not isinstance(expires_in, int):
            raise ValidationError("ttl must be an integer number of seconds")
        if expires_in < 1:
            raise ValidationError("ttl must be at least 1 second")
        if expires_in > self.max_ttl:
            raise ValidationError(f"ttl {expires_in}s exceeds the maximum of {self.max_ttl}s")
        if not_after is not None and utcnow() + timedelta(seconds=expires_in) > not_after:
            raise ValidationError("credential would outlive the upload it belongs to")
        return expires_in

    @staticmethod
    def _check_part_number(part_number: Optional[int]) -> None:
        # no upper bound here; the store enforces its own maximum
        if isinstance(part_number, bool) or not isinstance(part_number, int):
            raise ValidationError("part_number must be an integer")
        if part_number < 1:
            raise ValidationError("part_number must be a positive integer")
