"""Typed failures of the file API and mapping from HTTP responses."""

from typing import Optional

import httpx


class AttachBoxError(Exception):
    """Base class. status_code is the HTTP status when the failure came from a response."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class BadRequest(AttachBoxError):
    """Malformed or missing fields, unknown upload key, linked attachment."""


class PreconditionRequired(AttachBoxError):
    pass


class PreconditionFailed(AttachBoxError):
    """The item's file changed since the caller last saw it."""


class QuotaExceeded(AttachBoxError):
    """Owner's storage ceiling (MB) would be exceeded. user_id is the owner, not the uploader."""

    def __init__(self, message: str, quota_mb: Optional[int], user_id: Optional[int], status_code: int = 413) -> None:
        super().__init__(message, status_code)
        self.quota_mb = quota_mb
        self.user_id = user_id


class NotFound(AttachBoxError):
    pass


class Forbidden(AttachBoxError):
    pass


class ContentMismatch(AttachBoxError):
    """Object store computed a different digest than declared."""


class SizeMismatch(AttachBoxError):
    """Object store received a different byte count than authorized."""


class PatchFailed(BadRequest):
    """Server could not rebuild the file from the patch; a full upload is needed."""


class TransportError(AttachBoxError):
    """Timeout or connection failure. The only kind of failure worth retrying."""


def _detail(r: httpx.Response) -> str:
    try:
        data = r.json()
    except ValueError:
        return r.text or r.reason_phrase
    if isinstance(data, dict) and data.get("detail"):
        return str(data["detail"])
    return r.text or r.reason_phrase


def _int_header(r: httpx.Response, name: str) -> Optional[int]:
    value = r.headers.get(name)
    if value is None or not value.strip().isdigit():
        return None
    return int(value)


def error_from_response(r: httpx.Response) -> AttachBoxError:
    """Map an unexpected response to the matching AttachBoxError subclass."""
    detail = _detail(r)
    code = r.status_code
    if code == 400:
        if "BadDigest" in detail or "InvalidDigest" in detail:
            return ContentMismatch(detail, code)
        if "SizeMismatch" in detail:
            return SizeMismatch(detail, code)
        if "Patch could not be applied" in detail:
            return PatchFailed(detail, code)
        return BadRequest(detail, code)
    if code in (401, 403):
        return Forbidden(detail, code)
    if code == 404:
        return NotFound(detail, code)
    if code == 412:
        return PreconditionFailed(detail, code)
    if code == 413:
        return QuotaExceeded(
            detail,
            quota_mb=_int_header(r, "X-Storage-Quota"),
            user_id=_int_header(r, "X-Storage-UserID"),
            status_code=code,
        )
    if code == 428:
        return PreconditionRequired(detail, code)
    return AttachBoxError(f"{code} {detail}", code)
