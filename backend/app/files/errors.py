"""Failures of the file protocol. Routes translate these into HTTP responses."""

from typing import Dict, Optional

from fastapi import HTTPException, status


class FileProtocolError(Exception):
    """Base class: carries HTTP status, message and optional response headers."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str, headers: Optional[Dict[str, str]] = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.headers = headers or {}

    def to_http(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail=self.detail,
            headers=self.headers or None,
        )


class BadRequest(FileProtocolError):
    status_code = status.HTTP_400_BAD_REQUEST


class Forbidden(FileProtocolError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(FileProtocolError):
    status_code = status.HTTP_404_NOT_FOUND


class PreconditionFailed(FileProtocolError):
    status_code = status.HTTP_412_PRECONDITION_FAILED


class PreconditionRequired(FileProtocolError):
    status_code = status.HTTP_428_PRECONDITION_REQUIRED


class QuotaExceeded(FileProtocolError):
    """Reports the ceiling (MB) and the owner the usage is attributed to."""

    # 413 Content Too Large
    status_code = 413

    def __init__(self, quota_mb: int, owner_id: int) -> None:
        super().__init__(
            "File would exceed quota (%s MB)" % quota_mb,
            headers={"X-Storage-Quota": str(quota_mb), "X-Storage-UserID": str(owner_id)},
        )
        self.quota_mb = quota_mb
        self.owner_id = owner_id


class PatchFailed(BadRequest):
    """Patch could not be applied; the client should fall back to a full upload."""

    def __init__(self, reason: str) -> None:
        super().__init__("Patch could not be applied")
        self.reason = reason
