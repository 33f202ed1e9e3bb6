"""Value types exchanged with the file API: descriptors, tickets, preconditions, receipts."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

MUST_NOT_EXIST = "must_not_exist"
MUST_MATCH = "must_match"
NO_PRECONDITION = "none"

MODE_DOWNLOAD = "download"
MODE_VIEW = "view"


@dataclass(frozen=True)
class ItemRef:
    """Attachment item addressed as {users|groups}/{id}/items/{key}."""

    library_type: str
    library_id: int
    key: str

    @property
    def path(self) -> str:
        return f"{self.library_type}/{self.library_id}/items/{self.key}"


@dataclass(frozen=True)
class FileDescriptor:
    """
    A local file to store. hash is the md5 of the unencoded content; mtime is
    milliseconds since epoch.
    """

    hash: str
    size: int
    filename: str
    mtime: int
    content_type: str = "application/octet-stream"
    charset: str = ""

    @property
    def transfer_hash(self) -> str:
        """md5 of the bytes actually sent to the object store."""
        return self.hash

    def form_fields(self) -> Dict[str, str]:
        fields = {
            "md5": self.hash,
            "filename": self.filename,
            "filesize": str(self.size),
            "mtime": str(self.mtime),
            "contentType": self.content_type,
        }
        if self.charset:
            fields["charset"] = self.charset
        return fields


@dataclass(frozen=True)
class CompressedFileDescriptor:
    """
    A web page or resource bundle stored as a zip container. hash/filename identify
    the logical file; zip_hash/zip_filename/zip_size describe what is transferred.
    """

    hash: str
    filename: str
    mtime: int
    zip_hash: str
    zip_filename: str
    zip_size: int
    content_type: str = "text/html"
    charset: str = ""

    @property
    def size(self) -> int:
        return self.zip_size

    @property
    def transfer_hash(self) -> str:
        return self.zip_hash

    def form_fields(self) -> Dict[str, str]:
        fields = {
            "md5": self.hash,
            "filename": self.filename,
            "filesize": str(self.zip_size),
            "mtime": str(self.mtime),
            "contentType": self.content_type,
            "zip": "1",
            "zipMD5": self.zip_hash,
            "zipFilename": self.zip_filename,
        }
        if self.charset:
            fields["charset"] = self.charset
        return fields


@dataclass(frozen=True)
class UploadTicket:
    """
    Single-use authorization to write one blob. Either prefix/suffix (body is
    prefix + bytes + suffix sent as content_type) or params (client builds multipart).
    """

    url: str
    upload_key: str
    content_type: Optional[str] = None
    prefix: Optional[str] = None
    suffix: Optional[str] = None
    params: Optional[Dict[str, str]] = None

    @property
    def is_params_mode(self) -> bool:
        return self.params is not None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "UploadTicket":
        return cls(
            url=data["url"],
            upload_key=data["uploadKey"],
            content_type=data.get("contentType"),
            prefix=data.get("prefix"),
            suffix=data.get("suffix"),
            params=dict(data["params"]) if data.get("params") is not None else None,
        )


@dataclass(frozen=True)
class Precondition:
    """Expected prior state of the item's file, sent as a conditional header."""

    kind: str
    hash: Optional[str] = None

    @classmethod
    def must_not_exist(cls) -> "Precondition":
        return cls(MUST_NOT_EXIST)

    @classmethod
    def must_match(cls, hash_: str) -> "Precondition":
        return cls(MUST_MATCH, hash_)

    @classmethod
    def none(cls) -> "Precondition":
        return cls(NO_PRECONDITION)

    def headers(self) -> Dict[str, str]:
        if self.kind == MUST_NOT_EXIST:
            return {"If-None-Match": "*"}
        if self.kind == MUST_MATCH and self.hash:
            return {"If-Match": self.hash}
        return {}


@dataclass(frozen=True)
class RegistrationReceipt:
    """Outcome of an upload. exists=True means the server already had the blob (no transfer)."""

    version: Optional[int]
    exists: bool = False
    patched: bool = False


@dataclass(frozen=True)
class DownloadTarget:
    url: str
    mode: str = MODE_DOWNLOAD
    headers: Dict[str, str] = field(default_factory=dict)
