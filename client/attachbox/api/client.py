"""HTTP client for the AttachBox file API: one method per protocol round-trip."""

import base64
import binascii
import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional, Union

import httpx

from attachbox.auth.credentials import CredentialsStore
from attachbox.config import get_base_url, get_metadata_timeout
from attachbox.errors import NotFound, TransportError, error_from_response
from attachbox.models import (
    MODE_VIEW,
    CompressedFileDescriptor,
    DownloadTarget,
    FileDescriptor,
    ItemRef,
    Precondition,
    RegistrationReceipt,
    UploadTicket,
)
from attachbox.multipart import build_transfer_body

log = logging.getLogger(__name__)

MB = 1024 * 1024

Descriptor = Union[FileDescriptor, CompressedFileDescriptor]


def transfer_timeout(size: int) -> float:
    """Object store transfers: 10 min base + 60 sec per MB, cap 30 min."""
    return 600.0 + min(1200.0, size / MB * 60)


def content_md5(hash_: str) -> str:
    """Base64 Content-MD5 header value for a hex md5."""
    return base64.b64encode(binascii.unhexlify(hash_)).decode("ascii")


def _version(r: httpx.Response) -> Optional[int]:
    value = r.headers.get("Last-Modified-Version")
    if value is None or not str(value).isdigit():
        return None
    return int(value)


class AttachBoxAPI:
    """
    Client for the file API: authorize, transfer, register, patch and resolve
    downloads. client_factory(timeout=...) must return an httpx.Client-like
    context manager; it defaults to httpx.Client. Without api_token the stored
    token is used (ATTACHBOX_API_TOKEN or the keyring).
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        client_factory: Optional[Callable[..., Any]] = None,
        metadata_timeout: Optional[float] = None,
    ) -> None:
        self._base_url = (base_url or get_base_url()).rstrip("/")
        self._api_token = api_token if api_token is not None else CredentialsStore().get_token()
        self._client_factory = client_factory
        self._metadata_timeout = metadata_timeout or get_metadata_timeout()
        log.debug("API client base_url=%s", self._base_url)

    def _headers(self) -> Dict[str, str]:
        out = {"Accept": "application/json"}
        if self._api_token:
            out["Authorization"] = f"Bearer {self._api_token}"
        return out

    def set_api_token(self, token: Optional[str]) -> None:
        """Set or clear the API token."""
        self._api_token = token

    def set_base_url(self, base_url: str) -> None:
        self._base_url = (base_url or "").rstrip("/")
        log.debug("API client base_url updated to %s", self._base_url)

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    @contextmanager
    def _client(self, timeout: float) -> Iterator[Any]:
        """httpx client; timeouts and connection failures surface as TransportError."""
        factory = self._client_factory or httpx.Client
        try:
            with factory(timeout=timeout) as client:
                yield client
        except httpx.TimeoutException as e:
            raise TransportError(f"Timeout: {e}") from e
        except httpx.TransportError as e:
            raise TransportError(f"Transport failure: {e}") from e

    # Upload protocol

    def authorize_upload(
        self,
        item: ItemRef,
        descriptor: Descriptor,
        precondition: Precondition,
        params_mode: bool = False,
    ) -> Union[UploadTicket, RegistrationReceipt]:
        """
        POST items/{key}/file with the descriptor. Returns a ticket, or a receipt
        with exists=True when the server already has the content.
        """
        data = descriptor.form_fields()
        if params_mode:
            data["params"] = "1"
        log.debug("authorize_upload item=%s hash=%s size=%d", item.path, descriptor.hash, descriptor.size)
        with self._client(self._metadata_timeout) as client:
            r = client.post(
                self._url(f"{item.path}/file"),
                data=data,
                headers={**self._headers(), **precondition.headers()},
            )
        if r.status_code != 200:
            raise error_from_response(r)
        body = r.json()
        if body.get("exists"):
            version = _version(r)
            log.info("authorize_upload item=%s exists version=%s", item.path, version)
            return RegistrationReceipt(version=version, exists=True)
        return UploadTicket.from_json(body)

    def upload_to_store(self, ticket: UploadTicket, data: bytes, transfer_hash: str) -> None:
        """Send data to the object store URL from ticket. 201 is success."""
        body, content_type = build_transfer_body(ticket, data, filename=transfer_hash)
        log.debug("upload_to_store url=%s size=%d params=%s", ticket.url, len(data), ticket.is_params_mode)
        with self._client(transfer_timeout(len(data))) as client:
            r = client.post(
                ticket.url,
                content=body,
                headers={"Content-Type": content_type, "Content-MD5": content_md5(transfer_hash)},
            )
        if r.status_code != 201:
            raise error_from_response(r)

    def register_upload(self, item: ItemRef, upload_key: str, precondition: Precondition) -> RegistrationReceipt:
        """POST upload=<uploadKey>. Returns the new item version."""
        with self._client(self._metadata_timeout) as client:
            r = client.post(
                self._url(f"{item.path}/file"),
                data={"upload": upload_key},
                headers={**self._headers(), **precondition.headers()},
            )
        if r.status_code != 204:
            raise error_from_response(r)
        version = _version(r)
        log.info("register_upload item=%s version=%s", item.path, version)
        return RegistrationReceipt(version=version)

    def upload_patch(
        self, item: ItemRef, upload_key: str, algorithm: str, patch: bytes, prior_hash: str
    ) -> RegistrationReceipt:
        """PATCH items/{key}/file with a binary diff against the file with prior_hash."""
        with self._client(transfer_timeout(len(patch))) as client:
            r = client.patch(
                self._url(f"{item.path}/file"),
                params={"algorithm": algorithm, "upload": upload_key},
                content=patch,
                headers={**self._headers(), "If-Match": prior_hash, "Content-Type": "application/octet-stream"},
            )
        if r.status_code != 204:
            raise error_from_response(r)
        version = _version(r)
        log.info("upload_patch item=%s algorithm=%s version=%s", item.path, algorithm, version)
        return RegistrationReceipt(version=version, patched=True)

    # Downloads

    def get_file_location(self, item: ItemRef, mode: str = "download") -> DownloadTarget:
        """Resolve the item's file to a signed object-store URL (302 Location)."""
        path = f"{item.path}/file/view" if mode == MODE_VIEW else f"{item.path}/file"
        with self._client(self._metadata_timeout) as client:
            r = client.get(self._url(path), headers=self._headers(), follow_redirects=False)
        if r.status_code not in (301, 302, 303, 307):
            raise error_from_response(r)
        location = r.headers.get("Location")
        if not location:
            raise NotFound("Redirect without Location", r.status_code)
        return DownloadTarget(url=location, mode=mode)

    def download(self, target: DownloadTarget, size_hint: int = 0) -> bytes:
        """GET the signed URL. Returns the blob bytes."""
        with self._client(transfer_timeout(size_hint)) as client:
            r = client.get(target.url, headers=target.headers)
        if r.status_code != 200:
            raise error_from_response(r)
        return r.content

    # Item metadata

    def create_item(self, library_type: str, library_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        """POST {library}/items. Returns the item JSON (key, version, ...)."""
        with self._client(self._metadata_timeout) as client:
            r = client.post(
                self._url(f"{library_type}/{library_id}/items"),
                json=fields,
                headers=self._headers(),
            )
        if r.status_code != 201:
            raise error_from_response(r)
        return r.json()

    def get_item(self, item: ItemRef) -> Dict[str, Any]:
        with self._client(self._metadata_timeout) as client:
            r = client.get(self._url(item.path), headers=self._headers())
        if r.status_code != 200:
            raise error_from_response(r)
        return r.json()

    def update_item(self, item: ItemRef, fields: Dict[str, Any]) -> Dict[str, Any]:
        """PATCH item metadata. Changing md5, filename or mtime detaches the stored file."""
        with self._client(self._metadata_timeout) as client:
            r = client.patch(self._url(item.path), json=fields, headers=self._headers())
        if r.status_code != 200:
            raise error_from_response(r)
        return r.json()
