"""Upload orchestration: negotiate, transfer, register, with diff and retry handling.

Sequence per upload:

1. negotiate the descriptor with a precondition (If-None-Match: * or If-Match: <md5>)
2. transfer the bytes to the object store URL from the ticket
3. register the ticket's upload key under the same precondition

Only transport failures (timeouts, dropped connections) are retried, and then the
whole sequence is redone with a fresh ticket since upload keys are single-use.
Quota, precondition and digest failures are raised to the caller unchanged.
"""

import logging
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, Union

import bsdiff4

from attachbox.api.client import AttachBoxAPI
from attachbox.config import get_max_attempts
from attachbox.errors import PatchFailed, TransportError
from attachbox.fingerprint import describe_bytes, describe_file, describe_zip, md5_bytes
from attachbox.models import (
    MODE_DOWNLOAD,
    CompressedFileDescriptor,
    FileDescriptor,
    ItemRef,
    Precondition,
    RegistrationReceipt,
    UploadTicket,
)

log = logging.getLogger(__name__)

PATCH_ALGORITHM = "bsdiff"
# Base delay between attempts (seconds); grows linearly: 10s, 20s, ...
RETRY_DELAY = 10.0

Descriptor = Union[FileDescriptor, CompressedFileDescriptor]


class UploadOrchestrator:
    """
    Drives uploads for attachment items through AttachBoxAPI.
    At most one negotiation per (item, hash) is in flight; uploads of different
    items or hashes run independently and may be called from several threads.
    """

    def __init__(
        self,
        api: AttachBoxAPI,
        max_attempts: Optional[int] = None,
        retry_delay: float = RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._api = api
        self._max_attempts = max_attempts or get_max_attempts()
        self._retry_delay = retry_delay
        self._sleep = sleep
        # (item path, hash) -> [lock, holders and waiters]
        self._locks: Dict[Tuple[str, str], List[Any]] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _holding(self, item: ItemRef, hash_: str) -> Iterator[None]:
        """Hold the (item, hash) lock. The entry is dropped once no thread holds or waits for it."""
        key = (item.path, hash_)
        with self._locks_guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def _with_retries(self, what: str, item: ItemRef, attempt_once: Callable[[], RegistrationReceipt]) -> RegistrationReceipt:
        for attempt in range(1, self._max_attempts + 1):
            try:
                return attempt_once()
            except TransportError as e:
                if attempt >= self._max_attempts:
                    log.error("%s %s: giving up after %d attempts: %s", what, item.path, attempt, e)
                    raise
                delay = self._retry_delay * attempt
                log.warning(
                    "%s %s: %s, retry in %.0fs (attempt %d/%d)",
                    what, item.path, e, delay, attempt, self._max_attempts,
                )
                self._sleep(delay)
        raise AssertionError("unreachable")

    def _transfer_and_register(
        self, item: ItemRef, ticket: UploadTicket, descriptor: Descriptor, data: bytes, precondition: Precondition
    ) -> RegistrationReceipt:
        self._api.upload_to_store(ticket, data, descriptor.transfer_hash)
        return self._api.register_upload(item, ticket.upload_key, precondition)

    def _upload_once(
        self, item: ItemRef, descriptor: Descriptor, data: bytes, precondition: Precondition, params_mode: bool
    ) -> RegistrationReceipt:
        result = self._api.authorize_upload(item, descriptor, precondition, params_mode=params_mode)
        if isinstance(result, RegistrationReceipt):
            return result
        return self._transfer_and_register(item, result, descriptor, data, precondition)

    def upload(
        self,
        item: ItemRef,
        descriptor: Descriptor,
        data: bytes,
        precondition: Optional[Precondition] = None,
        params_mode: bool = False,
    ) -> RegistrationReceipt:
        """
        Store data as the item's file. data must be the bytes described by
        descriptor (the zip container for compressed descriptors). The default
        precondition is must_not_exist.
        """
        if len(data) != descriptor.size:
            raise ValueError(f"Descriptor size {descriptor.size} does not match data ({len(data)} bytes)")
        precondition = precondition or Precondition.must_not_exist()
        with self._holding(item, descriptor.hash):
            receipt = self._with_retries(
                "upload", item, lambda: self._upload_once(item, descriptor, data, precondition, params_mode)
            )
        log.info(
            "upload %s hash=%s exists=%s version=%s",
            item.path, descriptor.hash, receipt.exists, receipt.version,
        )
        return receipt

    def upload_bytes(
        self,
        item: ItemRef,
        data: bytes,
        filename: str,
        mtime: Optional[int] = None,
        content_type: Optional[str] = None,
        charset: str = "",
        precondition: Optional[Precondition] = None,
        params_mode: bool = False,
    ) -> RegistrationReceipt:
        descriptor = describe_bytes(data, filename, mtime=mtime, content_type=content_type, charset=charset)
        return self.upload(item, descriptor, data, precondition, params_mode)

    def upload_file(
        self,
        item: ItemRef,
        path: Path,
        content_type: Optional[str] = None,
        charset: str = "",
        precondition: Optional[Precondition] = None,
        params_mode: bool = False,
    ) -> RegistrationReceipt:
        """Upload a file from disk; the descriptor is computed from its content and mtime."""
        path = Path(path)
        descriptor = describe_file(path, content_type=content_type, charset=charset)
        return self.upload(item, descriptor, path.read_bytes(), precondition, params_mode)

    def upload_compressed(
        self,
        item: ItemRef,
        files: Mapping[str, bytes],
        filename: str,
        mtime: Optional[int] = None,
        content_type: Optional[str] = None,
        charset: str = "",
        precondition: Optional[Precondition] = None,
    ) -> RegistrationReceipt:
        """Upload a page bundle (main file plus resources) as a zip container."""
        descriptor, zip_data = describe_zip(
            files, filename, f"{item.key}.zip", mtime=mtime, content_type=content_type, charset=charset
        )
        return self.upload(item, descriptor, zip_data, precondition)

    def _patch_once(
        self, item: ItemRef, descriptor: FileDescriptor, old: bytes, new: bytes, prior_hash: str
    ) -> RegistrationReceipt:
        precondition = Precondition.must_match(prior_hash)
        result = self._api.authorize_upload(item, descriptor, precondition)
        if isinstance(result, RegistrationReceipt):
            return result
        patch = bsdiff4.diff(old, new)
        try:
            return self._api.upload_patch(item, result.upload_key, PATCH_ALGORITHM, patch, prior_hash)
        except PatchFailed as e:
            # The ticket was not consumed; send the whole file under it instead
            log.warning("upload_patch %s failed (%s); falling back to full upload", item.path, e)
            return self._transfer_and_register(item, result, descriptor, new, precondition)

    def upload_patch(
        self,
        item: ItemRef,
        old: bytes,
        new: bytes,
        filename: str,
        mtime: Optional[int] = None,
        content_type: Optional[str] = None,
        charset: str = "",
    ) -> RegistrationReceipt:
        """
        Replace the item's file (currently old) with new by sending a bsdiff patch.
        If the server cannot apply it, the full file is uploaded instead.
        """
        prior_hash = md5_bytes(old)
        descriptor = describe_bytes(new, filename, mtime=mtime, content_type=content_type, charset=charset)
        with self._holding(item, descriptor.hash):
            receipt = self._with_retries(
                "upload_patch", item, lambda: self._patch_once(item, descriptor, old, new, prior_hash)
            )
        log.info(
            "upload_patch %s %s -> %s patched=%s version=%s",
            item.path, prior_hash, descriptor.hash, receipt.patched, receipt.version,
        )
        return receipt

    def download(self, item: ItemRef, mode: str = MODE_DOWNLOAD) -> bytes:
        """Resolve the item's file and fetch it."""
        target = self._api.get_file_location(item, mode)
        return self._api.download(target)
