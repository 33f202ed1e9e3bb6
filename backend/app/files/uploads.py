"""
File protocol service: upload authorization, registration, partial updates and
download resolution for attachment items.

Round-trips seen by a client:

1. negotiate  -- POST file metadata, get {exists: 1} or a single-use upload ticket
2. transfer   -- POST the bytes to the object store URL from the ticket
3. register   -- POST upload=<uploadKey>, item now points at the new blob

Every mutating call must carry If-None-Match: * or If-Match: <current md5>.
"""

import base64
import binascii
import hashlib
import logging
import re
import secrets
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import quote

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.jwt import create_storage_token
from app.config import get_settings
from app.files.errors import BadRequest, NotFound, PatchFailed, PreconditionFailed, PreconditionRequired
from app.files.layout import HASH_ONLY, BlobLocation, locate_blob
from app.files.models import StorageFile, StorageFileItem, StorageUpload
from app.files.patching import PatchError, apply_patch as apply_binary_patch
from app.files.quota import release_bytes, reserve_bytes
from app.items.models import IMPORTED_LINK_MODES, Item
from app.items.service import bump_version
from app.objectstore.storage import BlobStore
from app.users.models import Library, User

log = logging.getLogger(__name__)

MD5_PATTERN = re.compile(r"^[a-f0-9]{32}$")
ZIP_CONTENT_TYPE = "application/zip"
# mtime values below this are seconds from older clients; stored values are milliseconds
_MTIME_SECONDS_CEILING = 10**11

MODE_DOWNLOAD = "download"
MODE_VIEW = "view"


@dataclass(frozen=True)
class FileParams:
    """Parsed authorization request. hash/filename/size describe the stored blob (the zip for zip uploads)."""

    hash: str
    filename: str
    size: int
    mtime: int
    content_type: str
    charset: str
    zip: bool
    item_hash: str
    item_filename: str
    params_mode: bool


@dataclass(frozen=True)
class Precondition:
    """MUST_NOT_EXIST (If-None-Match: *) or MUST_MATCH (If-Match: <md5>)."""

    kind: str
    hash: Optional[str] = None


MUST_NOT_EXIST = "must_not_exist"
MUST_MATCH = "must_match"


@dataclass
class NegotiationResult:
    """Either exists (file already stored, item updated) or a ticket to upload."""

    exists: bool
    version: Optional[int] = None
    ticket: Dict[str, Any] = field(default_factory=dict)
    # Legacy blob to copy to the hash-only key after the response
    promote: Optional[BlobLocation] = None


@dataclass(frozen=True)
class DownloadTarget:
    url: str
    key: str
    legacy: bool


def _now() -> int:
    return int(time.time())


def _field(form: Mapping[str, Any], name: str) -> Optional[str]:
    value = form.get(name)
    if value is None or not isinstance(value, str):
        return None
    return value


def _parse_int(form: Mapping[str, Any], name: str) -> Optional[int]:
    value = _field(form, name)
    if value is None or not value.strip().isdigit():
        return None
    return int(value.strip())


def normalize_mtime(mtime: int) -> int:
    """Return mtime in milliseconds. Values that can only be seconds are converted."""
    if mtime < _MTIME_SECONDS_CEILING:
        log.debug("mtime %d looks like seconds; converting to milliseconds", mtime)
        return mtime * 1000
    return mtime


def parse_file_params(form: Mapping[str, Any]) -> FileParams:
    """Validate authorization fields. Raises BadRequest naming the first bad field."""
    md5 = (_field(form, "md5") or "").strip().lower()
    if not md5:
        raise BadRequest("MD5 hash not provided")
    if not MD5_PATTERN.match(md5):
        raise BadRequest("Invalid MD5 hash")
    filename = (_field(form, "filename") or "").strip()
    if not filename:
        raise BadRequest("File name not provided")
    if "/" in filename or "\\" in filename:
        raise BadRequest("Invalid file name")
    size = _parse_int(form, "filesize")
    if size is None:
        raise BadRequest("File size not provided")
    mtime = _parse_int(form, "mtime")
    if mtime is None:
        raise BadRequest("File modification time not provided")
    content_type = (_field(form, "contentType") or "").strip()
    charset = (_field(form, "charset") or "").strip()
    is_zip = _field(form, "zip") == "1"
    params_mode = _field(form, "params") == "1"

    if is_zip:
        zip_md5 = (_field(form, "zipMD5") or "").strip().lower()
        zip_filename = (_field(form, "zipFilename") or "").strip()
        if not zip_md5:
            raise BadRequest("ZIP MD5 hash not provided")
        if not MD5_PATTERN.match(zip_md5):
            raise BadRequest("Invalid ZIP MD5 hash")
        if not zip_filename or "/" in zip_filename or "\\" in zip_filename:
            raise BadRequest("ZIP file name not provided")
        return FileParams(
            hash=zip_md5, filename=zip_filename, size=size, mtime=normalize_mtime(mtime),
            content_type=content_type, charset=charset, zip=True,
            item_hash=md5, item_filename=filename, params_mode=params_mode,
        )
    return FileParams(
        hash=md5, filename=filename, size=size, mtime=normalize_mtime(mtime),
        content_type=content_type, charset=charset, zip=False,
        item_hash=md5, item_filename=filename, params_mode=params_mode,
    )


def parse_precondition(if_match: Optional[str], if_none_match: Optional[str]) -> Precondition:
    """Map conditional headers to a Precondition. Absence of both is PreconditionRequired."""
    if if_match is not None and if_none_match is not None:
        raise BadRequest("Cannot specify both If-Match and If-None-Match")
    if if_none_match is not None:
        if if_none_match.strip() != "*":
            raise BadRequest("Invalid If-None-Match value")
        return Precondition(MUST_NOT_EXIST)
    if if_match is not None:
        value = if_match.strip().strip('"').lower()
        if not MD5_PATTERN.match(value):
            raise BadRequest("Invalid If-Match value")
        return Precondition(MUST_MATCH, value)
    raise PreconditionRequired("If-Match/If-None-Match header not provided")


def check_precondition(precondition: Precondition, current_hash: Optional[str]) -> None:
    """Compare against the item's current file hash (None = no file)."""
    if precondition.kind == MUST_NOT_EXIST and current_hash is not None:
        raise PreconditionFailed("If-None-Match: * set but file exists")
    if precondition.kind == MUST_MATCH and precondition.hash != current_hash:
        raise PreconditionFailed("ETag does not match current version of file")


async def get_current_file(
    session: AsyncSession, item: Item
) -> Optional[Tuple[StorageFileItem, StorageFile]]:
    """Return the item's file association and blob identity, or None if it has no file."""
    assoc = await session.get(StorageFileItem, item.id)
    if assoc is None:
        return None
    storage_file = await session.get(StorageFile, assoc.storage_file_id)
    if storage_file is None:
        return None
    return assoc, storage_file


async def get_current_hash(session: AsyncSession, item: Item) -> Optional[str]:
    """md5 of the item's current file, or None when no file is associated."""
    current = await get_current_file(session, item)
    return item.md5 if current else None


def require_imported(item: Item) -> None:
    if item.link_mode not in IMPORTED_LINK_MODES:
        raise BadRequest("Cannot upload file to linked attachment")


async def purge_expired_uploads(session: AsyncSession, now: Optional[int] = None) -> int:
    """Delete expired tickets, releasing reservations of the unconsumed ones."""
    now = _now() if now is None else now
    result = await session.execute(
        select(StorageUpload).where(StorageUpload.expires_at < now)
    )
    expired = result.scalars().all()
    for upload in expired:
        if upload.consumed_at is None:
            await release_bytes(session, upload.owner_id, upload.reserved_bytes)
    if expired:
        await session.execute(delete(StorageUpload).where(StorageUpload.expires_at < now))
        log.info("purged %d expired upload tickets", len(expired))
    return len(expired)


async def _known_filenames(session: AsyncSession, hash_: str, is_zip: bool) -> list:
    result = await session.execute(
        select(StorageFile.filename).where(StorageFile.hash == hash_, StorageFile.zip == is_zip)
    )
    return [row[0] for row in result.all()]


async def find_existing_blob(
    session: AsyncSession, store: BlobStore, hash_: str, filename: str, size: int, is_zip: bool
) -> Optional[BlobLocation]:
    """Blob with this hash and size under either layout, or None."""
    filenames = [filename] + await _known_filenames(session, hash_, is_zip)
    location = locate_blob(store, hash_, filenames)
    if location is None:
        return None
    if store.size(location.key) != size:
        log.warning("stored blob size mismatch key=%s expected=%d", location.key, size)
        return None
    return location


async def _get_or_create_storage_file(
    session: AsyncSession, hash_: str, filename: str, size: int, is_zip: bool
) -> StorageFile:
    result = await session.execute(
        select(StorageFile).where(
            StorageFile.hash == hash_, StorageFile.filename == filename, StorageFile.zip == is_zip
        )
    )
    storage_file = result.scalar_one_or_none()
    if storage_file is None:
        storage_file = StorageFile(hash=hash_, filename=filename, size=size, zip=is_zip, created_at=_now())
        session.add(storage_file)
        await session.flush()
    return storage_file


async def commit_file(
    session: AsyncSession,
    library: Library,
    item: Item,
    *,
    hash_: str,
    filename: str,
    size: int,
    is_zip: bool,
    item_hash: str,
    item_filename: str,
    mtime: int,
    content_type: str,
    charset: str,
    expected_version: int,
) -> int:
    """
    Make the blob the item's current file. The new bytes are already reserved;
    the previous file's bytes are released. Returns the new item version.
    expected_version is the item version the precondition was checked against;
    if the item moved on since, nothing is committed and PreconditionFailed is raised.
    """
    storage_file = await _get_or_create_storage_file(session, hash_, filename, size, is_zip)
    assoc = await session.get(StorageFileItem, item.id)
    if assoc is not None:
        await release_bytes(session, library.owner_id, assoc.size)
        assoc.storage_file_id = storage_file.id
        assoc.mtime = mtime
        assoc.size = size
    else:
        session.add(StorageFileItem(item_id=item.id, storage_file_id=storage_file.id, mtime=mtime, size=size))
    item.md5 = item_hash
    item.filename = item_filename
    item.mtime = mtime
    if content_type:
        item.content_type = content_type
        item.charset = charset
    version = await bump_version(session, library, item, expected_version=expected_version)
    library.last_storage_sync = _now()
    await session.flush()
    log.info(
        "commit_file library=%s key=%s hash=%s size=%d version=%d",
        library.id, item.key, hash_, size, version,
    )
    return version


def _content_md5(hash_: str) -> str:
    return base64.b64encode(binascii.unhexlify(hash_)).decode("ascii")


def build_ticket(params: FileParams, upload_key: str) -> Dict[str, Any]:
    """
    Ticket JSON. With params=1 the client assembles the multipart body from 'params';
    otherwise the body is prefix + file + suffix sent with 'contentType'.
    """
    settings = get_settings()
    object_key = HASH_ONLY.key(params.hash, params.filename)
    token = create_storage_token(
        "upload",
        {"key": object_key, "md5": params.hash, "size": params.size},
        settings.upload_ticket_ttl_seconds,
    )
    url = f"{settings.public_base_url}/storage/upload"
    form = {"key": object_key, "token": token, "Content-MD5": _content_md5(params.hash)}
    if params.params_mode:
        return {"url": url, "params": form, "uploadKey": upload_key}
    boundary = "-" * 27 + hashlib.md5(uuid.uuid4().bytes).hexdigest()
    prefix = ""
    for name, value in form.items():
        prefix += (
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="{name}"\r\n\r\n'
            f"{value}\r\n"
        )
    prefix += (
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="file"; filename="{params.hash}"\r\n'
        "Content-Type: application/octet-stream\r\n\r\n"
    )
    suffix = f"\r\n--{boundary}--"
    return {
        "url": url,
        "contentType": f"multipart/form-data; boundary={boundary}",
        "prefix": prefix,
        "suffix": suffix,
        "uploadKey": upload_key,
    }


async def negotiate(
    session: AsyncSession,
    store: BlobStore,
    library: Library,
    item: Item,
    form: Mapping[str, Any],
    if_match: Optional[str],
    if_none_match: Optional[str],
) -> NegotiationResult:
    """
    Upload authorization. Order: attachment kind, required fields, preconditions,
    quota, existing blob, new ticket.
    """
    require_imported(item)
    params = parse_file_params(form)
    precondition = parse_precondition(if_match, if_none_match)
    seen_version = item.version
    check_precondition(precondition, await get_current_hash(session, item))

    await purge_expired_uploads(session)
    owner = await session.get(User, library.owner_id)
    if owner is None:
        raise NotFound("Library owner not found")
    # Always attribute the new bytes, even when an identical blob is already stored
    await reserve_bytes(session, owner, params.size)

    location = await find_existing_blob(session, store, params.hash, params.filename, params.size, params.zip)
    if location is not None:
        version = await commit_file(
            session, library, item,
            hash_=params.hash, filename=params.filename, size=params.size, is_zip=params.zip,
            item_hash=params.item_hash, item_filename=params.item_filename,
            mtime=params.mtime, content_type=params.content_type, charset=params.charset,
            expected_version=seen_version,
        )
        promote = location if location.is_legacy and location.filename != params.filename else None
        log.info(
            "negotiate exists library=%s key=%s hash=%s legacy=%s promote=%s",
            library.id, item.key, params.hash, location.is_legacy, promote is not None,
        )
        return NegotiationResult(exists=True, version=version, promote=promote)

    now = _now()
    upload_key = secrets.token_hex(16)
    session.add(StorageUpload(
        upload_key=upload_key,
        item_id=item.id,
        owner_id=owner.id,
        hash=params.hash,
        filename=params.filename,
        size=params.size,
        zip=params.zip,
        item_hash=params.item_hash,
        item_filename=params.item_filename,
        mtime=params.mtime,
        content_type=params.content_type,
        charset=params.charset,
        reserved_bytes=params.size,
        created_at=now,
        expires_at=now + get_settings().upload_ticket_ttl_seconds,
    ))
    await session.flush()
    log.info(
        "negotiate ticket library=%s key=%s hash=%s size=%d params=%s",
        library.id, item.key, params.hash, params.size, params.params_mode,
    )
    return NegotiationResult(exists=False, ticket=build_ticket(params, upload_key))


async def _claim_upload(
    session: AsyncSession,
    item: Item,
    upload_key: str,
    precondition: Precondition,
) -> Tuple[StorageUpload, Optional[int], int]:
    """
    Look up the ticket for item and check the precondition.
    Returns (upload, replay_version, seen_version); replay_version is set when the ticket
    was already consumed and its file is still current, so the caller can answer without
    changes. seen_version is the item version the precondition was checked against.
    """
    upload = await session.get(StorageUpload, upload_key) if upload_key else None
    if upload is None or upload.item_id != item.id:
        raise BadRequest("Upload key not found")
    seen_version = item.version
    current_hash = await get_current_hash(session, item)
    if upload.consumed_at is not None:
        current = await get_current_file(session, item)
        if current and current[1].hash == upload.hash and current_hash == upload.item_hash:
            log.info("register replay key=%s upload=%s version=%d", item.key, upload_key, item.version)
            return upload, item.version, seen_version
        raise BadRequest("Upload key already used")
    if upload.expires_at < _now():
        raise BadRequest("Upload key expired")
    check_precondition(precondition, current_hash)
    return upload, None, seen_version


async def _consume_upload(session: AsyncSession, upload: StorageUpload) -> None:
    """Compare-and-swap: only one registration can consume a ticket."""
    result = await session.execute(
        update(StorageUpload)
        .where(StorageUpload.upload_key == upload.upload_key, StorageUpload.consumed_at.is_(None))
        .values(consumed_at=_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise BadRequest("Upload key already used")


async def _commit_upload(
    session: AsyncSession, library: Library, item: Item, upload: StorageUpload, seen_version: int
) -> int:
    await _consume_upload(session, upload)
    return await commit_file(
        session, library, item,
        hash_=upload.hash, filename=upload.filename, size=upload.size, is_zip=upload.zip,
        item_hash=upload.item_hash, item_filename=upload.item_filename,
        mtime=upload.mtime, content_type=upload.content_type, charset=upload.charset,
        expected_version=seen_version,
    )


async def register(
    session: AsyncSession,
    store: BlobStore,
    library: Library,
    item: Item,
    upload_key: str,
    if_match: Optional[str],
    if_none_match: Optional[str],
) -> int:
    """Registration after the object-store transfer. Returns the item version."""
    precondition = parse_precondition(if_match, if_none_match)
    upload, replay_version, seen_version = await _claim_upload(session, item, upload_key, precondition)
    if replay_version is not None:
        return replay_version
    location = locate_blob(store, upload.hash, [upload.filename])
    if location is None:
        raise BadRequest("File not found in storage")
    if store.size(location.key) != upload.size:
        raise BadRequest("Stored file size does not match")
    return await _commit_upload(session, library, item, upload, seen_version)


async def _read_current_blob(session: AsyncSession, store: BlobStore, item: Item) -> bytes:
    current = await get_current_file(session, item)
    if current is None:
        raise PatchFailed("no current file")
    location = await _locate_item_blob(session, store, item, current[1])
    if location is None:
        raise PatchFailed("current file missing from storage")
    return store.read(location.key)


async def apply_patch(
    session: AsyncSession,
    store: BlobStore,
    library: Library,
    item: Item,
    upload_key: str,
    algorithm: str,
    patch: bytes,
    if_match: Optional[str],
    if_none_match: Optional[str],
) -> int:
    """
    Partial update: rebuild the new blob from the current one and a binary patch.
    Unknown algorithms, failing patches and digest mismatches all surface as
    PatchFailed and commit nothing.
    """
    if if_none_match is not None:
        raise BadRequest("If-None-Match cannot be used with partial uploads")
    precondition = parse_precondition(if_match, None)
    upload, replay_version, seen_version = await _claim_upload(session, item, upload_key, precondition)
    if replay_version is not None:
        return replay_version
    old = await _read_current_blob(session, store, item)
    try:
        new = apply_binary_patch(algorithm, old, patch)
    except PatchError as e:
        log.warning("apply_patch failed key=%s algorithm=%s: %s", item.key, algorithm, e)
        raise PatchFailed(str(e)) from e
    if len(new) != upload.size or hashlib.md5(new).hexdigest() != upload.hash:
        log.warning(
            "apply_patch digest mismatch key=%s algorithm=%s expected=%s", item.key, algorithm, upload.hash
        )
        raise PatchFailed("reconstructed file does not match")
    store.write(HASH_ONLY.key(upload.hash, upload.filename), new)
    return await _commit_upload(session, library, item, upload, seen_version)


async def _locate_item_blob(
    session: AsyncSession, store: BlobStore, item: Item, storage_file: StorageFile
) -> Optional[BlobLocation]:
    if storage_file.zip:
        filenames = [storage_file.filename]
    else:
        filenames = [item.filename or "", storage_file.filename]
    filenames += await _known_filenames(session, storage_file.hash, storage_file.zip)
    return locate_blob(store, storage_file.hash, filenames)


def served_content_type(item: Item, storage_file: StorageFile) -> str:
    """Content type the object store reports: the archive type for zip-backed files."""
    if storage_file.zip:
        return ZIP_CONTENT_TYPE
    if item.content_type and item.charset:
        return f"{item.content_type}; charset={item.charset}"
    return item.content_type or "application/octet-stream"


async def resolve_download(
    session: AsyncSession, store: BlobStore, item: Item, mode: str = MODE_DOWNLOAD
) -> DownloadTarget:
    """Signed object-store URL for the item's current file. NotFound when there is none."""
    if item.link_mode not in IMPORTED_LINK_MODES:
        raise NotFound("Not found")
    current = await get_current_file(session, item)
    if current is None:
        raise NotFound("File not found")
    _, storage_file = current
    location = await _locate_item_blob(session, store, item, storage_file)
    if location is None:
        log.warning("resolve_download: associated blob missing key=%s hash=%s", item.key, storage_file.hash)
        raise NotFound("File not found")

    settings = get_settings()
    filename = item.filename or storage_file.filename
    disposition = "inline" if mode == MODE_VIEW else "attachment"
    token = create_storage_token(
        "download",
        {
            "key": location.key,
            "ct": served_content_type(item, storage_file),
            "cd": f"{disposition}; filename*=UTF-8''{quote(filename, safe='')}",
        },
        settings.download_url_ttl_seconds,
    )
    if mode == MODE_VIEW:
        url = f"{settings.view_base_url}/storage/view/{token}/{quote(filename, safe='')}"
    else:
        url = f"{settings.public_base_url}/storage/object/{quote(location.key, safe='/')}?token={token}"
    return DownloadTarget(url=url, key=location.key, legacy=location.is_legacy)


async def remove_storage_files(session: AsyncSession, library: Library) -> int:
    """Dissociate every file in library and release their bytes. Returns the number removed."""
    result = await session.execute(
        select(StorageFileItem).join(Item, Item.id == StorageFileItem.item_id).where(Item.library_id == library.id)
    )
    rows = result.scalars().all()
    total = sum(row.size for row in rows)
    for row in rows:
        await session.delete(row)
    await release_bytes(session, library.owner_id, total)
    library.last_storage_sync = None
    await session.flush()
    log.info("remove_storage_files library=%s files=%d bytes=%d", library.id, len(rows), total)
    return len(rows)
