"""Attachment item service: create, look up, update metadata, bump versions."""

import logging
import re
import secrets
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.files.errors import PreconditionFailed
from app.files.models import StorageFileItem, StorageUpload
from app.files.quota import release_bytes
from app.items.models import LINK_MODES, AttachmentCreate, AttachmentUpdate, Item
from app.users.models import Library

log = logging.getLogger(__name__)

# Item keys: 8 chars from an alphabet without ambiguous characters
KEY_ALPHABET = "23456789ABCDEFGHIJKLMNPQRSTUVWXYZ"
MD5_PATTERN = re.compile(r"^[a-f0-9]{32}$")


def generate_key() -> str:
    return "".join(secrets.choice(KEY_ALPHABET) for _ in range(8))


async def bump_version(
    session: AsyncSession, library: Library, item: Item, expected_version: Optional[int] = None
) -> int:
    """
    Increment the library version atomically and stamp it on item. Returns the new version.
    With expected_version the item row is only stamped if it still carries that version;
    otherwise another writer got there first and PreconditionFailed is raised.
    """
    result = await session.execute(
        update(Library)
        .where(Library.id == library.id)
        .values(version=Library.version + 1)
        .returning(Library.version)
        .execution_options(synchronize_session=False)
    )
    version = result.scalar_one()
    if expected_version is not None:
        claimed = await session.execute(
            update(Item)
            .where(Item.id == item.id, Item.version == expected_version)
            .values(version=version)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            log.info("item changed concurrently key=%s expected_version=%d", item.key, expected_version)
            raise PreconditionFailed("File changed during upload")
    library.version = version
    item.version = version
    return version


async def get_item(session: AsyncSession, library: Library, key: str) -> Optional[Item]:
    """Return item by key within library, or None."""
    result = await session.execute(
        select(Item).where(Item.library_id == library.id, Item.key == key)
    )
    return result.scalar_one_or_none()


async def create_attachment(session: AsyncSession, library: Library, payload: AttachmentCreate) -> Item:
    """Create an attachment item without a file. Raises ValueError for an unknown link mode."""
    if payload.link_mode not in LINK_MODES:
        raise ValueError(f"Invalid linkMode {payload.link_mode!r}")
    item = Item(
        library_id=library.id,
        key=generate_key(),
        link_mode=payload.link_mode,
        title=payload.title,
        content_type=payload.content_type,
        charset=payload.charset,
        filename=payload.filename,
        in_publications=payload.in_publications,
        version=0,
    )
    session.add(item)
    await session.flush()
    await bump_version(session, library, item)
    log.info("create_attachment library=%s key=%s linkMode=%s", library.id, item.key, item.link_mode)
    return item


async def dissociate_file(session: AsyncSession, library: Library, item: Item) -> None:
    """
    Drop the item's file association and its live upload tickets, releasing their bytes
    from the owner. The blob itself stays in the object store.
    """
    assoc = await session.get(StorageFileItem, item.id)
    if assoc is not None:
        await release_bytes(session, library.owner_id, assoc.size)
        await session.delete(assoc)
    result = await session.execute(
        select(StorageUpload).where(
            StorageUpload.item_id == item.id, StorageUpload.consumed_at.is_(None)
        )
    )
    for upload in result.scalars().all():
        await release_bytes(session, upload.owner_id, upload.reserved_bytes)
    await session.execute(
        delete(StorageUpload).where(StorageUpload.item_id == item.id)
    )
    log.info("dissociate_file library=%s key=%s", library.id, item.key)


async def update_attachment(
    session: AsyncSession, library: Library, item: Item, payload: AttachmentUpdate
) -> Item:
    """
    Apply a metadata update. Changing md5, filename or mtime invalidates the
    stored file association immediately.
    """
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("md5") is not None:
        changes["md5"] = changes["md5"].lower()
        if not MD5_PATTERN.match(changes["md5"]):
            raise ValueError("Invalid md5")
    if changes.get("in_publications") is None:
        changes.pop("in_publications", None)
    invalidates = any(
        field in changes and changes[field] != getattr(item, field)
        for field in ("md5", "filename", "mtime")
    )
    for field, value in changes.items():
        if field in ("title", "content_type", "charset") and value is None:
            value = ""
        setattr(item, field, value)
    if invalidates:
        await dissociate_file(session, library, item)
    await bump_version(session, library, item)
    log.info(
        "update_attachment library=%s key=%s fields=%s invalidated=%s",
        library.id, item.key, sorted(changes), invalidates,
    )
    return item
