"""Storage quota: per-owner ceiling, atomic reservation and usage reporting."""

import logging
import re
import time
from typing import Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.files.errors import QuotaExceeded
from app.files.models import StorageFileItem
from app.items.models import Item
from app.users.models import LIBRARY_GROUP, LIBRARY_USER, Library, User

log = logging.getLogger(__name__)

# Numeric stand-in for 'unlimited' (1 TB in MB)
UNLIMITED_MB = 1000000
MB = 1024 * 1024

# Whole number of MB, or the word 'unlimited'
_QUOTA_PATTERN = re.compile(r"^\s*(\d+)\s*$|^\s*(unlimited)\s*$", re.IGNORECASE)


def parse_quota(value: Optional[str]) -> Optional[int]:
    """
    Parse a quota value from the admin API. Returns MB, UNLIMITED_MB for 'unlimited',
    or None if the value is invalid.
    """
    if value is None:
        return None
    m = _QUOTA_PATTERN.match(value)
    if not m:
        return None
    if m.group(2) is not None:
        return UNLIMITED_MB
    return int(m.group(1))


def get_effective_quota_mb(user: User, now: Optional[float] = None) -> int:
    """
    Effective quota for an owner: personal quota while it has not expired,
    otherwise the server default.
    """
    settings = get_settings()
    if user.storage_quota_mb is None:
        return settings.default_quota_mb
    now = time.time() if now is None else now
    if user.storage_expiration and user.storage_expiration < now:
        return settings.default_quota_mb
    return user.storage_quota_mb


async def reserve_bytes(session: AsyncSession, owner: User, size: int) -> None:
    """
    Attribute size new bytes to owner, or raise QuotaExceeded.
    Single conditional UPDATE: two concurrent reservations that jointly exceed
    the quota cannot both succeed.
    """
    quota_mb = get_effective_quota_mb(owner)
    limit = quota_mb * MB
    result = await session.execute(
        update(User)
        .where(User.id == owner.id, User.storage_used_bytes + size <= limit)
        .values(storage_used_bytes=User.storage_used_bytes + size)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        log.info("quota exceeded owner=%s quota_mb=%s size=%d", owner.id, quota_mb, size)
        raise QuotaExceeded(quota_mb, owner.id)
    log.debug("reserved owner=%s size=%d", owner.id, size)


async def release_bytes(session: AsyncSession, owner_id: int, size: int) -> None:
    """Remove size bytes from owner's usage (never below zero)."""
    if size <= 0:
        return
    await session.execute(
        update(User)
        .where(User.id == owner_id)
        .values(storage_used_bytes=func.max(User.storage_used_bytes - size, 0))
        .execution_options(synchronize_session=False)
    )
    log.debug("released owner=%s size=%d", owner_id, size)


async def get_used_bytes(session: AsyncSession, owner_id: int) -> int:
    """Current usage counter of owner, including live reservations."""
    result = await session.execute(select(User.storage_used_bytes).where(User.id == owner_id))
    return result.scalar() or 0


async def get_library_file_bytes(session: AsyncSession, library_id: int) -> int:
    """Bytes of files currently associated with items in library."""
    result = await session.execute(
        select(func.coalesce(func.sum(StorageFileItem.size), 0))
        .join(Item, Item.id == StorageFileItem.item_id)
        .where(Item.library_id == library_id)
    )
    return int(result.scalar() or 0)


async def get_usage_report(session: AsyncSession, user: User) -> Dict[str, object]:
    """Usage in MB: total counter, own library, and each group library the user owns."""
    result = await session.execute(select(Library).where(Library.owner_id == user.id))
    own = 0
    groups: List[Dict[str, object]] = []
    for library in result.scalars().all():
        used = await get_library_file_bytes(session, library.id)
        if library.kind == LIBRARY_USER:
            own = used
        elif library.kind == LIBRARY_GROUP:
            groups.append({"id": library.external_id, "usage": round(used / MB, 1)})
    total = await get_used_bytes(session, user.id)
    return {
        "total": round(total / MB, 1),
        "library": round(own / MB, 1),
        "groups": groups,
    }
