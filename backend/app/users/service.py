"""User and library service: create users/groups, resolve libraries, check write access."""

import logging
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.users.models import LIBRARY_GROUP, LIBRARY_USER, GroupMember, Library, User

log = logging.getLogger(__name__)


async def get_user_by_username(session: AsyncSession, username: str) -> Optional[User]:
    """Return user by username or None."""
    result = await session.execute(select(User).where(User.username == username))
    return result.scalar_one_or_none()


async def get_library(session: AsyncSession, kind: str, external_id: int) -> Optional[Library]:
    """Return the user or group library with the given URL id, or None."""
    result = await session.execute(
        select(Library).where(Library.kind == kind, Library.external_id == external_id)
    )
    return result.scalar_one_or_none()


async def create_user(
    session: AsyncSession,
    username: str,
    user_id: Optional[int] = None,
    is_admin: bool = False,
    storage_quota_mb: Optional[int] = None,
) -> User:
    """
    Create a user together with its user library.
    Caller must commit session.
    """
    existing = await get_user_by_username(session, username)
    if existing:
        raise ValueError(f"User already exists: {username}")
    if user_id is None:
        result = await session.execute(select(func.max(User.id)))
        user_id = (result.scalar() or 0) + 1
    user = User(
        id=user_id,
        username=username,
        is_admin=is_admin,
        storage_quota_mb=storage_quota_mb,
        storage_expiration=0,
        storage_used_bytes=0,
    )
    session.add(user)
    await session.flush()
    session.add(Library(kind=LIBRARY_USER, external_id=user.id, owner_id=user.id, version=0))
    await session.flush()
    log.info("create_user id=%s username=%s", user.id, username)
    return user


async def create_group(
    session: AsyncSession,
    group_id: int,
    owner: User,
    members: Iterable[User] = (),
) -> Library:
    """Create a group library owned by owner; owner and members get write access."""
    if await get_library(session, LIBRARY_GROUP, group_id):
        raise ValueError(f"Group already exists: {group_id}")
    library = Library(kind=LIBRARY_GROUP, external_id=group_id, owner_id=owner.id, version=0)
    session.add(library)
    await session.flush()
    member_ids = {owner.id} | {m.id for m in members}
    for uid in sorted(member_ids):
        session.add(GroupMember(library_id=library.id, user_id=uid))
    await session.flush()
    log.info("create_group id=%s owner=%s members=%d", group_id, owner.id, len(member_ids))
    return library


async def can_access(session: AsyncSession, user: User, library: Library) -> bool:
    """True if user may read and modify files in library (own user library or group membership)."""
    if library.kind == LIBRARY_USER:
        return library.owner_id == user.id
    row = await session.get(GroupMember, (library.id, user.id))
    return row is not None


async def ensure_admin_exists(session: AsyncSession) -> None:
    """
    If ATTACHBOX_ADMIN_USERNAME is set and no user exists with that name,
    create the first admin user.
    """
    settings = get_settings()
    if not settings.admin_username:
        return
    existing = await get_user_by_username(session, settings.admin_username)
    if existing:
        return
    log.info("Creating bootstrap admin user username=%s", settings.admin_username)
    await create_user(session, settings.admin_username, is_admin=True)
