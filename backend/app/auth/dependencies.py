"""FastAPI dependencies for auth and library access."""

import logging
from enum import Enum
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.jwt import get_subject_from_access
from app.db.session import get_db
from app.items.models import Item
from app.items.service import get_item
from app.users.models import LIBRARY_GROUP, LIBRARY_USER, Library, User
from app.users.service import can_access, get_library

security = HTTPBearer(auto_error=False)
log = logging.getLogger(__name__)


class LibraryType(str, Enum):
    users = "users"
    groups = "groups"


_LIBRARY_KINDS = {LibraryType.users: LIBRARY_USER, LibraryType.groups: LIBRARY_GROUP}


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    session: Annotated[AsyncSession, Depends(get_db)],
) -> User:
    """Resolve Bearer token (subject = user id) to the current user; 401 if invalid or missing."""
    if not credentials:
        log.debug("Request missing Bearer token")
        raise _unauthorized("Not authenticated")
    subject = get_subject_from_access(credentials.credentials)
    if not subject or not subject.isdigit():
        log.debug("Invalid or expired access token")
        raise _unauthorized("Invalid or expired token")
    user = await session.get(User, int(subject))
    if not user:
        log.warning("Token valid but user not found: id=%s", subject)
        raise _unauthorized("User not found")
    return user


async def get_current_admin(
    current_user: Annotated[User, Depends(get_current_user)],
) -> User:
    """Require an admin. Storage administration is hidden from everyone else (404, not 403)."""
    if not current_user.is_admin:
        log.warning("Non-admin user attempted storage admin: id=%s", current_user.id)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    return current_user


async def load_library(
    session: AsyncSession, user: User, library_type: LibraryType, library_id: int
) -> Library:
    """Library from the URL, or 404 if missing; 403 if user has no access."""
    library = await get_library(session, _LIBRARY_KINDS[library_type], library_id)
    if library is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Library not found")
    if not await can_access(session, user, library):
        log.warning("access denied user=%s library=%s/%s", user.id, library_type.value, library_id)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return library


async def load_item(session: AsyncSession, library: Library, key: str) -> Item:
    item = await get_item(session, library, key)
    if item is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Item not found")
    return item
