"""User routes: current user and per-user storage administration."""

import logging
import time
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import get_current_admin, get_current_user
from app.db.session import get_db
from app.files.quota import MB, UNLIMITED_MB, get_effective_quota_mb, get_used_bytes, get_usage_report, parse_quota
from app.limiter import ADMIN_LIMIT, SYNC_LIMIT, limiter
from app.users.models import StorageAdminResponse, StorageUsage, User, UserResponse

router = APIRouter(prefix="/users", tags=["users"])
log = logging.getLogger(__name__)

# Expiration may lag the clock by this much (clients with skewed clocks)
EXPIRATION_GRACE_SECONDS = 30 * 60


@router.get("/me", response_model=UserResponse)
async def me(
    current_user: Annotated[User, Depends(get_current_user)],
) -> UserResponse:
    """Return current authenticated user."""
    return UserResponse.model_validate(current_user)


async def _storage_report(session: AsyncSession, user: User) -> StorageAdminResponse:
    quota_mb = get_effective_quota_mb(user)
    usage = await get_usage_report(session, user)
    return StorageAdminResponse(
        quota="unlimited" if quota_mb == UNLIMITED_MB else quota_mb,
        expiration=user.storage_expiration or None,
        usage=StorageUsage(**usage),
    )


async def _load_target(session: AsyncSession, user_id: int) -> User:
    user = await session.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


def _parse_expiration(value: Optional[str]) -> int:
    if value is None or not value.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Expiration not provided")
    if not value.strip().isdigit():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid expiration")
    expiration = int(value.strip())
    if expiration and expiration < time.time() - EXPIRATION_GRACE_SECONDS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Expiration is in the past")
    return expiration


@router.get("/{user_id}/storageadmin", response_model=StorageAdminResponse)
@limiter.limit(SYNC_LIMIT)
async def get_storage_admin(
    request: Request,
    user_id: int,
    current_user: Annotated[User, Depends(get_current_admin)],
    session: Annotated[AsyncSession, Depends(get_db)],
) -> StorageAdminResponse:
    """Quota, expiration and usage of a user (admin only)."""
    user = await _load_target(session, user_id)
    return await _storage_report(session, user)


@router.post("/{user_id}/storageadmin", response_model=StorageAdminResponse)
@limiter.limit(ADMIN_LIMIT)
async def set_storage_admin(
    request: Request,
    user_id: int,
    current_user: Annotated[User, Depends(get_current_admin)],
    session: Annotated[AsyncSession, Depends(get_db)],
) -> StorageAdminResponse:
    """Set a user's quota (MB or 'unlimited') and its expiration (epoch seconds, 0 = none)."""
    user = await _load_target(session, user_id)
    form = await request.form()
    raw_quota = form.get("quota")
    if raw_quota is None or not isinstance(raw_quota, str) or not raw_quota.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Quota not provided")
    quota_mb = parse_quota(raw_quota)
    if quota_mb is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid quota")
    raw_expiration = form.get("expiration")
    expiration = _parse_expiration(raw_expiration if isinstance(raw_expiration, str) else None)

    used = await get_used_bytes(session, user.id)
    if quota_mb * MB < used:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Cannot set quota below current usage (%.1f MB)" % (used / MB),
        )
    user.storage_quota_mb = quota_mb
    user.storage_expiration = expiration
    await session.commit()
    log.info(
        "Admin %s set storage quota user=%s quota_mb=%s expiration=%s",
        current_user.id, user.id, quota_mb, expiration,
    )
    return await _storage_report(session, user)
