"""User, library and group membership models plus Pydantic schemas."""

from datetime import datetime
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict
from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.session import Base

LIBRARY_USER = "user"
LIBRARY_GROUP = "group"


class User(Base):
    """User table: id is used in URLs and as token subject."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    # Optional personal quota (MB). None = server default.
    storage_quota_mb: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    # Epoch seconds after which the personal quota lapses; 0 = never
    storage_expiration: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    # Bytes attributed to this owner, including reservations held by live upload tickets
    storage_used_bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)


class Library(Base):
    """A user or group library. Quota and usage belong to owner_id."""

    __tablename__ = "libraries"
    __table_args__ = (UniqueConstraint("kind", "external_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    # User id for user libraries, group id for group libraries
    external_id: Mapped[int] = mapped_column(Integer, nullable=False)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_storage_sync: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)


class GroupMember(Base):
    """Membership of a user in a group library (write access to its files)."""

    __tablename__ = "group_members"

    library_id: Mapped[int] = mapped_column(ForeignKey("libraries.id"), primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), primary_key=True)


class UserResponse(BaseModel):
    """User as returned by API."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    is_admin: bool
    created_at: datetime
    storage_quota_mb: Optional[int] = None


class GroupUsage(BaseModel):
    """Usage of one owned group library (MB)."""

    id: int
    usage: float


class StorageUsage(BaseModel):
    """Usage breakdown (MB)."""

    total: float
    library: float
    groups: List[GroupUsage] = []


class StorageAdminResponse(BaseModel):
    """Quota and usage report for one user. quota is MB or 'unlimited'."""

    quota: Union[int, str]
    expiration: Optional[int] = None
    usage: StorageUsage
