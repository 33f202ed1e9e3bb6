"""SQLAlchemy models for stored blobs, item file state and upload tickets."""

from typing import Optional

from sqlalchemy import BigInteger, Boolean, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.db.session import Base


class StorageFile(Base):
    """
    Identity of one blob in the object store. For zip uploads hash/filename/size
    describe the container, not the logical file.
    """

    __tablename__ = "storage_files"
    __table_args__ = (UniqueConstraint("hash", "filename", "zip"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hash: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    filename: Mapped[str] = mapped_column(Text, nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    zip: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class StorageFileItem(Base):
    """Association of an attachment item with its current blob. No row = no file."""

    __tablename__ = "storage_file_items"

    item_id: Mapped[int] = mapped_column(ForeignKey("items.id"), primary_key=True)
    storage_file_id: Mapped[int] = mapped_column(ForeignKey("storage_files.id"), nullable=False)
    mtime: Mapped[int] = mapped_column(BigInteger, nullable=False)  # ms
    size: Mapped[int] = mapped_column(BigInteger, nullable=False)


class StorageUpload(Base):
    """Single-use upload ticket. reserved_bytes are held against owner_id until consumed or expired."""

    __tablename__ = "storage_uploads"

    upload_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    item_id: Mapped[int] = mapped_column(ForeignKey("items.id"), nullable=False, index=True)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    # Stored blob identity (container for zip uploads)
    hash: Mapped[str] = mapped_column(String(32), nullable=False)
    filename: Mapped[str] = mapped_column(Text, nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    zip: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Logical file identity written to the item
    item_hash: Mapped[str] = mapped_column(String(32), nullable=False)
    item_filename: Mapped[str] = mapped_column(Text, nullable=False)
    mtime: Mapped[int] = mapped_column(BigInteger, nullable=False)  # ms
    content_type: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    charset: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    reserved_bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    consumed_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
