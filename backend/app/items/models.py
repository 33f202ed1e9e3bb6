"""Attachment item model and Pydantic schemas."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import BigInteger, Boolean, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.db.session import Base

LINK_IMPORTED_FILE = "imported_file"
LINK_IMPORTED_URL = "imported_url"
LINK_LINKED_FILE = "linked_file"
LINK_LINKED_URL = "linked_url"

LINK_MODES = (LINK_IMPORTED_FILE, LINK_IMPORTED_URL, LINK_LINKED_FILE, LINK_LINKED_URL)
# Only these store a file in the object store
IMPORTED_LINK_MODES = (LINK_IMPORTED_FILE, LINK_IMPORTED_URL)


class Item(Base):
    """Attachment item. md5/filename/mtime are declared metadata; file state lives in storage_file_items."""

    __tablename__ = "items"
    __table_args__ = (UniqueConstraint("library_id", "key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    library_id: Mapped[int] = mapped_column(ForeignKey("libraries.id"), nullable=False)
    key: Mapped[str] = mapped_column(String(8), nullable=False)
    link_mode: Mapped[str] = mapped_column(String(16), nullable=False)
    title: Mapped[str] = mapped_column(Text, default="", nullable=False)
    content_type: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    charset: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    filename: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    md5: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    # Milliseconds since epoch
    mtime: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    in_publications: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class AttachmentCreate(BaseModel):
    """Payload for creating an attachment item."""

    link_mode: str = Field(alias="linkMode")
    title: str = ""
    content_type: str = Field("", alias="contentType")
    charset: str = ""
    filename: Optional[str] = None
    in_publications: bool = Field(False, alias="inPublications")

    model_config = ConfigDict(populate_by_name=True)


class AttachmentUpdate(BaseModel):
    """Partial metadata update. Changing md5, filename or mtime dissociates the stored file."""

    title: Optional[str] = None
    content_type: Optional[str] = Field(None, alias="contentType")
    charset: Optional[str] = None
    filename: Optional[str] = None
    md5: Optional[str] = None
    mtime: Optional[int] = None
    in_publications: Optional[bool] = Field(None, alias="inPublications")

    model_config = ConfigDict(populate_by_name=True)


class AttachmentResponse(BaseModel):
    """Attachment item as returned by API."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    key: str
    version: int
    link_mode: str = Field(serialization_alias="linkMode")
    title: str
    content_type: str = Field(serialization_alias="contentType")
    charset: str
    filename: Optional[str] = None
    md5: Optional[str] = None
    mtime: Optional[int] = None
    in_publications: bool = Field(serialization_alias="inPublications")
