"""Attachment item routes: create, read and update item metadata."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import LibraryType, get_current_user, load_item, load_library
from app.db.session import get_db
from app.items.models import AttachmentCreate, AttachmentResponse, AttachmentUpdate, Item
from app.items.service import create_attachment, update_attachment
from app.limiter import ITEM_READ_LIMIT, ITEM_WRITE_LIMIT, limiter
from app.users.models import User

router = APIRouter(tags=["items"])
log = logging.getLogger(__name__)


def _item_response(item: Item, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    body = AttachmentResponse.model_validate(item).model_dump(by_alias=True)
    return JSONResponse(body, status_code=status_code, headers={"Last-Modified-Version": str(item.version)})


@router.post("/{library_type}/{library_id}/items")
@limiter.limit(ITEM_WRITE_LIMIT)
async def create_item(
    request: Request,
    library_type: LibraryType,
    library_id: int,
    payload: AttachmentCreate,
    current_user: Annotated[User, Depends(get_current_user)],
    session: Annotated[AsyncSession, Depends(get_db)],
) -> JSONResponse:
    """Create an attachment item (no file yet)."""
    library = await load_library(session, current_user, library_type, library_id)
    try:
        item = await create_attachment(session, library, payload)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    await session.commit()
    log.info("create_item user=%s library=%s key=%s", current_user.id, library.id, item.key)
    return _item_response(item, status.HTTP_201_CREATED)


@router.get("/{library_type}/{library_id}/items/{key}")
@limiter.limit(ITEM_READ_LIMIT)
async def get_item_route(
    request: Request,
    library_type: LibraryType,
    library_id: int,
    key: str,
    current_user: Annotated[User, Depends(get_current_user)],
    session: Annotated[AsyncSession, Depends(get_db)],
) -> JSONResponse:
    library = await load_library(session, current_user, library_type, library_id)
    item = await load_item(session, library, key)
    return _item_response(item)


@router.patch("/{library_type}/{library_id}/items/{key}")
@limiter.limit(ITEM_WRITE_LIMIT)
async def update_item(
    request: Request,
    library_type: LibraryType,
    library_id: int,
    key: str,
    payload: AttachmentUpdate,
    current_user: Annotated[User, Depends(get_current_user)],
    session: Annotated[AsyncSession, Depends(get_db)],
) -> JSONResponse:
    """Update metadata. A changed md5, filename or mtime detaches the stored file."""
    library = await load_library(session, current_user, library_type, library_id)
    item = await load_item(session, library, key)
    try:
        item = await update_attachment(session, library, item, payload)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    await session.commit()
    return _item_response(item)
