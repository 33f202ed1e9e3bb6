"""File API routes: upload authorization/registration, partial update, download, storage sync."""

import logging
from typing import Annotated, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import LibraryType, get_current_user, load_item, load_library
from app.db.session import get_db
from app.files.errors import FileProtocolError
from app.files.layout import promote_to_hash_only
from app.files.uploads import (
    MODE_DOWNLOAD,
    MODE_VIEW,
    apply_patch,
    negotiate,
    register,
    remove_storage_files,
    resolve_download,
)
from app.items.models import Item
from app.items.service import get_item
from app.limiter import FILE_LIMIT, PURGE_LIMIT, SYNC_LIMIT, limiter
from app.objectstore.storage import get_blob_store
from app.users.models import LIBRARY_USER, User
from app.users.service import get_library

router = APIRouter(tags=["files"])
log = logging.getLogger(__name__)


def _version_headers(version: int) -> dict:
    return {"Last-Modified-Version": str(version)}


@router.post("/{library_type}/{library_id}/items/{key}/file")
@limiter.limit(FILE_LIMIT)
async def post_file(
    request: Request,
    library_type: LibraryType,
    library_id: int,
    key: str,
    background_tasks: BackgroundTasks,
    current_user: Annotated[User, Depends(get_current_user)],
    session: Annotated[AsyncSession, Depends(get_db)],
    if_match: Annotated[Optional[str], Header()] = None,
    if_none_match: Annotated[Optional[str], Header()] = None,
) -> Response:
    """
    Upload authorization (form with md5, filename, filesize, mtime, ...) or,
    with form field 'upload', registration of a completed transfer.
    """
    library = await load_library(session, current_user, library_type, library_id)
    item = await load_item(session, library, key)
    form = await request.form()
    store = get_blob_store()
    upload_key = form.get("upload")
    try:
        if upload_key is not None:
            version = await register(
                session, store, library, item, str(upload_key), if_match, if_none_match
            )
            await session.commit()
            log.info("register user=%s library=%s key=%s version=%d", current_user.id, library.id, key, version)
            return Response(status_code=status.HTTP_204_NO_CONTENT, headers=_version_headers(version))
        result = await negotiate(session, store, library, item, form, if_match, if_none_match)
    except FileProtocolError as e:
        log.info(
            "post_file rejected user=%s library=%s key=%s status=%d: %s",
            current_user.id, library.id, key, e.status_code, e.detail,
        )
        raise e.to_http()
    await session.commit()
    if result.exists:
        if result.promote is not None:
            background_tasks.add_task(promote_to_hash_only, store, result.promote)
        return JSONResponse({"exists": 1}, headers=_version_headers(result.version))
    return JSONResponse(result.ticket)


@router.patch("/{library_type}/{library_id}/items/{key}/file")
@limiter.limit(FILE_LIMIT)
async def patch_file(
    request: Request,
    library_type: LibraryType,
    library_id: int,
    key: str,
    current_user: Annotated[User, Depends(get_current_user)],
    session: Annotated[AsyncSession, Depends(get_db)],
    if_match: Annotated[Optional[str], Header()] = None,
    if_none_match: Annotated[Optional[str], Header()] = None,
) -> Response:
    """Partial update. Query params: algorithm, upload. Body: raw binary patch."""
    library = await load_library(session, current_user, library_type, library_id)
    item = await load_item(session, library, key)
    algorithm = request.query_params.get("algorithm") or ""
    upload_key = request.query_params.get("upload") or ""
    body = await request.body()
    try:
        version = await apply_patch(
            session, get_blob_store(), library, item, upload_key, algorithm, body, if_match, if_none_match
        )
    except FileProtocolError as e:
        log.info(
            "patch_file rejected user=%s library=%s key=%s algorithm=%s status=%d: %s",
            current_user.id, library.id, key, algorithm, e.status_code, e.detail,
        )
        raise e.to_http()
    await session.commit()
    log.info("patch_file user=%s library=%s key=%s algorithm=%s version=%d", current_user.id, library.id, key, algorithm, version)
    return Response(status_code=status.HTTP_204_NO_CONTENT, headers=_version_headers(version))


async def _redirect_to_file(session: AsyncSession, item: Item, mode: str) -> RedirectResponse:
    """Redirect to the signed URL; NotFound from resolve_download is rendered by the app handler."""
    target = await resolve_download(session, get_blob_store(), item, mode)
    log.info("file %s key=%s object=%s legacy=%s", mode, item.key, target.key, target.legacy)
    return RedirectResponse(target.url, status_code=status.HTTP_302_FOUND)


@router.get("/{library_type}/{library_id}/items/{key}/file")
@limiter.limit(FILE_LIMIT)
async def download_file(
    request: Request,
    library_type: LibraryType,
    library_id: int,
    key: str,
    current_user: Annotated[User, Depends(get_current_user)],
    session: Annotated[AsyncSession, Depends(get_db)],
) -> RedirectResponse:
    """302 to a signed object-store URL (attachment disposition), 404 if no file."""
    library = await load_library(session, current_user, library_type, library_id)
    item = await load_item(session, library, key)
    return await _redirect_to_file(session, item, MODE_DOWNLOAD)


@router.get("/{library_type}/{library_id}/items/{key}/file/view")
@limiter.limit(FILE_LIMIT)
async def view_file(
    request: Request,
    library_type: LibraryType,
    library_id: int,
    key: str,
    current_user: Annotated[User, Depends(get_current_user)],
    session: Annotated[AsyncSession, Depends(get_db)],
) -> RedirectResponse:
    """302 to a signed, filename-suffixed URL for inline display."""
    library = await load_library(session, current_user, library_type, library_id)
    item = await load_item(session, library, key)
    return await _redirect_to_file(session, item, MODE_VIEW)


async def _publication_item(session: AsyncSession, user_id: int, key: str) -> Item:
    library = await get_library(session, LIBRARY_USER, user_id)
    item = await get_item(session, library, key) if library else None
    if item is None or not item.in_publications:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    return item


@router.get("/users/{user_id}/publications/items/{key}/file")
@limiter.limit(FILE_LIMIT)
async def download_publication_file(
    request: Request,
    user_id: int,
    key: str,
    session: Annotated[AsyncSession, Depends(get_db)],
) -> RedirectResponse:
    """Anonymous download of a file attached to an item in My Publications."""
    item = await _publication_item(session, user_id, key)
    return await _redirect_to_file(session, item, MODE_DOWNLOAD)


@router.get("/users/{user_id}/publications/items/{key}/file/view")
@limiter.limit(FILE_LIMIT)
async def view_publication_file(
    request: Request,
    user_id: int,
    key: str,
    session: Annotated[AsyncSession, Depends(get_db)],
) -> RedirectResponse:
    """Anonymous inline view of a file attached to an item in My Publications."""
    item = await _publication_item(session, user_id, key)
    return await _redirect_to_file(session, item, MODE_VIEW)


@router.get("/{library_type}/{library_id}/laststoragesync")
@limiter.limit(SYNC_LIMIT)
async def last_storage_sync(
    request: Request,
    library_type: LibraryType,
    library_id: int,
    current_user: Annotated[User, Depends(get_current_user)],
    session: Annotated[AsyncSession, Depends(get_db)],
) -> PlainTextResponse:
    """Epoch seconds of the last file commit in the library; 404 if never synced."""
    library = await load_library(session, current_user, library_type, library_id)
    if not library.last_storage_sync:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    return PlainTextResponse(str(library.last_storage_sync))


@router.post("/{library_type}/{library_id}/removestoragefiles")
@limiter.limit(PURGE_LIMIT)
async def remove_library_storage_files(
    request: Request,
    library_type: LibraryType,
    library_id: int,
    current_user: Annotated[User, Depends(get_current_user)],
    session: Annotated[AsyncSession, Depends(get_db)],
) -> Response:
    """Dissociate all files in the library and release their usage."""
    library = await load_library(session, current_user, library_type, library_id)
    removed = await remove_storage_files(session, library)
    await session.commit()
    log.info("removestoragefiles user=%s library=%s removed=%d", current_user.id, library.id, removed)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
