"""Object store routes reached through signed URLs: multipart upload and blob download."""

import base64
import binascii
import hashlib
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import Response
from starlette.datastructures import UploadFile

from app.auth.jwt import get_storage_claims
from app.limiter import STORE_LIMIT, limiter
from app.objectstore.storage import get_blob_store

router = APIRouter(prefix="/storage", tags=["storage"])
log = logging.getLogger(__name__)


def _content_md5_to_hex(value: str) -> Optional[str]:
    """Base64 Content-MD5 value as hex, or None if malformed."""
    try:
        raw = base64.b64decode(value.strip(), validate=True)
    except (binascii.Error, ValueError):
        return None
    if len(raw) != 16:
        return None
    return raw.hex()


def _check_declared_digest(value: Optional[str], expected_md5: str) -> None:
    if value is None:
        return
    declared = _content_md5_to_hex(value)
    if declared is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="InvalidDigest: The Content-MD5 you specified was invalid",
        )
    if declared != expected_md5:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="BadDigest: The Content-MD5 you specified did not match what was expected",
        )


@router.post("/upload")
@limiter.limit(STORE_LIMIT)
async def upload_object(request: Request) -> Response:
    """
    Accept a multipart form (key, token, Content-MD5, file). The token fixes key,
    md5 and size; the stored bytes must match all three.
    """
    form = await request.form()
    token = form.get("token")
    key = form.get("key")
    upload = form.get("file")
    if not isinstance(token, str) or not isinstance(key, str) or not isinstance(upload, UploadFile):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Form must contain key, token and file",
        )
    claims = get_storage_claims(token, "upload")
    if not claims or claims.get("key") != key:
        log.warning("upload_object rejected token key=%r", key)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or expired upload token")
    expected_md5 = claims["md5"]
    content_md5 = form.get("Content-MD5")
    _check_declared_digest(content_md5 if isinstance(content_md5, str) else None, expected_md5)
    _check_declared_digest(request.headers.get("Content-MD5"), expected_md5)

    body = await upload.read()
    if len(body) != claims["size"]:
        log.info("upload_object size mismatch key=%s expected=%d got=%d", key, claims["size"], len(body))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="SizeMismatch: Your proposed upload does not match the declared size",
        )
    if hashlib.md5(body).hexdigest() != expected_md5:
        log.info("upload_object digest mismatch key=%s", key)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="BadDigest: The Content-MD5 you specified did not match what was received",
        )
    try:
        get_blob_store().write(key, body)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    log.info("upload_object key=%s size=%d", key, len(body))
    return Response(status_code=status.HTTP_201_CREATED)


def _serve(claims: dict) -> Response:
    key = claims["key"]
    try:
        body = get_blob_store().read(key)
    except (FileNotFoundError, ValueError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="NoSuchKey")
    return Response(
        content=body,
        headers={
            "Content-Type": claims.get("ct") or "application/octet-stream",
            "Content-Disposition": claims.get("cd") or "attachment",
        },
    )


@router.get("/object/{key:path}")
@limiter.limit(STORE_LIMIT)
async def get_object(request: Request, key: str) -> Response:
    """Download mode: signed token in the query string must name this key."""
    claims = get_storage_claims(request.query_params.get("token") or "", "download")
    if not claims or claims.get("key") != key:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or expired token")
    log.debug("get_object key=%s", key)
    return _serve(claims)


@router.get("/view/{token}/{filename}")
@limiter.limit(STORE_LIMIT)
async def view_object(request: Request, token: str, filename: str) -> Response:
    """View mode: token in the path, URL ends with the display filename."""
    claims = get_storage_claims(token, "download")
    if not claims:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or expired token")
    log.debug("view_object key=%s filename=%r", claims.get("key"), filename)
    return _serve(claims)
