"""JWT creation and validation: API access tokens and signed object-store capabilities.

Both kinds share the secret; the "type" claim keeps them apart so an upload
capability can never authenticate an API request, nor download a blob.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from jose import JWTError, jwt

from app.config import get_settings

log = logging.getLogger(__name__)

ACCESS = "access"
STORAGE_UPLOAD = "upload"
STORAGE_DOWNLOAD = "download"
STORAGE_PURPOSES = (STORAGE_UPLOAD, STORAGE_DOWNLOAD)


def _encode(payload: dict[str, Any], expires_in: timedelta) -> str:
    settings = get_settings()
    to_encode = {**payload, "exp": datetime.now(timezone.utc) + expires_in}
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_access_token(subject: str, expires_delta: Optional[timedelta] = None) -> str:
    """Create a short-lived access JWT. Subject is the user id."""
    expires_in = expires_delta or timedelta(minutes=get_settings().access_token_expire_minutes)
    return _encode({"sub": subject, "type": ACCESS}, expires_in)


def create_storage_token(purpose: str, claims: dict[str, Any], ttl_seconds: int) -> str:
    """
    Sign a storage capability (purpose 'upload' or 'download').
    claims carry the object key plus whatever the object store must enforce
    (md5, size, content type, disposition).
    """
    if purpose not in STORAGE_PURPOSES:
        raise ValueError(f"Unknown storage token purpose {purpose!r}")
    if not claims.get("key"):
        raise ValueError("Storage token needs an object key")
    return _encode({**claims, "type": purpose}, timedelta(seconds=ttl_seconds))


def decode_token(token: str) -> Optional[dict[str, Any]]:
    """Decode and validate a JWT; return payload or None."""
    if not token:
        return None
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        log.debug("Rejected token: %s", e)
        return None


def get_subject_from_access(token: str) -> Optional[str]:
    """Return subject (user id) if token is a valid access token."""
    payload = decode_token(token)
    if not payload or payload.get("type") != ACCESS:
        return None
    return payload.get("sub")


def get_storage_claims(token: str, purpose: str) -> Optional[dict[str, Any]]:
    """Return claims if token is a valid, unexpired storage token for purpose."""
    payload = decode_token(token)
    if not payload or payload.get("type") != purpose or not payload.get("key"):
        return None
    return payload
