"""Rate limiter for file, object store and storage admin endpoints.

Requests with a valid access token are counted per user; anonymous requests
(signed object store URLs, publications) per client address.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from app.auth.jwt import get_subject_from_access

FILE_LIMIT = "600/minute"
STORE_LIMIT = "600/minute"
ITEM_READ_LIMIT = "600/minute"
ITEM_WRITE_LIMIT = "120/minute"
SYNC_LIMIT = "60/minute"
ADMIN_LIMIT = "30/minute"
PURGE_LIMIT = "10/minute"


def rate_limit_key(request: Request) -> str:
    auth = request.headers.get("Authorization", "")
    scheme, _, token = auth.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        subject = get_subject_from_access(token.strip())
        if subject:
            return f"user:{subject}"
    return get_remote_address(request)


limiter = Limiter(key_func=rate_limit_key)
