"""AttachBox API: file protocol, object store, item metadata and storage admin."""

import logging
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.config import Settings, get_settings
from app.db.session import get_session, init_db
from app.files.errors import FileProtocolError
from app.files.routes import router as files_router
from app.files.uploads import purge_expired_uploads
from app.items.routes import router as items_router
from app.limiter import limiter
from app.objectstore.routes import router as objectstore_router
from app.users.routes import router as users_router
from app.users.service import ensure_admin_exists

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
# Blob responses may be cached by the browser; everything else is per-request state
_CACHEABLE_PREFIXES = ("/storage/object/", "/storage/view/")


def _log_handlers(settings: Settings) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if settings.log_file.strip():
        try:
            handlers.append(logging.FileHandler(settings.log_file, encoding="utf-8"))
        except OSError as e:
            logging.getLogger("app").warning("Could not open log file %s: %s", settings.log_file, e)
    return handlers


def _setup_logging() -> None:
    """Configure the app logger from settings (stderr always; optional file)."""
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    fmt = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    app_log = logging.getLogger("app")
    app_log.setLevel(level)
    app_log.handlers.clear()
    for handler in _log_handlers(settings):
        handler.setLevel(level)
        handler.setFormatter(fmt)
        app_log.addHandler(handler)
    app_log.debug("Logging level=%s file=%s", settings.log_level, settings.log_file or "-")


_setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and object store root, bootstrap admin, drop expired upload tickets."""
    settings = get_settings()
    log.info("Startup: db=%s objects=%s", settings.db_path, settings.object_root)
    await init_db()
    settings.object_root.mkdir(parents=True, exist_ok=True)
    async with get_session() as session:
        await ensure_admin_exists(session)
        purged = await purge_expired_uploads(session)
    log.info("Startup complete purged_tickets=%d", purged)
    yield
    log.info("Shutdown")


app = FastAPI(title="AttachBox API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["*"],
    expose_headers=["Last-Modified-Version", "X-Storage-Quota", "X-Storage-UserID"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Signed URLs carry capabilities in the path or query: never leak them as Referer."""
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "no-referrer"
    if not request.url.path.startswith(_CACHEABLE_PREFIXES):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.exception_handler(FileProtocolError)
async def file_protocol_exception_handler(request: Request, exc: FileProtocolError):
    """Protocol failures that escaped a route keep their status and headers."""
    log.info("%s %s: %s %s", request.method, request.url.path, exc.status_code, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=exc.headers or None,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Unexpected failures become a bare 500; details go to the log only."""
    if isinstance(exc, HTTPException):
        raise exc
    log.exception("Unhandled exception %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.include_router(users_router)
app.include_router(objectstore_router)
app.include_router(items_router)
app.include_router(files_router)


@app.get("/health")
@limiter.exempt
def health() -> JSONResponse:
    """Liveness probe. Exempt from rate limiting."""
    return JSONResponse(content={"status": "ok"})


def run() -> None:
    """Serve the API with uvicorn on the configured port."""
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=get_settings().port, log_config=None)


if __name__ == "__main__":
    run()
