"""Configuration from environment (ATTACHBOX_*, no hardcoded secrets)."""

from pathlib import Path
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Server settings: metadata DB, object store, signed URLs, quotas, logging."""

    model_config = SettingsConfigDict(env_prefix="ATTACHBOX_", extra="ignore")

    # Metadata DB and object store root (blobs live under <storage_base_path>/objects)
    db_path: Path = Path("/data/attachbox.db")
    storage_base_path: Path = Path("/var/lib/attachbox")
    # Base URL the object store is reachable under (signed upload/download URLs)
    public_base_url: str = "http://localhost:8080"
    # Optional separate host for view-mode links; empty = public_base_url
    attachment_view_url: str = ""

    # JWT (access tokens and signed storage URLs)
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 30

    # Upload protocol
    upload_ticket_ttl_seconds: int = 3600
    download_url_ttl_seconds: int = 600
    default_quota_mb: int = 300
    patch_tool_timeout_seconds: int = 300

    # First admin (bootstrap)
    admin_username: str = ""

    # CORS: comma-separated string in env so pydantic-settings does not JSON-decode it
    cors_origins: str = "http://localhost:8080"

    # Server
    port: int = 8080

    # Logging (empty log_file = stderr only; level DEBUG|INFO|WARNING|ERROR)
    log_level: str = "INFO"
    log_file: str = ""

    @field_validator("public_base_url", "attachment_view_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.strip().rstrip("/")

    @field_validator("default_quota_mb", "upload_ticket_ttl_seconds", "download_url_ttl_seconds")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @property
    def cors_origins_list(self) -> List[str]:
        """CORS origins as a list (split on comma)."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()] or [
            "http://localhost:8080"
        ]

    @property
    def object_root(self) -> Path:
        """Directory holding blobs of the local object store."""
        return self.storage_base_path / "objects"

    @property
    def view_base_url(self) -> str:
        return self.attachment_view_url or self.public_base_url


def get_settings() -> Settings:
    """Return application settings."""
    return Settings()
