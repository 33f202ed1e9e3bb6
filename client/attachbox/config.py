"""Client configuration: server base URL, timeouts and retry attempts.

Environment variables (ATTACHBOX_*) win over the JSON config file in the
platform config directory.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8080"
DEFAULT_METADATA_TIMEOUT = 30.0
DEFAULT_MAX_ATTEMPTS = 3


def _config_dir() -> Path:
    """Platform-specific config directory (no admin)."""
    if os.environ.get("ATTACHBOX_CONFIG_DIR", "").strip():
        return Path(os.environ["ATTACHBOX_CONFIG_DIR"])
    if os.name == "nt":
        base = os.environ.get("APPDATA", os.path.expanduser("~"))
        return Path(base) / "AttachBox"
    if os.environ.get("XDG_CONFIG_HOME"):
        return Path(os.environ["XDG_CONFIG_HOME"]) / "attachbox"
    return Path.home() / ".config" / "attachbox"


def get_config_path() -> Path:
    """Path to config.json."""
    d = _config_dir()
    d.mkdir(parents=True, exist_ok=True)
    return d / "config.json"


def _load() -> Dict[str, Any]:
    path = get_config_path()
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as e:
        log.warning("Could not read config %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


def _save(key: str, value: Any) -> None:
    data = _load()
    data[key] = value
    get_config_path().write_text(json.dumps(data, indent=2), encoding="utf-8")


def get_base_url() -> str:
    """Server base URL: ATTACHBOX_BASE_URL, then config 'base_url', then localhost."""
    env = os.environ.get("ATTACHBOX_BASE_URL", "").strip()
    if env:
        return env.rstrip("/")
    return (str(_load().get("base_url") or "").strip() or DEFAULT_BASE_URL).rstrip("/")


def set_base_url(url: str) -> None:
    """Persist base URL."""
    _save("base_url", (url or "").strip())


def get_metadata_timeout() -> float:
    """Timeout in seconds for negotiate/register/metadata requests."""
    raw = os.environ.get("ATTACHBOX_METADATA_TIMEOUT", "").strip() or _load().get("metadata_timeout")
    try:
        value = float(raw) if raw not in (None, "") else DEFAULT_METADATA_TIMEOUT
    except (TypeError, ValueError):
        log.warning("Invalid metadata timeout %r, using default", raw)
        return DEFAULT_METADATA_TIMEOUT
    return value if value > 0 else DEFAULT_METADATA_TIMEOUT


def get_max_attempts() -> int:
    """How often an upload sequence is tried when transfers time out."""
    raw = os.environ.get("ATTACHBOX_MAX_ATTEMPTS", "").strip() or _load().get("max_attempts")
    try:
        value = int(raw) if raw not in (None, "") else DEFAULT_MAX_ATTEMPTS
    except (TypeError, ValueError):
        log.warning("Invalid max attempts %r, using default", raw)
        return DEFAULT_MAX_ATTEMPTS
    return max(1, value)


def set_max_attempts(attempts: int) -> None:
    _save("max_attempts", int(attempts))
