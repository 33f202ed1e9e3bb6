"""Binary diff application for partial file updates (bsdiff, xdelta, vcdiff)."""

import logging
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Callable, Dict, List

import bsdiff4

from app.config import get_settings

log = logging.getLogger(__name__)


class PatchError(Exception):
    """Patch could not be applied with the requested algorithm."""


def _apply_bsdiff(old: bytes, patch: bytes) -> bytes:
    try:
        return bsdiff4.patch(old, patch)
    except Exception as e:  # bsdiff4 raises ValueError or RuntimeError on corrupt input
        raise PatchError(f"bsdiff: {e}") from e


def _run_tool(argv_for: Callable[[Path, Path, Path], List[str]], old: bytes, patch: bytes) -> bytes:
    """Write old/patch to a temp dir, run the external tool, return the reconstructed file."""
    with tempfile.TemporaryDirectory(prefix="attachbox_patch_") as tmp:
        old_path = Path(tmp) / "old"
        patch_path = Path(tmp) / "patch"
        new_path = Path(tmp) / "new"
        old_path.write_bytes(old)
        patch_path.write_bytes(patch)
        argv = argv_for(old_path, patch_path, new_path)
        if not shutil.which(argv[0]):
            raise PatchError(f"{argv[0]} not installed")
        try:
            proc = subprocess.run(argv, capture_output=True, timeout=get_settings().patch_tool_timeout_seconds)
        except subprocess.TimeoutExpired as e:
            raise PatchError(f"{argv[0]} timed out") from e
        if proc.returncode != 0 or not new_path.exists():
            raise PatchError(
                f"{argv[0]} exited {proc.returncode}: {proc.stderr.decode('utf-8', 'replace').strip()}"
            )
        return new_path.read_bytes()


def _apply_xdelta(old: bytes, patch: bytes) -> bytes:
    return _run_tool(
        lambda o, p, n: ["xdelta3", "-f", "-d", "-s", str(o), str(p), str(n)],
        old,
        patch,
    )


def _apply_vcdiff(old: bytes, patch: bytes) -> bytes:
    return _run_tool(
        lambda o, p, n: ["vcdiff", "decode", "-dictionary", str(o), "-delta", str(p), "-target", str(n)],
        old,
        patch,
    )


ALGORITHMS: Dict[str, Callable[[bytes, bytes], bytes]] = {
    "bsdiff": _apply_bsdiff,
    "xdelta": _apply_xdelta,
    "vcdiff": _apply_vcdiff,
}


def apply_patch(algorithm: str, old: bytes, patch: bytes) -> bytes:
    """Reconstruct the new file from old and patch. Raises PatchError on any failure."""
    func = ALGORITHMS.get(algorithm)
    if func is None:
        raise PatchError(f"Invalid algorithm {algorithm!r}")
    if not patch:
        raise PatchError("Empty patch")
    new = func(old, patch)
    log.debug("apply_patch algorithm=%s old=%d patch=%d new=%d", algorithm, len(old), len(patch), len(new))
    return new
