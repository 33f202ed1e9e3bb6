"""Filesystem blob store keyed by object key, with safe key resolution (no traversal)."""

import logging
import os
import re
import shutil
import unicodedata
import uuid
from pathlib import Path
from typing import List, Optional

from app.config import get_settings

log = logging.getLogger(__name__)

# Safe key segment: letters, numbers, common punctuation. No / \ (traversal).
# Allow: . _ - space ( ) + ~ # ! & ' , ; = [ ] @ for "File (1).txt", "user@host.txt", etc.
_SAFE_SEGMENT_ASCII = re.compile(r"^[a-zA-Z0-9_. \-()+~#!&',;=\[\]@]+$")


def _is_safe_path_char(c: str) -> bool:
    """True if char is allowed in a key segment (no traversal, no control chars)."""
    if len(c) != 1:
        return False
    if c in "/\\":
        return False
    if ord(c) < 32:
        return False
    if ("a" <= c <= "z") or ("A" <= c <= "Z") or ("0" <= c <= "9") or c in "_. -()+~#!&',;=[]@%":
        return True
    cat = unicodedata.category(c)
    # Letter, Number, Punctuation or Symbol (e.g. fullwidth parentheses （） in "Manual（CN）.pdf")
    return cat[0] in "LNPS"


def _sanitize_segment(segment: str) -> Optional[str]:
    """Return segment if safe, else None. Rejects empty, '..', '.', and invalid chars.
    Allows Unicode letters and numbers (e.g. ä, ö, ü, 这) for international filenames.
    """
    if not segment or segment.strip() in (".", ".."):
        return None
    if _SAFE_SEGMENT_ASCII.match(segment):
        return segment
    if not all(_is_safe_path_char(c) for c in segment):
        return None
    return segment


def split_key(key: str) -> List[str]:
    """
    Split an object key into sanitized segments.
    Raises ValueError for empty keys or unsafe segments.
    """
    parts = key.split("/")
    if not key or not all(parts):
        raise ValueError(f"Invalid object key: {key!r}")
    out = []
    for part in parts:
        safe = _sanitize_segment(part)
        if not safe:
            raise ValueError(f"Unsafe key segment: {part!r}")
        out.append(safe)
    return out


class BlobStore:
    """
    Content-addressed blob store on local disk. A key is either 'hash' or 'hash/filename'.
    The hash-only blob is stored as '<root>/<hash>/@' so legacy '<hash>/<filename>'
    blobs can live next to it.
    """

    _HASH_ONLY_NAME = "@"

    def __init__(self, root: Path) -> None:
        self.root = root

    def path_for(self, key: str) -> Path:
        """Filesystem path of the blob for key."""
        parts = split_key(key)
        if len(parts) == 1:
            return self.root / parts[0] / self._HASH_ONLY_NAME
        if len(parts) == 2 and parts[1] != self._HASH_ONLY_NAME:
            return self.root / parts[0] / parts[1]
        raise ValueError(f"Invalid object key: {key!r}")

    def exists(self, key: str) -> bool:
        try:
            return self.path_for(key).is_file()
        except ValueError:
            return False

    def size(self, key: str) -> Optional[int]:
        """Blob size in bytes, or None if absent."""
        try:
            return self.path_for(key).stat().st_size
        except (OSError, ValueError):
            return None

    def read(self, key: str) -> bytes:
        """Return blob bytes. Raises FileNotFoundError if absent."""
        path = self.path_for(key)
        if not path.is_file():
            raise FileNotFoundError(f"Object not found: {key}")
        return path.read_bytes()

    def write(self, key: str, body: bytes) -> None:
        """Store body under key (atomic replace)."""
        target = self.path_for(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.parent / f".tmp-{uuid.uuid4().hex}"
        tmp.write_bytes(body)
        os.replace(tmp, target)
        log.info("object_store write key=%s size=%d", key, len(body))

    def copy(self, source_key: str, dest_key: str) -> None:
        """Copy a blob to another key. Raises FileNotFoundError if source is absent."""
        source = self.path_for(source_key)
        if not source.is_file():
            raise FileNotFoundError(f"Object not found: {source_key}")
        target = self.path_for(dest_key)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.parent / f".tmp-{uuid.uuid4().hex}"
        shutil.copyfile(source, tmp)
        os.replace(tmp, target)
        log.info("object_store copy %s -> %s", source_key, dest_key)

    def delete(self, key: str) -> None:
        """
        Delete a blob. Removes the now-empty hash directory.
        Raises FileNotFoundError if the blob does not exist.
        """
        target = self.path_for(key)
        if not target.is_file():
            raise FileNotFoundError(f"Object not found: {key}")
        target.unlink()
        parent = target.parent
        try:
            if parent != self.root and not any(parent.iterdir()):
                parent.rmdir()
        except OSError:
            pass


def get_blob_store() -> BlobStore:
    """Blob store rooted at the configured object directory."""
    return BlobStore(get_settings().object_root)
