"""Object key layouts: hash-only (current) and hash/filename (legacy)."""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from app.objectstore.storage import BlobStore

log = logging.getLogger(__name__)


class HashOnlyLayout:
    name = "hash"

    def key(self, hash_: str, filename: str) -> str:
        return hash_


class LegacyLayout:
    name = "legacy"

    def key(self, hash_: str, filename: str) -> str:
        return f"{hash_}/{filename}"


HASH_ONLY = HashOnlyLayout()
LEGACY = LegacyLayout()


@dataclass(frozen=True)
class BlobLocation:
    """Where a blob was found: the object key and the layout it follows."""

    key: str
    layout: object
    hash: str
    filename: str

    @property
    def is_legacy(self) -> bool:
        return self.layout is LEGACY


def locate_blob(store: BlobStore, hash_: str, filenames: Iterable[str]) -> Optional[BlobLocation]:
    """
    Find a blob by hash: the hash-only key first, then the legacy key for each
    candidate filename (in order). Returns None if no layout has it.
    """
    candidates = [f for f in dict.fromkeys(filenames) if f]
    if store.exists(HASH_ONLY.key(hash_, "")):
        return BlobLocation(HASH_ONLY.key(hash_, ""), HASH_ONLY, hash_, candidates[0] if candidates else "")
    for filename in candidates:
        key = LEGACY.key(hash_, filename)
        if store.exists(key):
            log.debug("locate_blob hash=%s found at legacy key filename=%r", hash_, filename)
            return BlobLocation(key, LEGACY, hash_, filename)
    return None


def promote_to_hash_only(store: BlobStore, location: BlobLocation) -> None:
    """Copy a legacy blob to the hash-only key so later lookups need not know the filename."""
    if not location.is_legacy:
        return
    target = HASH_ONLY.key(location.hash, location.filename)
    if store.exists(target):
        return
    try:
        store.copy(location.key, target)
        log.info("promoted legacy blob %s -> %s", location.key, target)
    except FileNotFoundError:
        log.warning("promote_to_hash_only: legacy blob vanished key=%s", location.key)
