"""Content fingerprinting: md5 digests and file descriptors for upload negotiation."""

import hashlib
import io
import mimetypes
import time
import zipfile
from pathlib import Path
from typing import Mapping, Optional, Tuple

from attachbox.models import CompressedFileDescriptor, FileDescriptor

CHUNK_SIZE = 1024 * 1024
# Fixed timestamp for zip entries so identical content gives an identical container
_ZIP_DATE_TIME = (1980, 1, 1, 0, 0, 0)


def md5_bytes(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def md5_file(path: Path) -> str:
    """md5 of file content, read in chunks."""
    h = hashlib.md5()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            h.update(chunk)
    return h.hexdigest()


def mtime_ms(path: Path) -> int:
    return path.stat().st_mtime_ns // 1_000_000


def now_ms() -> int:
    return int(time.time() * 1000)


def guess_content_type(filename: str) -> str:
    content_type, _ = mimetypes.guess_type(filename)
    return content_type or "application/octet-stream"


def describe_bytes(
    data: bytes,
    filename: str,
    mtime: Optional[int] = None,
    content_type: Optional[str] = None,
    charset: str = "",
) -> FileDescriptor:
    """Descriptor for in-memory content. mtime defaults to now (ms)."""
    return FileDescriptor(
        hash=md5_bytes(data),
        size=len(data),
        filename=filename,
        mtime=now_ms() if mtime is None else mtime,
        content_type=content_type or guess_content_type(filename),
        charset=charset,
    )


def describe_file(path: Path, content_type: Optional[str] = None, charset: str = "") -> FileDescriptor:
    """Descriptor for a file on disk; mtime comes from the filesystem in ms."""
    path = Path(path)
    return FileDescriptor(
        hash=md5_file(path),
        size=path.stat().st_size,
        filename=path.name,
        mtime=mtime_ms(path),
        content_type=content_type or guess_content_type(path.name),
        charset=charset,
    )


def build_zip(files: Mapping[str, bytes]) -> bytes:
    """Deflated zip of files (name -> content), entries sorted by name."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name in sorted(files):
            info = zipfile.ZipInfo(name, date_time=_ZIP_DATE_TIME)
            info.compress_type = zipfile.ZIP_DEFLATED
            zf.writestr(info, files[name])
    return buf.getvalue()


def describe_zip(
    files: Mapping[str, bytes],
    filename: str,
    zip_filename: str,
    mtime: Optional[int] = None,
    content_type: Optional[str] = None,
    charset: str = "",
) -> Tuple[CompressedFileDescriptor, bytes]:
    """
    Descriptor and container for a bundle whose main file is files[filename].
    The logical hash is of the main file, never of the zip.
    """
    if filename not in files:
        raise ValueError(f"Main file {filename!r} not in bundle")
    zip_data = build_zip(files)
    descriptor = CompressedFileDescriptor(
        hash=md5_bytes(files[filename]),
        filename=filename,
        mtime=now_ms() if mtime is None else mtime,
        zip_hash=md5_bytes(zip_data),
        zip_filename=zip_filename,
        zip_size=len(zip_data),
        content_type=content_type or guess_content_type(filename),
        charset=charset,
    )
    return descriptor, zip_data
