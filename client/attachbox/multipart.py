"""Transfer bodies for the object store: server-built prefix/suffix or client-built multipart."""

import uuid
from typing import Mapping, Optional, Tuple

from attachbox.models import UploadTicket


def new_boundary() -> str:
    return "----AttachBoxBoundary" + uuid.uuid4().hex


def encode_multipart(
    fields: Mapping[str, str],
    data: bytes,
    filename: str = "file",
    boundary: Optional[str] = None,
) -> Tuple[bytes, str]:
    """
    multipart/form-data with fields in order, then a 'file' part holding data.
    Returns (body, content_type).
    """
    boundary = boundary or new_boundary()
    parts = []
    for name, value in fields.items():
        parts.append(
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="{name}"\r\n\r\n'
            f"{value}\r\n".encode("utf-8")
        )
    parts.append(
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="file"; filename="{filename}"\r\n'
        "Content-Type: application/octet-stream\r\n\r\n".encode("utf-8")
    )
    parts.append(data)
    parts.append(f"\r\n--{boundary}--\r\n".encode("utf-8"))
    return b"".join(parts), f"multipart/form-data; boundary={boundary}"


def build_transfer_body(ticket: UploadTicket, data: bytes, filename: str = "file") -> Tuple[bytes, str]:
    """Body and Content-Type for sending data under ticket."""
    if ticket.is_params_mode:
        return encode_multipart(ticket.params or {}, data, filename=filename)
    if ticket.prefix is None or ticket.suffix is None or not ticket.content_type:
        raise ValueError("Ticket has neither params nor prefix/suffix")
    body = ticket.prefix.encode("utf-8") + data + ticket.suffix.encode("utf-8")
    return body, ticket.content_type
