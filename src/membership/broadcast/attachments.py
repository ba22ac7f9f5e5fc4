"""Broadcast attachment sniffing, allow-listing and storage."""

import asyncio
import logging
import mimetypes
import uuid
from pathlib import Path
from typing import Optional

from membership.channels.base import Attachment
from membership.errors import ValidationError

logger = logging.getLogger(__name__)

DOCX_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

ALLOWED_CONTENT_TYPES = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "video/mp4": ".mp4",
    "application/pdf": ".pdf",
    "application/msword": ".doc",
    DOCX_TYPE: ".docx",
}

# ISO base media major brands that are MP4 video; HEIC, AVIF, QuickTime and 3GP are not
MP4_BRANDS = {
    b"isom", b"iso2", b"iso4", b"iso5", b"iso6", b"mp41", b"mp42", b"avc1", b"M4V ", b"dash",
}

# Leading-byte signatures, checked in order
_SIGNATURES = [
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"%PDF-", "application/pdf"),
    (b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1", "application/msword"),  # OLE2 compound file
]


class UnsupportedMediaError(ValidationError):
    http_status = 415


class AttachmentTooLargeError(ValidationError):
    http_status = 413


def sniff_content_type(data: bytes, filename: str, declared: Optional[str] = None) -> Optional[str]:
    """Work out an attachment's content type.

    Magic bytes win; the filename extension and then the declared type are
    only consulted when the bytes are inconclusive (docx is a zip container,
    so it needs the extension to be told apart from any other zip).
    """
    for signature, content_type in _SIGNATURES:
        if data.startswith(signature):
            return content_type
    if data[4:8] == b"ftyp":
        return "video/mp4" if data[8:12] in MP4_BRANDS else None

    guessed, _ = mimetypes.guess_type(filename)
    if data.startswith(b"PK\x03\x04"):
        # Not every mime.types table knows .docx
        is_docx = filename.lower().endswith(".docx") or DOCX_TYPE in (guessed, declared)
        return DOCX_TYPE if is_docx else None
    return guessed or declared


def load_attachment(
    filename: str,
    data: bytes,
    declared_type: Optional[str],
    max_bytes: int,
) -> Attachment:
    """Validate an uploaded file and wrap it as an Attachment.

    Raises:
        AttachmentTooLargeError: If the file exceeds max_bytes
        UnsupportedMediaError: If the content type is not allow-listed
        ValidationError: If the file is empty
    """
    if not data:
        raise ValidationError("Attached file is empty")
    if len(data) > max_bytes:
        raise AttachmentTooLargeError(
            f"Attached file is {len(data)} bytes; the limit is {max_bytes} bytes"
        )

    content_type = sniff_content_type(data, filename, declared_type)
    if content_type not in ALLOWED_CONTENT_TYPES:
        raise UnsupportedMediaError(
            f"Unsupported file type {content_type or 'unknown'}; allowed: "
            + ", ".join(sorted(ALLOWED_CONTENT_TYPES))
        )

    return Attachment(
        filename=Path(filename).name or f"attachment{ALLOWED_CONTENT_TYPES[content_type]}",
        content_type=content_type,
        data=data,
    )


class LocalAttachmentStore:
    """Stores attachments on disk; the app serves them under /media/."""

    def __init__(self, media_dir: str, public_base_url: str):
        self.media_dir = Path(media_dir)
        self.public_base_url = public_base_url.rstrip("/")

    async def save(self, attachment: Attachment) -> str:
        """Write the file and return its public URL (also set on the attachment)."""
        name = f"{uuid.uuid4().hex}{ALLOWED_CONTENT_TYPES.get(attachment.content_type, '')}"
        path = self.media_dir / name

        def _write() -> None:
            self.media_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(attachment.data)

        await asyncio.to_thread(_write)
        attachment.url = f"{self.public_base_url}/media/{name}"
        logger.info(f"Stored broadcast attachment {attachment.filename} as {name}")
        return attachment.url
