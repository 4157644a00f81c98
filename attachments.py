"""
attachments.py
--------------
HealthDoc Builder — ABDM Health Document Records — Attachment Encoder
---------------------------------------------------------------------
Turns uploaded files into base64 payloads for FHIR ``Binary.data``.

A "file" is anything with ``filename``, ``content_type`` and an async
``read()`` returning bytes: FastAPI's ``UploadFile``, ``LocalFile`` (CLI) or
``InMemoryFile`` (tests and programmatic callers).

Rules:
  • Payloads are plain base64, never prefixed with ``data:...;base64,``.
  • Zero files → exactly one placeholder attachment (a minimal PDF header),
    so every health document carries at least one Binary/DocumentReference.
  • A file that cannot be read raises ``AttachmentReadError`` naming the
    file.  The placeholder is never substituted for a selected file.
  • Output order always matches input order.

Project: HealthDoc Builder
"""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Sequence

logger = logging.getLogger(__name__)

PLACEHOLDER_PDF_B64 = "JVBERi0xLjQKJeLjz9MK"
PLACEHOLDER_CONTENT_TYPE = "application/pdf"
PLACEHOLDER_FILENAME = "placeholder.pdf"

class AttachmentReadError(Exception):
    """Raised when an uploaded file cannot be read; carries the filename."""

    def __init__(self, filename: str, reason: str) -> None:
        self.filename = filename
        self.reason = reason
        super().__init__(f"Could not read attachment '{filename}': {reason}")


@dataclass(frozen=True)
class EncodedAttachment:
    title:        str
    content_type: str
    data:         str
    placeholder:  bool = False


@dataclass
class InMemoryFile:
    filename:     str
    content:      bytes
    content_type: Optional[str] = None

    async def read(self) -> bytes:
        return self.content


class LocalFile:
    """A file on disk; content type is guessed from the extension."""

    _TYPES = {
        ".pdf":  "application/pdf",
        ".jpg":  "image/jpeg",
        ".jpeg": "image/jpeg",
        ".png":  "image/png",
    }

    def __init__(self, path: str | Path, content_type: Optional[str] = None) -> None:
        self.path = Path(path)
        self.filename = self.path.name
        self.content_type = content_type or self._TYPES.get(self.path.suffix.lower())

    async def read(self) -> bytes:
        return await asyncio.to_thread(self.path.read_bytes)


def placeholder_attachment() -> EncodedAttachment:
    return EncodedAttachment(
        title=PLACEHOLDER_FILENAME,
        content_type=PLACEHOLDER_CONTENT_TYPE,
        data=PLACEHOLDER_PDF_B64,
        placeholder=True,
    )


def _to_base64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


async def encode_attachment(file: Any) -> EncodedAttachment:
    """
    Read one uploaded file and return its base64 payload.

    Raises:
        AttachmentReadError: if ``read()`` fails or returns something other
                             than bytes.
    """
    filename = getattr(file, "filename", None) or PLACEHOLDER_FILENAME
    try:
        raw = await file.read()
    except Exception as exc:
        logger.warning("attachments: read failed for '%s' — %s", filename, exc)
        raise AttachmentReadError(filename, str(exc) or type(exc).__name__) from exc

    if isinstance(raw, str):
        raw = raw.encode("utf-8")
    if not isinstance(raw, (bytes, bytearray)):
        raise AttachmentReadError(filename, f"read() returned {type(raw).__name__}, expected bytes")

    content_type = getattr(file, "content_type", None) or PLACEHOLDER_CONTENT_TYPE
    logger.debug("attachments: encoded '%s' (%s, %d bytes).", filename, content_type, len(raw))
    return EncodedAttachment(title=filename, content_type=content_type, data=_to_base64(bytes(raw)))


async def encode_attachments(files: Sequence[Any]) -> List[EncodedAttachment]:
    """
    Encode every file concurrently, preserving input order.

    Returns a single placeholder attachment when *files* is empty.  The first
    ``AttachmentReadError`` propagates; no partial list is returned.
    """
    if not files:
        logger.info("attachments: no files uploaded — using placeholder PDF.")
        return [placeholder_attachment()]
    return list(await asyncio.gather(*(encode_attachment(f) for f in files)))
