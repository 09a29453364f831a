"""
Key Builder — collision-resistant storage keys.

    incoming/{category}/{timestamp_ms}_{token}_{name}.{ext}

The random token makes two ingestions of the same file in the same
millisecond land on different keys. The extension comes from the sniffed
or declared MIME type only; the sender's file name never decides it.
"""

from __future__ import annotations

import mimetypes
import re
import secrets
import string
import time
from pathlib import PurePosixPath
from typing import Optional

from ..models import MediaCategory

KEY_PREFIX = "incoming"
TOKEN_LENGTH = 9
TOKEN_ALPHABET = string.digits + string.ascii_lowercase
MAX_NAME_LENGTH = 64
FALLBACK_EXTENSION = "bin"

# Preferred extensions where mimetypes guesses something odd
MIME_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/heic": "heic",
    "image/heif": "heif",
    "image/avif": "avif",
    "image/bmp": "bmp",
    "image/tiff": "tif",
    "video/mp4": "mp4",
    "video/3gpp": "3gp",
    "video/quicktime": "mov",
    "video/webm": "webm",
    "video/x-matroska": "mkv",
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "audio/aac": "aac",
    "audio/amr": "amr",
    "audio/x-wav": "wav",
    "audio/webm": "weba",
    "audio/x-flac": "flac",
    "application/pdf": "pdf",
    "application/zip": "zip",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": "pptx",
    "text/plain": "txt",
    "text/csv": "csv",
}

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]+")


def random_token(length: int = TOKEN_LENGTH) -> str:
    """Random base-36 token from the OS CSPRNG."""
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def extension_for_mime(mime_type: Optional[str]) -> str:
    """File extension (no dot) for a MIME type, or ``bin``."""
    if not mime_type:
        return FALLBACK_EXTENSION
    base = mime_type.split(";", 1)[0].strip().lower()
    if base in MIME_EXTENSIONS:
        return MIME_EXTENSIONS[base]
    guessed = mimetypes.guess_extension(base)
    if guessed:
        return guessed.lstrip(".")
    return FALLBACK_EXTENSION


def derive_name(
    original_name: Optional[str],
    category: MediaCategory,
    message_id: Optional[str] = None,
) -> str:
    """
    Safe key component from the sender's file name.

    Keeps the stem only, replaces anything outside ``[A-Za-z0-9_-]`` with
    ``_`` and caps the length. Falls back to ``{category}_{message_id}``.
    """
    category = MediaCategory.parse(category)

    if original_name:
        # Windows-style separators count as directories too
        stem = PurePosixPath(original_name.replace("\\", "/")).stem
        name = _UNSAFE_NAME_CHARS.sub("_", stem).strip("_")[:MAX_NAME_LENGTH]
        if name:
            return name

    fallback = f"{category.value}_{message_id or 'media'}"
    return _UNSAFE_NAME_CHARS.sub("_", fallback)[:MAX_NAME_LENGTH]


def build_key(
    category: MediaCategory,
    timestamp_ms: Optional[int] = None,
    token: Optional[str] = None,
    original_name: Optional[str] = None,
    extension: Optional[str] = None,
    message_id: Optional[str] = None,
) -> str:
    """
    Build a storage key.

    Args:
        category: Media category (first path segment under ``incoming/``).
        timestamp_ms: Milliseconds since the epoch (now if None).
        token: Random token (fresh if None).
        original_name: Sender's file name, sanitized into the key.
        extension: Extension derived from the MIME type (``bin`` if empty).
        message_id: Used for the name when there is no file name.

    Returns:
        ``incoming/{category}/{timestamp}_{token}_{name}.{ext}``
    """
    category = MediaCategory.parse(category)
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    if token is None:
        token = random_token()

    name = derive_name(original_name, category, message_id)
    ext = _UNSAFE_NAME_CHARS.sub("", (extension or "").lstrip(".")).lower() or FALLBACK_EXTENSION

    return f"{KEY_PREFIX}/{category.value}/{timestamp_ms}_{token}_{name}.{ext}"


def key_for(category: MediaCategory, file_name: str) -> str:
    """Storage key for the file name part of a proxy URL."""
    return f"{KEY_PREFIX}/{MediaCategory.parse(category).value}/{file_name}"
