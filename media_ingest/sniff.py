"""
Type Sniffer — identify a payload by its content, not its label.

``sniff()`` returns one of a small closed set of variants:

    Jpeg | Png | Gif | Webp(animated, frame_count) | Other(mime, extension, dangerous)

or None when nothing matches. The raster formats the optimizer handles are
recognized here directly (WebP also reports whether its container is
animated). Executables and scripts are recognized here so the security gate
can treat them specially. Everything else is delegated to ``filetype``.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import ClassVar, Optional

import filetype

logger = logging.getLogger(__name__)

# Only the head of the payload is ever inspected
SNIFF_BYTES = 8192

# Anything with these MIME types is never served as media
DANGEROUS_MIMES = {
    "application/x-executable",
    "application/x-msdownload",
    "application/x-dosexec",
    "application/x-mach-binary",
    "application/x-sharedlib",
    "application/java-vm",
    "application/x-shellscript",
    "text/x-shellscript",
    "application/x-httpd-php",
    "text/html",
    "image/svg+xml",
}


@dataclass(frozen=True)
class DetectedType:
    """Base of the sniffed-type union."""

    mime: str
    extension: str
    dangerous: bool = False

    pil_format: ClassVar[Optional[str]] = None

    @property
    def family(self) -> str:
        """Top-level MIME type ("image", "audio", ...)."""
        return self.mime.split("/", 1)[0]

    @property
    def is_raster(self) -> bool:
        """True for formats the optimizer can decode and re-encode."""
        return self.pil_format is not None

    @property
    def is_dangerous(self) -> bool:
        return self.dangerous or self.mime in DANGEROUS_MIMES


@dataclass(frozen=True)
class Jpeg(DetectedType):
    mime: str = "image/jpeg"
    extension: str = "jpg"

    pil_format: ClassVar[Optional[str]] = "JPEG"


@dataclass(frozen=True)
class Png(DetectedType):
    mime: str = "image/png"
    extension: str = "png"

    pil_format: ClassVar[Optional[str]] = "PNG"


@dataclass(frozen=True)
class Gif(DetectedType):
    mime: str = "image/gif"
    extension: str = "gif"

    pil_format: ClassVar[Optional[str]] = "GIF"


@dataclass(frozen=True)
class Webp(DetectedType):
    mime: str = "image/webp"
    extension: str = "webp"
    animated: bool = False
    frame_count: int = 1

    pil_format: ClassVar[Optional[str]] = "WEBP"


@dataclass(frozen=True)
class Other(DetectedType):
    """Any recognized format the pipeline does not transform."""


# ── Magic numbers ────────────────────────────────────────────

JPEG_MAGIC = b"\xff\xd8\xff"
PNG_MAGIC = b"\x89PNG\r\n\x1a\n"
GIF_MAGICS = (b"GIF87a", b"GIF89a")

ELF_MAGIC = b"\x7fELF"
MACHO_MAGICS = (
    b"\xfe\xed\xfa\xce", b"\xfe\xed\xfa\xcf",
    b"\xce\xfa\xed\xfe", b"\xcf\xfa\xed\xfe",
)
PE_HEADER_OFFSET = 0x3C   # e_lfanew in the DOS header
PE_SIGNATURE = b"PE\x00\x00"

MARKUP_PREFIXES = (b"<!doctype html", b"<html", b"<script", b"<head", b"<body", b"<iframe")

WEBP_VP8X_ANIMATION_FLAG = 0x02


def sniff(data: bytes) -> Optional[DetectedType]:
    """
    Detect a payload's real type from its leading bytes.

    Returns:
        A DetectedType variant, or None if the format is not recognized.
    """
    if not data:
        return None

    head = data[:SNIFF_BYTES]

    if head.startswith(JPEG_MAGIC):
        return Jpeg()
    if head.startswith(PNG_MAGIC):
        return Png()
    if head[:6] in GIF_MAGICS:
        return Gif()
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return _sniff_webp(data)

    executable = _sniff_executable(data, head)
    if executable is not None:
        return executable

    kind = filetype.guess(head)
    # filetype matches any "MZ" prefix; only a PE image counts as a program
    if kind is not None and kind.mime != "application/x-msdownload":
        return Other(mime=kind.mime, extension=kind.extension)

    return None


def _sniff_executable(data: bytes, head: bytes) -> Optional[Other]:
    """Native binaries, scripts and active markup."""
    if head.startswith(ELF_MAGIC):
        return Other("application/x-executable", "elf", dangerous=True)
    if head[:4] in MACHO_MAGICS:
        return Other("application/x-mach-binary", "macho", dangerous=True)
    if _is_pe_image(data):
        return Other("application/x-msdownload", "exe", dangerous=True)
    if head.startswith(b"#!"):
        return Other("text/x-shellscript", "sh", dangerous=True)

    text = head.lstrip(b"\xef\xbb\xbf \t\r\n").lower()
    if text.startswith(b"<?php"):
        return Other("application/x-httpd-php", "php", dangerous=True)
    if text.startswith(MARKUP_PREFIXES):
        return Other("text/html", "html", dangerous=True)
    if text.startswith(b"<svg") or (text.startswith(b"<?xml") and b"<svg" in text):
        return Other("image/svg+xml", "svg", dangerous=True)

    return None


def _is_pe_image(data: bytes) -> bool:
    """An "MZ" DOS header whose e_lfanew points at a "PE\\0\\0" signature."""
    if not data.startswith(b"MZ") or len(data) < PE_HEADER_OFFSET + 4:
        return False
    (pe_offset,) = struct.unpack_from("<I", data, PE_HEADER_OFFSET)
    return data[pe_offset:pe_offset + 4] == PE_SIGNATURE


def _sniff_webp(data: bytes) -> Webp:
    """
    Walk the RIFF chunks of a WebP file.

    An animated WebP has a VP8X chunk with the animation flag set and one
    ANMF chunk per frame. Truncated or odd containers degrade to "static".
    """
    animated = False
    frames = 0
    offset = 12
    end = len(data)

    while offset + 8 <= end:
        fourcc = data[offset:offset + 4]
        (size,) = struct.unpack("<I", data[offset + 4:offset + 8])
        payload = offset + 8

        if fourcc == b"VP8X" and payload < end:
            animated = bool(data[payload] & WEBP_VP8X_ANIMATION_FLAG)
        elif fourcc == b"ANMF":
            frames += 1

        # Chunks are padded to an even length
        offset = payload + size + (size & 1)

    return Webp(animated=animated and frames != 1, frame_count=max(frames, 1))
