"""
Optimizer — resize and recompress static raster images before storage.

Image pipeline:
1. Auto-orient from EXIF (the rotation is baked into the pixels)
2. Downscale to fit max_width × max_height (never upscale)
3. Flatten or convert color mode for the output format
4. Re-encode per format with all metadata dropped

    JPEG  quality 85, progressive, optimized Huffman tables
    WEBP  quality 80, method 4
    PNG   compress_level 7 (opaque PNGs become JPEG by default)
    GIF   optimized palette

If the re-encode is not smaller and nothing else changed (no resize, no
reorientation, no conversion), the original bytes are returned untouched,
but only when they carry no metadata; otherwise the stripped re-encode wins.

Animated images never reach this module; ``transform.selector.decide()``
keeps them out.

## Usage

    result = optimize_image(data, OptimizeOptions(max_width=1920))
    result.data, result.mime_type, result.reduction_pct
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Optional

from ..errors import CorruptImageError

logger = logging.getLogger(__name__)

# ── Defaults ─────────────────────────────────────────────────

MAX_DIMENSION = 1920       # px, longest side
JPEG_QUALITY = 85
WEBP_QUALITY = 80
PNG_COMPRESS_LEVEL = 7     # zlib level (0-9)
WEBP_METHOD = 4            # compression effort (0-6)

FORMAT_MIMES = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "GIF": "image/gif",
    "WEBP": "image/webp",
}

METADATA_INFO_KEYS = ("exif", "xmp", "XML:com.adobe.xmp", "icc_profile", "comment", "photoshop")

FORMAT_EXTENSIONS = {
    "JPEG": "jpg",
    "PNG": "png",
    "GIF": "gif",
    "WEBP": "webp",
}


@dataclass
class OptimizeOptions:
    """Encoder settings for one optimize call."""

    max_width: int = MAX_DIMENSION
    max_height: int = MAX_DIMENSION
    jpeg_quality: int = JPEG_QUALITY
    webp_quality: int = WEBP_QUALITY
    png_compress_level: int = PNG_COMPRESS_LEVEL
    convert_png_to_jpeg: bool = True
    convert_to_webp: bool = False

    @classmethod
    def from_settings(cls, settings) -> "OptimizeOptions":
        return cls(
            max_width=settings.max_dimension,
            max_height=settings.max_dimension,
            jpeg_quality=settings.jpeg_quality,
            webp_quality=settings.webp_quality,
            convert_to_webp=settings.convert_to_webp,
        )


@dataclass
class OptimizedImage:
    """Result of ``optimize_image()``."""

    data: bytes
    mime_type: str
    extension: str
    original_size: int
    optimized_size: int
    width: int
    height: int
    was_resized: bool = False
    was_converted: bool = False

    @property
    def reduction_pct(self) -> float:
        """Percentage of bytes saved (negative if the output grew)."""
        if not self.original_size:
            return 0.0
        return round((1 - self.optimized_size / self.original_size) * 100, 1)

    @property
    def bytes_saved(self) -> int:
        return max(self.original_size - self.optimized_size, 0)


# ── Image optimization ───────────────────────────────────────


def optimize_image(data: bytes, options: Optional[OptimizeOptions] = None) -> OptimizedImage:
    """
    Optimize a static image: orient, resize, recompress.

    Args:
        data: Raw image bytes (JPEG, PNG, GIF or WebP).
        options: Encoder settings (defaults if None).

    Returns:
        OptimizedImage. ``data`` is the original buffer when re-encoding
        gained nothing.

    Raises:
        CorruptImageError: Pillow cannot decode the buffer.
    """
    from PIL import Image, ImageOps

    options = options or OptimizeOptions()
    original_size = len(data)

    try:
        img = Image.open(io.BytesIO(data))
        source_format = img.format or ""
        img.load()
    except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as e:
        raise CorruptImageError(f"Cannot decode image: {e}") from e

    if source_format not in FORMAT_MIMES:
        raise CorruptImageError(f"Unsupported image format: {source_format or 'unknown'}")

    original_dims = img.size
    carries_metadata = _carries_metadata(img)
    gif_transparency = img.info.get("transparency") if source_format == "GIF" else None

    # ── Orientation ──────────────────────────────────────────
    oriented = ImageOps.exif_transpose(img)
    was_reoriented = oriented.size != img.size or _orientation(img) not in (None, 1)
    img = oriented

    # ── Resize if over the bounds ────────────────────────────
    w, h = img.size
    was_resized = w > options.max_width or h > options.max_height
    if was_resized:
        img.thumbnail((options.max_width, options.max_height), Image.LANCZOS)
        logger.debug(f"Resized: {w}x{h} → {img.size[0]}x{img.size[1]}")

    # ── Pick output format ───────────────────────────────────
    fmt = source_format
    if options.convert_to_webp:
        fmt = "WEBP"
    elif fmt == "PNG" and options.convert_png_to_jpeg and not _has_meaningful_alpha(img):
        fmt = "JPEG"
    was_converted = fmt != source_format

    # ── Encode ───────────────────────────────────────────────
    img = _prepare_mode(img, fmt)
    img.info = {}
    buf = io.BytesIO()
    try:
        img.save(buf, format=fmt, **_save_kwargs(fmt, options, gif_transparency))
    except (OSError, ValueError) as e:
        raise CorruptImageError(f"Cannot re-encode image as {fmt}: {e}") from e
    optimized = buf.getvalue()

    if len(optimized) >= original_size and not (was_resized or was_reoriented or carries_metadata):
        # Re-encoding (or converting) gained nothing
        logger.debug(f"Re-encode not smaller ({len(optimized):,} ≥ {original_size:,}), keeping original")
        return OptimizedImage(
            data=data,
            mime_type=FORMAT_MIMES[source_format],
            extension=FORMAT_EXTENSIONS[source_format],
            original_size=original_size,
            optimized_size=original_size,
            width=original_dims[0],
            height=original_dims[1],
        )

    result = OptimizedImage(
        data=optimized,
        mime_type=FORMAT_MIMES[fmt],
        extension=FORMAT_EXTENSIONS[fmt],
        original_size=original_size,
        optimized_size=len(optimized),
        width=img.size[0],
        height=img.size[1],
        was_resized=was_resized,
        was_converted=was_converted,
    )

    logger.info(
        f"Optimized: {original_dims[0]}x{original_dims[1]} ({source_format}) "
        f"→ {result.width}x{result.height} ({fmt}): "
        f"{original_size:,} → {result.optimized_size:,} bytes "
        f"({result.reduction_pct:.0f}% saved)"
    )

    return result


def _carries_metadata(img) -> bool:
    """True if the decoded source holds EXIF, XMP, ICC, comments or text chunks."""
    if any(img.info.get(key) for key in METADATA_INFO_KEYS):
        return True
    if getattr(img, "text", None):  # PNG tEXt/iTXt/zTXt
        return True
    try:
        return len(img.getexif()) > 0
    except Exception:  # malformed EXIF
        return True


def _orientation(img) -> Optional[int]:
    try:
        return img.getexif().get(0x0112)
    except Exception:  # malformed EXIF
        return None


def _prepare_mode(img, fmt: str):
    """Convert the color mode to something the target encoder accepts."""
    from PIL import Image

    if fmt == "JPEG":
        if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
            # JPEG has no alpha; flatten onto white
            rgba = img.convert("RGBA")
            bg = Image.new("RGB", img.size, (255, 255, 255))
            bg.paste(rgba, mask=rgba.split()[-1])
            return bg
        if img.mode not in ("RGB", "L"):
            return img.convert("RGB")
        return img

    if fmt == "WEBP":
        if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
            rgba = img.convert("RGBA")
            return rgba if _has_meaningful_alpha(rgba) else rgba.convert("RGB")
        if img.mode != "RGB":
            return img.convert("RGB")
        return img

    if fmt == "PNG" and img.mode == "RGBA" and not _has_meaningful_alpha(img):
        return img.convert("RGB")

    if fmt == "GIF" and img.mode not in ("P", "L"):
        return img.convert("P", palette=Image.ADAPTIVE)

    return img


def _save_kwargs(fmt: str, options: OptimizeOptions, gif_transparency) -> dict:
    # No exif/icc_profile keys: metadata is dropped on save
    if fmt == "JPEG":
        return {"quality": options.jpeg_quality, "optimize": True, "progressive": True}
    if fmt == "WEBP":
        return {"quality": options.webp_quality, "method": WEBP_METHOD}
    if fmt == "PNG":
        return {"optimize": False, "compress_level": options.png_compress_level}
    if fmt == "GIF":
        kwargs = {"optimize": True}
        if gif_transparency is not None:
            kwargs["transparency"] = gif_transparency
        return kwargs
    return {}


def _has_meaningful_alpha(img) -> bool:
    """Check if an image has non-trivial alpha (not all 255)."""
    if img.mode in ("RGBA", "LA"):
        alpha = img.getchannel("A")
    elif img.mode == "P" and "transparency" in img.info:
        alpha = img.convert("RGBA").getchannel("A")
    else:
        return False
    min_alpha, _ = alpha.getextrema()
    return min_alpha < 255
