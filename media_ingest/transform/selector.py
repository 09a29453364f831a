"""
Transform Selector — keep animated images away from the optimizer.

Re-encoding a multi-frame GIF/WebP/APNG with a single-frame encoder keeps
frame 1 and silently drops the animation. ``decide()`` reads the container
metadata (format, size, frame count) without decoding pixels, and the
pipeline only optimizes when the decision says so.
"""

from __future__ import annotations

import io
import logging
from typing import Optional

from ..errors import CorruptImageError
from ..models import MULTI_FRAME_FORMATS, MediaCategory, TransformDecision
from ..sniff import DetectedType, Webp

logger = logging.getLogger(__name__)


def decide(
    data: bytes,
    category: MediaCategory,
    detected: Optional[DetectedType] = None,
) -> TransformDecision:
    """
    Inspect an image payload and decide whether it may be optimized.

    Args:
        data: Payload bytes.
        category: Declared media category; only image and sticker apply.
        detected: Sniffed type, used to tell corrupt images from unknown formats.

    Returns:
        TransformDecision (pass-through for non-image categories and
        unrecognized formats).

    Raises:
        CorruptImageError: the sniffer recognized a raster format but the
            container cannot be parsed.
    """
    from PIL import Image

    category = MediaCategory.parse(category)
    if not category.is_image_like:
        return TransformDecision.passthrough()
    if detected is not None and not detected.is_raster:
        return TransformDecision.passthrough()

    try:
        with Image.open(io.BytesIO(data)) as img:
            source_format = img.format or ""
            width, height = img.size
            frame_count = getattr(img, "n_frames", 1)
    except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as e:
        if detected is not None:
            raise CorruptImageError(f"Cannot read {detected.mime} container: {e}") from e
        logger.info(f"Unrecognized image container, storing as-is: {e}")
        return TransformDecision.passthrough()

    # The RIFF walk sees ANMF chunks even when Pillow lacks animation support
    if isinstance(detected, Webp) and detected.animated:
        frame_count = max(frame_count, detected.frame_count, 2)

    is_animated = source_format in MULTI_FRAME_FORMATS and frame_count > 1

    decision = TransformDecision(
        is_animated_multi_frame=is_animated,
        frame_count=frame_count,
        source_format=source_format,
        width=width,
        height=height,
    )

    if is_animated:
        logger.info(
            f"Animated {source_format} ({frame_count} frames, {width}x{height}), "
            f"skipping optimizer"
        )

    return decision
