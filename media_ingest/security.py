"""
Security Gate — reconcile the sniffed type with what the sender declared.

Rules, in order:
1. A dangerous payload (executable, script, active markup) is only accepted
   as a document whose declared MIME names exactly that type.
2. The sniffed family must fit the declared category
   (image/sticker → image/*, video → video/*, audio → audio/* plus the
   MP4/WebM containers voice notes often arrive in, document → anything).
3. Declared vs sniffed MIME: equal (after alias folding) passes; same
   top-level type passes with a warning unless strict matching is on;
   anything else is a type-confusion failure.
4. Nothing sniffed: trust the declaration, or fall back to a category default.

``authorize()`` returns the MIME type the object should be stored with.
"""

from __future__ import annotations

import logging
from typing import Optional

from .errors import TypeConfusionError
from .models import MediaCategory
from .sniff import DetectedType

logger = logging.getLogger(__name__)

# Alternative spellings → canonical MIME type
MIME_ALIASES = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "image/x-png": "image/png",
    "audio/mp3": "audio/mpeg",
    "audio/x-mp3": "audio/mpeg",
    "audio/mpeg3": "audio/mpeg",
    "audio/opus": "audio/ogg",
    "application/ogg": "audio/ogg",
    "audio/x-ogg": "audio/ogg",
    "audio/m4a": "audio/mp4",
    "audio/x-m4a": "audio/mp4",
    "audio/aac": "audio/aac",
    "audio/x-aac": "audio/aac",
    "audio/wav": "audio/x-wav",
    "audio/wave": "audio/x-wav",
    "audio/vnd.wave": "audio/x-wav",
    "video/x-m4v": "video/mp4",
    "application/x-pdf": "application/pdf",
}

# Sniffed family each category accepts; None accepts any family
CATEGORY_FAMILIES = {
    MediaCategory.IMAGE: {"image"},
    MediaCategory.STICKER: {"image"},
    MediaCategory.VIDEO: {"video"},
    MediaCategory.AUDIO: {"audio"},
    MediaCategory.DOCUMENT: None,
}

# Audio is often delivered in a video container
AUDIO_CONTAINER_MIMES = {"video/mp4", "video/webm", "video/3gpp"}

# Exact types a category accepts outside its family
CATEGORY_EXTRA_MIMES = {
    MediaCategory.AUDIO: AUDIO_CONTAINER_MIMES,
    MediaCategory.VIDEO: {"image/gif"},
}

# Containers shared by many formats (OOXML documents are zip files)
GENERIC_CONTAINER_MIMES = {
    "application/zip",
    "application/x-cfb",
    "application/octet-stream",
}

# Used when neither sniffing nor the sender gives a type
CATEGORY_DEFAULT_MIMES = {
    MediaCategory.IMAGE: "image/jpeg",
    MediaCategory.STICKER: "image/webp",
    MediaCategory.VIDEO: "video/mp4",
    MediaCategory.AUDIO: "audio/ogg",
    MediaCategory.DOCUMENT: "application/octet-stream",
}

# Dedicated channel for events that may indicate an adversarial sender
security_logger = logging.getLogger("media_ingest.security")


def normalize_mime(mime: Optional[str]) -> Optional[str]:
    """Lower-case, drop parameters ("; codecs=opus") and fold aliases."""
    if not mime:
        return None
    base = mime.split(";", 1)[0].strip().lower()
    if not base or "/" not in base:
        return None
    return MIME_ALIASES.get(base, base)


def _family(mime: str) -> str:
    return mime.split("/", 1)[0]


def _is_generic(mime: str, category: MediaCategory) -> bool:
    if mime in GENERIC_CONTAINER_MIMES:
        return True
    return category is MediaCategory.AUDIO and mime in AUDIO_CONTAINER_MIMES


def _fits_category(mime: str, category: MediaCategory) -> bool:
    families = CATEGORY_FAMILIES[category]
    if families is None:
        return True
    return _family(mime) in families or mime in CATEGORY_EXTRA_MIMES.get(category, set())


def authorize(
    detected: Optional[DetectedType],
    declared_mime: Optional[str],
    declared_category: MediaCategory,
    strict: bool = False,
) -> str:
    """
    Decide whether a payload may proceed, and under which content type.

    Args:
        detected: Result of ``sniff()`` (None if unrecognized).
        declared_mime: MIME type claimed by the sender, if any.
        declared_category: Category claimed by the sender.
        strict: Reject same-family format mismatches instead of warning.

    Returns:
        The MIME type to store the object with.

    Raises:
        TypeConfusionError: declared and detected types are incompatible.
    """
    category = MediaCategory.parse(declared_category)
    declared = normalize_mime(declared_mime)

    if detected is None:
        if declared is None:
            logger.warning(
                f"Type unknown and undeclared, using {category.value} default",
                extra={"category": category.value},
            )
            return CATEGORY_DEFAULT_MIMES[category]
        logger.warning(
            f"Unrecognized content, trusting declared type {declared}",
            extra={"category": category.value},
        )
        return declared

    actual = normalize_mime(detected.mime) or detected.mime

    def reject(why: str) -> TypeConfusionError:
        return TypeConfusionError(
            f"{why}: declared {declared or '-'} ({category.value}), detected {actual}",
            declared=declared,
            detected=actual,
            category=category.value,
        )

    if detected.is_dangerous:
        if category is not MediaCategory.DOCUMENT or declared != actual:
            raise reject("Active content disguised as media")
        logger.info(f"Accepting {actual} as an explicitly declared document")
        return actual

    if not _fits_category(actual, category):
        raise reject("Content does not match declared category")

    if declared is None or declared == actual:
        return actual

    same_family = _family(declared) == _family(actual)
    extras = CATEGORY_EXTRA_MIMES.get(category, set())
    shared_container = (actual in extras or declared in extras) and _fits_category(declared, category)

    if same_family or shared_container:
        if strict:
            raise reject("Declared format differs from content")
        # A generic container says less than the sender's label
        stored = declared if _is_generic(actual, category) else actual
        logger.warning(f"Declared {declared} but content is {actual}; storing as {stored}")
        return stored

    raise reject("Declared type differs from content")
