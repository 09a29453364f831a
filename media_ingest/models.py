"""
Ingestion data model.

    MediaReference  — what the webhook receiver hands us (one per message)
    RawPayload      — fetched/decrypted bytes, in memory only
    TransformDecision — whether the optimizer may touch an image
    StoredObject    — what ended up in the object store

## Building a reference from a protocol message

    ref = MediaReference.from_message("3EB0C767D26A", {
        "imageMessage": {
            "url": "https://mmg.whatsapp.net/v/t62.7118-24/...enc",
            "mimetype": "image/jpeg",
            "mediaKey": {"0": 12, "1": 250, ...},
            "fileEncSha256": {...},
            "fileSha256": {...},
        }
    })
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class MediaCategory(str, Enum):
    """Coarse attachment classification declared by the message."""

    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    STICKER = "sticker"
    DOCUMENT = "document"

    @property
    def is_image_like(self) -> bool:
        return self in (MediaCategory.IMAGE, MediaCategory.STICKER)

    @classmethod
    def parse(cls, value: Any) -> "MediaCategory":
        """Accept an enum member or a case-insensitive string."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown media category: {value!r}") from None


# Protocol message field → category
MESSAGE_TYPE_CATEGORIES = {
    "imageMessage": MediaCategory.IMAGE,
    "videoMessage": MediaCategory.VIDEO,
    "audioMessage": MediaCategory.AUDIO,
    "stickerMessage": MediaCategory.STICKER,
    "documentMessage": MediaCategory.DOCUMENT,
}

# Key material fields carried by the protocol's media messages
DECRYPTION_FIELDS = ("mediaKey", "fileEncSha256", "fileSha256")

# Pillow formats the optimizer re-encodes
OPTIMIZABLE_FORMATS = frozenset({"JPEG", "PNG", "WEBP", "GIF"})

# Containers that can hold more than one frame
MULTI_FRAME_FORMATS = frozenset({"GIF", "WEBP", "PNG"})


@dataclass
class MediaReference:
    """A remote attachment waiting to be ingested."""

    message_id: str
    remote_url: str
    declared_category: MediaCategory
    declared_mime_type: Optional[str] = None
    original_file_name: Optional[str] = None
    decryption_context: Optional[Any] = None
    caption: Optional[str] = None

    def __post_init__(self):
        self.declared_category = MediaCategory.parse(self.declared_category)

    @classmethod
    def from_message(
        cls,
        message_id: str,
        message: Dict[str, Any],
    ) -> Optional["MediaReference"]:
        """
        Build a reference from a raw protocol message dict.

        Returns None when the message carries no downloadable media.
        """
        # Documents sent with a caption are wrapped one level deeper
        wrapped = message.get("documentWithCaptionMessage")
        if isinstance(wrapped, dict) and isinstance(wrapped.get("message"), dict):
            message = wrapped["message"]

        for field_name, category in MESSAGE_TYPE_CATEGORIES.items():
            media = message.get(field_name)
            if not isinstance(media, dict) or not media.get("url"):
                continue

            context = {k: media[k] for k in DECRYPTION_FIELDS if media.get(k) is not None}
            return cls(
                message_id=message_id,
                remote_url=media["url"],
                declared_category=category,
                declared_mime_type=media.get("mimetype"),
                original_file_name=media.get("fileName"),
                decryption_context=context or None,
                caption=media.get("caption"),
            )

        return None


@dataclass
class RawPayload:
    """Fetched bytes for one invocation. Never persisted, never shared."""

    data: bytes
    source_url: str
    sniffed_mime_type: Optional[str] = None
    was_encrypted: bool = False

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class TransformDecision:
    """Outcome of the animated-image guard."""

    is_animated_multi_frame: bool
    frame_count: int
    source_format: str
    width: int = 0
    height: int = 0

    @property
    def should_optimize(self) -> bool:
        return self.source_format in OPTIMIZABLE_FORMATS and not self.is_animated_multi_frame

    @classmethod
    def passthrough(cls) -> "TransformDecision":
        """Decision for payloads the optimizer never handles."""
        return cls(is_animated_multi_frame=False, frame_count=0, source_format="")


@dataclass
class StoredObject:
    """An object written to the store. Immutable once created."""

    storage_key: str
    public_url: str
    content_type: str
    byte_size: int
    metadata: Dict[str, str] = field(default_factory=dict)
