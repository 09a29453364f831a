"""
Media Decryption — unwrap attachments stored on the messaging CDN.

Attachments hosted on the protocol's media CDN (mmg.whatsapp.net) are
encrypted per message. The message itself carries the key material; this
module turns that material plus the downloaded body back into plaintext.

## Cryptographic Design

- **Key expansion**: HKDF-SHA256(media_key, info=<media type label>) → 112 bytes
- **IV**: expanded[0:16]
- **Cipher key**: expanded[16:48] (AES-256-CBC, PKCS7 padding)
- **MAC key**: expanded[48:80] (HMAC-SHA256, truncated to 10 bytes)

## Encrypted Body Layout

    ┌──────────────────────────────────────────────┐
    │  Ciphertext (AES-256-CBC, N × 16 bytes)      │
    │  MAC = HMAC(mac_key, iv ‖ ciphertext)[:10]   │
    └──────────────────────────────────────────────┘

Integrity is checked three ways, each only when the message supplied the
corresponding hash: sha256(body) == fileEncSha256, the truncated MAC, and
sha256(plaintext) == fileSha256.

## Key Material Normalization

The gateway serializes binary fields in whatever shape its JSON encoder
produced: a list of byte values, an object keyed "0".."n" (a serialized
Node Buffer), {"type": "Buffer", "data": [...]}, or a base64 string.
``DecryptionContext.parse()`` is the single place that turns any of those
into real ``bytes``.

## Usage

    from media_ingest.fetch.decryptor import DecryptionContext, decrypt_media

    context = DecryptionContext.parse(ref.decryption_context)
    plaintext = decrypt_media(body, context, MediaCategory.AUDIO)
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from ..errors import DecryptionError
from ..models import MediaCategory

logger = logging.getLogger(__name__)

# -- Constants ----------------------------------------------------------------

MEDIA_KEY_BYTES = 32
EXPANDED_KEY_BYTES = 112
IV_BYTES = 16
CIPHER_KEY_BYTES = 32
MAC_KEY_BYTES = 32
MAC_BYTES = 10  # truncated HMAC appended to the ciphertext
BLOCK_BYTES = 16  # AES block size
SHA256_BYTES = 32

# HKDF info label per category. Stickers are images on the wire.
HKDF_INFO = {
    MediaCategory.IMAGE: b"WhatsApp Image Keys",
    MediaCategory.STICKER: b"WhatsApp Image Keys",
    MediaCategory.VIDEO: b"WhatsApp Video Keys",
    MediaCategory.AUDIO: b"WhatsApp Audio Keys",
    MediaCategory.DOCUMENT: b"WhatsApp Document Keys",
}


# -- Key material -------------------------------------------------------------


def _bytes_from_ints(values: Any) -> bytes:
    try:
        return bytes(int(v) for v in values)
    except (TypeError, ValueError):
        raise ValueError("key material must be a sequence of byte values (0-255)") from None


def normalize_key_material(value: Any) -> Optional[bytes]:
    """
    Coerce a transport-serialized binary field into bytes.

    Accepts bytes, a list of ints, a dict of index → int, a Node-style
    {"type": "Buffer", "data": [...]} dict, or a base64 string.

    Raises:
        ValueError: if the value cannot be interpreted as bytes.
    """
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)

    if isinstance(value, dict):
        if value.get("type") == "Buffer" and "data" in value:
            return normalize_key_material(value["data"])
        try:
            ordered = sorted(value.items(), key=lambda item: int(item[0]))
        except (TypeError, ValueError):
            raise ValueError("key material object must be keyed by byte index") from None
        return _bytes_from_ints(v for _, v in ordered)

    if isinstance(value, (list, tuple)):
        return _bytes_from_ints(value)

    if isinstance(value, str):
        text = value.strip()
        try:
            return base64.b64decode(text, validate=True)
        except binascii.Error:
            pass
        try:
            return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))
        except binascii.Error:
            raise ValueError("key material string is not base64") from None

    raise ValueError(f"unsupported key material type: {type(value).__name__}")


class DecryptionContext(BaseModel):
    """Key material for one encrypted attachment, always as real bytes."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    media_key: bytes
    file_enc_sha256: Optional[bytes] = None
    file_sha256: Optional[bytes] = None

    @field_validator("media_key", "file_enc_sha256", "file_sha256", mode="before")
    @classmethod
    def _to_bytes(cls, value: Any) -> Optional[bytes]:
        return normalize_key_material(value)

    @field_validator("media_key")
    @classmethod
    def _check_key_length(cls, value: bytes) -> bytes:
        if len(value) != MEDIA_KEY_BYTES:
            raise ValueError(f"media key must be {MEDIA_KEY_BYTES} bytes, got {len(value)}")
        return value

    @field_validator("file_enc_sha256", "file_sha256")
    @classmethod
    def _check_hash_length(cls, value: Optional[bytes]) -> Optional[bytes]:
        if value is not None and len(value) != SHA256_BYTES:
            raise ValueError(f"hash must be {SHA256_BYTES} bytes, got {len(value)}")
        return value

    @classmethod
    def parse(cls, raw: Any) -> "DecryptionContext":
        """
        Build a context from whatever the webhook handed over.

        Accepts an existing context, or a dict using either the protocol's
        camelCase names (mediaKey, fileEncSha256, fileSha256) or snake_case.

        Raises:
            DecryptionError: missing_context or bad_key.
        """
        if raw is None:
            raise DecryptionError("No decryption context supplied", reason="missing_context")
        if isinstance(raw, cls):
            return raw
        if not isinstance(raw, dict):
            raise DecryptionError(
                f"Decryption context must be a mapping, got {type(raw).__name__}",
                reason="bad_key",
            )

        data: Dict[str, Any] = {
            "media_key": raw.get("media_key", raw.get("mediaKey")),
            "file_enc_sha256": raw.get("file_enc_sha256", raw.get("fileEncSha256")),
            "file_sha256": raw.get("file_sha256", raw.get("fileSha256")),
        }
        if data["media_key"] is None:
            raise DecryptionError("Decryption context has no media key", reason="missing_context")

        try:
            return cls(**data)
        except ValidationError as e:
            raise DecryptionError(f"Malformed key material: {e.errors()[0]['msg']}", reason="bad_key") from e


# -- Key expansion ------------------------------------------------------------


def expand_media_key(media_key: bytes, category: MediaCategory) -> Dict[str, bytes]:
    """
    Expand a media key into IV, cipher key and MAC key.

    Args:
        media_key: 32-byte key from the message.
        category: Media category (selects the HKDF info label).

    Returns:
        Dict with "iv", "cipher_key", "mac_key".
    """
    from cryptography.hazmat.primitives import hashes
    from cryptography.hazmat.primitives.kdf.hkdf import HKDF

    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=EXPANDED_KEY_BYTES,
        salt=None,
        info=HKDF_INFO[MediaCategory.parse(category)],
    )
    expanded = hkdf.derive(media_key)

    return {
        "iv": expanded[:IV_BYTES],
        "cipher_key": expanded[IV_BYTES:IV_BYTES + CIPHER_KEY_BYTES],
        "mac_key": expanded[IV_BYTES + CIPHER_KEY_BYTES:IV_BYTES + CIPHER_KEY_BYTES + MAC_KEY_BYTES],
    }


def _mac(mac_key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    return hmac.new(mac_key, iv + ciphertext, hashlib.sha256).digest()[:MAC_BYTES]


# -- Encryption / Decryption --------------------------------------------------


def decrypt_media(
    body: bytes,
    context: DecryptionContext,
    category: MediaCategory,
) -> bytes:
    """
    Verify and decrypt an encrypted attachment body.

    Args:
        body: Downloaded bytes (ciphertext followed by the 10-byte MAC).
        context: Parsed key material.
        category: Declared media category.

    Returns:
        Plaintext bytes.

    Raises:
        DecryptionError: integrity (hash/MAC mismatch, bad padding) or bad_key.
    """
    from cryptography.hazmat.primitives import padding
    from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

    if len(body) <= MAC_BYTES or (len(body) - MAC_BYTES) % BLOCK_BYTES:
        raise DecryptionError(
            f"Encrypted body has invalid length ({len(body)} bytes)",
            reason="integrity",
        )

    if context.file_enc_sha256 is not None:
        if not hmac.compare_digest(hashlib.sha256(body).digest(), context.file_enc_sha256):
            raise DecryptionError("Encrypted body hash mismatch", reason="integrity")

    keys = expand_media_key(context.media_key, category)
    ciphertext, mac = body[:-MAC_BYTES], body[-MAC_BYTES:]

    if not hmac.compare_digest(_mac(keys["mac_key"], keys["iv"], ciphertext), mac):
        raise DecryptionError("Media MAC verification failed", reason="integrity")

    decryptor = Cipher(algorithms.AES(keys["cipher_key"]), modes.CBC(keys["iv"])).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        plaintext = unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise DecryptionError("Invalid padding after decryption", reason="integrity") from e

    if context.file_sha256 is not None:
        if not hmac.compare_digest(hashlib.sha256(plaintext).digest(), context.file_sha256):
            raise DecryptionError("Plaintext hash mismatch", reason="integrity")

    logger.debug(f"Decrypted {len(body):,} → {len(plaintext):,} bytes ({category.value})")
    return plaintext


def encrypt_media(
    plaintext: bytes,
    category: MediaCategory,
    media_key: Optional[bytes] = None,
) -> Dict[str, Any]:
    """
    Encrypt bytes the way the messaging client does before uploading.

    Used to produce fixtures and by re-upload tooling; a fresh random media
    key is generated unless one is given.

    Returns:
        Dict with "body" (ciphertext + MAC) and "context" (DecryptionContext).
    """
    from cryptography.hazmat.primitives import padding
    from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

    media_key = media_key or os.urandom(MEDIA_KEY_BYTES)
    keys = expand_media_key(media_key, category)

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()

    encryptor = Cipher(algorithms.AES(keys["cipher_key"]), modes.CBC(keys["iv"])).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    body = ciphertext + _mac(keys["mac_key"], keys["iv"], ciphertext)

    return {
        "body": body,
        "context": DecryptionContext(
            media_key=media_key,
            file_enc_sha256=hashlib.sha256(body).digest(),
            file_sha256=hashlib.sha256(plaintext).digest(),
        ),
    }
