"""
Fetch — download and decrypt remote attachments.
"""

from .decryptor import DecryptionContext, decrypt_media, encrypt_media, normalize_key_material
from .fetcher import Fetcher

__all__ = [
    "DecryptionContext",
    "Fetcher",
    "decrypt_media",
    "encrypt_media",
    "normalize_key_material",
]
