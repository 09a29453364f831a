"""
Storage — key building, object stores and the uploader.
"""

from .keys import build_key, derive_name, extension_for_mime, key_for, random_token
from .object_store import (
    LocalObjectStore,
    ObjectBody,
    ObjectInfo,
    ObjectNotFound,
    ObjectStore,
    ObjectStoreError,
    S3ObjectStore,
    build_store,
    sanitize_metadata,
)
from .uploader import Uploader

__all__ = [
    "LocalObjectStore",
    "ObjectBody",
    "ObjectInfo",
    "ObjectNotFound",
    "ObjectStore",
    "ObjectStoreError",
    "S3ObjectStore",
    "Uploader",
    "build_key",
    "build_store",
    "derive_name",
    "extension_for_mime",
    "key_for",
    "random_token",
    "sanitize_metadata",
]
