"""
Uploader — single PUT into the object store.

No partial-write recovery: if the store rejects the write the ingestion
fails and the caller keeps the upstream reference.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from ..errors import UploadError
from ..models import StoredObject
from .object_store import ObjectStore, ObjectStoreError

logger = logging.getLogger(__name__)


class Uploader:
    """Writes buffers to a store and hands back stable proxy URLs."""

    def __init__(self, store: ObjectStore, public_base_url: str):
        self.store = store
        self.public_base_url = public_base_url.rstrip("/")

    @classmethod
    def from_settings(cls, settings, store: Optional[ObjectStore] = None) -> "Uploader":
        from .object_store import build_store

        return cls(store or build_store(settings), settings.public_base_url)

    def public_url(self, key: str) -> str:
        """
        Proxy URL for a storage key.

        ``incoming/{category}/{file}`` → ``{base}/media/{category}/{file}``
        """
        parts = key.split("/")
        category, file_name = parts[-2], parts[-1]
        return f"{self.public_base_url}/media/{category}/{file_name}"

    def upload(
        self,
        data: bytes,
        key: str,
        content_type: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> StoredObject:
        """
        Write ``data`` under ``key``.

        Raises:
            UploadError: the store rejected the write.
        """
        try:
            info = self.store.put_object(key, data, content_type, metadata)
        except ObjectStoreError as e:
            raise UploadError(f"Store rejected {key}: {e}", reason="store") from e

        stored = StoredObject(
            storage_key=key,
            public_url=self.public_url(key),
            content_type=content_type,
            byte_size=info.size,
            metadata=info.metadata,
        )
        logger.info(
            f"Uploaded {key} ({stored.byte_size:,} bytes, {content_type}) to {self.store.name}",
            extra={"storage_key": key},
        )
        return stored
