"""
Shared fixtures for ingestion and proxy tests.

Provides settings pointing at a temporary directory, an in-memory object
store that records every write, and a metrics registry reset between
tests so counters start at zero.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional

import pytest

from media_ingest.config import IngestSettings, reset_settings
from media_ingest.observability.metrics import metrics
from media_ingest.storage import ObjectBody, ObjectInfo, ObjectNotFound, ObjectStore, ObjectStoreError
from media_ingest.storage.object_store import sanitize_metadata


class MemoryObjectStore(ObjectStore):
    """Dict-backed store. ``fail_with`` makes every call raise."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.infos: Dict[str, ObjectInfo] = {}
        self.put_calls = 0
        self.fail_with: Optional[Exception] = None

    @property
    def name(self) -> str:
        return "memory"

    def _maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with

    def put_object(self, key, data, content_type, metadata=None) -> ObjectInfo:
        self.put_calls += 1
        self._maybe_fail()
        info = ObjectInfo(key=key, size=len(data), content_type=content_type,
                          metadata=sanitize_metadata(metadata))
        self.objects[key] = bytes(data)
        self.infos[key] = info
        return info

    def head_object(self, key) -> ObjectInfo:
        self._maybe_fail()
        if key not in self.infos:
            raise ObjectNotFound(key)
        return self.infos[key]

    def get_object(self, key, start=None, end=None) -> ObjectBody:
        info = self.head_object(key)
        data = self.objects[key]
        first = start or 0
        last = len(data) - 1 if end is None else min(end, len(data) - 1)
        return ObjectBody(info=info, chunks=[data[first:last + 1]], start=first, end=last)


@pytest.fixture(autouse=True)
def reset_state():
    """Fresh metrics and settings for every test."""
    metrics.reset()
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings(tmp_path: Path) -> IngestSettings:
    """Local-backend settings rooted in a temp directory."""
    return IngestSettings(
        storage_backend="local",
        local_root=str(tmp_path / "store"),
        public_base_url="https://media.example.com",
        audit_log_path=str(tmp_path / "audit" / "security.ndjson"),
        fetch_timeout_seconds=5.0,
        max_download_bytes=5 * 1024 * 1024,
    )


@pytest.fixture
def memory_store() -> MemoryObjectStore:
    return MemoryObjectStore()


@pytest.fixture
def failing_store() -> MemoryObjectStore:
    store = MemoryObjectStore()
    store.fail_with = ObjectStoreError("AccessDenied on write")
    return store
