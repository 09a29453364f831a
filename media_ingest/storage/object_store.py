"""
Object Store — where ingested media lives.

Two backends share one small interface:

    S3ObjectStore     boto3 client against DigitalOcean Spaces (or any S3 endpoint)
    LocalObjectStore  directory on disk with a JSON sidecar per object

Both return ``ObjectInfo`` from ``head_object()`` and an ``ObjectBody``
(a chunk iterator, optionally for a byte range) from ``get_object()``.
A missing object raises ``ObjectNotFound``; anything else the backend
throws is wrapped in ``ObjectStoreError``.

## Usage

    store = build_store(get_settings())
    store.put_object("incoming/image/1700000000000_k3j9x0a2b_photo.jpg",
                     data, "image/jpeg", {"message-id": "3EB0C767"})
    info = store.head_object(key)
    body = store.get_object(key, start=0, end=1023)
"""

from __future__ import annotations

import json
import logging
import os
import re
import unicodedata
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, Optional

logger = logging.getLogger(__name__)

PUBLIC_READ_ACL = "public-read"
CACHE_CONTROL = "public, max-age=31536000"
CONTENT_DISPOSITION = "inline"
DEFAULT_CONTENT_TYPE = "application/octet-stream"

CHUNK_SIZE = 64 * 1024
MAX_METADATA_VALUE = 256

_METADATA_KEY_CHARS = re.compile(r"[^a-z0-9-]+")
_NOT_PRINTABLE_ASCII = re.compile(r"[^\x20-\x7e]+")


class ObjectNotFound(Exception):
    """The key does not exist in the store."""


class ObjectStoreError(Exception):
    """The backend failed (credentials, network, disk...)."""


@dataclass
class ObjectInfo:
    """Stored object metadata (no body)."""

    key: str
    size: int
    content_type: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    etag: Optional[str] = None


@dataclass
class ObjectBody:
    """
    An object's body, streamed in chunks.

    ``start``/``end`` are inclusive byte offsets of what ``chunks`` yields.
    """

    info: ObjectInfo
    chunks: Iterable[bytes]
    start: int = 0
    end: int = 0

    @property
    def content_length(self) -> int:
        return max(self.end - self.start + 1, 0)

    def read(self) -> bytes:
        return b"".join(self.chunks)


def sanitize_metadata(metadata: Optional[Dict[str, object]]) -> Dict[str, str]:
    """
    Make user metadata safe for S3 headers.

    Keys become lower-case ``[a-z0-9-]``; values are folded to printable
    ASCII and truncated. Empty entries are dropped.
    """
    clean: Dict[str, str] = {}
    for raw_key, raw_value in (metadata or {}).items():
        if raw_value is None:
            continue
        key = _METADATA_KEY_CHARS.sub("-", str(raw_key).strip().lower().replace("_", "-")).strip("-")
        folded = unicodedata.normalize("NFKD", str(raw_value)).encode("ascii", "ignore").decode("ascii")
        value = _NOT_PRINTABLE_ASCII.sub(" ", folded).strip()[:MAX_METADATA_VALUE]
        if key and value:
            clean[key] = value
    return clean


class ObjectStore(ABC):
    """Minimal blob store interface used by the uploader and the proxy."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend identifier ("s3", "local")."""
        pass

    @abstractmethod
    def put_object(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ObjectInfo:
        """Write an object in a single request."""
        pass

    @abstractmethod
    def head_object(self, key: str) -> ObjectInfo:
        """Return object metadata or raise ObjectNotFound."""
        pass

    @abstractmethod
    def get_object(
        self,
        key: str,
        start: Optional[int] = None,
        end: Optional[int] = None,
    ) -> ObjectBody:
        """Return the object body (or an inclusive byte range of it)."""
        pass


# ── S3 / Spaces ──────────────────────────────────────────────


class S3ObjectStore(ObjectStore):
    """
    S3-compatible store (DigitalOcean Spaces in production).

    Objects are written public-read with a one-year cache lifetime; the
    keys are unique so the content behind a key never changes.
    """

    NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}

    def __init__(self, bucket: str, client=None, acl: str = PUBLIC_READ_ACL):
        self.bucket = bucket
        self.acl = acl
        self._client = client

    @property
    def name(self) -> str:
        return "s3"

    @classmethod
    def from_settings(cls, settings) -> "S3ObjectStore":
        import boto3
        from botocore.config import Config

        client = boto3.client(
            "s3",
            region_name=settings.spaces_region,
            endpoint_url=settings.spaces_endpoint,
            aws_access_key_id=settings.spaces_access_key,
            aws_secret_access_key=settings.spaces_secret_key,
            config=Config(
                signature_version="s3v4",
                connect_timeout=settings.fetch_timeout_seconds,
                read_timeout=settings.fetch_timeout_seconds,
                retries={"max_attempts": 2},
            ),
        )
        return cls(bucket=settings.spaces_bucket, client=client)

    @property
    def client(self):
        if self._client is None:
            import boto3

            self._client = boto3.client("s3")
        return self._client

    def _translate(self, key: str, e: Exception) -> Exception:
        from botocore.exceptions import ClientError

        if isinstance(e, ClientError):
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in self.NOT_FOUND_CODES:
                return ObjectNotFound(key)
            return ObjectStoreError(f"{code or 'ClientError'} on {key}")
        return ObjectStoreError(f"{type(e).__name__} on {key}: {e}")

    def put_object(self, key, data, content_type, metadata=None) -> ObjectInfo:
        from botocore.exceptions import BotoCoreError, ClientError

        clean = sanitize_metadata(metadata)
        try:
            response = self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                ACL=self.acl,
                CacheControl=CACHE_CONTROL,
                ContentDisposition=CONTENT_DISPOSITION,
                Metadata=clean,
            )
        except (BotoCoreError, ClientError) as e:
            raise self._translate(key, e) from e

        logger.debug(f"PUT s3://{self.bucket}/{key} ({len(data):,} bytes)")
        return ObjectInfo(
            key=key,
            size=len(data),
            content_type=content_type,
            metadata=clean,
            etag=(response or {}).get("ETag"),
        )

    def head_object(self, key: str) -> ObjectInfo:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            response = self.client.head_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise self._translate(key, e) from e

        return ObjectInfo(
            key=key,
            size=int(response.get("ContentLength", 0)),
            content_type=response.get("ContentType"),
            metadata=response.get("Metadata", {}),
            etag=response.get("ETag"),
        )

    def get_object(self, key, start=None, end=None) -> ObjectBody:
        from botocore.exceptions import BotoCoreError, ClientError

        kwargs = {"Bucket": self.bucket, "Key": key}
        if start is not None:
            kwargs["Range"] = f"bytes={start}-{'' if end is None else end}"

        try:
            response = self.client.get_object(**kwargs)
        except (BotoCoreError, ClientError) as e:
            raise self._translate(key, e) from e

        length = int(response.get("ContentLength", 0))
        total = _total_from_content_range(response.get("ContentRange")) or length
        first = start or 0
        info = ObjectInfo(
            key=key,
            size=total,
            content_type=response.get("ContentType"),
            metadata=response.get("Metadata", {}),
            etag=response.get("ETag"),
        )
        return ObjectBody(
            info=info,
            chunks=response["Body"].iter_chunks(CHUNK_SIZE),
            start=first,
            end=first + length - 1,
        )


def _total_from_content_range(value: Optional[str]) -> Optional[int]:
    # "bytes 0-1023/146515"
    if not value or "/" not in value:
        return None
    total = value.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else None


# ── Local filesystem ─────────────────────────────────────────


class LocalObjectStore(ObjectStore):
    """
    Directory-backed store for development and the CLI.

    ``{root}/{key}`` holds the bytes, ``{root}/{key}.meta.json`` the
    content type and user metadata.
    """

    SIDECAR_SUFFIX = ".meta.json"

    def __init__(self, root: Path):
        self.root = Path(root).resolve()

    @property
    def name(self) -> str:
        return "local"

    @classmethod
    def from_settings(cls, settings) -> "LocalObjectStore":
        return cls(Path(settings.local_root))

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if key.endswith((self.SIDECAR_SUFFIX, ".tmp")):
            raise ObjectNotFound(key)
        if path == self.root or self.root not in path.parents:
            raise ObjectNotFound(key)
        return path

    def _sidecar(self, path: Path) -> Path:
        return path.with_name(path.name + self.SIDECAR_SUFFIX)

    def put_object(self, key, data, content_type, metadata=None) -> ObjectInfo:
        try:
            path = self._path(key)
        except ObjectNotFound:
            raise ObjectStoreError(f"Key escapes the store root: {key}") from None

        clean = sanitize_metadata(metadata)
        sidecar = {
            "content_type": content_type,
            "cache_control": CACHE_CONTROL,
            "content_disposition": CONTENT_DISPOSITION,
            "metadata": clean,
        }

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = path.with_name(path.name + ".tmp")
            temp_path.write_bytes(data)
            os.replace(temp_path, path)
            self._sidecar(path).write_text(json.dumps(sidecar, indent=2), encoding="utf-8")
        except OSError as e:
            raise ObjectStoreError(f"Cannot write {key}: {e}") from e

        logger.debug(f"PUT {path} ({len(data):,} bytes)")
        return ObjectInfo(key=key, size=len(data), content_type=content_type, metadata=clean)

    def head_object(self, key: str) -> ObjectInfo:
        path = self._path(key)
        if not path.is_file():
            raise ObjectNotFound(key)

        try:
            size = path.stat().st_size
            sidecar_path = self._sidecar(path)
            sidecar = {}
            if sidecar_path.exists():
                sidecar = json.loads(sidecar_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ObjectStoreError(f"Cannot read {key}: {e}") from e

        return ObjectInfo(
            key=key,
            size=size,
            content_type=sidecar.get("content_type"),
            metadata=sidecar.get("metadata", {}),
        )

    def get_object(self, key, start=None, end=None) -> ObjectBody:
        info = self.head_object(key)
        path = self._path(key)

        first = start or 0
        last = info.size - 1 if end is None else min(end, info.size - 1)

        return ObjectBody(
            info=info,
            chunks=_read_chunks(path, first, last),
            start=first,
            end=last,
        )


def _read_chunks(path: Path, start: int, end: int) -> Iterator[bytes]:
    remaining = end - start + 1
    with open(path, "rb") as f:
        f.seek(start)
        while remaining > 0:
            chunk = f.read(min(CHUNK_SIZE, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk


def build_store(settings) -> ObjectStore:
    """Object store for the configured backend."""
    if settings.storage_backend == "local":
        return LocalObjectStore.from_settings(settings)
    return S3ObjectStore.from_settings(settings)
