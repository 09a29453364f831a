"""
Ingestion errors.

Every failure inside the pipeline is one of these. They never escape
``IngestionPipeline.ingest()``: the pipeline logs them and returns None so
the caller keeps the original upstream URL.
"""

from __future__ import annotations

from typing import Optional


class IngestError(Exception):
    """Base class for all ingestion failures."""

    code = "ingest_error"

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason

    def to_dict(self) -> dict:
        return {"code": self.code, "reason": self.reason, "message": str(self)}


class DownloadError(IngestError):
    """Network failure, timeout, bad status, or body over the size ceiling."""

    code = "download_error"


class DecryptionError(IngestError):
    """Missing decryption context, malformed key, or integrity mismatch."""

    code = "decryption_error"


class TypeConfusionError(IngestError):
    """Declared and detected types are incompatible (possible spoofing)."""

    code = "type_confusion"

    def __init__(
        self,
        message: str,
        declared: Optional[str] = None,
        detected: Optional[str] = None,
        category: Optional[str] = None,
    ):
        super().__init__(message, reason="mismatch")
        self.declared = declared
        self.detected = detected
        self.category = category

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "declared": self.declared,
            "detected": self.detected,
            "category": self.category,
        })
        return data


class CorruptImageError(IngestError):
    """Payload claims to be an image but cannot be decoded."""

    code = "corrupt_image"


class UploadError(IngestError):
    """The object store rejected the write."""

    code = "upload_error"
