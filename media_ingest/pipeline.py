"""
Ingestion Pipeline — one remote attachment in, one stable URL (or None) out.

    fetch (+ decrypt) → sniff → authorize → select transform
        → optimize | pass through → build key → upload

``ingest()`` never raises. Every failure is logged with the message id
and error code and turned into None, so the caller keeps pointing at the
upstream reference. Type confusion is also written to the security audit
ledger and the ``media_ingest.security`` logger.

## Usage

    pipeline = IngestionPipeline.from_settings(get_settings())
    url = pipeline.ingest(MediaReference(
        message_id="3EB0C767D26A",
        remote_url="https://mmg.whatsapp.net/v/t62.7118-24/...enc",
        declared_category="image",
        declared_mime_type="image/jpeg",
        decryption_context={"mediaKey": "...", "fileEncSha256": "...", "fileSha256": "..."},
    ))
    # url → "https://media.example.com/media/image/1700000000000_k3j9x0a2b_image_3EB0C767D26A.jpg"
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .audit import SecurityAuditLog
from .errors import IngestError, TypeConfusionError
from .fetch import Fetcher
from .models import MediaReference, StoredObject
from .observability.metrics import MetricsRegistry, metrics
from .security import authorize, normalize_mime, security_logger
from .sniff import DetectedType, sniff
from .storage import Uploader, build_key, extension_for_mime, random_token
from .transform import OptimizeOptions, decide, optimize_image

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 4


class IngestionPipeline:
    """Runs the ingestion steps for MediaReferences. Safe to share across threads."""

    def __init__(
        self,
        fetcher: Fetcher,
        uploader: Uploader,
        audit: Optional[SecurityAuditLog] = None,
        options: Optional[OptimizeOptions] = None,
        strict_mime_match: bool = False,
        workers: int = DEFAULT_WORKERS,
        registry: MetricsRegistry = metrics,
    ):
        self.fetcher = fetcher
        self.uploader = uploader
        self.audit = audit
        self.options = options or OptimizeOptions()
        self.strict_mime_match = strict_mime_match
        self.workers = max(1, workers)
        self.metrics = registry

    @classmethod
    def from_settings(cls, settings=None, store=None, http_client=None) -> "IngestionPipeline":
        """Wire a pipeline from IngestSettings (store/client injectable)."""
        from .config import get_settings

        settings = settings or get_settings()
        return cls(
            fetcher=Fetcher.from_settings(settings, client=http_client),
            uploader=Uploader.from_settings(settings, store=store),
            audit=SecurityAuditLog(Path(settings.audit_log_path)),
            options=OptimizeOptions.from_settings(settings),
            strict_mime_match=settings.strict_mime_match,
            workers=settings.ingest_workers,
        )

    def close(self) -> None:
        self.fetcher.close()

    # ── Public entry points ──────────────────────────────────

    def ingest(self, ref: MediaReference) -> Optional[str]:
        """
        Ingest one attachment.

        Returns:
            The public proxy URL, or None if any step failed.
        """
        category = ref.declared_category.value
        log_extra = {"message_id": ref.message_id, "category": category}
        started = time.monotonic()
        outcome = "failed"

        self.metrics.gauge("ingest_in_flight").inc()
        try:
            stored = self.process(ref)
            outcome = "stored"
            return stored.public_url

        except TypeConfusionError as e:
            outcome = "rejected"
            self._record_type_confusion(ref, e)
            self._count_error(e.code)
            return None

        except IngestError as e:
            logger.warning(
                f"Ingestion failed for {ref.message_id} ({e.code}): {e}",
                extra={**log_extra, "error_code": e.code},
            )
            self._count_error(e.code)
            return None

        except Exception as e:
            logger.exception(
                f"Unexpected error ingesting {ref.message_id}: {e}",
                extra={**log_extra, "error_code": "internal"},
            )
            self._count_error("internal")
            return None

        finally:
            self.metrics.gauge("ingest_in_flight").dec()
            self.metrics.increment("ingest_total", labels={"category": category, "outcome": outcome})
            self.metrics.timing("ingest_duration_seconds", time.monotonic() - started)

    def ingest_many(self, refs: Iterable[MediaReference]) -> List[Optional[str]]:
        """Ingest several attachments concurrently; results keep input order."""
        refs = list(refs)
        if not refs:
            return []
        with ThreadPoolExecutor(max_workers=min(self.workers, len(refs))) as pool:
            return list(pool.map(self.ingest, refs))

    # ── Steps ────────────────────────────────────────────────

    def process(self, ref: MediaReference) -> StoredObject:
        """
        Run every step for one reference.

        Raises:
            IngestError: any step failed (see media_ingest.errors).
        """
        category = ref.declared_category
        log_extra = {"message_id": ref.message_id, "category": category.value}

        payload = self.fetcher.fetch(ref)
        self.metrics.observe("fetch_bytes", payload.size)

        detected = sniff(payload.data)
        payload.sniffed_mime_type = detected.mime if detected else None

        content_type = authorize(
            detected,
            ref.declared_mime_type,
            category,
            strict=self.strict_mime_match,
        )

        data = payload.data
        optimized = False
        if category.is_image_like:
            decision = decide(data, category, detected)
            if decision.is_animated_multi_frame:
                self.metrics.increment("animated_passthrough_total")
            elif decision.should_optimize:
                result = optimize_image(data, self.options)
                data = result.data
                content_type = result.mime_type
                optimized = result.data is not payload.data
                self.metrics.increment("optimizer_bytes_saved_total", result.bytes_saved)

        key = build_key(
            category,
            timestamp_ms=int(time.time() * 1000),
            token=random_token(),
            original_name=ref.original_file_name,
            extension=_extension(content_type, detected),
            message_id=ref.message_id,
        )

        metadata: Dict[str, Optional[str]] = {
            "message-id": ref.message_id,
            "category": category.value,
            "original-name": ref.original_file_name,
            "declared-mime": ref.declared_mime_type,
            "sniffed-mime": payload.sniffed_mime_type,
            "encrypted-source": "true" if payload.was_encrypted else "false",
            "optimized": "true" if optimized else "false",
            "caption": ref.caption,
        }

        stored = self.uploader.upload(data, key, content_type, metadata)
        logger.info(
            f"Ingested {ref.message_id} → {stored.public_url}",
            extra={**log_extra, "storage_key": key},
        )
        return stored

    # ── Failure bookkeeping ──────────────────────────────────

    def _record_type_confusion(self, ref: MediaReference, e: TypeConfusionError) -> None:
        security_logger.warning(
            f"Type confusion from message {ref.message_id}: {e}",
            extra={
                "message_id": ref.message_id,
                "category": ref.declared_category.value,
                "error_code": e.code,
                "event": "type_confusion",
            },
        )
        if self.audit is None:
            return
        try:
            self.audit.emit_type_confusion(
                message_id=ref.message_id,
                remote_url=ref.remote_url,
                declared_mime=e.declared,
                detected_mime=e.detected,
                category=ref.declared_category.value,
            )
        except OSError as audit_error:
            logger.error(f"Could not write security audit entry: {audit_error}")

    def _count_error(self, code: str) -> None:
        self.metrics.increment("ingest_errors_total", labels={"code": code})


def _extension(content_type: str, detected: Optional[DetectedType]) -> str:
    """Extension for the stored type, preferring the sniffer's when they agree."""
    if detected is not None and normalize_mime(detected.mime) == normalize_mime(content_type):
        return detected.extension
    return extension_for_mime(content_type)
