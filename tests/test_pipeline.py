"""
Tests for the ingestion pipeline (pipeline.py).

End-to-end runs with the network replaced by httpx.MockTransport and the
object store by the in-memory store from conftest.

Tests cover:
- Large photos are downscaled, stored and served back by the proxy
- Animated stickers are stored byte-for-byte
- Encrypted media without key material never reaches the network
- Type-confused payloads are rejected and audited
- Every failure mode returns None instead of raising
"""

from __future__ import annotations

import dataclasses
import io
from urllib.parse import urlsplit

import httpx

from media_ingest.audit import SecurityAuditLog
from media_ingest.fetch import encrypt_media
from media_ingest.models import MediaCategory, MediaReference
from media_ingest.observability.metrics import metrics
from media_ingest.pipeline import IngestionPipeline
from media_ingest.proxy import create_app

PHOTO_URL = "https://gateway.example.com/files/IMG_0001.jpg"
STICKER_URL = "https://gateway.example.com/files/sticker.webp"
CDN_URL = "https://mmg.whatsapp.net/v/t62.7117-24/voice.enc?oh=secret-token&oe=65"


# ── Helpers ──────────────────────────────────────────────────


def _photo(width: int, height: int) -> bytes:
    from PIL import Image

    img = Image.linear_gradient("L").resize((width, height)).convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=92)
    return buf.getvalue()


def _animated_webp(frames: int = 3) -> bytes:
    from PIL import Image

    images = [Image.new("RGB", (96, 96), (i * 90 % 256, 30, 200)) for i in range(frames)]
    buf = io.BytesIO()
    images[0].save(buf, format="WEBP", save_all=True, append_images=images[1:], duration=100, loop=0)
    return buf.getvalue()


class Upstream:
    """MockTransport handler serving fixed bodies per URL and recording requests."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(str(request.url))
        if route is None:
            return httpx.Response(404)
        if isinstance(route, Exception):
            raise route
        return httpx.Response(200, content=route)


def _pipeline(settings, store, upstream: Upstream) -> IngestionPipeline:
    client = httpx.Client(transport=httpx.MockTransport(upstream))
    return IngestionPipeline.from_settings(settings, store=store, http_client=client)


def _ref(url, category, mime, name=None, context=None, message_id="3EB0C767D26A", caption=None) -> MediaReference:
    return MediaReference(
        message_id=message_id,
        remote_url=url,
        declared_category=category,
        declared_mime_type=mime,
        original_file_name=name,
        decryption_context=context,
        caption=caption,
    )


def _only_key(store) -> str:
    assert len(store.objects) == 1
    return next(iter(store.objects))


# ═══════════════════════════════════════════════════════════════════
# Successful ingestion
# ═══════════════════════════════════════════════════════════════════


class TestLargePhoto:

    def test_downscaled_stored_and_served(self, settings, memory_store):
        from PIL import Image

        settings = dataclasses.replace(settings, max_download_bytes=50 * 1024 * 1024)
        original = _photo(4000, 3000)
        upstream = Upstream({PHOTO_URL: original})
        pipeline = _pipeline(settings, memory_store, upstream)

        url = pipeline.ingest(_ref(PHOTO_URL, "image", "image/jpeg", name="IMG_0001.jpg"))

        assert url is not None
        assert url.startswith("https://media.example.com/media/image/")
        key = _only_key(memory_store)
        assert key.startswith("incoming/image/")
        assert key.endswith("_IMG_0001.jpg")

        stored = memory_store.objects[key]
        assert len(stored) < len(original)
        assert max(Image.open(io.BytesIO(stored)).size) <= 1920

        info = memory_store.infos[key]
        assert info.content_type == "image/jpeg"
        assert info.metadata["optimized"] == "true"
        assert info.metadata["original-name"] == "IMG_0001.jpg"

        client = create_app(settings, store=memory_store).test_client()
        response = client.get(urlsplit(url).path)
        assert response.status_code == 200
        assert response.headers["Content-Type"] == "image/jpeg"
        assert response.data == stored

    def test_optimizer_savings_counted(self, settings, memory_store):
        upstream = Upstream({PHOTO_URL: _photo(2400, 1800)})
        _pipeline(settings, memory_store, upstream).ingest(_ref(PHOTO_URL, "image", "image/jpeg"))
        assert metrics.counter("optimizer_bytes_saved_total").total() > 0

    def test_caption_stored_as_metadata(self, settings, memory_store):
        upstream = Upstream({PHOTO_URL: _photo(64, 64)})
        pipeline = _pipeline(settings, memory_store, upstream)

        pipeline.ingest(_ref(PHOTO_URL, "image", "image/jpeg", caption="Café at sunset\nday 2"))

        metadata = memory_store.infos[_only_key(memory_store)].metadata
        assert metadata["caption"] == "Cafe at sunset day 2"

    def test_no_caption_no_metadata_entry(self, settings, memory_store):
        upstream = Upstream({PHOTO_URL: _photo(64, 64)})
        _pipeline(settings, memory_store, upstream).ingest(_ref(PHOTO_URL, "image", "image/jpeg"))
        assert "caption" not in memory_store.infos[_only_key(memory_store)].metadata


class TestAnimatedSticker:

    def test_stored_byte_identical(self, settings, memory_store):
        original = _animated_webp(frames=3)
        pipeline = _pipeline(settings, memory_store, Upstream({STICKER_URL: original}))

        url = pipeline.ingest(_ref(STICKER_URL, "sticker", "image/webp"))

        assert url is not None
        key = _only_key(memory_store)
        assert key.startswith("incoming/sticker/")
        assert key.endswith(".webp")
        assert memory_store.objects[key] == original
        assert memory_store.infos[key].metadata["optimized"] == "false"
        assert metrics.counter("animated_passthrough_total").total() == 1

        response = create_app(settings, store=memory_store).test_client().get(urlsplit(url).path)
        assert response.status_code == 200
        assert len(response.data) == len(original)


class TestEncryptedMedia:

    def test_decrypted_before_storage(self, settings, memory_store):
        plaintext = b"OggS\x00\x02" + b"\x01" * 400
        sealed = encrypt_media(plaintext, MediaCategory.AUDIO)
        context = {
            "mediaKey": list(sealed["context"].media_key),
            "fileEncSha256": list(sealed["context"].file_enc_sha256),
            "fileSha256": list(sealed["context"].file_sha256),
        }
        pipeline = _pipeline(settings, memory_store, Upstream({CDN_URL: sealed["body"]}))

        url = pipeline.ingest(_ref(CDN_URL, "audio", "audio/ogg; codecs=opus", context=context))

        assert url is not None
        key = _only_key(memory_store)
        assert key.endswith(".ogg")
        assert memory_store.objects[key] == plaintext
        assert memory_store.infos[key].content_type == "audio/ogg"
        assert memory_store.infos[key].metadata["encrypted-source"] == "true"

    def test_missing_context_never_fetches(self, settings, memory_store):
        upstream = Upstream({CDN_URL: b"never served"})
        pipeline = _pipeline(settings, memory_store, upstream)

        url = pipeline.ingest(_ref(CDN_URL, "audio", "audio/ogg", context=None))

        assert url is None
        assert upstream.requests == []
        assert memory_store.put_calls == 0
        assert metrics.counter("ingest_errors_total").get({"code": "decryption_error"}) == 1


class TestDocuments:

    def test_pdf_stored_unchanged(self, settings, memory_store):
        pdf = b"%PDF-1.7\n%\xe2\xe3\xcf\xd3\n1 0 obj\n<<>>\nendobj\n"
        url_in = "https://gateway.example.com/files/report.pdf"
        pipeline = _pipeline(settings, memory_store, Upstream({url_in: pdf}))

        url = pipeline.ingest(_ref(url_in, "document", "application/pdf", name="Q3 report.pdf"))

        assert url.endswith("_Q3_report.pdf")
        assert memory_store.objects[_only_key(memory_store)] == pdf


# ═══════════════════════════════════════════════════════════════════
# Security gate
# ═══════════════════════════════════════════════════════════════════


class TestTypeConfusion:

    def test_executable_disguised_as_image(self, settings, memory_store):
        elf = b"\x7fELF\x02\x01\x01" + b"\x00" * 500
        spoof_url = "https://gateway.example.com/files/cat.jpg?token=abc"
        pipeline = _pipeline(settings, memory_store, Upstream({spoof_url: elf}))

        url = pipeline.ingest(_ref(spoof_url, "image", "image/jpeg", message_id="SPOOF1"))

        assert url is None
        assert memory_store.put_calls == 0

        events = list(SecurityAuditLog(settings.audit_log_path).read_events("type_confusion"))
        assert len(events) == 1
        assert events[0]["message_id"] == "SPOOF1"
        assert events[0]["details"]["remote_host"] == "gateway.example.com"
        assert events[0]["details"]["declared_mime"] == "image/jpeg"
        assert events[0]["details"]["detected_mime"] == "application/x-executable"
        assert "token" not in str(events[0])

        assert metrics.counter("ingest_total").get({"category": "image", "outcome": "rejected"}) == 1
        assert metrics.counter("ingest_errors_total").get({"code": "type_confusion"}) == 1

    def test_strict_mode_rejects_same_family_mismatch(self, settings, memory_store):
        from PIL import Image

        buf = io.BytesIO()
        Image.new("RGB", (32, 32), (1, 2, 3)).save(buf, format="PNG")
        strict = dataclasses.replace(settings, strict_mime_match=True)
        pipeline = _pipeline(strict, memory_store, Upstream({PHOTO_URL: buf.getvalue()}))

        assert pipeline.ingest(_ref(PHOTO_URL, "image", "image/jpeg")) is None
        assert memory_store.put_calls == 0


# ═══════════════════════════════════════════════════════════════════
# Failure modes
# ═══════════════════════════════════════════════════════════════════


class TestFailuresReturnNone:

    def test_upstream_timeout(self, settings, memory_store):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        pipeline = IngestionPipeline.from_settings(settings, store=memory_store, http_client=client)

        assert pipeline.ingest(_ref(PHOTO_URL, "image", "image/jpeg")) is None
        assert metrics.counter("ingest_errors_total").get({"code": "download_error"}) == 1

    def test_upstream_404(self, settings, memory_store):
        pipeline = _pipeline(settings, memory_store, Upstream())
        assert pipeline.ingest(_ref(PHOTO_URL, "image", "image/jpeg")) is None
        assert memory_store.put_calls == 0

    def test_mac_mismatch(self, settings, memory_store):
        sealed = encrypt_media(b"OggS" + b"\x03" * 300, MediaCategory.AUDIO)
        tampered = bytearray(sealed["body"])
        tampered[0] ^= 0xFF
        context = {"mediaKey": list(sealed["context"].media_key)}
        pipeline = _pipeline(settings, memory_store, Upstream({CDN_URL: bytes(tampered)}))

        assert pipeline.ingest(_ref(CDN_URL, "audio", "audio/ogg", context=context)) is None
        assert memory_store.put_calls == 0

    def test_store_failure(self, settings, failing_store):
        pipeline = _pipeline(settings, failing_store, Upstream({PHOTO_URL: _photo(64, 64)}))

        assert pipeline.ingest(_ref(PHOTO_URL, "image", "image/jpeg")) is None
        assert failing_store.put_calls == 1
        assert failing_store.objects == {}
        assert metrics.counter("ingest_errors_total").get({"code": "upload_error"}) == 1

    def test_corrupt_image(self, settings, memory_store):
        truncated = _photo(64, 64)[:40]
        pipeline = _pipeline(settings, memory_store, Upstream({PHOTO_URL: truncated}))
        assert pipeline.ingest(_ref(PHOTO_URL, "image", "image/jpeg")) is None
        assert memory_store.put_calls == 0

    def test_unexpected_exception(self, settings, memory_store):
        memory_store.fail_with = RuntimeError("boom")
        pipeline = _pipeline(settings, memory_store, Upstream({PHOTO_URL: _photo(64, 64)}))

        assert pipeline.ingest(_ref(PHOTO_URL, "image", "image/jpeg")) is None
        assert metrics.counter("ingest_errors_total").get({"code": "internal"}) == 1

    def test_in_flight_gauge_returns_to_zero(self, settings, memory_store):
        pipeline = _pipeline(settings, memory_store, Upstream())
        pipeline.ingest(_ref(PHOTO_URL, "image", "image/jpeg"))
        assert metrics.gauge("ingest_in_flight").get() == 0


# ═══════════════════════════════════════════════════════════════════
# Batches
# ═══════════════════════════════════════════════════════════════════


class TestIngestMany:

    def test_results_keep_input_order(self, settings, memory_store):
        routes = {f"https://gateway.example.com/files/{i}.jpg": _photo(32 + i, 32) for i in range(5)}
        pipeline = _pipeline(settings, memory_store, Upstream(routes))
        refs = [
            _ref(url, "image", "image/jpeg", name=f"{i}.jpg", message_id=f"M{i}")
            for i, url in enumerate(routes)
        ]
        refs.insert(2, _ref("https://gateway.example.com/files/missing.jpg", "image", "image/jpeg"))

        results = pipeline.ingest_many(refs)

        assert len(results) == 6
        assert results[2] is None
        for index, i in zip([0, 1, 3, 4, 5], range(5)):
            assert results[index].endswith(f"_{i}.jpg")
        assert metrics.counter("ingest_total").get({"category": "image", "outcome": "stored"}) == 5

    def test_empty_batch(self, settings, memory_store):
        assert _pipeline(settings, memory_store, Upstream()).ingest_many([]) == []


def test_image_sent_as_document_is_not_optimized(settings, memory_store):
    from PIL import Image

    buf = io.BytesIO()
    Image.new("RGB", (3000, 3000), (5, 5, 5)).save(buf, format="PNG")
    data = buf.getvalue()
    pipeline = _pipeline(settings, memory_store, Upstream({PHOTO_URL: data}))

    url = pipeline.ingest(_ref(PHOTO_URL, "document", "image/png", name="scan.png"))

    assert url.endswith("_scan.png")
    key = _only_key(memory_store)
    assert key.startswith("incoming/document/")
    assert memory_store.objects[key] == data
