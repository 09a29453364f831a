"""
Tests for the security gate (security.py).
"""

from __future__ import annotations

import pytest

from media_ingest.errors import TypeConfusionError
from media_ingest.models import MediaCategory
from media_ingest.security import authorize, normalize_mime
from media_ingest.sniff import Gif, Jpeg, Other, Png, Webp

OGG = Other("audio/ogg", "ogg")
MP4 = Other("video/mp4", "mp4")
PDF = Other("application/pdf", "pdf")
ZIP = Other("application/zip", "zip")
ELF = Other("application/x-executable", "elf", dangerous=True)
SVG = Other("image/svg+xml", "svg", dangerous=True)


class TestNormalizeMime:

    def test_parameters_dropped(self):
        assert normalize_mime("audio/ogg; codecs=opus") == "audio/ogg"

    def test_aliases(self):
        assert normalize_mime("image/jpg") == "image/jpeg"
        assert normalize_mime("AUDIO/MP3") == "audio/mpeg"

    @pytest.mark.parametrize("value", [None, "", "jpeg", ";"])
    def test_invalid(self, value):
        assert normalize_mime(value) is None


class TestMatchingTypes:

    def test_exact_match(self):
        assert authorize(Jpeg(), "image/jpeg", MediaCategory.IMAGE) == "image/jpeg"

    def test_alias_match(self):
        assert authorize(Jpeg(), "image/jpg", "image") == "image/jpeg"

    def test_voice_note_with_codec_parameter(self):
        assert authorize(OGG, "audio/ogg; codecs=opus", MediaCategory.AUDIO) == "audio/ogg"

    def test_no_declared_mime_uses_detected(self):
        assert authorize(Webp(), None, MediaCategory.STICKER) == "image/webp"

    def test_document_accepts_anything_harmless(self):
        assert authorize(PDF, "application/pdf", MediaCategory.DOCUMENT) == "application/pdf"
        assert authorize(Png(), "image/png", MediaCategory.DOCUMENT) == "image/png"


class TestSameFamilyMismatch:

    def test_permissive_stores_detected(self):
        assert authorize(Png(), "image/jpeg", MediaCategory.IMAGE) == "image/png"

    def test_strict_rejects(self):
        with pytest.raises(TypeConfusionError):
            authorize(Png(), "image/jpeg", MediaCategory.IMAGE, strict=True)

    def test_audio_in_mp4_container(self):
        # m4a voice notes sniff as video/mp4
        assert authorize(MP4, "audio/mp4", MediaCategory.AUDIO) == "audio/mp4"

    def test_office_document_in_zip(self):
        docx = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
        assert authorize(ZIP, docx, MediaCategory.DOCUMENT) == docx

    def test_gif_video(self):
        assert authorize(Gif(), "video/mp4", MediaCategory.VIDEO) == "image/gif"


class TestTypeConfusion:

    def test_executable_declared_as_image(self):
        with pytest.raises(TypeConfusionError) as exc:
            authorize(ELF, "image/jpeg", MediaCategory.IMAGE)
        assert exc.value.declared == "image/jpeg"
        assert exc.value.detected == "application/x-executable"
        assert exc.value.category == "image"
        assert exc.value.code == "type_confusion"

    def test_executable_declared_as_pdf_document(self):
        with pytest.raises(TypeConfusionError):
            authorize(ELF, "application/pdf", MediaCategory.DOCUMENT)

    def test_executable_honestly_declared_document(self):
        assert authorize(ELF, "application/x-executable", MediaCategory.DOCUMENT) == \
            "application/x-executable"

    def test_svg_as_sticker(self):
        with pytest.raises(TypeConfusionError):
            authorize(SVG, "image/webp", MediaCategory.STICKER)

    def test_image_declared_as_audio(self):
        with pytest.raises(TypeConfusionError):
            authorize(Jpeg(), "audio/ogg", MediaCategory.AUDIO)

    def test_audio_declared_as_image(self):
        with pytest.raises(TypeConfusionError):
            authorize(OGG, "image/jpeg", MediaCategory.IMAGE)

    def test_cross_family_in_document(self):
        with pytest.raises(TypeConfusionError):
            authorize(Jpeg(), "application/pdf", MediaCategory.DOCUMENT)

    def test_to_dict(self):
        with pytest.raises(TypeConfusionError) as exc:
            authorize(OGG, "image/jpeg", MediaCategory.IMAGE)
        data = exc.value.to_dict()
        assert data["code"] == "type_confusion"
        assert data["reason"] == "mismatch"
        assert data["detected"] == "audio/ogg"


class TestUnknownContent:

    def test_trusts_declared(self):
        assert authorize(None, "audio/amr", MediaCategory.AUDIO) == "audio/amr"

    @pytest.mark.parametrize("category,expected", [
        (MediaCategory.IMAGE, "image/jpeg"),
        (MediaCategory.STICKER, "image/webp"),
        (MediaCategory.AUDIO, "audio/ogg"),
        (MediaCategory.DOCUMENT, "application/octet-stream"),
    ])
    def test_category_default(self, category, expected):
        assert authorize(None, None, category) == expected
