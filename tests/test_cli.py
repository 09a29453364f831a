"""
Tests for the command line interface (cli.py).
"""

from __future__ import annotations

import io
import json
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from media_ingest.cli import cli
from media_ingest.models import MediaCategory


@pytest.fixture(autouse=True)
def no_logging_setup():
    with patch("media_ingest.cli.setup_logging"):
        yield


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def fake_pipeline():
    pipeline = MagicMock()
    pipeline.ingest.return_value = "https://media.example.com/media/image/1_abc_photo.jpg"
    with patch("media_ingest.pipeline.IngestionPipeline.from_settings", return_value=pipeline):
        yield pipeline


def _png(path, size=(8, 8)):
    from PIL import Image

    Image.new("RGB", size, (200, 10, 10)).save(path, format="PNG")
    return path


# ═══════════════════════════════════════════════════════════════════
# sniff
# ═══════════════════════════════════════════════════════════════════


class TestSniff:

    def test_reports_detected_type(self, runner, tmp_path):
        result = runner.invoke(cli, ["sniff", str(_png(tmp_path / "image.bin"))])
        assert result.exit_code == 0
        assert "image/png (.png)" in result.output

    def test_unknown(self, runner, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("plain words")
        result = runner.invoke(cli, ["sniff", str(path)])
        assert result.exit_code == 0
        assert "unknown" in result.output

    def test_gate_allows_and_plans_optimization(self, runner, tmp_path):
        path = _png(tmp_path / "photo.png")
        result = runner.invoke(cli, ["sniff", str(path), "--category", "image", "--mime", "image/png"])
        assert result.exit_code == 0
        assert "allowed, stored as image/png" in result.output
        assert "Transform:  optimize" in result.output

    def test_gate_rejects_spoof(self, runner, tmp_path):
        path = tmp_path / "cat.jpg"
        path.write_bytes(b"\x7fELF\x02\x01\x01" + b"\x00" * 64)
        result = runner.invoke(cli, ["sniff", str(path), "--category", "image", "--mime", "image/jpeg"])
        assert result.exit_code == 1
        assert "type_confusion" in result.output

    def test_animated_passthrough(self, runner, tmp_path):
        from PIL import Image

        frames = [Image.new("RGB", (16, 16), (i * 60, 0, 0)) for i in range(3)]
        buf = io.BytesIO()
        frames[0].save(buf, format="GIF", save_all=True, append_images=frames[1:], duration=50)
        path = tmp_path / "sticker.gif"
        path.write_bytes(buf.getvalue())

        result = runner.invoke(cli, ["sniff", str(path), "--category", "sticker"])

        assert result.exit_code == 0
        assert "3 frame(s)" in result.output
        assert "pass-through (animated)" in result.output


# ═══════════════════════════════════════════════════════════════════
# ingest
# ═══════════════════════════════════════════════════════════════════


class TestIngest:

    def test_prints_url(self, runner, fake_pipeline):
        result = runner.invoke(cli, [
            "ingest", "https://gateway.example.com/photo.jpg",
            "--category", "image", "--mime", "image/jpeg", "--name", "photo.jpg", "--message-id", "M1",
        ])

        assert result.exit_code == 0
        assert result.output.strip() == "https://media.example.com/media/image/1_abc_photo.jpg"
        ref = fake_pipeline.ingest.call_args[0][0]
        assert ref.message_id == "M1"
        assert ref.declared_category is MediaCategory.IMAGE
        assert ref.original_file_name == "photo.jpg"
        fake_pipeline.close.assert_called_once()

    def test_context_json(self, runner, fake_pipeline):
        result = runner.invoke(cli, [
            "ingest", "https://mmg.whatsapp.net/x.enc", "--category", "audio",
            "--context", '{"mediaKey": "AAEC"}',
        ])
        assert result.exit_code == 0
        assert fake_pipeline.ingest.call_args[0][0].decryption_context == {"mediaKey": "AAEC"}

    def test_invalid_context_json(self, runner, fake_pipeline):
        result = runner.invoke(cli, [
            "ingest", "https://mmg.whatsapp.net/x.enc", "--category", "audio", "--context", "{nope",
        ])
        assert result.exit_code == 2
        fake_pipeline.ingest.assert_not_called()

    def test_failure_exits_nonzero(self, runner, fake_pipeline):
        fake_pipeline.ingest.return_value = None
        result = runner.invoke(cli, ["ingest", "https://gateway.example.com/x", "--category", "video"])
        assert result.exit_code == 1

    def test_requires_category(self, runner, fake_pipeline):
        result = runner.invoke(cli, ["ingest", "https://gateway.example.com/x"])
        assert result.exit_code == 2
        assert "--category" in result.output

    def test_message_file(self, runner, fake_pipeline, tmp_path):
        path = tmp_path / "message.json"
        path.write_text(json.dumps({
            "stickerMessage": {"url": "https://mmg.whatsapp.net/s.enc", "mimetype": "image/webp"}
        }))
        result = runner.invoke(cli, ["ingest", "--message-file", str(path), "--message-id", "S1"])

        assert result.exit_code == 0
        ref = fake_pipeline.ingest.call_args[0][0]
        assert ref.declared_category is MediaCategory.STICKER
        assert ref.message_id == "S1"

    def test_message_file_without_media(self, runner, fake_pipeline, tmp_path):
        path = tmp_path / "message.json"
        path.write_text(json.dumps({"conversation": "hi"}))
        result = runner.invoke(cli, ["ingest", "--message-file", str(path)])
        assert result.exit_code == 1
        assert "no downloadable media" in result.output


# ═══════════════════════════════════════════════════════════════════
# config-status
# ═══════════════════════════════════════════════════════════════════


class TestConfigStatus:

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for name in ("MEDIA_INGEST_CONFIG", "MEDIA_STORAGE_BACKEND", "DO_SPACES_ACCESS_KEY", "DO_SPACES_SECRET_KEY"):
            monkeypatch.delenv(name, raising=False)

    def test_json_ok(self, runner, monkeypatch):
        monkeypatch.setenv("MEDIA_STORAGE_BACKEND", "s3")
        monkeypatch.setenv("DO_SPACES_ACCESS_KEY", "DO00KEY")
        monkeypatch.setenv("DO_SPACES_SECRET_KEY", "very-secret")

        result = runner.invoke(cli, ["config-status", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["ok"] is True
        assert data["settings"]["spaces_secret_key"] == "***"
        assert "very-secret" not in result.output

    def test_missing_credentials(self, runner):
        result = runner.invoke(cli, ["config-status"])
        assert result.exit_code == 1
        assert "DO_SPACES_ACCESS_KEY" in result.output
