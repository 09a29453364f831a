"""
Settings Loader — Load ingestion settings from a master key or individual env vars.

Supports two modes:
1. Master JSON key: single MEDIA_INGEST_CONFIG env var with every setting
2. Individual keys: separate env vars per setting (fallback)

## Usage

    # Option 1: Master config (one deployment secret)
    export MEDIA_INGEST_CONFIG='{"spaces_access_key": "DO00...", "spaces_bucket": "media"}'

    # Option 2: Individual keys
    export DO_SPACES_ACCESS_KEY="DO00..."
    export DO_SPACES_BUCKET="media"

The master config wins; anything it leaves out comes from individual env
vars, then from defaults.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

MASTER_ENV_VAR = "MEDIA_INGEST_CONFIG"


@dataclass
class IngestSettings:
    """Everything the pipeline and the proxy need, in one place."""

    # Object store (DigitalOcean Spaces / any S3 endpoint)
    storage_backend: str = "s3"
    spaces_access_key: Optional[str] = None
    spaces_secret_key: Optional[str] = None
    spaces_region: str = "sfo3"
    spaces_bucket: str = "whatsais3"
    spaces_endpoint: str = "https://sfo3.digitaloceanspaces.com"
    local_root: str = "./media-store"

    # URLs handed back to callers point at the proxy
    public_base_url: str = "http://localhost:5080"

    # Fetcher
    fetch_timeout_seconds: float = 30.0
    max_download_bytes: int = 50 * 1024 * 1024
    encrypted_hosts: List[str] = field(default_factory=lambda: ["whatsapp.net"])

    # Optimizer
    max_dimension: int = 1920
    jpeg_quality: int = 85
    webp_quality: int = 80
    convert_to_webp: bool = False

    # Security gate
    strict_mime_match: bool = False
    audit_log_path: str = "audit/security.ndjson"

    # Concurrency
    ingest_workers: int = 4

    def has_spaces_credentials(self) -> bool:
        return bool(self.spaces_access_key and self.spaces_secret_key)

    def redacted(self) -> Dict[str, Any]:
        """Settings as a dict with secrets masked, for status output."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        for secret in ("spaces_access_key", "spaces_secret_key"):
            if data.get(secret):
                data[secret] = "***"
        return data


# Field name → individual env var
ENV_VARS: Dict[str, str] = {
    "storage_backend": "MEDIA_STORAGE_BACKEND",
    "spaces_access_key": "DO_SPACES_ACCESS_KEY",
    "spaces_secret_key": "DO_SPACES_SECRET_KEY",
    "spaces_region": "DO_SPACES_REGION",
    "spaces_bucket": "DO_SPACES_BUCKET",
    "spaces_endpoint": "DO_SPACES_ENDPOINT",
    "local_root": "MEDIA_LOCAL_ROOT",
    "public_base_url": "MEDIA_PUBLIC_BASE_URL",
    "fetch_timeout_seconds": "MEDIA_FETCH_TIMEOUT_SECONDS",
    "max_download_bytes": "MEDIA_MAX_DOWNLOAD_BYTES",
    "encrypted_hosts": "MEDIA_ENCRYPTED_HOSTS",
    "max_dimension": "MEDIA_MAX_DIMENSION",
    "jpeg_quality": "MEDIA_JPEG_QUALITY",
    "webp_quality": "MEDIA_WEBP_QUALITY",
    "convert_to_webp": "MEDIA_CONVERT_TO_WEBP",
    "strict_mime_match": "MEDIA_STRICT_MIME_MATCH",
    "audit_log_path": "MEDIA_AUDIT_LOG",
    "ingest_workers": "MEDIA_INGEST_WORKERS",
}

_TRUE_VALUES = ("1", "true", "yes", "on")


def _coerce(name: str, raw: Any, default: Any) -> Any:
    """Convert a raw env/JSON value to the type of the field default."""
    if isinstance(default, bool):
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in _TRUE_VALUES
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    if isinstance(default, list):
        if isinstance(raw, (list, tuple)):
            return [str(v).strip() for v in raw if str(v).strip()]
        return [part.strip() for part in str(raw).split(",") if part.strip()]
    return str(raw).strip()


def _defaults() -> Dict[str, Any]:
    base = IngestSettings()
    return {f.name: getattr(base, f.name) for f in fields(base)}


def _parse_master_config(data: Dict[str, Any]) -> Dict[str, Any]:
    """Pick known settings out of the master JSON (lower or env-var case)."""
    values: Dict[str, Any] = {}
    for name, env_name in ENV_VARS.items():
        raw = data.get(name, data.get(env_name))
        if raw is not None and raw != "":
            values[name] = raw
    return values


def _load_individual_vars(existing: Dict[str, Any]) -> Dict[str, Any]:
    """Fill in values the master config did not provide."""
    values = dict(existing)
    for name, env_name in ENV_VARS.items():
        if name in values:
            continue
        raw = os.environ.get(env_name)
        if raw is not None and raw.strip():
            values[name] = raw
    return values


def load_settings() -> IngestSettings:
    """
    Load settings from master key or individual env vars.

    Priority:
    1. MEDIA_INGEST_CONFIG (master JSON)
    2. Individual environment variables
    3. Defaults

    Invalid values are logged and replaced by the default.
    """
    values: Dict[str, Any] = {}

    master_config = os.environ.get(MASTER_ENV_VAR)
    if master_config:
        try:
            values = _parse_master_config(json.loads(master_config))
            logger.info(f"Loaded configuration from {MASTER_ENV_VAR}")
        except json.JSONDecodeError as e:
            logger.error(f"Invalid {MASTER_ENV_VAR} JSON: {e}")
        except AttributeError:
            logger.error(f"{MASTER_ENV_VAR} must be a JSON object")

    values = _load_individual_vars(values)

    defaults = _defaults()
    kwargs: Dict[str, Any] = {}
    for name, raw in values.items():
        try:
            kwargs[name] = _coerce(name, raw, defaults[name])
        except (TypeError, ValueError):
            logger.warning(f"Ignoring invalid value for {name}: {raw!r}")

    return IngestSettings(**kwargs)


def config_status(settings: IngestSettings) -> Tuple[bool, List[str]]:
    """
    Check whether the settings are usable.

    Returns:
        (ok, problems) — problems is a list of human-readable messages.
    """
    problems: List[str] = []

    if settings.storage_backend not in ("s3", "local"):
        problems.append(f"Unknown storage backend: {settings.storage_backend}")
    elif settings.storage_backend == "s3" and not settings.has_spaces_credentials():
        problems.append("DO_SPACES_ACCESS_KEY / DO_SPACES_SECRET_KEY not set")

    if settings.max_download_bytes <= 0:
        problems.append("MEDIA_MAX_DOWNLOAD_BYTES must be positive")
    if settings.max_dimension <= 0:
        problems.append("MEDIA_MAX_DIMENSION must be positive")
    for quality_name in ("jpeg_quality", "webp_quality"):
        quality = getattr(settings, quality_name)
        if not 1 <= quality <= 100:
            problems.append(f"{quality_name} must be between 1 and 100 (got {quality})")
    if settings.ingest_workers < 1:
        problems.append("MEDIA_INGEST_WORKERS must be at least 1")

    return not problems, problems


# Global settings instance (loaded on first access)
_settings: Optional[IngestSettings] = None


def get_settings() -> IngestSettings:
    """Get the global settings (loads on first access)."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Forget the cached settings so the next access reloads them."""
    global _settings
    _settings = None
