"""
Configuration — ingestion settings from env vars or a master JSON key.
"""

from .settings import (
    IngestSettings,
    config_status,
    get_settings,
    load_settings,
    reset_settings,
)

__all__ = [
    "IngestSettings",
    "config_status",
    "get_settings",
    "load_settings",
    "reset_settings",
]
