"""
Security Audit Ledger — append-only NDJSON log of type-confusion events.

Each line is one JSON object. Events are never edited, only appended.
Operators grep this file (not the application log) when looking for
senders that disguise one kind of payload as another.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional
from urllib.parse import urlsplit
from uuid import uuid4


class SecurityAuditLog:
    """
    Append-only NDJSON security ledger.

    Usage:
        audit = SecurityAuditLog(Path("audit/security.ndjson"))
        audit.emit("type_confusion", message_id="3EB0C767", details={...})
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = Lock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.touch()

    def emit(
        self,
        event_type: str,
        message_id: Optional[str] = None,
        level: str = "warning",
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Append an event.

        Returns:
            Generated event_id
        """
        event_id = f"SEC-{uuid4().hex[:8].upper()}"
        now = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

        entry: Dict[str, Any] = {
            "ts_iso": now,
            "event_id": event_id,
            "level": level,
            "type": event_type,
        }
        if message_id is not None:
            entry["message_id"] = message_id
        if details is not None:
            entry["details"] = details

        # One write per line so concurrent ingestions never interleave
        with self._lock, self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(entry, sort_keys=True) + "\n")

        return event_id

    def emit_type_confusion(
        self,
        message_id: str,
        remote_url: str,
        declared_mime: Optional[str],
        detected_mime: Optional[str],
        category: str,
    ) -> str:
        """Record a payload whose content contradicts its declared type."""
        return self.emit(
            event_type="type_confusion",
            message_id=message_id,
            details={
                "remote_host": _host(remote_url),
                "declared_mime": declared_mime,
                "detected_mime": detected_mime,
                "category": category,
            },
        )

    def read_events(self, event_type: Optional[str] = None):
        """Yield ledger entries, optionally filtered by type."""
        with self.path.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                entry = json.loads(line)
                if event_type is None or entry.get("type") == event_type:
                    yield entry


def _host(url: str) -> str:
    # Signed CDN URLs carry tokens in the query string; only the host is kept
    return urlsplit(url).hostname or ""
