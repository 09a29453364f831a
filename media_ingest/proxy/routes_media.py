"""
Proxy API — stream stored media back to clients.

Blueprint: media_bp
Prefix: /media
Routes:
    HEAD   /media/<category>/<key>     # Liveness probe: 200 or 404, never 5xx
    GET    /media/<category>/<key>     # Body (Range aware): 200 / 206 / 404 / 416 / 500

Clients (the chat UI's audio player in particular) probe with HEAD before
playback and fall back to the upstream URL on anything but 200, so HEAD
maps every store failure to 404.
"""

from __future__ import annotations

import logging
import mimetypes
from typing import Dict, Optional

from flask import Blueprint, Response, current_app, jsonify, request

from ..models import MediaCategory
from ..storage import ObjectInfo, ObjectNotFound, key_for

media_bp = Blueprint("media", __name__)

logger = logging.getLogger(__name__)

CACHE_CONTROL = "public, max-age=31536000"
GENERIC_CONTENT_TYPE = "application/octet-stream"

# Served when neither the store nor the extension says what the bytes are
CATEGORY_CONTENT_TYPES = {
    MediaCategory.AUDIO: "audio/mpeg",
    MediaCategory.IMAGE: "image/jpeg",
    MediaCategory.VIDEO: "video/mp4",
    MediaCategory.STICKER: "image/webp",
    MediaCategory.DOCUMENT: GENERIC_CONTENT_TYPE,
}


# ── Helpers ──────────────────────────────────────────────────────


def _store():
    return current_app.config["OBJECT_STORE"]


def _resolve_key(category: str, key: str) -> Optional[str]:
    """Storage key for a request path, or None if the path is not servable."""
    try:
        parsed = MediaCategory.parse(category)
    except ValueError:
        return None
    if not key or key.startswith("/") or "\\" in key or "\x00" in key:
        return None
    if any(part in ("", ".", "..") for part in key.split("/")):
        return None
    return key_for(parsed, key)


def resolve_content_type(info: ObjectInfo, category: MediaCategory) -> str:
    """Store type → extension guess → category default."""
    stored = (info.content_type or "").strip()
    if stored and stored.split(";", 1)[0].lower() != GENERIC_CONTENT_TYPE:
        return stored

    guessed, _ = mimetypes.guess_type(info.key)
    if guessed:
        return guessed

    return CATEGORY_CONTENT_TYPES[category]


def _media_headers(info: ObjectInfo) -> Dict[str, str]:
    headers = {
        "Cache-Control": CACHE_CONTROL,
        "Content-Disposition": "inline",
        "Accept-Ranges": "bytes",
    }
    if info.etag:
        headers["ETag"] = info.etag
    return headers


def _not_found():
    return jsonify({"error": "Not found"}), 404


def _server_error():
    return jsonify({"error": "Failed to retrieve media"}), 500


# ── Routes ───────────────────────────────────────────────────────


@media_bp.after_request
def add_cors_headers(response):
    """Browsers fetch media cross-origin and send Range on seek."""
    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Headers"] = "Range"
    response.headers["Access-Control-Expose-Headers"] = "Content-Length, Content-Range, Accept-Ranges"
    return response


@media_bp.route("/<category>/<path:key>", methods=["GET", "HEAD"])
def serve_media(category: str, key: str):
    """HEAD and GET share a URL but not an error policy."""
    if request.method == "HEAD":
        return _head_media(category, key)
    return _get_media(category, key)


def _head_media(category: str, key: str):
    """Existence check. Any failure is reported as 404."""
    storage_key = _resolve_key(category, key)
    if storage_key is None:
        return Response(status=404)

    try:
        info = _store().head_object(storage_key)
    except ObjectNotFound:
        return Response(status=404)
    except Exception as e:
        logger.warning(f"HEAD {storage_key} failed, reporting 404: {e}")
        return Response(status=404)

    response = Response(
        status=200,
        content_type=resolve_content_type(info, MediaCategory.parse(category)),
        headers=_media_headers(info),
    )
    response.headers["Content-Length"] = str(info.size)
    return response


def _get_media(category: str, key: str):
    """Stream an object, honoring a single byte range; multi-range requests get the full body."""
    storage_key = _resolve_key(category, key)
    if storage_key is None:
        return _not_found()

    store = _store()
    try:
        info = store.head_object(storage_key)
    except ObjectNotFound:
        return _not_found()
    except Exception as e:
        logger.error(f"GET {storage_key}: store lookup failed: {e}")
        return _server_error()

    headers = _media_headers(info)
    content_type = resolve_content_type(info, MediaCategory.parse(category))

    start = end = None
    status = 200
    if request.range is not None and len(request.range.ranges) == 1:
        span = request.range.range_for_length(info.size)
        if span is None:
            return Response(
                status=416,
                headers={**headers, "Content-Range": f"bytes */{info.size}"},
            )
        start, end = span[0], span[1] - 1
        status = 206

    try:
        body = store.get_object(storage_key, start=start, end=end)
    except ObjectNotFound:
        return _not_found()
    except Exception as e:
        logger.error(f"GET {storage_key}: read failed: {e}")
        return _server_error()

    if status == 206:
        headers["Content-Range"] = f"bytes {body.start}-{body.end}/{info.size}"

    response = Response(body.chunks, status=status, content_type=content_type, headers=headers)
    response.headers["Content-Length"] = str(body.content_length)
    return response
