"""
Media Fetcher — download a remote attachment, decrypting when required.

Two paths:
- Plain URLs (gateway-hosted or already re-hosted media): bounded GET.
- Encrypted CDN URLs (host matches an encrypted-media pattern): bounded
  GET of the encrypted body, then ``decrypt_media``. A reference on such a
  host without key material fails before any request is made.

The body is streamed and counted; the download is abandoned as soon as it
would exceed the configured ceiling.

## Environment Variables

- MEDIA_FETCH_TIMEOUT_SECONDS: Request timeout (default: 30)
- MEDIA_MAX_DOWNLOAD_BYTES: Body ceiling (default: 50 MB)
- MEDIA_ENCRYPTED_HOSTS: Comma-separated host suffixes (default: whatsapp.net)
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional
from urllib.parse import urlparse

import httpx

from .. import __version__
from ..errors import DownloadError
from ..models import MediaReference, RawPayload
from .decryptor import DecryptionContext, decrypt_media

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_BYTES = 50 * 1024 * 1024
DEFAULT_ENCRYPTED_HOSTS = ("whatsapp.net",)
MAX_REDIRECTS = 5
USER_AGENT = f"media-ingest/{__version__}"


class Fetcher:
    """
    Retrieves raw bytes for a MediaReference.

    Usage:
        with Fetcher(timeout=30, max_bytes=50 * 1024 * 1024) as fetcher:
            payload = fetcher.fetch(ref)
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        max_bytes: int = DEFAULT_MAX_BYTES,
        encrypted_hosts: Iterable[str] = DEFAULT_ENCRYPTED_HOSTS,
        client: Optional[httpx.Client] = None,
    ):
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.encrypted_hosts = tuple(h.lower().lstrip(".") for h in encrypted_hosts if h)
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=timeout,
            follow_redirects=True,
            max_redirects=MAX_REDIRECTS,
            headers={"User-Agent": USER_AGENT},
        )

    @classmethod
    def from_settings(cls, settings, client: Optional[httpx.Client] = None) -> "Fetcher":
        return cls(
            timeout=settings.fetch_timeout_seconds,
            max_bytes=settings.max_download_bytes,
            encrypted_hosts=settings.encrypted_hosts,
            client=client,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "Fetcher":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def is_encrypted_url(self, url: str) -> bool:
        """True if the URL's host is (a subdomain of) an encrypted-media host."""
        host = (urlparse(url).hostname or "").lower()
        return any(host == h or host.endswith("." + h) for h in self.encrypted_hosts)

    def fetch(self, ref: MediaReference) -> RawPayload:
        """
        Download (and decrypt if needed) the bytes behind a reference.

        Raises:
            DownloadError: network failure, timeout, bad status, too large.
            DecryptionError: missing context or integrity failure.
        """
        if self.is_encrypted_url(ref.remote_url):
            # Validate key material before touching the network
            context = DecryptionContext.parse(ref.decryption_context)
            body = self.download(ref.remote_url)
            plaintext = decrypt_media(body, context, ref.declared_category)
            return RawPayload(data=plaintext, source_url=ref.remote_url, was_encrypted=True)

        data = self.download(ref.remote_url)
        return RawPayload(data=data, source_url=ref.remote_url)

    def download(self, url: str) -> bytes:
        """
        GET a URL into memory, never holding more than ``max_bytes``.

        Raises:
            DownloadError: reason is one of status, too_large, timeout, network.
        """
        buf = bytearray()
        try:
            with self._client.stream("GET", url, timeout=self.timeout) as response:
                if not response.is_success:
                    raise DownloadError(
                        f"GET {_short(url)} returned HTTP {response.status_code}",
                        reason="status",
                    )

                declared = response.headers.get("Content-Length")
                if declared and declared.isdigit() and int(declared) > self.max_bytes:
                    raise DownloadError(
                        f"Remote body is {int(declared):,} bytes (limit {self.max_bytes:,})",
                        reason="too_large",
                    )

                for chunk in response.iter_bytes():
                    if len(buf) + len(chunk) > self.max_bytes:
                        raise DownloadError(
                            f"Remote body exceeds {self.max_bytes:,} bytes",
                            reason="too_large",
                        )
                    buf.extend(chunk)

        except httpx.TimeoutException as e:
            raise DownloadError(f"Timed out fetching {_short(url)}: {e}", reason="timeout") from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise DownloadError(f"Failed to fetch {_short(url)}: {e}", reason="network") from e

        logger.debug(f"Downloaded {len(buf):,} bytes from {_short(url)}")
        return bytes(buf)


def _short(url: str, limit: int = 100) -> str:
    """Trim long signed CDN URLs for log output."""
    return url if len(url) <= limit else url[:limit] + "..."
