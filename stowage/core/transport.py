"""Download transports.

The installer only needs ``fetch(url) -> bytes``; anything satisfying the
:class:`Transport` protocol can be plugged in. :class:`DefaultTransport`
handles ``http(s)://`` through ``httpx`` and ``file://`` from local disk.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol, runtime_checkable
from urllib.parse import urlsplit
from urllib.request import url2pathname

import httpx

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "stowage/0.1 (+artifact installer)"


class TransportError(RuntimeError):
    """Raised when a URL cannot be fetched."""


@runtime_checkable
class Transport(Protocol):
    """Anything that can turn a URL into bytes."""

    def fetch(self, url: str) -> bytes:
        """Return the full body behind ``url`` or raise :class:`TransportError`."""
        ...


class DefaultTransport:
    """HTTP(S) and ``file://`` transport.

    Parameters
    ----------
    timeout:
        Per-request timeout in seconds (connect, read, write and pool).
    user_agent:
        ``User-Agent`` header sent with HTTP requests.
    max_bytes:
        Abort downloads larger than this many bytes; ``0`` disables the cap.
    client:
        Pre-configured ``httpx.Client``; one is created (and owned) if omitted.
    """

    def __init__(
        self,
        *,
        timeout: float = 60.0,
        user_agent: str = DEFAULT_USER_AGENT,
        max_bytes: int = 0,
        client: httpx.Client | None = None,
    ) -> None:
        self._max_bytes = max_bytes
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout),
            headers={"User-Agent": user_agent},
            follow_redirects=True,
        )

    def fetch(self, url: str) -> bytes:
        parts = urlsplit(url)
        if parts.scheme == "file":
            return self._read_file(url2pathname(parts.path))
        if parts.scheme in ("http", "https"):
            return self._get(url)
        raise TransportError(f"Unsupported URL scheme {parts.scheme!r} in {url}")

    def _read_file(self, raw_path: str) -> bytes:
        path = Path(raw_path)
        try:
            size = path.stat().st_size
            if self._max_bytes and size > self._max_bytes:
                raise TransportError(
                    f"{path} is {size} bytes, over the {self._max_bytes} byte limit"
                )
            return path.read_bytes()
        except OSError as exc:
            raise TransportError(f"Cannot read {path}: {exc}") from exc

    def _get(self, url: str) -> bytes:
        chunks: list[bytes] = []
        received = 0
        try:
            with self._client.stream("GET", url) as response:
                response.raise_for_status()
                for chunk in response.iter_bytes():
                    received += len(chunk)
                    if self._max_bytes and received > self._max_bytes:
                        raise TransportError(
                            f"{url} exceeded the {self._max_bytes} byte download limit"
                        )
                    chunks.append(chunk)
        except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError) as exc:
            raise TransportError(f"GET {url} failed: {exc}") from exc
        logger.debug("Fetched %d bytes from %s", received, url)
        return b"".join(chunks)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "DefaultTransport":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
