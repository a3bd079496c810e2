from __future__ import annotations

import ipaddress
from typing import Optional, Sequence
from urllib.parse import urlparse

import httpx

from canvasgate.logging import get_logger
from canvasgate.service.artifact_validation import (
    ValidatedArtifact,
    normalize_declared_type,
    sniff_image_type,
)
from canvasgate.service.errors import (
    DownloadTooLargeError,
    InvalidContentTypeError,
    InvalidSchemeError,
    RemoteFetchError,
)

logger = get_logger(__name__)

ALLOWED_SCHEMES = ("http", "https")


def host_matches_allowlist(host: str, allowlist: Sequence[str]) -> bool:
    """Match ``host`` against exact, ``*.suffix``, bare-suffix or CIDR entries."""
    if not host:
        return False
    lowered = host.lower().rstrip(".")
    for entry in allowlist:
        candidate = entry.strip().lower()
        if not candidate:
            continue
        if candidate.startswith("*."):
            if lowered.endswith(candidate[1:]):
                return True
        elif lowered == candidate or lowered.endswith(f".{candidate}"):
            return True
        elif "/" in candidate:
            try:
                net = ipaddress.ip_network(candidate, strict=False)
                ip_obj = ipaddress.ip_address(lowered)
                if ip_obj in net:
                    return True
            except ValueError:
                continue
    return False


class RemoteFetchGuard:
    """Download provider-generated images under scheme, host and size bounds.

    The guard only returns validated bytes; persisting them is the caller's
    job. Hosts outside the allowlist are logged and, unless
    ``enforce_allowlist`` is set, still downloaded.
    """

    def __init__(
        self,
        *,
        allowlist: Sequence[str],
        max_bytes: int,
        timeout_seconds: float,
        connect_timeout_seconds: float = 10.0,
        enforce_allowlist: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.allowlist = list(allowlist)
        self.max_bytes = max_bytes
        self.enforce_allowlist = enforce_allowlist
        self.timeout = httpx.Timeout(timeout_seconds, connect=min(connect_timeout_seconds, timeout_seconds))
        self._transport = transport

    def check_url(self, url: str) -> str:
        """Validate scheme and host; returns the host name."""
        parsed = urlparse(url)
        if parsed.scheme.lower() not in ALLOWED_SCHEMES:
            raise InvalidSchemeError(
                "Only http and https image URLs are allowed",
                detail={"scheme": parsed.scheme},
            )
        host = parsed.hostname
        if not host:
            raise InvalidSchemeError("Image URL is missing a host")

        if not host_matches_allowlist(host, self.allowlist):
            logger.warning(
                "remote_fetch_untrusted_host",
                host=host,
                enforced=self.enforce_allowlist,
            )
            if self.enforce_allowlist:
                raise RemoteFetchError(
                    f"Image host '{host}' is not allowlisted",
                    detail={"host": host},
                )
        return host

    async def fetch(self, url: str) -> ValidatedArtifact:
        host = self.check_url(url)
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                async with client.stream("GET", url) as response:
                    if response.status_code != 200:
                        raise RemoteFetchError(
                            f"Image download failed with status {response.status_code}",
                            detail={"status": response.status_code},
                        )
                    content_type = response.headers.get("content-type", "")
                    mime = content_type.split(";", 1)[0].strip().lower()
                    if not mime.startswith("image/"):
                        raise InvalidContentTypeError(
                            "Downloaded file is not an image",
                            detail={"content_type": mime or None},
                        )
                    self._check_declared_length(response)
                    data = await self._read_bounded(response)
        except httpx.TimeoutException as exc:
            logger.warning("remote_fetch_timeout", host=host)
            raise RemoteFetchError("Image download timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("remote_fetch_failed", host=host, error=str(exc))
            raise RemoteFetchError("Image download failed") from exc

        declared = normalize_declared_type(mime)
        sniffed = sniff_image_type(data)
        if sniffed is None:
            raise InvalidContentTypeError(
                "Downloaded file is not a recognised image format",
                detail={"content_type": mime},
            )
        logger.info("remote_fetch_complete", host=host, size_bytes=len(data), image_type=sniffed)
        return ValidatedArtifact(
            data=data,
            sniffed_type=sniffed,
            declared_type=declared,
            size_bytes=len(data),
        )

    def _check_declared_length(self, response: httpx.Response) -> None:
        raw = response.headers.get("content-length")
        if raw is None:
            return
        try:
            declared = int(raw)
        except ValueError:
            return
        if declared > self.max_bytes:
            raise DownloadTooLargeError(
                "Downloaded image exceeds size limit",
                detail={"max_bytes": self.max_bytes, "content_length": declared},
            )

    async def _read_bounded(self, response: httpx.Response) -> bytes:
        buffer = bytearray()
        async for block in response.aiter_bytes():
            if len(buffer) + len(block) > self.max_bytes:
                raise DownloadTooLargeError(
                    "Downloaded image exceeds size limit",
                    detail={"max_bytes": self.max_bytes},
                )
            buffer.extend(block)
        return bytes(buffer)
