"""Blob transport: the only network capability the download path needs.

Given a model id and version, a transport returns a byte stream together with
the declared total size and checksum. Retries, TLS and authentication are the
transport's own concern; the download coordinator never retries.

HTTP wire contract used by HttpBlobTransport:
    GET {base}/models/{model_id}/versions/{version}/artifact
    Content-Length: <total bytes>
    X-Checksum-SHA256: <hex digest>    (optional)
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from typing import Protocol

import httpx

from edgeml.core.exceptions import DownloadFailedError
from edgeml.core.logging import get_logger, sanitize_error
from edgeml.lifecycle.descriptor import SemanticVersion

logger = get_logger(__name__)

CHECKSUM_HEADER = "X-Checksum-SHA256"


@dataclass(slots=True)
class BlobStream:
    """An open artifact stream.

    Attributes:
        chunks: Async iterator of raw bytes
        total_size: Declared size in bytes, or None if the transport does not know
        checksum_sha256: Declared SHA-256 hex digest, or None
    """

    chunks: AsyncIterator[bytes]
    total_size: int | None = None
    checksum_sha256: str | None = None


class BlobTransport(Protocol):
    def open(
        self, model_id: str, version: SemanticVersion
    ) -> AbstractAsyncContextManager[BlobStream]:
        """Open the artifact of ``model_id`` at ``version`` for streaming.

        Raises:
            DownloadFailedError: On any transport-level failure, including
                failures while iterating the chunks
        """
        ...


class HttpBlobTransport:
    """Streams artifacts from the artifact service with httpx."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: httpx.Timeout | float = 60.0,
        chunk_size: int = 1024 * 1024,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._chunk_size = chunk_size
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )
        logger.info(f"HttpBlobTransport initialized with base_url={self._base_url}")

    async def close(self) -> None:
        """Close the HTTP client connections."""
        if self._owns_client:
            await self._client.aclose()
            logger.debug("HttpBlobTransport HTTP connections closed")

    def artifact_url(self, model_id: str, version: SemanticVersion) -> str:
        return f"{self._base_url}/models/{model_id}/versions/{version}/artifact"

    @asynccontextmanager
    async def open(self, model_id: str, version: SemanticVersion) -> AsyncIterator[BlobStream]:
        url = self.artifact_url(model_id, version)
        try:
            async with self._client.stream("GET", url) as response:
                response.raise_for_status()
                content_length = response.headers.get("Content-Length")
                yield BlobStream(
                    chunks=response.aiter_bytes(self._chunk_size),
                    total_size=int(content_length) if content_length else None,
                    checksum_sha256=(response.headers.get(CHECKSUM_HEADER) or "").lower() or None,
                )
        except httpx.HTTPStatusError as e:
            reason = f"HTTP {e.response.status_code} from artifact service"
            logger.warning(f"Artifact request for '{model_id}' failed: {reason}")
            raise DownloadFailedError(model_id, reason) from e
        except httpx.HTTPError as e:
            reason = sanitize_error(e) or type(e).__name__
            logger.warning(f"Artifact transfer for '{model_id}' failed: {reason}")
            raise DownloadFailedError(model_id, reason) from e
