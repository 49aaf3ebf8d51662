"""
Download handlers. Each one knows how to turn one kind of source reference
into a file on disk; the Downloader tries the supporting handlers in order.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import aiofiles
import aiohttp

from karaokify.exceptions import DownloadError, ErrorKind
from karaokify.models.config import PipelineConfig
from karaokify.models.job import SourceRef

log = logging.getLogger(__name__)

# Streaming service host fragment -> quality code understood by the resolver
RESOLVER_QUALITY_MAP = {
    "spotify": "very_high",
    "qobuz": "27",
    "tidal": "3",
    "apple": "high",
    "deezer": "2",
    "youtube": "0",
    "youtu.be": "0",
}


class DownloadHandler:
    """Base class for a download strategy."""

    name = "handler"

    def supports(self, source: SourceRef) -> bool:
        raise NotImplementedError

    async def download(self, source: SourceRef, destination: Path, fetcher) -> Path:
        """
        Writes the source to `destination`.

        Args:
            source: The reference to download.
            destination: File path inside the job workspace.
            fetcher: The shared HttpFetcher (retrying, size-limited streamer).
        """
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__}>"


class InlineBytesHandler(DownloadHandler):
    """Writes raw bytes that arrived with the request."""

    name = "inline"

    def supports(self, source: SourceRef) -> bool:
        return source.is_inline

    async def download(self, source: SourceRef, destination: Path, fetcher) -> Path:
        if len(source.data) > fetcher.max_bytes:
            raise DownloadError(
                f"Source is {len(source.data)} bytes, over the "
                f"{fetcher.max_bytes} byte limit.",
                ErrorKind.TOO_LARGE,
            )
        if not source.data:
            raise DownloadError("Source is empty.", ErrorKind.UNSUPPORTED_FORMAT)
        async with aiofiles.open(destination, "wb") as f:
            await f.write(source.data)
        return destination


class HttpHandler(DownloadHandler):
    """Streams a direct http(s) URL."""

    name = "http"

    def supports(self, source: SourceRef) -> bool:
        return bool(source.url) and urlparse(source.url).scheme in ("http", "https")

    async def download(self, source: SourceRef, destination: Path, fetcher) -> Path:
        return await fetcher.fetch(source.url, destination)


class ResolverServiceHandler(DownloadHandler):
    """
    Asks a conversion service to prepare a download for a streaming-service
    page URL, waits until it reports a file URL, then streams that file.

    Protocol:
        POST <service>                 {"url", "quality", "host"} -> {"id"}
        GET  <service>?id=<id>         -> {"status", "error", "url"}
    """

    name = "resolver"

    def __init__(
        self,
        service_url: str,
        poll_interval: float = 1.0,
        max_polls: int = 300,
        request_timeout: float = 10.0,
        init_attempts: int = 5,
    ):
        self.service_url = service_url
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.request_timeout = aiohttp.ClientTimeout(total=request_timeout)
        self.init_attempts = init_attempts

    @staticmethod
    def quality_for(url: str) -> str | None:
        host = (urlparse(url).hostname or "").lower()
        return next(
            (q for service, q in RESOLVER_QUALITY_MAP.items() if service in host), None
        )

    def supports(self, source: SourceRef) -> bool:
        return bool(self.service_url and source.url and self.quality_for(source.url))

    async def download(self, source: SourceRef, destination: Path, fetcher) -> Path:
        session = await fetcher.session()
        download_url = await self._resolve(session, source.url)
        log.debug(f"Resolver produced download URL for {source.url}")
        return await fetcher.fetch(download_url, destination)

    async def _resolve(self, session: aiohttp.ClientSession, song_url: str) -> str:
        last_exception: Exception | None = None
        for attempt in range(1, self.init_attempts + 1):
            try:
                download_id = await self._initialize(session, song_url)
                return await self._wait_for_url(session, download_id)
            except DownloadError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                last_exception = e
                log.debug(
                    f"Resolver attempt {attempt}/{self.init_attempts} failed: {e}"
                )
                if attempt < self.init_attempts:
                    await asyncio.sleep(2)

        raise DownloadError(
            f"Resolver service is unavailable: {last_exception}",
            ErrorKind.NETWORK_ERROR,
        ) from last_exception

    async def _initialize(self, session: aiohttp.ClientSession, song_url: str) -> Any:
        payload = {
            "url": song_url,
            "quality": self.quality_for(song_url),
            "host": "filehaus",
        }
        async with session.post(
            self.service_url, json=payload, timeout=self.request_timeout
        ) as r:
            r.raise_for_status()
            body = await r.json(content_type=None)
        if not isinstance(body, dict) or "id" not in body:
            raise ValueError(f"Unexpected resolver response: {body!r}")
        return body["id"]

    async def _wait_for_url(self, session: aiohttp.ClientSession, download_id) -> str:
        for _ in range(self.max_polls):
            async with session.get(
                self.service_url,
                params={"id": str(download_id)},
                timeout=self.request_timeout,
            ) as r:
                r.raise_for_status()
                status = await r.json(content_type=None)
            if not isinstance(status, dict):
                raise ValueError(f"Unexpected resolver status: {status!r}")

            if error := status.get("error"):
                raise DownloadError(
                    f"Resolver could not provide the track: {error}",
                    ErrorKind.NOT_FOUND,
                )
            if url := status.get("url"):
                return url
            await asyncio.sleep(self.poll_interval)

        raise DownloadError(
            "Resolver did not finish preparing the track.", ErrorKind.NOT_FOUND
        )


def default_handlers(config: PipelineConfig) -> list[DownloadHandler]:
    """The handler chain used unless a custom one is injected."""
    handlers: list[DownloadHandler] = [InlineBytesHandler()]
    if config.resolver_service_url:
        handlers.append(ResolverServiceHandler(config.resolver_service_url))
    handlers.append(HttpHandler())
    return handlers
