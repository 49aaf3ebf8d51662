"""
Resolves a source reference into exactly one local audio file inside a job's
workspace, enforcing size, duration and format limits along the way.
"""

import asyncio
import logging
import os
import shutil
import zipfile
from pathlib import Path

import aiofiles
import aiohttp

from karaokify.exceptions import DownloadError, ErrorKind
from karaokify.media.handlers import DownloadHandler, default_handlers
from karaokify.media.integrity import FileIntegrityChecker
from karaokify.models.config import PipelineConfig
from karaokify.models.job import SourceRef

log = logging.getLogger(__name__)

PARTIAL_NAME = "source.part"
UNPACKED_NAME = "source.unpacked"

# Content types that are certainly not audio; rejected before the body is read.
REJECTED_CONTENT_PREFIXES = ("text/", "application/json", "image/", "video/x-flv")

_connection_pool: aiohttp.ClientSession | None = None
_pool_loop: asyncio.AbstractEventLoop | None = None


async def get_connection_pool(max_workers: int = 4) -> aiohttp.ClientSession:
    """
    Gets or creates a shared aiohttp ClientSession for downloads.

    This function ensures that only one connection pool is created per event
    loop. There is no await between the check and the assignment, so
    concurrent callers cannot create two pools.

    Args:
        max_workers: Maximum concurrent connections (should match the download pool).
    """
    global _connection_pool, _pool_loop
    loop = asyncio.get_running_loop()
    if _connection_pool and not _connection_pool.closed and _pool_loop is loop:
        return _connection_pool

    connector = aiohttp.TCPConnector(
        limit=max_workers * 2,
        limit_per_host=max_workers,
        ttl_dns_cache=600,
        keepalive_timeout=30,
        enable_cleanup_closed=True,
    )
    timeout = aiohttp.ClientTimeout(total=None, sock_connect=15, sock_read=60)
    _connection_pool = aiohttp.ClientSession(
        connector=connector,
        timeout=timeout,
        headers={"User-Agent": "karaokify"},
    )
    _pool_loop = loop
    log.debug(f"Created download pool with limit_per_host={max_workers}")
    return _connection_pool


async def close_connection_pool() -> None:
    """Closes the shared global connection pool."""
    global _connection_pool, _pool_loop
    pool, _connection_pool = _connection_pool, None
    loop, _pool_loop = _pool_loop, None
    if pool and not pool.closed and loop is asyncio.get_running_loop():
        await pool.close()
        log.debug("Shared downloader connection pool closed.")


class HttpFetcher:
    """Streams a URL to disk with retry logic and an enforced byte limit."""

    CHUNK_SIZE = 262144  # 256 KB
    RETRYABLE_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})

    def __init__(
        self,
        max_bytes: int,
        max_attempts: int = 4,
        base_delay: float = 1.5,
        max_workers: int = 4,
    ):
        self.max_bytes = max_bytes
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_workers = max_workers

    async def session(self) -> aiohttp.ClientSession:
        return await get_connection_pool(self.max_workers)

    async def fetch(self, url: str, destination: Path) -> Path:
        """
        Downloads a URL to `destination`, retrying transient failures with
        exponential backoff.

        Raises:
            DownloadError: NOT_FOUND, TOO_LARGE, UNSUPPORTED_FORMAT or, once
            retries are exhausted, NETWORK_ERROR.
        """
        last_exception: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self._fetch_once(url, destination)
                return destination
            except DownloadError:
                raise
            except aiohttp.ClientResponseError as e:
                if e.status not in self.RETRYABLE_STATUSES:
                    raise DownloadError(
                        f"Source is not available (HTTP {e.status}).",
                        ErrorKind.NOT_FOUND,
                    ) from e
                last_exception = e
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_exception = e

            log.debug(
                f"Download attempt {attempt}/{self.max_attempts} for "
                f"'{url}' failed: {last_exception}. Retrying..."
            )
            if attempt < self.max_attempts:
                await asyncio.sleep(self.base_delay * (2 ** (attempt - 1)))

        raise DownloadError(
            f"Network error after {self.max_attempts} attempts: {last_exception}",
            ErrorKind.NETWORK_ERROR,
        ) from last_exception

    async def _fetch_once(self, url: str, destination: Path) -> None:
        session = await self.session()
        async with session.get(url, allow_redirects=True) as response:
            response.raise_for_status()
            self._check_headers(response)

            bytes_downloaded = 0
            async with aiofiles.open(destination, "wb") as f:
                async for chunk in response.content.iter_chunked(self.CHUNK_SIZE):
                    bytes_downloaded += len(chunk)
                    if bytes_downloaded > self.max_bytes:
                        raise DownloadError(
                            f"Source exceeds the {self.max_bytes} byte limit.",
                            ErrorKind.TOO_LARGE,
                        )
                    await f.write(chunk)

        if bytes_downloaded == 0:
            raise DownloadError("Source is empty.", ErrorKind.UNSUPPORTED_FORMAT)
        log.debug(f"Fetched {bytes_downloaded} bytes from {url}")

    def _check_headers(self, response: aiohttp.ClientResponse) -> None:
        """Rejects a response before reading its body where the headers allow it."""
        content_length = response.headers.get("Content-Length")
        if content_length and content_length.isdigit():
            if int(content_length) > self.max_bytes:
                raise DownloadError(
                    f"Source is {content_length} bytes, over the "
                    f"{self.max_bytes} byte limit.",
                    ErrorKind.TOO_LARGE,
                )

        content_type = response.headers.get("Content-Type", "").lower()
        if content_type.startswith(REJECTED_CONTENT_PREFIXES):
            raise DownloadError(
                f"Source is '{content_type.split(';')[0]}', not audio.",
                ErrorKind.UNSUPPORTED_FORMAT,
            )


class Downloader:
    """
    Runs the download handler chain for a source and validates the result
    against the configured limits.
    """

    def __init__(
        self, config: PipelineConfig, handlers: list[DownloadHandler] | None = None
    ):
        self.config = config
        self.fetcher = HttpFetcher(
            max_bytes=config.max_source_size_bytes,
            max_attempts=config.download_retries + 1,
            base_delay=config.retry_base_delay,
            max_workers=config.max_concurrent_downloads,
        )
        self.handlers = handlers if handlers is not None else default_handlers(config)

    async def download(self, source: SourceRef, workspace: Path) -> Path:
        """
        Produces the job's source audio file inside `workspace`.

        Returns:
            Path of the validated source file, named `source.<format>`.

        Raises:
            DownloadError: For any failure, including exceeding the stage deadline.
        """
        deadline = asyncio.timeout(self.config.download_timeout)
        try:
            async with deadline:
                raw_path = await self._run_handlers(source, workspace)
                return await self._finalize(raw_path, workspace)
        except TimeoutError as e:
            self._remove_leftovers(workspace)
            if deadline.expired():
                raise DownloadError(
                    f"Download did not finish within {self.config.download_timeout:g}s.",
                    ErrorKind.TIMEOUT,
                ) from e
            raise DownloadError(f"Download timed out: {e}", ErrorKind.NETWORK_ERROR) from e
        except BaseException:
            self._remove_leftovers(workspace)
            raise

    async def _run_handlers(self, source: SourceRef, workspace: Path) -> Path:
        destination = workspace / PARTIAL_NAME
        last_error: DownloadError | None = None

        for handler in self.handlers:
            if not handler.supports(source):
                continue
            try:
                path = await handler.download(source, destination, self.fetcher)
                log.debug(f"Handler {handler.name} downloaded {source.describe()}")
                return path
            except DownloadError as e:
                if not e.is_transient:
                    raise
                log.info(f"Handler {handler.name} failed for {source.describe()}: {e}")
                last_error = e
                self._remove_leftovers(workspace)

        if last_error:
            raise last_error
        raise DownloadError(
            f"No download handler accepts {source.describe()}.", ErrorKind.NOT_FOUND
        )

    async def _finalize(self, raw_path: Path, workspace: Path) -> Path:
        """Unpacks archives, probes the container and enforces source limits."""
        if await asyncio.to_thread(zipfile.is_zipfile, raw_path):
            raw_path = await asyncio.to_thread(self._unpack, raw_path, workspace)

        probe = await asyncio.to_thread(FileIntegrityChecker.probe, raw_path)
        if probe is None:
            raise DownloadError(
                "Source is not a recognizable audio file.",
                ErrorKind.UNSUPPORTED_FORMAT,
            )
        if probe.format not in self.config.allowed_formats:
            raise DownloadError(
                f"Source format '{probe.format}' is not allowed.",
                ErrorKind.UNSUPPORTED_FORMAT,
            )
        if probe.size > self.config.max_source_size_bytes:
            raise DownloadError(
                f"Source is {probe.size} bytes, over the "
                f"{self.config.max_source_size_bytes} byte limit.",
                ErrorKind.TOO_LARGE,
            )
        if probe.duration > self.config.max_source_duration_seconds:
            raise DownloadError(
                f"Source is {probe.duration:.0f}s long, over the "
                f"{self.config.max_source_duration_seconds:g}s limit.",
                ErrorKind.TOO_LARGE,
            )

        final_path = workspace / f"source.{probe.format}"
        await asyncio.to_thread(os.replace, raw_path, final_path)
        log.debug(
            f"Source ready: {final_path.name} ({probe.format}, {probe.duration:.1f}s)"
        )
        return final_path

    def _unpack(self, zip_path: Path, workspace: Path) -> Path:
        """Extracts the first regular, non-hidden member of a zip archive."""
        target = workspace / UNPACKED_NAME
        try:
            with zipfile.ZipFile(zip_path) as archive:
                for member in archive.infolist():
                    name = os.path.basename(member.filename)
                    if member.is_dir() or not name or name.startswith("."):
                        continue
                    if member.file_size > self.config.max_source_size_bytes:
                        raise DownloadError(
                            f"Archived file '{name}' exceeds the size limit.",
                            ErrorKind.TOO_LARGE,
                        )
                    log.debug(f"Extracting '{name}' from downloaded archive")
                    with archive.open(member) as src, open(target, "wb") as dst:
                        shutil.copyfileobj(src, dst)
                    break
                else:
                    raise DownloadError(
                        "Downloaded archive contains no audio file.",
                        ErrorKind.UNSUPPORTED_FORMAT,
                    )
        except zipfile.BadZipFile as e:
            raise DownloadError(
                f"Downloaded archive is corrupt: {e}", ErrorKind.UNSUPPORTED_FORMAT
            ) from e
        zip_path.unlink(missing_ok=True)
        return target

    @staticmethod
    def _remove_leftovers(workspace: Path) -> None:
        for name in (PARTIAL_NAME, UNPACKED_NAME):
            try:
                (workspace / name).unlink(missing_ok=True)
            except OSError as e:
                log.debug(f"Could not remove '{name}': {e}")
