# -*- coding: utf-8 -*-
"""
In-process HTTP download of mirrored assets.
"""
import logging
import os
from pathlib import Path

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import settings
from .errors import FetchError

logger = logging.getLogger(__name__)

USER_AGENT = "ContentPlatform/1.0 (asset mirror)"


class RetryableError(Exception):
    """Transient download failure that triggers a retry."""


class AssetFetcher:
    """
    Bounded-timeout, limited-retry downloader.

    ``download`` reports failure through its return value and never raises
    for a missing or oversized asset, so one bad reference cannot abort an
    upload.
    """

    def __init__(
            self,
            timeout: int | None = None,
            max_attempts: int | None = None,
            max_size_mb: int | None = None,
            transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout = timeout or settings.FETCH_TIMEOUT
        self.max_attempts = max_attempts or settings.FETCH_MAX_ATTEMPTS
        self.max_bytes = (max_size_mb or settings.MAX_ASSET_SIZE_MB) * 1024 * 1024
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT},
                transport=self._transport,
            )
            logger.info("Asset fetcher initialized")

    async def stop(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Asset fetcher closed")

    async def download(self, url: str, destination: Path | str) -> bool:
        """
        Download ``url`` into ``destination``.

        The body is streamed to a sibling ``.part`` file and renamed into
        place once complete, so a failed download never leaves a truncated
        asset behind.

        Returns:
            True if the file was written, False otherwise (already logged)
        """
        await self.start()
        destination = Path(destination)
        attempts = 0

        @retry(
            retry=retry_if_exception_type(RetryableError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                min=settings.RETRY_MIN_WAIT, max=settings.RETRY_MAX_WAIT
            ),
            reraise=True,
        )
        async def _inner() -> int:
            nonlocal attempts
            attempts += 1
            try:
                return await self._fetch(url, destination)
            except httpx.TransportError as e:
                logger.warning(
                    f"Asset download failed (attempt {attempts}/{self.max_attempts})",
                    extra={"url": url[:120], "error": str(e)},
                )
                raise RetryableError(str(e)) from e

        try:
            size = await _inner()
        except RetryableError as e:
            logger.warning(
                f"Asset download gave up after {attempts} attempts",
                extra={"url": url[:120], "error": str(e)},
            )
            return False
        except FetchError as e:
            logger.warning(f"Asset skipped: {e}", extra={"url": url[:120]})
            return False
        except httpx.HTTPError as e:
            # Redirect loops, undecodable bodies, invalid URLs
            logger.warning(
                f"Asset download failed: {type(e).__name__}: {e}",
                extra={"url": url[:120]},
            )
            return False
        except OSError as e:
            logger.warning(f"Asset could not be written: {e}", extra={"url": url[:120]})
            return False

        logger.debug(f"Downloaded {url[:120]} ({size} bytes)")
        return True

    async def _fetch(self, url: str, destination: Path) -> int:
        """Single download attempt. Returns the number of bytes written."""
        async with self._client.stream("GET", url) as response:
            status = response.status_code
            if status == 429 or status >= 500:
                raise RetryableError(f"HTTP {status}")
            if status != 200:
                raise FetchError(f"HTTP {status}")

            declared = response.headers.get("content-length", "")
            if declared.isdigit() and int(declared) > self.max_bytes:
                raise FetchError(f"asset too large: {int(declared)} bytes")

            destination.parent.mkdir(parents=True, exist_ok=True)
            partial = destination.with_name(destination.name + ".part")
            size = 0
            try:
                with open(partial, "wb") as fh:
                    async for chunk in response.aiter_bytes():
                        size += len(chunk)
                        if size > self.max_bytes:
                            raise FetchError(f"asset exceeds {self.max_bytes} bytes")
                        fh.write(chunk)
                os.replace(partial, destination)
            except BaseException:
                partial.unlink(missing_ok=True)
                raise
            return size
