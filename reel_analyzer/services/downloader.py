"""Media downloader.

Streams remote media files into the temp directory with a fixed I/O
timeout. Files created here are removed by cleanup() once the pipeline is
done with them.
"""

import logging
import uuid
from pathlib import Path

import httpx

from reel_analyzer.core.exceptions import DownloadFailedError
from reel_analyzer.core.http_client import create_client, get_timeout
from reel_analyzer.core.media import DownloadedMedia, MediaAsset

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class MediaDownloader:
    """Downloads media assets to local storage.

    Attributes:
        temp_dir: Directory receiving downloaded files.
        timeout: Read timeout per download in seconds.
    """

    def __init__(
        self,
        temp_dir: Path,
        *,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.temp_dir = Path(temp_dir)
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = create_client(timeout=get_timeout(read=self.timeout))
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def make_path(self, prefix: str, index: int, asset: MediaAsset) -> Path:
        """Unique temp path for an asset; prefix is usually the post ID."""
        suffix = uuid.uuid4().hex[:8]
        return self.temp_dir / f"{prefix}_{index}_{suffix}.{asset.type.extension}"

    async def fetch(self, asset: MediaAsset, dest: Path) -> Path:
        """Download one asset to dest.

        Raises:
            DownloadFailedError: On HTTP errors, invalid URLs, timeouts or I/O
                errors. A partially written file is removed on every failure.
        """
        dest.parent.mkdir(parents=True, exist_ok=True)
        client = self._get_client()
        logger.debug("Downloading %s -> %s", asset.url[:100], dest)
        try:
            async with client.stream("GET", asset.url) as response:
                response.raise_for_status()
                with open(dest, "wb") as f:
                    async for chunk in response.aiter_bytes(CHUNK_SIZE):
                        f.write(chunk)
        except (httpx.HTTPError, httpx.InvalidURL, OSError) as e:
            dest.unlink(missing_ok=True)
            raise DownloadFailedError(f"Failed to download media: {e}") from e
        except BaseException:
            dest.unlink(missing_ok=True)
            raise

        logger.info("Downloaded %s (%d bytes)", dest.name, dest.stat().st_size)
        return dest

    async def download_all(
        self, assets: list[MediaAsset], prefix: str
    ) -> list[DownloadedMedia]:
        """Download every asset; one failure aborts the whole batch.

        Files already written for the batch are removed before any error,
        cancellation included, propagates.
        """
        downloaded: list[DownloadedMedia] = []
        try:
            for index, asset in enumerate(assets):
                path = await self.fetch(asset, self.make_path(prefix, index, asset))
                downloaded.append(DownloadedMedia(asset.type, path, asset.url))
        except BaseException:
            await self.cleanup([d.path for d in downloaded])
            raise
        return downloaded

    async def download_available(
        self, assets: list[MediaAsset], prefix: str
    ) -> list[DownloadedMedia]:
        """Download what can be downloaded, skipping failed assets.

        Raises:
            DownloadFailedError: Only when no asset could be downloaded.
        """
        downloaded: list[DownloadedMedia] = []
        for index, asset in enumerate(assets):
            try:
                path = await self.fetch(asset, self.make_path(prefix, index, asset))
            except DownloadFailedError as e:
                logger.warning("Skipping asset %d of %s: %s", index + 1, prefix, e)
                continue
            downloaded.append(DownloadedMedia(asset.type, path, asset.url))

        if assets and not downloaded:
            raise DownloadFailedError("All media downloads failed")
        return downloaded

    async def cleanup(self, paths: list[Path]) -> None:
        """Delete local files. Errors are logged, never raised."""
        for path in paths:
            try:
                Path(path).unlink(missing_ok=True)
                logger.debug("Cleaned up file: %s", path)
            except OSError as e:
                logger.warning("Could not remove %s: %s", path, e)
