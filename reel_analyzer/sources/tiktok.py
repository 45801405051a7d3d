"""TikTok source.

Reads post metadata with `yt-dlp -J` and downloads the post's media:
videos through yt-dlp itself, slideshow images through MediaDownloader.
yt-dlp runs as a subprocess in the default executor.
"""

import asyncio
import json
import logging
import re
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from reel_analyzer.core.exceptions import (
    DownloadFailedError,
    InvalidInputError,
    NotFoundError,
)
from reel_analyzer.core.media import DownloadedMedia, MediaAsset, MediaType
from reel_analyzer.services.downloader import MediaDownloader

logger = logging.getLogger(__name__)

SUPPORTED_VERSIONS = ("v1", "v2", "v3")

HASHTAG_PATTERN = re.compile(r"#(\w+)")
MENTION_PATTERN = re.compile(r"@([\w.]+)")
UNSAFE_FILENAME_CHARS = re.compile(r"[^a-z0-9.-]", re.IGNORECASE)


def sanitize_filename(value: str | None) -> str:
    if not value:
        return "unknown"
    return UNSAFE_FILENAME_CHARS.sub("_", value)[:100]


def validate_request(url: str | None, version: str | None) -> str:
    """Check a TikTok request and return the normalized version."""
    if not url:
        raise InvalidInputError("TikTok URL is required")
    if not isinstance(url, str) or not url.startswith(("http://", "https://")):
        raise InvalidInputError("Invalid TikTok URL")
    version = version or "v1"
    if version not in SUPPORTED_VERSIONS:
        raise InvalidInputError(
            f"Unsupported version '{version}'. Use one of: {', '.join(SUPPORTED_VERSIONS)}"
        )
    return version


@dataclass
class TikTokPost:
    """Metadata of a TikTok post as reported by yt-dlp."""

    id: str
    url: str
    type: str
    description: str = ""
    author: str | None = None
    statistics: dict[str, int] = field(default_factory=dict)
    music: dict[str, Any] | None = None
    create_time: int | None = None
    duration: float | None = None
    video_url: str | None = None
    images: list[str] = field(default_factory=list)

    @property
    def hashtags(self) -> list[str]:
        return HASHTAG_PATTERN.findall(self.description)

    @property
    def mentions(self) -> list[str]:
        return MENTION_PATTERN.findall(self.description)

    @classmethod
    def from_info(cls, info: dict[str, Any], url: str) -> "TikTokPost":
        """Build from a yt-dlp info dict.

        A post with at least one video format is a video. A post exposing an
        "images" list (or image entries) is a slideshow. Anything else keeps
        the type "unknown".
        """
        formats = info.get("formats") or []
        has_video = any(
            (f.get("vcodec") or "none") != "none" for f in formats if isinstance(f, dict)
        ) or info.get("vcodec") not in (None, "none")

        images = [
            img.get("url") if isinstance(img, dict) else img
            for img in info.get("images") or []
        ]
        for entry in info.get("entries") or []:
            if isinstance(entry, dict) and entry.get("ext") in ("jpg", "jpeg", "png", "webp"):
                images.append(entry.get("url"))
        images = [u for u in images if isinstance(u, str) and u]

        if has_video:
            post_type = "video"
        elif images:
            post_type = "image"
        else:
            post_type = "unknown"

        music = None
        if info.get("track") or info.get("artist"):
            music = {
                "title": info.get("track"),
                "author": info.get("artist"),
                "album": info.get("album"),
            }

        statistics = {
            "playCount": info.get("view_count") or 0,
            "likeCount": info.get("like_count") or 0,
            "commentCount": info.get("comment_count") or 0,
            "shareCount": info.get("repost_count") or 0,
        }

        return cls(
            id=str(info.get("id") or ""),
            url=info.get("webpage_url") or url,
            type=post_type,
            description=info.get("description") or info.get("title") or "",
            author=info.get("uploader") or info.get("creator") or info.get("uploader_id"),
            statistics=statistics,
            music=music,
            create_time=info.get("timestamp"),
            duration=info.get("duration"),
            video_url=info.get("url") if has_video else None,
            images=images,
        )

    def to_info(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "author": self.author,
            "type": self.type,
            "statistics": self.statistics,
            "music": self.music,
            "hashtags": self.hashtags,
            "mentions": self.mentions,
            "createTime": self.create_time,
            "duration": self.duration,
        }

    def to_metadata(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "author": self.author,
            "type": self.type,
            "statistics": self.statistics,
            "music": self.music,
            "video_available": self.type == "video",
            "images_available": bool(self.images),
            "images_count": len(self.images),
        }


@dataclass
class TikTokDownload:
    """Files written for one TikTok post."""

    post: TikTokPost
    files: list[DownloadedMedia]
    directory: Path

    def to_dict(self) -> dict[str, Any]:
        downloads = []
        for item in self.files:
            size = item.path.stat().st_size if item.path.exists() else 0
            downloads.append(
                {
                    "type": item.type.value,
                    "filename": item.path.name,
                    "filepath": str(item.path),
                    "size": size,
                    "url": item.url,
                }
            )
        total = sum(d["size"] for d in downloads)
        return {
            "success": True,
            "message": f"Successfully downloaded {len(downloads)} file(s)",
            "data": {
                "tiktok_info": self.post.to_info(),
                "downloads": downloads,
                "summary": {
                    "total_files": len(downloads),
                    "total_size_bytes": total,
                    "total_size_mb": f"{total / 1024 / 1024:.2f}",
                    "download_directory": str(self.directory),
                },
            },
        }


class TikTokDownloader:
    """TikTok collaborator: metadata lookup and media download.

    Attributes:
        temp_dir: Where downloaded files are written.
        timeout: Seconds allowed per yt-dlp invocation.
    """

    def __init__(
        self,
        temp_dir: Path,
        *,
        timeout: float = 60.0,
        downloader: MediaDownloader | None = None,
    ):
        self.temp_dir = Path(temp_dir)
        self.timeout = timeout
        self.downloader = downloader or MediaDownloader(self.temp_dir, timeout=timeout)

    def _run(self, cmd: list[str]) -> subprocess.CompletedProcess:
        return subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)

    async def _yt_dlp(self, args: list[str]) -> subprocess.CompletedProcess:
        cmd = ["yt-dlp", "--no-warnings", "--no-playlist", *args]
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, self._run, cmd),
                timeout=self.timeout + 5,
            )
        except (asyncio.TimeoutError, subprocess.TimeoutExpired) as e:
            raise DownloadFailedError(
                f"yt-dlp timed out after {self.timeout:g}s"
            ) from e
        except OSError as e:
            raise DownloadFailedError(f"Could not run yt-dlp: {e}") from e

    async def get_info(self, url: str, version: str | None = None) -> TikTokPost:
        """Fetch post metadata without downloading media.

        Raises:
            InvalidInputError: Bad URL or version, or yt-dlp could not
                extract the post.
            DownloadFailedError: yt-dlp timed out or is not installed.
        """
        version = validate_request(url, version)
        logger.info("Fetching TikTok metadata (%s): %s", version, url)

        result = await self._yt_dlp(["-J", url])
        if result.returncode != 0:
            message = (result.stderr or "").strip()[:200] or "unknown error"
            raise InvalidInputError(f"Failed to extract TikTok content: {message}")

        try:
            info = json.loads(result.stdout)
        except ValueError as e:
            raise InvalidInputError("Failed to extract TikTok content: invalid metadata") from e

        post = TikTokPost.from_info(info, url)
        logger.info("TikTok post %s is of type %s", post.id, post.type)
        return post

    def _filename(self, post: TikTokPost, suffix: str, extension: str) -> Path:
        timestamp = int(time.time() * 1000)
        name = (
            f"{sanitize_filename(post.author)}_{sanitize_filename(post.description or 'video')}"
            f"_{post.id}{suffix}_{timestamp}.{extension}"
        )
        return self.temp_dir / name

    async def _download_video(self, post: TikTokPost) -> DownloadedMedia:
        dest = self._filename(post, "", "mp4")
        dest.parent.mkdir(parents=True, exist_ok=True)
        result = await self._yt_dlp(
            ["-f", "best[ext=mp4]/best", "-o", str(dest), "--no-part", post.url]
        )
        if result.returncode != 0 or not dest.exists() or dest.stat().st_size == 0:
            dest.unlink(missing_ok=True)
            message = (result.stderr or "").strip()[:200]
            raise DownloadFailedError(f"Video download failed: {message or 'empty file'}")
        logger.info("Downloaded TikTok video: %s", dest.name)
        return DownloadedMedia(MediaType.VIDEO, dest, post.video_url or post.url)

    async def _download_images(self, post: TikTokPost) -> list[DownloadedMedia]:
        logger.info("Downloading %d slideshow images for %s", len(post.images), post.id)
        files = []
        for index, image_url in enumerate(post.images, start=1):
            dest = self._filename(post, f"_img{index}", "jpg")
            try:
                path = await self.downloader.fetch(MediaAsset(MediaType.IMAGE, image_url), dest)
            except DownloadFailedError as e:
                logger.warning("Image %d of %s failed, skipping: %s", index, post.id, e)
                continue
            files.append(DownloadedMedia(MediaType.IMAGE, path, image_url))
        return files

    async def download_content(
        self, url: str, version: str | None = None
    ) -> TikTokDownload:
        """Download the video or the slideshow images of a post.

        Slideshow images that fail are skipped; a failed video aborts.

        Raises:
            InvalidInputError: The post is neither a video nor a slideshow.
            NotFoundError: Nothing could be downloaded.
        """
        post = await self.get_info(url, version)

        if post.type == "video":
            files = [await self._download_video(post)]
        elif post.type == "image":
            files = await self._download_images(post)
        else:
            raise InvalidInputError(f"Unsupported TikTok content type: {post.type}")

        if not files:
            raise NotFoundError("No downloadable content found or all downloads failed")
        return TikTokDownload(post=post, files=files, directory=self.temp_dir)

    async def cleanup(self, files: list[DownloadedMedia]) -> None:
        await self.downloader.cleanup([f.path for f in files])

    async def aclose(self) -> None:
        await self.downloader.aclose()
