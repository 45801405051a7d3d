"""Shared test fixtures for Reel Analyzer.

Provides in-memory stand-ins for Playwright objects and the pipeline's
external collaborators, plus temporary directories so tests never write
media into the real temp directory.
"""

import asyncio
import json
from pathlib import Path

import httpx
import pytest

from reel_analyzer.browser.pool import BrowserSessionPool
from reel_analyzer.core.media import DownloadedMedia, MediaAsset, MediaType
from reel_analyzer.core.pipeline import PipelineContext, PipelineCoordinator
from reel_analyzer.services.analyzer import AnalysisKind, choose_kind, parse_analysis_text
from reel_analyzer.services.downloader import MediaDownloader
from reel_analyzer.sources.tiktok import TikTokDownload, TikTokPost

ANALYSIS_TEXT = '```json\n{"title": "Lisbon trip", "locations": [{"name": "Belem Tower"}]}\n```'


def post_markup(post: dict) -> str:
    """Page markup embedding a post object the way Instagram does."""
    blob = json.dumps({"require": [["ScheduledServerJS", {"items": [post]}]]})
    return f'<html><body><script type="application/json">{blob}</script></body></html>'


CAROUSEL_POST = {
    "code": "test123",
    "carousel_media": [
        {"image_versions2": {"candidates": [{"url": "https://cdn.example.com/a.jpg"}]}},
        {
            "image_versions2": {"candidates": [{"url": "https://cdn.example.com/b_cover.jpg"}]},
            "video_versions": [{"url": "https://cdn.example.com/b.mp4"}],
        },
        {"image_versions2": {"candidates": [{"url": "https://cdn.example.com/c.jpg"}]}},
    ],
}

SINGLE_IMAGE_POST = {
    "code": "single123",
    "image_versions2": {"candidates": [{"url": "https://cdn.example.com/single.jpg"}]},
}


class FakePage:
    """Stand-in for playwright.async_api.Page."""

    def __init__(self, html: str = "", goto_error: Exception | None = None):
        self.html = html
        self.goto_error = goto_error
        self.routes: list[str] = []
        self.visited: list[str] = []
        self.close_count = 0

    async def route(self, pattern, handler):
        self.routes.append(pattern)

    async def goto(self, url, wait_until=None, timeout=None):
        self.visited.append(url)
        await asyncio.sleep(0)
        if self.goto_error is not None:
            raise self.goto_error

    async def content(self) -> str:
        return self.html

    async def close(self):
        self.close_count += 1


class FakeBrowser:
    """Stand-in for playwright.async_api.Browser."""

    def __init__(self, html: str = "", goto_error: Exception | None = None):
        self.html = html
        self.goto_error = goto_error
        self.pages: list[FakePage] = []
        self.connected = True
        self.new_page_error: Exception | None = None

    def is_connected(self) -> bool:
        return self.connected

    async def new_page(self, **kwargs) -> FakePage:
        if self.new_page_error is not None:
            raise self.new_page_error
        page = FakePage(self.html, self.goto_error)
        self.pages.append(page)
        return page

    async def close(self):
        self.connected = False


class FakeExtractor:
    """Extractor returning canned assets and counting invocations."""

    def __init__(self, assets: list[MediaAsset] | None = None, error: Exception | None = None):
        self.assets = assets or []
        self.error = error
        self.calls = 0

    def extract(self, html: str, post_id: str) -> list[MediaAsset]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.assets)


class FakeAnalyzer:
    """Analyzer returning canned text.

    Records which files existed on disk at call time so tests can verify
    cleanup happens after analysis, not before.
    """

    def __init__(self, text: str = ANALYSIS_TEXT, error: Exception | None = None, delay: float = 0):
        self.text = text
        self.error = error
        self.delay = delay
        self.calls: list[list[MediaType]] = []
        self.youtube_calls: list[str] = []
        self.paths: list[Path] = []
        self.existed: list[bool] = []

    async def analyze(self, media: list[DownloadedMedia]):
        self.calls.append([m.type for m in media])
        self.paths.extend(m.path for m in media)
        self.existed.extend(m.path.exists() for m in media)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return parse_analysis_text(self.text, choose_kind(media))

    async def analyze_youtube(self, url: str):
        self.youtube_calls.append(url)
        if self.error is not None:
            raise self.error
        return parse_analysis_text(self.text, AnalysisKind.YOUTUBE)


class FakeNotifier:
    """Notifier recording deliveries instead of sending them."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.failures: list[tuple[str, str]] = []

    def send(self, content_id, text):
        self.sent.append((content_id, text))
        return {
            "success": True,
            "message": "Content sent to external API (fire and forget)",
            "contentId": content_id,
        }

    def send_failure(self, content_id, message):
        if content_id:
            self.failures.append((content_id, message))

    async def aclose(self):
        pass

    def get_stats(self):
        return {"sent": len(self.sent), "failed": 0, "pending": 0}


class FakeTikTok:
    """TikTok source writing small files into a temp directory."""

    def __init__(self, temp_dir: Path, post_type: str = "video", description: str = "Sunset in Bali #travel"):
        self.temp_dir = temp_dir
        self.post_type = post_type
        self.description = description
        self.error: Exception | None = None
        self.downloads = 0
        self.cleaned: list[Path] = []

    def _post(self, url: str) -> TikTokPost:
        return TikTokPost(
            id="7300000000000000001",
            url=url,
            type=self.post_type,
            description=self.description,
            author="traveler",
            images=["https://cdn.example.com/1.jpg", "https://cdn.example.com/2.jpg"]
            if self.post_type == "image"
            else [],
        )

    async def get_info(self, url, version=None) -> TikTokPost:
        if self.error is not None:
            raise self.error
        return self._post(url)

    async def download_content(self, url, version=None) -> TikTokDownload:
        self.downloads += 1
        if self.error is not None:
            raise self.error
        post = self._post(url)
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        if post.type == "video":
            path = self.temp_dir / f"{post.id}.mp4"
            path.write_bytes(b"video-bytes")
            files = [DownloadedMedia(MediaType.VIDEO, path, url)]
        else:
            files = []
            for index, image_url in enumerate(post.images, start=1):
                path = self.temp_dir / f"{post.id}_img{index}.jpg"
                path.write_bytes(b"image-bytes")
                files.append(DownloadedMedia(MediaType.IMAGE, path, image_url))
        return TikTokDownload(post=post, files=files, directory=self.temp_dir)

    async def cleanup(self, files):
        for item in files:
            self.cleaned.append(item.path)
            item.path.unlink(missing_ok=True)


def media_handler(request: httpx.Request) -> httpx.Response:
    """Serve fake media.

    A URL containing "fail" answers 404; one containing "invalid" raises
    httpx.InvalidURL, which is not an httpx.HTTPError.
    """
    if "invalid" in str(request.url):
        raise httpx.InvalidURL("Invalid non-printable ASCII character in URL")
    if "fail" in str(request.url):
        return httpx.Response(404)
    return httpx.Response(200, content=b"media-bytes:" + str(request.url).encode())


@pytest.fixture
def media_dir(tmp_path: Path) -> Path:
    """Temporary directory receiving downloaded media.

    Args:
        tmp_path: pytest's built-in temp directory fixture.

    Returns:
        Path to the directory (created but empty).
    """
    directory = tmp_path / "media"
    directory.mkdir(parents=True, exist_ok=True)
    return directory


@pytest.fixture
def media_downloader(media_dir: Path) -> MediaDownloader:
    """MediaDownloader backed by an in-memory HTTP transport."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(media_handler))
    return MediaDownloader(media_dir, client=client)


def fake_pool(browser: FakeBrowser | None = None, max_pages: int = 2) -> BrowserSessionPool:
    """BrowserSessionPool whose launcher hands back a FakeBrowser."""
    browser = browser or FakeBrowser(html="<html></html>")

    async def launcher():
        return browser

    return BrowserSessionPool(max_pages=max_pages, launcher=launcher)


def build_coordinator(
    media_dir: Path,
    downloader: MediaDownloader | None = None,
    *,
    browser: FakeBrowser | None = None,
    extractor: FakeExtractor | None = None,
    analyzer: FakeAnalyzer | None = None,
    notifier: FakeNotifier | None = None,
    tiktok: FakeTikTok | None = None,
    context: PipelineContext | None = None,
) -> PipelineCoordinator:
    """PipelineCoordinator wired to fakes; start() still has to be awaited."""
    if downloader is None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(media_handler))
        downloader = MediaDownloader(media_dir, client=client)
    if context is None:
        context = PipelineContext(pool=fake_pool(browser))

    return PipelineCoordinator(
        context,
        extractor=extractor or FakeExtractor(
            [MediaAsset(MediaType.VIDEO, "https://cdn.example.com/reel.mp4")]
        ),
        downloader=downloader,
        analyzer=analyzer or FakeAnalyzer(),
        notifier=notifier or FakeNotifier(),
        tiktok=tiktok or FakeTikTok(media_dir),
    )


@pytest.fixture
def make_coordinator(media_dir: Path, media_downloader: MediaDownloader):
    """Factory building a PipelineCoordinator around fakes.

    The coordinator's pool still has to be started by the test
    (await coordinator.start()).
    """

    def _make(**fakes) -> PipelineCoordinator:
        return build_coordinator(media_dir, media_downloader, **fakes)

    return _make
