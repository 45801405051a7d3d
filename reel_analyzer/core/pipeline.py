"""Scrape/analyze pipeline coordinator.

Ties the browser pool, extractor, downloader, analyzer and notifier into
one state machine per request:

    CacheCheck -> Fetching -> Extracting -> Downloading -> Analyzing
               -> Caching -> Cleanup -> Notifying -> Done

with Error reachable from every state after CacheCheck. Work for one key
runs once among concurrent callers (SingleFlight); each caller then
notifies its own content id. Caching and cleanup belong to the shared
work, so they happen even if every caller has gone away.
"""

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from reel_analyzer.browser.pool import BrowserSessionPool
from reel_analyzer.core.cache_store import ANALYSIS_TTL_SECONDS, CacheStore
from reel_analyzer.core.config import Config
from reel_analyzer.core.exceptions import (
    InternalError,
    NotFoundError,
    PipelineError,
)
from reel_analyzer.core.inflight import InFlightTracker, SingleFlight
from reel_analyzer.core.logger import get_post_logger
from reel_analyzer.core.media import DownloadedMedia, MediaAsset, primary_url
from reel_analyzer.extractors.instagram import InstagramExtractor
from reel_analyzer.extractors.urls import (
    canonical_post_url,
    get_post_id,
    get_youtube_id,
    is_youtube_url,
)
from reel_analyzer.services.analyzer import AnalysisResult, GeminiAnalyzer
from reel_analyzer.services.downloader import MediaDownloader
from reel_analyzer.services.notifier import ContentNotifier
from reel_analyzer.sources.tiktok import TikTokDownloader, validate_request

logger = logging.getLogger(__name__)

CACHED_RECEIPT_MESSAGE = "Cached result - API call skipped"
INTERNAL_ERROR_MESSAGE = "Internal server error"
EMPTY_ANALYSIS_MESSAGE = "Analysis produced no text to deliver"


class PipelineState(str, Enum):
    CACHE_CHECK = "cache_check"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    DOWNLOADING = "downloading"
    ANALYZING = "analyzing"
    CACHING = "caching"
    CLEANUP = "cleanup"
    NOTIFYING = "notifying"
    DONE = "done"
    ERROR = "error"


class Extractor(Protocol):
    def extract(self, html: str, post_id: str) -> list[MediaAsset]: ...


class Analyzer(Protocol):
    async def analyze(self, media: list[DownloadedMedia]) -> AnalysisResult: ...

    async def analyze_youtube(self, url: str) -> AnalysisResult: ...


@dataclass
class PipelineRun:
    """State of one pass through the pipeline.

    Attributes:
        flow: Flow name (lookup, analyze, youtube, tiktok, ...).
        key: Cache/dedup key, or the raw URL until one is derived.
        content_id: Caller's content identifier, if any.
        state: Current state.
        history: States left behind, in order.
    """

    flow: str
    key: str
    content_id: str | None = None
    state: PipelineState = PipelineState.CACHE_CHECK
    history: list[PipelineState] = field(default_factory=list)

    @property
    def log(self) -> logging.LoggerAdapter:
        return get_post_logger(
            __name__, self.key, flow=self.flow, state=self.state.value
        )

    def advance(self, state: PipelineState) -> None:
        self.history.append(self.state)
        self.state = state
        self.log.debug("%s: %s -> %s", self.flow, self.history[-1].value, state.value)


def analysis_text(body: dict[str, Any]) -> str:
    """Text handed to the notifier for a cached or fresh analysis body."""
    analysis = body.get("analysis") or {}
    text = analysis.get("raw_response")
    if not text and isinstance(analysis.get("result"), dict):
        text = analysis["result"].get("raw_response")
    return text or ""


def require_text(body: dict[str, Any]) -> None:
    """Reject an analysis body with nothing to deliver, before it is cached."""
    if not analysis_text(body):
        raise InternalError(EMPTY_ANALYSIS_MESSAGE)


def with_caption(text: str, tiktok_info: dict[str, Any] | None) -> str:
    description = (tiktok_info or {}).get("description")
    if description:
        return f"{text}\n\nOriginal Caption: {description}"
    return text


@dataclass
class PipelineContext:
    """Process-wide state every flow works against.

    Built once at startup and handed to the coordinator, so all requests
    see the same cache, in-flight tracker and browser pool.

    Attributes:
        pool: Browser session pool.
        cache: Result cache shared by all flows.
        tracker: Post ids currently being fetched by the browser.
        flights: Collapses concurrent work for the same key.
    """

    pool: BrowserSessionPool
    cache: CacheStore = field(default_factory=CacheStore)
    tracker: InFlightTracker = field(default_factory=InFlightTracker)
    flights: SingleFlight = field(default_factory=SingleFlight)

    @classmethod
    def from_config(cls, config: Config) -> "PipelineContext":
        return cls(
            pool=BrowserSessionPool(headless=config.headless, max_pages=config.max_pages),
            cache=CacheStore(max_entries=config.cache_max_entries),
        )


class PipelineCoordinator:
    """Runs pipeline flows against a shared PipelineContext.

    Attributes:
        context: Cache, tracker, single-flight group and browser pool.
        requests: Flow invocations.
        cache_hits: Invocations answered from the cache.
        processed: Invocations that completed successfully.
        failed: Invocations that ended in Error.
    """

    def __init__(
        self,
        context: PipelineContext,
        *,
        extractor: Extractor,
        downloader: MediaDownloader,
        analyzer: Analyzer,
        notifier: ContentNotifier,
        tiktok: TikTokDownloader | None = None,
        navigation_timeout: float = 30.0,
        analysis_ttl: float = ANALYSIS_TTL_SECONDS,
    ):
        self.context = context
        self.extractor = extractor
        self.downloader = downloader
        self.analyzer = analyzer
        self.notifier = notifier
        self.tiktok = tiktok or TikTokDownloader(downloader.temp_dir, downloader=downloader)
        self.navigation_timeout = navigation_timeout
        self.analysis_ttl = analysis_ttl

        self.requests = 0
        self.cache_hits = 0
        self.processed = 0
        self.failed = 0

    @classmethod
    def from_config(cls, config: Config) -> "PipelineCoordinator":
        """Wire production collaborators from configuration."""
        downloader = MediaDownloader(config.temp_dir, timeout=config.download_timeout)
        return cls(
            PipelineContext.from_config(config),
            extractor=InstagramExtractor(),
            downloader=downloader,
            analyzer=GeminiAnalyzer(
                config.gemini_api_key,
                model=config.gemini_model,
                timeout=config.analysis_timeout,
            ),
            notifier=ContentNotifier(
                config.content_api_url,
                config.content_status_url,
                timeout=config.notify_timeout,
            ),
            tiktok=TikTokDownloader(
                config.temp_dir, timeout=config.download_timeout, downloader=downloader
            ),
            navigation_timeout=config.navigation_timeout,
            analysis_ttl=config.analysis_cache_ttl,
        )

    @property
    def pool(self) -> BrowserSessionPool:
        return self.context.pool

    @property
    def cache(self) -> CacheStore:
        return self.context.cache

    @property
    def tracker(self) -> InFlightTracker:
        return self.context.tracker

    @property
    def flights(self) -> SingleFlight:
        return self.context.flights

    async def start(self) -> None:
        await self.pool.start()

    async def close(self) -> None:
        await self.notifier.aclose()
        await self.pool.close()
        await self.downloader.aclose()

    # ── Error boundary ───────────────────────────────────────────────

    @asynccontextmanager
    async def _boundary(self, run: PipelineRun) -> AsyncIterator[None]:
        """Convert failures to the error taxonomy and report them.

        Failures after CacheCheck send a FAILED status for the run's
        content id before propagating.
        """
        self.requests += 1
        try:
            yield
        except PipelineError as e:
            self._fail(run, e)
            raise
        except Exception as e:
            run.log.exception("Unexpected error in %s", run.flow)
            error = InternalError(INTERNAL_ERROR_MESSAGE)
            self._fail(run, error)
            raise error from e
        else:
            self.processed += 1

    def _fail(self, run: PipelineRun, error: PipelineError) -> None:
        failed_in = run.state
        run.advance(PipelineState.ERROR)
        self.failed += 1
        run.log.warning(
            "%s failed in %s: %s", run.flow, failed_in.value, error.message,
            extra={
                "error_type": type(error).__name__,
                "retryable": error.retryable,
                "failed_in": failed_in.value,
            },
        )
        if failed_in is not PipelineState.CACHE_CHECK:
            self.notifier.send_failure(run.content_id, error.message)

    def _cache_hit(self, run: PipelineRun, key: str) -> Any | None:
        cached = self.cache.get(key)
        if cached is not None:
            self.cache_hits += 1
            run.log.info("Cache hit for %s", key)
        return cached

    async def _shared(
        self, key: str, work: Callable[[], Awaitable[dict[str, Any]]]
    ) -> dict[str, Any]:
        return await self.flights.do(key, work)

    # ── Shared steps ─────────────────────────────────────────────────

    async def _fetch_markup(self, run: PipelineRun, post_id: str) -> str:
        """Load the post page and return its markup.

        The tracker entry and the page are released on every exit path.
        """
        run.advance(PipelineState.FETCHING)
        with self.tracker.track(post_id):
            async with self.pool.page() as page:
                await page.enable_interception()
                await page.goto(canonical_post_url(post_id), timeout=self.navigation_timeout)
                return await page.content()

    def _extract(self, run: PipelineRun, html: str, post_id: str) -> list[MediaAsset]:
        run.advance(PipelineState.EXTRACTING)
        assets = self.extractor.extract(html, post_id)
        if not assets:
            raise NotFoundError("No media found in the provided URL")
        run.log.info("Extracted %d media assets", len(assets))
        return assets

    async def _cleanup(self, run: PipelineRun, paths: list[Path]) -> None:
        run.advance(PipelineState.CLEANUP)
        if paths:
            await self.downloader.cleanup(paths)

    # ── Flows ────────────────────────────────────────────────────────

    async def lookup_media(self, url: str | None) -> dict[str, Any]:
        """Media assets of an Instagram post, cached for the process lifetime.

        Returns:
            {"mediaAssets": [...], "primaryUrl": str}
        """
        run = PipelineRun("lookup", url or "")
        async with self._boundary(run):
            post_id = get_post_id(url)
            run.key = post_id
            cached = self._cache_hit(run, post_id)
            if cached is not None:
                run.advance(PipelineState.DONE)
                return cached

            run.advance(PipelineState.FETCHING)
            result = await self._shared(post_id, lambda: self._lookup_work(post_id))
            run.advance(PipelineState.DONE)
            return result

    async def _lookup_work(self, post_id: str) -> dict[str, Any]:
        run = PipelineRun("lookup", post_id)
        html = await self._fetch_markup(run, post_id)
        assets = self._extract(run, html, post_id)
        result = {
            "mediaAssets": [a.to_dict() for a in assets],
            "primaryUrl": primary_url(assets),
        }
        run.advance(PipelineState.CACHING)
        self.cache.set(post_id, result)
        return result

    async def analyze_url(self, url: str | None, content_id: str | None) -> dict[str, Any]:
        """Analyze a YouTube video or an Instagram post, by URL shape."""
        if url and is_youtube_url(url):
            return await self.analyze_youtube(url, content_id)
        return await self.analyze_post(url, content_id)

    async def analyze_post(self, url: str | None, content_id: str | None) -> dict[str, Any]:
        """Download and analyze every media asset of an Instagram post.

        Returns:
            {"success", "postId", "mediaAssets", "analysis",
             "contentApiResponse"}, plus "cached": True on a cache hit.
        """
        run = PipelineRun("analyze", url or "", content_id)
        async with self._boundary(run):
            post_id = get_post_id(url)
            key = f"analysis_{post_id}"
            run.key = key

            cached = self._cache_hit(run, key)
            if cached is not None:
                return self._cached_response(run, cached, analysis_text(cached))

            run.advance(PipelineState.FETCHING)
            body = await self._shared(key, lambda: self._analyze_post_work(post_id, key))
            return self._respond(run, body, analysis_text(body))

    async def _analyze_post_work(self, post_id: str, key: str) -> dict[str, Any]:
        run = PipelineRun("analyze", key)
        downloaded: list[DownloadedMedia] = []
        try:
            html = await self._fetch_markup(run, post_id)
            assets = self._extract(run, html, post_id)

            run.advance(PipelineState.DOWNLOADING)
            downloaded = await self.downloader.download_all(assets, post_id)

            run.advance(PipelineState.ANALYZING)
            analysis = await self.analyzer.analyze(downloaded)

            body = {
                "success": True,
                "postId": post_id,
                "mediaAssets": [a.to_dict() for a in assets],
                "analysis": analysis.to_dict(),
            }
            require_text(body)
            run.advance(PipelineState.CACHING)
            self.cache.set(key, body, ttl=self.analysis_ttl)
            return body
        finally:
            await self._cleanup(run, [d.path for d in downloaded])

    async def analyze_youtube(self, url: str, content_id: str | None) -> dict[str, Any]:
        """Analyze a YouTube video by URL; nothing is downloaded."""
        run = PipelineRun("youtube", url, content_id)
        async with self._boundary(run):
            youtube_id = get_youtube_id(url)
            key = f"youtube_analysis_{youtube_id}"
            run.key = key

            cached = self._cache_hit(run, key)
            if cached is not None:
                return self._cached_response(run, cached, analysis_text(cached))

            run.advance(PipelineState.ANALYZING)
            body = await self._shared(
                key, lambda: self._analyze_youtube_work(url, youtube_id, key)
            )
            return self._respond(run, body, analysis_text(body))

    async def _analyze_youtube_work(
        self, url: str, youtube_id: str, key: str
    ) -> dict[str, Any]:
        run = PipelineRun("youtube", key)
        run.advance(PipelineState.ANALYZING)
        analysis = await self.analyzer.analyze_youtube(url)
        body = {
            "success": True,
            "platform": "youtube",
            "youtubeId": youtube_id,
            "youtubeUrl": url,
            "analysis": analysis.to_dict(),
        }
        require_text(body)
        run.advance(PipelineState.CACHING)
        self.cache.set(key, body, ttl=self.analysis_ttl)
        return body

    async def analyze_tiktok(
        self, url: str | None, content_id: str | None, version: str | None = None
    ) -> dict[str, Any]:
        """Download and analyze a TikTok video or slideshow.

        The post caption is appended to the text sent to the content API.
        """
        run = PipelineRun("tiktok", url or "", content_id)
        async with self._boundary(run):
            version = validate_request(url, version)
            key = f"tiktok_analysis_{url}"
            run.key = key

            cached = self._cache_hit(run, key)
            if cached is not None:
                text = with_caption(analysis_text(cached), cached.get("tiktok_info"))
                return self._cached_response(run, cached, text)

            run.advance(PipelineState.DOWNLOADING)
            body = await self._shared(key, lambda: self._analyze_tiktok_work(url, version, key))
            text = with_caption(analysis_text(body), body.get("tiktok_info"))
            return self._respond(run, body, text)

    async def _analyze_tiktok_work(self, url: str, version: str, key: str) -> dict[str, Any]:
        run = PipelineRun("tiktok", key)
        run.advance(PipelineState.DOWNLOADING)
        download = await self.tiktok.download_content(url, version)
        try:
            run.advance(PipelineState.ANALYZING)
            analysis = await self.analyzer.analyze(download.files)
            body = {
                "success": True,
                "platform": "tiktok",
                "content_type": download.post.type,
                "tiktok_info": download.post.to_info(),
                "downloaded_files": len(download.files),
                "analysis": analysis.to_dict(),
            }
            require_text(body)
            run.advance(PipelineState.CACHING)
            self.cache.set(key, body, ttl=self.analysis_ttl)
            return body
        finally:
            run.advance(PipelineState.CLEANUP)
            await self.tiktok.cleanup(download.files)

    async def download_tiktok(self, url: str | None, version: str | None = None) -> dict[str, Any]:
        """Download a TikTok post and keep the files."""
        run = PipelineRun("tiktok_download", url or "")
        async with self._boundary(run):
            validate_request(url, version)
            run.advance(PipelineState.DOWNLOADING)
            download = await self.tiktok.download_content(url, version)
            run.advance(PipelineState.DONE)
            return download.to_dict()

    async def tiktok_info(self, url: str | None, version: str | None = None) -> dict[str, Any]:
        """TikTok post metadata, without downloading media."""
        run = PipelineRun("tiktok_info", url or "")
        async with self._boundary(run):
            validate_request(url, version)
            run.advance(PipelineState.FETCHING)
            post = await self.tiktok.get_info(url, version)
            run.advance(PipelineState.DONE)
            return {"success": True, "data": post.to_metadata()}

    # ── Responses ────────────────────────────────────────────────────

    def _respond(self, run: PipelineRun, body: dict[str, Any], text: str) -> dict[str, Any]:
        run.advance(PipelineState.NOTIFYING)
        receipt = self.notifier.send(run.content_id, text)
        run.advance(PipelineState.DONE)
        return {**body, "contentApiResponse": receipt}

    def _cached_response(
        self, run: PipelineRun, cached: dict[str, Any], text: str
    ) -> dict[str, Any]:
        run.advance(PipelineState.NOTIFYING)
        if text:
            self.notifier.send(run.content_id, text)
        run.advance(PipelineState.DONE)
        return {
            **cached,
            "cached": True,
            "contentApiResponse": {
                "success": True,
                "message": CACHED_RECEIPT_MESSAGE,
                "contentId": run.content_id,
            },
        }

    def get_stats(self) -> dict[str, Any]:
        return {
            "requests": self.requests,
            "cache_hits": self.cache_hits,
            "processed": self.processed,
            "failed": self.failed,
            "executions": self.flights.executions,
            "collapsed": self.flights.collapsed,
            "in_flight": self.tracker.active(),
            "running": self.flights.running(),
            "cache": self.cache.get_stats(),
            "browser": self.pool.get_stats(),
            "notifier": self.notifier.get_stats(),
        }
