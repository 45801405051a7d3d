"""Tests for the pipeline coordinator."""

import asyncio

import pytest
from playwright.async_api import Error as PlaywrightError

from reel_analyzer.core.config import Config
from reel_analyzer.core.exceptions import (
    AnalysisFailedError,
    DownloadFailedError,
    InternalError,
    InvalidInputError,
    NavigationError,
    NotFoundError,
)
from reel_analyzer.core.media import MediaAsset, MediaType
from reel_analyzer.core.pipeline import (
    PipelineContext,
    PipelineCoordinator,
    PipelineRun,
    PipelineState,
    analysis_text,
    require_text,
    with_caption,
)

from conftest import (
    ANALYSIS_TEXT,
    FakeAnalyzer,
    FakeBrowser,
    FakeExtractor,
    FakeNotifier,
    FakeTikTok,
    build_coordinator,
    fake_pool,
)

POST_URL = "https://www.instagram.com/p/test123/"
TIKTOK_URL = "https://www.tiktok.com/@traveler/video/7300000000000000001"

CAROUSEL_ASSETS = [
    MediaAsset(MediaType.IMAGE, "https://cdn.example.com/a.jpg"),
    MediaAsset(MediaType.VIDEO, "https://cdn.example.com/b.mp4"),
    MediaAsset(MediaType.IMAGE, "https://cdn.example.com/c.jpg"),
]


async def started(coordinator):
    await coordinator.start()
    return coordinator


class TestHelpers:
    def test_analysis_text_prefers_raw_response(self):
        body = {"analysis": {"raw_response": "raw", "result": {"raw_response": "other"}}}
        assert analysis_text(body) == "raw"

    def test_analysis_text_falls_back_to_result(self):
        assert analysis_text({"analysis": {"result": {"raw_response": "inner"}}}) == "inner"

    def test_analysis_text_empty(self):
        assert analysis_text({}) == ""

    def test_require_text_rejects_empty_analysis(self):
        require_text({"analysis": {"raw_response": "text"}})
        with pytest.raises(InternalError):
            require_text({"analysis": {"raw_response": "", "result": {}}})

    def test_with_caption(self):
        assert with_caption("text", {"description": "Bali"}) == "text\n\nOriginal Caption: Bali"
        assert with_caption("text", {"description": ""}) == "text"
        assert with_caption("text", None) == "text"

    def test_run_records_history(self):
        run = PipelineRun("analyze", "analysis_abc")
        run.advance(PipelineState.FETCHING)
        run.advance(PipelineState.EXTRACTING)

        assert run.state is PipelineState.EXTRACTING
        assert run.history == [PipelineState.CACHE_CHECK, PipelineState.FETCHING]


class TestAnalyzePost:
    @pytest.mark.asyncio
    async def test_success_returns_body_and_receipt(self, make_coordinator):
        notifier = FakeNotifier()
        extractor = FakeExtractor(CAROUSEL_ASSETS)
        analyzer = FakeAnalyzer()
        coordinator = await started(
            make_coordinator(extractor=extractor, analyzer=analyzer, notifier=notifier)
        )

        result = await coordinator.analyze_post(POST_URL, "content-1")

        assert result["success"] is True
        assert result["postId"] == "test123"
        assert len(result["mediaAssets"]) == 3
        assert result["analysis"]["result"]["title"] == "Lisbon trip"
        assert result["contentApiResponse"]["contentId"] == "content-1"
        assert "cached" not in result
        assert analyzer.calls == [[MediaType.IMAGE, MediaType.VIDEO, MediaType.IMAGE]]
        assert notifier.sent == [("content-1", ANALYSIS_TEXT)]

    @pytest.mark.asyncio
    async def test_page_and_tracker_released_after_success(self, make_coordinator):
        coordinator = await started(make_coordinator())

        await coordinator.analyze_post(POST_URL, "content-1")

        assert coordinator.pool.pages_opened == coordinator.pool.pages_closed == 1
        assert len(coordinator.tracker) == 0
        assert coordinator.flights.running() == []

    @pytest.mark.asyncio
    async def test_page_and_tracker_released_after_navigation_failure(self, make_coordinator):
        browser = FakeBrowser(goto_error=PlaywrightError("net::ERR_CONNECTION_RESET"))
        notifier = FakeNotifier()
        coordinator = await started(make_coordinator(browser=browser, notifier=notifier))

        with pytest.raises(NavigationError):
            await coordinator.analyze_post(POST_URL, "content-1")

        assert coordinator.pool.pages_opened == coordinator.pool.pages_closed == 1
        assert len(coordinator.tracker) == 0
        assert notifier.failures and notifier.failures[0][0] == "content-1"
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_temp_files_exist_during_analysis_and_are_removed_after(
        self, make_coordinator, media_dir
    ):
        analyzer = FakeAnalyzer()
        coordinator = await started(
            make_coordinator(extractor=FakeExtractor(CAROUSEL_ASSETS), analyzer=analyzer)
        )

        await coordinator.analyze_post(POST_URL, "content-1")

        assert len(analyzer.paths) == 3
        assert all(analyzer.existed)
        assert not any(path.exists() for path in analyzer.paths)
        assert list(media_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_temp_files_removed_after_analysis_failure(self, make_coordinator, media_dir):
        analyzer = FakeAnalyzer(error=AnalysisFailedError("Video Analysis timed out"))
        notifier = FakeNotifier()
        coordinator = await started(make_coordinator(analyzer=analyzer, notifier=notifier))

        with pytest.raises(AnalysisFailedError):
            await coordinator.analyze_post(POST_URL, "content-1")

        assert all(analyzer.existed)
        assert list(media_dir.iterdir()) == []
        assert notifier.failures == [("content-1", "Video Analysis timed out")]
        assert coordinator.cache.get("analysis_test123") is None

    @pytest.mark.asyncio
    async def test_empty_media_is_not_found(self, make_coordinator, media_dir):
        analyzer = FakeAnalyzer()
        coordinator = await started(
            make_coordinator(extractor=FakeExtractor([]), analyzer=analyzer)
        )

        with pytest.raises(NotFoundError) as exc_info:
            await coordinator.analyze_post(POST_URL, "content-1")

        assert exc_info.value.message == "No media found in the provided URL"
        assert analyzer.calls == []
        assert list(media_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_download_failure_skips_analysis(self, make_coordinator, media_dir):
        assets = [
            MediaAsset(MediaType.IMAGE, "https://cdn.example.com/a.jpg"),
            MediaAsset(MediaType.VIDEO, "https://cdn.example.com/fail.mp4"),
        ]
        analyzer = FakeAnalyzer()
        coordinator = await started(
            make_coordinator(extractor=FakeExtractor(assets), analyzer=analyzer)
        )

        with pytest.raises(DownloadFailedError):
            await coordinator.analyze_post(POST_URL, "content-1")

        assert analyzer.calls == []
        assert list(media_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_invalid_url_sends_no_failure_status(self, make_coordinator):
        notifier = FakeNotifier()
        coordinator = await started(make_coordinator(notifier=notifier))

        with pytest.raises(InvalidInputError):
            await coordinator.analyze_post("https://example.com/nope", "content-1")

        assert notifier.failures == []
        assert coordinator.pool.pages_opened == 0
        assert coordinator.get_stats()["failed"] == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_internal_error(self, make_coordinator):
        notifier = FakeNotifier()
        coordinator = await started(
            make_coordinator(extractor=FakeExtractor(error=RuntimeError("boom")), notifier=notifier)
        )

        with pytest.raises(InternalError) as exc_info:
            await coordinator.analyze_post(POST_URL, "content-1")

        assert exc_info.value.message == "Internal server error"
        assert exc_info.value.status_code == 500
        assert notifier.failures == [("content-1", "Internal server error")]

    @pytest.mark.asyncio
    async def test_empty_analysis_text_is_not_delivered(self, make_coordinator):
        notifier = FakeNotifier()
        coordinator = await started(
            make_coordinator(analyzer=FakeAnalyzer(text=""), notifier=notifier)
        )

        with pytest.raises(InternalError):
            await coordinator.analyze_post(POST_URL, "content-1")

        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_empty_analysis_text_is_not_cached(self, make_coordinator):
        analyzer = FakeAnalyzer(text="")
        notifier = FakeNotifier()
        coordinator = await started(make_coordinator(analyzer=analyzer, notifier=notifier))

        for _ in range(2):
            with pytest.raises(InternalError) as exc_info:
                await coordinator.analyze_post(POST_URL, "content-1")
            assert exc_info.value.message == "Analysis produced no text to deliver"

        assert coordinator.cache.get("analysis_test123") is None
        assert len(analyzer.calls) == 2
        assert notifier.sent == []
        assert notifier.failures == [("content-1", "Analysis produced no text to deliver")] * 2

    @pytest.mark.asyncio
    async def test_non_string_url_is_invalid_input(self, make_coordinator):
        notifier = FakeNotifier()
        coordinator = await started(make_coordinator(notifier=notifier))

        with pytest.raises(InvalidInputError) as exc_info:
            await coordinator.analyze_url(123, "content-1")

        assert exc_info.value.status_code == 400
        assert notifier.failures == []
        assert coordinator.pool.pages_opened == 0

    @pytest.mark.asyncio
    async def test_invalid_media_url_removes_downloaded_files(self, make_coordinator, media_dir):
        analyzer = FakeAnalyzer()
        assets = [
            MediaAsset(MediaType.VIDEO, "https://cdn.example.com/reel.mp4"),
            MediaAsset(MediaType.IMAGE, "https://cdn.example.com/invalid.jpg"),
        ]
        coordinator = await started(
            make_coordinator(extractor=FakeExtractor(assets), analyzer=analyzer)
        )

        with pytest.raises(DownloadFailedError):
            await coordinator.analyze_post(POST_URL, "content-1")

        assert analyzer.calls == []
        assert list(media_dir.iterdir()) == []


class TestCaching:
    @pytest.mark.asyncio
    async def test_cache_hit_skips_work(self, make_coordinator):
        extractor = FakeExtractor(CAROUSEL_ASSETS)
        analyzer = FakeAnalyzer()
        notifier = FakeNotifier()
        coordinator = await started(
            make_coordinator(extractor=extractor, analyzer=analyzer, notifier=notifier)
        )

        first = await coordinator.analyze_post(POST_URL, "content-1")
        second = await coordinator.analyze_post(POST_URL, "content-2")

        assert extractor.calls == 1
        assert len(analyzer.calls) == 1
        assert coordinator.pool.pages_opened == 1
        assert second["cached"] is True
        assert second["analysis"] == first["analysis"]
        assert second["contentApiResponse"] == {
            "success": True,
            "message": "Cached result - API call skipped",
            "contentId": "content-2",
        }
        # The cached text is still delivered to the new content id
        assert notifier.sent == [("content-1", ANALYSIS_TEXT), ("content-2", ANALYSIS_TEXT)]

    @pytest.mark.asyncio
    async def test_cached_body_excludes_receipt(self, make_coordinator):
        coordinator = await started(make_coordinator())

        await coordinator.analyze_post(POST_URL, "content-1")

        cached = coordinator.cache.get("analysis_test123")
        assert "contentApiResponse" not in cached
        assert "cached" not in cached

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_execution(self, make_coordinator):
        extractor = FakeExtractor(CAROUSEL_ASSETS)
        analyzer = FakeAnalyzer(delay=0.05)
        notifier = FakeNotifier()
        coordinator = await started(
            make_coordinator(extractor=extractor, analyzer=analyzer, notifier=notifier)
        )

        results = await asyncio.gather(
            coordinator.analyze_post(POST_URL, "content-1"),
            coordinator.analyze_post(POST_URL, "content-2"),
            coordinator.analyze_post(POST_URL, "content-3"),
        )

        assert extractor.calls == 1
        assert len(analyzer.calls) == 1
        assert len(coordinator.cache) == 1
        assert {r["postId"] for r in results} == {"test123"}
        assert sorted(cid for cid, _ in notifier.sent) == ["content-1", "content-2", "content-3"]
        assert all(text for _, text in notifier.sent)
        assert coordinator.flights.collapsed == 2

    @pytest.mark.asyncio
    async def test_concurrent_failure_reaches_every_caller(self, make_coordinator):
        analyzer = FakeAnalyzer(error=AnalysisFailedError("quota"), delay=0.05)
        notifier = FakeNotifier()
        coordinator = await started(make_coordinator(analyzer=analyzer, notifier=notifier))

        results = await asyncio.gather(
            coordinator.analyze_post(POST_URL, "content-1"),
            coordinator.analyze_post(POST_URL, "content-2"),
            return_exceptions=True,
        )

        assert all(isinstance(r, AnalysisFailedError) for r in results)
        assert sorted(cid for cid, _ in notifier.failures) == ["content-1", "content-2"]
        assert len(analyzer.calls) == 1

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_stop_shared_work(self, make_coordinator, media_dir):
        analyzer = FakeAnalyzer(delay=0.05)
        coordinator = await started(make_coordinator(analyzer=analyzer))

        task = asyncio.create_task(coordinator.analyze_post(POST_URL, "content-1"))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await asyncio.sleep(0.1)
        assert coordinator.cache.get("analysis_test123") is not None
        assert list(media_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_analysis_entries_expire(self, make_coordinator):
        coordinator = await started(make_coordinator())
        coordinator.analysis_ttl = 0

        await coordinator.analyze_post(POST_URL, "content-1")

        assert coordinator.cache.get("analysis_test123") is None


class TestLookupMedia:
    @pytest.mark.asyncio
    async def test_lookup_returns_assets_and_primary_url(self, make_coordinator):
        extractor = FakeExtractor(CAROUSEL_ASSETS)
        coordinator = await started(make_coordinator(extractor=extractor))

        result = await coordinator.lookup_media(POST_URL)

        assert result["primaryUrl"] == "https://cdn.example.com/b.mp4"
        assert result["mediaAssets"][0] == {"type": "image", "url": "https://cdn.example.com/a.jpg"}

    @pytest.mark.asyncio
    async def test_lookup_is_cached(self, make_coordinator):
        extractor = FakeExtractor(CAROUSEL_ASSETS)
        coordinator = await started(make_coordinator(extractor=extractor))

        await coordinator.lookup_media(POST_URL)
        await coordinator.lookup_media("https://www.instagram.com/reel/test123/")

        assert extractor.calls == 1
        assert coordinator.cache_hits == 1

    @pytest.mark.asyncio
    async def test_lookup_visits_canonical_url(self, make_coordinator):
        browser = FakeBrowser()
        coordinator = await started(make_coordinator(browser=browser))

        await coordinator.lookup_media("https://www.instagram.com/reel/test123/?igsh=abc")

        assert browser.pages[0].visited == ["https://www.instagram.com/p/test123/"]
        assert browser.pages[0].routes == ["**/*"]


class TestYouTube:
    @pytest.mark.asyncio
    async def test_youtube_url_is_analyzed_directly(self, make_coordinator):
        analyzer = FakeAnalyzer()
        notifier = FakeNotifier()
        coordinator = await started(make_coordinator(analyzer=analyzer, notifier=notifier))

        result = await coordinator.analyze_url("https://youtu.be/abc123", "content-1")

        assert result["platform"] == "youtube"
        assert result["youtubeId"] == "abc123"
        assert analyzer.youtube_calls == ["https://youtu.be/abc123"]
        assert coordinator.pool.pages_opened == 0
        assert notifier.sent == [("content-1", ANALYSIS_TEXT)]

    @pytest.mark.asyncio
    async def test_youtube_result_is_cached(self, make_coordinator):
        analyzer = FakeAnalyzer()
        coordinator = await started(make_coordinator(analyzer=analyzer))

        await coordinator.analyze_url("https://www.youtube.com/watch?v=abc123", "c1")
        second = await coordinator.analyze_url("https://youtu.be/abc123", "c2")

        assert second["cached"] is True
        assert len(analyzer.youtube_calls) == 1

    @pytest.mark.asyncio
    async def test_youtube_failure_reports_status(self, make_coordinator):
        notifier = FakeNotifier()
        coordinator = await started(
            make_coordinator(analyzer=FakeAnalyzer(error=AnalysisFailedError("bad")), notifier=notifier)
        )

        with pytest.raises(AnalysisFailedError):
            await coordinator.analyze_url("https://youtu.be/abc123", "content-1")

        assert notifier.failures == [("content-1", "bad")]

    @pytest.mark.asyncio
    async def test_empty_youtube_analysis_is_not_cached(self, make_coordinator):
        analyzer = FakeAnalyzer(text="")
        coordinator = await started(make_coordinator(analyzer=analyzer))

        for _ in range(2):
            with pytest.raises(InternalError):
                await coordinator.analyze_url("https://youtu.be/abc123", "content-1")

        assert coordinator.cache.get("youtube_analysis_abc123") is None
        assert len(analyzer.youtube_calls) == 2


class TestTikTok:
    @pytest.mark.asyncio
    async def test_analysis_appends_caption(self, make_coordinator, media_dir):
        tiktok = FakeTikTok(media_dir)
        notifier = FakeNotifier()
        coordinator = await started(make_coordinator(tiktok=tiktok, notifier=notifier))

        result = await coordinator.analyze_tiktok(TIKTOK_URL, "content-1")

        assert result["platform"] == "tiktok"
        assert result["content_type"] == "video"
        assert result["downloaded_files"] == 1
        assert result["tiktok_info"]["hashtags"] == ["travel"]
        content_id, text = notifier.sent[0]
        assert content_id == "content-1"
        assert text == ANALYSIS_TEXT + "\n\nOriginal Caption: Sunset in Bali #travel"

    @pytest.mark.asyncio
    async def test_files_removed_after_analysis(self, make_coordinator, media_dir):
        tiktok = FakeTikTok(media_dir, post_type="image")
        analyzer = FakeAnalyzer()
        coordinator = await started(make_coordinator(tiktok=tiktok, analyzer=analyzer))

        await coordinator.analyze_tiktok(TIKTOK_URL, "content-1")

        assert analyzer.calls == [[MediaType.IMAGE, MediaType.IMAGE]]
        assert all(analyzer.existed)
        assert len(tiktok.cleaned) == 2
        assert list(media_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_files_removed_after_analysis_failure(self, make_coordinator, media_dir):
        tiktok = FakeTikTok(media_dir)
        coordinator = await started(
            make_coordinator(tiktok=tiktok, analyzer=FakeAnalyzer(error=AnalysisFailedError("x")))
        )

        with pytest.raises(AnalysisFailedError):
            await coordinator.analyze_tiktok(TIKTOK_URL, "content-1")

        assert list(media_dir.iterdir()) == []
    @pytest.mark.asyncio
    async def test_empty_analysis_is_not_cached_despite_caption(self, make_coordinator, media_dir):
        tiktok = FakeTikTok(media_dir)
        notifier = FakeNotifier()
        coordinator = await started(
            make_coordinator(tiktok=tiktok, analyzer=FakeAnalyzer(text=""), notifier=notifier)
        )

        with pytest.raises(InternalError):
            await coordinator.analyze_tiktok(TIKTOK_URL, "content-1")

        assert coordinator.cache.get(f"tiktok_analysis_{TIKTOK_URL}") is None
        assert notifier.sent == []
        assert list(media_dir.iterdir()) == []


    @pytest.mark.asyncio
    async def test_cached_tiktok_still_carries_caption(self, make_coordinator, media_dir):
        tiktok = FakeTikTok(media_dir)
        notifier = FakeNotifier()
        coordinator = await started(make_coordinator(tiktok=tiktok, notifier=notifier))

        await coordinator.analyze_tiktok(TIKTOK_URL, "content-1")
        second = await coordinator.analyze_tiktok(TIKTOK_URL, "content-2")

        assert second["cached"] is True
        assert tiktok.downloads == 1
        assert notifier.sent[1][1].endswith("Original Caption: Sunset in Bali #travel")

    @pytest.mark.asyncio
    async def test_invalid_version_is_rejected(self, make_coordinator):
        notifier = FakeNotifier()
        coordinator = await started(make_coordinator(notifier=notifier))

        with pytest.raises(InvalidInputError):
            await coordinator.analyze_tiktok(TIKTOK_URL, "content-1", version="v9")

        assert notifier.failures == []

    @pytest.mark.asyncio
    async def test_download_keeps_files(self, make_coordinator, media_dir):
        tiktok = FakeTikTok(media_dir)
        coordinator = await started(make_coordinator(tiktok=tiktok))

        result = await coordinator.download_tiktok(TIKTOK_URL)

        assert result["success"] is True
        assert result["data"]["summary"]["total_files"] == 1
        assert len(list(media_dir.iterdir())) == 1

    @pytest.mark.asyncio
    async def test_info(self, make_coordinator, media_dir):
        coordinator = await started(make_coordinator(tiktok=FakeTikTok(media_dir, post_type="image")))

        result = await coordinator.tiktok_info(TIKTOK_URL)

        assert result == {
            "success": True,
            "data": {
                "id": "7300000000000000001",
                "description": "Sunset in Bali #travel",
                "author": "traveler",
                "type": "image",
                "statistics": {},
                "music": None,
                "video_available": False,
                "images_available": True,
                "images_count": 2,
            },
        }


class TestPipelineContext:
    @pytest.mark.asyncio
    async def test_coordinators_sharing_a_context_share_the_cache(self, media_dir):
        context = PipelineContext(pool=fake_pool())
        first_analyzer = FakeAnalyzer()
        second_analyzer = FakeAnalyzer()
        first = await started(build_coordinator(media_dir, analyzer=first_analyzer, context=context))
        second = build_coordinator(media_dir, analyzer=second_analyzer, context=context)

        await first.analyze_post(POST_URL, "content-1")
        result = await second.analyze_post(POST_URL, "content-2")

        assert result["cached"] is True
        assert second_analyzer.calls == []
        assert second.pool is first.pool is context.pool
        assert second.tracker is context.tracker
        assert second.flights is context.flights

    def test_from_config(self):
        context = PipelineContext.from_config(Config(max_pages=3, cache_max_entries=10))

        assert context.pool.max_pages == 3
        assert context.cache.max_entries == 10
        assert len(context.tracker) == 0
        assert context.flights.running() == []

    def test_coordinator_from_config_builds_one_context(self):
        coordinator = PipelineCoordinator.from_config(Config(max_pages=4))

        assert coordinator.pool is coordinator.context.pool
        assert coordinator.pool.max_pages == 4
        assert coordinator.cache is coordinator.context.cache


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_close_stops_browser(self, make_coordinator):
        browser = FakeBrowser()
        coordinator = await started(make_coordinator(browser=browser))

        await coordinator.close()

        assert not coordinator.pool.is_running
        assert browser.connected is False

    @pytest.mark.asyncio
    async def test_stats(self, make_coordinator):
        coordinator = await started(make_coordinator())
        await coordinator.analyze_post(POST_URL, "content-1")
        await coordinator.analyze_post(POST_URL, "content-1")

        stats = coordinator.get_stats()

        assert stats["requests"] == 2
        assert stats["cache_hits"] == 1
        assert stats["processed"] == 2
        assert stats["executions"] == 1
        assert stats["browser"]["open_pages"] == 0
