"""HTTP server for Reel Analyzer.

Exposes the pipeline coordinator over HTTP.

Endpoints:
    GET  /video?url=            - Media assets of an Instagram post
    POST /analyze               - Analyze an Instagram post or YouTube video
    POST /download              - Download a TikTok post and keep the files
    GET  /tiktok-info?url=      - TikTok post metadata
    POST /tiktok-analyze        - Analyze a TikTok post
    GET  /health                - Health check
    GET  /metrics               - Counters, cache and browser statistics

POST endpoints require Bearer token authentication when REEL_ANALYZER_TOKEN
is set. Errors are answered as {"success": false, "error": <message>}; the
TikTok endpoints use "message" instead of "error".
"""

import hmac
import json
import logging
import platform
import sys
import time
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from aiohttp import web

from reel_analyzer.core.config import Config, get_config
from reel_analyzer.core.exceptions import InvalidInputError, PipelineError
from reel_analyzer.core.pipeline import PipelineCoordinator

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


@dataclass
class ServerMetrics:
    """Server metrics for monitoring.

    Tracks request, success and error counts, and uptime.
    """

    start_time: float = field(default_factory=time.time)
    requests_total: int = 0
    processed_total: int = 0
    errors_total: int = 0

    def increment_requests(self) -> None:
        self.requests_total += 1

    def increment_processed(self) -> None:
        self.processed_total += 1

    def increment_errors(self) -> None:
        self.errors_total += 1

    def get_uptime_seconds(self) -> float:
        return time.time() - self.start_time

    def to_dict(self) -> dict[str, Any]:
        """Convert metrics to dictionary for JSON response."""
        return {
            "uptime_seconds": round(self.get_uptime_seconds(), 2),
            "requests_total": self.requests_total,
            "processed_total": self.processed_total,
            "errors_total": self.errors_total,
        }


COORDINATOR_KEY = web.AppKey("coordinator", PipelineCoordinator)
METRICS_KEY = web.AppKey("metrics", ServerMetrics)
AUTH_TOKEN_KEY = web.AppKey("auth_token", str)
GEMINI_CONFIGURED_KEY = web.AppKey("gemini_configured", bool)


def check_auth(request: web.Request) -> bool:
    """Check the request's Bearer token.

    Authentication is disabled when no token is configured.
    """
    token = request.app[AUTH_TOKEN_KEY]
    if not token:
        return True

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return False

    provided_token = auth_header[7:]
    return hmac.compare_digest(provided_token, token)


def error_response(
    message: str, status: int, *, message_key: str = "error"
) -> web.Response:
    return web.json_response({"success": False, message_key: message}, status=status)


async def read_json(request: web.Request) -> dict[str, Any]:
    """Parse a JSON object body.

    Raises:
        InvalidInputError: The body is not a JSON object.
    """
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidInputError("Invalid JSON body")
    if not isinstance(body, dict):
        raise InvalidInputError("JSON body must be an object")
    return body


async def run_flow(
    request: web.Request,
    flow: Awaitable[dict[str, Any]],
    *,
    message_key: str = "error",
) -> web.Response:
    """Await a coordinator flow and render its result or error."""
    metrics = request.app[METRICS_KEY]
    try:
        result = await flow
    except PipelineError as e:
        metrics.increment_errors()
        return error_response(e.message, e.status_code, message_key=message_key)
    metrics.increment_processed()
    return web.json_response(result)


def _unauthorized(message_key: str = "error") -> web.Response:
    logger.warning("Unauthorized request rejected")
    return error_response("Unauthorized", 401, message_key=message_key)


async def video_handler(request: web.Request) -> web.Response:
    """Return {mediaAssets, primaryUrl} for ?url=."""
    request.app[METRICS_KEY].increment_requests()
    coordinator = request.app[COORDINATOR_KEY]
    return await run_flow(request, coordinator.lookup_media(request.query.get("url")))


async def analyze_handler(request: web.Request) -> web.Response:
    """Analyze an Instagram post or a YouTube video.

    Expects {"url": ..., "contentId": ...}.
    """
    metrics = request.app[METRICS_KEY]
    metrics.increment_requests()
    if not check_auth(request):
        return _unauthorized()

    try:
        body = await read_json(request)
    except InvalidInputError as e:
        metrics.increment_errors()
        return error_response(e.message, e.status_code)

    url = body.get("url")
    content_id = body.get("contentId")
    if not url:
        metrics.increment_errors()
        return error_response("URL is required in request body", 400)
    if not content_id:
        metrics.increment_errors()
        return error_response("contentId is required in request body", 400)

    coordinator = request.app[COORDINATOR_KEY]
    return await run_flow(request, coordinator.analyze_url(url, content_id))


async def download_handler(request: web.Request) -> web.Response:
    """Download a TikTok post. Expects {"url": ..., "version": "v1"}."""
    metrics = request.app[METRICS_KEY]
    metrics.increment_requests()
    if not check_auth(request):
        return _unauthorized("message")

    try:
        body = await read_json(request)
    except InvalidInputError as e:
        metrics.increment_errors()
        return error_response(e.message, e.status_code, message_key="message")

    url = body.get("url")
    if not url:
        metrics.increment_errors()
        return error_response("TikTok URL is required", 400, message_key="message")

    coordinator = request.app[COORDINATOR_KEY]
    return await run_flow(
        request,
        coordinator.download_tiktok(url, body.get("version", "v1")),
        message_key="message",
    )


async def tiktok_info_handler(request: web.Request) -> web.Response:
    request.app[METRICS_KEY].increment_requests()
    url = request.query.get("url")
    if not url:
        request.app[METRICS_KEY].increment_errors()
        return error_response("TikTok URL is required", 400, message_key="message")

    coordinator = request.app[COORDINATOR_KEY]
    return await run_flow(
        request,
        coordinator.tiktok_info(url, request.query.get("version", "v1")),
        message_key="message",
    )


async def tiktok_analyze_handler(request: web.Request) -> web.Response:
    """Analyze a TikTok post. Expects {"url", "contentId", "version"?}."""
    metrics = request.app[METRICS_KEY]
    metrics.increment_requests()
    if not check_auth(request):
        return _unauthorized("message")

    try:
        body = await read_json(request)
    except InvalidInputError as e:
        metrics.increment_errors()
        return error_response(e.message, e.status_code, message_key="message")

    url = body.get("url")
    content_id = body.get("contentId")
    if not url:
        metrics.increment_errors()
        return error_response(
            "TikTok URL is required in request body", 400, message_key="message"
        )
    if not content_id:
        metrics.increment_errors()
        return error_response(
            "contentId is required in request body", 400, message_key="message"
        )

    coordinator = request.app[COORDINATOR_KEY]
    return await run_flow(
        request,
        coordinator.analyze_tiktok(url, content_id, body.get("version", "v1")),
        message_key="message",
    )


async def health_handler(request: web.Request) -> web.Response:
    metrics = request.app[METRICS_KEY]
    coordinator = request.app[COORDINATOR_KEY]
    return web.json_response(
        {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": round(metrics.get_uptime_seconds(), 2),
            "version": VERSION,
            "services": {
                "gemini": "configured" if request.app[GEMINI_CONFIGURED_KEY] else "missing",
                "browser": "running" if coordinator.pool.is_running else "stopped",
                "python_version": platform.python_version(),
                "platform": sys.platform,
            },
        }
    )


async def metrics_handler(request: web.Request) -> web.Response:
    """Server counters plus pipeline statistics."""
    metrics = request.app[METRICS_KEY]
    coordinator = request.app[COORDINATOR_KEY]
    return web.json_response({**metrics.to_dict(), "pipeline": coordinator.get_stats()})


async def _start_coordinator(app: web.Application) -> None:
    await app[COORDINATOR_KEY].start()
    logger.info("Pipeline coordinator started")


async def _close_coordinator(app: web.Application) -> None:
    await app[COORDINATOR_KEY].close()
    logger.info("Pipeline coordinator closed")


def create_app(
    coordinator: PipelineCoordinator | None = None,
    config: Config | None = None,
) -> web.Application:
    """Create and configure the aiohttp application.

    Args:
        coordinator: Optional PipelineCoordinator. Built from config if not
            provided.
        config: Configuration. Defaults to get_config().

    Returns:
        Configured aiohttp Application with all routes registered. The
        coordinator is started on startup and closed on cleanup.
    """
    config = config or get_config()
    app = web.Application()

    app[METRICS_KEY] = ServerMetrics()
    app[AUTH_TOKEN_KEY] = config.webhook_token or ""
    app[GEMINI_CONFIGURED_KEY] = config.analysis_enabled
    app[COORDINATOR_KEY] = coordinator or PipelineCoordinator.from_config(config)

    app.on_startup.append(_start_coordinator)
    app.on_cleanup.append(_close_coordinator)

    app.router.add_get("/video", video_handler)
    app.router.add_post("/analyze", analyze_handler)
    app.router.add_post("/download", download_handler)
    app.router.add_get("/tiktok-info", tiktok_info_handler)
    app.router.add_post("/tiktok-analyze", tiktok_analyze_handler)
    app.router.add_get("/health", health_handler)
    app.router.add_get("/metrics", metrics_handler)
    return app


async def run_server(
    host: str = "0.0.0.0",
    port: int = 3000,
    config: Config | None = None,
) -> web.AppRunner:
    """Start the HTTP server.

    Returns:
        The AppRunner instance (for cleanup).
    """
    app = create_app(config=config)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Server listening on %s:%d", host, port)
    return runner
