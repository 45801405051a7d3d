"""Main Entry Point for Reel Analyzer.

Runs the HTTP server that scrapes and analyzes social-media posts.

Usage:
    python -m reel_analyzer.main                 # Serve on PORT (default 3000)
    python -m reel_analyzer.main --port 8080     # Serve on a custom port
    python -m reel_analyzer.main --headful       # Show the Chromium window
    python -m reel_analyzer.main --verbose       # Enable debug logging
"""

import argparse
import asyncio
import dataclasses
import signal
import sys

from reel_analyzer.core.config import get_config
from reel_analyzer.core.exceptions import ConfigurationError
from reel_analyzer.core.logger import get_logger, setup_logging
from reel_analyzer.webhook_server import run_server

logger = get_logger(__name__)


def create_argument_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser.

    Returns:
        Configured ArgumentParser instance.
    """
    parser = argparse.ArgumentParser(
        prog="reel-analyzer",
        description="Scrape Instagram, TikTok and YouTube posts and analyze their media.",
    )

    parser.add_argument(
        "--host",
        default="0.0.0.0",
        metavar="HOST",
        help="Interface to bind (default: 0.0.0.0)",
    )

    parser.add_argument(
        "--port",
        type=int,
        default=None,
        metavar="PORT",
        help="Port to listen on (default: PORT env var or 3000)",
    )

    parser.add_argument(
        "--headful",
        action="store_true",
        help="Run Chromium with a visible window",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    return parser


async def serve(host: str, port: int, config) -> None:
    """Run the server until SIGINT/SIGTERM."""
    runner = await run_server(host=host, port=port, config=config)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(stop.set))

    try:
        await stop.wait()
        logger.info("Shutdown requested, closing server")
    finally:
        await runner.cleanup()


def main(args: list[str] | None = None) -> int:
    """Main entry point.

    Args:
        args: Command line arguments (defaults to sys.argv[1:]).

    Returns:
        Exit code (0 for success, 1 for errors).
    """
    parser = create_argument_parser()
    parsed_args = parser.parse_args(args)

    try:
        config = get_config()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    if parsed_args.headful:
        config = dataclasses.replace(config, headless=False)

    log_level = "DEBUG" if parsed_args.verbose else config.log_level
    setup_logging(log_level)

    if not config.analysis_enabled:
        logger.warning("GOOGLE_GEMINI_API_KEY is not set; analysis endpoints will fail")

    port = parsed_args.port or config.port
    logger.info("Starting Reel Analyzer on %s:%d", parsed_args.host, port)
    try:
        asyncio.run(serve(parsed_args.host, port, config))
    except KeyboardInterrupt:
        logger.info("Server stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
