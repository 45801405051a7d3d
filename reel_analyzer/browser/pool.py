"""Browser session pool backed by Playwright Chromium.

One Chromium process is launched at server start and shared by every
request. Each request borrows a short-lived page through
BrowserSessionPool.page(), which closes the page on every exit path.
The number of simultaneously open pages is bounded by max_pages.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from playwright.async_api import Browser, Page, Route
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from reel_analyzer.browser.interception import handle_blocked_resources
from reel_analyzer.core.exceptions import (
    NavigationError,
    NavigationTimeoutError,
    ResourceUnavailableError,
)

logger = logging.getLogger(__name__)

CHROME_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--no-sandbox",
    "--disable-dev-shm-usage",
]

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/133.0.0.0 Safari/537.36"
)

VIEWPORT = {"width": 1366, "height": 900}

RouteHandler = Callable[[Route], Awaitable[None]]


class PageHandle:
    """A single browser page borrowed from the pool.

    close() releases the underlying page exactly once; later calls are
    no-ops.
    """

    def __init__(self, page: Page, on_close: Callable[[], None]):
        self._page = page
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def enable_interception(
        self, handler: RouteHandler = handle_blocked_resources
    ) -> None:
        """Route every request of this page through handler."""
        await self._page.route("**/*", handler)

    async def goto(
        self,
        url: str,
        *,
        wait_until: str = "networkidle",
        timeout: float = 30.0,
    ) -> None:
        """Navigate and wait for the load condition.

        Args:
            url: Page URL.
            wait_until: Playwright load state ("networkidle", "load", ...).
            timeout: Seconds before giving up.

        Raises:
            NavigationTimeoutError: The condition was not met in time.
            NavigationError: Navigation failed for any other reason.
        """
        try:
            await self._page.goto(url, wait_until=wait_until, timeout=timeout * 1000)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeoutError(
                f"Timed out after {timeout:g}s loading {url}"
            ) from e
        except PlaywrightError as e:
            raise NavigationError(f"Failed to load {url}: {e.message}") from e

    async def content(self) -> str:
        """Return the page's current markup."""
        try:
            return await self._page.content()
        except PlaywrightError as e:
            raise NavigationError(f"Failed to read page content: {e.message}") from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._page.close()
        except PlaywrightError as e:
            logger.warning("Error while closing page: %s", e.message)
        finally:
            self._on_close()


class BrowserSessionPool:
    """Owns the shared Chromium instance and hands out pages.

    Attributes:
        headless: Launch Chromium without a window.
        max_pages: Upper bound on simultaneously open pages.
        pages_opened: Number of pages created since start.
        pages_closed: Number of pages closed since start.
    """

    def __init__(
        self,
        *,
        headless: bool = True,
        max_pages: int = 5,
        launcher: Callable[[], Awaitable[Browser]] | None = None,
    ):
        """Initialize the pool. Nothing is launched until start().

        Args:
            headless: Launch Chromium without a window.
            max_pages: Upper bound on simultaneously open pages.
            launcher: Optional coroutine factory returning a connected
                Browser. Defaults to launching Playwright Chromium.
        """
        self.headless = headless
        self.max_pages = max_pages
        self._launcher = launcher
        self._playwright: Any = None
        self._browser: Browser | None = None
        self._semaphore = asyncio.Semaphore(max_pages)
        self.pages_opened = 0
        self.pages_closed = 0

    @property
    def is_running(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    @property
    def open_pages(self) -> int:
        return self.pages_opened - self.pages_closed

    async def start(self) -> None:
        """Launch the browser session. Calling start() twice is a no-op."""
        if self.is_running:
            return
        if self._launcher is not None:
            self._browser = await self._launcher()
        else:
            self._browser = await self._launch_chromium()
        logger.info("Browser session started (headless=%s)", self.headless)

    async def _launch_chromium(self) -> Browser:
        self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(
            headless=self.headless, args=CHROME_ARGS
        )

    async def close(self) -> None:
        """Shut down the browser and the Playwright driver."""
        browser, self._browser = self._browser, None
        if browser is not None:
            try:
                await browser.close()
            except PlaywrightError as e:
                logger.warning("Error while closing browser: %s", e.message)
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        logger.info(
            "Browser session closed (pages opened=%d, closed=%d)",
            self.pages_opened,
            self.pages_closed,
        )

    async def new_page(self) -> PageHandle:
        """Open a new page.

        Waits while max_pages pages are already open.

        Raises:
            ResourceUnavailableError: The browser is not running or refused
                to open a page.
        """
        if not self.is_running:
            raise ResourceUnavailableError("Browser session is not running")

        await self._semaphore.acquire()
        try:
            page = await self._browser.new_page(
                user_agent=USER_AGENT, viewport=VIEWPORT
            )
        except PlaywrightError as e:
            self._semaphore.release()
            raise ResourceUnavailableError(f"Could not open a page: {e.message}") from e
        except BaseException:
            self._semaphore.release()
            raise

        self.pages_opened += 1
        return PageHandle(page, on_close=self._page_closed)

    def _page_closed(self) -> None:
        self.pages_closed += 1
        self._semaphore.release()

    @asynccontextmanager
    async def page(self) -> AsyncIterator[PageHandle]:
        """Borrow a page for the duration of the block.

        Example:
            async with pool.page() as page:
                await page.goto(url)
                html = await page.content()
        """
        handle = await self.new_page()
        try:
            yield handle
        finally:
            await handle.close()

    def get_stats(self) -> dict[str, Any]:
        return {
            "running": self.is_running,
            "max_pages": self.max_pages,
            "pages_opened": self.pages_opened,
            "pages_closed": self.pages_closed,
            "open_pages": self.open_pages,
        }
