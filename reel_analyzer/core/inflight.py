"""In-flight bookkeeping and request collapsing.

InFlightTracker records which posts are currently being fetched by the
browser. SingleFlight collapses concurrent requests for the same key into
one unit of work whose result (or failure) every caller receives.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from typing import Any

logger = logging.getLogger(__name__)


class InFlightTracker:
    """Set of keys currently being processed.

    Membership is an observability signal: callers do not block on it.
    Use track() so that a key is always released, even when the wrapped
    block raises.

    Example:
        >>> tracker = InFlightTracker()
        >>> with tracker.track("C9xYz12AbCd"):
        ...     html = await page.content()
        >>> tracker.is_active("C9xYz12AbCd")
        False
    """

    def __init__(self) -> None:
        self._active: dict[str, int] = {}

    def begin(self, key: str) -> None:
        """Mark a key active.

        Nested begins for the same key are counted, so the key stays
        active until the matching number of end() calls.
        """
        self._active[key] = self._active.get(key, 0) + 1
        logger.debug("In-flight begin: %s (%d)", key, self._active[key])

    def end(self, key: str) -> None:
        """Unmark a key. Ending an inactive key is a no-op."""
        count = self._active.get(key)
        if count is None:
            return
        if count <= 1:
            del self._active[key]
        else:
            self._active[key] = count - 1
        logger.debug("In-flight end: %s", key)

    def is_active(self, key: str) -> bool:
        return key in self._active

    def active(self) -> list[str]:
        """Snapshot of active keys."""
        return sorted(self._active)

    def __len__(self) -> int:
        return len(self._active)

    @contextmanager
    def track(self, key: str) -> Iterator[None]:
        """Keep a key active for the duration of the block."""
        self.begin(key)
        try:
            yield
        finally:
            self.end(key)


class SingleFlight:
    """Collapses concurrent calls for the same key into one execution.

    The first caller for a key starts the work as a detached task. Callers
    arriving while it runs await the same task. Every caller waits through
    asyncio.shield, so cancelling one caller (including the first) neither
    cancels the work nor strands the others.

    Example:
        >>> flight = SingleFlight()
        >>> result = await flight.do("analysis_abc", lambda: run_analysis("abc"))
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}
        self.executions = 0
        self.collapsed = 0

    def is_running(self, key: str) -> bool:
        return key in self._tasks

    def running(self) -> list[str]:
        return sorted(self._tasks)

    async def do(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        """Run factory() once per key among concurrent callers.

        Args:
            key: Deduplication key.
            factory: Zero-argument callable returning the awaitable to run.

        Returns:
            The shared result.

        Raises:
            Exception: The shared failure, re-raised in every caller.
        """
        task = self._tasks.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._tasks[key] = task
            self.executions += 1
            task.add_done_callback(lambda t, k=key: self._release(k, t))
            logger.debug("Single-flight started: %s", key)
        else:
            self.collapsed += 1
            logger.info("Joining in-flight work for %s", key)

        return await asyncio.shield(task)

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        # Mark the exception retrieved when every waiter has gone away
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Single-flight %s finished with %r", key, task.exception())
