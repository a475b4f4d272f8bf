#!/usr/bin/env python3
"""
Poll scheduler.

Owns the recurring fetch-merge-persist cycle and the state the read API
reports about it:

- ``last_poll_at``: ISO instant of the last successful cycle (None until one succeeds)
- ``last_seed_attempt``: monotonic time of the last lazy-seeding attempt

Both live on the instance and start empty when it is constructed. At most
one cycle runs at a time; a tick or seeding request that arrives while a
cycle is in flight is skipped rather than queued.
"""

import asyncio
import time
from contextlib import suppress
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiohttp import ClientSession

from config import config, get_logger
from errors import FetchError, PersistenceError
from fetcher import PageFetcher, is_status_api
from models import Post
from store import PostStore
from telemetry import init_telemetry, trace_span
from utils import format_timestamp

logger = get_logger("scheduler")
init_telemetry("post-tracker-scheduler")

FetcherFactory = Callable[[Any], PageFetcher]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PollScheduler:
    """Recurring poller for one upstream source.

    Args:
        store: Where fetched posts are merged.
        source_url: JSON API endpoint or syndication URL.
        session: Shared aiohttp session; when None each cycle opens its own.
        fetcher_factory: Builds a PageFetcher for a session (injectable for tests).
        interval_seconds: Poll interval, also the minimum gap between seeding attempts.
        window_hours: Recency window handed to the fetcher.
        max_pages: Page cap per cycle.
        page_limit: Per-page result limit.
        clock: Returns the current aware UTC datetime.
        monotonic: Returns monotonic seconds.
        sleep: Awaitable sleep used between cycles.
    """

    def __init__(
        self,
        store: PostStore,
        *,
        source_url: Optional[str] = None,
        session: Optional[ClientSession] = None,
        fetcher_factory: Optional[FetcherFactory] = None,
        interval_seconds: Optional[float] = None,
        window_hours: Optional[float] = None,
        max_pages: Optional[int] = None,
        page_limit: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
        monotonic: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self.store = store
        self.source_url = source_url or config.SOURCE_URL
        self.session = session
        self.fetcher_factory = fetcher_factory or PageFetcher
        self.interval_seconds = interval_seconds or config.POLL_INTERVAL_SECONDS
        self.window_hours = window_hours or config.HISTORY_WINDOW_HOURS
        self.max_pages = max_pages or config.MAX_PAGES
        self.page_limit = page_limit or config.PAGE_LIMIT
        self._clock = clock or _utcnow
        self._monotonic = monotonic or time.monotonic
        self._sleep = sleep or asyncio.sleep

        self.last_poll_at: Optional[str] = None
        self.last_seed_attempt: Optional[float] = None
        self.last_error: Optional[str] = None
        self._in_flight = False
        self._task: Optional[asyncio.Task] = None

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def _fetch(self) -> List[Post]:
        # feed URLs are requested as configured
        limit = self.page_limit if is_status_api(self.source_url) else None
        if self.session is not None:
            fetcher = self.fetcher_factory(self.session)
            return await fetcher.fetch_pages(self.source_url, limit, self.max_pages, self.window_hours)
        async with ClientSession() as session:
            fetcher = self.fetcher_factory(session)
            return await fetcher.fetch_pages(self.source_url, limit, self.max_pages, self.window_hours)

    @trace_span(
        "scheduler.poll_once",
        tracer_name="scheduler",
        attr_from_args=lambda self: {"poll.source_url": self.source_url},
    )
    async def poll_once(self) -> bool:
        """Run one fetch-merge-persist cycle.

        Returns True when the cycle completed. A fetch failure is logged and
        leaves the store untouched; persistence failures propagate.
        """
        if self._in_flight:
            logger.info("Poll already in flight; skipping this tick")
            return False
        self._in_flight = True
        try:
            try:
                incoming = await self._fetch()
            except FetchError as e:
                self.last_error = str(e)
                logger.error(f"Failed to poll {self.source_url}: {e}")
                return False
            if incoming:
                await self.store.merge(incoming)
            else:
                logger.info("Poll returned no posts")
            self.last_poll_at = format_timestamp(self._clock())
            self.last_error = None
            return True
        finally:
            self._in_flight = False

    async def ensure_seeded(self) -> List[Post]:
        """Return the stored posts, polling first if the store is still empty.

        An empty store triggers at most one out-of-band poll per poll
        interval, so a cold start fills quickly without hammering upstream.
        """
        posts = await self.store.snapshot()
        if posts:
            return posts
        now = self._monotonic()
        if self.last_seed_attempt is not None and now - self.last_seed_attempt < self.interval_seconds:
            return posts
        self.last_seed_attempt = now
        logger.info("Store is empty; seeding with an out-of-band poll")
        await self.poll_once()
        return await self.store.snapshot()

    async def run(self) -> None:
        """Poll immediately, then once per interval until cancelled."""
        logger.info(f"Polling {self.source_url} every {self.interval_seconds}s")
        while True:
            try:
                await self.poll_once()
            except PersistenceError as e:
                logger.error(f"Poll cycle could not persist posts: {e}")
            await self._sleep(self.interval_seconds)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Scheduler stopped")

    def get_status(self) -> Dict[str, Any]:
        return {
            "source_url": self.source_url,
            "interval_seconds": self.interval_seconds,
            "last_poll_at": self.last_poll_at,
            "last_error": self.last_error,
            "in_flight": self._in_flight,
            "running": self._task is not None and not self._task.done(),
        }


def create_scheduler(store: PostStore, session: Optional[ClientSession] = None) -> PollScheduler:
    """Create a PollScheduler configured from the global config."""
    return PollScheduler(store, session=session)
