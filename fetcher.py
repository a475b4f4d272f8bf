#!/usr/bin/env python3
"""
Paginated fetcher for the upstream status API and syndication feeds.

Walks cursor-linked pages (``Link: <...>; rel="next"``) and decodes each one
into posts. Rate-limited responses (429) are retried in place after a
geometric backoff; any other failure aborts the whole walk, so callers never
see a partial result.

State machine::

    FETCHING --429--> BACKOFF_WAITING --sleep--> FETCHING
    FETCHING --2xx, stop condition--> DONE
    FETCHING --non-2xx / network / bad body--> FAILED
"""

import asyncio
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import FetchError, TransportError
from models import FeedPage, Post
from parsers import JSON, decode_json, detect_format, parse_feed, parse_status_list
from telemetry import init_telemetry, trace_span
from utils import BackoffState, parse_link_header, parse_retry_after, parse_timestamp

logger = get_logger("fetcher")
init_telemetry("post-tracker-fetcher")

HTTP_TOO_MANY_REQUESTS = 429

DEFAULT_ACCEPT = "application/json, application/rss+xml, application/xml;q=0.9, */*;q=0.8"

SleepFunc = Callable[[float], Awaitable[None]]
ClockFunc = Callable[[], datetime]


class FetchState(Enum):
    FETCHING = "fetching"
    BACKOFF_WAITING = "backoff_waiting"
    DONE = "done"
    FAILED = "failed"


def build_headers(user_agent: str, cookie: Optional[str] = None, accept: str = DEFAULT_ACCEPT) -> Dict[str, str]:
    """Fixed request header set sent with every page request."""
    headers = {
        "User-Agent": user_agent,
        "Accept": accept,
        "Accept-Language": "en-US,en;q=0.9",
    }
    if cookie:
        headers["Cookie"] = cookie
    return headers


def is_status_api(url: str) -> bool:
    """True for JSON status API endpoints (paged with ``limit``), False for feed URLs."""
    return "/api/" in urlsplit(url).path


def with_limit(url: str, limit: Optional[int]) -> str:
    """Add a ``limit`` query parameter unless the URL already carries one."""
    if not limit:
        return url
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    if any(key == "limit" for key, _ in query):
        return url
    query.append(("limit", str(limit)))
    return urlunsplit(parts._replace(query=urlencode(query)))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PageFetcher:
    """Fetch and decode cursor-linked pages with rate-limit backoff.

    Args:
        session: aiohttp ClientSession (or anything with a compatible ``get``).
        headers: Request headers; defaults to ``build_headers`` from config.
        page_delay_ms: Pause between successful pages.
        backoff: Backoff state for 429 responses; defaults from config.
        timeout: Total per-request timeout in seconds.
        sleep: Awaitable sleep, injectable for tests.
        clock: Returns the current aware UTC datetime, injectable for tests.
    """

    def __init__(
        self,
        session: ClientSession,
        *,
        headers: Optional[Dict[str, str]] = None,
        page_delay_ms: Optional[int] = None,
        backoff: Optional[BackoffState] = None,
        timeout: Optional[int] = None,
        sleep: Optional[SleepFunc] = None,
        clock: Optional[ClockFunc] = None,
    ) -> None:
        self.session = session
        self.headers = headers if headers is not None else build_headers(config.USER_AGENT, config.SESSION_COOKIE)
        self.page_delay_ms = config.PAGE_DELAY_MS if page_delay_ms is None else page_delay_ms
        self.backoff = backoff or BackoffState(config.BACKOFF_BASE_MS, config.BACKOFF_FACTOR, config.MAX_BACKOFF_MS)
        self.timeout = ClientTimeout(total=timeout or config.HTTP_TIMEOUT)
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or _utcnow
        self.state: Optional[FetchState] = None
        self.pages_fetched = 0
        self.rate_limited = 0

    async def _request(self, url: str) -> Tuple[int, Mapping[str, str], bytes]:
        try:
            async with self.session.get(url, headers=self.headers, timeout=self.timeout) as response:
                body = await response.read()
                return response.status, response.headers, body
        except asyncio.TimeoutError as e:
            raise TransportError(f"Timed out fetching {url}", url=url) from e
        except ClientError as e:
            raise TransportError(f"Network error fetching {url}: {e.__class__.__name__} {e}", url=url) from e

    def _decode_page(self, body: bytes, headers: Mapping[str, str]) -> FeedPage:
        content_type = headers.get("Content-Type", "")
        if detect_format(content_type) == JSON:
            payload = decode_json(body)
            records = parse_status_list(payload)
            raw_items = [item for item in payload if isinstance(item, dict)] if isinstance(payload, list) else []
        else:
            records = parse_feed(body)
            raw_items = []
        next_url = parse_link_header(headers.get("Link")).get("next")
        return FeedPage(records=records, raw_items=raw_items, next_url=next_url)

    @trace_span(
        "fetcher.fetch_page",
        tracer_name="fetcher",
        attr_from_args=lambda self, url: {"http.url": url},
    )
    async def fetch_page(self, url: str) -> FeedPage:
        """Fetch one page, waiting out 429 responses, and decode it.

        Raises:
            TransportError: non-2xx status other than 429, or network failure.
            FeedFormatError: unexpected content type or undecodable body.
        """
        self.state = FetchState.FETCHING
        try:
            while True:
                status, headers, body = await self._request(url)
                if status == HTTP_TOO_MANY_REQUESTS:
                    retry_after = parse_retry_after(headers.get("Retry-After"))
                    wait_ms = self.backoff.wait_for(retry_after)
                    self.rate_limited += 1
                    self.state = FetchState.BACKOFF_WAITING
                    logger.warning(f"429 rate limit on {url}. Waiting {wait_ms}ms before retrying")
                    await self._sleep(wait_ms / 1000)
                    self.state = FetchState.FETCHING
                    continue
                if not 200 <= status < 300:
                    raise TransportError(f"Feed request failed: {status}", status=status, url=url)
                page = self._decode_page(body, headers)
                self.backoff.reset()
                self.pages_fetched += 1
                return page
        except FetchError:
            self.state = FetchState.FAILED
            raise

    async def walk(self, start_url: str, max_pages: int, on_page: Callable[[FeedPage], bool]) -> int:
        """Fetch pages from ``start_url`` until a stop condition holds.

        ``on_page`` consumes each page and returns False to stop. Paging also
        stops when there is no ``next`` cursor or ``max_pages`` is reached.
        Returns the number of pages fetched.
        """
        url: Optional[str] = start_url
        pages = 0
        while url and pages < max_pages:
            page = await self.fetch_page(url)
            pages += 1
            if not on_page(page) or not page.next_url or pages >= max_pages:
                break
            url = page.next_url
            if self.page_delay_ms > 0:
                await self._sleep(self.page_delay_ms / 1000)
        self.state = FetchState.DONE
        return pages

    @trace_span(
        "fetcher.fetch_pages",
        tracer_name="fetcher",
        attr_from_args=lambda self, start_url, per_page_limit, max_pages, recency_window_hours: {
            "http.url": start_url,
            "fetch.max_pages": max_pages,
            "fetch.window_hours": recency_window_hours,
        },
    )
    async def fetch_pages(
        self,
        start_url: str,
        per_page_limit: Optional[int],
        max_pages: int,
        recency_window_hours: float,
    ) -> List[Post]:
        """Collect posts from successive pages within the recency window.

        Stops on an empty page, a missing cursor, the page cap, or once the
        oldest post collected so far is older than ``now - window``.
        """
        collected: List[Post] = []
        cutoff = self._clock() - timedelta(hours=recency_window_hours)

        def on_page(page: FeedPage) -> bool:
            if not page.records:
                return False
            collected.extend(page.records)
            oldest = min(parse_timestamp(post.timestamp) for post in collected)
            return oldest > cutoff

        pages = await self.walk(with_limit(start_url, per_page_limit), max_pages, on_page)
        logger.info(
            f"Fetched {len(collected)} posts from {pages} page(s) "
            f"(rate limited {self.rate_limited} time(s))"
        )
        return collected


__all__ = ["FetchState", "PageFetcher", "build_headers", "is_status_api", "with_limit"]
