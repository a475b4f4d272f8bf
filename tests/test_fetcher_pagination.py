import pytest

from errors import FeedFormatError, TransportError
from fetcher import FetchState, PageFetcher, build_headers, is_status_api, with_limit
from utils import BackoffState

from fakes import (
    NETWORK_DOWN,
    FakeResponse,
    FakeSession,
    SleepRecorder,
    fixed_clock,
    json_page,
    rate_limited,
    status,
)

START = "https://example.com/api/v1/accounts/1/statuses"


def make_fetcher(responses, page_delay_ms=0, backoff=None):
    session = FakeSession(responses)
    sleep = SleepRecorder()
    fetcher = PageFetcher(
        session,
        headers=build_headers("test-agent", "session=abc"),
        page_delay_ms=page_delay_ms,
        backoff=backoff or BackoffState(750, 1.5, 15000),
        sleep=sleep,
        clock=fixed_clock(),
    )
    return fetcher, session, sleep


@pytest.mark.asyncio
async def test_empty_second_page_stops_paging():
    fetcher, session, _ = make_fetcher([
        json_page([status("1", "2024-05-01T11:00:00Z"), status("2", "2024-05-01T10:00:00Z")], next_url=f"{START}?max_id=2"),
        json_page([], next_url=f"{START}?max_id=1"),
    ])

    posts = await fetcher.fetch_pages(START, 20, 5, 24)

    assert [p.id for p in posts] == ["1", "2"]
    assert len(session.requests) == 2
    assert fetcher.state is FetchState.DONE


@pytest.mark.asyncio
async def test_follows_link_cursor_and_adds_limit():
    fetcher, session, _ = make_fetcher([
        json_page([status("3", "2024-05-01T11:00:00Z")], next_url=f"{START}?max_id=3"),
        json_page([status("2", "2024-05-01T10:00:00Z")]),
    ])

    posts = await fetcher.fetch_pages(START, 20, 5, 24)

    assert [p.id for p in posts] == ["3", "2"]
    assert session.urls == [f"{START}?limit=20", f"{START}?max_id=3"]


def test_with_limit_keeps_existing_limit():
    assert with_limit(f"{START}?limit=40", 20) == f"{START}?limit=40"
    assert with_limit(f"{START}?exclude_replies=true", 20) == f"{START}?exclude_replies=true&limit=20"


@pytest.mark.asyncio
async def test_page_cap_is_respected():
    fetcher, session, _ = make_fetcher([
        json_page([status("5", "2024-05-01T11:50:00Z")], next_url=f"{START}?max_id=5"),
        json_page([status("4", "2024-05-01T11:40:00Z")], next_url=f"{START}?max_id=4"),
    ])

    posts = await fetcher.fetch_pages(START, 20, 2, 24)

    assert [p.id for p in posts] == ["5", "4"]
    assert len(session.requests) == 2


@pytest.mark.asyncio
async def test_stops_once_oldest_post_leaves_recency_window():
    # clock is 2024-05-01T12:00Z, so a 24h window starts at 2024-04-30T12:00Z
    fetcher, session, _ = make_fetcher([
        json_page([status("9", "2024-05-01T11:00:00Z"), status("8", "2024-04-30T10:00:00Z")], next_url=f"{START}?max_id=8"),
        json_page([status("7", "2024-04-29T10:00:00Z")]),
    ])

    posts = await fetcher.fetch_pages(START, 20, 5, 24)

    assert [p.id for p in posts] == ["9", "8"]
    assert len(session.requests) == 1


@pytest.mark.asyncio
async def test_rate_limit_retries_same_page_with_backoff():
    fetcher, session, sleep = make_fetcher([
        rate_limited(retry_after=2),
        rate_limited(retry_after=0),
        json_page([status("1", "2024-05-01T11:00:00Z")]),
    ])

    posts = await fetcher.fetch_pages(START, 20, 5, 24)

    assert [p.id for p in posts] == ["1"]
    assert session.urls == [f"{START}?limit=20"] * 3
    assert sleep.calls == [2.0, 1.125]
    assert fetcher.rate_limited == 2
    assert fetcher.backoff.current_ms == 750


@pytest.mark.asyncio
async def test_inter_page_delay_only_between_pages():
    fetcher, _, sleep = make_fetcher(
        [
            json_page([status("2", "2024-05-01T11:00:00Z")], next_url=f"{START}?max_id=2"),
            json_page([status("1", "2024-05-01T10:00:00Z")]),
        ],
        page_delay_ms=500,
    )

    await fetcher.fetch_pages(START, 20, 5, 24)

    assert sleep.calls == [0.5]


@pytest.mark.asyncio
async def test_server_error_aborts_whole_fetch():
    fetcher, _, _ = make_fetcher([
        json_page([status("2", "2024-05-01T11:00:00Z")], next_url=f"{START}?max_id=2"),
        FakeResponse(500, b"oops", {"Content-Type": "text/plain"}),
    ])

    with pytest.raises(TransportError) as excinfo:
        await fetcher.fetch_pages(START, 20, 5, 24)

    assert excinfo.value.status == 500
    assert fetcher.state is FetchState.FAILED


@pytest.mark.asyncio
async def test_network_failure_is_a_transport_error():
    fetcher, _, _ = make_fetcher([NETWORK_DOWN])

    with pytest.raises(TransportError):
        await fetcher.fetch_pages(START, 20, 5, 24)

    assert fetcher.state is FetchState.FAILED


@pytest.mark.asyncio
async def test_unexpected_content_type_is_not_retried():
    fetcher, session, _ = make_fetcher([FakeResponse(200, b"<html></html>", {"Content-Type": "text/html"})])

    with pytest.raises(FeedFormatError):
        await fetcher.fetch_pages(START, 20, 5, 24)

    assert len(session.requests) == 1
    assert fetcher.state is FetchState.FAILED


@pytest.mark.asyncio
async def test_syndication_pages_are_decoded():
    rss = (
        "<?xml version='1.0'?><rss version='2.0'><channel>"
        "<item><guid>https://example.com/@u/42</guid><pubDate>Wed, 01 May 2024 11:00:00 +0000</pubDate></item>"
        "</channel></rss>"
    )
    fetcher, _, _ = make_fetcher([FakeResponse(200, rss, {"Content-Type": "application/rss+xml"})])

    posts = await fetcher.fetch_pages("https://example.com/@u.rss", None, 5, 24)

    assert [p.id for p in posts] == ["https://example.com/@u/42"]


@pytest.mark.asyncio
async def test_request_carries_fixed_headers():
    fetcher, session, _ = make_fetcher([json_page([])])

    await fetcher.fetch_pages(START, 20, 5, 24)

    headers = session.requests[0]["headers"]
    assert headers["User-Agent"] == "test-agent"
    assert headers["Cookie"] == "session=abc"
    assert "application/json" in headers["Accept"]


def test_only_api_endpoints_are_status_apis():
    assert is_status_api(START)
    assert is_status_api("https://truthsocial.com/api/v1/accounts/1/statuses?exclude_replies=true")
    assert not is_status_api("https://truthsocial.com/@realDonaldTrump.rss")
    assert not is_status_api("https://example.com/feeds/api.xml")
