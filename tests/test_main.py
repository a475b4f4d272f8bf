import pytest

import main
from errors import TransportError
from main import PostTrackerOrchestrator
from models import Post
from scheduler import PollScheduler

from fakes import fixed_clock


class ScriptedFetcher:
    def __init__(self, result):
        self.result = result

    async def fetch_pages(self, start_url, per_page_limit, max_pages, recency_window_hours):
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result


def use_fetch_result(monkeypatch, result):
    fetcher = ScriptedFetcher(result)

    def create_scheduler(store, session=None):
        return PollScheduler(
            store,
            source_url="https://example.com/api/v1/accounts/1/statuses",
            session=object(),
            fetcher_factory=lambda session: fetcher,
            clock=fixed_clock(),
        )

    monkeypatch.setattr(main, "create_scheduler", create_scheduler)


@pytest.mark.asyncio
async def test_run_poll_persists_fetched_posts(monkeypatch, tmp_path):
    use_fetch_result(monkeypatch, [
        Post(id="https://example.com/@u/2", timestamp="2024-05-01T11:30:00.000Z", url="https://example.com/@u/2"),
        Post(id="1", timestamp="2024-05-01T10:00:00.000Z"),
    ])
    orchestrator = PostTrackerOrchestrator(str(tmp_path / "posts.json"))

    assert await orchestrator.run_poll() is True

    assert [p.id for p in await orchestrator.store.all()] == ["1", "2"]


@pytest.mark.asyncio
async def test_run_poll_reports_fetch_failure(monkeypatch, tmp_path):
    use_fetch_result(monkeypatch, TransportError("Feed request failed: 502", status=502))
    orchestrator = PostTrackerOrchestrator(str(tmp_path / "posts.json"))

    assert await orchestrator.run_poll() is False

    assert not orchestrator.posts_file.exists()


@pytest.mark.asyncio
async def test_run_poll_reports_unwritable_store(monkeypatch, tmp_path):
    use_fetch_result(monkeypatch, [Post(id="1", timestamp="2024-05-01T10:00:00.000Z")])
    posts_file = tmp_path / "posts.json"
    posts_file.write_text("{not json", encoding="utf-8")
    orchestrator = PostTrackerOrchestrator(str(posts_file))

    assert await orchestrator.run_poll() is False


@pytest.mark.asyncio
async def test_status_is_healthy_once_posts_are_stored(monkeypatch, tmp_path, capsys):
    use_fetch_result(monkeypatch, [Post(id="9", timestamp="2024-05-01T11:00:00.000Z", url="https://example.com/@u/9")])
    orchestrator = PostTrackerOrchestrator(str(tmp_path / "posts.json"))
    await orchestrator.run_poll()

    status = await orchestrator.check_status()

    assert status["overall_status"] == "healthy"
    assert status["checks"]["store"]["total_posts"] == 1
    assert status["checks"]["store"]["latest"]["id"] == "9"

    orchestrator.print_status(status)
    out = capsys.readouterr().out
    assert "HEALTHY" in out
    assert "https://example.com/@u/9" in out


@pytest.mark.asyncio
async def test_status_flags_missing_store(tmp_path):
    orchestrator = PostTrackerOrchestrator(str(tmp_path / "posts.json"))

    status = await orchestrator.check_status()

    assert status["checks"]["store"] == {"status": "missing", "total_posts": 0, "latest": None}
    assert status["overall_status"] == "issues_detected"


@pytest.mark.asyncio
async def test_status_reports_unreadable_store(tmp_path, capsys):
    posts_file = tmp_path / "posts.json"
    posts_file.write_text("{not json", encoding="utf-8")
    orchestrator = PostTrackerOrchestrator(str(posts_file))

    status = await orchestrator.check_status()

    assert status["checks"]["store"]["status"] == "error"
    assert status["overall_status"] == "issues_detected"

    orchestrator.print_status(status)
    assert "ERROR" in capsys.readouterr().out
