import csv
from datetime import datetime, timezone

import pytest

import export
from export import (
    ExportOptions,
    StatusCollector,
    build_statuses_url,
    run_export,
    status_row,
    subtract_months,
)
from models import FeedPage

from fakes import FakeSession, SleepRecorder, json_page, rate_limited, status

NOW = datetime(2024, 8, 31, 12, 0, tzinfo=timezone.utc)


def test_subtract_months_clamps_to_month_end():
    assert subtract_months(NOW, 6) == datetime(2024, 2, 29, 12, 0, tzinfo=timezone.utc)
    assert subtract_months(datetime(2024, 1, 15, tzinfo=timezone.utc), 1) == datetime(2023, 12, 15, tzinfo=timezone.utc)
    assert subtract_months(datetime(2024, 3, 10, tzinfo=timezone.utc), 14) == datetime(2023, 1, 10, tzinfo=timezone.utc)


def test_statuses_url_reply_flags():
    url = build_statuses_url("42")
    assert url.startswith("https://truthsocial.com/api/v1/accounts/42/statuses?")
    assert "exclude_replies=false" in url
    assert "only_replies=false" in url
    assert "with_muted=true" in url
    assert "limit=20" in url
    assert "exclude_replies=true" in build_statuses_url("42", exclude_replies=True)


def test_status_row_flattens_retruths():
    item = status(
        "100",
        "2024-08-01T10:00:00.000Z",
        url="https://truthsocial.com/@u/100",
        content="<p>Look at <a href='x'>this</a></p>",
        reblog={"id": "55", "uri": "https://truthsocial.com/users/other/statuses/55"},
    )

    row = status_row(item)

    assert row == {
        "id": "100",
        "created_at": "2024-08-01T10:00:00.000Z",
        "url": "https://truthsocial.com/@u/100",
        "is_retruth": "true",
        "retruth_of": "https://truthsocial.com/users/other/statuses/55",
        "content_text": "Look at this",
        "content_html": "<p>Look at <a href='x'>this</a></p>",
    }
    assert status_row(status("101", "2024-08-01T10:00:00Z", reblog=None))["is_retruth"] == "false"


def test_collector_dedupes_and_stops_on_page_without_new_in_range_items():
    collector = StatusCollector(subtract_months(NOW, 1))

    keep_going = collector(FeedPage(raw_items=[
        status("3", "2024-08-20T00:00:00Z"),
        status("2", "2024-08-10T00:00:00Z"),
    ]))
    assert keep_going is True

    keep_going = collector(FeedPage(raw_items=[
        status("2", "2024-08-10T00:00:00Z"),
        status("1", "2024-06-01T00:00:00Z"),
    ]))
    assert keep_going is False

    assert [row["id"] for row in collector.rows] == ["3", "2"]
    assert collector(FeedPage(raw_items=[])) is False


@pytest.mark.asyncio
async def test_run_export_walks_pages_with_backoff():
    start = build_statuses_url("42")
    session = FakeSession([
        json_page([status("3", "2024-08-20T00:00:00Z"), status("2", "2024-08-10T00:00:00Z")],
                  next_url="https://truthsocial.com/api/v1/accounts/42/statuses?max_id=2"),
        rate_limited(retry_after=3),
        json_page([status("1", "2024-01-01T00:00:00Z")],
                  next_url="https://truthsocial.com/api/v1/accounts/42/statuses?max_id=1"),
    ])
    sleep = SleepRecorder()

    rows = await run_export(ExportOptions(account="42", months=6, delay_ms=750), session=session, sleep=sleep, now=NOW)

    assert [row["id"] for row in rows] == ["3", "2"]
    assert session.urls[0] == start
    assert len(session.requests) == 3
    # inter-page delay, then the 429 wait (Retry-After beats the 750ms base)
    assert sleep.calls == [0.75, 3.0]
    assert session.requests[0]["headers"]["Accept"] == "application/json, text/plain, */*"


def test_main_rejects_invalid_months(capsys):
    assert export.main(["--months", "0"]) == 1
    assert export.main(["--months", "abc"]) == 1
    assert "Invalid --months value" in capsys.readouterr().err


def test_main_writes_csv(tmp_path, monkeypatch, capsys):
    out = tmp_path / "posts.csv"

    async def fake_run_export(options, **_):
        return [status_row(status("9", "2024-08-20T00:00:00Z", content="<p>a, \"b\"</p>"))]

    monkeypatch.setattr(export, "run_export", fake_run_export)

    assert export.main(["--months", "2", "--out", str(out)]) == 0

    with open(out, newline="", encoding="utf-8") as handle:
        rows = list(csv.DictReader(handle))
    assert rows[0]["id"] == "9"
    assert rows[0]["content_text"] == 'a, "b"'
    assert f"Exported 1 posts to {out}" in capsys.readouterr().out


def test_default_output_name():
    assert ExportOptions(account="42", months=3).out_file == "truthsocial_42_3mo.csv"
