#!/usr/bin/env python3
"""
One-shot CSV export of an account's statuses.

Walks the account's status timeline backwards from now, following ``Link``
cursors with the same rate-limit backoff as the poller, and writes every
status created within the last N calendar months to a CSV file.

Usage:
    python export.py --months 3 --out posts.csv
"""

import argparse
import asyncio
import calendar
import csv
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from os import environ
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import urlencode

from aiohttp import ClientSession

from config import config, get_logger
from errors import FetchError
from fetcher import PageFetcher, build_headers
from models import FeedPage
from telemetry import init_telemetry, trace_span
from utils import BackoffState, parse_timestamp, strip_html

logger = get_logger("export")
init_telemetry("post-tracker-export")

DEFAULT_ACCOUNT_ID = "107780257626128497"
DEFAULT_MONTHS = 6
DEFAULT_LIMIT = 20
DEFAULT_MAX_PAGES = 250
DEFAULT_DELAY_MS = 750
DEFAULT_BACKOFF_FACTOR = 1.5
DEFAULT_MAX_DELAY_MS = 15000

EXPORT_ACCEPT = "application/json, text/plain, */*"

CSV_COLUMNS = ["id", "created_at", "url", "is_retruth", "retruth_of", "content_text", "content_html"]


@dataclass
class ExportOptions:
    account: str = DEFAULT_ACCOUNT_ID
    months: int = DEFAULT_MONTHS
    out: Optional[str] = None
    max_pages: int = DEFAULT_MAX_PAGES
    delay_ms: int = DEFAULT_DELAY_MS
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS
    exclude_replies: bool = False

    @property
    def out_file(self) -> str:
        return self.out or f"truthsocial_{self.account}_{self.months}mo.csv"


def subtract_months(moment: datetime, months: int) -> datetime:
    """Step back ``months`` calendar months, clamping the day to the month's end."""
    month_index = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def build_statuses_url(account: str, exclude_replies: bool = False, limit: int = DEFAULT_LIMIT) -> str:
    params = {
        "exclude_replies": "true" if exclude_replies else "false",
        "only_replies": "false",
        "with_muted": "true",
        "limit": str(limit),
    }
    return f"https://truthsocial.com/api/v1/accounts/{account}/statuses?{urlencode(params)}"


def export_cookie() -> Optional[str]:
    return environ.get("TRUTHSOCIAL_COOKIE") or environ.get("COOKIE") or None


def status_row(item: Mapping[str, Any]) -> Dict[str, str]:
    """Flatten one raw status into a CSV row."""
    reblog = item.get("reblog")
    retruth_of = ""
    if isinstance(reblog, Mapping):
        retruth_of = reblog.get("url") or reblog.get("uri") or reblog.get("id") or ""
    content_html = item.get("content") or ""
    return {
        "id": str(item.get("id")),
        "created_at": item.get("created_at") or "",
        "url": item.get("url") or item.get("uri") or "",
        "is_retruth": "true" if reblog else "false",
        "retruth_of": str(retruth_of),
        "content_text": strip_html(content_html),
        "content_html": content_html,
    }


class StatusCollector:
    """Page callback that keeps unseen, in-range statuses as CSV rows.

    Paging continues only while a page contributes at least one new row.
    """

    def __init__(self, cutoff: datetime):
        self.cutoff = cutoff
        self.rows: List[Dict[str, str]] = []
        self.seen_ids = set()

    def _in_range(self, created_at: Any) -> bool:
        created = parse_timestamp(created_at)
        return created is not None and created >= self.cutoff

    def __call__(self, page: FeedPage) -> bool:
        if not page.raw_items:
            return False
        keep_paging = False
        for item in page.raw_items:
            status_id = item.get("id")
            if not status_id or status_id in self.seen_ids:
                continue
            self.seen_ids.add(status_id)
            if not self._in_range(item.get("created_at")):
                continue
            keep_paging = True
            self.rows.append(status_row(item))
        return keep_paging


def write_csv(path: str, rows: List[Dict[str, str]]) -> None:
    with open(path, "w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=CSV_COLUMNS, lineterminator="\n")
        writer.writeheader()
        writer.writerows(rows)


@trace_span(
    "export.run",
    tracer_name="export",
    attr_from_args=lambda options, **_: {"export.account": options.account, "export.months": options.months},
)
async def run_export(
    options: ExportOptions,
    *,
    session: Optional[ClientSession] = None,
    sleep: Optional[Callable] = None,
    now: Optional[datetime] = None,
) -> List[Dict[str, str]]:
    """Collect the CSV rows for ``options``. Raises FetchError on failure."""
    cutoff = subtract_months(now or datetime.now(timezone.utc), options.months)
    collector = StatusCollector(cutoff)
    start_url = build_statuses_url(options.account, options.exclude_replies)
    logger.info(f"Exporting statuses for account {options.account} since {cutoff.isoformat()}")

    async def _walk(client) -> None:
        fetcher = PageFetcher(
            client,
            headers=build_headers(config.USER_AGENT, export_cookie(), accept=EXPORT_ACCEPT),
            page_delay_ms=options.delay_ms,
            backoff=BackoffState(options.delay_ms, options.backoff_factor, options.max_delay_ms),
            sleep=sleep,
        )
        pages = await fetcher.walk(start_url, options.max_pages, collector)
        logger.info(f"Walked {pages} page(s), kept {len(collector.rows)} statuses")

    if session is not None:
        await _walk(session)
    else:
        async with ClientSession() as client:
            await _walk(client)
    return collector.rows


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Export an account's statuses to CSV")
    parser.add_argument("--account", default=DEFAULT_ACCOUNT_ID, help="Account id")
    parser.add_argument("--months", default=str(DEFAULT_MONTHS), help="How many calendar months back to export")
    parser.add_argument("--out", help="Output CSV path (default truthsocial_<account>_<months>mo.csv)")
    parser.add_argument("--max-pages", type=int, default=DEFAULT_MAX_PAGES, help="Page cap")
    parser.add_argument("--delay-ms", type=int, default=DEFAULT_DELAY_MS, help="Delay between pages and base backoff")
    parser.add_argument("--backoff-factor", type=float, default=DEFAULT_BACKOFF_FACTOR, help="Backoff growth factor on 429")
    parser.add_argument("--max-delay-ms", type=int, default=DEFAULT_MAX_DELAY_MS, help="Backoff ceiling")
    parser.add_argument("--include-replies", action="store_true", help="Include replies (the default)")
    parser.add_argument("--exclude-replies", action="store_true", help="Exclude replies")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        months = int(args.months)
    except ValueError:
        months = 0
    if months <= 0:
        print("Invalid --months value", file=sys.stderr)
        return 1

    options = ExportOptions(
        account=args.account,
        months=months,
        out=args.out,
        max_pages=args.max_pages,
        delay_ms=args.delay_ms,
        backoff_factor=args.backoff_factor,
        max_delay_ms=args.max_delay_ms,
        exclude_replies=args.exclude_replies,
    )

    try:
        rows = asyncio.run(run_export(options))
    except FetchError as e:
        logger.error(f"Export failed: {e}")
        return 1

    write_csv(options.out_file, rows)
    print(f"Exported {len(rows)} posts to {options.out_file}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
