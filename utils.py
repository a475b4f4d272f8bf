#!/usr/bin/env python3
"""
Utility classes and functions shared by the fetcher, parsers and store.

Covers timestamp parsing/formatting, Link header parsing, the rate-limit
backoff state and HTML-to-text conversion.
"""

from calendar import timegm
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from math import ceil
from typing import Any, Dict, Optional
import re

from bs4 import BeautifulSoup
from feedparser.datetimes import _parse_date as feedparser_parse_date

from config import get_logger

logger = get_logger("utils")

EPOCH_FLOOR = datetime.min.replace(tzinfo=timezone.utc)

_LINK_RE = re.compile(r'<([^>]+)>\s*;\s*rel="([^"]+)"')
_WHITESPACE_RE = re.compile(r"\s+")


def _parse_iso8601(text: str) -> Optional[datetime]:
    try:
        # fromisoformat() only learned about a trailing "Z" in 3.11
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _parse_with_email_utils(text: str) -> Optional[datetime]:
    try:
        return parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError, OverflowError):
        return None


def _parse_with_feedparser(text: str) -> Optional[datetime]:
    try:
        parsed = feedparser_parse_date(text)
        if parsed:
            return datetime.fromtimestamp(timegm(parsed), tz=timezone.utc)
    except (ValueError, TypeError, OverflowError, OSError):
        return None
    return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an upstream date value into an aware UTC datetime.

    Accepts ISO-8601 (JSON API ``created_at``), RFC 822 (RSS ``pubDate``) and
    whatever else feedparser's date handlers understand. Naive values are
    taken as UTC. Returns None for anything unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        dt = None
        for parser in (_parse_iso8601, _parse_with_email_utils, _parse_with_feedparser):
            dt = parser(text)
            if dt is not None:
                break
        if dt is None:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Render an instant as ``YYYY-MM-DDTHH:MM:SS.mmmZ`` in UTC."""
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def normalize_timestamp(value: Any) -> Optional[str]:
    """Parse and re-render a date value, or None when it does not parse."""
    dt = parse_timestamp(value)
    return format_timestamp(dt) if dt else None


def timestamp_sort_key(value: Any) -> datetime:
    """Sort key that places unparseable timestamps before every real instant."""
    return parse_timestamp(value) or EPOCH_FLOOR


def parse_link_header(header: Optional[str]) -> Dict[str, str]:
    """Parse an RFC 8288 ``Link`` header into a ``{rel: url}`` mapping."""
    if not header:
        return {}
    links: Dict[str, str] = {}
    for url, rels in _LINK_RE.findall(header):
        for rel in rels.split():
            links[rel] = url
    return links


def parse_retry_after(value: Optional[str]) -> float:
    """Return the Retry-After delay in seconds (0 when absent or not numeric)."""
    if not value:
        return 0.0
    try:
        seconds = float(value.strip())
    except ValueError:
        # HTTP-date form
        dt = _parse_with_email_utils(value.strip())
        if dt is None:
            return 0.0
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        seconds = (dt - datetime.now(timezone.utc)).total_seconds()
    return seconds if seconds > 0 else 0.0


class BackoffState:
    """Geometric backoff for rate-limited page requests.

    The delay starts at ``base_ms``; each rate-limited attempt waits for the
    larger of the current delay and the server's Retry-After, then grows the
    delay by ``factor`` up to ``max_ms``. A successful page resets it.
    """

    def __init__(self, base_ms: int, factor: float = 1.5, max_ms: int = 15000):
        self.base_ms = max(int(base_ms), 0)
        self.factor = factor if factor >= 1.0 else 1.0
        self.max_ms = max(int(max_ms), self.base_ms)
        self.current_ms = self.base_ms

    def wait_for(self, retry_after_seconds: float = 0.0) -> int:
        """Return how long to wait (ms) before retrying, and advance the delay."""
        retry_after_ms = int(ceil(retry_after_seconds * 1000)) if retry_after_seconds > 0 else 0
        wait_ms = max(self.current_ms, retry_after_ms)
        self.current_ms = min(int(ceil(self.current_ms * self.factor)), self.max_ms)
        return wait_ms

    def reset(self) -> None:
        self.current_ms = self.base_ms

    def __repr__(self) -> str:
        return f"BackoffState(current_ms={self.current_ms}, base_ms={self.base_ms}, max_ms={self.max_ms})"


def strip_html(html_content: Optional[str]) -> str:
    """Convert an HTML fragment to a single line of plain text."""
    if not html_content:
        return ""
    text = BeautifulSoup(html_content, "html.parser").get_text(" ")
    return _WHITESPACE_RE.sub(" ", text).strip()
