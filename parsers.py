#!/usr/bin/env python3
"""
Decoders for the two upstream wire formats.

``parse_status_list`` handles the JSON API (an array of status objects);
``parse_feed`` handles RSS/Atom syndication. Both drop malformed items
silently and never raise on a single bad entry.
"""

from json import loads, JSONDecodeError
from typing import Any, List, Union

import feedparser

from config import get_logger
from errors import FeedFormatError
from models import Post

logger = get_logger("parsers")

JSON = "json"
SYNDICATION = "syndication"

_SYNDICATION_MARKERS = ("xml", "rss", "atom")


def parse_status_list(payload: Any) -> List[Post]:
    """Decode a JSON API status list; anything that is not a list yields []."""
    if not isinstance(payload, list):
        return []
    posts = [post for post in (Post.from_status(item) for item in payload) if post is not None]
    dropped = len(payload) - len(posts)
    if dropped:
        logger.debug(f"Dropped {dropped} of {len(payload)} statuses without identity or valid created_at")
    return posts


def parse_feed(xml: Union[str, bytes]) -> List[Post]:
    """Decode the ``<item>`` entries of a syndication document."""
    if not xml:
        return []
    feed = feedparser.parse(xml, sanitize_html=False, resolve_relative_uris=False)
    if feed.bozo and getattr(feed, "bozo_exception", None):
        logger.debug(f"Syndication parsing warning: {feed.bozo_exception}")
    entries = feed.get("entries") or []
    posts = [post for post in (Post.from_feed_entry(entry) for entry in entries) if post is not None]
    dropped = len(entries) - len(posts)
    if dropped:
        logger.debug(f"Dropped {dropped} of {len(entries)} feed items without identity or valid pubDate")
    return posts


def detect_format(content_type: str) -> str:
    """Map a Content-Type header to a decoder, or raise FeedFormatError."""
    media_type = (content_type or "").split(";", 1)[0].strip().lower()
    if media_type == "application/json" or media_type.endswith("+json"):
        return JSON
    if any(marker in media_type for marker in _SYNDICATION_MARKERS):
        return SYNDICATION
    raise FeedFormatError(f"Unexpected content type '{content_type or 'none'}'")


def decode_json(body: Union[str, bytes]) -> Any:
    try:
        return loads(body)
    except (JSONDecodeError, UnicodeDecodeError) as e:
        raise FeedFormatError(f"Failed to parse JSON response: {e}") from e


def decode_body(body: Union[str, bytes], content_type: str) -> List[Post]:
    """Decode a page body according to its declared content type."""
    if detect_format(content_type) == JSON:
        return parse_status_list(decode_json(body))
    return parse_feed(body)
