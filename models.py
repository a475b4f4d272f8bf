#!/usr/bin/env python3
"""
Data types for posts and their derived views.

Upstream payloads arrive in two shapes (JSON API statuses and syndication
feed entries). Each has a validating constructor on ``Post`` that yields a
complete record or None, so nothing partial travels further downstream.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from utils import normalize_timestamp


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


@dataclass
class Post:
    """A canonical post.

    ``timestamp`` is an ISO-8601 UTC string; ``url``/``uri``/``content`` are
    optional and empty when unknown.
    """

    id: str
    timestamp: str
    url: str = ""
    uri: str = ""
    content: str = ""

    def to_dict(self) -> Dict[str, str]:
        data = {"id": self.id, "timestamp": self.timestamp, "url": self.url}
        if self.uri:
            data["uri"] = self.uri
        data["content"] = self.content
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Post":
        """Rebuild a post from the persisted document (no validation)."""
        return cls(
            id=_text(data.get("id")),
            timestamp=_text(data.get("timestamp")),
            url=_text(data.get("url")),
            uri=_text(data.get("uri")),
            content=data.get("content") or "",
        )

    @classmethod
    def from_status(cls, item: Any) -> Optional["Post"]:
        """Build a post from one JSON API status, or None if it is unusable.

        A status needs ``created_at`` plus an identifier (``id``, then
        ``url``, then ``uri``), and the timestamp must parse.
        """
        if not isinstance(item, Mapping):
            return None
        created_at = item.get("created_at")
        raw_id = _text(item.get("id")) or _text(item.get("url")) or _text(item.get("uri"))
        if not created_at or not raw_id:
            return None
        timestamp = normalize_timestamp(created_at)
        if timestamp is None:
            return None
        return cls(
            id=raw_id,
            timestamp=timestamp,
            url=_text(item.get("url")) or _text(item.get("uri")),
            content=item.get("content") or "",
        )

    @classmethod
    def from_feed_entry(cls, entry: Any) -> Optional["Post"]:
        """Build a post from one syndication item, or None if it is unusable.

        Identity prefers ``guid`` over ``link``; the timestamp comes from
        ``pubDate``. feedparser exposes these as ``id``, ``link`` and
        ``published``.
        """
        if entry is None or not hasattr(entry, "get"):
            return None
        guid = _text(entry.get("id") or entry.get("guid"))
        link = _text(entry.get("link"))
        raw_id = guid or link
        pub_date = entry.get("published") or entry.get("pubDate") or entry.get("updated")
        if not raw_id or not pub_date:
            return None
        timestamp = normalize_timestamp(pub_date)
        if timestamp is None:
            return None
        return cls(
            id=raw_id,
            timestamp=timestamp,
            url=link,
            content=entry.get("summary") or entry.get("description") or "",
        )


@dataclass(frozen=True)
class HourlyBucket:
    """Number of posts whose timestamp falls within one UTC clock-hour."""

    hour: str
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"hour": self.hour, "count": self.count}


@dataclass
class FeedPage:
    """One decoded page of an upstream fetch.

    ``raw_items`` keeps the undecoded JSON statuses for consumers (the CSV
    export) that need fields the canonical shape drops.
    """

    records: List[Post] = field(default_factory=list)
    raw_items: List[Dict[str, Any]] = field(default_factory=list)
    next_url: Optional[str] = None
