#!/usr/bin/env python3
"""
Post persistence and read projections.

The posts document is a single JSON file ``{"posts": [...]}``. A missing
file is an empty set. Writers go through ``PostStore.merge``, which
serializes read-merge-write cycles behind a lock and replaces the file
atomically, so readers always see a complete document.

The projections (``latest``, ``hourly``, ``all_posts``) are pure functions
of a post set and never mutate it.
"""

import asyncio
import json
import os
import tempfile
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from config import get_logger
from errors import PersistenceError
from models import HourlyBucket, Post
from normalizer import PostLike, merge_records, normalize_posts
from utils import format_timestamp, parse_timestamp

logger = get_logger("store")


def hour_key(timestamp: str) -> Optional[str]:
    """Truncate a timestamp to its UTC hour, or None if it does not parse."""
    dt = parse_timestamp(timestamp)
    if dt is None:
        return None
    return format_timestamp(dt.replace(minute=0, second=0, microsecond=0))


def all_posts(posts: Iterable[PostLike]) -> List[Post]:
    """The normalized set, sorted ascending by timestamp."""
    return normalize_posts(posts)


def latest(posts: Iterable[PostLike]) -> Optional[Post]:
    """The post with the greatest timestamp; the first one wins ties."""
    newest: Optional[Post] = None
    newest_time = None
    for post in normalize_posts(posts):
        post_time = parse_timestamp(post.timestamp)
        if post_time is None:
            continue
        if newest is None or post_time > newest_time:
            newest, newest_time = post, post_time
    return newest


def hourly(posts: Iterable[PostLike]) -> List[HourlyBucket]:
    """Count posts per UTC hour, one bucket per hour that has any post."""
    counts: Counter = Counter()
    for post in normalize_posts(posts):
        key = hour_key(post.timestamp)
        if key is not None:
            counts[key] += 1
    return [HourlyBucket(hour=key, count=counts[key]) for key in sorted(counts, key=parse_timestamp)]


class PostStore:
    """JSON-file backed post set.

    File I/O runs in a worker thread so the event loop keeps serving reads
    while a poll cycle writes.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._write_lock = asyncio.Lock()

    def _read(self) -> List[Dict[str, Any]]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as e:
            raise PersistenceError(f"Cannot read {self.path}: {e}") from e
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Malformed posts document {self.path}: {e}") from e
        posts = document.get("posts") if isinstance(document, dict) else None
        if not isinstance(posts, list):
            return []
        return [item for item in posts if isinstance(item, dict)]

    def _write(self, posts: List[Post]) -> None:
        document = {"posts": [post.to_dict() for post in posts]}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".posts-", suffix=".json", dir=self.path.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(document, handle, indent=2, ensure_ascii=False)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise PersistenceError(f"Cannot write {self.path}: {e}") from e

    async def load(self) -> List[Dict[str, Any]]:
        """Raw persisted records (empty when the document does not exist)."""
        return await asyncio.to_thread(self._read)

    async def save(self, posts: List[Post]) -> None:
        await asyncio.to_thread(self._write, posts)

    async def merge(self, incoming: Iterable[PostLike]) -> List[Post]:
        """Merge ``incoming`` into the persisted set and write it back."""
        incoming = list(incoming)
        async with self._write_lock:
            existing = await self.load()
            merged = merge_records(existing, incoming)
            await self.save(merged)
        logger.info(f"Merged {len(incoming)} fetched posts into {len(existing)} stored; now {len(merged)}")
        return merged

    async def snapshot(self) -> List[Post]:
        """The current normalized set."""
        return normalize_posts(await self.load())

    async def latest(self) -> Optional[Post]:
        return latest(await self.snapshot())

    async def hourly(self) -> List[HourlyBucket]:
        return hourly(await self.snapshot())

    async def all(self) -> List[Post]:
        return await self.snapshot()
