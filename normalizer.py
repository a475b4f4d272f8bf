#!/usr/bin/env python3
"""
Identity-keyed merge of post records.

Records from the persisted set and from fresh fetches are folded into one
post per canonical id. On collision the later timestamp wins and optional
fields are only ever filled, never overwritten. The result is sorted
ascending by timestamp. Everything here is pure.
"""

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from identity import canonical_id
from models import Post
from utils import parse_timestamp, timestamp_sort_key

PostLike = Union[Post, Mapping[str, Any]]

OPTIONAL_FIELDS = ("url", "uri", "content")


def _as_post(record: PostLike) -> Optional[Post]:
    if isinstance(record, Post):
        return record
    if isinstance(record, Mapping):
        return Post.from_dict(record)
    return None


def merge_post(existing: Post, incoming: Post) -> Post:
    """Merge two records that share a canonical id.

    The timestamp only moves forward (unparseable counts as earliest); empty
    optional fields are filled from ``incoming``.
    """
    updates: Dict[str, str] = {}
    incoming_time = parse_timestamp(incoming.timestamp)
    existing_time = parse_timestamp(existing.timestamp)
    if incoming_time is not None and (existing_time is None or incoming_time > existing_time):
        updates["timestamp"] = incoming.timestamp
    for name in OPTIONAL_FIELDS:
        if not getattr(existing, name) and getattr(incoming, name):
            updates[name] = getattr(incoming, name)
    return replace(existing, **updates) if updates else existing


def normalize_posts(records: Iterable[PostLike]) -> List[Post]:
    """Collapse ``records`` to one post per canonical id, sorted by timestamp.

    Records without an identity or a parseable timestamp are dropped.
    """
    by_id: Dict[str, Post] = {}
    for record in records:
        post = _as_post(record)
        if post is None or parse_timestamp(post.timestamp) is None:
            continue
        key = canonical_id(post)
        if not key:
            continue
        if post.id != key:
            post = replace(post, id=key)
        current = by_id.get(key)
        by_id[key] = post if current is None else merge_post(current, post)
    return sorted(by_id.values(), key=lambda p: timestamp_sort_key(p.timestamp))


def merge_records(existing: Iterable[PostLike], incoming: Iterable[PostLike]) -> List[Post]:
    """Merge freshly fetched records into an existing set."""
    return normalize_posts([*existing, *incoming])
