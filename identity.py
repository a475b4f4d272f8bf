#!/usr/bin/env python3
"""
Identity canonicalization for posts.

The same post can arrive as a bare numeric status id from the JSON API and
as a permalink (``https://host/@user/113...``) from the syndication feed.
Both collapse to the numeric id so they merge into one record.
"""

import re
from typing import Any, Mapping

# A "/<digits>" path segment, i.e. followed by a non-word character or the end
_NUMERIC_SEGMENT_RE = re.compile(r"/(\d+)(?:\b|$)", re.ASCII)


def _field(record: Any, name: str) -> str:
    if isinstance(record, Mapping):
        value = record.get(name)
    else:
        value = getattr(record, name, None)
    if value is None:
        return ""
    return str(value).strip()


def extract_numeric_id(value: Any) -> str:
    """Return the digits of the first numeric path segment in ``value``, or ""."""
    if not value:
        return ""
    match = _NUMERIC_SEGMENT_RE.search(str(value))
    return match.group(1) if match else ""


def canonical_id(record: Any) -> str:
    """Derive the canonical identity of a raw record, Post or mapping.

    First match wins: an all-digit ``id``; digits extracted from ``id``;
    digits extracted from ``url`` then ``uri``; the raw ``id``; the raw
    ``url``/``uri``. Returns "" when the record has no usable identity.
    """
    if record is None:
        return ""
    direct = _field(record, "id")
    if direct.isdigit() and direct.isascii():
        return direct
    from_direct = extract_numeric_id(direct)
    if from_direct:
        return from_direct
    url, uri = _field(record, "url"), _field(record, "uri")
    for link in (url, uri):
        from_link = extract_numeric_id(link)
        if from_link:
            return from_link
    return direct or url or uri
