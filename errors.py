#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Optional


class FetchError(Exception):
    """Base class for failures that abort a whole fetch attempt."""


class TransportError(FetchError):
    """Raised on a non-success HTTP status (other than 429) or a network failure.

    Attributes:
        status: HTTP status code when the server answered, otherwise None.
        url: The page URL that failed.
    """

    def __init__(self, message: str, status: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.url = url


class FeedFormatError(FetchError):
    """Raised when a page has an unexpected content type or an undecodable body."""


class PersistenceError(Exception):
    """Raised when the posts document exists but cannot be read or written."""


__all__ = ["FetchError", "TransportError", "FeedFormatError", "PersistenceError"]
