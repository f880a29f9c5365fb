#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports. A duplicate
article is not an error; storage reports it through InsertResult.
"""

from typing import Optional


class IngestionError(Exception):
    """Base class for all recoverable ingestion failures."""


class FetchError(IngestionError):
    """Raised when a feed cannot be retrieved (network, timeout, DNS, non-200).

    Attributes:
        url: The feed URL that failed.
        status: HTTP status code, when the server answered.
    """

    def __init__(self, message: str, url: str = "", status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status


class ParseError(IngestionError):
    """Raised when a fetched payload is not a recognizable RSS/Atom document."""

    def __init__(self, message: str, url: str = ""):
        super().__init__(message)
        self.url = url


class PersistenceError(IngestionError):
    """Raised on storage failures other than the expected uniqueness conflict."""

    def __init__(self, message: str, operation: str = ""):
        super().__init__(message)
        self.operation = operation


__all__ = ["IngestionError", "FetchError", "ParseError", "PersistenceError"]
