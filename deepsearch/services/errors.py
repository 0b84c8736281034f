"""Error taxonomy for the chat turn pipeline.

Crawl failures are not represented here: they travel as data on
``CrawlResult.error`` so a partially failed batch stays usable.
"""
from __future__ import annotations


class DeepSearchError(Exception):
    """Base class for errors raised by the turn pipeline."""


class UnauthorizedError(DeepSearchError):
    """No caller identity was supplied."""


class QuotaExceededError(DeepSearchError):
    def __init__(self, remaining: int, limit: int, message: str | None = None):
        self.remaining = remaining
        self.limit = limit
        super().__init__(
            message or f"Daily request limit of {limit} reached. Try again tomorrow."
        )


class ChatNotFoundError(DeepSearchError):
    """Chat does not exist or is not visible to the caller."""


class PermissionDeniedError(DeepSearchError):
    """Caller tried to write a chat owned by another user."""


class TitleRequiredError(DeepSearchError):
    """A chat cannot be created without a title."""


class PersistenceFailure(DeepSearchError):
    """A storage operation failed."""
