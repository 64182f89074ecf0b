"""
Exception hierarchy for the store crawler.
"""


class CrawlerError(Exception):
    """Base class for all crawler errors."""


class FetchError(CrawlerError):
    """A page could not be fetched."""

    def __init__(self, url, message):
        super().__init__(f"{message} ({url})")
        self.url = url


class TransientFetchError(FetchError):
    """Timeout, connection failure or retryable status code."""


class RenderError(FetchError):
    """The page was fetched but cannot be used. Not retried."""


class ExtractionError(CrawlerError):
    """An expected element is missing from a detail page."""

    def __init__(self, url, message):
        super().__init__(f"{message} ({url})")
        self.url = url


class QueueError(CrawlerError):
    """Base class for request queue errors."""


class QueueNotInitializedError(QueueError):
    """A worker tried to open a queue the master never created."""


class QueueInvariantError(QueueError):
    """
    The queue is in a state that should be impossible, e.g. a worker resolving
    an entry it no longer holds. Fatal to the worker that observes it.
    """


class CrawlFailedError(CrawlerError):
    """The crawl as a whole could not complete."""

    def __init__(self, reason, summary=None):
        super().__init__(reason)
        self.reason = reason
        self.summary = summary
