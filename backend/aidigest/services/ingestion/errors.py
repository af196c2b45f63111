"""
Error taxonomy for content ingestion.
"""

from typing import Any, Optional


class IngestionError(Exception):
    """Base class for ingestion failures."""


class CrawlerError(IngestionError):
    """A fetch that failed after retries, with the request context attached."""

    def __init__(
        self,
        message: str,
        context: Optional[dict[str, Any]] = None,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.status_code = status_code
        self.retryable = retryable

    def __str__(self) -> str:
        if self.context:
            details = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} ({details})"
        return self.message


class MalformedResponseError(IngestionError):
    """Upstream answered, but not with something we can parse."""


class ValidationError(IngestionError):
    """A single item is missing required fields."""


class ConfigurationError(IngestionError):
    """Fatal setup problem (unknown source, missing credentials)."""


class SourceFailure(IngestionError):
    """A source produced nothing usable; raised only in fail-fast mode."""

    def __init__(self, source: str, message: str, stats=None):
        super().__init__(f"{source}: {message}")
        self.source = source
        self.reason = message
        self.stats = stats
