"""
Exception taxonomy for the sync pipeline.

- ConfigurationError: fatal to the run, raised before any work starts
- MailFetchError: listing failures abort the run, single fetches do not
- ExtractionError: per-message LLM failure, never aborts the run
- PersistenceError: the store could not record an outcome at all
"""

from typing import Optional


class SchoolSyncError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(SchoolSyncError):
    """Missing credentials, API keys, or an unknown provider."""


class MailFetchError(SchoolSyncError):
    """The mailbox provider failed to list or return a message."""


class ExtractionError(SchoolSyncError):
    """
    A language-model call failed or returned unusable content.

    Carries the underlying exception (if any), how many retries were spent,
    and whatever usage was measured before the failure so the caller can
    still write an accurate history entry.
    """

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        retry_count: int = 0,
        usage=None,
    ):
        super().__init__(message)
        self.cause = cause
        self.retry_count = retry_count
        self.usage = usage


class PersistenceError(SchoolSyncError):
    """The store rejected a write the pipeline cannot continue without."""
