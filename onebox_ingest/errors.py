"""Exception hierarchy for the ingestion pipeline.

Only batch-level fetch failures (after retries are exhausted) reach
callers; classification and notification failures are absorbed where
they happen.
"""

from __future__ import annotations


class MailPipelineError(Exception):
    """Base class for every error raised by this package."""


class AccountNotFoundError(MailPipelineError):
    """No account matches the reference and no bootstrap credentials exist."""


class MailFetchError(MailPipelineError):
    """A fetch attempt against the remote mailbox failed."""

    def __init__(self, message: str, *, account_id: str | None = None) -> None:
        super().__init__(message)
        self.account_id = account_id


class MailConnectionError(MailFetchError):
    """The session could not be opened or was dropped mid-fetch."""


class MailAuthenticationError(MailFetchError):
    """The server rejected the account credentials."""


class FetchTimeoutError(MailFetchError):
    """A fetch attempt exceeded its wall-clock bound and was torn down."""
