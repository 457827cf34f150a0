"""Error taxonomy for provider, classification and store failures."""

from __future__ import annotations


class NewsletterSyncError(Exception):
    """Base class for all Newsletter Sync errors."""


class AccountNotFound(NewsletterSyncError):
    pass


class ProviderError(NewsletterSyncError):
    """A mail provider call failed."""

    retryable = False

    def __init__(self, message: str, provider: str = "", status: int | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status = status


class AuthExpired(ProviderError):
    """Refresh token revoked or invalid; the account must be reconnected."""


class ProviderTransient(ProviderError):
    """Timeout, rate limit or 5xx; retried on the next scheduled run."""

    retryable = True


class ProviderPermanent(ProviderError):
    """Malformed request or unsupported provider; not retried."""


class ClassificationSkipped(NewsletterSyncError):
    """A message could not be normalized and was dropped from candidates."""


class DuplicateSkipped(NewsletterSyncError):
    """The dedup key already exists in the store."""


class StoreWriteFailed(NewsletterSyncError):
    pass


class OAuthCallbackError(NewsletterSyncError):
    """The OAuth redirect carried an error or could not be exchanged."""

    def __init__(self, error: str, description: str | None = None) -> None:
        super().__init__(f"{error}: {description}" if description else error)
        self.error = error
        self.description = description


class NewsletterNotFound(NewsletterSyncError):
    pass
