"""Exceptions raised by provider clients and the aggregation layers."""

from __future__ import annotations


class ProviderError(Exception):
    """Base class for failures attributed to a single provider."""

    def __init__(self, message: str = "", *, provider: str | None = None):
        super().__init__(message or self.__class__.__name__)
        self.provider = provider


class NotFoundError(ProviderError):
    """The provider does not know the requested item."""


class AuthRequiredError(ProviderError):
    """A user token is needed; callers must surface this instead of falling back."""


class RateLimitedError(ProviderError):
    def __init__(
        self,
        message: str = "",
        *,
        provider: str | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, provider=provider)
        self.retry_after = retry_after


class TransientNetworkError(ProviderError):
    """Timeouts, transport failures and 5xx responses."""


class DataUnavailableError(ProviderError):
    """The provider has no granular data of the requested kind.

    ``total_count`` carries the item total when the provider knows it, which
    lets the aggregator synthesize placeholder entries.
    """

    def __init__(
        self,
        message: str = "",
        *,
        provider: str | None = None,
        total_count: int | None = None,
    ):
        super().__init__(message, provider=provider)
        self.total_count = total_count
