"""
Error taxonomy for enrichment, backfill runs and webhook delivery.

Provider failures form a closed family under ProviderError. Callers branch on
the class (or on ``retryable``), never on the message text.
"""

from typing import Optional


class LeadEnrichError(Exception):
    """Base class for all leadenrich errors."""

    error_class = "LeadEnrichError"
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.error_class)
        self.message = message or self.error_class


class ConfigurationError(LeadEnrichError):
    """Raised when a setting is missing or malformed."""

    error_class = "ConfigurationError"


class InvalidInputError(LeadEnrichError):
    """Malformed subject. Never retried."""

    error_class = "InvalidInputError"

    def __init__(self, message: str = "", errors: Optional[list] = None):
        super().__init__(message)
        self.errors = list(errors or [])


# Provider failures


class ProviderError(LeadEnrichError):
    """Base class for classified provider failures."""

    error_class = "ProviderError"

    def __init__(self, message: str = "", provider: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ProviderAuthError(ProviderError):
    """Credentials rejected. Fatal for a backfill run."""

    error_class = "ProviderAuthError"


class ProviderRateLimitError(ProviderError):
    """Provider throttled the call. Retryable with backoff."""

    error_class = "ProviderRateLimitError"
    retryable = True

    def __init__(
        self,
        message: str = "",
        provider: str = "",
        status_code: Optional[int] = 429,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, provider=provider, status_code=status_code)
        self.retry_after = retry_after


class ProviderTransientError(ProviderError):
    """Network failure, timeout or 5xx. Retryable."""

    error_class = "ProviderTransientError"
    retryable = True


class ProviderNotFoundError(ProviderError):
    """No match for the subject. Billed, and cached as a negative result."""

    error_class = "ProviderNotFoundError"

    def __init__(self, message: str = "", provider: str = "", status_code: Optional[int] = 404, cost=None):
        super().__init__(message, provider=provider, status_code=status_code)
        self.cost = cost


# Backfill runs


class RunLockedError(LeadEnrichError):
    """Another runner currently owns the run."""

    error_class = "RunLockedError"


class RunNotFoundError(LeadEnrichError):
    error_class = "RunNotFoundError"


# Webhook delivery


class DeliveryError(LeadEnrichError):
    """One failed delivery attempt (non-2xx or network error)."""

    error_class = "DeliveryError"
    retryable = True

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AttemptNotFoundError(LeadEnrichError):
    error_class = "AttemptNotFoundError"


class SubscriptionNotFoundError(LeadEnrichError):
    error_class = "SubscriptionNotFoundError"


class ReplayNotAllowedError(LeadEnrichError):
    """Replay requested for an attempt that is still live or already succeeded."""

    error_class = "ReplayNotAllowedError"


def error_class_of(exc: BaseException) -> str:
    """Return the taxonomy class name for any exception."""
    if isinstance(exc, LeadEnrichError):
        return exc.error_class
    return type(exc).__name__
