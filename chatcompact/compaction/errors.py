"""Error taxonomy for compaction."""


class CompactionError(Exception):
    """Base class for compaction errors."""


class ConfigurationError(CompactionError, ValueError):
    """Invalid budget, compression levels or strategy settings.

    Always raised before any provider call is made.
    """


class ProviderError(CompactionError):
    """A summarizer backend failed to produce a usable summary.

    Recoverable: the engine falls back per chunk and never lets this
    escape ``compact()``.
    """

    reason = "api_error"

    def __init__(self, message: str, provider_id: str = "", reason: str | None = None):
        super().__init__(message)
        self.provider_id = provider_id
        if reason is not None:
            self.reason = reason


class ProviderAuthError(ProviderError):
    reason = "auth"


class ProviderRateLimitError(ProviderError):
    reason = "rate_limit"


class ProviderTimeoutError(ProviderError):
    reason = "timeout"


class ProviderUnavailableError(ProviderError):
    reason = "network"


class EmptySummaryError(ProviderError):
    reason = "empty_response"


class SummaryRefusedError(ProviderError):
    reason = "refusal_detected"


class InvalidResponseError(ProviderError):
    reason = "invalid_response"


class BudgetExceededWarning(UserWarning):
    """Compaction finished but the result is still over budget.

    Recorded in diagnostics, never raised.
    """
