"""Error taxonomy for the engine.

Provider failures are classified once, at the adapter boundary, and
carried unchanged into the message's `error` field.
"""


class ThreadcastError(Exception):
    """Base class for all engine errors."""


class ValidationError(ThreadcastError):
    """Bad input, rejected before any state is created."""


class NotFoundError(ThreadcastError):
    """Thread or message does not exist or is not owned by the caller."""


class ConflictError(ThreadcastError):
    """Write against a terminal message or a message that already has a job."""


class RelayBusyError(ThreadcastError):
    """The per-process relay ceiling is reached."""

    def __init__(self, message: str = "Too many open relays", retry_after: float = 1.0):
        super().__init__(message)
        self.retry_after = retry_after


class ProviderFailure(ThreadcastError):
    """A classified provider error."""

    code = "provider_error"

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after


class AuthError(ProviderFailure):
    """Missing or rejected API key. Never retried."""

    code = "auth"


class RateLimitedError(ProviderFailure):
    """Provider rate limit hit. Retried honoring `retry_after`."""

    code = "rate_limited"


class ProviderTimeoutError(ProviderFailure):
    """Provider did not answer in time. Retried with backoff."""

    code = "timeout"


class NetworkError(ProviderFailure):
    """Connection-level failure. Retried with backoff."""

    code = "network"


class ProviderError(ProviderFailure):
    """Hard error returned by the backend. Never retried."""

    code = "provider_error"
