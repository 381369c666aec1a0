"""Provider adapters and the model registry."""

from threadcast.providers.base import (
    LocalModelAdapter,
    ProviderAdapter,
    classify_exception,
    classify_http_error,
)
from threadcast.providers.limits import ConcurrencyLimiter
from threadcast.providers.registry import ModelSpec, ProviderRegistry, build_registry
from threadcast.providers.retry import (
    RETRY_POLICIES,
    RetryPolicy,
    retry_delay,
    send_with_retry,
    should_retry,
)

__all__ = [
    "LocalModelAdapter",
    "ProviderAdapter",
    "classify_exception",
    "classify_http_error",
    "ConcurrencyLimiter",
    "ModelSpec",
    "ProviderRegistry",
    "build_registry",
    "RETRY_POLICIES",
    "RetryPolicy",
    "retry_delay",
    "send_with_retry",
    "should_retry",
]
