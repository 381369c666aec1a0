"""Retry policy per provider error class.

`attempt` is the number of retries already performed, so the initial
call is attempt 0.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from threadcast_models import ProviderRequest, ProviderResponse
from threadcast.errors import ProviderFailure
from threadcast.providers.base import ProviderAdapter, classify_exception

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Maximum retries (excluding the initial attempt) and backoff bounds."""

    max_retries: int
    base_delay: float = 1.0
    max_delay: float = 30.0


RETRY_POLICIES: dict[str, RetryPolicy] = {
    "auth": RetryPolicy(max_retries=0),
    "rate_limited": RetryPolicy(max_retries=3, base_delay=2.0, max_delay=30.0),
    "timeout": RetryPolicy(max_retries=2, base_delay=1.0, max_delay=8.0),
    "network": RetryPolicy(max_retries=2, base_delay=1.0, max_delay=8.0),
    "provider_error": RetryPolicy(max_retries=0),
}


def policy_for(failure: ProviderFailure) -> RetryPolicy:
    return RETRY_POLICIES.get(failure.code, RetryPolicy(max_retries=0))


def should_retry(failure: ProviderFailure, attempt: int) -> bool:
    """True if another attempt is allowed after `attempt` retries."""
    return attempt < policy_for(failure).max_retries


def retry_delay(failure: ProviderFailure, attempt: int) -> float:
    """Seconds to wait before the next attempt.

    A provider-supplied reset hint wins over exponential backoff; both are
    capped at the policy's max delay.
    """
    policy = policy_for(failure)
    if failure.retry_after is not None:
        return min(failure.retry_after, policy.max_delay)
    return min(policy.base_delay * 2**attempt, policy.max_delay)


async def send_with_retry(
    adapter: ProviderAdapter,
    request: ProviderRequest,
    sleep: Sleep = asyncio.sleep,
) -> ProviderResponse:
    """Run a blocking provider call under the retry policy.

    Raises:
        ProviderFailure: The last classified error once retries are exhausted.
    """
    attempt = 0
    while True:
        try:
            return await adapter.send_message(request)
        except Exception as e:  # classified below; non-provider bugs become provider_error
            failure = classify_exception(e)
        if not should_retry(failure, attempt):
            raise failure
        delay = retry_delay(failure, attempt)
        attempt += 1
        logger.warning(
            f"{adapter.name} {failure.code}: {failure.message}; "
            f"retrying in {delay:.1f}s (retry {attempt})"
        )
        await sleep(delay)
