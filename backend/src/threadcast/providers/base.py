"""Provider adapter contract.

An adapter normalizes one model backend into a blocking call and a
token stream. Streams are lazy, finite and consumed exactly once.
Adapters classify their own errors into ProviderFailure subclasses and
never retry internally; retry policy lives in `threadcast.providers.retry`.
"""

import json
from abc import ABC, abstractmethod
from typing import AsyncIterator

import httpx

from threadcast_models import ProviderRequest, ProviderResponse, ProviderStatus
from threadcast.errors import (
    AuthError,
    NetworkError,
    ProviderError,
    ProviderFailure,
    ProviderTimeoutError,
    RateLimitedError,
)


class ProviderAdapter(ABC):
    """Capability interface implemented once per backend."""

    name: str = "provider"

    @abstractmethod
    async def send_message(self, request: ProviderRequest) -> ProviderResponse:
        """Run a blocking completion."""
        raise NotImplementedError

    @abstractmethod
    def stream_message(self, request: ProviderRequest) -> AsyncIterator[str]:
        """Stream incremental text deltas.

        Raises:
            ProviderFailure: Classified error, before or during the stream.
        """
        raise NotImplementedError

    async def status(self) -> ProviderStatus:
        return ProviderStatus(provider=self.name)


class LocalModelAdapter(ProviderAdapter):
    """Adapter for a model that has to be loaded into this process's host.

    Load state is scoped to the adapter instance. Another process serving
    the same model keeps its own state.
    """

    @abstractmethod
    async def load(self) -> ProviderStatus:
        """Start loading. Idempotent while loading or loaded."""
        raise NotImplementedError


# ============= Error classification =============


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except (ValueError, httpx.ResponseNotRead):
        return response.reason_phrase or f"HTTP {response.status_code}"
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        return error.get("message") or error.get("type") or str(error)
    if isinstance(error, str):
        return error
    return str(data)


def classify_http_error(exc: httpx.HTTPStatusError) -> ProviderFailure:
    """Map an HTTP error status to the provider error taxonomy."""
    response = exc.response
    status = response.status_code
    message = f"HTTP {status}: {_error_detail(response)}"
    if status in (401, 403):
        return AuthError(message)
    if status in (429, 529):
        return RateLimitedError(message, retry_after=_retry_after(response))
    if status in (408, 504):
        return ProviderTimeoutError(message)
    return ProviderError(message)


def classify_exception(exc: Exception) -> ProviderFailure:
    """Map any exception raised while talking to a provider."""
    if isinstance(exc, ProviderFailure):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_http_error(exc)
    if isinstance(exc, httpx.TimeoutException):
        return ProviderTimeoutError(f"Request timed out: {exc}")
    if isinstance(exc, httpx.TransportError):
        return NetworkError(f"Request failed: {exc}")
    return ProviderError(f"{type(exc).__name__}: {exc}")


async def raise_for_status(response: httpx.Response) -> None:
    """Raise HTTPStatusError with the body loaded, for streamed responses."""
    if response.is_error:
        await response.aread()
        response.raise_for_status()


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
    """Yield the payload of each `data:` line of an SSE response."""
    async for line in response.aiter_lines():
        if line.startswith("data:"):
            yield line[5:].strip()


def parse_json(data: str) -> dict:
    try:
        return json.loads(data)
    except json.JSONDecodeError as e:
        raise ProviderError(f"Malformed stream payload: {e}")
