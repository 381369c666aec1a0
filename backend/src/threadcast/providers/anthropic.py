"""Anthropic Messages API adapter."""

import logging
from typing import AsyncIterator

import httpx

from threadcast_models import ProviderRequest, ProviderResponse
from threadcast.errors import (
    AuthError,
    ProviderError,
    ProviderFailure,
    RateLimitedError,
)
from threadcast.providers.base import (
    ProviderAdapter,
    classify_exception,
    iter_sse_data,
    parse_json,
    raise_for_status,
)
from threadcast.services.accounts import Accounts

logger = logging.getLogger(__name__)

API_VERSION = "2023-06-01"


def _stream_error(error: dict) -> ProviderFailure:
    """Classify an `error` event sent mid-stream."""
    kind = error.get("type", "api_error")
    message = f"{kind}: {error.get('message', 'stream error')}"
    if kind in ("overloaded_error", "rate_limit_error"):
        return RateLimitedError(message)
    if kind in ("authentication_error", "permission_error"):
        return AuthError(message)
    return ProviderError(message)


class AnthropicAdapter(ProviderAdapter):
    """Cloud adapter for Claude models via the Messages API."""

    name = "anthropic"

    def __init__(
        self,
        accounts: Accounts,
        base_url: str = "https://api.anthropic.com",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._accounts = accounts
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def _headers(self, request: ProviderRequest) -> dict[str, str]:
        api_key = await self._accounts.api_key(request.user_id, self.name)
        if not api_key:
            raise AuthError("No Anthropic API key configured")
        return {
            "x-api-key": api_key,
            "anthropic-version": API_VERSION,
            "content-type": "application/json",
        }

    def _payload(self, request: ProviderRequest, stream: bool) -> dict:
        payload = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": [{"role": t.role, "content": t.content} for t in request.turns],
            "stream": stream,
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt
        return payload

    async def send_message(self, request: ProviderRequest) -> ProviderResponse:
        headers = await self._headers(request)
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                response = await client.post(
                    f"{self.base_url}/v1/messages",
                    headers=headers,
                    json=self._payload(request, stream=False),
                )
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise classify_exception(e)
        data = response.json()
        text = "".join(
            block.get("text", "")
            for block in data.get("content", [])
            if block.get("type") == "text"
        )
        return ProviderResponse(
            text=text,
            output_tokens=data.get("usage", {}).get("output_tokens"),
        )

    async def stream_message(self, request: ProviderRequest) -> AsyncIterator[str]:
        headers = await self._headers(request)
        logger.debug(f"Streaming {request.model} with {len(request.turns)} turns")
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/v1/messages",
                    headers=headers,
                    json=self._payload(request, stream=True),
                ) as response:
                    await raise_for_status(response)
                    async for data in iter_sse_data(response):
                        event = parse_json(data)
                        kind = event.get("type")
                        if kind == "content_block_delta":
                            delta = event.get("delta", {})
                            if delta.get("type") == "text_delta" and delta.get("text"):
                                yield delta["text"]
                        elif kind == "message_stop":
                            return
                        elif kind == "error":
                            raise _stream_error(event.get("error", {}))
            except httpx.HTTPError as e:
                raise classify_exception(e)
