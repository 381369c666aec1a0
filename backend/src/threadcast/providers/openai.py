"""OpenAI-compatible chat completions adapter."""

import logging
from typing import AsyncIterator

import httpx

from threadcast_models import ProviderRequest, ProviderResponse
from threadcast.errors import AuthError, ProviderError
from threadcast.providers.base import (
    ProviderAdapter,
    classify_exception,
    iter_sse_data,
    parse_json,
    raise_for_status,
)
from threadcast.services.accounts import Accounts

logger = logging.getLogger(__name__)


class OpenAIAdapter(ProviderAdapter):
    """Cloud adapter for any endpoint speaking the chat completions API."""

    name = "openai"

    def __init__(
        self,
        accounts: Accounts,
        base_url: str = "https://api.openai.com/v1",
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
            raise AuthError("No OpenAI API key configured")
        return {"Authorization": f"Bearer {api_key}"}

    def _payload(self, request: ProviderRequest, stream: bool) -> dict:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend({"role": t.role, "content": t.content} for t in request.turns)
        return {
            "model": request.model,
            "messages": messages,
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "stream": stream,
        }

    async def send_message(self, request: ProviderRequest) -> ProviderResponse:
        headers = await self._headers(request)
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers=headers,
                    json=self._payload(request, stream=False),
                )
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise classify_exception(e)
        data = response.json()
        try:
            text = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            raise ProviderError(f"Unexpected completion payload: {str(data)[:200]}")
        return ProviderResponse(
            text=text,
            output_tokens=(data.get("usage") or {}).get("completion_tokens"),
        )

    async def stream_message(self, request: ProviderRequest) -> AsyncIterator[str]:
        headers = await self._headers(request)
        logger.debug(f"Streaming {request.model} with {len(request.turns)} turns")
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    headers=headers,
                    json=self._payload(request, stream=True),
                ) as response:
                    await raise_for_status(response)
                    async for data in iter_sse_data(response):
                        if data == "[DONE]":
                            return
                        chunk = parse_json(data)
                        if "error" in chunk:
                            error = chunk["error"]
                            message = error.get("message") if isinstance(error, dict) else error
                            raise ProviderError(f"Stream error: {message}")
                        delta = self._extract_delta(chunk)
                        if delta:
                            yield delta
            except httpx.HTTPError as e:
                raise classify_exception(e)

    @staticmethod
    def _extract_delta(chunk: dict) -> str:
        try:
            return chunk["choices"][0]["delta"].get("content") or ""
        except (KeyError, IndexError, AttributeError):
            return ""
