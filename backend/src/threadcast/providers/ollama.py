"""Local model adapter backed by an Ollama server."""

import asyncio
import json
import logging
from typing import AsyncIterator

import httpx

from threadcast_models import (
    LoadState,
    ProviderRequest,
    ProviderResponse,
    ProviderStatus,
)
from threadcast.errors import ProviderError, ProviderFailure
from threadcast.providers.base import (
    LocalModelAdapter,
    classify_exception,
    raise_for_status,
)

logger = logging.getLogger(__name__)

# Share of the progress bar given to the download; warm-up takes the rest
PULL_PROGRESS_SHARE = 0.9


class OllamaAdapter(LocalModelAdapter):
    """One local model served by Ollama.

    Load state belongs to this instance: `status()` reports what this
    process has observed and does not contact the host.
    """

    name = "ollama"

    def __init__(
        self,
        model: str,
        base_url: str = "http://localhost:11434",
        timeout: float = 120.0,
        keep_alive: str = "30m",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._keep_alive = keep_alive
        self._transport = transport
        self._state = LoadState.NOT_LOADED
        self._progress: float | None = None
        self._error: str | None = None
        self._load_task: asyncio.Task | None = None

    # ============= Load state =============

    async def status(self) -> ProviderStatus:
        return ProviderStatus(
            provider=self.name,
            available=self._state is not LoadState.ERROR,
            state=self._state,
            progress=self._progress,
            error=self._error,
        )

    async def load(self) -> ProviderStatus:
        """Start pulling and warming the model in the background.

        Returns the current status without starting a second load when the
        model is already loading or loaded.
        """
        if self._state in (LoadState.LOADING, LoadState.LOADED):
            return await self.status()

        self._state = LoadState.LOADING
        self._progress = 0.0
        self._error = None
        self._load_task = asyncio.create_task(self._load())
        logger.info(f"Loading local model {self.model}")
        return await self.status()

    async def wait_loaded(self) -> ProviderStatus:
        """Wait for an in-flight load to finish."""
        if self._load_task is not None:
            await asyncio.shield(self._load_task)
        return await self.status()

    async def _load(self) -> None:
        try:
            async with httpx.AsyncClient(timeout=None, transport=self._transport) as client:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/api/pull",
                    json={"model": self.model, "stream": True},
                ) as response:
                    await raise_for_status(response)
                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        event = json.loads(line)
                        if "error" in event:
                            raise ProviderError(f"Pull failed: {event['error']}")
                        total = event.get("total")
                        if total:
                            completed = min(event.get("completed") or 0, total)
                            self._progress = completed / total * PULL_PROGRESS_SHARE

                # An empty generate request loads the model into memory
                response = await client.post(
                    f"{self.base_url}/api/generate",
                    json={"model": self.model, "keep_alive": self._keep_alive},
                )
                response.raise_for_status()
        except (ProviderFailure, httpx.HTTPError, ValueError) as e:
            failure = classify_exception(e)
            self._state = LoadState.ERROR
            self._progress = None
            self._error = failure.message
            logger.error(f"Failed to load local model {self.model}: {failure.message}")
            return

        self._state = LoadState.LOADED
        self._progress = 1.0
        logger.info(f"Local model {self.model} loaded")

    def _mark_loaded(self) -> None:
        # A successful chat proves the model is resident for this instance
        if self._state is not LoadState.LOADING:
            self._state = LoadState.LOADED
            self._progress = 1.0
            self._error = None

    # ============= Generation =============

    def _payload(self, request: ProviderRequest, stream: bool) -> dict:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend({"role": t.role, "content": t.content} for t in request.turns)
        return {
            "model": request.model,
            "messages": messages,
            "stream": stream,
            "keep_alive": self._keep_alive,
            "options": {
                "temperature": request.temperature,
                "num_predict": request.max_tokens,
            },
        }

    async def send_message(self, request: ProviderRequest) -> ProviderResponse:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                response = await client.post(
                    f"{self.base_url}/api/chat",
                    json=self._payload(request, stream=False),
                )
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise classify_exception(e)
        data = response.json()
        if "error" in data:
            raise ProviderError(data["error"])
        self._mark_loaded()
        return ProviderResponse(
            text=data.get("message", {}).get("content", ""),
            output_tokens=data.get("eval_count"),
        )

    async def stream_message(self, request: ProviderRequest) -> AsyncIterator[str]:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/api/chat",
                    json=self._payload(request, stream=True),
                ) as response:
                    await raise_for_status(response)
                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        try:
                            event = json.loads(line)
                        except json.JSONDecodeError as e:
                            raise ProviderError(f"Malformed stream line: {e}")
                        if "error" in event:
                            raise ProviderError(event["error"])
                        content = event.get("message", {}).get("content")
                        if content:
                            yield content
                        if event.get("done"):
                            self._mark_loaded()
                            return
            except httpx.HTTPError as e:
                raise classify_exception(e)
