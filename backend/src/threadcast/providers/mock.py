"""Mock provider for local development without API calls.

Returns canned replies and streams them word by word, so the whole
exchange/relay/summary pipeline can be exercised offline.
"""

import asyncio
import logging
import re
from typing import AsyncIterator

from threadcast_models import ProviderRequest, ProviderResponse
from threadcast.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)

GREETING_PATTERNS = [
    r"^(hi|hello|hey|greetings|good\s+(morning|afternoon|evening))[\s!.,]*$",
]


def split_tokens(text: str) -> list[str]:
    """Split text into word tokens that keep their leading whitespace."""
    return re.findall(r"\s*\S+", text)


class MockProvider(ProviderAdapter):
    """Provides predictable replies for development and demos."""

    name = "mock"

    def __init__(self, delay: float = 0.02):
        self._delay = delay

    @staticmethod
    def _detect_intent(text: str) -> str:
        for pattern in GREETING_PATTERNS:
            if re.search(pattern, text.strip(), re.IGNORECASE):
                return "greeting"
        return "general"

    def _reply(self, request: ProviderRequest) -> str:
        latest = request.turns[-1].content if request.turns else ""
        intent = self._detect_intent(latest)
        logger.info(f"Mock provider: detected intent '{intent}'")
        if intent == "greeting":
            return "Hi there"
        snippet = latest[:200] if len(latest) > 200 else latest
        return f"You said: {snippet}"

    async def send_message(self, request: ProviderRequest) -> ProviderResponse:
        text = self._reply(request)
        return ProviderResponse(text=text, output_tokens=len(split_tokens(text)))

    async def stream_message(self, request: ProviderRequest) -> AsyncIterator[str]:
        for token in split_tokens(self._reply(request)):
            await asyncio.sleep(self._delay)
            yield token
