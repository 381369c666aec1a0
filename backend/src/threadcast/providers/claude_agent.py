"""Claude adapter using the Agent SDK."""

import logging
from typing import AsyncIterator

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKError,
    CLIConnectionError,
    CLINotFoundError,
    ResultMessage,
    TextBlock,
    query,
)

from threadcast_models import ProviderRequest, ProviderResponse, Turn
from threadcast.errors import NetworkError, ProviderError
from threadcast.providers.base import ProviderAdapter
from threadcast.services.context import format_conversation_history

logger = logging.getLogger(__name__)


def build_prompt(turns: list[Turn]) -> str:
    """Fold prior turns and the new user turn into one prompt.

    The SDK takes a single prompt, so history goes in as text and the
    last turn is the one being answered.
    """
    if not turns:
        return ""
    *history, latest = turns
    if not history:
        return latest.content
    return f"""Continue this conversation naturally, taking into account the full context above.

[Recent conversation]
{format_conversation_history(history)}

User: {latest.content}

Respond to the user's latest message."""


class ClaudeAgentAdapter(ProviderAdapter):
    """Streams Claude replies through `claude_agent_sdk.query`.

    The SDK reports text in assistant blocks, so tokens here are
    block-sized. Temperature and max tokens are not configurable through
    the SDK and are ignored.
    """

    name = "claude_agent"

    def _options(self, request: ProviderRequest) -> ClaudeAgentOptions:
        return ClaudeAgentOptions(
            model=request.model,
            system_prompt=request.system_prompt or None,
            permission_mode="bypassPermissions",
            max_turns=1,
        )

    async def stream_message(self, request: ProviderRequest) -> AsyncIterator[str]:
        prompt = build_prompt(request.turns)
        try:
            async for msg in query(prompt=prompt, options=self._options(request)):
                if isinstance(msg, AssistantMessage):
                    for block in msg.content:
                        if isinstance(block, TextBlock) and block.text:
                            yield block.text
                elif isinstance(msg, ResultMessage):
                    if msg.is_error:
                        raise ProviderError(msg.result or "Unknown error")
        except CLINotFoundError as e:
            raise ProviderError(f"Claude CLI not available: {e}")
        except CLIConnectionError as e:
            raise NetworkError(f"Claude CLI connection failed: {e}")
        except ClaudeSDKError as e:
            logger.error(f"Claude Agent SDK error: {e}")
            raise ProviderError(str(e))

    async def send_message(self, request: ProviderRequest) -> ProviderResponse:
        collected_text: list[str] = []
        async for text in self.stream_message(request):
            collected_text.append(text)
        return ProviderResponse(text="".join(collected_text))
