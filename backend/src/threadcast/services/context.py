"""Context assembly: system prompt + rolling summary + recent turns.

The assembled prompt is bounded by a token budget. Recent turns are
taken newest-first until the next one would overflow the budget; older
turns are dropped and survive only through the summary.
"""

import logging
import math
from collections.abc import Iterable
from dataclasses import dataclass

from threadcast_models import Message, MessageStatus, Turn
from threadcast.db import DocumentStore
from threadcast.errors import NotFoundError
from threadcast.services.accounts import Accounts

logger = logging.getLogger(__name__)


def estimate_tokens(text: str | None, chars_per_token: float = 4.0) -> int:
    """Conservative token estimate: characters / chars_per_token, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


def format_conversation_history(turns: list[Turn]) -> str:
    """Format turns as a plain-text transcript."""
    lines = []
    for turn in turns:
        role = "User" if turn.role == "user" else "Assistant"
        lines.append(f"{role}: {turn.content}")
    return "\n\n".join(lines)


@dataclass
class AssembledContext:
    """Bounded prompt for one exchange."""

    system_prompt: str
    summary: str | None
    turns: list[Turn]
    new_user_turn: str
    estimated_tokens: int
    dropped_turns: int = 0

    def system_text(self) -> str:
        """System prompt with the summary folded in."""
        if not self.summary:
            return self.system_prompt
        return f"{self.system_prompt}\n\n[Summary of earlier conversation]\n{self.summary}"

    def request_turns(self) -> list[Turn]:
        """Turns for a provider request, ending with the new user turn.

        Adjacent turns of the same role are merged, since chat APIs expect
        roles to alternate.
        """
        turns = [*self.turns, Turn(role="user", content=self.new_user_turn)]
        merged: list[Turn] = []
        for turn in turns:
            if merged and merged[-1].role == turn.role:
                merged[-1] = Turn(
                    role=turn.role,
                    content=f"{merged[-1].content}\n\n{turn.content}",
                )
            else:
                merged.append(turn)
        return merged


def _as_turn(message: Message) -> Turn | None:
    """Stored message as a replayable turn, or None if it is not one."""
    if message.role == "user":
        return Turn(role="user", content=message.text)
    if message.role == "assistant" and message.status is MessageStatus.COMPLETE:
        return Turn(role="assistant", content=message.text)
    return None


class ContextAssembler:
    """Builds the prompt sent to a provider for a (thread, model) pair.

    Deterministic for identical stored state and has no side effects.
    """

    def __init__(self, store: DocumentStore, accounts: Accounts):
        self._store = store
        self._accounts = accounts

    async def build(
        self,
        thread_id: str,
        model_id: str,
        new_user_turn: str,
        token_budget: int,
        *,
        chars_per_token: float = 4.0,
        exclude_message_ids: Iterable[str] = (),
    ) -> AssembledContext:
        """Assemble the context for a new user turn.

        The system prompt, summary and new user turn are always included,
        so the prompt is never empty even when they alone exceed the budget.
        """
        thread = await self._store.get_thread(thread_id)
        if thread is None:
            raise NotFoundError(f"Thread {thread_id} not found")

        system_prompt = await self._accounts.system_prompt(thread.user_id)
        state = thread.models.get(model_id)
        summary = state.summary if state else None

        used = (
            estimate_tokens(system_prompt, chars_per_token)
            + estimate_tokens(summary, chars_per_token)
            + estimate_tokens(new_user_turn, chars_per_token)
        )

        excluded = set(exclude_message_ids)
        candidates: list[Turn] = []
        for message in await self._store.list_messages(thread_id, model_id):
            turn = _as_turn(message) if message.id not in excluded else None
            if turn is not None:
                candidates.append(turn)

        selected: list[Turn] = []
        for turn in reversed(candidates):
            cost = estimate_tokens(turn.content, chars_per_token)
            if used + cost > token_budget:
                break
            used += cost
            selected.append(turn)
        selected.reverse()

        # Chat APIs expect the conversation to open with a user turn
        while selected and selected[0].role == "assistant":
            used -= estimate_tokens(selected.pop(0).content, chars_per_token)

        dropped = len(candidates) - len(selected)
        if dropped:
            logger.debug(
                f"Context for {thread_id}/{model_id}: kept {len(selected)} turns, "
                f"dropped {dropped} older turns (budget {token_budget})"
            )

        return AssembledContext(
            system_prompt=system_prompt,
            summary=summary,
            turns=selected,
            new_user_turn=new_user_turn,
            estimated_tokens=used,
            dropped_turns=dropped,
        )
