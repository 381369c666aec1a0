"""Async thread compaction: titles and rolling summaries.

Summaries are written per (thread, model) so the context assembler can
drop old turns without losing what they said. Both jobs are best-effort
and never surface errors to the caller.
"""

import asyncio
import logging
import re

from threadcast_models import ProviderRequest, SummaryJobStatus, Turn
from threadcast.config import Settings
from threadcast.db import DocumentStore
from threadcast.providers import ConcurrencyLimiter, ProviderRegistry, send_with_retry
from threadcast.providers.retry import Sleep
from threadcast.services.context import (
    ContextAssembler,
    estimate_tokens,
    format_conversation_history,
)

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 60
TITLE_FALLBACK_WORDS = 6
TITLE_TEMPERATURE = 0.2
SUMMARY_TEMPERATURE = 0.3

TITLE_SYSTEM_PROMPT = (
    "You write short titles for conversations. Reply with the title only: "
    "at most six words, no quotes, no trailing punctuation."
)

SUMMARY_SYSTEM_PROMPT = (
    "You maintain a running summary of a conversation so it can be continued "
    "after older messages are dropped."
)

SUMMARY_INSTRUCTIONS = """Summarize the conversation so far, preserving key information:
- Important facts mentioned (names, preferences, decisions)
- Key topics discussed
- Any commitments or open questions
- Context needed to continue the conversation naturally

Write between {min_tokens} and {max_tokens} tokens of plain prose."""


def clean_title(text: str) -> str:
    """Normalize a model-written title."""
    lines = [line.strip() for line in text.strip().splitlines() if line.strip()]
    if not lines:
        return ""
    title = re.sub(r"^title\s*:\s*", "", lines[0], flags=re.IGNORECASE)
    title = title.strip().strip("\"'`*“”‘’").strip()
    title = title.rstrip(".").strip()
    return truncate_title(title)


def truncate_title(title: str) -> str:
    if len(title) <= TITLE_MAX_CHARS:
        return title
    cut = title[:TITLE_MAX_CHARS]
    if " " in cut:
        cut = cut.rsplit(" ", 1)[0]
    return cut.rstrip(" ,;:-")


def fallback_title(user_text: str) -> str:
    """First words of the user's message, or a generic title."""
    words = user_text.split()[:TITLE_FALLBACK_WORDS]
    title = truncate_title(" ".join(words))
    return title or "New conversation"


def trim_summary(text: str, max_tokens: int, chars_per_token: float = 4.0) -> str:
    """Cut a summary estimated above `max_tokens` back to a word boundary."""
    text = text.strip()
    if estimate_tokens(text, chars_per_token) <= max_tokens:
        return text
    cut = text[: int(max_tokens * chars_per_token)]
    if " " in cut:
        cut = cut.rsplit(" ", 1)[0]
    return cut.rstrip()


def build_summary_prompt(
    previous_summary: str | None,
    turns: list[Turn],
    min_tokens: int,
    max_tokens: int,
) -> str:
    """Single-turn prompt folding the previous summary and recent turns."""
    instructions = SUMMARY_INSTRUCTIONS.format(min_tokens=min_tokens, max_tokens=max_tokens)
    parts = []
    if previous_summary:
        parts.append(f"Previous summary:\n{previous_summary}")
    parts.append(f"Conversation to summarize:\n{format_conversation_history(turns)}")
    parts.append(instructions)
    return "\n\n".join(parts)


class SummaryScheduler:
    """Runs title and summary jobs.

    At most one summary job runs per (thread, model). A trigger that
    arrives while one is in flight is dropped.
    """

    def __init__(
        self,
        store: DocumentStore,
        assembler: ContextAssembler,
        registry: ProviderRegistry,
        settings: Settings,
        limiter: ConcurrencyLimiter,
        sleep: Sleep = asyncio.sleep,
    ):
        self._store = store
        self._assembler = assembler
        self._registry = registry
        self._settings = settings
        self._limiter = limiter
        self._sleep = sleep
        self._jobs: dict[tuple[str, str], asyncio.Task] = {}

    # ============= Titles =============

    async def generate_title(
        self, user_id: str, thread_id: str, model_id: str, first_user_text: str
    ) -> str:
        """Generate and persist a thread title. Never raises for provider errors."""
        spec = self._registry.model(model_id)
        adapter = self._registry.adapter_for(model_id)
        request = ProviderRequest(
            model=spec.vendor_model,
            system_prompt=TITLE_SYSTEM_PROMPT,
            turns=[Turn(role="user", content=first_user_text[:2000])],
            temperature=TITLE_TEMPERATURE,
            max_tokens=self._settings.title_max_tokens,
            user_id=user_id,
        )

        title = ""
        try:
            # Bounds the wait for a slot as well as the call. A free slot is
            # taken before the caller's generation task gets to run.
            async with asyncio.timeout(self._settings.title_timeout):
                async with self._limiter.slot(user_id, spec.provider):
                    response = await adapter.send_message(request)
            title = clean_title(response.text)
        except TimeoutError:
            logger.warning(f"Title generation timed out for thread {thread_id}")
        except Exception as e:  # best-effort; fall back to the user's words
            logger.warning(f"Title generation failed for thread {thread_id}: {e}")

        if not title:
            title = fallback_title(first_user_text)
        await self._store.set_thread_title(thread_id, title)
        logger.info(f"Thread {thread_id} titled '{title}'")
        return title

    # ============= Summaries =============

    def in_flight(self, thread_id: str, model_id: str) -> bool:
        return (thread_id, model_id) in self._jobs

    def trigger_summary(
        self, user_id: str, thread_id: str, model_id: str
    ) -> asyncio.Task | None:
        """Start a summary job in the background.

        Returns:
            The job task, or None if a job for the pair is already running.
        """
        key = (thread_id, model_id)
        if key in self._jobs:
            logger.debug(f"Summary for {thread_id}/{model_id} already running, dropping trigger")
            return None

        task = asyncio.create_task(self._summarize(user_id, thread_id, model_id))
        self._jobs[key] = task

        def _done(finished: asyncio.Task) -> None:
            if self._jobs.get(key) is finished:
                del self._jobs[key]

        task.add_done_callback(_done)
        return task

    async def run_summary(self, user_id: str, thread_id: str, model_id: str) -> str | None:
        """Summarize now and wait for the result.

        Joins the in-flight job when there is one, so concurrent callers
        share a single provider call.

        Returns:
            The new summary, or None if the job failed.
        """
        task = self._jobs.get((thread_id, model_id))
        if task is None:
            task = self.trigger_summary(user_id, thread_id, model_id)
        return await asyncio.shield(task)

    async def _summarize(self, user_id: str, thread_id: str, model_id: str) -> str | None:
        try:
            await self._store.update_model_state(
                thread_id, model_id, summary_job_status=SummaryJobStatus.PENDING
            )
            spec = self._registry.model(model_id)
            adapter = self._registry.adapter_for(model_id)
            budget = min(
                self._settings.summary_context_budget,
                spec.input_budget - self._settings.summary_max_tokens,
            )
            instructions = SUMMARY_INSTRUCTIONS.format(
                min_tokens=self._settings.summary_min_tokens,
                max_tokens=self._settings.summary_max_tokens,
            )
            context = await self._assembler.build(
                thread_id,
                model_id,
                instructions,
                budget,
                chars_per_token=spec.chars_per_token,
            )
            if not context.turns:
                raise ValueError("nothing to summarize")

            prompt = build_summary_prompt(
                context.summary,
                context.turns,
                self._settings.summary_min_tokens,
                self._settings.summary_max_tokens,
            )
            request = ProviderRequest(
                model=spec.vendor_model,
                system_prompt=SUMMARY_SYSTEM_PROMPT,
                turns=[Turn(role="user", content=prompt)],
                temperature=SUMMARY_TEMPERATURE,
                max_tokens=self._settings.summary_max_tokens,
                user_id=user_id,
            )

            async with self._limiter.slot(user_id, spec.provider):
                await self._store.update_model_state(
                    thread_id, model_id, summary_job_status=SummaryJobStatus.GENERATING
                )
                logger.info(
                    f"Starting summary for {thread_id}/{model_id} "
                    f"({len(context.turns)} turns, ~{context.estimated_tokens} tokens)"
                )
                response = await send_with_retry(adapter, request, sleep=self._sleep)

            summary = trim_summary(
                response.text, self._settings.summary_max_tokens, spec.chars_per_token
            )
            if not summary:
                raise ValueError("empty summary")
            summary_tokens = estimate_tokens(summary, spec.chars_per_token)
            if summary_tokens < self._settings.summary_min_tokens:
                logger.warning(
                    f"Summary for {thread_id}/{model_id} is ~{summary_tokens} tokens, "
                    f"below the {self._settings.summary_min_tokens} minimum"
                )

            await self._store.update_model_state(
                thread_id,
                model_id,
                summary=summary,
                summary_tokens=summary_tokens,
                summary_job_status=SummaryJobStatus.COMPLETE,
            )
            logger.info(f"Summary complete for {thread_id}/{model_id}")
            return summary

        except asyncio.CancelledError:
            raise
        except Exception as e:  # summaries are best-effort; prior summary is kept
            logger.error(f"Summary failed for {thread_id}/{model_id}: {e}")
            await self._mark_failed(thread_id, model_id)
            return None

    async def _mark_failed(self, thread_id: str, model_id: str) -> None:
        try:
            await self._store.update_model_state(
                thread_id, model_id, summary_job_status=SummaryJobStatus.FAILED
            )
        except Exception as e:
            logger.error(f"Could not record summary failure for {thread_id}/{model_id}: {e}")

    async def shutdown(self) -> None:
        """Cancel running summary jobs."""
        tasks = list(self._jobs.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} summary jobs")
