"""Generation orchestrator.

Owns every in-flight generation. Each assistant message gets exactly one
GenerationJob, and only that job's task writes the message, so the
lifecycle store never sees two writers for one message.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from threadcast_models import (
    ExchangeStarted,
    Message,
    MessageError,
    MessageStatus,
    ProviderRequest,
)
from threadcast.config import Settings
from threadcast.db import DocumentStore
from threadcast.errors import (
    ConflictError,
    NotFoundError,
    ProviderFailure,
    ProviderTimeoutError,
    ValidationError,
)
from threadcast.providers import ConcurrencyLimiter, ProviderAdapter, ProviderRegistry
from threadcast.providers.base import classify_exception
from threadcast.providers.retry import Sleep, retry_delay, should_retry
from threadcast.services.compaction import SummaryScheduler
from threadcast.services.context import ContextAssembler
from threadcast.services.lifecycle import MessageLifecycle

logger = logging.getLogger(__name__)

MAX_TEMPERATURE = 2.0


@dataclass
class GenerationJob:
    """Exclusive ownership record for one message's generation."""

    message_id: str
    user_message_id: str
    user_id: str
    thread_id: str
    model_id: str
    deadline: float
    retry_count: int = 0
    tokens_appended: int = 0
    cancel_requested: bool = False
    task: asyncio.Task | None = None


class GenerationOrchestrator:
    """Starts exchanges and drives their generations to a terminal status."""

    def __init__(
        self,
        store: DocumentStore,
        lifecycle: MessageLifecycle,
        assembler: ContextAssembler,
        registry: ProviderRegistry,
        scheduler: SummaryScheduler,
        settings: Settings,
        limiter: ConcurrencyLimiter,
        sleep: Sleep = asyncio.sleep,
    ):
        self._store = store
        self._lifecycle = lifecycle
        self._assembler = assembler
        self._registry = registry
        self._scheduler = scheduler
        self._settings = settings
        self._limiter = limiter
        self._sleep = sleep
        self._jobs: dict[str, GenerationJob] = {}

    @property
    def active_jobs(self) -> int:
        return len(self._jobs)

    def job(self, message_id: str) -> GenerationJob | None:
        return self._jobs.get(message_id)

    # ============= Exchanges =============

    async def start_exchange(
        self,
        user_id: str,
        thread_id: str,
        model_id: str,
        user_text: str,
        temperature: float | None = None,
    ) -> ExchangeStarted:
        """Store the user turn and a placeholder, then generate in the background.

        Returns as soon as the placeholder exists. On the thread's first
        exchange the title is generated alongside the reply and included.

        Raises:
            ValidationError: Empty text, bad temperature or unknown model.
            NotFoundError: Thread missing or owned by someone else.
        """
        if not user_text or not user_text.strip():
            raise ValidationError("Message text is empty")
        if temperature is not None and not 0.0 <= temperature <= MAX_TEMPERATURE:
            raise ValidationError(f"Temperature must be between 0 and {MAX_TEMPERATURE}")
        self._registry.model(model_id)

        thread = await self._store.get_thread(thread_id)
        if thread is None or thread.user_id != user_id:
            raise NotFoundError(f"Thread {thread_id} not found")

        first_exchange = not any(s.message_count for s in thread.models.values())
        if temperature is None:
            state = thread.models.get(model_id)
            if state and state.last_temperature is not None:
                temperature = state.last_temperature
            else:
                temperature = self._settings.default_temperature

        user_message = Message(
            id=str(uuid.uuid4()),
            thread_id=thread_id,
            model_id=model_id,
            role="user",
            content=user_text,
            status=MessageStatus.COMPLETE,
        )
        await self._store.insert_message(user_message)
        assistant_id = await self._lifecycle.create_placeholder(thread_id, model_id)
        await self._store.update_model_state(
            thread_id,
            model_id,
            message_count_delta=2,
            last_message_at=datetime.now(timezone.utc),
            last_temperature=temperature,
        )

        job = GenerationJob(
            message_id=assistant_id,
            user_message_id=user_message.id,
            user_id=user_id,
            thread_id=thread_id,
            model_id=model_id,
            deadline=asyncio.get_running_loop().time() + self._settings.generation_timeout,
        )
        self._spawn(job, user_text, temperature, first_exchange)
        logger.info(f"Exchange started in {thread_id} with {model_id}: message {assistant_id}")

        title = None
        if first_exchange:
            title = await self._scheduler.generate_title(user_id, thread_id, model_id, user_text)

        return ExchangeStarted(
            thread_id=thread_id,
            model_id=model_id,
            user_message_id=user_message.id,
            assistant_message_id=assistant_id,
            title=title,
        )

    def _spawn(
        self, job: GenerationJob, user_text: str, temperature: float, first_exchange: bool
    ) -> None:
        if job.message_id in self._jobs:
            raise ConflictError(f"Message {job.message_id} already has a generation job")
        job.task = asyncio.create_task(self._run(job, user_text, temperature, first_exchange))
        self._jobs[job.message_id] = job

        def _done(_: asyncio.Task) -> None:
            if self._jobs.get(job.message_id) is job:
                del self._jobs[job.message_id]

        job.task.add_done_callback(_done)

    # ============= Generation =============

    async def _run(
        self, job: GenerationJob, user_text: str, temperature: float, first_exchange: bool
    ) -> None:
        try:
            spec = self._registry.model(job.model_id)
            adapter = self._registry.adapter_for(job.model_id)
            budget = min(self._settings.context_token_budget, spec.input_budget)

            async with self._limiter.slot(job.user_id, spec.provider):
                context = await self._assembler.build(
                    job.thread_id,
                    job.model_id,
                    user_text,
                    budget,
                    chars_per_token=spec.chars_per_token,
                    exclude_message_ids=(job.message_id, job.user_message_id),
                )
                request = ProviderRequest(
                    model=spec.vendor_model,
                    system_prompt=context.system_text(),
                    turns=context.request_turns(),
                    temperature=temperature,
                    max_tokens=spec.max_output_tokens,
                    user_id=job.user_id,
                )
                remaining = job.deadline - asyncio.get_running_loop().time()
                await asyncio.wait_for(
                    self._generate(job, adapter, request, context.estimated_tokens),
                    timeout=max(remaining, 0.0),
                )

        except ProviderFailure as failure:
            await self._fail(job, failure)
            return
        except asyncio.TimeoutError:
            await self._fail(
                job,
                ProviderTimeoutError(
                    f"Generation exceeded {self._settings.generation_timeout:.0f}s deadline"
                ),
            )
            return
        except asyncio.CancelledError:
            await self._interrupt(job)
            raise
        except Exception as e:  # anything unclassified fails this message only
            logger.exception(f"Generation for {job.message_id} crashed")
            await self._fail(job, classify_exception(e))
            return

        if not first_exchange:
            self._scheduler.trigger_summary(job.user_id, job.thread_id, job.model_id)

    async def _generate(
        self,
        job: GenerationJob,
        adapter: ProviderAdapter,
        request: ProviderRequest,
        prompt_tokens: int,
    ) -> None:
        """Stream the reply, retrying only while nothing has been appended."""
        while True:
            stream = adapter.stream_message(request)
            if job.retry_count == 0:
                await self._lifecycle.set_status(
                    job.message_id, MessageStatus.GENERATING, prompt_tokens=prompt_tokens
                )
            try:
                while True:
                    try:
                        token = await asyncio.wait_for(
                            stream.__anext__(), timeout=self._settings.token_timeout
                        )
                    except StopAsyncIteration:
                        break
                    except asyncio.TimeoutError:
                        raise ProviderTimeoutError(
                            f"No token from {adapter.name} for {self._settings.token_timeout:.0f}s"
                        )
                    if not token:
                        continue
                    await self._lifecycle.append_token(job.message_id, token)
                    job.tokens_appended += 1
            except Exception as e:
                failure = classify_exception(e)
                # Appended tokens are committed; a retry would duplicate them
                if job.tokens_appended or not should_retry(failure, job.retry_count):
                    raise failure
                delay = retry_delay(failure, job.retry_count)
                job.retry_count += 1
                logger.warning(
                    f"Generation for {job.message_id} hit {failure.code}: {failure.message}; "
                    f"retrying in {delay:.1f}s (retry {job.retry_count})"
                )
                await self._sleep(delay)
                continue
            finally:
                await stream.aclose()

            await self._lifecycle.set_status(
                job.message_id, MessageStatus.COMPLETE, total_tokens=job.tokens_appended
            )
            logger.info(
                f"Generation complete for {job.message_id}: {job.tokens_appended} tokens"
            )
            return

    async def _fail(self, job: GenerationJob, failure: ProviderFailure) -> None:
        logger.error(f"Generation failed for {job.message_id}: {failure.code}: {failure.message}")
        error = MessageError(
            code=failure.code, message=failure.message, retry_count=job.retry_count
        )
        try:
            await self._lifecycle.set_status(
                job.message_id,
                MessageStatus.FAILED,
                error=error,
                total_tokens=job.tokens_appended,
            )
        except (ConflictError, NotFoundError) as e:
            logger.warning(f"Could not record failure for {job.message_id}: {e}")

    async def _interrupt(self, job: GenerationJob) -> None:
        if job.cancel_requested:
            status, error = MessageStatus.CANCELLED, None
            logger.info(f"Generation cancelled for {job.message_id}")
        else:
            status = MessageStatus.FAILED
            error = MessageError(
                code="timeout", message="generation interrupted", retry_count=job.retry_count
            )
            logger.warning(f"Generation interrupted for {job.message_id}")
        try:
            await self._lifecycle.set_status(
                job.message_id, status, error=error, total_tokens=job.tokens_appended
            )
        except (ConflictError, NotFoundError) as e:
            logger.warning(f"Could not record interruption for {job.message_id}: {e}")

    # ============= Control =============

    async def cancel(self, message_id: str) -> bool:
        """Stop a generation and mark its message cancelled.

        Returns:
            False if the message was already terminal.

        Raises:
            NotFoundError: If the message does not exist.
        """
        message = await self._store.get_message(message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        if message.status.is_terminal:
            return False

        job = self._jobs.get(message_id)
        if job is None or job.task is None:
            # No owner in this process
            try:
                await self._lifecycle.set_status(message_id, MessageStatus.CANCELLED)
            except ConflictError:
                return False
            return True

        job.cancel_requested = True
        job.task.cancel()
        await asyncio.gather(job.task, return_exceptions=True)

        message = await self._store.get_message(message_id)
        return message is not None and message.status is MessageStatus.CANCELLED

    async def recover_orphans(self) -> int:
        """Fail messages left pending or generating by a previous process."""
        orphans = await self._store.list_messages_by_status(
            [MessageStatus.PENDING, MessageStatus.GENERATING]
        )
        recovered = 0
        for message in orphans:
            if message.id in self._jobs:
                continue
            try:
                await self._lifecycle.set_status(
                    message.id,
                    MessageStatus.FAILED,
                    error=MessageError(code="timeout", message="generation interrupted"),
                    total_tokens=len(message.tokens),
                )
            except ConflictError:
                continue
            recovered += 1
        if recovered:
            logger.warning(f"Recovered {recovered} orphaned generations")
        return recovered

    async def shutdown(self) -> None:
        """Cancel in-flight generations. Their messages end up failed."""
        tasks = [job.task for job in self._jobs.values() if job.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Stopped {len(tasks)} in-flight generations")
