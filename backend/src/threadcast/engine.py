"""Engine: wires the store, providers and services into one object.

The HTTP layer talks only to the engine. Every operation that names a
thread or message checks that the caller owns it, so nothing below the
engine sees a cross-user request.
"""

import asyncio
import logging
import uuid

from threadcast_models import (
    ExchangeStarted,
    Message,
    ProviderStatus,
    Thread,
)
from threadcast.config import Settings, settings
from threadcast.db import DocumentStore, create_store
from threadcast.errors import NotFoundError, ValidationError
from threadcast.providers import (
    ConcurrencyLimiter,
    LocalModelAdapter,
    ModelSpec,
    ProviderRegistry,
    build_registry,
)
from threadcast.providers.retry import Sleep
from threadcast.services.accounts import Accounts, SettingsAccounts
from threadcast.services.compaction import SummaryScheduler
from threadcast.services.context import ContextAssembler
from threadcast.services.lifecycle import MessageLifecycle
from threadcast.services.orchestrator import GenerationOrchestrator
from threadcast.services.relay import RelayHandle, TokenRelay

logger = logging.getLogger(__name__)


class Engine:
    """Streaming conversation engine for one process."""

    def __init__(
        self,
        settings: Settings,
        store: DocumentStore | None = None,
        accounts: Accounts | None = None,
        registry: ProviderRegistry | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.settings = settings
        self.store = store or create_store(settings)
        self.accounts = accounts or SettingsAccounts(settings)
        self.registry = registry or build_registry(settings, self.accounts)
        self.lifecycle = MessageLifecycle(self.store)
        self.limiter = ConcurrencyLimiter(settings.max_concurrent_generations)
        self.assembler = ContextAssembler(self.store, self.accounts)
        self.scheduler = SummaryScheduler(
            self.store, self.assembler, self.registry, settings, self.limiter, sleep=sleep
        )
        self.orchestrator = GenerationOrchestrator(
            self.store,
            self.lifecycle,
            self.assembler,
            self.registry,
            self.scheduler,
            settings,
            self.limiter,
            sleep=sleep,
        )
        self.relay = TokenRelay(
            self.store,
            self.lifecycle,
            max_open=settings.max_open_relays,
            timeout=settings.relay_timeout,
        )

    async def start(self) -> None:
        await self.store.connect()
        await self.orchestrator.recover_orphans()
        logger.info(f"Engine started with {len(self.registry.models())} models")

    async def stop(self) -> None:
        await self.orchestrator.shutdown()
        await self.scheduler.shutdown()
        await self.store.disconnect()
        logger.info("Engine stopped")

    # ============= Ownership =============

    async def _owned_thread(self, user_id: str, thread_id: str) -> Thread:
        thread = await self.store.get_thread(thread_id)
        if thread is None or thread.user_id != user_id:
            raise NotFoundError(f"Thread {thread_id} not found")
        return thread

    async def _owned_message(self, user_id: str, message_id: str) -> Message:
        message = await self.store.get_message(message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        await self._owned_thread(user_id, message.thread_id)
        return message

    # ============= Threads =============

    async def create_thread(self, user_id: str, title: str | None = None) -> Thread:
        thread = Thread(id=str(uuid.uuid4()), user_id=user_id, title=title)
        await self.store.insert_thread(thread)
        logger.info(f"Created thread {thread.id} for {user_id}")
        return thread

    async def get_thread(self, user_id: str, thread_id: str) -> Thread:
        return await self._owned_thread(user_id, thread_id)

    async def list_threads(self, user_id: str, limit: int = 50) -> list[Thread]:
        return await self.store.list_threads(user_id, limit=limit)

    async def list_messages(self, user_id: str, thread_id: str, model_id: str) -> list[Message]:
        await self._owned_thread(user_id, thread_id)
        return await self.store.list_messages(thread_id, model_id)

    # ============= Exchanges =============

    async def start_exchange(
        self,
        user_id: str,
        thread_id: str,
        model_id: str,
        user_text: str,
        temperature: float | None = None,
    ) -> ExchangeStarted:
        return await self.orchestrator.start_exchange(
            user_id, thread_id, model_id, user_text, temperature
        )

    async def open_relay(self, user_id: str, message_id: str) -> RelayHandle:
        await self._owned_message(user_id, message_id)
        return await self.relay.open(message_id)

    async def cancel_generation(self, user_id: str, message_id: str) -> bool:
        await self._owned_message(user_id, message_id)
        return await self.orchestrator.cancel(message_id)

    async def trigger_summary(self, user_id: str, thread_id: str, model_id: str) -> str | None:
        """Regenerate the summary now. Returns None if summarization failed."""
        self.registry.model(model_id)
        thread = await self._owned_thread(user_id, thread_id)
        if model_id not in thread.models:
            raise ValidationError(f"Thread {thread_id} has no conversation with {model_id}")
        return await self.scheduler.run_summary(user_id, thread_id, model_id)

    # ============= Models =============

    def models(self) -> list[ModelSpec]:
        return self.registry.models()

    async def model_status(self, model_id: str) -> ProviderStatus:
        return await self.registry.adapter_for(model_id).status()

    async def load_model(self, model_id: str) -> ProviderStatus:
        adapter = self.registry.adapter_for(model_id)
        if not isinstance(adapter, LocalModelAdapter):
            raise ValidationError(f"Model {model_id} is not a local model")
        return await adapter.load()


# Global engine instance
engine = Engine(settings)
