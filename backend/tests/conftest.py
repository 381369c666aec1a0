"""Shared fixtures: a scripted provider and engines wired to it."""

import asyncio
from typing import AsyncIterator

import pytest
import pytest_asyncio

from threadcast.config import Settings
from threadcast.db import MemoryStore
from threadcast.engine import Engine
from threadcast.errors import ProviderFailure
from threadcast.providers import ModelSpec, ProviderAdapter, ProviderRegistry
from threadcast.services.accounts import Accounts
from threadcast.services.compaction import TITLE_SYSTEM_PROMPT
from threadcast_models import ProviderRequest, ProviderResponse

USER = "user-1"
MODEL = "model-a"


class StaticAccounts(Accounts):
    """Fixed system prompt and keys."""

    def __init__(self, system_prompt: str = "You are terse.", keys: dict | None = None):
        self._system_prompt = system_prompt
        self._keys = keys or {}

    async def api_key(self, user_id, provider):
        return self._keys.get(provider)

    async def system_prompt(self, user_id):
        return self._system_prompt


class ScriptedProvider(ProviderAdapter):
    """Adapter stub whose behavior is set per test.

    Streams `tokens`; `errors` are raised one per stream call before any
    token; `fail_after` is raised once `tokens` are exhausted; `gate`
    pauses the stream after `gate_after` tokens; `hang` never yields.
    """

    name = "scripted"

    def __init__(self):
        self.tokens: list[str] = ["Hi", " there"]
        self.errors: list[ProviderFailure] = []
        self.fail_after: ProviderFailure | None = None
        self.hang = False
        self.gate: asyncio.Event | None = None
        self.gate_after = 1
        self.title = "Test Thread"
        self.title_error: Exception | None = None
        self.title_delay = 0.0
        self.summary = "The user greeted the assistant and asked follow-up questions."
        self.summary_error: Exception | None = None
        self.summary_gate: asyncio.Event | None = None
        self.stream_requests: list[ProviderRequest] = []
        self.title_calls = 0
        self.summary_calls = 0

    @property
    def stream_calls(self) -> int:
        return len(self.stream_requests)

    async def send_message(self, request: ProviderRequest) -> ProviderResponse:
        if request.system_prompt == TITLE_SYSTEM_PROMPT:
            self.title_calls += 1
            if self.title_delay:
                await asyncio.sleep(self.title_delay)
            if self.title_error:
                raise self.title_error
            return ProviderResponse(text=self.title)

        self.summary_calls += 1
        if self.summary_gate is not None:
            await self.summary_gate.wait()
        if self.summary_error:
            raise self.summary_error
        return ProviderResponse(text=self.summary)

    async def stream_message(self, request: ProviderRequest) -> AsyncIterator[str]:
        self.stream_requests.append(request)
        if self.errors:
            raise self.errors.pop(0)
        if self.hang:
            await asyncio.Event().wait()
        for i, token in enumerate(self.tokens):
            if self.gate is not None and i == self.gate_after:
                await self.gate.wait()
            await asyncio.sleep(0)
            yield token
        if self.fail_after is not None:
            raise self.fail_after


class RecordingSleep:
    """Stand-in for asyncio.sleep that records retry delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


def make_settings(**overrides) -> Settings:
    values = {
        "store_backend": "memory",
        "generation_timeout": 5.0,
        "token_timeout": 2.0,
        "relay_timeout": 2.0,
        "max_open_relays": 5,
        "max_concurrent_generations": 3,
        "context_token_budget": 6000,
        "title_timeout": 1.0,
        "enable_mock_provider": False,
    }
    values.update(overrides)
    return Settings(**values)


def make_registry(provider: ProviderAdapter, **spec) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(
        ModelSpec(
            id=MODEL,
            provider=provider.name,
            vendor_model="scripted-1",
            label="Model A",
            context_window=spec.get("context_window", 8192),
            max_output_tokens=spec.get("max_output_tokens", 256),
        ),
        provider,
    )
    return registry


def build_engine(provider: ProviderAdapter, sleep=None, **overrides) -> Engine:
    return Engine(
        make_settings(**overrides),
        store=MemoryStore(),
        accounts=StaticAccounts(),
        registry=make_registry(provider),
        sleep=sleep or RecordingSleep(),
    )


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest_asyncio.fixture
async def make_engine(provider, sleeper):
    """Factory for started engines; all are stopped after the test."""
    engines: list[Engine] = []

    async def _make(**overrides) -> Engine:
        engine = build_engine(provider, sleep=sleeper, **overrides)
        await engine.start()
        engines.append(engine)
        return engine

    yield _make

    for engine in engines:
        await engine.stop()


@pytest_asyncio.fixture
async def engine(make_engine) -> Engine:
    return await make_engine()


async def collect(handle) -> list:
    """Drain a relay handle."""
    return [event async for event in handle.events()]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll an async predicate until it is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
