"""Tests for title and rolling summary jobs."""

import asyncio
import logging

import pytest

from conftest import MODEL, USER, collect
from threadcast.errors import ProviderError, ValidationError
from threadcast.services.compaction import (
    TITLE_MAX_CHARS,
    build_summary_prompt,
    clean_title,
    fallback_title,
    trim_summary,
)
from threadcast.services.context import estimate_tokens
from threadcast_models import Message, SummaryJobStatus, Thread, Turn


async def _seed_conversation(engine, thread_id: str = "t1") -> None:
    """One finished exchange stored for MODEL."""
    await engine.store.insert_thread(Thread(id=thread_id, user_id=USER))
    await engine.store.insert_message(
        Message(
            id=f"{thread_id}-u1",
            thread_id=thread_id,
            model_id=MODEL,
            role="user",
            content="hello",
        )
    )
    await engine.store.insert_message(
        Message(
            id=f"{thread_id}-a1",
            thread_id=thread_id,
            model_id=MODEL,
            role="assistant",
            tokens=["Hi"],
        )
    )
    await engine.store.update_model_state(thread_id, MODEL, message_count_delta=2)


async def _state(engine, thread_id: str = "t1"):
    return (await engine.store.get_thread(thread_id)).models[MODEL]


class TestTitleHelpers:
    """Test title cleanup and fallback."""

    def test_clean_title_strips_decoration(self):
        """Test prefixes, quotes and trailing periods are removed."""
        assert clean_title('Title: "Weekend trip planning."') == "Weekend trip planning"

    def test_clean_title_uses_first_line(self):
        """Test extra lines from chatty models are ignored."""
        assert clean_title("\nPython packaging\nHope this helps!") == "Python packaging"

    def test_clean_title_truncates_on_word_boundary(self):
        """Test long titles are cut without splitting a word."""
        title = clean_title("word " * 30)
        assert len(title) <= TITLE_MAX_CHARS
        assert title.split() == ["word"] * len(title.split())

    def test_fallback_uses_first_words(self):
        """Test the fallback is the first six words of the user's message."""
        assert fallback_title("one two three four five six seven") == "one two three four five six"

    def test_fallback_for_blank_text(self):
        """Test whitespace-only text gets a generic title."""
        assert fallback_title("   ") == "New conversation"


class TestSummaryHelpers:
    """Test summary prompt building and trimming."""

    def test_trim_keeps_short_summary(self):
        """Test a summary under the cap is only stripped."""
        assert trim_summary("  short summary  ", max_tokens=100) == "short summary"

    def test_trim_cuts_long_summary(self):
        """Test a summary over the cap is cut back under it."""
        trimmed = trim_summary("lorem ipsum " * 100, max_tokens=10)
        assert estimate_tokens(trimmed) <= 10
        assert not trimmed.endswith(" ")

    def test_prompt_folds_previous_summary(self):
        """Test the previous summary and the turns both reach the prompt."""
        turns = [Turn(role="user", content="hello"), Turn(role="assistant", content="Hi")]

        prompt = build_summary_prompt("They met before.", turns, 300, 700)

        assert prompt.startswith("Previous summary:\nThey met before.")
        assert "User: hello\n\nAssistant: Hi" in prompt
        assert "between 300 and 700 tokens" in prompt

    def test_prompt_without_previous_summary(self):
        """Test a first summary has no previous-summary section."""
        prompt = build_summary_prompt(None, [Turn(role="user", content="hello")], 300, 700)
        assert "Previous summary" not in prompt


class TestGenerateTitle:
    """Test title jobs through the scheduler."""

    @pytest.mark.asyncio
    async def test_title_is_cleaned_and_persisted(self, engine, provider):
        """Test the provider's title is normalized and stored on the thread."""
        provider.title = "Title: Weekend plans."
        await _seed_conversation(engine)

        title = await engine.scheduler.generate_title(USER, "t1", MODEL, "What should I do?")

        assert title == "Weekend plans"
        assert (await engine.store.get_thread("t1")).title == "Weekend plans"

    @pytest.mark.asyncio
    async def test_provider_error_falls_back(self, engine, provider):
        """Test a failing title call never raises."""
        provider.title_error = ProviderError("boom")
        await _seed_conversation(engine)

        title = await engine.scheduler.generate_title(USER, "t1", MODEL, "Plan a trip to Lisbon")

        assert title == "Plan a trip to Lisbon"
        assert (await engine.store.get_thread("t1")).title == title

    @pytest.mark.asyncio
    async def test_blank_title_falls_back(self, engine, provider):
        """Test an empty model reply is treated like a failure."""
        provider.title = '""'
        await _seed_conversation(engine)

        title = await engine.scheduler.generate_title(USER, "t1", MODEL, "hello")

        assert title == "hello"


class TestSummaries:
    """Test rolling summary jobs."""

    @pytest.mark.asyncio
    async def test_summary_is_stored(self, engine, provider):
        """Test a summary job writes the text, its size and a complete status."""
        await _seed_conversation(engine)

        summary = await engine.scheduler.run_summary(USER, "t1", MODEL)

        state = await _state(engine)
        assert summary == provider.summary
        assert state.summary == provider.summary
        assert state.summary_tokens == estimate_tokens(provider.summary)
        assert state.summary_job_status is SummaryJobStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_one_job_per_pair(self, engine, provider):
        """Test triggers during a running job are dropped and waiters share it."""
        provider.summary_gate = asyncio.Event()
        await _seed_conversation(engine)
        scheduler = engine.scheduler

        first = scheduler.trigger_summary(USER, "t1", MODEL)
        assert first is not None
        assert scheduler.trigger_summary(USER, "t1", MODEL) is None
        assert scheduler.in_flight("t1", MODEL)

        joined = asyncio.create_task(scheduler.run_summary(USER, "t1", MODEL))
        await asyncio.sleep(0)
        provider.summary_gate.set()

        assert await first == provider.summary
        assert await joined == provider.summary
        assert provider.summary_calls == 1
        await asyncio.sleep(0)
        assert not scheduler.in_flight("t1", MODEL)

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_summary(self, engine, provider):
        """Test a failed job marks the status and leaves the old summary in place."""
        await _seed_conversation(engine)
        await engine.store.update_model_state("t1", MODEL, summary="Earlier summary.")
        provider.summary_error = ProviderError("backend exploded")

        assert await engine.scheduler.run_summary(USER, "t1", MODEL) is None

        state = await _state(engine)
        assert state.summary == "Earlier summary."
        assert state.summary_job_status is SummaryJobStatus.FAILED

    @pytest.mark.asyncio
    async def test_nothing_to_summarize(self, engine, provider):
        """Test an empty conversation fails without calling the provider."""
        await engine.store.insert_thread(Thread(id="t1", user_id=USER))
        await engine.store.update_model_state("t1", MODEL, message_count_delta=0)

        assert await engine.scheduler.run_summary(USER, "t1", MODEL) is None

        assert provider.summary_calls == 0
        assert (await _state(engine)).summary_job_status is SummaryJobStatus.FAILED

    @pytest.mark.asyncio
    async def test_long_summary_is_trimmed(self, make_engine, provider):
        """Test a provider that ignores the length cap is trimmed to it."""
        engine = await make_engine(summary_min_tokens=5, summary_max_tokens=20)
        provider.summary = "The user said hello. " * 50
        await _seed_conversation(engine)

        summary = await engine.scheduler.run_summary(USER, "t1", MODEL)

        assert estimate_tokens(summary) <= 20
        assert (await _state(engine)).summary_tokens <= 20

    @pytest.mark.asyncio
    async def test_previous_summary_feeds_next_prompt(self, engine, provider):
        """Test the next summary request includes the current summary."""
        await _seed_conversation(engine)
        await engine.store.update_model_state("t1", MODEL, summary="They discussed Lisbon.")
        requests = []
        send = provider.send_message

        async def recording_send(request):
            requests.append(request)
            return await send(request)

        provider.send_message = recording_send

        await engine.scheduler.run_summary(USER, "t1", MODEL)

        prompt = requests[0].turns[0].content
        assert "Previous summary:\nThey discussed Lisbon." in prompt
        assert "User: hello" in prompt

    @pytest.mark.asyncio
    async def test_short_summary_is_flagged(self, engine, provider, caplog):
        """Test a summary under the minimum length is stored with a warning."""
        await _seed_conversation(engine)
        provider.summary = "They said hello."

        with caplog.at_level(logging.WARNING, logger="threadcast.services.compaction"):
            summary = await engine.scheduler.run_summary(USER, "t1", MODEL)

        assert summary == "They said hello."
        assert "below the 300 minimum" in caplog.text

    @pytest.mark.asyncio
    async def test_summaries_respect_concurrency_cap(self, make_engine, provider):
        """Test summary jobs across threads queue behind the per-user cap."""
        engine = await make_engine(max_concurrent_generations=1)
        provider.summary_gate = asyncio.Event()
        thread_ids = ["t1", "t2", "t3"]
        for thread_id in thread_ids:
            await _seed_conversation(engine, thread_id)

        tasks = [engine.scheduler.trigger_summary(USER, t, MODEL) for t in thread_ids]
        await asyncio.sleep(0.05)
        assert provider.summary_calls == 1

        provider.summary_gate.set()
        results = await asyncio.gather(*tasks)

        assert results == [provider.summary] * 3
        assert provider.summary_calls == 3
        assert engine.limiter.tracked == 0


class TestEngineTriggerSummary:
    """Test the on-demand summary operation."""

    @pytest.mark.asyncio
    async def test_requires_model_state(self, engine):
        """Test summarizing a model with no conversation in the thread is rejected."""
        thread = await engine.create_thread(USER)

        with pytest.raises(ValidationError):
            await engine.trigger_summary(USER, thread.id, MODEL)

    @pytest.mark.asyncio
    async def test_after_exchange(self, engine, provider):
        """Test an on-demand summary after a real exchange."""
        thread = await engine.create_thread(USER)
        started = await engine.start_exchange(USER, thread.id, MODEL, "hello")
        await collect(await engine.open_relay(USER, started.assistant_message_id))

        summary = await engine.trigger_summary(USER, thread.id, MODEL)

        assert summary == provider.summary
        listed = await engine.get_thread(USER, thread.id)
        assert listed.models[MODEL].summary == provider.summary
