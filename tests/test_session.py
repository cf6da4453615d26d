"""
Tests for GenerationSession.
"""

import asyncio

import pytest

from promptstream.core.session import GenerationSession, format_stats
from promptstream.inference.resource_cache import ResourceCache
from promptstream.protocol.errors import GenerationError
from promptstream.protocol.messages import (
    GenerationRequest,
    LoadStatus,
    Role,
    SessionState,
)

from .conftest import FakeLoader, ScriptedGenerator


def make_session(settings, sink, generator, loader=None):
    cache = ResourceCache(loader or FakeLoader(), settings)
    return GenerationSession(cache, generator, sink, settings), cache


async def wait_for_produced(generator, count):
    while len(generator.produced) < count:
        await asyncio.sleep(0.002)


class TestHappyPath:
    """Scenario A: a full run to completion."""

    @pytest.mark.asyncio
    async def test_streams_to_completion(self, settings, sink):
        generator = ScriptedGenerator(["H", "i", "!"])
        session, _ = make_session(settings, sink, generator)
        assert session.state is SessionState.IDLE

        accepted = session.start(GenerationRequest(prompt="hi", max_tokens=10))
        assert accepted
        assert session.running
        outcome = await session.wait()

        assert sink.last_output == "Hi!"
        assert session.output == "Hi!"
        assert sink.states == [
            SessionState.RUNNING,
            SessionState.COMPLETED,
            SessionState.IDLE,
        ]
        assert sink.running == [True, False]
        assert not session.running
        assert session.state is SessionState.IDLE
        assert outcome.state is SessionState.COMPLETED
        assert outcome.error_message is None

    @pytest.mark.asyncio
    async def test_publishes_cleared_output_on_start(self, settings, sink):
        session, _ = make_session(settings, sink, ScriptedGenerator(["a"]))

        session.start(GenerationRequest(prompt="hi"))
        assert sink.publishes[0] == ("", "")
        await session.wait()

    @pytest.mark.asyncio
    async def test_published_outputs_grow_monotonically(self, settings, sink):
        generator = ScriptedGenerator(list("abcdefgh"), delay=0.005)
        session, _ = make_session(settings, sink, generator)

        session.start(GenerationRequest(prompt="letters"))
        await session.wait()

        outputs = [output for output, _ in sink.publishes]
        for previous, current in zip(outputs, outputs[1:]):
            assert current.startswith(previous)
        assert outputs[-1] == "abcdefgh"

    @pytest.mark.asyncio
    async def test_stats_are_latest_value(self, settings, sink):
        generator = ScriptedGenerator(["a", "b", "c"])
        session, _ = make_session(settings, sink, generator)

        session.start(GenerationRequest(prompt="hi"))
        await session.wait()

        # The scripted generator reports i + 1 tokens/s for the i-th chunk
        assert sink.publishes[-1][1] == format_stats(3.0)
        assert session.stats == "3.0 tokens/s"

    @pytest.mark.asyncio
    async def test_session_is_reusable(self, settings, sink):
        generator = ScriptedGenerator(["ok"])
        session, cache = make_session(settings, sink, generator)

        session.start(GenerationRequest(prompt="one"))
        await session.wait()
        assert session.start(GenerationRequest(prompt="two"))
        await session.wait()

        assert session.output == "ok"
        assert len(generator.inputs) == 2
        assert cache.load_attempts == 1


class TestModelInput:
    """Tests for the input handed to the generator."""

    @pytest.mark.asyncio
    async def test_system_instruction_and_prompt(self, settings, sink):
        generator = ScriptedGenerator(["x"])
        session, _ = make_session(settings, sink, generator)

        session.start(GenerationRequest(prompt="hello", enable_thinking=True))
        await session.wait()

        model_input = generator.inputs[0]
        assert [m.role for m in model_input.messages] == [Role.SYSTEM, Role.USER]
        assert model_input.messages[0].content == "You are a test assistant."
        assert model_input.messages[1].content == "hello"
        assert model_input.enable_thinking is True

    @pytest.mark.asyncio
    async def test_defaults_from_settings(self, settings, sink):
        generator = ScriptedGenerator(["x"])
        session, _ = make_session(settings, sink, generator)

        session.start(GenerationRequest(prompt="hello"))
        await session.wait()

        model_input = generator.inputs[0]
        assert model_input.max_tokens == settings.max_tokens
        assert model_input.temperature == settings.temperature

    @pytest.mark.asyncio
    async def test_request_overrides_settings(self, settings, sink):
        generator = ScriptedGenerator(["x"])
        session, _ = make_session(settings, sink, generator)

        session.start(GenerationRequest(prompt="hello", max_tokens=3, temperature=0.0))
        await session.wait()

        assert generator.inputs[0].max_tokens == 3
        assert generator.inputs[0].temperature == 0.0

    @pytest.mark.asyncio
    async def test_fresh_seed_per_run(self, settings, sink):
        generator = ScriptedGenerator(["x"])
        session, _ = make_session(settings, sink, generator)

        for _ in range(3):
            session.start(GenerationRequest(prompt="same prompt"))
            await session.wait()

        seeds = [model_input.seed for model_input in generator.inputs]
        assert len(set(seeds)) == 3
        assert seeds == sorted(seeds)


class TestSingleFlight:
    """start() while running is a no-op."""

    @pytest.mark.asyncio
    async def test_second_start_rejected(self, settings, sink):
        generator = ScriptedGenerator(["a", "b", "c"], delay=0.02)
        session, _ = make_session(settings, sink, generator)

        session.start(GenerationRequest(prompt="first"))
        await wait_for_produced(generator, 1)

        state_before = session.state
        output_before = session.output
        publishes_before = len(sink.publishes)

        assert session.start(GenerationRequest(prompt="second")) is False
        assert session.state is state_before is SessionState.RUNNING
        assert session.output == output_before
        assert session.running
        assert len(sink.publishes) == publishes_before

        await session.wait()
        assert len(generator.inputs) == 1
        assert session.output == "abc"

    def test_start_without_loop_leaves_session_idle(self, settings, sink):
        session, _ = make_session(settings, sink, ScriptedGenerator(["x"]))

        with pytest.raises(RuntimeError):
            session.start(GenerationRequest(prompt="hi"))

        assert session.state is SessionState.IDLE
        assert session.running is False
        assert session.get_stats()["total_runs"] == 0
        assert sink.publishes == []
        assert sink.running == []
        assert sink.states == []

    @pytest.mark.asyncio
    async def test_start_during_cancel_teardown_rejected(self, settings, sink):
        generator = ScriptedGenerator(["a", "b", "c"], delay=0.05)
        session, _ = make_session(settings, sink, generator)

        session.start(GenerationRequest(prompt="first"))
        await wait_for_produced(generator, 1)
        session.cancel()

        assert session.start(GenerationRequest(prompt="second")) is False
        await session.wait()
        assert session.start(GenerationRequest(prompt="third")) is True
        await session.wait()


class TestCancellation:
    """Scenario C and idle cancel."""

    @pytest.mark.asyncio
    async def test_cancel_mid_stream(self, settings, sink):
        texts = ["a", "b", "c", "d", "e"]
        generator = ScriptedGenerator(texts, delay=0.05)
        session, _ = make_session(settings, sink, generator)

        session.start(GenerationRequest(prompt="long"))
        await wait_for_produced(generator, 2)

        assert session.cancel() is True
        # Indicator flips before teardown
        assert session.running is False
        assert sink.running[-1] is False
        assert session.state is SessionState.RUNNING

        outcome = await session.wait()

        assert outcome.state is SessionState.CANCELLED
        assert outcome.error_message is None
        assert "d" not in sink.last_output
        assert "e" not in sink.last_output
        assert "abcde".startswith(sink.last_output)
        assert len(sink.last_output) <= 3
        assert generator.closed
        assert sink.states[-2:] == [SessionState.CANCELLED, SessionState.IDLE]
        assert sink.running == [True, False]

    @pytest.mark.asyncio
    async def test_cancel_while_loading(self, settings, sink):
        generator = ScriptedGenerator(["never"])
        session, cache = make_session(
            settings, sink, generator, loader=FakeLoader(delay=0.05)
        )

        session.start(GenerationRequest(prompt="hi"))
        await asyncio.sleep(0.01)
        session.cancel()
        outcome = await session.wait()

        assert outcome.state is SessionState.CANCELLED
        assert generator.inputs == []
        # The shared load still completes for the next run
        assert cache.is_ready

    @pytest.mark.asyncio
    async def test_cancel_when_idle_is_noop(self, settings, sink):
        session, _ = make_session(settings, sink, ScriptedGenerator(["x"]))

        assert session.cancel() is False
        assert session.state is SessionState.IDLE
        assert session.running is False
        assert sink.publishes == []
        assert sink.running == []
        assert sink.states == []

    @pytest.mark.asyncio
    async def test_cancel_after_completion_is_noop(self, settings, sink):
        session, _ = make_session(settings, sink, ScriptedGenerator(["x"]))
        session.start(GenerationRequest(prompt="hi"))
        await session.wait()
        events = (len(sink.publishes), len(sink.running), len(sink.states))

        assert session.cancel() is False
        assert (len(sink.publishes), len(sink.running), len(sink.states)) == events
        assert session.outcome.state is SessionState.COMPLETED

    @pytest.mark.asyncio
    async def test_aclose_cancels_running_generation(self, settings, sink):
        generator = ScriptedGenerator(list("abcdef"), delay=0.05)
        session, _ = make_session(settings, sink, generator)

        session.start(GenerationRequest(prompt="hi"))
        await wait_for_produced(generator, 1)
        await session.aclose()

        assert session.outcome.state is SessionState.CANCELLED
        assert session.state is SessionState.IDLE


class TestFailures:
    """Scenario B and load failures."""

    @pytest.mark.asyncio
    async def test_generation_error_replaces_output(self, settings, sink):
        generator = ScriptedGenerator(["partial"], error=GenerationError("model crashed"))
        session, cache = make_session(settings, sink, generator)

        session.start(GenerationRequest(prompt="hi"))
        outcome = await session.wait()

        assert sink.last_output == "Failed: Generation error: model crashed"
        assert "partial" not in sink.last_output
        assert outcome.state is SessionState.FAILED
        assert outcome.error_message == "Generation error: model crashed"
        assert session.running is False
        assert sink.running[-1] is False
        assert sink.states[-2:] == [SessionState.FAILED, SessionState.IDLE]
        # Generation failures keep the model loaded
        assert cache.state.status is LoadStatus.READY

    @pytest.mark.asyncio
    async def test_unexpected_generator_error(self, settings, sink):
        generator = ScriptedGenerator(["x"], error=KeyError("logits"))
        session, _ = make_session(settings, sink, generator)

        session.start(GenerationRequest(prompt="hi"))
        outcome = await session.wait()

        assert outcome.state is SessionState.FAILED
        assert sink.last_output.startswith("Failed: ")

    @pytest.mark.asyncio
    async def test_load_failure_then_retry(self, settings, sink, failing_loader):
        generator = ScriptedGenerator(["ok"])
        session, cache = make_session(settings, sink, generator, loader=failing_loader)

        session.start(GenerationRequest(prompt="hi"))
        outcome = await session.wait()

        assert outcome.state is SessionState.FAILED
        assert sink.last_output == "Failed: Model load failed: weights not found"
        assert cache.state.status is LoadStatus.NOT_LOADED
        assert generator.inputs == []

        failing_loader.error = None
        session.start(GenerationRequest(prompt="hi again"))
        outcome = await session.wait()

        assert outcome.state is SessionState.COMPLETED
        assert session.output == "ok"
        assert failing_loader.calls == 2

    @pytest.mark.asyncio
    async def test_get_stats(self, settings, sink):
        session, _ = make_session(settings, sink, ScriptedGenerator(["x"]))
        session.start(GenerationRequest(prompt="hi"))
        await session.wait()

        stats = session.get_stats()

        assert stats["state"] == "idle"
        assert stats["total_runs"] == 1
        assert stats["last_outcome"] == "completed"
