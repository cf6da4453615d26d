"""
Pytest fixtures for promptstream tests.

The model backend is replaced by scripted fakes so the pipeline can be
exercised without vLLM or a GPU.
"""

import asyncio

import pytest

from promptstream.config import Settings
from promptstream.core.sink import Sink
from promptstream.inference.base import Chunk
from promptstream.protocol.errors import ResourceLoadError


class FakeResource:
    """Stand-in for a loaded model."""

    def __init__(self, name: str = "fake-model"):
        self.name = name


class FakeLoader:
    """Loader that records calls and can be told to fail or to stall."""

    def __init__(self, delay: float = 0.0, error: Exception | None = None, progress=()):
        self.delay = delay
        self.error = error
        self.progress = list(progress)
        self.calls = 0

    async def load(self, settings, on_progress):
        self.calls += 1
        for value in self.progress:
            on_progress(value)
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return FakeResource()


class ScriptedGenerator:
    """
    Generator yielding a fixed list of text chunks.

    Polls the cancellation token before producing each chunk, the way a real
    backend is expected to.
    """

    def __init__(self, texts, delay: float = 0.0, error: Exception | None = None):
        self.texts = list(texts)
        self.delay = delay
        self.error = error
        self.inputs = []
        self.produced = []
        self.closed = False

    async def stream(self, resource, model_input, cancel_token):
        self.inputs.append(model_input)
        try:
            for i, text in enumerate(self.texts):
                if cancel_token.cancelled:
                    return
                await asyncio.sleep(self.delay)
                self.produced.append(text)
                yield Chunk(text=text, tokens_per_second=float(i + 1))
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


class RecordingSink(Sink):
    """Sink that remembers everything it was told."""

    def __init__(self):
        self.publishes: list[tuple[str, str]] = []
        self.running: list[bool] = []
        self.states = []
        self.model_info: list[str] = []

    def publish(self, output, stats):
        self.publishes.append((output, stats))

    def set_running(self, running):
        self.running.append(running)

    def on_state(self, state):
        self.states.append(state)

    def on_model_info(self, info):
        self.model_info.append(info)

    @property
    def last_output(self) -> str:
        return self.publishes[-1][0] if self.publishes else ""


@pytest.fixture
def settings():
    """Settings with a short throttle window for fast tests."""
    return Settings(
        throttle_interval=0.01,
        max_tokens=10,
        temperature=0.6,
        system_prompt="You are a test assistant.",
        warmup=False,
    )


@pytest.fixture
def loader():
    return FakeLoader()


@pytest.fixture
def failing_loader():
    return FakeLoader(error=ResourceLoadError("weights not found"))


@pytest.fixture
def sink():
    return RecordingSink()
