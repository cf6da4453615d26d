"""
Generation session for the pipeline.

Implements:
- Single-flight guard: at most one generation runs at a time
- Lazy model acquisition through the ResourceCache
- Throttled publishing of the token stream to a Sink
- Cooperative cancellation with a synchronous running indicator
- Terminal state tracking (completed / failed / cancelled)
"""

import asyncio
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from ..config import Settings, get_settings
from ..inference.base import Chunk, ModelInput, TokenGenerator
from ..inference.resource_cache import ResourceCache
from ..observability.metrics import (
    record_batch,
    record_generation_finished,
    update_running,
)
from ..protocol.errors import PromptStreamError
from ..protocol.messages import (
    ChatMessage,
    GenerationRequest,
    Role,
    SessionOutcome,
    SessionState,
)
from .cancellation import CancellationToken
from .sink import Sink
from .throttle import Batch, throttle

logger = logging.getLogger(__name__)


def format_stats(tokens_per_second: float) -> str:
    """Render a tokens/sec value as the stats line shown to the user."""
    return f"{tokens_per_second:.1f} tokens/s"


class GenerationSession:
    """
    Drives one generation at a time from prompt to terminal state.

    State path per run: IDLE -> RUNNING -> {COMPLETED, FAILED, CANCELLED} -> IDLE.
    The output accumulator and run state belong to the running task; callers
    only read them through properties.
    """

    def __init__(
        self,
        cache: ResourceCache,
        generator: TokenGenerator,
        sink: Sink | None = None,
        settings: Settings | None = None,
        throttle_interval: float | None = None,
    ):
        """
        Initialize the session.

        Args:
            cache: Shared model resource cache
            generator: Token generator backend
            sink: Receiver of published updates
            settings: Generation defaults
            throttle_interval: Seconds between published updates
                (settings.throttle_interval if not provided)
        """
        self._cache = cache
        self._generator = generator
        self._sink = sink or Sink()
        self._settings = settings or get_settings()
        self._interval = throttle_interval or self._settings.throttle_interval

        self._state = SessionState.IDLE
        self._running = False
        self._output = ""
        self._stats = ""
        self._token: CancellationToken | None = None
        self._task: asyncio.Task | None = None
        self._outcome: SessionOutcome | None = None

        self._run_count = 0
        self._last_seed = 0

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def running(self) -> bool:
        """Running indicator; turns False as soon as cancel() returns."""
        return self._running

    @property
    def output(self) -> str:
        return self._output

    @property
    def stats(self) -> str:
        return self._stats

    @property
    def outcome(self) -> SessionOutcome | None:
        """Terminal state of the last finished run."""
        return self._outcome

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def start(self, request: GenerationRequest) -> bool:
        """
        Start a generation for the request.

        Must be called from a running event loop.

        Returns:
            True if accepted, False if a generation is already running

        Raises:
            RuntimeError: If there is no running event loop (session unchanged)
        """
        if self._state is SessionState.RUNNING:
            logger.debug("start() ignored: generation already running")
            return False

        # Raises RuntimeError outside a loop, before any state changes
        loop = asyncio.get_running_loop()

        self._run_count += 1
        run_id = f"gen-{self._run_count}-{uuid4().hex[:8]}"
        token = CancellationToken(run_id)
        self._token = token
        self._output = ""
        self._stats = ""

        self._transition(SessionState.RUNNING)
        self._set_running(True)
        self._sink.publish(self._output, self._stats)

        self._task = loop.create_task(self._run(request, token, run_id))
        logger.info(f"Generation {run_id} started")
        return True

    def cancel(self) -> bool:
        """
        Request cancellation of the running generation.

        The running indicator is cleared before this returns; the stream
        stops at its next chunk boundary.

        Returns:
            True if a running generation was cancelled
        """
        if self._state is not SessionState.RUNNING or self._token is None:
            return False
        if not self._token.cancel():
            return False

        self._set_running(False)
        logger.info(f"Generation {self._token.name} cancelled")
        return True

    async def wait(self) -> SessionOutcome | None:
        """Wait for the current run (if any) to reach a terminal state."""
        if self._task is not None:
            await asyncio.wait({self._task})
        return self._outcome

    async def aclose(self) -> None:
        """Cancel any running generation and wait for teardown."""
        self.cancel()
        await self.wait()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def _run(
        self,
        request: GenerationRequest,
        token: CancellationToken,
        run_id: str,
    ) -> None:
        start_time = time.monotonic()
        first_batch_at: float | None = None
        rate: float | None = None
        final_state = SessionState.FAILED
        error_message: str | None = None

        try:
            resource = await self._cache.load()

            if not token.cancelled:
                model_input = self._build_input(request, run_id)
                stream = self._generator.stream(resource, model_input, token)
                batches = throttle(self._until_cancelled(stream, token), self._interval)
                try:
                    async for batch in batches:
                        if first_batch_at is None:
                            first_batch_at = time.monotonic() - start_time
                        if batch.stats is not None:
                            rate = batch.stats
                        self._apply(batch)
                finally:
                    await batches.aclose()

            final_state = (
                SessionState.CANCELLED if token.cancelled else SessionState.COMPLETED
            )

        except asyncio.CancelledError:
            final_state = SessionState.CANCELLED
            raise

        except PromptStreamError as e:
            final_state, error_message = self._failure(token, e.message)
            logger.warning(f"Generation {run_id} failed: {e.message}")

        except Exception as e:
            final_state, error_message = self._failure(token, str(e) or type(e).__name__)
            logger.exception(f"Unexpected error during generation {run_id}")

        finally:
            self._finish(final_state, error_message)
            record_generation_finished(
                status=final_state.value,
                total_latency_seconds=time.monotonic() - start_time,
                first_batch_seconds=first_batch_at,
                rate=rate,
            )
            logger.info(f"Generation {run_id} ended: {final_state.value}")

    def _build_input(self, request: GenerationRequest, run_id: str) -> ModelInput:
        """Fixed system instruction + user prompt, with per-run sampling values."""
        settings = self._settings
        return ModelInput(
            messages=[
                ChatMessage(role=Role.SYSTEM, content=settings.system_prompt),
                ChatMessage(role=Role.USER, content=request.prompt),
            ],
            max_tokens=request.max_tokens or settings.max_tokens,
            temperature=(
                request.temperature
                if request.temperature is not None
                else settings.temperature
            ),
            seed=self._next_seed(),
            enable_thinking=request.enable_thinking,
            request_id=run_id,
        )

    def _next_seed(self) -> int:
        """Millisecond clock seed, strictly increasing so no two runs share one."""
        seed = int(time.time() * 1000)
        if seed <= self._last_seed:
            seed = self._last_seed + 1
        self._last_seed = seed
        return seed

    @staticmethod
    async def _until_cancelled(
        stream: AsyncIterator[Chunk],
        token: CancellationToken,
    ) -> AsyncIterator[Chunk]:
        """Stop pulling from the generator once the token is set."""
        try:
            async for chunk in stream:
                if token.cancelled:
                    break
                yield chunk
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    def _apply(self, batch: Batch) -> None:
        """Append a batch to the output and publish it."""
        self._output += batch.text
        if batch.stats is not None:
            self._stats = format_stats(batch.stats)
        record_batch(len(batch))
        self._sink.publish(self._output, self._stats)

    @staticmethod
    def _failure(
        token: CancellationToken,
        message: str,
    ) -> tuple[SessionState, str | None]:
        # An error raised while tearing down a cancelled run is not a failure
        if token.cancelled:
            return SessionState.CANCELLED, None
        return SessionState.FAILED, message

    def _finish(self, state: SessionState, error_message: str | None) -> None:
        if state is SessionState.FAILED:
            # Partial output is replaced, not appended to
            self._output = f"Failed: {error_message}"
            self._sink.publish(self._output, self._stats)

        self._outcome = SessionOutcome(
            state=state,
            error_message=error_message,
            output=self._output,
            stats=self._stats,
        )
        self._transition(state)
        self._set_running(False)
        self._transition(SessionState.IDLE)

    def _transition(self, state: SessionState) -> None:
        logger.debug(f"Session state: {self._state.value} -> {state.value}")
        self._state = state
        self._sink.on_state(state)

    def _set_running(self, running: bool) -> None:
        if self._running == running:
            return
        self._running = running
        update_running(running)
        self._sink.set_running(running)

    def get_stats(self) -> dict:
        """Get session statistics."""
        return {
            "state": self._state.value,
            "running": self._running,
            "total_runs": self._run_count,
            "last_outcome": self._outcome.state.value if self._outcome else None,
            "output_chars": len(self._output),
        }
