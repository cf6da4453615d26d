"""
Lazy, memoized loader for the shared model resource.

Implements:
- Lazy load on first use
- Single-flight: concurrent callers share one in-flight load
- Retry after a failed load
- Advisory progress reporting
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

from ..config import Settings, get_settings
from ..observability.metrics import record_model_load, update_load_progress
from ..protocol.errors import ResourceLoadError
from ..protocol.messages import LoadStatus
from .base import ResourceLoader

logger = logging.getLogger(__name__)

R = TypeVar("R")


@dataclass(frozen=True)
class LoadState(Generic[R]):
    """
    Tagged load state.

    `progress` is only meaningful while LOADING; `handle` is only set when
    READY.
    """

    status: LoadStatus
    progress: float = 0.0
    handle: R | None = None

    @classmethod
    def not_loaded(cls) -> "LoadState[R]":
        return cls(LoadStatus.NOT_LOADED)

    @classmethod
    def loading(cls, progress: float = 0.0) -> "LoadState[R]":
        return cls(LoadStatus.LOADING, progress=min(max(progress, 0.0), 1.0))

    @classmethod
    def ready(cls, handle: R) -> "LoadState[R]":
        return cls(LoadStatus.READY, progress=1.0, handle=handle)


StateListener = Callable[[LoadState], None]


class ResourceCache(Generic[R]):
    """
    Owns the model resource for the lifetime of the process.

    The underlying loader runs at most once unless a load fails, in which
    case the cache returns to NOT_LOADED and the next `load()` retries.
    """

    def __init__(
        self,
        loader: ResourceLoader,
        settings: Settings | None = None,
        on_state_change: StateListener | None = None,
    ):
        """
        Initialize the cache (nothing is loaded until `load()`).

        Args:
            loader: Backend that performs the actual load
            settings: Settings passed through to the loader
            on_state_change: Observer for every state change, including
                progress updates while loading
        """
        self._loader = loader
        self._settings = settings or get_settings()
        self._on_state_change = on_state_change
        self._state: LoadState[R] = LoadState.not_loaded()
        self._inflight: asyncio.Task | None = None
        self._load_attempts = 0

    @property
    def state(self) -> LoadState[R]:
        """Current load state."""
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state.status is LoadStatus.READY

    @property
    def handle(self) -> R | None:
        """The loaded resource, or None before the first successful load."""
        return self._state.handle

    @property
    def load_attempts(self) -> int:
        """Number of underlying loader invocations so far."""
        return self._load_attempts

    async def load(self) -> R:
        """
        Return the resource, loading it on first use.

        Raises:
            ResourceLoadError: If the (shared) load failed
        """
        if self._state.status is LoadStatus.READY:
            return self._state.handle

        if self._inflight is None:
            self._inflight = asyncio.create_task(self._load_once())
            self._inflight.add_done_callback(self._consume_result)
        else:
            logger.debug("Model load already in flight, waiting for it")

        # A cancelled caller must not cancel the load other callers share
        return await asyncio.shield(self._inflight)

    async def _load_once(self) -> R:
        self._load_attempts += 1
        self._set_state(LoadState.loading(0.0))
        logger.info(f"Loading model resource (attempt {self._load_attempts})")
        start_time = time.monotonic()

        try:
            handle = await self._loader.load(self._settings, self._report_progress)
        except ResourceLoadError as e:
            self._fail(start_time, e)
            raise
        except Exception as e:
            error = ResourceLoadError(str(e) or type(e).__name__)
            self._fail(start_time, error)
            raise error from e
        finally:
            self._inflight = None

        duration = time.monotonic() - start_time
        record_model_load(duration, success=True)
        self._set_state(LoadState.ready(handle))
        logger.info(f"Model resource ready in {duration:.2f}s")
        return handle

    def _fail(self, start_time: float, error: ResourceLoadError) -> None:
        record_model_load(time.monotonic() - start_time, success=False)
        self._set_state(LoadState.not_loaded())
        logger.warning(f"Model load failed, will retry on next load(): {error.message}")

    def _report_progress(self, progress: float) -> None:
        """Progress callback handed to the loader."""
        if self._state.status is not LoadStatus.LOADING:
            return
        self._set_state(LoadState.loading(progress))

    def _set_state(self, state: LoadState[R]) -> None:
        self._state = state
        update_load_progress(state.progress)
        if self._on_state_change is not None:
            try:
                self._on_state_change(state)
            except Exception:
                logger.exception("Load state observer failed")

    @staticmethod
    def _consume_result(task: asyncio.Task) -> None:
        # Every waiter may have gone away; mark the exception as retrieved
        if not task.cancelled():
            task.exception()

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        return {
            "status": self._state.status.value,
            "progress": round(self._state.progress, 3),
            "load_attempts": self._load_attempts,
        }
