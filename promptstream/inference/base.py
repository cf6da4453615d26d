"""
Contracts between the pipeline and the model backend.

The pipeline never talks to an inference library directly. It loads an
opaque resource through a `ResourceLoader` and pulls `Chunk`s from a
`TokenGenerator`; `vllm_engine` provides the production implementations and
the tests provide fakes.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Protocol

from ..protocol.messages import ChatMessage

if TYPE_CHECKING:
    from ..config import Settings
    from ..core.cancellation import CancellationToken

ProgressCallback = Callable[[float], None]


@dataclass(frozen=True)
class Chunk:
    """Smallest unit produced by a token generator."""

    text: str | None = None
    tokens_per_second: float | None = None


@dataclass
class ModelInput:
    """Everything a generator needs for one run."""

    messages: list[ChatMessage]
    max_tokens: int
    temperature: float
    seed: int
    enable_thinking: bool = False
    request_id: str = ""

    def to_chat(self) -> list[dict[str, str]]:
        """Messages in the `[{"role": ..., "content": ...}]` form tokenizers expect."""
        return [
            {"role": msg.role.value, "content": msg.content}
            for msg in self.messages
        ]


class ResourceLoader(Protocol):
    """Loads the shared model resource."""

    async def load(
        self,
        settings: "Settings",
        on_progress: ProgressCallback,
    ) -> Any:  # pragma: no cover - typing stub
        """
        Load and return the resource.

        `on_progress` receives fractional completion in [0, 1]. Raise on
        failure; the cache turns any exception into a ResourceLoadError.
        """


class TokenGenerator(Protocol):
    """Produces a token stream from a loaded resource."""

    def stream(
        self,
        resource: Any,
        model_input: ModelInput,
        cancel_token: "CancellationToken",
    ) -> AsyncIterator[Chunk]:  # pragma: no cover - typing stub
        """
        Yield chunks in production order until done or cancelled.

        Must stop producing once `cancel_token.cancelled` is observed. May
        raise GenerationError mid-stream.
        """
