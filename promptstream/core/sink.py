"""
Receivers of pipeline updates.

A Sink is whatever displays the generation: the terminal front end here, a
GUI elsewhere. The session calls it sequentially from its own task; a sink
that lives on another thread or loop marshals the calls itself.
"""

import sys
from typing import TYPE_CHECKING, TextIO

from ..protocol.messages import LoadStatus, SessionState

if TYPE_CHECKING:
    from ..inference.resource_cache import LoadState


class Sink:
    """Base sink; every hook is a no-op so subclasses override what they need."""

    def publish(self, output: str, stats: str) -> None:
        """Full output so far and the latest stats line."""

    def set_running(self, running: bool) -> None:
        """Running indicator changed."""

    def on_state(self, state: SessionState) -> None:
        """Session state transition."""

    def on_model_info(self, info: str) -> None:
        """Model load status line (progress or loaded)."""


class ConsoleSink(Sink):
    """
    Streams the answer to a terminal.

    `publish` always receives the whole output, so only the part not yet
    written is printed. When the output is replaced (error message), the
    replacement is printed on its own line.
    """

    def __init__(self, stream: TextIO | None = None):
        self._stream = stream or sys.stdout
        self._written = ""
        self._stats = ""

    def publish(self, output: str, stats: str) -> None:
        if output.startswith(self._written):
            self._write(output[len(self._written):])
        else:
            self._write(f"\n{output}")
        self._written = output
        self._stats = stats

    def on_state(self, state: SessionState) -> None:
        if state is SessionState.RUNNING:
            self._written = ""
            self._stats = ""
        elif state.is_terminal:
            suffix = " [cancelled]" if state is SessionState.CANCELLED else ""
            self._write(f"{suffix}\n")
            if self._stats:
                self._write(f"({self._stats})\n")

    def on_model_info(self, info: str) -> None:
        # Progress lines overwrite each other in place
        end = "" if info.startswith("Downloading") else "\n"
        self._write(f"\r{info}{end}")

    def _write(self, text: str) -> None:
        if text:
            self._stream.write(text)
            self._stream.flush()


def describe_load_state(state: "LoadState", model_id: str) -> str:
    """
    Model info line for a load state, e.g. 'Downloading Qwen3-1.7B: 40%'.

    Once ready, the weight count is appended when the handle exposes a
    `parameter_count`.
    """
    if state.status is LoadStatus.LOADING:
        return f"Downloading {model_id}: {int(state.progress * 100)}%"
    if state.status is LoadStatus.READY:
        line = f"Loaded {model_id}."
        parameter_count = getattr(state.handle, "parameter_count", None)
        if parameter_count:
            line += f"  Weights: {parameter_count // (1024 * 1024)}M"
        return line
    return f"{model_id} not loaded"
