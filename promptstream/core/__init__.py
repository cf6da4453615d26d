"""Core module for session control, throttling and publishing."""

from .cancellation import CancellationToken
from .session import GenerationSession, format_stats
from .sink import ConsoleSink, Sink, describe_load_state
from .throttle import Batch, collect, throttle

__all__ = [
    "CancellationToken",
    "GenerationSession",
    "format_stats",
    "ConsoleSink",
    "Sink",
    "describe_load_state",
    "Batch",
    "collect",
    "throttle",
]
