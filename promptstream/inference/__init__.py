"""Inference module: backend contracts and the shared resource cache.

The vLLM backend lives in `vllm_engine` and is imported explicitly so the
pipeline can run against other backends without vLLM installed.
"""

from .base import Chunk, ModelInput, ResourceLoader, TokenGenerator
from .resource_cache import LoadState, ResourceCache

__all__ = [
    "Chunk",
    "ModelInput",
    "ResourceLoader",
    "TokenGenerator",
    "LoadState",
    "ResourceCache",
]
