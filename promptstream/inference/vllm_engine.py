"""
vLLM AsyncLLMEngine backend for the generation pipeline.

Provides:
- VLLMModelLoader: builds tokenizer + engine, with phase progress and warmup
- VLLMTokenGenerator: streams text deltas as Chunks with tokens/sec stats
- Cooperative cancellation via engine abort()
- Automatic chat template handling via tokenizer (incl. enable_thinking)
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator
from uuid import uuid4

from huggingface_hub import get_safetensors_metadata
from transformers import AutoTokenizer
from vllm import AsyncLLMEngine, SamplingParams
from vllm.engine.arg_utils import AsyncEngineArgs

from ..config import Settings
from ..core.cancellation import CancellationToken
from ..protocol.errors import GenerationError, ResourceLoadError
from .base import Chunk, ModelInput, ProgressCallback

logger = logging.getLogger(__name__)

# Fractional progress reported after each load phase
PROGRESS_TOKENIZER = 0.2
PROGRESS_ENGINE = 0.9


@dataclass
class LoadedModel:
    """The shared resource: engine plus tokenizer for one model."""

    model_id: str
    engine: AsyncLLMEngine
    tokenizer: AutoTokenizer
    parameter_count: int | None = None

    def format_chat(
        self,
        messages: list[dict[str, str]],
        enable_thinking: bool = False,
    ) -> str:
        """
        Format messages using the model's chat template via tokenizer.

        Extra keyword arguments reach the template, which is how Qwen3-style
        templates switch the reasoning trace on and off.
        """
        return self.tokenizer.apply_chat_template(
            messages,
            tokenize=False,
            add_generation_prompt=True,
            enable_thinking=enable_thinking,
        )

    def stop_tokens(self) -> list[str]:
        """EOS plus common chat template end tokens."""
        stop = []
        if self.tokenizer.eos_token:
            stop.append(self.tokenizer.eos_token)
        for token in ["<|im_end|>", "<|eot_id|>", "</s>", "<|end|>"]:
            if token not in stop:
                stop.append(token)
        return stop


class VLLMModelLoader:
    """
    Loads a model into a vLLM AsyncLLMEngine.

    vLLM gives no byte-level progress, so progress is reported per phase:
    tokenizer, engine, warmup.
    """

    async def load(
        self,
        settings: Settings,
        on_progress: ProgressCallback,
    ) -> LoadedModel:
        """
        Build tokenizer and engine, then warm up.

        Raises:
            ResourceLoadError: If any phase fails
        """
        model_id = settings.model_id
        logger.info(f"Initializing vLLM engine with model: {model_id}")
        start_time = time.monotonic()
        on_progress(0.0)

        try:
            # Tokenizer load is blocking file/network I/O
            tokenizer = await asyncio.to_thread(
                AutoTokenizer.from_pretrained,
                model_id,
                revision=settings.model_revision,
                trust_remote_code=True,
            )
            on_progress(PROGRESS_TOKENIZER)
            logger.info("Tokenizer loaded")

            engine_args = AsyncEngineArgs(
                model=model_id,
                revision=settings.model_revision,
                max_model_len=settings.max_model_len,
                gpu_memory_utilization=settings.gpu_memory_utilization,
                dtype=settings.dtype,
                enforce_eager=settings.enforce_eager,
                trust_remote_code=True,
            )
            engine = AsyncLLMEngine.from_engine_args(engine_args)
            on_progress(PROGRESS_ENGINE)
        except Exception as e:
            raise ResourceLoadError(f"{model_id}: {e}") from e

        logger.info(f"vLLM engine initialized in {time.monotonic() - start_time:.2f}s")

        model = LoadedModel(
            model_id=model_id,
            engine=engine,
            tokenizer=tokenizer,
            parameter_count=await self._count_parameters(settings),
        )
        if settings.warmup:
            await self._warmup(model)
        on_progress(1.0)
        return model

    async def _count_parameters(self, settings: Settings) -> int | None:
        """Total weights from the hub's safetensors metadata, if published."""
        try:
            metadata = await asyncio.to_thread(
                get_safetensors_metadata,
                settings.model_id,
                revision=settings.model_revision,
            )
        except Exception as e:
            logger.warning(f"Could not read parameter count (non-fatal): {e}")
            return None
        return sum(metadata.parameter_count.values())

    async def _warmup(self, model: LoadedModel) -> None:
        """Warm up the engine with a simple generation."""
        logger.info("Warming up vLLM engine...")
        prompt = model.format_chat([{"role": "user", "content": "Hello"}])
        sampling_params = SamplingParams(max_tokens=10, temperature=0.7)

        try:
            async for _ in model.engine.generate(
                prompt,
                sampling_params,
                f"warmup-{uuid4().hex[:8]}",
            ):
                pass
            logger.info("Warmup complete")
        except Exception as e:
            logger.warning(f"Warmup generation failed (non-fatal): {e}")


class VLLMTokenGenerator:
    """
    Streams a generation from a LoadedModel as Chunks.

    Each Chunk carries the new text since the previous engine output and the
    tokens/sec observed so far.
    """

    def __init__(self, top_p: float = 1.0):
        self._top_p = top_p

    async def stream(
        self,
        resource: LoadedModel,
        model_input: ModelInput,
        cancel_token: CancellationToken,
    ) -> AsyncIterator[Chunk]:
        """
        Generate chunks for one run.

        Yields:
            Chunk per engine step with its text delta and tokens/sec

        Raises:
            GenerationError: If the engine fails mid-stream
        """
        request_id = model_input.request_id or f"req-{uuid4().hex[:8]}"
        sampling_params = SamplingParams(
            max_tokens=model_input.max_tokens,
            temperature=model_input.temperature,
            top_p=self._top_p,
            seed=model_input.seed,
            stop=resource.stop_tokens(),
        )
        prompt = resource.format_chat(
            model_input.to_chat(),
            enable_thinking=model_input.enable_thinking,
        )

        start_time = time.monotonic()
        prev_text = ""
        finished = False

        try:
            async for request_output in resource.engine.generate(
                prompt,
                sampling_params,
                request_id,
            ):
                if cancel_token.cancelled:
                    break

                output = request_output.outputs[0]
                new_text = output.text[len(prev_text):]
                prev_text = output.text

                elapsed = time.monotonic() - start_time
                completion_tokens = len(output.token_ids)
                rate = completion_tokens / elapsed if elapsed > 0 else None

                yield Chunk(text=new_text or None, tokens_per_second=rate)

                if output.finish_reason:
                    finished = True
                    logger.debug(
                        f"Generation {request_id} finished ({output.finish_reason}): "
                        f"{completion_tokens} tokens"
                    )
        except GenerationError:
            raise
        except Exception as e:
            raise GenerationError(str(e) or type(e).__name__) from e
        finally:
            if not finished:
                await self._abort(resource, request_id)

    async def _abort(self, resource: LoadedModel, request_id: str) -> None:
        """Abort an engine request that did not run to completion."""
        try:
            await resource.engine.abort(request_id)
            logger.debug(f"Aborted request: {request_id}")
        except Exception as e:
            logger.warning(f"Failed to abort request {request_id}: {e}")
