"""
Terminal entry point for promptstream.

Initializes:
- Settings (env / .env, overridden by command line flags)
- Logging and the optional Prometheus exporter
- Resource cache with the vLLM loader, preloading in the background
- Generation session streaming to the console

Each line typed starts a generation. Ctrl-C stops a running generation;
Ctrl-C or EOF while idle exits.
"""

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
import threading

from prometheus_client import start_http_server

from .config import Settings
from .core.session import GenerationSession
from .core.sink import ConsoleSink, describe_load_state
from .inference.resource_cache import ResourceCache
from .observability.logging import configure_logging
from .protocol.errors import ResourceLoadError
from .protocol.messages import GenerationRequest

logger = logging.getLogger(__name__)

HELP_TEXT = """Type a prompt and press Enter.
/think   toggle the reasoning trace
/quit    exit
Ctrl-C stops a running generation; Ctrl-C or Ctrl-D while idle exits.
"""


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(
        prog="promptstream",
        description="Stream answers from a local model",
    )
    ap.add_argument("--model", help="HuggingFace model id")
    ap.add_argument("--max-tokens", type=int)
    ap.add_argument("--temperature", type=float)
    ap.add_argument("--thinking", action="store_true", default=None,
                    help="Include the reasoning trace")
    ap.add_argument("--throttle-ms", type=int, help="Milliseconds between updates")
    ap.add_argument("--no-preload", action="store_true",
                    help="Load the model on the first prompt instead of at startup")
    ap.add_argument("--metrics-port", type=int, help="Expose Prometheus metrics")
    return ap.parse_args(argv)


def build_settings(args: argparse.Namespace) -> Settings:
    """Environment settings with command line flags taking precedence."""
    overrides = {
        "model_id": args.model,
        "max_tokens": args.max_tokens,
        "temperature": args.temperature,
        "enable_thinking": args.thinking,
        "throttle_interval": (
            args.throttle_ms / 1000 if args.throttle_ms is not None else None
        ),
        "preload": False if args.no_preload else None,
        "metrics_port": args.metrics_port,
    }
    return Settings(**{k: v for k, v in overrides.items() if v is not None})


def _start_stdin_reader(
    loop: asyncio.AbstractEventLoop,
    lines: "asyncio.Queue[str | None]",
) -> None:
    """Feed stdin lines into the queue from a daemon thread (None on EOF)."""

    def reader() -> None:
        for line in sys.stdin:
            loop.call_soon_threadsafe(lines.put_nowait, line)
        loop.call_soon_threadsafe(lines.put_nowait, None)

    threading.Thread(target=reader, name="stdin-reader", daemon=True).start()


async def _preload(cache: ResourceCache) -> None:
    """Load the model ahead of the first prompt; failures are retried later."""
    try:
        await cache.load()
    except ResourceLoadError as e:
        logger.warning(f"Preload failed: {e.message}")


async def _shutdown(
    session: GenerationSession,
    preload_task: asyncio.Task | None,
) -> None:
    """Stop the running generation and any unfinished preload."""
    await session.aclose()
    if preload_task is not None and not preload_task.done():
        preload_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await preload_task


async def repl(settings: Settings) -> None:
    """Read prompts until EOF or interrupt and stream each answer."""
    # vLLM is an optional extra; only the front end needs it
    from .inference.vllm_engine import VLLMModelLoader, VLLMTokenGenerator

    loop = asyncio.get_running_loop()
    sink = ConsoleSink()

    cache = ResourceCache(
        VLLMModelLoader(),
        settings,
        on_state_change=lambda state: sink.on_model_info(
            describe_load_state(state, settings.model_id)
        ),
    )
    session = GenerationSession(
        cache,
        VLLMTokenGenerator(top_p=settings.top_p),
        sink,
        settings,
    )

    lines: asyncio.Queue[str | None] = asyncio.Queue()
    _start_stdin_reader(loop, lines)

    def on_interrupt() -> None:
        if not session.cancel():
            lines.put_nowait(None)

    loop.add_signal_handler(signal.SIGINT, on_interrupt)

    preload_task = asyncio.create_task(_preload(cache)) if settings.preload else None
    thinking = settings.enable_thinking
    print(HELP_TEXT)

    try:
        while True:
            line = await lines.get()
            if line is None:
                break

            prompt = line.strip()
            if not prompt:
                continue
            if prompt == "/quit":
                break
            if prompt == "/think":
                thinking = not thinking
                print(f"Reasoning trace {'on' if thinking else 'off'}")
                continue

            request = GenerationRequest(
                prompt=prompt,
                max_tokens=settings.max_tokens,
                temperature=settings.temperature,
                enable_thinking=thinking,
            )
            if not session.start(request):
                print("(generation in progress, press Ctrl-C to stop it)")
    finally:
        loop.remove_signal_handler(signal.SIGINT)
        await _shutdown(session, preload_task)


def run(argv: list[str] | None = None) -> None:
    """Console script entry point."""
    settings = build_settings(parse_args(argv))
    configure_logging(settings)

    if settings.metrics_port:
        start_http_server(settings.metrics_port)
        logger.info(f"Prometheus metrics on :{settings.metrics_port}")

    asyncio.run(repl(settings))


if __name__ == "__main__":
    run()
