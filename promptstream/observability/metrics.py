"""
Prometheus metrics for the generation pipeline.

Exports:
- Model load duration, outcome and progress
- Generation latency, time to first batch and tokens per second
- Chunk and batch throughput through the throttle stage
- Running indicator gauge
"""

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# Model load metrics
# =============================================================================

model_load_seconds = Histogram(
    "promptstream_model_load_seconds",
    "Time spent loading the model resource",
    buckets=(1.0, 2.0, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0, 300.0),
)

model_loads_total = Counter(
    "promptstream_model_loads_total",
    "Underlying model load attempts",
    ["status"],  # success, error
)

model_load_progress = Gauge(
    "promptstream_model_load_progress",
    "Fractional progress of the current model load (0..1)",
)

# =============================================================================
# Generation metrics
# =============================================================================

generations_total = Counter(
    "promptstream_generations_total",
    "Generations by terminal state",
    ["status"],  # completed, failed, cancelled
)

generation_latency = Histogram(
    "promptstream_generation_latency_seconds",
    "Total generation latency in seconds",
    buckets=(0.5, 1.0, 2.0, 3.0, 5.0, 10.0, 20.0, 30.0, 60.0),
)

time_to_first_batch = Histogram(
    "promptstream_time_to_first_batch_seconds",
    "Time from start() to the first published batch",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
)

tokens_per_second = Histogram(
    "promptstream_tokens_per_second",
    "Token generation rate reported by the generator",
    buckets=(5, 10, 20, 30, 40, 50, 75, 100, 150, 200),
)

# =============================================================================
# Throttle metrics
# =============================================================================

chunks_received_total = Counter(
    "promptstream_chunks_received_total",
    "Chunks pulled from the token generator",
)

batches_published_total = Counter(
    "promptstream_batches_published_total",
    "Batches published to the sink",
)

# =============================================================================
# State metrics
# =============================================================================

session_running = Gauge(
    "promptstream_session_running",
    "1 while a generation is running",
)


# =============================================================================
# Helper functions
# =============================================================================


def record_model_load(duration_seconds: float, success: bool) -> None:
    """Record the outcome of one underlying model load."""
    model_load_seconds.observe(duration_seconds)
    model_loads_total.labels(status="success" if success else "error").inc()


def update_load_progress(progress: float) -> None:
    """Update the model load progress gauge."""
    model_load_progress.set(progress)


def record_batch(chunk_count: int) -> None:
    """Record one published batch and the chunks it carried."""
    batches_published_total.inc()
    chunks_received_total.inc(chunk_count)


def record_generation_finished(
    status: str,
    total_latency_seconds: float,
    first_batch_seconds: float | None,
    rate: float | None,
) -> None:
    """
    Record metrics for a finished generation.

    Args:
        status: Terminal state name (completed, failed, cancelled)
        total_latency_seconds: Time from start() to the terminal state
        first_batch_seconds: Time to the first published batch, if any
        rate: Last tokens/sec value observed, if any
    """
    generations_total.labels(status=status).inc()
    generation_latency.observe(total_latency_seconds)
    if first_batch_seconds is not None:
        time_to_first_batch.observe(first_batch_seconds)
    if rate is not None:
        tokens_per_second.observe(rate)


def update_running(running: bool) -> None:
    """Update the running indicator gauge."""
    session_running.set(1 if running else 0)
