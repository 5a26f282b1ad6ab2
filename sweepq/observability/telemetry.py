"""
Counters, timings and event lines for the cleanup engine.

Everything stays in process: events are log lines on the "sweepq.telemetry"
logger, counters and timing samples are kept in memory and read back by
tests and the health route.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from collections import defaultdict, deque
from collections.abc import Iterator
from typing import Any

logger = logging.getLogger("sweepq.telemetry")

SAMPLES_PER_METRIC = 1000


class _Registry:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.counts: defaultdict[str, int] = defaultdict(int)
        self.timings: defaultdict[str, deque[float]] = defaultdict(
            lambda: deque(maxlen=SAMPLES_PER_METRIC)
        )

    def clear(self) -> None:
        with self.lock:
            self.counts.clear()
            self.timings.clear()


_registry = _Registry()


def _timing_name(metric_name: str) -> str:
    # "engine.apply.latency" and "engine.apply.latency_ms" name the same series
    if metric_name.endswith(".latency"):
        return metric_name + "_ms"
    return metric_name


def log_event(event_name: str, **fields: Any) -> None:
    """Emit one "event=<name> {...}" line. Never pass tokens or message bodies."""
    logger.info("event=%s %s", event_name, fields)


def counter(name: str, increment: int = 1) -> int:
    """Add `increment` to counter `name` and return the new total."""
    with _registry.lock:
        _registry.counts[name] += increment
        total = _registry.counts[name]
    logger.debug("counter=%s value=%s", name, total)
    return total


def get_counter(name: str) -> int:
    with _registry.lock:
        return _registry.counts.get(name, 0)


def reset_counters() -> None:
    _registry.clear()


@contextlib.contextmanager
def time_block(metric_name: str) -> Iterator[None]:
    """
    Record the wall time of the block, in milliseconds, under `metric_name`

    Only the newest SAMPLES_PER_METRIC samples per metric are kept.
    """
    name = _timing_name(metric_name)
    started = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.debug("timing=%s ms=%.3f", name, elapsed_ms)
        with _registry.lock:
            _registry.timings[name].append(elapsed_ms)


def get_p95(metric_name: str) -> float:
    """95th percentile of recorded samples in milliseconds, 0.0 when none."""
    name = _timing_name(metric_name)
    with _registry.lock:
        samples = sorted(_registry.timings.get(name, ()))
    if not samples:
        return 0.0
    return samples[min(int(len(samples) * 0.95), len(samples) - 1)]
