"""
Process-local metrics for the clip pipeline, served as a snapshot on /metrics.

Three kinds:
  counters    submit/dispatch/worker outcomes, e.g. "worker.job.completed"
  gauges      current values, e.g. jobs running in this process
  timings     rolling latency samples per service or pipeline phase

Nothing is exported anywhere else; a restart starts from zero.
"""

import time
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from typing import Any, Deque, Dict

from reeru.utils.logger import get_logger

logger = get_logger("metrics")

TIMING_WINDOW = 500

_counters: Dict[str, int] = defaultdict(int)
_gauges: Dict[str, int] = defaultdict(int)
_timings: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=TIMING_WINDOW))


def inc(name: str, value: int = 1) -> None:
    _counters[name] += value


def counter(name: str) -> int:
    return _counters.get(name, 0)


def gauge(name: str) -> int:
    return _gauges.get(name, 0)


def observe(name: str, value_ms: float) -> None:
    """Record one latency sample in milliseconds."""
    _timings[name].append(value_ms)


@asynccontextmanager
async def track_duration(service: str, operation: str = "call"):
    """
    Time a block under "<service>.<operation>" and count it as success or
    error. The exception is re-raised.

        async with track_duration("pipeline", "exports"):
            results = await asyncio.gather(...)
    """
    name = f"{service}.{operation}"
    start = time.monotonic()
    try:
        yield
    except Exception:
        elapsed = (time.monotonic() - start) * 1000
        observe(f"{name}.duration_ms", elapsed)
        inc(f"{name}.error")
        logger.warning("metrics.block_failed", extra={"service": service, "operation": operation, "duration_ms": round(elapsed, 1)})
        raise
    observe(f"{name}.duration_ms", (time.monotonic() - start) * 1000)
    inc(f"{name}.success")


@asynccontextmanager
async def in_flight(name: str):
    """Hold a gauge up for the duration of a block."""
    _gauges[name] += 1
    try:
        yield
    finally:
        _gauges[name] -= 1


def _summarize(samples) -> Dict[str, float]:
    ordered = sorted(samples)
    last = len(ordered) - 1
    return {
        "count": len(ordered),
        "p50": round(ordered[last // 2], 1),
        "p95": round(ordered[min(int(len(ordered) * 0.95), last)], 1),
        "max": round(ordered[last], 1),
    }


def get_snapshot() -> Dict[str, Any]:
    return {
        "counters": dict(_counters),
        "gauges": dict(_gauges),
        "timings": {name: _summarize(samples) for name, samples in _timings.items() if samples},
    }


def reset() -> None:
    _counters.clear()
    _gauges.clear()
    _timings.clear()
