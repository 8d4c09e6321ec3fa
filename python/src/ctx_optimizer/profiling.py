"""
Profiling hooks for the context pipeline.

Measures latency per stage (chunking, scoring, routing, selection) and keeps
aggregated numbers for get_statistics().
"""

import functools
import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable

import psutil

logger = logging.getLogger(__name__)


@dataclass
class StageTiming:
    """One timed execution of a pipeline stage."""
    stage: str
    elapsed_ms: float
    success: bool = True


class MetricsCollector:
    """Collects and aggregates stage timings."""

    def __init__(self, max_entries_per_stage: int = 1000):
        self._timings: dict[str, list[StageTiming]] = defaultdict(list)
        self._max_entries_per_stage = max_entries_per_stage
        self._lock = threading.Lock()

    def record(self, timing: StageTiming) -> None:
        """Record a stage timing."""
        with self._lock:
            entries = self._timings[timing.stage]
            entries.append(timing)

            # Trim old entries if needed
            if len(entries) > self._max_entries_per_stage:
                self._timings[timing.stage] = entries[-self._max_entries_per_stage:]

    def get_stats(self, stage: str | None = None) -> dict[str, Any]:
        """Get aggregated statistics for one stage or all of them."""
        with self._lock:
            if stage:
                return self._aggregate(stage, list(self._timings.get(stage, [])))
            return {
                name: self._aggregate(name, list(entries))
                for name, entries in self._timings.items()
            }

    def _aggregate(self, name: str, entries: list[StageTiming]) -> dict[str, Any]:
        if not entries:
            return {"stage": name, "call_count": 0}

        times = sorted(e.elapsed_ms for e in entries)
        success_count = sum(1 for e in entries if e.success)

        return {
            "stage": name,
            "call_count": len(entries),
            "success_rate": success_count / len(entries),
            "avg_ms": sum(times) / len(times),
            "min_ms": times[0],
            "max_ms": times[-1],
            "p50_ms": times[len(times) // 2],
            "p95_ms": times[int(len(times) * 0.95)] if len(times) >= 20 else times[-1],
        }

    def clear(self) -> None:
        """Clear all metrics."""
        with self._lock:
            self._timings.clear()


class LatencyTracker:
    """
    Context manager to track latency for a pipeline stage.

    Usage:
        with LatencyTracker("chunking", collector):
            chunks = chunker.chunk(content)

    Logs: "[LATENCY] chunking: 4.2ms"
    """

    def __init__(
        self,
        phase_name: str = "operation",
        collector: MetricsCollector | None = None,
        slow_threshold_ms: float | None = None,
    ):
        self.phase_name = phase_name
        self.collector = collector
        self.slow_threshold_ms = slow_threshold_ms
        self.start_time = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.elapsed_ms = (time.perf_counter() - self.start_time) * 1000
        logger.debug(f"[LATENCY] {self.phase_name}: {self.elapsed_ms:.1f}ms")

        if self.collector is not None:
            self.collector.record(StageTiming(
                stage=self.phase_name,
                elapsed_ms=self.elapsed_ms,
                success=exc_type is None,
            ))

        if self.slow_threshold_ms and self.elapsed_ms > self.slow_threshold_ms:
            logger.warning(
                f"SLOW: {self.phase_name} took {self.elapsed_ms:.1f}ms "
                f"(threshold: {self.slow_threshold_ms}ms)"
            )
        return False


def profile_latency(phase_name: str = "operation", collector: MetricsCollector | None = None):
    """
    Decorator to profile latency of a function.

    Usage:
        @profile_latency("inference")
        def infer_strategy(...):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            with LatencyTracker(phase_name, collector):
                return func(*args, **kwargs)
        return wrapper
    return decorator


_process_started = time.time()


def get_process_stats() -> dict[str, Any]:
    """Uptime and memory of the hosting process."""
    process = psutil.Process()
    memory = process.memory_info()
    return {
        "pid": process.pid,
        "uptime_seconds": time.time() - process.create_time(),
        "engine_uptime_seconds": time.time() - _process_started,
        "rss_bytes": memory.rss,
        "threads": process.num_threads(),
    }
