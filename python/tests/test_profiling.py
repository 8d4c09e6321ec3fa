"""
Tests for stage latency tracking.
"""

import logging

import pytest

from ctx_optimizer.profiling import (
    LatencyTracker,
    MetricsCollector,
    StageTiming,
    get_process_stats,
    profile_latency,
)


class TestMetricsCollector:

    def test_aggregates(self):
        collector = MetricsCollector()
        for ms in (10.0, 20.0, 30.0):
            collector.record(StageTiming(stage="scoring", elapsed_ms=ms))
        collector.record(StageTiming(stage="scoring", elapsed_ms=40.0, success=False))

        stats = collector.get_stats("scoring")

        assert stats["call_count"] == 4
        assert stats["success_rate"] == 0.75
        assert stats["avg_ms"] == 25.0
        assert stats["min_ms"] == 10.0
        assert stats["max_ms"] == 40.0

    def test_unknown_stage(self):
        assert MetricsCollector().get_stats("nothing") == {"stage": "nothing", "call_count": 0}

    def test_trims_old_entries(self):
        collector = MetricsCollector(max_entries_per_stage=5)
        for i in range(10):
            collector.record(StageTiming(stage="chunking", elapsed_ms=float(i)))

        stats = collector.get_stats("chunking")
        assert stats["call_count"] == 5
        assert stats["min_ms"] == 5.0

    def test_clear(self):
        collector = MetricsCollector()
        collector.record(StageTiming(stage="routing", elapsed_ms=1.0))
        collector.clear()

        assert collector.get_stats() == {}


class TestLatencyTracker:

    def test_records_success_and_failure(self):
        collector = MetricsCollector()

        with LatencyTracker("selection", collector):
            pass
        with pytest.raises(RuntimeError):
            with LatencyTracker("selection", collector):
                raise RuntimeError("boom")

        assert collector.get_stats("selection")["success_rate"] == 0.5

    def test_slow_stage_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="ctx_optimizer.profiling"):
            with LatencyTracker("chunking", slow_threshold_ms=0.000001) as tracker:
                sum(range(10000))

        assert tracker.elapsed_ms > 0
        assert "SLOW: chunking" in caplog.text

    def test_decorator(self):
        collector = MetricsCollector()

        @profile_latency("infer", collector)
        def infer(x):
            return x * 2

        assert infer(21) == 42
        assert collector.get_stats("infer")["call_count"] == 1
        assert infer.__name__ == "infer"


def test_process_stats():
    stats = get_process_stats()

    assert stats["pid"] > 0
    assert stats["rss_bytes"] > 0
    assert stats["threads"] >= 1
    assert stats["engine_uptime_seconds"] >= 0
