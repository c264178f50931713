"""Tests for PerformanceTracker."""

import threading

import pytest

from chorus.models import StrategyMetric
from chorus.pipeline.metrics import PerformanceTracker, estimate_cost_comparison, get_cost_comparison


def _metric(mode="single-call", success=True, latency=100.0):
    return StrategyMetric(
        mode=mode, latency_ms=latency, character_count=2, response_count=2 if success else 0,
        success=success, error=None if success else "boom",
    )


def test_empty_tracker_defaults():
    tracker = PerformanceTracker()
    assert tracker.rolling_success_rate("single-call") == 1.0
    assert tracker.rolling_avg_latency("multi-call") == 0.0
    stats = tracker.stats()
    assert stats.total_calls == 0
    assert stats.single_call.count == 0


def test_capacity_evicts_oldest():
    tracker = PerformanceTracker(capacity=3)
    tracker.record(_metric(success=False))
    for _ in range(3):
        tracker.record(_metric())
    assert len(tracker) == 3
    assert tracker.rolling_success_rate("single-call") == 1.0


def test_window_counts_every_mode():
    tracker = PerformanceTracker()
    tracker.record(_metric(success=False))
    tracker.record(_metric(success=True))
    tracker.record(_metric(mode="multi-call"))
    tracker.record(_metric(mode="multi-call"))
    # last 3 metrics hold one single-call success
    assert tracker.rolling_success_rate("single-call", window_size=3) == 1.0
    assert tracker.rolling_success_rate("single-call") == 0.5
    assert tracker.rolling_success_rate("single-call", window_size=2) == 1.0


def test_average_latency():
    tracker = PerformanceTracker()
    tracker.record(_metric(latency=100))
    tracker.record(_metric(latency=300))
    tracker.record(_metric(mode="multi-call", latency=1000))
    assert tracker.rolling_avg_latency("single-call") == 200
    assert tracker.rolling_avg_latency("multi-call") == 1000


def test_stats_per_mode():
    tracker = PerformanceTracker()
    tracker.record(_metric(success=False))
    tracker.record(_metric())
    tracker.record(_metric(mode="multi-call"))
    stats = tracker.stats()
    assert stats.total_calls == 3
    assert stats.single_call.success_rate == 0.5
    assert stats.single_call.count == 2
    assert stats.multi_call.success_rate == 1.0


def test_snapshot_is_a_copy():
    tracker = PerformanceTracker()
    tracker.record(_metric())
    snap = tracker.snapshot()
    tracker.record(_metric())
    assert len(snap) == 1


def test_reset():
    tracker = PerformanceTracker()
    tracker.record(_metric())
    tracker.reset()
    assert len(tracker) == 0


def test_concurrent_records():
    tracker = PerformanceTracker(capacity=100)

    def worker():
        for _ in range(50):
            tracker.record(_metric())

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(tracker) == 100


def test_default_capacity_keeps_last_hundred():
    tracker = PerformanceTracker()
    for i in range(150):
        tracker.record(StrategyMetric(
            mode="single-call", latency_ms=10, character_count=2, response_count=2,
            success=True, timestamp=float(i),
        ))
    metrics = tracker.snapshot()
    assert len(metrics) == 100
    assert metrics[0].timestamp == 50.0
    assert metrics[-1].timestamp == 149.0


def test_avg_response_count_ignores_failures():
    tracker = PerformanceTracker()
    assert tracker.avg_response_count() is None
    tracker.record(_metric(success=False))
    assert tracker.avg_response_count() is None
    tracker.record(_metric())
    tracker.record(StrategyMetric(
        mode="multi-call", latency_ms=10, character_count=3, response_count=3, success=True,
    ))
    assert tracker.avg_response_count() == 2.5


def test_estimate_cost_comparison():
    estimate = estimate_cost_comparison()
    assert estimate.single_call == pytest.approx(1.2)
    assert estimate.multi_call == pytest.approx(2.0)
    assert estimate.savings_percent == pytest.approx(40.0)
    # one reply per turn: the aggregated prompt costs more
    assert estimate_cost_comparison(1).savings_percent < 0


def test_get_cost_comparison_projects_savings():
    cost = get_cost_comparison(100, avg_responses_per_turn=3)
    assert cost.single_call_cost_per_day == pytest.approx(120)
    assert cost.multi_call_cost_per_day == pytest.approx(300)
    assert cost.savings_per_day == pytest.approx(180)
    assert cost.savings_per_month == pytest.approx(180 * 30)
    assert cost.savings_per_year == pytest.approx(180 * 365)
