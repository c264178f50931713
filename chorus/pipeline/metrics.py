"""PerformanceTracker — rolling record of strategy outcomes.

A bounded FIFO (deque, capacity 100) of StrategyMetric. The router reads the
single-call success rate from it in auto mode. Reads copy under a lock, so a
snapshot is never torn by a concurrent record().
"""

from __future__ import annotations

import logging
import threading
from collections import deque

from chorus.grammar import StrategyMode
from chorus.models import CostComparison, CostEstimate, ModeStats, PerformanceStats, StrategyMetric

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 100

# Relative cost units: the aggregated single-call prompt is a little larger
# than one per-character prompt
CALL_COST = 1.0
SINGLE_CALL_COST = 1.2
DEFAULT_RESPONSES_PER_TURN = 2.0


class PerformanceTracker:
    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._metrics: deque[StrategyMetric] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def record(self, metric: StrategyMetric) -> None:
        with self._lock:
            self._metrics.append(metric)
        logger.debug(
            "metric mode=%s success=%s latency=%.0fms",
            metric.mode, metric.success, metric.latency_ms,
        )

    def snapshot(self) -> list[StrategyMetric]:
        with self._lock:
            return list(self._metrics)

    def __len__(self) -> int:
        with self._lock:
            return len(self._metrics)

    def _window(self, mode: StrategyMode, window_size: int | None) -> list[StrategyMetric]:
        metrics = self.snapshot()
        if window_size is not None:
            metrics = metrics[-window_size:] if window_size > 0 else []
        return [m for m in metrics if m.mode == mode]

    def rolling_success_rate(self, mode: StrategyMode, window_size: int | None = None) -> float:
        """Share of successful attempts of mode within the last window_size metrics.

        The window counts metrics of every mode; 1.0 when none match.
        """
        matching = self._window(mode, window_size)
        if not matching:
            return 1.0
        return sum(1 for m in matching if m.success) / len(matching)

    def rolling_avg_latency(self, mode: StrategyMode, window_size: int | None = None) -> float:
        matching = self._window(mode, window_size)
        if not matching:
            return 0.0
        return sum(m.latency_ms for m in matching) / len(matching)

    def _mode_stats(self, mode: StrategyMode) -> ModeStats:
        return ModeStats(
            success_rate=self.rolling_success_rate(mode),
            avg_response_time=self.rolling_avg_latency(mode),
            count=len(self._window(mode, None)),
        )

    def stats(self) -> PerformanceStats:
        return PerformanceStats(
            single_call=self._mode_stats("single-call"),
            multi_call=self._mode_stats("multi-call"),
            total_calls=len(self),
        )

    def avg_response_count(self) -> float | None:
        """Mean responses per successful attempt, None before any success."""
        counts = [m.response_count for m in self.snapshot() if m.success]
        if not counts:
            return None
        return sum(counts) / len(counts)

    def reset(self) -> None:
        with self._lock:
            self._metrics.clear()


def estimate_cost_comparison(
    avg_responses_per_turn: float = DEFAULT_RESPONSES_PER_TURN,
) -> CostEstimate:
    """Cost of one turn: one aggregated call against one call per responder."""
    single = SINGLE_CALL_COST
    multi = CALL_COST * avg_responses_per_turn
    savings = (multi - single) / multi * 100 if multi > 0 else 0.0
    return CostEstimate(single_call=single, multi_call=multi, savings_percent=savings)


def get_cost_comparison(
    turns_per_day: float,
    avg_responses_per_turn: float = DEFAULT_RESPONSES_PER_TURN,
) -> CostComparison:
    """Projected daily, monthly and yearly savings of single-call over multi-call."""
    estimate = estimate_cost_comparison(avg_responses_per_turn)
    single_per_day = turns_per_day * estimate.single_call
    multi_per_day = turns_per_day * estimate.multi_call
    savings = multi_per_day - single_per_day
    return CostComparison(
        single_call_cost_per_day=single_per_day,
        multi_call_cost_per_day=multi_per_day,
        savings_per_day=savings,
        savings_per_month=savings * 30,
        savings_per_year=savings * 365,
    )
