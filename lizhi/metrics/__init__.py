"""Period metrics (activity and coverage ratios)."""

from lizhi.metrics.aggregator import MetricsWindow, PeriodMetricsAggregator, PeriodTotals, ratio

__all__ = ["MetricsWindow", "PeriodMetricsAggregator", "PeriodTotals", "ratio"]
