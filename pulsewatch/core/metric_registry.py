"""Pulsewatch — Web Vitals Metric Registry.

Defines the canonical set of metrics a worker may report and how each one is
judged: which direction is better and, where Core Web Vitals define them, the
good / needs-improvement / poor band boundaries.
"""

from enum import Enum
from typing import Dict, Optional


class MetricType(str, Enum):
    """How a metric is categorised."""

    TIMING = "timing"  # Milliseconds: lcp, fcp, inp, ttfb, tbt, speed_index
    LAYOUT = "layout"  # Unitless shift score: cls
    SCORE = "score"  # Lighthouse category score, 0-100


class Band(str, Enum):
    GOOD = "good"
    NEEDS_IMPROVEMENT = "needs_improvement"
    POOR = "poor"


BAND_RANK = {Band.GOOD: 0, Band.NEEDS_IMPROVEMENT: 1, Band.POOR: 2}


class MetricDefinition:
    """Describes a single metric."""

    def __init__(
        self,
        name: str,
        metric_type: MetricType,
        unit: str = "",
        description: str = "",
        lower_is_better: bool = True,
        good: Optional[float] = None,
        poor: Optional[float] = None,
    ):
        self.name = name
        self.metric_type = metric_type
        self.unit = unit
        self.description = description
        self.lower_is_better = lower_is_better
        self.good = good
        self.poor = poor

    def band(self, value: float) -> Optional[Band]:
        """Quality band of a value, or None when the metric has no bands."""
        if self.good is None or self.poor is None:
            return None
        if self.lower_is_better:
            if value <= self.good:
                return Band.GOOD
            if value <= self.poor:
                return Band.NEEDS_IMPROVEMENT
            return Band.POOR
        if value >= self.good:
            return Band.GOOD
        if value >= self.poor:
            return Band.NEEDS_IMPROVEMENT
        return Band.POOR

    def worst(self, values: list[float]) -> float:
        return max(values) if self.lower_is_better else min(values)

    def __repr__(self) -> str:
        return f"<Metric {self.name} ({self.metric_type.value})>"


# ─────────────────────────────────────────────
# CORE WEB VITALS & LAB TIMINGS
# ─────────────────────────────────────────────

VITALS_METRICS: Dict[str, MetricDefinition] = {
    "lcp": MetricDefinition(
        "lcp", MetricType.TIMING, "ms", "Largest Contentful Paint", good=2500, poor=4000
    ),
    "fcp": MetricDefinition(
        "fcp", MetricType.TIMING, "ms", "First Contentful Paint", good=1800, poor=3000
    ),
    "cls": MetricDefinition(
        "cls", MetricType.LAYOUT, "", "Cumulative Layout Shift", good=0.1, poor=0.25
    ),
    "inp": MetricDefinition(
        "inp", MetricType.TIMING, "ms", "Interaction to Next Paint", good=200, poor=500
    ),
    "ttfb": MetricDefinition(
        "ttfb", MetricType.TIMING, "ms", "Time to First Byte", good=800, poor=1800
    ),
    "tbt": MetricDefinition(
        "tbt", MetricType.TIMING, "ms", "Total Blocking Time", good=200, poor=600
    ),
    "speed_index": MetricDefinition(
        "speed_index", MetricType.TIMING, "ms", "Speed Index", good=3400, poor=5800
    ),
}


# ─────────────────────────────────────────────
# LIGHTHOUSE CATEGORY SCORES
# ─────────────────────────────────────────────

SCORE_METRICS: Dict[str, MetricDefinition] = {
    "performance": MetricDefinition(
        "performance",
        MetricType.SCORE,
        "score",
        "Lighthouse performance",
        lower_is_better=False,
        good=90,
        poor=50,
    ),
    "accessibility": MetricDefinition(
        "accessibility",
        MetricType.SCORE,
        "score",
        "Lighthouse accessibility",
        lower_is_better=False,
    ),
    "best_practices": MetricDefinition(
        "best_practices",
        MetricType.SCORE,
        "score",
        "Lighthouse best practices",
        lower_is_better=False,
    ),
    "seo": MetricDefinition(
        "seo", MetricType.SCORE, "score", "Lighthouse SEO", lower_is_better=False
    ),
}


# ─────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────

ALL_METRICS = {**VITALS_METRICS, **SCORE_METRICS}


def get_metric(name: str) -> MetricDefinition | None:
    """Look up a metric by name."""
    return ALL_METRICS.get(name)


def metrics_by_type(metric_type: MetricType) -> list[MetricDefinition]:
    """Return all metrics of a given type."""
    return [m for m in ALL_METRICS.values() if m.metric_type == metric_type]
