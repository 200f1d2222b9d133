"""Pulsewatch — Baseline & Statistic Models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel
from sqlmodel import SQLModel, Field, UniqueConstraint


# ─────────────────────────────────────────────
# DATABASE MODELS
# ─────────────────────────────────────────────


class Baseline(SQLModel, table=True):
    """Rolling reference measurement for one (target, url) pair.

    ``version`` is bumped on every write; writers compare-and-swap on it so
    two finalizations for the same key never interleave.
    """

    __tablename__ = "baselines"
    __table_args__ = (
        UniqueConstraint("target_id", "url_id", name="uq_baseline_target_url"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    target_id: int = Field(foreign_key="targets.id", index=True)
    url_id: int = Field(foreign_key="urls.id", index=True)
    window_size: int
    window_json: str = Field(description="List of BaselineEntry as JSON, oldest first")
    reference_json: str = Field(description="Metric → median over the window")
    last_pulse_id: int = Field(foreign_key="pulses.id")
    version: int = 1
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Statistic(SQLModel, table=True):
    """Immutable comparison of one completed pulse against its baseline."""

    __tablename__ = "statistics"

    id: Optional[int] = Field(default=None, primary_key=True)
    pulse_id: int = Field(foreign_key="pulses.id", unique=True)
    target_id: int = Field(foreign_key="targets.id", index=True)
    url_id: int = Field(foreign_key="urls.id", index=True)
    classification: str = Field(description="regression | improvement | neutral")
    comparisons_json: str = Field(description="List of MetricComparison as JSON")
    baseline_version: int = Field(description="Baseline version written with it")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ─────────────────────────────────────────────
# PYDANTIC SCHEMAS
# ─────────────────────────────────────────────


class Classification(str, Enum):
    REGRESSION = "regression"
    IMPROVEMENT = "improvement"
    NEUTRAL = "neutral"


class BaselineEntry(BaseModel):
    """One pulse's contribution to a baseline window."""

    pulse_id: int
    metrics: Dict[str, float]


class MetricComparison(BaseModel):
    """A single metric of a pulse compared to the baseline reference."""

    metric_name: str
    value: float
    reference: Optional[float] = None
    delta: Optional[float] = None
    change_pct: Optional[float] = None
    band: str = ""  # "good" | "needs_improvement" | "poor" | ""
    reference_band: str = ""
    classification: Classification = Classification.NEUTRAL


class StatisticOutput(BaseModel):
    """API view of a Statistic."""

    pulse_id: int
    classification: Classification
    baseline_version: int
    comparisons: List[MetricComparison] = []
    created_at: str = ""
