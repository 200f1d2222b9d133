"""Pulsewatch — Baseline & Statistics Engine.

Runs once per completed pulse:
  aggregate heartbeats → compare with the (target, url) baseline → classify
  → store Statistic + roll the baseline window, atomically.

Aggregation rule: per metric, the worst value across slots (max for
lower-is-better metrics, min for scores). Failed slots contribute nothing.
The baseline reference is the per-metric median over the window.
"""

import json
import statistics
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from pulsewatch.config import settings
from pulsewatch.core.metric_registry import BAND_RANK, get_metric
from pulsewatch.models.baseline_models import (
    Baseline,
    BaselineEntry,
    Classification,
    MetricComparison,
    Statistic,
    StatisticOutput,
)
from pulsewatch.models.pulse_models import Heartbeat, HeartbeatPayload, Pulse
from pulsewatch.orchestrator.pulse_store import heartbeats_for
from pulsewatch.core.logging import get_logger

logger = get_logger("orchestrator.baseline")

# Sentinel returned by a write attempt that lost the baseline version race
_RETRY = object()


def aggregate_heartbeats(heartbeats: List[Heartbeat]) -> Dict[str, float]:
    """Collapse per-slot measurements into one metric vector for the pulse."""
    values: Dict[str, List[float]] = defaultdict(list)
    for hb in heartbeats:
        if hb.failed:
            continue
        payload = HeartbeatPayload.model_validate_json(hb.payload_json)
        for name, value in payload.metrics().items():
            if get_metric(name) is not None:
                values[name].append(value)

    return {name: get_metric(name).worst(vals) for name, vals in values.items()}


def compute_reference(window: List[BaselineEntry]) -> Dict[str, float]:
    """Median of every metric present in the window."""
    values: Dict[str, List[float]] = defaultdict(list)
    for entry in window:
        for name, value in entry.metrics.items():
            values[name].append(value)
    return {name: round(statistics.median(vals), 4) for name, vals in values.items()}


def classify_metric(
    metric_name: str,
    value: float,
    reference: Optional[float],
    threshold_pct: float,
) -> MetricComparison:
    """Compare one metric against its reference value."""
    definition = get_metric(metric_name)
    band = definition.band(value) if definition else None

    if reference is None:
        return MetricComparison(
            metric_name=metric_name,
            value=round(value, 4),
            band=band.value if band else "",
        )

    ref_band = definition.band(reference) if definition else None
    delta = value - reference
    change_pct = (delta / reference * 100) if reference != 0 else None

    # Positive means the metric got worse, whatever its direction
    worsening_pct = None
    if change_pct is not None:
        lower_is_better = definition.lower_is_better if definition else True
        worsening_pct = change_pct if lower_is_better else -change_pct

    band_shift = 0
    if band is not None and ref_band is not None:
        band_shift = BAND_RANK[band] - BAND_RANK[ref_band]

    if (worsening_pct is not None and worsening_pct > threshold_pct) or band_shift > 0:
        classification = Classification.REGRESSION
    elif (
        worsening_pct is not None and worsening_pct < -threshold_pct
    ) or band_shift < 0:
        classification = Classification.IMPROVEMENT
    else:
        classification = Classification.NEUTRAL

    return MetricComparison(
        metric_name=metric_name,
        value=round(value, 4),
        reference=round(reference, 4),
        delta=round(delta, 4),
        change_pct=round(change_pct, 2) if change_pct is not None else None,
        band=band.value if band else "",
        reference_band=ref_band.value if ref_band else "",
        classification=classification,
    )


def overall_classification(comparisons: List[MetricComparison]) -> Classification:
    """Any regression wins, then any improvement, else neutral."""
    kinds = {c.classification for c in comparisons}
    if Classification.REGRESSION in kinds:
        return Classification.REGRESSION
    if Classification.IMPROVEMENT in kinds:
        return Classification.IMPROVEMENT
    return Classification.NEUTRAL


def compare_vector(
    vector: Dict[str, float],
    reference: Dict[str, float],
    threshold_pct: float,
) -> List[MetricComparison]:
    return [
        classify_metric(name, value, reference.get(name), threshold_pct)
        for name, value in sorted(vector.items())
    ]


def _dump_window(window: List[BaselineEntry]) -> str:
    return json.dumps([entry.model_dump() for entry in window])


def _load_window(baseline: Baseline) -> List[BaselineEntry]:
    return [BaselineEntry(**entry) for entry in json.loads(baseline.window_json)]


def _already_finalized(session: Session, pulse_id: int) -> bool:
    return (
        session.exec(select(Statistic).where(Statistic.pulse_id == pulse_id)).first()
        is not None
    )


def _seed(
    session: Session,
    pulse: Pulse,
    vector: Dict[str, float],
    window_size: int,
):
    """First observation for the key: store it as the baseline, no comparison."""
    comparisons = compare_vector(vector, {}, 0)
    statistic = Statistic(
        pulse_id=pulse.id,
        target_id=pulse.target_id,
        url_id=pulse.url_id,
        classification=Classification.NEUTRAL.value,
        comparisons_json=json.dumps([c.model_dump(mode="json") for c in comparisons]),
        baseline_version=1,
    )
    baseline = Baseline(
        target_id=pulse.target_id,
        url_id=pulse.url_id,
        window_size=window_size,
        window_json=_dump_window([BaselineEntry(pulse_id=pulse.id, metrics=vector)]),
        reference_json=json.dumps(vector),
        last_pulse_id=pulse.id,
        version=1,
    )
    session.add(statistic)
    session.add(baseline)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        if _already_finalized(session, pulse.id):
            return None
        # Another pulse seeded the key first; fold into its baseline instead
        return _RETRY
    session.refresh(statistic)
    return statistic


def _fold(
    session: Session,
    baseline: Baseline,
    pulse: Pulse,
    vector: Dict[str, float],
    window_size: int,
    threshold_pct: float,
):
    """Compare against the current baseline and roll the window forward."""
    expected_version = baseline.version
    window = _load_window(baseline)
    if any(entry.pulse_id == pulse.id for entry in window):
        return None

    comparisons = compare_vector(
        vector, json.loads(baseline.reference_json), threshold_pct
    )
    window.append(BaselineEntry(pulse_id=pulse.id, metrics=vector))
    window = window[-window_size:]

    statistic = Statistic(
        pulse_id=pulse.id,
        target_id=pulse.target_id,
        url_id=pulse.url_id,
        classification=overall_classification(comparisons).value,
        comparisons_json=json.dumps([c.model_dump(mode="json") for c in comparisons]),
        baseline_version=expected_version + 1,
    )
    session.add(statistic)
    try:
        session.flush()
    except IntegrityError:
        session.rollback()
        return None

    result = session.connection().execute(
        update(Baseline)
        .where(Baseline.id == baseline.id, Baseline.version == expected_version)
        .values(
            window_json=_dump_window(window),
            reference_json=json.dumps(compute_reference(window)),
            window_size=window_size,
            last_pulse_id=pulse.id,
            version=expected_version + 1,
            updated_at=datetime.now(timezone.utc),
        )
    )
    if result.rowcount != 1:
        session.rollback()
        return _RETRY

    session.commit()
    session.refresh(statistic)
    return statistic


def finalize(
    session: Session,
    pulse: Pulse,
    window_size: Optional[int] = None,
    threshold_pct: Optional[float] = None,
    max_attempts: Optional[int] = None,
) -> Optional[Statistic]:
    """Record the pulse's Statistic and fold it into the baseline.

    Returns None when the pulse was already finalized (a lost race, not an
    error) or when the baseline stayed contended for every attempt.
    """
    size = window_size or settings.baseline_window_size
    threshold = (
        threshold_pct if threshold_pct is not None else settings.regression_threshold_pct
    )
    attempts = max_attempts or settings.finalize_max_attempts

    pulse_id, slug = pulse.id, pulse.slug
    target_id, url_id = pulse.target_id, pulse.url_id
    vector = aggregate_heartbeats(heartbeats_for(session, pulse_id))

    for attempt in range(1, attempts + 1):
        baseline = session.exec(
            select(Baseline)
            .where(Baseline.target_id == target_id, Baseline.url_id == url_id)
            .execution_options(populate_existing=True)
        ).first()

        if baseline is None:
            outcome = _seed(session, pulse, vector, size)
        else:
            outcome = _fold(session, baseline, pulse, vector, size, threshold)

        if outcome is _RETRY:
            logger.info(
                f"Baseline changed underneath finalize, retrying ({attempt}/{attempts})",
                extra={"pulse_slug": slug, "target_id": target_id},
            )
            continue

        if outcome is None:
            logger.info(
                "Pulse already folded into baseline, skipping",
                extra={"pulse_slug": slug, "target_id": target_id},
            )
        else:
            logger.info(
                f"Pulse finalized as {outcome.classification}",
                extra={"pulse_slug": slug, "target_id": target_id},
            )
        return outcome

    logger.error(
        f"Baseline for target {target_id} url {url_id} stayed contended "
        f"after {attempts} attempts",
        extra={"pulse_slug": slug, "target_id": target_id},
    )
    return None


# ── Queries ──


def get_baseline(session: Session, target_id: int, url_id: int) -> Optional[Baseline]:
    return session.exec(
        select(Baseline).where(
            Baseline.target_id == target_id, Baseline.url_id == url_id
        )
    ).first()


def get_statistic(session: Session, pulse_id: int) -> Optional[Statistic]:
    return session.exec(
        select(Statistic).where(Statistic.pulse_id == pulse_id)
    ).first()


def list_statistics(
    session: Session, target_id: int, url_id: int, limit: int = 50
) -> List[Statistic]:
    """Most recent statistics for a key."""
    return list(
        session.exec(
            select(Statistic)
            .where(Statistic.target_id == target_id, Statistic.url_id == url_id)
            .order_by(Statistic.created_at.desc(), Statistic.id.desc())  # type: ignore
            .limit(limit)
        ).all()
    )


def statistic_output(statistic: Statistic) -> StatisticOutput:
    return StatisticOutput(
        pulse_id=statistic.pulse_id,
        classification=Classification(statistic.classification),
        baseline_version=statistic.baseline_version,
        comparisons=[
            MetricComparison(**c) for c in json.loads(statistic.comparisons_json)
        ],
        created_at=statistic.created_at.isoformat(),
    )
