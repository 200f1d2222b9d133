from __future__ import annotations

import json
import threading

import pytest
from sqlalchemy import func
from sqlmodel import Session, select

from pulsewatch.models.baseline_models import (
    BaselineEntry,
    Classification,
    MetricComparison,
    Statistic,
)
from pulsewatch.models.pulse_models import Heartbeat, HeartbeatPayload, Pulse
from pulsewatch.orchestrator.baseline_engine import (
    aggregate_heartbeats,
    classify_metric,
    compute_reference,
    finalize,
    get_baseline,
    get_statistic,
    list_statistics,
    overall_classification,
    statistic_output,
)
from pulsewatch.orchestrator.heartbeats import ingest
from pulsewatch.orchestrator.pulse_store import create_pulse, get_pulse, playlist_slots


def _skip_finalize(session, pulse):
    return None


def _completed_pulse(session, catalog, notifier, *payloads: HeartbeatPayload):
    """A completed pulse whose statistic has not been written yet."""
    playlist = catalog.make_playlist(len(payloads))
    pulse = create_pulse(session, catalog.url.id, playlist.id)
    slots = playlist_slots(session, playlist.id)
    for slot, payload in zip(slots, payloads):
        ingest(session, pulse.id, slot.id, payload, notifier=notifier, finalizer=_skip_finalize)
    return get_pulse(session, pulse.slug)


def _comparisons(statistic: Statistic) -> dict:
    return {c["metric_name"]: c for c in json.loads(statistic.comparisons_json)}


# ── Pure helpers ──


def test_aggregate_takes_worst_value_and_skips_failed_slots():
    heartbeats = [
        Heartbeat(
            pulse_id=1,
            slot_id=1,
            payload_json=HeartbeatPayload(lcp=1800, cls=0.02, performance=97).model_dump_json(),
        ),
        Heartbeat(
            pulse_id=1,
            slot_id=2,
            payload_json=HeartbeatPayload(lcp=3100, cls=0.01, performance=71).model_dump_json(),
        ),
        Heartbeat(
            pulse_id=1,
            slot_id=3,
            failed=True,
            payload_json=HeartbeatPayload(lcp=9000, error="timeout").model_dump_json(),
        ),
    ]

    assert aggregate_heartbeats(heartbeats) == {"lcp": 3100, "cls": 0.02, "performance": 71}


def test_reference_is_median_per_metric():
    window = [
        BaselineEntry(pulse_id=1, metrics={"lcp": 2000, "cls": 0.1}),
        BaselineEntry(pulse_id=2, metrics={"lcp": 2600}),
        BaselineEntry(pulse_id=3, metrics={"lcp": 2100, "cls": 0.3}),
    ]

    assert compute_reference(window) == {"lcp": 2100, "cls": 0.2}


@pytest.mark.parametrize(
    "metric, value, reference, expected",
    [
        ("lcp", 2400, 2000, Classification.REGRESSION),
        ("lcp", 2150, 2000, Classification.NEUTRAL),
        ("lcp", 1700, 2000, Classification.IMPROVEMENT),
        # Crossing into a worse band counts even under the threshold
        ("lcp", 2550, 2450, Classification.REGRESSION),
        ("performance", 80, 95, Classification.REGRESSION),
        ("performance", 99, 85, Classification.IMPROVEMENT),
        ("seo", 92, 90, Classification.NEUTRAL),
    ],
)
def test_classify_metric(metric, value, reference, expected):
    comparison = classify_metric(metric, value, reference, threshold_pct=10.0)
    assert comparison.classification == expected


def test_zero_reference_falls_back_to_bands():
    comparison = classify_metric("tbt", 700, 0, threshold_pct=10.0)

    assert comparison.change_pct is None
    assert comparison.classification == Classification.REGRESSION
    assert classify_metric("tbt", 0, 0, threshold_pct=10.0).classification == (
        Classification.NEUTRAL
    )


def test_overall_classification_prefers_regression():
    regression = MetricComparison(
        metric_name="lcp", value=1, classification=Classification.REGRESSION
    )
    improvement = MetricComparison(
        metric_name="cls", value=1, classification=Classification.IMPROVEMENT
    )
    neutral = MetricComparison(metric_name="fcp", value=1)

    assert overall_classification([improvement, regression]) == Classification.REGRESSION
    assert overall_classification([neutral, improvement]) == Classification.IMPROVEMENT
    assert overall_classification([neutral]) == Classification.NEUTRAL
    assert overall_classification([]) == Classification.NEUTRAL


# ── Finalize ──


def test_first_pulse_seeds_baseline_as_neutral(session, catalog, notifier):
    pulse = _completed_pulse(
        session, catalog, notifier, HeartbeatPayload(lcp=2000, cls=0.05, performance=93)
    )

    statistic = finalize(session, pulse)

    assert statistic is not None
    assert statistic.classification == Classification.NEUTRAL.value
    assert statistic.baseline_version == 1
    baseline = get_baseline(session, catalog.target.id, catalog.url.id)
    assert baseline.version == 1
    assert baseline.last_pulse_id == pulse.id
    assert json.loads(baseline.reference_json) == {"lcp": 2000, "cls": 0.05, "performance": 93}


def test_second_pulse_twenty_percent_slower_is_a_regression(session, catalog, notifier):
    first = _completed_pulse(session, catalog, notifier, HeartbeatPayload(lcp=2000, fcp=1000))
    finalize(session, first, threshold_pct=10.0)

    second = _completed_pulse(session, catalog, notifier, HeartbeatPayload(lcp=2400, fcp=1020))
    statistic = finalize(session, second, threshold_pct=10.0)

    assert statistic.classification == Classification.REGRESSION.value
    comparisons = _comparisons(statistic)
    assert comparisons["lcp"]["classification"] == Classification.REGRESSION.value
    assert comparisons["lcp"]["change_pct"] == 20.0
    assert comparisons["fcp"]["classification"] == Classification.NEUTRAL.value

    baseline = get_baseline(session, catalog.target.id, catalog.url.id)
    assert baseline.version == 2
    assert json.loads(baseline.reference_json)["lcp"] == 2200
    window = [entry["pulse_id"] for entry in json.loads(baseline.window_json)]
    assert window == [first.id, second.id]


def test_improvement_is_recorded(session, catalog, notifier):
    finalize(session, _completed_pulse(session, catalog, notifier, HeartbeatPayload(ttfb=1000)))

    statistic = finalize(
        session, _completed_pulse(session, catalog, notifier, HeartbeatPayload(ttfb=600))
    )

    assert statistic.classification == Classification.IMPROVEMENT.value


def test_window_keeps_only_the_most_recent_pulses(session, catalog, notifier):
    pulses = [
        _completed_pulse(session, catalog, notifier, HeartbeatPayload(lcp=1000 + 100 * i))
        for i in range(5)
    ]
    for pulse in pulses:
        finalize(session, pulse, window_size=3)

    baseline = get_baseline(session, catalog.target.id, catalog.url.id)
    window = [entry["pulse_id"] for entry in json.loads(baseline.window_json)]
    assert window == [p.id for p in pulses[-3:]]
    assert json.loads(baseline.reference_json) == {"lcp": 1300}
    assert baseline.version == 5


def test_finalize_twice_writes_one_statistic(session, catalog, notifier):
    pulse = _completed_pulse(session, catalog, notifier, HeartbeatPayload(lcp=2000))

    assert finalize(session, pulse) is not None
    assert finalize(session, pulse) is None

    count = session.exec(
        select(func.count()).select_from(Statistic).where(Statistic.pulse_id == pulse.id)
    ).one()
    assert count == 1
    assert get_baseline(session, catalog.target.id, catalog.url.id).version == 1


def test_refinalizing_a_folded_pulse_is_a_noop(session, catalog, notifier):
    finalize(session, _completed_pulse(session, catalog, notifier, HeartbeatPayload(lcp=2000)))
    second = _completed_pulse(session, catalog, notifier, HeartbeatPayload(lcp=2100))
    finalize(session, second)

    assert finalize(session, second) is None
    assert get_baseline(session, catalog.target.id, catalog.url.id).version == 2


def test_statistic_queries_and_output(session, catalog, notifier):
    first = _completed_pulse(session, catalog, notifier, HeartbeatPayload(lcp=2000))
    second = _completed_pulse(session, catalog, notifier, HeartbeatPayload(lcp=2500))
    finalize(session, first)
    finalize(session, second)

    recent = list_statistics(session, catalog.target.id, catalog.url.id)
    assert [s.pulse_id for s in recent] == [second.id, first.id]

    output = statistic_output(get_statistic(session, second.id))
    assert output.pulse_id == second.id
    assert output.classification == Classification.REGRESSION
    assert output.baseline_version == 2
    assert output.comparisons[0].metric_name == "lcp"
    assert output.comparisons[0].reference == 2000


@pytest.mark.slow
def test_concurrent_finalizations_serialize_on_baseline_version(engine, session, catalog, notifier):
    pulses = [
        _completed_pulse(session, catalog, notifier, HeartbeatPayload(lcp=2000 + i))
        for i in range(6)
    ]
    barrier = threading.Barrier(len(pulses))
    results: list = [None] * len(pulses)

    def worker(index: int, pulse_id: int) -> None:
        with Session(engine) as s:
            pulse = s.get(Pulse, pulse_id)
            barrier.wait()
            results[index] = finalize(s, pulse, window_size=4, max_attempts=20)

    threads = [
        threading.Thread(target=worker, args=(i, p.id)) for i, p in enumerate(pulses)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=120)

    session.expire_all()
    assert all(r is not None for r in results)

    statistics = session.exec(select(Statistic)).all()
    assert len(statistics) == len(pulses)
    assert sorted(s.baseline_version for s in statistics) == list(range(1, len(pulses) + 1))

    baseline = get_baseline(session, catalog.target.id, catalog.url.id)
    window = [entry["pulse_id"] for entry in json.loads(baseline.window_json)]
    assert baseline.version == len(pulses)
    assert len(window) == 4
    assert len(set(window)) == 4
