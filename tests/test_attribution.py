"""Tests for attribution contexts, delta classification and the telemetry channel."""

import threading
from datetime import datetime, timezone

from operator_engine.attribution.recorder import (
    STRONG_NEGATIVE,
    STRONG_POSITIVE,
    WEAK,
    AttributionRecorder,
    classify_delta,
    compute_delta,
    delta_to_outcome,
    load_context,
)
from operator_engine.attribution.telemetry import TelemetryChannel
from operator_engine.learning.effectiveness import contribution
from operator_engine.models.attribution import (
    AttributionContext,
    AttributionDelta,
    BandChange,
    RiskSummary,
    ScoreSummary,
)
from operator_engine.models.learning import MemoryOutcome
from operator_engine.models.risk import RiskCandidate, Severity


def _make_context(open_count: int = 0, critical_count: int = 0, score=None, band=None,
                  error=None) -> AttributionContext:
    return AttributionContext(
        score=ScoreSummary(score=score, band=band) if score is not None else None,
        risk=RiskSummary(open_count=open_count, critical_count=critical_count),
        error=error,
    )


class TestDelta:
    def test_resolving_a_critical_flag(self):
        delta = compute_delta(
            _make_context(open_count=3, critical_count=1),
            _make_context(open_count=2, critical_count=0),
        )
        assert delta.risk_open_delta == -1
        assert delta.risk_critical_delta == -1
        assert delta.score_delta is None
        assert classify_delta(delta) == STRONG_POSITIVE
        assert contribution(delta) == 2.0

    def test_band_change(self):
        delta = compute_delta(
            _make_context(score=40, band="critical"),
            _make_context(score=62, band="warning"),
        )
        assert delta.score_delta == 22
        assert delta.band_change == BandChange(from_band="critical", to_band="warning")
        assert delta.band_change.direction == 1

    def test_score_drop_is_strong_negative(self):
        delta = AttributionDelta(score_delta=-6)
        assert classify_delta(delta) == STRONG_NEGATIVE
        assert contribution(delta) == -2.0

    def test_positive_wins_when_both_hold(self):
        delta = AttributionDelta(risk_critical_delta=-1, score_delta=-8)
        assert classify_delta(delta) == STRONG_POSITIVE

    def test_weak_signals(self):
        assert classify_delta(AttributionDelta(score_delta=3)) == WEAK
        assert contribution(AttributionDelta(score_delta=3)) == 0.3
        assert contribution(AttributionDelta(score_delta=-2)) == -0.3
        assert contribution(AttributionDelta(score_delta=1)) == 0.0

    def test_error_propagates(self):
        delta = compute_delta(_make_context(error="boom"), _make_context())
        assert delta.error == "boom"
        assert delta_to_outcome(delta) == MemoryOutcome.NEUTRAL


class TestDeltaToOutcome:
    def test_band_first(self):
        delta = AttributionDelta(
            band_change=BandChange(from_band="healthy", to_band="warning"),
            risk_critical_delta=-1,
        )
        assert delta_to_outcome(delta) == MemoryOutcome.WORSENED

    def test_critical_count(self):
        assert delta_to_outcome(AttributionDelta(risk_critical_delta=-1)) == MemoryOutcome.IMPROVED
        assert delta_to_outcome(AttributionDelta(risk_critical_delta=2)) == MemoryOutcome.WORSENED

    def test_score_threshold(self):
        assert delta_to_outcome(AttributionDelta(score_delta=5)) == MemoryOutcome.IMPROVED
        assert delta_to_outcome(AttributionDelta(score_delta=-5)) == MemoryOutcome.WORSENED
        assert delta_to_outcome(AttributionDelta(score_delta=4)) == MemoryOutcome.NEUTRAL

    def test_open_count(self):
        assert delta_to_outcome(AttributionDelta(risk_open_delta=-1)) == MemoryOutcome.IMPROVED
        assert delta_to_outcome(AttributionDelta(risk_open_delta=2)) == MemoryOutcome.NEUTRAL
        assert delta_to_outcome(AttributionDelta(risk_open_delta=3)) == MemoryOutcome.WORSENED


class TestLoadContext:
    def test_counts_from_store(self, store, clock):
        store.upsert_risk_flags([
            RiskCandidate(key="a:system", dedupe_key="risk:a:system", title="A",
                          severity=Severity.CRITICAL, source_type="t", created_by_rule="a"),
            RiskCandidate(key="b:system", dedupe_key="risk:b:system", title="B",
                          severity=Severity.HIGH, source_type="t", created_by_rule="b"),
        ], clock())
        ctx = load_context(
            store,
            score_reader=lambda et, eid: ScoreSummary(score=48.0, band="critical"),
        )
        assert ctx.risk.open_count == 2
        assert ctx.risk.critical_count == 1
        assert ctx.risk.top_keys == ["a:system", "b:system"]
        assert ctx.score.band == "critical"
        assert ctx.error is None

    def test_failing_reader_returns_error_context(self, store):
        def broken(et, eid):
            raise ConnectionError("password=hunter2 rejected")

        ctx = load_context(store, score_reader=broken)
        assert ctx.error is not None
        assert "hunter2" not in ctx.error
        assert ctx.risk.open_count == 0

    def test_recorder_persists(self, store):
        recorder = AttributionRecorder(store)
        before = _make_context(open_count=3, critical_count=1)
        after = _make_context(open_count=2)
        when = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        attribution_id = recorder.record("u1", before, after, rule_key="r1",
                                         action_key="mark_done", occurred_at=when)

        stored = store.list_attributions("u1")
        assert [a.id for a in stored] == [attribution_id]
        assert stored[0].delta.risk_critical_delta == -1


class TestTelemetryChannel:
    def test_runs_tasks_in_order(self):
        channel = TelemetryChannel()
        seen = []
        for i in range(5):
            channel.submit(seen.append, i)
        channel.flush()
        assert seen == [0, 1, 2, 3, 4]
        assert channel.pending == 0

    def test_failure_is_swallowed(self):
        channel = TelemetryChannel()
        seen = []

        def boom():
            raise RuntimeError("secret=abc")

        channel.submit(boom, label="boom")
        channel.submit(seen.append, "after")
        channel.flush()
        assert channel.failed == 1
        assert seen == ["after"]

    def test_full_queue_drops(self):
        channel = TelemetryChannel(max_size=1)
        started = threading.Event()
        release = threading.Event()

        def block():
            started.set()
            release.wait(5)

        assert channel.submit(block) is True
        assert started.wait(5)
        assert channel.submit(lambda: None) is True
        assert channel.submit(lambda: None) is False
        assert channel.dropped == 1

        release.set()
        channel.flush()
        assert channel.pending == 0
