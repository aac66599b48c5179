"""Tests for the effectiveness aggregator."""

from datetime import datetime, timedelta, timezone

from operator_engine.learning.effectiveness import EffectivenessAggregator, aggregate_effectiveness
from operator_engine.models.attribution import (
    AttributionContext,
    AttributionDelta,
    BandChange,
    OperatorAttribution,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
_counter = iter(range(10_000))


def _make_attribution(rule_key, occurred_at=T0, actor="u1", **delta) -> OperatorAttribution:
    return OperatorAttribution(
        id=f"attr_{next(_counter)}",
        actor_user_id=actor,
        rule_key=rule_key,
        action_key="mark_done",
        before=AttributionContext(),
        after=AttributionContext(),
        delta=AttributionDelta(**delta),
        occurred_at=occurred_at,
    )


class TestAggregate:
    def test_net_lift_is_mean_contribution(self):
        report = aggregate_effectiveness([
            _make_attribution("r1", risk_critical_delta=-1),
            _make_attribution("r1", score_delta=3),
        ])
        r1 = report.by_rule_key["r1"]
        assert r1.executions == 2
        assert abs(r1.net_lift_score - 1.15) < 1e-9
        assert r1.avg_risk_critical_delta == -0.5
        assert r1.avg_score_delta == 3
        assert [r.rule_key for r in report.top_effective] == ["r1"]

    def test_band_improvement_rate(self):
        report = aggregate_effectiveness([
            _make_attribution("r1", band_change=BandChange(from_band="critical", to_band="warning")),
            _make_attribution("r1"),
        ])
        assert report.by_rule_key["r1"].band_improvement_rate == 0.5

    def test_attributions_without_rule_key_ignored(self):
        report = aggregate_effectiveness([_make_attribution(None, risk_critical_delta=-1)])
        assert report.by_rule_key == {}

    def test_noisy_rules(self):
        report = aggregate_effectiveness(
            [
                _make_attribution("r2", risk_critical_delta=1),
                _make_attribution("r3"),
                _make_attribution("r4", risk_critical_delta=-1),
            ],
            dismiss_counts={"r2": 3, "r3": 2, "r4": 5},
        )
        assert [r.rule_key for r in report.top_noisy] == ["r2", "r3"]
        assert report.by_rule_key["r2"].dismiss_count == 3

    def test_weight_adjustments(self):
        report = aggregate_effectiveness([
            _make_attribution("good", risk_critical_delta=-1),
            _make_attribution("bad", score_delta=-9),
            _make_attribution("meh", score_delta=2),
        ])
        adjustments = {a.rule_key: a.suggested_delta for a in report.recommended_weight_adjustments}
        assert adjustments == {"good": 1, "bad": -1}

    def test_empty(self):
        report = aggregate_effectiveness([])
        assert report.by_rule_key == {}
        assert report.top_effective == []
        assert report.recommended_weight_adjustments == []


class TestAggregator:
    def test_window_is_half_open(self, store):
        recorder_rows = [
            _make_attribution("r1", occurred_at=T0 - timedelta(days=8), risk_critical_delta=-1),
            _make_attribution("r1", occurred_at=T0 - timedelta(days=1), risk_critical_delta=-1),
            _make_attribution("r1", occurred_at=T0, risk_critical_delta=1),
            _make_attribution("r1", occurred_at=T0 - timedelta(days=1), actor="u2",
                              risk_critical_delta=1),
        ]
        for a in recorder_rows:
            store.insert_attribution(a)

        aggregator = EffectivenessAggregator(store)
        lift = aggregator.net_lift_map("u1", T0 - timedelta(days=7), T0)
        assert lift == {"r1": 2.0}
