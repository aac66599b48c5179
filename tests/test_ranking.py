"""Tests for scoring and ranking."""

import math
from datetime import datetime, timedelta, timezone

import pytest

from operator_engine.models.learning import EffectivenessReport, RuleEffectiveness
from operator_engine.models.next_action import NextActionCandidate, NextBestAction, Priority
from operator_engine.ranking.ranking import (
    compute_score,
    effectiveness_boost,
    rank,
    score_candidates,
    top_n,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _make_candidate(rule: str = "r1", priority: Priority = Priority.HIGH,
                    count_boost: int = 0) -> NextActionCandidate:
    return NextActionCandidate(
        key=rule,
        dedupe_key=f"nba:{rule}:command_center",
        title=rule,
        reason="because",
        priority=priority,
        source_type="test",
        entity_type="command_center",
        entity_id="command_center",
        created_by_rule=rule,
        count_boost=count_boost,
    )


def _make_nba(rule: str, priority: Priority, score: int, created_at: datetime = T0,
              scope: str = "command_center") -> NextBestAction:
    return NextBestAction(
        id=f"nba_{rule}",
        title=rule,
        reason="because",
        priority=priority,
        score=score,
        source_type="test",
        entity_type=scope,
        entity_id=scope,
        dedupe_key=f"nba:{rule}:{scope}",
        created_by_rule=rule,
        last_seen_at=created_at,
        created_at=created_at,
        updated_at=created_at,
    )


def _report(rule: str, lift: float) -> EffectivenessReport:
    return EffectivenessReport(by_rule_key={rule: RuleEffectiveness(
        rule_key=rule,
        executions=1,
        avg_risk_open_delta=0,
        avg_risk_critical_delta=0,
        band_improvement_rate=0,
        net_lift_score=lift,
    )})


class TestComputeScore:
    def test_base_scores(self):
        assert compute_score(_make_candidate(priority=Priority.HIGH)).total == 75
        assert compute_score(_make_candidate(priority=Priority.MEDIUM)).total == 55
        assert compute_score(_make_candidate(priority=Priority.LOW)).total == 30

    def test_critical_gets_impact_boost(self):
        factors = compute_score(_make_candidate(priority=Priority.CRITICAL))
        assert factors.impact_boost == 5
        assert factors.total == 95

    def test_total_clamped_to_100(self):
        factors = compute_score(
            _make_candidate(priority=Priority.CRITICAL, count_boost=10),
            learned_weights={"r1": 10},
            effectiveness=_report("r1", 10),
        )
        assert factors.total == 100

    def test_learned_penalty_below_threshold(self):
        factors = compute_score(_make_candidate(), learned_weights={"r1": -3})
        assert factors.learned_boost == -9
        assert factors.total == 66

    def test_mark_done_weight_applies_to_every_rule(self):
        weights = {"mark_done": 2.0, "snooze_1d": -5.0}
        assert compute_score(_make_candidate("r1"), action_weights=weights).learned_boost == 2
        assert compute_score(_make_candidate("r2"), action_weights=weights).total == 77

    def test_action_weight_combines_with_rule_weight(self):
        factors = compute_score(
            _make_candidate(), learned_weights={"r1": -3}, action_weights={"mark_done": 2.0}
        )
        assert factors.learned_boost == -7

    def test_effectiveness_applies_per_rule(self):
        factors = compute_score(_make_candidate(), effectiveness=_report("r1", 2.4))
        assert factors.effectiveness_boost == 2
        other = compute_score(_make_candidate("r2"), effectiveness=_report("r1", 2.4))
        assert other.effectiveness_boost == 0

    def test_score_candidates_fills_score(self):
        scored = score_candidates([_make_candidate(count_boost=3)])
        assert scored[0].score == 78


class TestEffectivenessBoost:
    @pytest.mark.parametrize("value", [-1e9, -10, -6.5, -0.5, 0, 0.49, 2.5, 6.4, 10, 1e9,
                                       math.inf, -math.inf])
    def test_bounded(self, value):
        assert -6 <= effectiveness_boost(value) <= 6

    def test_nan_is_zero(self):
        assert effectiveness_boost(float("nan")) == 0

    def test_rounds_half_up(self):
        assert effectiveness_boost(2.5) == 3
        assert effectiveness_boost(-2.5) == -2


class TestRank:
    def test_tier_beats_score(self):
        high = _make_nba("high", Priority.HIGH, 75)
        medium = _make_nba("medium", Priority.MEDIUM, 99)
        assert [a.created_by_rule for a in rank([medium, high])] == ["high", "medium"]

    def test_score_then_recency_then_key(self):
        older = _make_nba("b_old", Priority.HIGH, 80, T0)
        newer = _make_nba("c_new", Priority.HIGH, 80, T0 + timedelta(hours=1))
        tie = _make_nba("a_tie", Priority.HIGH, 80, T0)
        top = _make_nba("z_top", Priority.HIGH, 90, T0)
        ordered = [a.created_by_rule for a in rank([older, tie, newer, top])]
        assert ordered == ["z_top", "c_new", "a_tie", "b_old"]

    def test_top_n_scope(self):
        items = [
            _make_nba("a", Priority.HIGH, 80),
            _make_nba("b", Priority.CRITICAL, 95, scope="founder_growth"),
            _make_nba("c", Priority.LOW, 30),
        ]
        picked = top_n(items, 1, entity_type="command_center", entity_id="command_center")
        assert [a.created_by_rule for a in picked] == ["a"]
        assert top_n(items, 0) == []
