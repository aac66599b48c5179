"""
Effectiveness Aggregator — net lift per rule from recorded attributions.

Each attribution contributes to its rule's net lift:
- strong positive (critical count down, band up, or score +5)  → +2
- strong negative (critical count up, band down, or score -5)  → -2
- otherwise a weak signal: ±0.5 for any critical change, ±0.3 for |score| ≥ 2

The mean contribution, clamped to [-10, 10], is the rule's net lift score.
"""

import math
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from operator_engine.attribution.recorder import (
    STRONG_NEGATIVE,
    STRONG_POSITIVE,
    classify_delta,
)
from operator_engine.models.attribution import AttributionDelta, OperatorAttribution
from operator_engine.models.learning import (
    EffectivenessReport,
    RuleEffectiveness,
    WeightAdjustment,
)
from operator_engine.ranking.ranking import effectiveness_boost
from operator_engine.store.sqlite import EngineStore

NET_LIFT_BOUND = 10.0
STRONG_CONTRIBUTION = 2.0
WEAK_CRITICAL_CONTRIBUTION = 0.5
WEAK_SCORE_CONTRIBUTION = 0.3
WEAK_SCORE_THRESHOLD = 2
NOISY_DISMISS_MIN = 2
WEIGHT_ADJUSTMENT_MIN_LIFT = 0.5
WEIGHT_ADJUSTMENT_FACTOR = 0.5
WEIGHT_ADJUSTMENT_BOUND = 2
TOP_LIMIT = 10

__all__ = [
    "EffectivenessAggregator",
    "aggregate_effectiveness",
    "contribution",
    "effectiveness_boost",
]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def contribution(delta: AttributionDelta) -> float:
    """One attribution's contribution to net lift."""
    kind = classify_delta(delta)
    if kind == STRONG_POSITIVE:
        return STRONG_CONTRIBUTION
    if kind == STRONG_NEGATIVE:
        return -STRONG_CONTRIBUTION

    value = 0.0
    if delta.risk_critical_delta < 0:
        value += WEAK_CRITICAL_CONTRIBUTION
    elif delta.risk_critical_delta > 0:
        value -= WEAK_CRITICAL_CONTRIBUTION
    score_delta = delta.score_delta or 0
    if score_delta >= WEAK_SCORE_THRESHOLD:
        value += WEAK_SCORE_CONTRIBUTION
    elif score_delta <= -WEAK_SCORE_THRESHOLD:
        value -= WEAK_SCORE_CONTRIBUTION
    return value


def _summarize(
    rule_key: str, deltas: List[AttributionDelta], dismiss_count: int
) -> RuleEffectiveness:
    n = len(deltas)
    score_deltas = [d.score_delta for d in deltas if d.score_delta is not None]
    improved = sum(1 for d in deltas if d.band_change and d.band_change.direction > 0)
    lift = sum(contribution(d) for d in deltas) / max(1, n)
    return RuleEffectiveness(
        rule_key=rule_key,
        executions=n,
        avg_risk_open_delta=sum(d.risk_open_delta for d in deltas) / n,
        avg_risk_critical_delta=sum(d.risk_critical_delta for d in deltas) / n,
        avg_score_delta=sum(score_deltas) / len(score_deltas) if score_deltas else None,
        band_improvement_rate=improved / n,
        net_lift_score=max(-NET_LIFT_BOUND, min(NET_LIFT_BOUND, lift)),
        dismiss_count=dismiss_count,
    )


def aggregate_effectiveness(
    attributions: Iterable[OperatorAttribution],
    dismiss_counts: Optional[Dict[str, int]] = None,
) -> EffectivenessReport:
    """
    Group attributions by rule key and compute per-rule effectiveness.
    Attributions without a rule key are ignored.
    """
    dismiss_counts = dismiss_counts or {}
    grouped: Dict[str, List[AttributionDelta]] = {}
    for a in attributions:
        if not a.rule_key:
            continue
        grouped.setdefault(a.rule_key, []).append(a.delta)

    by_rule_key = {
        rk: _summarize(rk, deltas, dismiss_counts.get(rk, 0))
        for rk, deltas in grouped.items()
    }

    ordered = sorted(by_rule_key.values(), key=lambda r: (-r.net_lift_score, r.rule_key))
    top_effective = [r for r in ordered if r.net_lift_score > 0][:TOP_LIMIT]
    top_noisy = sorted(
        (r for r in ordered if r.dismiss_count >= NOISY_DISMISS_MIN and r.net_lift_score <= 0),
        key=lambda r: (-r.dismiss_count, r.rule_key),
    )[:TOP_LIMIT]

    adjustments = []
    for r in ordered:
        if abs(r.net_lift_score) < WEIGHT_ADJUSTMENT_MIN_LIFT:
            continue
        suggested = _round_half_up(r.net_lift_score * WEIGHT_ADJUSTMENT_FACTOR)
        suggested = max(-WEIGHT_ADJUSTMENT_BOUND, min(WEIGHT_ADJUSTMENT_BOUND, suggested))
        adjustments.append(WeightAdjustment(rule_key=r.rule_key, suggested_delta=suggested))

    return EffectivenessReport(
        by_rule_key=by_rule_key,
        top_effective=top_effective,
        top_noisy=top_noisy,
        recommended_weight_adjustments=adjustments[:TOP_LIMIT],
    )


class EffectivenessAggregator:
    """Reads an actor's attributions from the store and aggregates them."""

    def __init__(self, store: EngineStore):
        self.store = store

    def compute(
        self,
        actor_user_id: str,
        start: datetime,
        end: datetime,
        dismiss_counts: Optional[Dict[str, int]] = None,
    ) -> EffectivenessReport:
        attributions = self.store.list_attributions(actor_user_id, start, end)
        return aggregate_effectiveness(attributions, dismiss_counts)

    def net_lift_map(self, actor_user_id: str, start: datetime, end: datetime) -> Dict[str, float]:
        report = self.compute(actor_user_id, start, end)
        return {rk: r.net_lift_score for rk, r in report.by_rule_key.items()}
