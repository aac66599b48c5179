"""
Ranking & Selection — score candidates and order what the operator sees.

Behavioral Contract:
- Ordering keys, in order: priority tier desc, score desc, recency desc,
  dedupe_key asc. Tier is the primary key, so no amount of learned or
  effectiveness boost can push a lower tier above a higher one.
- Scores are integers in [0, 100].
- Pure: no store access. Learned rule and action weights and effectiveness
  are passed in.
"""

import math
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, TypeVar, Union

from pydantic import BaseModel

from operator_engine.models.learning import EffectivenessReport
from operator_engine.models.next_action import NextActionCandidate, NextBestAction, Priority
from operator_engine.models.risk import TIER_RANK, RiskFlag

BASE_SCORE = {
    Priority.CRITICAL: 90,
    Priority.HIGH: 75,
    Priority.MEDIUM: 55,
    Priority.LOW: 30,
}
MAX_COUNT_BOOST = 10
CRITICAL_IMPACT_BOOST = 5
LEARNED_MULTIPLIER = 2
ACTION_WEIGHT_MULTIPLIER = 1
# Learned action weight applied to every candidate.
COMPLETION_ACTION_KEY = "mark_done"
LEARNED_PENALTY_THRESHOLD = -3
LEARNED_PENALTY = -3
EFFECTIVENESS_BOOST_LIMIT = 6

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

Rankable = TypeVar("Rankable", NextActionCandidate, NextBestAction)


class ScoreFactors(BaseModel):
    """Breakdown of a computed score, kept for explainability."""

    base: int
    count_boost: int = 0
    impact_boost: int = 0
    learned_boost: int = 0
    effectiveness_boost: int = 0
    total: int


def effectiveness_boost(net_lift_score: Optional[float]) -> int:
    """Map a net lift score to a bounded ranking boost in [-6, 6]."""
    if net_lift_score is None:
        return 0
    try:
        value = float(net_lift_score)
    except (TypeError, ValueError):
        return 0
    if math.isnan(value):
        return 0
    clamped = max(-EFFECTIVENESS_BOOST_LIMIT, min(EFFECTIVENESS_BOOST_LIMIT, value))
    # Round half up; clamped first so infinities never reach floor().
    return int(math.floor(clamped + 0.5))


def learned_boost(rule_weight: Optional[float], action_weight: Optional[float] = None) -> int:
    rule_weight = rule_weight or 0.0
    action_weight = action_weight or 0.0
    if not rule_weight and not action_weight:
        return 0
    boost = round(rule_weight * LEARNED_MULTIPLIER + action_weight * ACTION_WEIGHT_MULTIPLIER)
    if rule_weight <= LEARNED_PENALTY_THRESHOLD:
        boost += LEARNED_PENALTY
    return boost


def compute_score(
    candidate: NextActionCandidate,
    learned_weights: Optional[Dict[str, float]] = None,
    effectiveness: Optional[EffectivenessReport] = None,
    action_weights: Optional[Dict[str, float]] = None,
) -> ScoreFactors:
    """
    Score one action candidate.

    ``learned_weights`` maps rule key to the actor's learned rule weight;
    ``action_weights`` maps action key to the learned action weight.
    """
    base = BASE_SCORE[Priority(candidate.priority)]
    count = min(MAX_COUNT_BOOST, max(0, candidate.count_boost))
    impact = CRITICAL_IMPACT_BOOST if candidate.priority == Priority.CRITICAL else 0

    weight = (learned_weights or {}).get(candidate.created_by_rule)
    learned = learned_boost(weight, (action_weights or {}).get(COMPLETION_ACTION_KEY))

    lift = None
    if effectiveness is not None:
        stats = effectiveness.by_rule_key.get(candidate.created_by_rule)
        if stats is not None:
            lift = stats.net_lift_score
    eff = effectiveness_boost(lift)

    total = max(0, min(100, base + count + impact + learned + eff))
    return ScoreFactors(
        base=base,
        count_boost=count,
        impact_boost=impact,
        learned_boost=learned,
        effectiveness_boost=eff,
        total=total,
    )


def score_candidates(
    candidates: Iterable[NextActionCandidate],
    learned_weights: Optional[Dict[str, float]] = None,
    effectiveness: Optional[EffectivenessReport] = None,
    action_weights: Optional[Dict[str, float]] = None,
) -> List[NextActionCandidate]:
    """Return copies of the candidates with ``score`` filled in."""
    return [
        c.model_copy(
            update={"score": compute_score(c, learned_weights, effectiveness, action_weights).total}
        )
        for c in candidates
    ]


def _recency(item: Union[NextActionCandidate, NextBestAction]) -> datetime:
    value = getattr(item, "created_at", None) or getattr(item, "last_seen_at", None)
    if value is None:
        return _EPOCH
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def rank(items: Iterable[Rankable]) -> List[Rankable]:
    """Order actions by tier, score, recency, then dedupe key."""
    ordered = sorted(items, key=lambda i: i.dedupe_key)
    ordered.sort(key=_recency, reverse=True)
    ordered.sort(key=lambda i: (TIER_RANK[Priority(i.priority).value], i.score), reverse=True)
    return ordered


def top_n(
    items: Sequence[Rankable],
    n: int,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
) -> List[Rankable]:
    """The first ``n`` ranked items, optionally restricted to one scope."""
    if n <= 0:
        return []
    if entity_type is not None:
        items = [i for i in items if i.entity_type == entity_type]
    if entity_id is not None:
        items = [i for i in items if i.entity_id == entity_id]
    return rank(items)[:n]


def rank_flags(flags: Iterable[RiskFlag]) -> List[RiskFlag]:
    """Flags by severity tier, then most recently seen."""
    ordered = sorted(flags, key=lambda f: f.dedupe_key)
    ordered.sort(key=lambda f: f.last_seen_at, reverse=True)
    ordered.sort(key=lambda f: TIER_RANK[f.severity.value], reverse=True)
    return ordered
