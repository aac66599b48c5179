"""Learning Model — memory events, learned weights, effectiveness and policy suggestions."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class WeightKind(str, Enum):
    RULE = "rule"
    ACTION = "action"


class MemorySourceType(str, Enum):
    NBA_EXECUTE = "nba_execute"
    NBA_DISMISS = "nba_dismiss"
    NBA_SNOOZE = "nba_snooze"


class MemoryOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    IMPROVED = "improved"
    NEUTRAL = "neutral"
    WORSENED = "worsened"


class SuggestionType(str, Enum):
    SUPPRESSION_30D = "suppression_30d"
    RAISE_RISK = "raise_risk"
    WEIGHT_ADJUSTMENT = "weight_adjustment"


class WeightStats(BaseModel):
    total: int = 0
    success_count: int = 0
    last_seen_at: Optional[datetime] = None


class OperatorLearnedWeight(BaseModel):
    """Per-rule (or per-action) bias on ranking. Mutated only by the policy engine."""

    actor_user_id: str
    kind: WeightKind = WeightKind.RULE
    key: str
    weight: float = Field(ge=-10.0, le=10.0, default=0.0)
    stats: WeightStats = WeightStats()
    updated_at: datetime


class OperatorMemoryEvent(BaseModel):
    """What the operator did with a suggestion. Write-once."""

    id: str
    actor_user_id: str
    source_type: MemorySourceType
    rule_key: Optional[str] = None
    action_key: Optional[str] = None
    outcome: MemoryOutcome
    meta: dict = {}
    created_at: datetime


class RuleSuppression(BaseModel):
    """An applied suppression. Rule output for the scope is dropped until it lapses."""

    id: str
    entity_type: str
    entity_id: str
    rule_key: str
    status: str = "active"                  # "active" | "revoked"
    reason: str
    suppressed_until: datetime
    created_at: datetime


# --- Effectiveness ---

class RuleEffectiveness(BaseModel):
    rule_key: str
    executions: int
    avg_risk_open_delta: float
    avg_risk_critical_delta: float
    avg_score_delta: Optional[float] = None
    band_improvement_rate: float = Field(ge=0.0, le=1.0)
    net_lift_score: float = Field(ge=-10.0, le=10.0)
    dismiss_count: int = 0


class WeightAdjustment(BaseModel):
    rule_key: str
    suggested_delta: int                    # In [-2, 2]


class EffectivenessReport(BaseModel):
    by_rule_key: Dict[str, RuleEffectiveness] = {}
    top_effective: List[RuleEffectiveness] = []
    top_noisy: List[RuleEffectiveness] = []
    recommended_weight_adjustments: List[WeightAdjustment] = []


# --- Policy ---

class RuleWindowStats(BaseModel):
    execute_success: int = 0
    execute_failure: int = 0
    dismiss: int = 0
    snooze: int = 0
    total: int = 0
    dismiss_rate: float = 0.0
    success_rate: float = 0.0


class WindowStats(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    by_rule_key: Dict[str, RuleWindowStats] = {}


class TrendDiff(BaseModel):
    rule_key: str
    current_count: int
    prior_count: int
    delta: int
    direction: str                          # "up" | "down" | "unchanged"


class TrendDiffs(BaseModel):
    recurring: List[TrendDiff] = []
    dismissed: List[TrendDiff] = []
    successful: List[TrendDiff] = []


class Evidence(BaseModel):
    key: str
    value: Any


class PolicySuggestion(BaseModel):
    """Advisory only. Applying one is a separate, explicit step."""

    type: SuggestionType
    rule_key: str
    confidence: float = Field(ge=0.0, le=1.0)
    reasons: List[str] = []
    evidence: List[Evidence] = []
    severity: Optional[str] = None          # "medium" | "high" | "critical"
    suggested_delta: Optional[int] = None   # weight_adjustment only

    def evidence_value(self, key: str, default: Any = None) -> Any:
        for e in self.evidence:
            if e.key == key:
                return e.value
        return default


class PatternAlert(BaseModel):
    rule_key: str
    severity: str
    title: str
    description: str
    dedupe_key: str                         # "pattern:<rule>:<YYYY-MM-DD>"
    source: SuggestionType
    risk_flag_exists: bool = False
