"""Operator Engine data models."""

from operator_engine.models.attribution import (
    BAND_ORDER,
    AttributionContext,
    AttributionDelta,
    AttributionSourceType,
    BandChange,
    NextActionSummary,
    OperatorAttribution,
    RiskSummary,
    ScoreSummary,
)
from operator_engine.models.context import RuleContext
from operator_engine.models.learning import (
    EffectivenessReport,
    Evidence,
    MemoryOutcome,
    MemorySourceType,
    OperatorLearnedWeight,
    OperatorMemoryEvent,
    PatternAlert,
    PolicySuggestion,
    RuleEffectiveness,
    RuleSuppression,
    RuleWindowStats,
    SuggestionType,
    TrendDiff,
    TrendDiffs,
    WeightAdjustment,
    WeightKind,
    WeightStats,
    WindowStats,
)
from operator_engine.models.next_action import (
    ActionRunResult,
    ChecklistItem,
    ExecutionMode,
    ExecutionStatus,
    ExplanationEvidence,
    Link,
    NextActionCandidate,
    NextActionExecution,
    NextActionExplanation,
    NextActionStatus,
    NextActionTemplate,
    NextBestAction,
    Priority,
    StatusTransition,
    SuggestedAction,
)
from operator_engine.models.notification import NotificationEvent
from operator_engine.models.risk import (
    TIER_RANK,
    RiskCandidate,
    RiskFlag,
    RiskStatus,
    Severity,
)

__all__ = [
    "ActionRunResult",
    "AttributionContext",
    "AttributionDelta",
    "AttributionSourceType",
    "BAND_ORDER",
    "BandChange",
    "ChecklistItem",
    "EffectivenessReport",
    "Evidence",
    "ExecutionMode",
    "ExecutionStatus",
    "ExplanationEvidence",
    "Link",
    "MemoryOutcome",
    "MemorySourceType",
    "NextActionCandidate",
    "NextActionExecution",
    "NextActionExplanation",
    "NextActionStatus",
    "NextActionTemplate",
    "NextActionSummary",
    "NextBestAction",
    "NotificationEvent",
    "OperatorAttribution",
    "OperatorLearnedWeight",
    "OperatorMemoryEvent",
    "PatternAlert",
    "PolicySuggestion",
    "Priority",
    "RiskCandidate",
    "RiskFlag",
    "RiskStatus",
    "RiskSummary",
    "RuleContext",
    "RuleEffectiveness",
    "RuleSuppression",
    "RuleWindowStats",
    "ScoreSummary",
    "Severity",
    "StatusTransition",
    "SuggestedAction",
    "SuggestionType",
    "TIER_RANK",
    "TrendDiff",
    "TrendDiffs",
    "WeightAdjustment",
    "WeightKind",
    "WeightStats",
    "WindowStats",
]
