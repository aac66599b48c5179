"""
Policy Suggestion Engine — memory events in, advisory suggestions out.

Operational learning (automatic):
- Every execute, dismiss and snooze writes a memory event and nudges the
  actor's learned weight for the rule (and, for executes, the action).

Normative learning (explicit apply only):
- Suggestions are derived from window statistics and never applied on
  their own. ``apply_suggestion`` is the separate, operator-triggered step.
"""

import math
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional

from operator_engine.errors import ValidationError
from operator_engine.logging import get_logger
from operator_engine.models.learning import (
    EffectivenessReport,
    Evidence,
    MemoryOutcome,
    MemorySourceType,
    OperatorLearnedWeight,
    OperatorMemoryEvent,
    PatternAlert,
    PolicySuggestion,
    RuleSuppression,
    RuleWindowStats,
    SuggestionType,
    TrendDiff,
    TrendDiffs,
    WeightKind,
    WeightStats,
    WindowStats,
)
from operator_engine.models.next_action import (
    ExecutionStatus,
    NextActionExecution,
    NextBestAction,
)
from operator_engine.models.risk import RiskCandidate, Severity
from operator_engine.rules.next_action_rules import COMMAND_CENTER, CRITICAL_RULE_KEYS
from operator_engine.sanitize import sanitize_meta
from operator_engine.store.sqlite import EngineStore, new_id

logger = get_logger("operator_engine.policy")

UNKNOWN_RULE = "unknown"

# Suggestion thresholds
SUPPRESSION_DISMISS_MIN = 3
SUPPRESSION_SUCCESS_RATE_MAX = 0.25
SUPPRESSION_CONFIDENCE_DIVISOR = 6
SUPPRESSION_DAYS = 30
ALERT_FAILURE_MIN = 2
ALERT_DELTA_MEDIUM = 3
ALERT_DELTA_HIGH = 5
TREND_LIMIT = 10

# Learned weight deltas
WEIGHT_BOUND = 10.0
WEIGHT_DELTA_SUCCESS = 1.0
WEIGHT_DELTA_FAILURE = -1.0
WEIGHT_DELTA_DISMISS = -0.5
WEIGHT_DELTA_SNOOZE = -0.25

SUCCESS_OUTCOMES = (MemoryOutcome.SUCCESS, MemoryOutcome.IMPROVED)
FAILURE_OUTCOMES = (MemoryOutcome.FAILURE, MemoryOutcome.WORSENED)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clamp_weight(weight: float) -> float:
    return max(-WEIGHT_BOUND, min(WEIGHT_BOUND, weight))


# === WINDOW STATISTICS ===

def compute_window_stats(
    events: Iterable[OperatorMemoryEvent],
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> WindowStats:
    """
    Per-rule counts over a window. Events without a rule key are grouped
    under ``unknown``.
    """
    by_rule: Dict[str, RuleWindowStats] = {}
    for e in events:
        s = by_rule.setdefault(e.rule_key or UNKNOWN_RULE, RuleWindowStats())
        s.total += 1
        if e.source_type == MemorySourceType.NBA_EXECUTE:
            if e.outcome in SUCCESS_OUTCOMES:
                s.execute_success += 1
            elif e.outcome in FAILURE_OUTCOMES:
                s.execute_failure += 1
        elif e.source_type == MemorySourceType.NBA_DISMISS:
            s.dismiss += 1
        elif e.source_type == MemorySourceType.NBA_SNOOZE:
            s.snooze += 1

    for s in by_rule.values():
        executed = s.execute_success + s.execute_failure
        s.dismiss_rate = s.dismiss / s.total if s.total else 0.0
        s.success_rate = s.execute_success / executed if executed else 0.0

    return WindowStats(start=start, end=end, by_rule_key=by_rule)


def compute_trend_diffs(current: WindowStats, prior: WindowStats) -> TrendDiffs:
    """Compare event totals per rule between two consecutive windows."""
    recurring: List[TrendDiff] = []
    dismissed: List[TrendDiff] = []
    successful: List[TrendDiff] = []

    for rk in sorted(set(current.by_rule_key) | set(prior.by_rule_key)):
        curr = current.by_rule_key.get(rk)
        prev = prior.by_rule_key.get(rk)
        current_count = curr.total if curr else 0
        prior_count = prev.total if prev else 0
        delta = current_count - prior_count
        if delta > 0:
            direction = "up"
        elif delta < 0:
            direction = "down"
        else:
            direction = "unchanged"
        diff = TrendDiff(
            rule_key=rk,
            current_count=current_count,
            prior_count=prior_count,
            delta=delta,
            direction=direction,
        )
        recurring.append(diff)
        if (curr and curr.dismiss) or (prev and prev.dismiss):
            dismissed.append(diff)
        if (curr and curr.execute_success) or (prev and prev.execute_success):
            successful.append(diff)

    def by_abs_delta(diffs: List[TrendDiff]) -> List[TrendDiff]:
        return sorted(diffs, key=lambda d: abs(d.delta), reverse=True)[:TREND_LIMIT]

    return TrendDiffs(
        recurring=by_abs_delta(recurring),
        dismissed=by_abs_delta(dismissed),
        successful=by_abs_delta(successful),
    )


# === SUGGESTIONS ===

def _raise_risk_severity(rule_key: str, delta: int) -> str:
    if rule_key in CRITICAL_RULE_KEYS:
        return Severity.CRITICAL.value
    if delta >= ALERT_DELTA_HIGH:
        return Severity.HIGH.value
    return Severity.MEDIUM.value


def derive_policy_suggestions(
    current: WindowStats,
    diffs: TrendDiffs,
    effectiveness: Optional[EffectivenessReport] = None,
) -> List[PolicySuggestion]:
    """Deterministic suggestions, highest confidence first."""
    suggestions: List[PolicySuggestion] = []
    deltas = {d.rule_key: d.delta for d in diffs.recurring}

    for rk, s in current.by_rule_key.items():
        if rk == UNKNOWN_RULE:
            continue

        if s.dismiss >= SUPPRESSION_DISMISS_MIN and s.success_rate <= SUPPRESSION_SUCCESS_RATE_MAX:
            suggestions.append(PolicySuggestion(
                type=SuggestionType.SUPPRESSION_30D,
                rule_key=rk,
                confidence=min(1.0, s.dismiss / SUPPRESSION_CONFIDENCE_DIVISOR),
                reasons=[
                    f"{s.dismiss} dismissals in window",
                    f"Success rate {s.success_rate * 100:.0f}% <= "
                    f"{SUPPRESSION_SUCCESS_RATE_MAX * 100:.0f}%",
                ],
                evidence=[
                    Evidence(key="dismiss_count", value=s.dismiss),
                    Evidence(key="success_rate", value=s.success_rate),
                    Evidence(key="total_count", value=s.total),
                ],
            ))

        failures = s.execute_failure
        delta = deltas.get(rk, 0)
        if failures >= ALERT_FAILURE_MIN or delta >= ALERT_DELTA_MEDIUM:
            reasons = []
            if failures >= ALERT_FAILURE_MIN:
                reasons.append(f"{failures} failures in window")
            if delta >= ALERT_DELTA_MEDIUM:
                reasons.append(f"Delta +{delta} vs prior period")
            suggestions.append(PolicySuggestion(
                type=SuggestionType.RAISE_RISK,
                rule_key=rk,
                confidence=min(1.0, (failures + max(0, delta)) / 10),
                reasons=reasons,
                evidence=[
                    Evidence(key="failure_count", value=failures),
                    Evidence(key="delta", value=delta),
                ],
                severity=_raise_risk_severity(rk, delta),
            ))

    if effectiveness is not None:
        for adj in effectiveness.recommended_weight_adjustments:
            if adj.suggested_delta == 0:
                continue
            lift = effectiveness.by_rule_key[adj.rule_key].net_lift_score
            harmful = adj.suggested_delta < 0
            suggestions.append(PolicySuggestion(
                type=SuggestionType.WEIGHT_ADJUSTMENT,
                rule_key=adj.rule_key,
                confidence=min(1.0, abs(lift) / 10),
                reasons=[
                    f"Net lift {lift:+.2f} over window",
                    "Executions tend to make things worse" if harmful
                    else "Executions tend to improve outcomes",
                ],
                evidence=[
                    Evidence(key="net_lift_score", value=lift),
                    Evidence(key="suggested_delta", value=adj.suggested_delta),
                ],
                suggested_delta=adj.suggested_delta,
            ))

    suggestions.sort(key=lambda s: s.confidence, reverse=True)
    return suggestions


def build_pattern_alerts(
    suggestions: Iterable[PolicySuggestion],
    open_pattern_keys: Iterable[str] = (),
    today: Optional[date] = None,
) -> List[PatternAlert]:
    """One alert per rule key with a raise_risk suggestion."""
    window_key = (today or _utcnow().date()).isoformat()
    open_keys = set(open_pattern_keys)
    alerts: List[PatternAlert] = []
    seen = set()
    for s in suggestions:
        if s.type != SuggestionType.RAISE_RISK or s.rule_key in seen:
            continue
        seen.add(s.rule_key)
        alerts.append(PatternAlert(
            rule_key=s.rule_key,
            severity=s.severity or Severity.MEDIUM.value,
            title=f"Pattern alert: {s.rule_key}",
            description=". ".join(s.reasons),
            dedupe_key=f"pattern:{s.rule_key}:{window_key}",
            source=s.type,
            risk_flag_exists=pattern_flag_key(s.rule_key) in open_keys,
        ))
    return alerts


def pattern_flag_key(rule_key: str) -> str:
    return f"pattern:{rule_key}"


# === ENGINE ===

class PolicyEngine:
    """
    Owns memory ingestion, learned weights and the explicit apply step.
    """

    def __init__(self, store: EngineStore, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or _utcnow

    # --- Operational learning ---

    def _bump_weight(
        self,
        actor_user_id: str,
        kind: WeightKind,
        key: str,
        delta: float,
        success: bool = False,
        seen_at: Optional[datetime] = None,
    ) -> OperatorLearnedWeight:
        now = self.clock()
        with self.store.locked():
            existing = self.store.get_weight(actor_user_id, kind, key)
            weight = existing.weight if existing else 0.0
            stats = existing.stats if existing else WeightStats()
            updated = OperatorLearnedWeight(
                actor_user_id=actor_user_id,
                kind=kind,
                key=key,
                weight=clamp_weight(weight + delta),
                stats=WeightStats(
                    total=stats.total + 1,
                    success_count=stats.success_count + (1 if success else 0),
                    last_seen_at=seen_at or now,
                ),
                updated_at=now,
            )
            return self.store.save_weight(updated)

    def _write_event(
        self,
        actor_user_id: str,
        source_type: MemorySourceType,
        outcome: MemoryOutcome,
        rule_key: Optional[str],
        action_key: Optional[str],
        meta: dict,
    ) -> OperatorMemoryEvent:
        return self.store.insert_memory_event(OperatorMemoryEvent(
            id=new_id("mem"),
            actor_user_id=actor_user_id,
            source_type=source_type,
            rule_key=rule_key,
            action_key=action_key,
            outcome=outcome,
            meta=sanitize_meta(meta) or {},
            created_at=self.clock(),
        ))

    def ingest_execution(
        self,
        actor_user_id: str,
        execution: NextActionExecution,
        rule_key: Optional[str] = None,
        attribution_outcome: Optional[MemoryOutcome] = None,
    ) -> OperatorMemoryEvent:
        """
        Record an execute. An attribution outcome, when available, takes
        precedence over the raw success/failure of the execution.
        """
        if attribution_outcome is not None:
            outcome = MemoryOutcome(attribution_outcome)
        elif execution.status == ExecutionStatus.SUCCESS:
            outcome = MemoryOutcome.SUCCESS
        else:
            outcome = MemoryOutcome.FAILURE

        event = self._write_event(
            actor_user_id,
            MemorySourceType.NBA_EXECUTE,
            outcome,
            rule_key,
            execution.action_key,
            {"execution_id": execution.id, "next_action_id": execution.next_action_id},
        )

        if outcome in SUCCESS_OUTCOMES:
            delta = WEIGHT_DELTA_SUCCESS
        elif outcome in FAILURE_OUTCOMES:
            delta = WEIGHT_DELTA_FAILURE
        else:
            delta = 0.0
        if delta:
            success = outcome in SUCCESS_OUTCOMES
            if rule_key:
                self._bump_weight(actor_user_id, WeightKind.RULE, rule_key, delta, success, execution.started_at)
            self._bump_weight(
                actor_user_id, WeightKind.ACTION, execution.action_key, delta, success, execution.started_at
            )
        logger.debug("memory.ingest", source="nba_execute", rule_key=rule_key, outcome=outcome.value)
        return event

    def ingest_dismiss(self, actor_user_id: str, action: NextBestAction) -> OperatorMemoryEvent:
        rule_key = action.created_by_rule or UNKNOWN_RULE
        event = self._write_event(
            actor_user_id,
            MemorySourceType.NBA_DISMISS,
            MemoryOutcome.NEUTRAL,
            rule_key,
            "dismiss",
            {"next_action_id": action.id, "dedupe_key": action.dedupe_key},
        )
        self._bump_weight(actor_user_id, WeightKind.RULE, rule_key, WEIGHT_DELTA_DISMISS)
        logger.debug("memory.ingest", source="nba_dismiss", rule_key=rule_key)
        return event

    def ingest_snooze(
        self, actor_user_id: str, action: NextBestAction, action_key: str = "snooze_1d"
    ) -> OperatorMemoryEvent:
        rule_key = action.created_by_rule or UNKNOWN_RULE
        event = self._write_event(
            actor_user_id,
            MemorySourceType.NBA_SNOOZE,
            MemoryOutcome.NEUTRAL,
            rule_key,
            action_key,
            {"next_action_id": action.id, "dedupe_key": action.dedupe_key},
        )
        self._bump_weight(actor_user_id, WeightKind.RULE, rule_key, WEIGHT_DELTA_SNOOZE)
        logger.debug("memory.ingest", source="nba_snooze", rule_key=rule_key)
        return event

    # --- Reads ---

    def window_stats(self, actor_user_id: str, start: datetime, end: datetime) -> WindowStats:
        events = self.store.list_memory_events(actor_user_id, start, end)
        return compute_window_stats(events, start, end)

    def rule_weights(self, actor_user_id: str) -> Dict[str, float]:
        return {w.key: w.weight for w in self.store.list_weights(actor_user_id, WeightKind.RULE)}

    def action_weights(self, actor_user_id: str) -> Dict[str, float]:
        return {w.key: w.weight for w in self.store.list_weights(actor_user_id, WeightKind.ACTION)}

    # --- Normative learning: explicit apply ---

    def apply_suggestion(
        self,
        actor_user_id: str,
        suggestion_type: SuggestionType,
        rule_key: str,
        suggested_delta: Optional[int] = None,
        severity: Optional[str] = None,
        entity_type: str = COMMAND_CENTER,
        entity_id: str = COMMAND_CENTER,
    ) -> dict:
        """
        Apply one suggestion.

        - suppression_30d: create or refresh a 30-day suppression for the rule
          in the given scope.
        - weight_adjustment: add ``suggested_delta`` to the learned rule weight.
        - raise_risk: open (or refresh) the ``pattern:<rule>`` risk flag.
        """
        if not rule_key:
            raise ValidationError("rule_key is required")
        try:
            suggestion_type = SuggestionType(suggestion_type)
        except ValueError:
            raise ValidationError(
                f"Unknown suggestion type: {suggestion_type}",
                {"allowed": [t.value for t in SuggestionType]},
            ) from None
        now = self.clock()

        if suggestion_type == SuggestionType.SUPPRESSION_30D:
            suppression = self.store.save_suppression(RuleSuppression(
                id=new_id("supp"),
                entity_type=entity_type,
                entity_id=entity_id,
                rule_key=rule_key,
                reason="Memory policy: earned suppression",
                suppressed_until=now + timedelta(days=SUPPRESSION_DAYS),
                created_at=now,
            ))
            logger.info("policy.applied", type=suggestion_type.value, rule_key=rule_key)
            return {"type": suggestion_type.value, "suppression": suppression.model_dump(mode="json")}

        if suggestion_type == SuggestionType.WEIGHT_ADJUSTMENT:
            if suggested_delta is None or isinstance(suggested_delta, bool) or not math.isfinite(suggested_delta):
                raise ValidationError("suggested_delta is required for weight_adjustment")
            weight = self._bump_weight(actor_user_id, WeightKind.RULE, rule_key, float(suggested_delta))
            logger.info(
                "policy.applied", type=suggestion_type.value, rule_key=rule_key, delta=suggested_delta
            )
            return {"type": suggestion_type.value, "weight": weight.model_dump(mode="json")}

        key = pattern_flag_key(rule_key)
        candidate = RiskCandidate(
            key=key,
            dedupe_key=f"risk:{key}",
            scope="system",
            title=f"Pattern alert: {rule_key}",
            description="Recurring failures or rising volume for this rule",
            severity=Severity(severity or Severity.MEDIUM.value),
            source_type="memory_policy",
            source_id=rule_key,
            evidence={"rule_key": rule_key},
            created_by_rule="memory_policy",
        )
        result = self.store.upsert_risk_flags([candidate], now)
        flag = self.store.get_risk_flag_by_dedupe_key(candidate.dedupe_key)
        logger.info("policy.applied", type=suggestion_type.value, rule_key=rule_key)
        return {
            "type": suggestion_type.value,
            "risk_flag": flag.model_dump(mode="json") if flag else None,
            "created": result.created,
            "updated": result.updated,
        }
