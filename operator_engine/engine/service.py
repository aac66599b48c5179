"""
Operator Engine — wires rules, store, ranking, gate, orchestrator and learning.

This is the facade every outer surface (HTTP, scheduled jobs, tests) calls.
Rule snapshots come from an injected context provider, or are passed in
directly; the engine never computes dashboard counts itself.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from operator_engine.attribution.recorder import AttributionRecorder, ScoreReader
from operator_engine.attribution.telemetry import TelemetryChannel
from operator_engine.config import EngineSettings
from operator_engine.errors import NotFoundError, ValidationError
from operator_engine.execution.actions import ActionContext
from operator_engine.execution.orchestrator import ExecutionOrchestrator
from operator_engine.learning.effectiveness import EffectivenessAggregator
from operator_engine.learning.policy import (
    PolicyEngine,
    build_pattern_alerts,
    compute_trend_diffs,
    derive_policy_suggestions,
)
from operator_engine.logging import get_logger
from operator_engine.models.context import RuleContext
from operator_engine.models.learning import SuggestionType
from operator_engine.models.next_action import (
    ActionRunResult,
    NextActionStatus,
    NextActionTemplate,
    NextBestAction,
)
from operator_engine.models.risk import RiskFlag, RiskStatus, Severity
from operator_engine.notifications.gate import CooldownGate, Notifier
from operator_engine.ranking.ranking import rank_flags, score_candidates, top_n
from operator_engine.rules.registry import RuleRegistry, default_registry
from operator_engine.rules.templates import get_template
from operator_engine.store.sqlite import EngineStore

logger = get_logger("operator_engine.engine")

RANGES = {"7d": 7, "30d": 30}
RISK_RUN_KIND = "risk"
NBA_RUN_KIND = "next_actions"

Clock = Callable[[], datetime]
ContextProvider = Callable[[datetime], RuleContext]
ScoreRecompute = Callable[[str, str], Any]
DeliveryRetry = Callable[[str], Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_range(value: Optional[str]) -> str:
    return value if value in RANGES else "7d"


class OperatorEngine:
    """
    The Operator Engine.

    Usage:
        engine = OperatorEngine(context_provider=fetch_snapshot)
        engine.run_risk_rules()
        engine.run_next_actions(actor_user_id="u1")
        engine.run_action("mark_done", "execute", "u1", next_action_id=...)
    """

    def __init__(
        self,
        store: Optional[EngineStore] = None,
        settings: Optional[EngineSettings] = None,
        registry: Optional[RuleRegistry] = None,
        context_provider: Optional[ContextProvider] = None,
        score_reader: Optional[ScoreReader] = None,
        score_recompute: Optional[ScoreRecompute] = None,
        delivery_retry: Optional[DeliveryRetry] = None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or EngineSettings()
        self.store = store or EngineStore(self.settings.db_path)
        self.registry = registry or default_registry()
        self.context_provider = context_provider
        self.score_recompute = score_recompute
        self.delivery_retry = delivery_retry
        self.clock = clock or _utcnow

        self.telemetry = TelemetryChannel(self.settings.telemetry_queue_size)
        self.gate = CooldownGate(
            self.store,
            clock=self.clock,
            notifier=notifier,
            default_cooldown_seconds=self.settings.notification_cooldown_seconds,
        )
        self.recorder = AttributionRecorder(self.store, score_reader)
        self.policy = PolicyEngine(self.store, clock=self.clock)
        self.effectiveness = EffectivenessAggregator(self.store)
        self.orchestrator = ExecutionOrchestrator(
            store=self.store,
            recorder=self.recorder,
            policy=self.policy,
            telemetry=self.telemetry,
            clock=self.clock,
            runners=self._runners(),
            replay_window_seconds=self.settings.replay_window_seconds,
            default_scope=self.settings.default_scope,
            on_learned=self._invalidate_summary,
        )

        self._summary_cache: Dict[Tuple[str, str], Tuple[datetime, dict]] = {}
        self._cache_lock = threading.Lock()

    def _runners(self) -> Dict[str, Callable[[ActionContext], dict]]:
        runners: Dict[str, Callable[[ActionContext], dict]] = {
            "run_risk_rules": lambda ctx: self.run_risk_rules(),
            "run_next_actions": lambda ctx: self.run_next_actions(
                scope=ctx.entity_type, actor_user_id=ctx.actor_user_id
            ),
        }
        if self.score_recompute is not None:
            runners["recompute_score"] = self._recompute_score
        if self.delivery_retry is not None:
            runners["retry_failed_deliveries"] = self._retry_deliveries
        return runners

    def _recompute_score(self, ctx: ActionContext) -> dict:
        result = self.score_recompute(ctx.entity_type, ctx.entity_id)
        if hasattr(result, "model_dump"):
            return result.model_dump(mode="json")
        return dict(result or {})

    def _retry_deliveries(self, ctx: ActionContext) -> dict:
        result = self.delivery_retry(ctx.next_action.id)
        if hasattr(result, "model_dump"):
            return result.model_dump(mode="json")
        return dict(result or {})

    def _snapshot(self, context: Optional[RuleContext], now: datetime) -> RuleContext:
        if context is not None:
            return context
        if self.context_provider is None:
            raise ValidationError("No rule context supplied and no context provider configured")
        return self.context_provider(now)

    # === RISK ===

    def run_risk_rules(
        self, context: Optional[RuleContext] = None, scope: Optional[str] = None
    ) -> dict:
        """
        Evaluate risk rules, upsert flags, and pass every critical flag that
        was created or updated through the cooldown gate.
        """
        now = self.clock()
        snapshot = self._snapshot(context, now)
        candidates = self.registry.evaluate_flags(snapshot, scope=scope)
        result = self.store.upsert_risk_flags(candidates, now)

        critical_notified = 0
        for flag_id in result.touched:
            flag = self.store.get_risk_flag(flag_id)
            if flag is None or flag.severity != Severity.CRITICAL or flag.status != RiskStatus.OPEN:
                continue
            if self.gate.should_notify(
                f"risk:{flag.dedupe_key}",
                title=flag.title,
                message=flag.suggested_fix or flag.title,
            ):
                critical_notified += 1

        self.store.record_run(RISK_RUN_KIND, f"risk:{scope or 'all'}", now, result.created, result.updated)
        logger.info(
            "risk.upsert",
            created=result.created,
            updated=result.updated,
            skipped=result.skipped,
            critical_notified=critical_notified,
            candidate_count=len(candidates),
        )
        return {
            "created": result.created,
            "updated": result.updated,
            "skipped": result.skipped,
            "critical_notified": critical_notified,
            "last_run_at": now.isoformat(),
        }

    def list_risk_flags(self, status: Optional[str] = None) -> List[RiskFlag]:
        if status is not None:
            try:
                status = RiskStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown risk status: {status}") from None
        return rank_flags(self.store.list_risk_flags(status=status))

    def set_risk_status(
        self, flag_id: str, status: str, snoozed_until: Optional[datetime] = None
    ) -> RiskFlag:
        try:
            status = RiskStatus(status)
        except ValueError:
            raise ValidationError(
                f"Unknown risk status: {status}", {"allowed": [s.value for s in RiskStatus]}
            ) from None
        if status == RiskStatus.SNOOZED and snoozed_until is None:
            raise ValidationError("snoozed_until is required when snoozing")
        flag = self.store.set_risk_status(flag_id, status, self.clock(), snoozed_until)
        if flag is None:
            raise NotFoundError("Risk flag not found", {"id": flag_id})
        logger.info("risk.status_changed", flag_id=flag_id, status=status.value)
        return flag

    # === NEXT BEST ACTIONS ===

    def run_next_actions(
        self,
        scope: Optional[str] = None,
        actor_user_id: Optional[str] = None,
        context: Optional[RuleContext] = None,
    ) -> dict:
        """
        Evaluate next-action rules for a scope, drop suppressed rules, score
        with the actor's learned weights and effectiveness, and upsert.
        """
        scope = scope or self.settings.default_scope
        now = self.clock()
        snapshot = self._snapshot(context, now)
        released = self.store.release_expired_snoozes(now)

        candidates = self.registry.evaluate_actions(snapshot, scope=scope)
        suppressed = {s.rule_key for s in self.store.active_suppressions(scope, scope, now)}
        kept = [c for c in candidates if c.created_by_rule not in suppressed]

        weights: Dict[str, float] = {}
        action_weights: Dict[str, float] = {}
        report = None
        if actor_user_id:
            weights = self.policy.rule_weights(actor_user_id)
            action_weights = self.policy.action_weights(actor_user_id)
            window = timedelta(days=self.settings.effectiveness_window_days)
            report = self.effectiveness.compute(actor_user_id, now - window, now)
        scored = score_candidates(kept, weights, report, action_weights)
        result = self.store.upsert_next_actions(scored, now)

        run_key = f"nba:{actor_user_id or 'anon'}:{scope}:{scope}:{now.date().isoformat()}"
        self.store.record_run(NBA_RUN_KIND, run_key, now, result.created, result.updated)
        logger.info(
            "nba.run",
            scope=scope,
            created=result.created,
            updated=result.updated,
            skipped=result.skipped,
            suppressed=len(candidates) - len(kept),
            released=released,
        )
        return {
            "created": result.created,
            "updated": result.updated,
            "skipped": result.skipped,
            "suppressed": len(candidates) - len(kept),
            "run_key": run_key,
            "last_run_at": now.isoformat(),
        }

    def list_next_actions(
        self, scope: Optional[str] = None, n: int = 10, status: Optional[str] = "queued"
    ) -> List[NextBestAction]:
        scope = scope or self.settings.default_scope
        if status is not None:
            try:
                status = NextActionStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown next action status: {status}") from None
        items = self.store.list_next_actions(status=status, entity_type=scope, entity_id=scope)
        return top_n(items, n)

    def next_action_template(self, next_action_id: str) -> NextActionTemplate:
        """Playbook for the rule that created a next action."""
        action = self.store.get_next_action(next_action_id)
        if action is None:
            raise NotFoundError("Next action not found", {"next_action_id": next_action_id})
        return get_template(action.created_by_rule)

    def run_action(
        self,
        action_key: str,
        mode: str,
        actor_user_id: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        next_action_id: Optional[str] = None,
        params: Optional[dict] = None,
    ) -> ActionRunResult:
        result = self.orchestrator.run(
            action_key,
            mode,
            actor_user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            next_action_id=next_action_id,
            params=params,
        )
        if result.execution is not None and not result.replayed:
            self._invalidate_summary(actor_user_id)
        return result

    # === MEMORY ===

    def summary(self, actor_user_id: str, range_key: str = "7d") -> dict:
        """Pattern-learning summary for one actor, cached briefly per range."""
        range_key = parse_range(range_key)
        now = self.clock()
        cache_key = (actor_user_id, range_key)
        with self._cache_lock:
            cached = self._summary_cache.get(cache_key)
            if cached and cached[0] > now:
                return cached[1]

        value = self._build_summary(actor_user_id, range_key, now)
        expires = now + timedelta(seconds=self.settings.summary_cache_seconds)
        with self._cache_lock:
            self._summary_cache[cache_key] = (expires, value)
        return value

    def _invalidate_summary(self, actor_user_id: str) -> None:
        with self._cache_lock:
            for key in [k for k in self._summary_cache if k[0] == actor_user_id]:
                del self._summary_cache[key]

    def _build_summary(self, actor_user_id: str, range_key: str, now: datetime) -> dict:
        days = RANGES[range_key]
        since = now - timedelta(days=days)
        prior_since = now - timedelta(days=days * 2)

        current = self.policy.window_stats(actor_user_id, since, now)
        prior = self.policy.window_stats(actor_user_id, prior_since, since)
        diffs = compute_trend_diffs(current, prior)

        dismiss_counts = {rk: s.dismiss for rk, s in current.by_rule_key.items() if s.dismiss}
        report = self.effectiveness.compute(actor_user_id, since, now, dismiss_counts)
        suggestions = derive_policy_suggestions(current, diffs, report)

        open_pattern_keys = [
            f.key for f in self.store.list_risk_flags(status=RiskStatus.OPEN, key_prefix="pattern:")
        ]
        alerts = build_pattern_alerts(suggestions, open_pattern_keys, today=now.date())

        counts = sorted(current.by_rule_key.items(), key=lambda kv: (-kv[1].total, kv[0]))
        top_recurring = [
            {
                "rule_key": rk,
                "count": s.total,
                "trend": s.total - (prior.by_rule_key[rk].total if rk in prior.by_rule_key else 0),
            }
            for rk, s in counts[:10]
        ]
        top_successful = [
            {"rule_key": rk, "count": s.execute_success}
            for rk, s in sorted(counts, key=lambda kv: -kv[1].execute_success)
            if s.execute_success
        ][:5]
        top_dismissed = [
            {"rule_key": rk, "count": s.dismiss}
            for rk, s in sorted(counts, key=lambda kv: -kv[1].dismiss)
            if s.dismiss
        ][:5]

        suppressions = []
        for s in suggestions:
            if s.type != SuggestionType.SUPPRESSION_30D:
                continue
            total = current.by_rule_key[s.rule_key].total
            dismiss_count = s.evidence_value("dismiss_count", 0)
            suppressions.append({
                "rule_key": s.rule_key,
                "confidence": s.confidence,
                "reasons": s.reasons,
                "dismiss_count": dismiss_count,
                "dismiss_rate": dismiss_count / total if total else 0.0,
            })

        weights = self.store.list_weights(actor_user_id)
        last_updated = max((w.updated_at for w in weights), default=None)

        return {
            "range": range_key,
            "top_recurring_rule_keys": top_recurring,
            "top_successful_rule_keys": top_successful,
            "top_dismissed_rule_keys": top_dismissed,
            "top_effective_rule_keys": [r.model_dump(mode="json") for r in report.top_effective],
            "top_noisy_rule_keys": [r.model_dump(mode="json") for r in report.top_noisy],
            "suggested_suppressions": suppressions,
            "policy_suggestions": [s.model_dump(mode="json") for s in suggestions],
            "trend_diffs": diffs.model_dump(mode="json"),
            "pattern_alerts": [a.model_dump(mode="json") for a in alerts],
            "effectiveness": {
                "by_rule_key": {k: v.model_dump(mode="json") for k, v in report.by_rule_key.items()},
                "recommended_weight_adjustments": [
                    a.model_dump(mode="json") for a in report.recommended_weight_adjustments
                ],
            },
            "attribution_count": len(self.store.list_attributions(actor_user_id, since, now)),
            "last_updated_at": last_updated.isoformat() if last_updated else None,
        }

    def apply_suggestion(
        self,
        actor_user_id: str,
        suggestion_type: str,
        rule_key: str,
        suggested_delta: Optional[int] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> dict:
        """
        Explicitly apply a policy suggestion. A weight adjustment without an
        explicit delta, or a raise_risk, takes its values from the actor's
        current suggestions and fails if none match.
        """
        severity = None
        needs_match = suggestion_type == SuggestionType.RAISE_RISK.value or (
            suggestion_type == SuggestionType.WEIGHT_ADJUSTMENT.value and suggested_delta is None
        )
        if needs_match:
            match = self._find_suggestion(actor_user_id, suggestion_type, rule_key)
            if match is None:
                raise NotFoundError(
                    "No matching suggestion", {"type": suggestion_type, "rule_key": rule_key}
                )
            severity = match.get("severity")
            if suggested_delta is None:
                suggested_delta = match.get("suggested_delta")

        scope = entity_type or self.settings.default_scope
        result = self.policy.apply_suggestion(
            actor_user_id,
            suggestion_type,
            rule_key,
            suggested_delta=suggested_delta,
            severity=severity,
            entity_type=scope,
            entity_id=entity_id or scope,
        )
        self._invalidate_summary(actor_user_id)
        return result

    def _find_suggestion(self, actor_user_id: str, suggestion_type: str, rule_key: str) -> Optional[dict]:
        for range_key in RANGES:
            summary = self._build_summary(actor_user_id, range_key, self.clock())
            for s in summary["policy_suggestions"]:
                if s["type"] == suggestion_type and s["rule_key"] == rule_key:
                    return s
        return None

    # === LIFECYCLE ===

    def last_run_at(self, kind: str = NBA_RUN_KIND) -> Optional[datetime]:
        return self.store.last_run_at(kind)

    def flush(self) -> None:
        """Wait for pending attribution and memory work."""
        self.telemetry.flush()

    def close(self) -> None:
        self.flush()
        self.store.close()
