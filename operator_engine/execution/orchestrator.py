"""
Execution Orchestrator — run an action against a next-best-action.

Behavioral Contract:
- Validation happens before anything is read or written: unknown action
  key, unknown mode or a missing target raises ValidationError; a missing
  next action raises NotFoundError.
- Status-changing actions only apply to an action that is queued or
  snoozed. Done and dismissed are final: closing or snoozing them again
  raises ValidationError before anything is written.
- Preview mode describes the action and returns the before-state. It never
  writes and is safe to repeat.
- Execute mode replays a success of the same action on the same next
  action within the replay window instead of running it again. The replay
  lookup comes before the status check, so a repeated mark_done returns the
  first result instead of an error.
- The execution row and the status transition commit together. A failure
  (exception or unsuccessful outcome) writes a failed row and leaves the
  status where it was.
- Attribution and memory ingestion are handed to the telemetry channel and
  can never fail the execute path. ``on_learned`` is called on the
  telemetry worker once that work has finished.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from operator_engine.attribution.recorder import AttributionRecorder, compute_delta, delta_to_outcome
from operator_engine.attribution.telemetry import TelemetryChannel
from operator_engine.errors import NotFoundError, ValidationError
from operator_engine.execution.actions import (
    ACTIONS,
    ActionContext,
    ActionDefinition,
    ActionOutcome,
    get_action,
)
from operator_engine.learning.policy import PolicyEngine
from operator_engine.logging import get_logger
from operator_engine.models.attribution import AttributionContext
from operator_engine.models.next_action import (
    ActionRunResult,
    ExecutionMode,
    ExecutionStatus,
    NextActionExecution,
    NextBestAction,
)
from operator_engine.sanitize import sanitize_error_message, sanitize_meta
from operator_engine.store.sqlite import EngineStore, new_id

logger = get_logger("operator_engine.execution")

DEFAULT_SCOPE = "command_center"
DEFAULT_REPLAY_WINDOW_SECONDS = 60

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionOrchestrator:
    """Validates, runs and records operator actions."""

    def __init__(
        self,
        store: EngineStore,
        recorder: AttributionRecorder,
        policy: PolicyEngine,
        telemetry: Optional[TelemetryChannel] = None,
        clock: Optional[Clock] = None,
        runners: Optional[Dict[str, Callable[[ActionContext], dict]]] = None,
        replay_window_seconds: int = DEFAULT_REPLAY_WINDOW_SECONDS,
        default_scope: str = DEFAULT_SCOPE,
        on_learned: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.recorder = recorder
        self.policy = policy
        self.telemetry = telemetry or TelemetryChannel()
        self.clock = clock or _utcnow
        self.runners = runners or {}
        self.replay_window = timedelta(seconds=replay_window_seconds)
        self.default_scope = default_scope
        self.on_learned = on_learned

    def run(
        self,
        action_key: str,
        mode: str,
        actor_user_id: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        next_action_id: Optional[str] = None,
        params: Optional[dict] = None,
    ) -> ActionRunResult:
        definition = get_action(action_key)
        if definition is None:
            raise ValidationError(
                f"Unknown action: {action_key}", {"allowed": sorted(ACTIONS)}
            )
        try:
            mode = ExecutionMode(mode)
        except ValueError:
            raise ValidationError(
                f"Unknown mode: {mode}", {"allowed": [m.value for m in ExecutionMode]}
            ) from None
        if definition.requires_target and not next_action_id:
            raise ValidationError(f"{action_key} requires next_action_id")

        next_action: Optional[NextBestAction] = None
        if next_action_id:
            next_action = self.store.get_next_action(next_action_id)
            if next_action is None:
                raise NotFoundError("Next action not found", {"next_action_id": next_action_id})
            entity_type, entity_id = next_action.entity_type, next_action.entity_id
        entity_type = entity_type or self.default_scope
        entity_id = entity_id or entity_type

        ctx = ActionContext(
            action_key=action_key,
            now=self.clock(),
            entity_type=entity_type,
            entity_id=entity_id,
            actor_user_id=actor_user_id,
            next_action=next_action,
            params=params or {},
            runners=self.runners,
        )
        before_context = self.recorder.load_context(entity_type, entity_id)
        before = self._state(next_action, before_context)

        if mode == ExecutionMode.PREVIEW:
            self._check_status(definition, next_action)
            return ActionRunResult(
                ok=True,
                mode=mode,
                action_key=action_key,
                next_action_id=next_action_id,
                preview=definition.describe(ctx),
                before=before,
            )

        if next_action is not None:
            recent = self.store.find_recent_success(
                next_action.id, action_key, ctx.now - self.replay_window
            )
            if recent is not None:
                logger.info("nba.execute.replayed", next_action_id=next_action.id, action_key=action_key)
                return ActionRunResult(
                    ok=True,
                    mode=mode,
                    action_key=action_key,
                    next_action_id=next_action.id,
                    before=before,
                    execution=recent,
                    replayed=True,
                )
            self._check_status(definition, next_action)

        started_at = ctx.now
        try:
            outcome = definition.run(ctx)
        except Exception as exc:
            outcome = ActionOutcome(ok=False, error_message=sanitize_error_message(exc))
        error_message = None
        if not outcome.ok:
            error_message = sanitize_error_message(outcome.error_message or "Action failed")

        execution = NextActionExecution(
            id=new_id("exec"),
            next_action_id=next_action.id if next_action else None,
            action_key=action_key,
            status=ExecutionStatus.SUCCESS if outcome.ok else ExecutionStatus.FAILED,
            started_at=started_at,
            finished_at=self.clock(),
            error_message=error_message,
            meta=sanitize_meta(outcome.meta) or {},
        )
        updated = self.store.commit_execution(execution, outcome.transition if outcome.ok else None)

        if outcome.ok:
            logger.info(
                "nba.execute.succeeded",
                execution_id=execution.id,
                next_action_id=execution.next_action_id,
                action_key=action_key,
                actor=actor_user_id,
            )
        else:
            logger.warning(
                "nba.execute.failed",
                execution_id=execution.id,
                next_action_id=execution.next_action_id,
                action_key=action_key,
                actor=actor_user_id,
                error=error_message,
            )

        after_context = self.recorder.load_context(entity_type, entity_id)
        self.telemetry.submit(
            self._record_learning,
            actor_user_id,
            execution,
            updated or next_action,
            before_context,
            after_context,
            definition.attributable,
            label="nba_execute",
        )

        return ActionRunResult(
            ok=outcome.ok,
            mode=mode,
            action_key=action_key,
            next_action_id=execution.next_action_id,
            before=before,
            after=self._state(updated, after_context),
            execution=execution,
            errors=[error_message] if error_message else [],
        )

    @staticmethod
    def _check_status(definition: ActionDefinition, next_action: Optional[NextBestAction]) -> None:
        if next_action is None or definition.from_statuses is None:
            return
        if next_action.status not in definition.from_statuses:
            raise ValidationError(
                f"{definition.key} cannot be applied to a {next_action.status.value} action",
                {
                    "next_action_id": next_action.id,
                    "status": next_action.status.value,
                    "allowed": sorted(s.value for s in definition.from_statuses),
                },
            )

    @staticmethod
    def _state(next_action: Optional[NextBestAction], context: AttributionContext) -> dict:
        return {
            "next_action": next_action.model_dump(mode="json") if next_action else None,
            "context": context.model_dump(mode="json"),
        }

    def _record_learning(self, actor_user_id: str, *args) -> None:
        """Attribution + memory ingestion. Runs on the telemetry worker."""
        try:
            self._learn(actor_user_id, *args)
        finally:
            if self.on_learned is not None:
                self.on_learned(actor_user_id)

    def _learn(
        self,
        actor_user_id: str,
        execution: NextActionExecution,
        next_action: Optional[NextBestAction],
        before: AttributionContext,
        after: AttributionContext,
        attributable: bool,
    ) -> None:
        rule_key = next_action.created_by_rule if next_action else None
        succeeded = execution.status == ExecutionStatus.SUCCESS

        if succeeded and next_action is not None:
            if execution.action_key == "dismiss":
                self.policy.ingest_dismiss(actor_user_id, next_action)
                return
            if execution.action_key.startswith("snooze_"):
                self.policy.ingest_snooze(actor_user_id, next_action, execution.action_key)
                return

        attribution_outcome = None
        if succeeded and attributable:
            delta = compute_delta(before, after)
            self.recorder.record(
                actor_user_id,
                before,
                after,
                rule_key=rule_key,
                action_key=execution.action_key,
                entity_type=next_action.entity_type if next_action else None,
                entity_id=next_action.entity_id if next_action else None,
                delta=delta,
                occurred_at=execution.finished_at,
            )
            attribution_outcome = delta_to_outcome(delta)
        self.policy.ingest_execution(actor_user_id, execution, rule_key, attribution_outcome)
