"""
Action registry — what an operator can do with (or from) a next-best-action.

Each action is a definition with a preview description and a handler.
Handlers never write the next-action status themselves: they return an
ActionOutcome carrying the transition, and the orchestrator commits the
transition together with the execution row.
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict

from operator_engine.errors import DuplicateRuleError
from operator_engine.models.next_action import (
    NextActionStatus,
    NextBestAction,
    StatusTransition,
)


class ActionContext(BaseModel):
    """Everything a handler may look at. Built by the orchestrator."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    action_key: str
    now: datetime
    entity_type: str
    entity_id: str
    actor_user_id: str
    next_action: Optional[NextBestAction] = None
    params: dict = {}
    # Rule-invocation hooks supplied by the engine, keyed by action key.
    runners: Dict[str, Callable[..., dict]] = {}


class ActionOutcome(BaseModel):
    ok: bool = True
    transition: Optional[StatusTransition] = None
    error_message: Optional[str] = None
    meta: dict = {}


Handler = Callable[[ActionContext], ActionOutcome]
Describer = Callable[[ActionContext], str]


class ActionDefinition:
    """A registered action: label, flags, preview text and handler."""

    def __init__(
        self,
        key: str,
        label: str,
        run: Handler,
        describe: Describer,
        requires_target: bool = True,
        attributable: bool = True,
        from_statuses: Optional[FrozenSet[NextActionStatus]] = None,
    ):
        self.key = key
        self.label = label
        self.run = run
        self.describe = describe
        self.requires_target = requires_target
        self.attributable = attributable
        # Statuses the target may be in. None means the action does not change status.
        self.from_statuses = from_statuses

    def __repr__(self) -> str:
        return f"ActionDefinition({self.key})"


# --- Status-changing handlers ---

def _mark_done(ctx: ActionContext) -> ActionOutcome:
    return ActionOutcome(
        transition=StatusTransition(status=NextActionStatus.DONE),
        meta={"action": "done"},
    )


def _dismiss(ctx: ActionContext) -> ActionOutcome:
    return ActionOutcome(
        transition=StatusTransition(status=NextActionStatus.DISMISSED),
        meta={"action": "dismissed"},
    )


def _snooze(days: int) -> Handler:
    def handler(ctx: ActionContext) -> ActionOutcome:
        until = ctx.now + timedelta(days=days)
        return ActionOutcome(
            transition=StatusTransition(status=NextActionStatus.SNOOZED, snoozed_until=until),
            meta={"snoozed_until": until.isoformat(), "days": days},
        )

    handler.__name__ = f"snooze_{days}d"
    return handler


# --- Rule-invocation handlers ---

def _invoke(key: str) -> Handler:
    def handler(ctx: ActionContext) -> ActionOutcome:
        runner = ctx.runners.get(key)
        if runner is None:
            return ActionOutcome(ok=False, error_message=f"{key} is not configured")
        return ActionOutcome(meta=runner(ctx) or {})

    handler.__name__ = key
    return handler


def _target_title(ctx: ActionContext) -> str:
    return ctx.next_action.title if ctx.next_action else "this action"


# Only actions still on the operator's list can be closed or snoozed.
OPEN_STATUSES = frozenset({NextActionStatus.QUEUED, NextActionStatus.SNOOZED})

ACTIONS: Dict[str, ActionDefinition] = {}


def register_action(definition: ActionDefinition) -> ActionDefinition:
    if definition.key in ACTIONS:
        raise DuplicateRuleError(definition.key)
    ACTIONS[definition.key] = definition
    return definition


register_action(ActionDefinition(
    "mark_done", "Mark done", _mark_done,
    lambda ctx: f"Mark '{_target_title(ctx)}' as done",
    from_statuses=OPEN_STATUSES,
))
for _days in (1, 3, 7):
    register_action(ActionDefinition(
        f"snooze_{_days}d", f"Snooze {_days} day{'s' if _days > 1 else ''}", _snooze(_days),
        lambda ctx, d=_days: f"Hide '{_target_title(ctx)}' until {(ctx.now + timedelta(days=d)).isoformat()}",
        attributable=False,
        from_statuses=OPEN_STATUSES,
    ))
register_action(ActionDefinition(
    "dismiss", "Dismiss", _dismiss,
    lambda ctx: f"Dismiss '{_target_title(ctx)}'; it will not be re-queued",
    attributable=False,
    from_statuses=OPEN_STATUSES,
))
register_action(ActionDefinition(
    "run_risk_rules", "Run risk rules", _invoke("run_risk_rules"),
    lambda ctx: "Evaluate risk rules now and upsert flags",
    requires_target=False,
))
register_action(ActionDefinition(
    "run_next_actions", "Run next actions", _invoke("run_next_actions"),
    lambda ctx: f"Regenerate next actions for {ctx.entity_type}:{ctx.entity_id}",
    requires_target=False,
))
register_action(ActionDefinition(
    "recompute_score", "Recompute score", _invoke("recompute_score"),
    lambda ctx: f"Refresh the {ctx.entity_type} score now",
    requires_target=False,
))
register_action(ActionDefinition(
    "retry_failed_deliveries", "Retry failed deliveries", _invoke("retry_failed_deliveries"),
    lambda ctx: "Enqueue a retry job for failed notification deliveries",
))


def get_action(key: str) -> Optional[ActionDefinition]:
    return ACTIONS.get(key)
