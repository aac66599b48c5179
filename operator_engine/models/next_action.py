"""Next Best Action — a suggested unit of work, and its execution records."""

from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class NextActionStatus(str, Enum):
    QUEUED = "queued"
    DONE = "done"
    DISMISSED = "dismissed"
    SNOOZED = "snoozed"


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class ExecutionMode(str, Enum):
    PREVIEW = "preview"
    EXECUTE = "execute"


class ExplanationEvidence(BaseModel):
    label: str
    value: Union[int, str]
    source: str                             # Where the count came from


class Link(BaseModel):
    label: str
    href: str


class NextActionExplanation(BaseModel):
    """Structured "why this action" attached to every candidate."""

    rule_key: str
    summary: str
    evidence: List[ExplanationEvidence] = []
    recommended_steps: List[str] = []
    links: List[Link] = []


class NextActionCandidate(BaseModel):
    """An action a rule wants queued for a scope."""

    kind: Literal["action"] = "action"
    key: str                                # rule key, e.g. "retention_overdue"
    dedupe_key: str                         # "nba:<rule>:<scope>"
    title: str
    reason: str
    priority: Priority
    score: int = 0                          # Filled in by ranking
    source_type: str
    source_id: Optional[str] = None
    action_url: Optional[str] = None
    payload: dict = {}
    entity_type: str
    entity_id: str
    created_by_rule: str
    count_boost: int = Field(ge=0, le=10, default=0)
    explanation: Optional[NextActionExplanation] = None


class NextBestAction(BaseModel):
    """The persisted action. dedupe_key is unique across all scopes."""

    id: str
    title: str
    reason: str
    priority: Priority
    score: int = 0
    status: NextActionStatus = NextActionStatus.QUEUED
    source_type: str
    source_id: Optional[str] = None
    action_url: Optional[str] = None
    payload: dict = {}
    entity_type: str
    entity_id: str
    dedupe_key: str
    created_by_rule: str
    explanation: Optional[NextActionExplanation] = None
    snoozed_until: Optional[datetime] = None
    last_seen_at: datetime
    last_executed_at: Optional[datetime] = None
    last_execution_status: Optional[ExecutionStatus] = None
    last_execution_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class NextActionExecution(BaseModel):
    """One row per execute attempt. Never mutated after creation."""

    id: str
    next_action_id: Optional[str] = None    # None for scope-wide actions
    action_key: str                         # e.g., "mark_done", "snooze_1d"
    status: ExecutionStatus
    started_at: datetime
    finished_at: datetime
    error_message: Optional[str] = None     # Sanitized
    meta: dict = {}


class StatusTransition(BaseModel):
    """Status change an action handler asks the store to commit."""

    status: NextActionStatus
    snoozed_until: Optional[datetime] = None


class ActionRunResult(BaseModel):
    """Envelope returned by the Execution Orchestrator."""

    ok: bool
    mode: ExecutionMode
    action_key: str
    next_action_id: Optional[str] = None
    preview: Optional[str] = None
    before: Optional[dict] = None
    after: Optional[dict] = None
    execution: Optional[NextActionExecution] = None
    replayed: bool = False
    errors: List[str] = []


class ChecklistItem(BaseModel):
    id: str
    text: str
    optional: bool = False


class SuggestedAction(BaseModel):
    action_key: str
    label: str
    confirm: Optional[str] = None


class NextActionTemplate(BaseModel):
    """Playbook for a rule: the outcome to aim for and the steps to get there."""

    rule_key: str
    title: str
    outcome: str
    why: str
    checklist: List[ChecklistItem] = []
    links: List[Link] = []
    suggested_actions: List[SuggestedAction] = []
