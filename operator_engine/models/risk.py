"""Risk Flag — a detected adverse condition surfaced to the operator."""

from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Higher rank = more urgent. Shared by flags (severity) and NBAs (priority).
TIER_RANK = {
    "low": 0,
    "medium": 1,
    "high": 2,
    "critical": 3,
}


class RiskStatus(str, Enum):
    OPEN = "open"
    DISMISSED = "dismissed"
    RESOLVED = "resolved"
    SNOOZED = "snoozed"


class RiskCandidate(BaseModel):
    """A flag a rule wants to exist. Persisted through the upsert store."""

    kind: Literal["flag"] = "flag"
    key: str                                # e.g., "retention_overdue:system"
    dedupe_key: str                         # e.g., "risk:retention_overdue:system"
    scope: str = "system"                   # "system" | "command_center" | "growth:<owner>"
    title: str
    description: Optional[str] = None
    severity: Severity
    source_type: str                        # e.g., "score", "delivery_project"
    source_id: Optional[str] = None
    action_url: Optional[str] = None
    suggested_fix: Optional[str] = None
    evidence: dict = {}
    created_by_rule: str


class RiskFlag(BaseModel):
    """The persisted flag. At most one per dedupe_key."""

    id: str
    key: str
    title: str
    description: Optional[str] = None
    severity: Severity
    status: RiskStatus = RiskStatus.OPEN
    source_type: str
    source_id: Optional[str] = None
    action_url: Optional[str] = None
    suggested_fix: Optional[str] = None
    evidence: dict = {}
    dedupe_key: str
    created_by_rule: str
    snoozed_until: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    last_seen_at: datetime
    created_at: datetime
    updated_at: datetime
