"""Attribution — before/after snapshots and the measured delta between them."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


# Lower index = worse band.
BAND_ORDER = ["critical", "warning", "healthy"]


class AttributionSourceType(str, Enum):
    NBA_EXECUTE = "nba_execute"
    COPILOT_ACTION = "copilot_action"


class ScoreSummary(BaseModel):
    band: str                               # "critical" | "warning" | "healthy"
    score: float
    updated_at: Optional[datetime] = None


class RiskSummary(BaseModel):
    open_count: int = Field(ge=0, default=0)
    critical_count: int = Field(ge=0, default=0)
    top_keys: List[str] = []


class NextActionSummary(BaseModel):
    queued_count: int = Field(ge=0, default=0)
    top_rule_keys: List[str] = []


class AttributionContext(BaseModel):
    """
    Snapshot of the operator's situation, captured immediately before and
    after an execute-mode action. Built from the same counts the dashboard
    shows.
    """

    score: Optional[ScoreSummary] = None
    risk: RiskSummary = RiskSummary()
    nba: NextActionSummary = NextActionSummary()
    error: Optional[str] = None


class BandChange(BaseModel):
    from_band: str
    to_band: str

    @property
    def direction(self) -> int:
        """+1 when the band improved, -1 when it worsened, 0 if unknown."""
        if self.from_band not in BAND_ORDER or self.to_band not in BAND_ORDER:
            return 0
        from_rank = BAND_ORDER.index(self.from_band)
        to_rank = BAND_ORDER.index(self.to_band)
        if to_rank > from_rank:
            return 1
        if to_rank < from_rank:
            return -1
        return 0


class AttributionDelta(BaseModel):
    score_delta: Optional[float] = None     # None when either side lacks a score
    band_change: Optional[BandChange] = None
    risk_open_delta: int = 0
    risk_critical_delta: int = 0
    nba_queued_delta: int = 0
    error: Optional[str] = None


class OperatorAttribution(BaseModel):
    """Write-once link between an action execution and its measured effect."""

    id: str
    actor_user_id: str
    source_type: AttributionSourceType = AttributionSourceType.NBA_EXECUTE
    rule_key: Optional[str] = None
    action_key: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    before: AttributionContext
    after: AttributionContext
    delta: AttributionDelta
    occurred_at: datetime
