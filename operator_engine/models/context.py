"""Rule Context — the read-only snapshot rules evaluate."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class RuleContext(BaseModel):
    """
    Counts and states pulled from the dashboard read-models at one instant.

    Produced by an external collaborator; the engine never computes these
    itself. Every field defaults to the "nothing wrong" value so a partial
    snapshot evaluates to no candidates for the missing parts.
    """

    now: datetime

    # Command center
    command_center_band: Optional[str] = None   # "critical" | "warning" | "healthy"

    # Notifications / jobs / reminders
    failed_delivery_count_24h: int = Field(ge=0, default=0)
    failed_delivery_count: int = Field(ge=0, default=0)
    stale_running_jobs_count: int = Field(ge=0, default=0)
    overdue_reminders_high_count: int = Field(ge=0, default=0)
    overdue_reminders_count: int = Field(ge=0, default=0)

    # Proposals
    proposal_followup_overdue_count: int = Field(ge=0, default=0)
    sent_no_followup_date_count: int = Field(ge=0, default=0)

    # Delivery / retention
    retention_overdue_count: int = Field(ge=0, default=0)
    handoff_no_client_confirm_count: int = Field(ge=0, default=0)

    # Flywheel
    won_no_delivery_count: int = Field(ge=0, default=0)
    referral_gap_count: int = Field(ge=0, default=0)
    stage_stall_count: int = Field(ge=0, default=0)

    # Growth pipeline
    owner_user_id: Optional[str] = None
    growth_deal_count: int = Field(ge=0, default=0)
    growth_last_activity_at: Optional[datetime] = None
    growth_overdue_count: int = Field(ge=0, default=0)
    growth_first_overdue_deal_id: Optional[str] = None
    growth_no_outreach_count: int = Field(ge=0, default=0)
    growth_first_no_outreach_deal_id: Optional[str] = None
