"""
Risk rules — detect adverse conditions and emit RiskCandidates.

Every rule is pure. Dedupe keys are ``risk:<rule>:<scope>`` so the same
condition in the same scope always maps to the same flag.
"""

from datetime import timedelta
from typing import List

from operator_engine.models.context import RuleContext
from operator_engine.models.risk import RiskCandidate, Severity


def dedupe_key(rule_key: str, scope: str) -> str:
    return f"risk:{rule_key}:{scope}"


def _flag(rule_key: str, scope: str, **fields) -> RiskCandidate:
    return RiskCandidate(
        key=f"{rule_key}:{scope}",
        dedupe_key=dedupe_key(rule_key, scope),
        scope=scope,
        created_by_rule=rule_key,
        **fields,
    )


def critical_notifications_failed_delivery(ctx: RuleContext) -> List[RiskCandidate]:
    """Three or more outbound deliveries failed in the last 24h."""
    if ctx.failed_delivery_count_24h < 3:
        return []
    return [_flag(
        "critical_notifications_failed_delivery", "system",
        title="Failed notification deliveries",
        description=f"{ctx.failed_delivery_count_24h}+ deliveries failed in last 24h",
        severity=Severity.CRITICAL,
        source_type="notification_event",
        action_url="/dashboard/notifications?filter=failed",
        suggested_fix="Retry failed deliveries or check channel config",
        evidence={"failed_count": ctx.failed_delivery_count_24h, "window_hours": 24},
    )]


def stale_running_jobs(ctx: RuleContext) -> List[RiskCandidate]:
    """Jobs stuck in the running state."""
    if ctx.stale_running_jobs_count < 1:
        return []
    return [_flag(
        "stale_running_jobs", "system",
        title="Stale running jobs",
        description=f"{ctx.stale_running_jobs_count} job(s) stuck in running state",
        severity=Severity.HIGH,
        source_type="job",
        action_url="/dashboard/jobs?filter=stale",
        suggested_fix="Run job recovery or investigate",
        evidence={"stale_count": ctx.stale_running_jobs_count},
    )]


def overdue_reminders_high_priority(ctx: RuleContext) -> List[RiskCandidate]:
    if ctx.overdue_reminders_high_count <= 0:
        return []
    return [_flag(
        "overdue_reminders_high_priority", "system",
        title="Overdue high-priority reminders",
        description=f"{ctx.overdue_reminders_high_count} reminder(s) overdue",
        severity=Severity.HIGH,
        source_type="reminder",
        action_url="/dashboard/reminders?bucket=overdue",
        suggested_fix="Clear overdue reminders",
        evidence={"overdue_count": ctx.overdue_reminders_high_count},
    )]


def score_in_critical_band(ctx: RuleContext) -> List[RiskCandidate]:
    """Command center operational score has fallen into the critical band."""
    if ctx.command_center_band != "critical":
        return []
    return [_flag(
        "score_in_critical_band", "command_center",
        title="Operational score in critical band",
        description="Command center score is critical",
        severity=Severity.CRITICAL,
        source_type="score",
        source_id="command_center",
        action_url="/dashboard/internal/scoreboard",
        suggested_fix="Investigate top reasons and trends",
        evidence={"band": ctx.command_center_band, "entity_id": "command_center"},
    )]


def proposal_followups_overdue(ctx: RuleContext) -> List[RiskCandidate]:
    count = ctx.proposal_followup_overdue_count
    if count <= 0:
        return []
    return [_flag(
        "proposal_followups_overdue", "system",
        title="Proposal follow-ups overdue",
        description=f"{count} proposal(s) need follow-up",
        severity=Severity.HIGH if count >= 5 else Severity.MEDIUM,
        source_type="proposal",
        action_url="/dashboard/proposal-followups?bucket=overdue",
        suggested_fix="Schedule or complete overdue follow-ups",
        evidence={"overdue_count": count},
    )]


def retention_overdue(ctx: RuleContext) -> List[RiskCandidate]:
    count = ctx.retention_overdue_count
    if count <= 0:
        return []
    return [_flag(
        "retention_overdue", "system",
        title="Retention contacts overdue",
        description=f"{count} retention task(s) overdue",
        severity=Severity.HIGH if count >= 3 else Severity.MEDIUM,
        source_type="delivery_project",
        action_url="/dashboard/retention?bucket=overdue",
        suggested_fix="Contact retention clients",
        evidence={"overdue_count": count},
    )]


def growth_pipeline_zero_activity_7d(ctx: RuleContext) -> List[RiskCandidate]:
    """Three or more open deals and nothing sent or logged for a week."""
    if not ctx.owner_user_id or ctx.growth_deal_count < 3:
        return []
    seven_days_ago = ctx.now - timedelta(days=7)
    last = ctx.growth_last_activity_at
    if last is not None and last >= seven_days_ago:
        return []
    return [_flag(
        "growth_pipeline_zero_activity_7d", f"growth:{ctx.owner_user_id}",
        title="Growth pipeline inactive 7+ days",
        description="No outreach or events in 7+ days with 3+ deals in pipeline",
        severity=Severity.HIGH,
        source_type="growth_pipeline",
        source_id=ctx.owner_user_id,
        action_url="/dashboard/growth",
        suggested_fix="Review pipeline and send follow-ups",
        evidence={
            "deal_count": ctx.growth_deal_count,
            "last_activity_at": last.isoformat() if last else None,
        },
    )]


RISK_RULES = [
    ("critical_notifications_failed_delivery", critical_notifications_failed_delivery),
    ("stale_running_jobs", stale_running_jobs),
    ("overdue_reminders_high_priority", overdue_reminders_high_priority),
    ("score_in_critical_band", score_in_critical_band),
    ("proposal_followups_overdue", proposal_followups_overdue),
    ("retention_overdue", retention_overdue),
    ("growth_pipeline_zero_activity_7d", growth_pipeline_zero_activity_7d),
]


def register(registry) -> None:
    for key, fn in RISK_RULES:
        registry.register(key, "flag", fn)
