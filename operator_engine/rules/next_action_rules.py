"""
Next-action rules — suggest units of work as NextActionCandidates.

Dedupe keys are ``nba:<rule>:<scope>``; the scope doubles as the entity the
action is bound to. Scores are left at zero here and filled in by ranking.
"""

from typing import Dict, List

from operator_engine.models.context import RuleContext
from operator_engine.models.next_action import (
    ExplanationEvidence,
    Link,
    NextActionCandidate,
    NextActionExplanation,
    Priority,
)

COMMAND_CENTER = "command_center"
FOUNDER_GROWTH = "founder_growth"

# Scopes each rule emits into. Rules not listed emit into the command center.
RULE_SCOPES: Dict[str, List[str]] = {
    "growth_overdue_followups": [FOUNDER_GROWTH],
    "growth_no_outreach_sent": [FOUNDER_GROWTH],
}


# "Why this action": summary, the snapshot counts behind it, steps and links.
# Evidence entries are (label, RuleContext field, source).
EXPLANATIONS: Dict[str, dict] = {
    "score_in_critical_band": {
        "summary": "Command center health score is in the critical band and needs investigation.",
        "evidence": [("Score band", "command_center_band", "score_snapshot")],
        "steps": [
            "Open scoreboard and review top negative factors",
            "Check recent score events for sharp drops",
            "Address highest-impact factors first",
        ],
        "links": [("Scoreboard", "/dashboard/internal/scoreboard")],
    },
    "failed_notification_deliveries": {
        "summary": "One or more notification deliveries failed in the last 24 hours.",
        "evidence": [("Failed count", "failed_delivery_count", "notification_delivery")],
        "steps": [
            "Open Notifications page and filter by failed",
            "Retry failed deliveries or fix channel config",
            "Check delivery logs for error details",
        ],
        "links": [("Notifications", "/dashboard/notifications?filter=failed")],
    },
    "overdue_reminders_high_priority": {
        "summary": "High-priority reminders are overdue and need attention.",
        "evidence": [("Overdue count", "overdue_reminders_count", "ops_reminder")],
        "steps": [
            "Open Reminders and filter by overdue",
            "Complete or reschedule each overdue reminder",
            "Clear the backlog to avoid cascading delays",
        ],
        "links": [("Reminders", "/dashboard/reminders?bucket=overdue")],
    },
    "proposals_sent_no_followup_date": {
        "summary": "Proposals have been sent but have no follow-up date scheduled.",
        "evidence": [("Count", "sent_no_followup_date_count", "proposal")],
        "steps": [
            "Open Proposal Follow-ups page",
            "Set next follow-up date for each sent proposal",
            "Add to calendar or reminder system",
        ],
        "links": [("Proposal Follow-ups", "/dashboard/proposal-followups?bucket=no_followup")],
    },
    "retention_overdue": {
        "summary": "Retention follow-ups for completed projects are overdue.",
        "evidence": [("Overdue count", "retention_overdue_count", "delivery_project")],
        "steps": [
            "Open Retention page and filter by overdue",
            "Contact each client for check-in",
            "Update retention next follow-up date",
        ],
        "links": [("Retention", "/dashboard/retention?bucket=overdue")],
    },
    "handoff_no_client_confirm": {
        "summary": "Handoffs are complete but awaiting client confirmation.",
        "evidence": [("Awaiting count", "handoff_no_client_confirm_count", "delivery_project")],
        "steps": [
            "Open Handoffs page",
            "Request client confirmation for each handoff",
            "Document confirmation when received",
        ],
        "links": [("Handoffs", "/dashboard/handoffs?bucket=awaiting_confirm")],
    },
    "flywheel_won_no_delivery": {
        "summary": "Won deals have no delivery project created.",
        "evidence": [("Gap count", "won_no_delivery_count", "intake_lead")],
        "steps": [
            "Create delivery project for each won deal",
            "Link project to lead and set milestones",
            "Schedule kickoff with client",
        ],
        "links": [("New Delivery", "/dashboard/delivery/new")],
    },
    "flywheel_referral_gap": {
        "summary": "Won deals have not had a referral request.",
        "evidence": [("Gap count", "referral_gap_count", "intake_lead")],
        "steps": [
            "Review won deals from last 7+ days",
            "Ask satisfied clients for referrals",
            "Update referral ask status on each lead",
        ],
        "links": [("Leads", "/dashboard/leads")],
    },
    "flywheel_stage_stall": {
        "summary": "Active leads have had no contact for 10+ days.",
        "evidence": [("Stalled count", "stage_stall_count", "intake_lead")],
        "steps": [
            "Review stalled leads",
            "Re-engage with a light touch (check-in, value add)",
            "Update last contact date",
        ],
        "links": [("Leads", "/dashboard/leads")],
    },
    "growth_overdue_followups": {
        "summary": "Growth pipeline deals have overdue follow-ups.",
        "evidence": [("Overdue count", "growth_overdue_count", "growth_pipeline")],
        "steps": [
            "Open the growth pipeline and sort by next follow-up",
            "Send the follow-up for each overdue deal",
            "Set the next follow-up date",
        ],
        "links": [("Growth", "/dashboard/growth")],
    },
    "growth_no_outreach_sent": {
        "summary": "New prospects have not received any outreach yet.",
        "evidence": [("Deal count", "growth_no_outreach_count", "growth_pipeline")],
        "steps": [
            "Open the growth pipeline and filter new deals",
            "Send first outreach to each prospect",
            "Schedule a follow-up",
        ],
        "links": [("Growth", "/dashboard/growth")],
    },
}

DEFAULT_EXPLANATION = {
    "summary": "Action recommended based on current system state.",
    "evidence": [],
    "steps": ["Review the action", "Take the recommended step", "Mark done when complete"],
    "links": [],
}


def build_explanation(rule_key: str, ctx: RuleContext) -> NextActionExplanation:
    entry = EXPLANATIONS.get(rule_key, DEFAULT_EXPLANATION)
    evidence = []
    for label, field, source in entry["evidence"]:
        value = getattr(ctx, field)
        evidence.append(ExplanationEvidence(
            label=label,
            value=value if value is not None else "unknown",
            source=source,
        ))
    return NextActionExplanation(
        rule_key=rule_key,
        summary=entry["summary"],
        evidence=evidence,
        recommended_steps=list(entry["steps"]),
        links=[Link(label=label, href=href) for label, href in entry["links"]],
    )


def _actions(ctx: RuleContext, rule_key: str, **fields) -> List[NextActionCandidate]:
    count_boost = min(10, fields.pop("count_boost", 0))
    explanation = build_explanation(rule_key, ctx)
    return [
        NextActionCandidate(
            key=rule_key,
            dedupe_key=f"nba:{rule_key}:{scope}",
            entity_type=scope,
            entity_id=scope,
            created_by_rule=rule_key,
            count_boost=count_boost,
            explanation=explanation,
            **fields,
        )
        for scope in RULE_SCOPES.get(rule_key, [COMMAND_CENTER])
    ]


def score_in_critical_band(ctx: RuleContext) -> List[NextActionCandidate]:
    if ctx.command_center_band != "critical":
        return []
    return _actions(
        ctx,
        "score_in_critical_band",
        title="Investigate top score reasons",
        reason="Command center score in critical band",
        priority=Priority.CRITICAL,
        source_type="score",
        source_id="command_center",
        action_url="/dashboard/internal/scoreboard",
        payload={"entity_type": "command_center"},
    )


def failed_notification_deliveries(ctx: RuleContext) -> List[NextActionCandidate]:
    if ctx.failed_delivery_count <= 0:
        return []
    return _actions(
        ctx,
        "failed_notification_deliveries",
        title="Retry failed deliveries",
        reason=f"{ctx.failed_delivery_count} delivery attempt(s) failed",
        priority=Priority.HIGH,
        source_type="notification_event",
        action_url="/dashboard/notifications?filter=failed",
        payload={"action": "retry_failed"},
        count_boost=ctx.failed_delivery_count,
    )


def overdue_reminders_high_priority(ctx: RuleContext) -> List[NextActionCandidate]:
    if ctx.overdue_reminders_count <= 0:
        return []
    return _actions(
        ctx,
        "overdue_reminders_high_priority",
        title="Clear overdue reminders",
        reason=f"{ctx.overdue_reminders_count} reminder(s) overdue",
        priority=Priority.MEDIUM,
        source_type="reminder",
        action_url="/dashboard/reminders?bucket=overdue",
        payload={"bucket": "overdue"},
        count_boost=ctx.overdue_reminders_count,
    )


def proposals_sent_no_followup_date(ctx: RuleContext) -> List[NextActionCandidate]:
    if ctx.sent_no_followup_date_count <= 0:
        return []
    return _actions(
        ctx,
        "proposals_sent_no_followup_date",
        title="Schedule follow-up dates",
        reason=f"{ctx.sent_no_followup_date_count} proposal(s) need follow-up date",
        priority=Priority.MEDIUM,
        source_type="proposal",
        action_url="/dashboard/proposal-followups?bucket=no_followup",
        payload={"bucket": "no_followup"},
        count_boost=ctx.sent_no_followup_date_count,
    )


def retention_overdue(ctx: RuleContext) -> List[NextActionCandidate]:
    count = ctx.retention_overdue_count
    if count <= 0:
        return []
    return _actions(
        ctx,
        "retention_overdue",
        title="Contact retention clients",
        reason=f"{count} retention task(s) overdue",
        priority=Priority.HIGH if count >= 3 else Priority.MEDIUM,
        source_type="delivery_project",
        action_url="/dashboard/retention?bucket=overdue",
        payload={"bucket": "overdue"},
        count_boost=count,
    )


def handoff_no_client_confirm(ctx: RuleContext) -> List[NextActionCandidate]:
    if ctx.handoff_no_client_confirm_count <= 0:
        return []
    return _actions(
        ctx,
        "handoff_no_client_confirm",
        title="Request client confirmation",
        reason=f"{ctx.handoff_no_client_confirm_count} handoff(s) awaiting client confirm",
        priority=Priority.MEDIUM,
        source_type="delivery_project",
        action_url="/dashboard/handoffs?bucket=awaiting_confirm",
        payload={"bucket": "awaiting_confirm"},
        count_boost=ctx.handoff_no_client_confirm_count,
    )


def flywheel_won_no_delivery(ctx: RuleContext) -> List[NextActionCandidate]:
    if ctx.won_no_delivery_count <= 0:
        return []
    return _actions(
        ctx,
        "flywheel_won_no_delivery",
        title="Create delivery projects for won deals",
        reason=f"{ctx.won_no_delivery_count} won deal(s) have no delivery project",
        priority=Priority.HIGH,
        source_type="intake_lead",
        action_url="/dashboard/delivery/new",
        payload={"gap": "won_no_delivery"},
        count_boost=ctx.won_no_delivery_count * 3,
    )


def flywheel_referral_gap(ctx: RuleContext) -> List[NextActionCandidate]:
    if ctx.referral_gap_count <= 0:
        return []
    return _actions(
        ctx,
        "flywheel_referral_gap",
        title="Ask for referrals on won deals",
        reason=f"{ctx.referral_gap_count} won deal(s) - referral not requested",
        priority=Priority.MEDIUM,
        source_type="intake_lead",
        action_url="/dashboard/leads",
        payload={"gap": "referral_not_asked"},
        count_boost=ctx.referral_gap_count * 2,
    )


def flywheel_stage_stall(ctx: RuleContext) -> List[NextActionCandidate]:
    """Active leads with no contact for 10+ days."""
    count = ctx.stage_stall_count
    if count <= 0:
        return []
    return _actions(
        ctx,
        "flywheel_stage_stall",
        title="Re-engage stalled leads",
        reason=f"{count} active lead(s) with no contact 10+ days",
        priority=Priority.HIGH if count >= 3 else Priority.MEDIUM,
        source_type="intake_lead",
        action_url="/dashboard/leads",
        payload={"gap": "stage_stall"},
        count_boost=count * 2,
    )


def growth_overdue_followups(ctx: RuleContext) -> List[NextActionCandidate]:
    count = ctx.growth_overdue_count
    if count <= 0:
        return []
    payload = {"bucket": "overdue"}
    if ctx.growth_first_overdue_deal_id:
        payload["deal_id"] = ctx.growth_first_overdue_deal_id
    return _actions(
        ctx,
        "growth_overdue_followups",
        title="Follow up on growth pipeline",
        reason=f"{count} deal(s) with overdue follow-up",
        priority=Priority.HIGH if count >= 3 else Priority.MEDIUM,
        source_type="growth_pipeline",
        action_url="/dashboard/growth",
        payload=payload,
        count_boost=count,
    )


def growth_no_outreach_sent(ctx: RuleContext) -> List[NextActionCandidate]:
    count = ctx.growth_no_outreach_count
    if count <= 0:
        return []
    payload = {"bucket": "no_outreach"}
    if ctx.growth_first_no_outreach_deal_id:
        payload["deal_id"] = ctx.growth_first_no_outreach_deal_id
    return _actions(
        ctx,
        "growth_no_outreach_sent",
        title="Send outreach to new prospects",
        reason=f"{count} new deal(s) with no outreach sent",
        priority=Priority.MEDIUM,
        source_type="growth_pipeline",
        action_url="/dashboard/growth",
        payload=payload,
        count_boost=count,
    )


NEXT_ACTION_RULES = [
    ("score_in_critical_band", score_in_critical_band),
    ("failed_notification_deliveries", failed_notification_deliveries),
    ("overdue_reminders_high_priority", overdue_reminders_high_priority),
    ("proposals_sent_no_followup_date", proposals_sent_no_followup_date),
    ("retention_overdue", retention_overdue),
    ("handoff_no_client_confirm", handoff_no_client_confirm),
    ("flywheel_won_no_delivery", flywheel_won_no_delivery),
    ("flywheel_referral_gap", flywheel_referral_gap),
    ("flywheel_stage_stall", flywheel_stage_stall),
    ("growth_overdue_followups", growth_overdue_followups),
    ("growth_no_outreach_sent", growth_no_outreach_sent),
]

# Rules whose repeated failure is escalated straight to a critical pattern alert.
CRITICAL_RULE_KEYS = {
    "score_in_critical_band",
    "failed_notification_deliveries",
    "flywheel_won_no_delivery",
}


def register(registry) -> None:
    for key, fn in NEXT_ACTION_RULES:
        registry.register(key, "action", fn)
