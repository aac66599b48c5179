"""
Playbooks — what to do about a next-best-action, keyed by the rule that
created it. Code-based registry, nothing is stored.
"""

from typing import Dict, List, Optional, Sequence, Tuple

from operator_engine.models.next_action import (
    ChecklistItem,
    Link,
    NextActionTemplate,
    SuggestedAction,
)

MARK_DONE = SuggestedAction(action_key="mark_done", label="Mark done")


def _template(
    rule_key: str,
    title: str,
    outcome: str,
    why: str,
    steps: Sequence[str],
    links: Sequence[Tuple[str, str]] = (),
    actions: Sequence[SuggestedAction] = (MARK_DONE,),
) -> NextActionTemplate:
    return NextActionTemplate(
        rule_key=rule_key,
        title=title,
        outcome=outcome,
        why=why,
        checklist=[ChecklistItem(id=str(i), text=text) for i, text in enumerate(steps, start=1)],
        links=[Link(label=label, href=href) for label, href in links],
        suggested_actions=list(actions),
    )


_TEMPLATES: List[NextActionTemplate] = [
    _template(
        "score_in_critical_band",
        "Investigate top score reasons",
        "Score moves out of critical band; top factors addressed.",
        "Command center health is in the critical band. Ignoring it risks cascading issues.",
        [
            "Open scoreboard and review top negative factors",
            "Check recent score events for sharp drops",
            "Address highest-impact factors first",
        ],
        [("Scoreboard", "/dashboard/internal/scoreboard")],
        [
            SuggestedAction(
                action_key="recompute_score",
                label="Recompute score",
                confirm="Recalculate command center score now.",
            ),
            MARK_DONE,
        ],
    ),
    _template(
        "failed_notification_deliveries",
        "Retry failed deliveries",
        "Failed deliveries retried or channel config fixed.",
        "Notification deliveries failed. Recipients may miss critical alerts.",
        [
            "Open Notifications page and filter by failed",
            "Retry failed deliveries or fix channel config",
            "Check delivery logs for error details",
        ],
        [("Notifications", "/dashboard/notifications?filter=failed")],
        [
            SuggestedAction(
                action_key="retry_failed_deliveries",
                label="Retry failed deliveries",
                confirm="Enqueue retry job for failed deliveries.",
            ),
            MARK_DONE,
        ],
    ),
    _template(
        "overdue_reminders_high_priority",
        "Clear overdue reminders",
        "Overdue reminders completed or rescheduled.",
        "High-priority reminders are overdue. Clearing them prevents cascading delays.",
        [
            "Open Reminders and filter by overdue",
            "Complete or reschedule each overdue reminder",
            "Clear the backlog",
        ],
        [("Reminders", "/dashboard/reminders?bucket=overdue")],
    ),
    _template(
        "proposals_sent_no_followup_date",
        "Schedule follow-up dates",
        "Every sent proposal has a next follow-up date.",
        "Proposals without follow-up dates fall through the cracks.",
        [
            "Open Proposal Follow-ups page",
            "Set next follow-up date for each sent proposal",
            "Add to calendar or reminder system",
        ],
        [("Proposal Follow-ups", "/dashboard/proposal-followups?bucket=no_followup")],
    ),
    _template(
        "retention_overdue",
        "Contact retention clients",
        "Retention follow-ups completed; next dates set.",
        "Completed projects need check-ins to maintain relationships and spot upsell.",
        [
            "Open Retention page and filter by overdue",
            "Contact each client for check-in",
            "Update retention next follow-up date",
        ],
        [("Retention", "/dashboard/retention?bucket=overdue")],
    ),
    _template(
        "handoff_no_client_confirm",
        "Request client confirmation",
        "Handoffs confirmed by clients.",
        "Handoffs without client confirmation leave delivery status unclear.",
        [
            "Open Handoffs page",
            "Request client confirmation for each handoff",
            "Document confirmation when received",
        ],
        [("Handoffs", "/dashboard/handoffs?bucket=awaiting_confirm")],
    ),
    _template(
        "flywheel_won_no_delivery",
        "Create delivery projects for won deals",
        "Every won deal has a delivery project.",
        "Won deals without delivery projects delay handoff and risk client churn.",
        [
            "Create delivery project for each won deal",
            "Link project to lead and set milestones",
            "Schedule kickoff with client",
        ],
        [("New Delivery", "/dashboard/delivery/new")],
    ),
    _template(
        "flywheel_referral_gap",
        "Ask for referrals on won deals",
        "Referral ask status updated; referrals received where possible.",
        "Satisfied clients are the best source of new leads.",
        [
            "Review won deals from last 7+ days",
            "Ask satisfied clients for referrals",
            "Update referral ask status on each lead",
        ],
        [("Leads", "/dashboard/leads")],
    ),
    _template(
        "flywheel_stage_stall",
        "Re-engage stalled leads",
        "Stalled leads re-engaged; last contact updated.",
        "Leads with no contact for 10+ days go cold without a light touch.",
        [
            "Review stalled leads",
            "Re-engage with a light touch (check-in, value add)",
            "Update last contact date",
        ],
        [("Leads", "/dashboard/leads")],
    ),
]

TEMPLATES: Dict[str, NextActionTemplate] = {t.rule_key: t for t in _TEMPLATES}

DEFAULT_TEMPLATE = _template(
    "default",
    "Complete this action",
    "Action completed and marked done.",
    "Action recommended based on current system state.",
    ["Review the action", "Take the recommended step", "Mark done when complete"],
)


def get_template(rule_key: Optional[str]) -> NextActionTemplate:
    """The playbook for a rule, or the default one carrying the rule key."""
    if not rule_key:
        return DEFAULT_TEMPLATE.model_copy(deep=True)
    template = TEMPLATES.get(rule_key)
    if template is None:
        return DEFAULT_TEMPLATE.model_copy(update={"rule_key": rule_key}, deep=True)
    return template.model_copy(deep=True)
