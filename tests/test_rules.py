"""Tests for the rule registry and the built-in rules."""

from datetime import datetime, timedelta, timezone

import pytest

from operator_engine.errors import DuplicateRuleError
from operator_engine.models.context import RuleContext
from operator_engine.models.risk import Severity
from operator_engine.models.next_action import Priority
from operator_engine.rules.next_action_rules import (
    EXPLANATIONS,
    FOUNDER_GROWTH,
    NEXT_ACTION_RULES,
    build_explanation,
)
from operator_engine.rules.registry import ACTION, FLAG, RuleRegistry, default_registry
from operator_engine.rules.templates import TEMPLATES, get_template

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _make_context(**fields) -> RuleContext:
    return RuleContext(now=T0, **fields)


class TestRegistry:
    def test_duplicate_key_rejected(self):
        registry = RuleRegistry()
        registry.register("r1", FLAG, lambda ctx: [])
        with pytest.raises(DuplicateRuleError):
            registry.register("r1", FLAG, lambda ctx: [])

    def test_same_key_different_kind_allowed(self):
        registry = RuleRegistry()
        registry.register("r1", FLAG, lambda ctx: [])
        registry.register("r1", ACTION, lambda ctx: [])
        assert len(registry) == 2

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            RuleRegistry().register("r1", "banner", lambda ctx: [])

    def test_decorator_registers(self):
        registry = RuleRegistry()

        @registry.rule("custom", FLAG)
        def custom(ctx):
            return []

        assert registry.get("custom", FLAG).fn is custom

    def test_default_registry_has_all_rules(self):
        registry = default_registry()
        assert len(registry.keys(FLAG)) == 7
        assert len(registry.keys(ACTION)) == 11

    def test_empty_context_yields_nothing(self):
        assert default_registry().evaluate(_make_context()) == []

    def test_deterministic(self):
        registry = default_registry()
        ctx = _make_context(
            command_center_band="critical",
            retention_overdue_count=4,
            failed_delivery_count=2,
        )
        first = [c.model_dump() for c in registry.evaluate(ctx)]
        second = [c.model_dump() for c in registry.evaluate(ctx)]
        assert first == second


class TestRiskRules:
    def test_failed_delivery_threshold(self):
        registry = default_registry()
        assert registry.evaluate_flags(_make_context(failed_delivery_count_24h=2)) == []
        flags = registry.evaluate_flags(_make_context(failed_delivery_count_24h=3))
        assert len(flags) == 1
        assert flags[0].severity == Severity.CRITICAL
        assert flags[0].dedupe_key == "risk:critical_notifications_failed_delivery:system"

    def test_score_in_critical_band(self):
        flags = default_registry().evaluate_flags(_make_context(command_center_band="critical"))
        assert [f.created_by_rule for f in flags] == ["score_in_critical_band"]
        assert flags[0].scope == "command_center"

    def test_proposal_followups_severity_steps(self):
        registry = default_registry()
        low = registry.evaluate_flags(_make_context(proposal_followup_overdue_count=4))
        high = registry.evaluate_flags(_make_context(proposal_followup_overdue_count=5))
        assert low[0].severity == Severity.MEDIUM
        assert high[0].severity == Severity.HIGH

    def test_growth_inactive_pipeline(self):
        registry = default_registry()
        ctx = _make_context(
            owner_user_id="u1",
            growth_deal_count=3,
            growth_last_activity_at=T0 - timedelta(days=8),
        )
        flags = registry.evaluate_flags(ctx)
        assert flags[0].dedupe_key == "risk:growth_pipeline_zero_activity_7d:growth:u1"

    def test_growth_recent_activity_is_quiet(self):
        ctx = _make_context(
            owner_user_id="u1",
            growth_deal_count=5,
            growth_last_activity_at=T0 - timedelta(days=2),
        )
        assert default_registry().evaluate_flags(ctx) == []


class TestNextActionRules:
    def test_count_boost_bounded(self):
        actions = default_registry().evaluate_actions(_make_context(won_no_delivery_count=9))
        assert actions[0].count_boost == 10
        assert actions[0].priority == Priority.HIGH

    def test_scope_filter(self):
        ctx = _make_context(retention_overdue_count=1, growth_overdue_count=2)
        registry = default_registry()
        growth = registry.evaluate_actions(ctx, scope=FOUNDER_GROWTH)
        assert [a.created_by_rule for a in growth] == ["growth_overdue_followups"]
        assert growth[0].dedupe_key == "nba:growth_overdue_followups:founder_growth"
        command = registry.evaluate_actions(ctx, scope="command_center")
        assert [a.created_by_rule for a in command] == ["retention_overdue"]

    def test_growth_deal_id_in_payload(self):
        ctx = _make_context(growth_no_outreach_count=1, growth_first_no_outreach_deal_id="deal_9")
        actions = default_registry().evaluate_actions(ctx, scope=FOUNDER_GROWTH)
        assert actions[0].payload["deal_id"] == "deal_9"


class TestExplanations:
    def test_every_rule_has_an_explanation(self):
        assert {key for key, _ in NEXT_ACTION_RULES} == set(EXPLANATIONS)

    def test_candidates_carry_explanation(self):
        ctx = _make_context(failed_delivery_count=4)
        [candidate] = default_registry().evaluate_actions(ctx)
        explanation = candidate.explanation

        assert explanation.rule_key == "failed_notification_deliveries"
        assert explanation.evidence[0].label == "Failed count"
        assert explanation.evidence[0].value == 4
        assert len(explanation.recommended_steps) == 3

    def test_missing_band_reads_unknown(self):
        explanation = build_explanation("score_in_critical_band", _make_context())
        assert explanation.evidence[0].value == "unknown"

    def test_unknown_rule_gets_default(self):
        explanation = build_explanation("custom_rule", _make_context())
        assert explanation.rule_key == "custom_rule"
        assert explanation.evidence == []
        assert explanation.recommended_steps[-1] == "Mark done when complete"


class TestTemplates:
    def test_lookup(self):
        template = get_template("failed_notification_deliveries")
        assert template.title == "Retry failed deliveries"
        assert [c.id for c in template.checklist] == ["1", "2", "3"]

    def test_default_keeps_rule_key(self):
        template = get_template("growth_overdue_followups")
        assert template.rule_key == "growth_overdue_followups"
        assert template.title == "Complete this action"
        assert get_template(None).rule_key == "default"

    def test_lookup_returns_copies(self):
        get_template("retention_overdue").checklist.clear()
        assert len(TEMPLATES["retention_overdue"].checklist) == 3
