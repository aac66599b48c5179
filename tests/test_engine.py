"""
End-to-end engine scenarios: rule runs with the cooldown gate, suppression,
learned weights in ranking, and the memory summary loop.
"""

import threading

import pytest

from operator_engine.config import EngineSettings
from operator_engine.engine.service import OperatorEngine
from operator_engine.errors import NotFoundError, ValidationError
from operator_engine.models.attribution import ScoreSummary
from operator_engine.models.context import RuleContext
from operator_engine.models.learning import OperatorLearnedWeight, WeightKind
from operator_engine.models.risk import RiskStatus


def _make_engine(store, clock, **kwargs) -> OperatorEngine:
    return OperatorEngine(store=store, settings=EngineSettings(log_json=False), clock=clock, **kwargs)


class TestRiskRun:
    def test_critical_band_notifies_once_per_cooldown(self, store, clock):
        sent = []
        engine = _make_engine(store, clock, notifier=sent.append)
        ctx = RuleContext(now=clock(), command_center_band="critical")

        first = engine.run_risk_rules(context=ctx)
        assert (first["created"], first["critical_notified"]) == (1, 1)
        assert store.count_notifications("risk:risk:score_in_critical_band:command_center") == 1

        clock.advance(minutes=5)
        second = engine.run_risk_rules(context=ctx)
        assert (second["created"], second["updated"], second["critical_notified"]) == (0, 1, 0)
        assert len(sent) == 1

        clock.advance(seconds=3601)
        third = engine.run_risk_rules(context=ctx)
        assert third["critical_notified"] == 1
        assert len(sent) == 2

    def test_non_critical_flags_do_not_notify(self, engine, clock):
        result = engine.run_risk_rules(context=RuleContext(now=clock(), retention_overdue_count=4))
        assert (result["created"], result["critical_notified"]) == (1, 0)
        assert engine.store.count_notifications() == 0

    def test_dismissed_critical_flag_is_not_renotified(self, engine, clock):
        ctx = RuleContext(now=clock(), failed_delivery_count_24h=5)
        engine.run_risk_rules(context=ctx)
        flag = engine.list_risk_flags()[0]
        engine.set_risk_status(flag.id, "dismissed")

        clock.advance(hours=2)
        result = engine.run_risk_rules(context=ctx)
        assert (result["skipped"], result["critical_notified"]) == (1, 0)

    def test_context_provider(self, store, clock):
        engine = _make_engine(
            store, clock, context_provider=lambda now: RuleContext(now=now, stale_running_jobs_count=2)
        )
        assert engine.run_risk_rules()["created"] == 1

    def test_no_context(self, engine):
        with pytest.raises(ValidationError):
            engine.run_risk_rules()

    def test_snooze_needs_until(self, engine, clock):
        engine.run_risk_rules(context=RuleContext(now=clock(), retention_overdue_count=1))
        flag = engine.list_risk_flags()[0]
        with pytest.raises(ValidationError):
            engine.set_risk_status(flag.id, "snoozed")
        with pytest.raises(NotFoundError):
            engine.set_risk_status("risk_missing", "resolved")


class TestNextActionRun:
    def test_idempotent(self, engine, clock):
        ctx = RuleContext(now=clock(), retention_overdue_count=2, referral_gap_count=1)
        first = engine.run_next_actions(actor_user_id="u1", context=ctx)
        second = engine.run_next_actions(actor_user_id="u1", context=ctx)
        assert first["created"] == 2
        assert (second["created"], second["updated"]) == (0, 2)
        assert len(engine.list_next_actions()) == 2

    def test_suppressed_rule_is_dropped(self, engine, clock):
        engine.apply_suggestion("u1", "suppression_30d", "retention_overdue")
        ctx = RuleContext(now=clock(), retention_overdue_count=2, referral_gap_count=1)
        result = engine.run_next_actions(actor_user_id="u1", context=ctx)

        assert (result["created"], result["suppressed"]) == (1, 1)
        assert [a.created_by_rule for a in engine.list_next_actions()] == ["flywheel_referral_gap"]

    def test_suppression_is_scoped(self, engine, clock):
        engine.apply_suggestion("u1", "suppression_30d", "growth_overdue_followups")
        ctx = RuleContext(now=clock(), growth_overdue_count=1)
        result = engine.run_next_actions(scope="founder_growth", actor_user_id="u1", context=ctx)
        assert (result["created"], result["suppressed"]) == (1, 0)

    def test_learned_weight_lowers_score(self, engine, clock):
        engine.apply_suggestion("u1", "weight_adjustment", "retention_overdue", suggested_delta=-2)
        ctx = RuleContext(now=clock(), retention_overdue_count=2)

        engine.run_next_actions(actor_user_id="u1", context=ctx)
        assert engine.list_next_actions()[0].score == 53

        engine.run_next_actions(context=ctx)
        assert engine.list_next_actions()[0].score == 57

    def test_mark_done_weight_raises_scores(self, engine, clock):
        engine.store.save_weight(OperatorLearnedWeight(
            actor_user_id="u1", kind=WeightKind.ACTION, key="mark_done", weight=3.0, updated_at=clock()
        ))
        ctx = RuleContext(now=clock(), retention_overdue_count=2)

        engine.run_next_actions(actor_user_id="u1", context=ctx)
        assert engine.list_next_actions()[0].score == 60

    def test_explanation_is_persisted(self, engine, clock):
        engine.run_next_actions(context=RuleContext(now=clock(), retention_overdue_count=2))
        explanation = engine.list_next_actions()[0].explanation

        assert explanation.rule_key == "retention_overdue"
        assert explanation.evidence[0].value == 2
        assert explanation.links[0].href == "/dashboard/retention?bucket=overdue"

    def test_template_for_next_action(self, engine, clock):
        engine.run_next_actions(context=RuleContext(now=clock(), retention_overdue_count=2))
        nba = engine.list_next_actions()[0]
        template = engine.next_action_template(nba.id)
        assert template.title == "Contact retention clients"
        with pytest.raises(NotFoundError):
            engine.next_action_template("nba_missing")

    def test_snoozed_action_returns(self, engine, clock):
        ctx = RuleContext(now=clock(), retention_overdue_count=2)
        engine.run_next_actions(context=ctx)
        nba = engine.list_next_actions()[0]
        engine.run_action("snooze_1d", "execute", "u1", next_action_id=nba.id)
        assert engine.list_next_actions() == []

        clock.advance(days=1, seconds=1)
        result = engine.run_next_actions(context=ctx)
        assert result["created"] == 0
        assert [a.id for a in engine.list_next_actions()] == [nba.id]

    def test_unknown_status_filter(self, engine):
        with pytest.raises(ValidationError):
            engine.list_next_actions(status="archived")


class TestMemoryLoop:
    def _dismiss_three_times(self, engine, clock):
        ctx = RuleContext(now=clock(), retention_overdue_count=2)
        engine.run_next_actions(context=ctx)
        nba = engine.list_next_actions()[0]
        for _ in range(3):
            engine.policy.ingest_dismiss("u1", nba)
        clock.advance(minutes=1)

    def test_summary_suggests_suppression(self, engine, clock):
        self._dismiss_three_times(engine, clock)
        summary = engine.summary("u1", "7d")

        assert summary["top_dismissed_rule_keys"] == [{"rule_key": "retention_overdue", "count": 3}]
        suppressions = summary["suggested_suppressions"]
        assert suppressions[0]["rule_key"] == "retention_overdue"
        assert suppressions[0]["dismiss_rate"] == 1.0
        types = [s["type"] for s in summary["policy_suggestions"]]
        assert types == ["suppression_30d", "raise_risk"]
        assert summary["pattern_alerts"][0]["risk_flag_exists"] is False
        assert summary["last_updated_at"] is not None

    def test_summary_is_cached_briefly(self, engine, clock):
        engine.run_next_actions(context=RuleContext(now=clock(), retention_overdue_count=2))
        nba = engine.list_next_actions()[0]
        empty = engine.summary("u1")
        engine.policy.ingest_dismiss("u1", nba)

        clock.advance(seconds=10)
        assert engine.summary("u1") is empty

        clock.advance(seconds=6)
        assert engine.summary("u1")["top_dismissed_rule_keys"] != []

    def test_learning_refreshes_cached_summary(self, engine, clock):
        engine.run_next_actions(context=RuleContext(now=clock(), retention_overdue_count=2))
        nba = engine.list_next_actions()[0]

        # Hold the telemetry worker so the summary is cached before learning lands.
        release = threading.Event()
        engine.telemetry.submit(release.wait, 5)
        engine.run_action("dismiss", "execute", "u1", next_action_id=nba.id)
        assert engine.summary("u1")["top_dismissed_rule_keys"] == []

        release.set()
        engine.flush()
        clock.advance(seconds=1)
        assert engine.summary("u1")["top_dismissed_rule_keys"] == [
            {"rule_key": "retention_overdue", "count": 1}
        ]

    def test_apply_invalidates_cache(self, engine, clock):
        self._dismiss_three_times(engine, clock)
        engine.summary("u1")
        engine.apply_suggestion("u1", "raise_risk", "retention_overdue")

        flag = engine.store.get_risk_flag_by_dedupe_key("risk:pattern:retention_overdue")
        assert flag.status == RiskStatus.OPEN
        assert flag.severity.value == "medium"
        assert engine.summary("u1")["pattern_alerts"][0]["risk_flag_exists"] is True

    def test_apply_without_match(self, engine):
        with pytest.raises(NotFoundError):
            engine.apply_suggestion("u1", "weight_adjustment", "retention_overdue")

    def test_execution_feeds_effectiveness(self, store, clock):
        scores = [70.0, 40.0]
        engine = _make_engine(
            store,
            clock,
            score_reader=lambda et, eid: ScoreSummary(score=scores.pop(), band="critical"),
        )
        engine.run_next_actions(context=RuleContext(now=clock(), command_center_band="critical"))
        nba = engine.list_next_actions()[0]
        engine.run_action("mark_done", "execute", "u1", next_action_id=nba.id)
        engine.flush()

        clock.advance(minutes=1)
        summary = engine.summary("u1")
        assert summary["attribution_count"] == 1
        lift = summary["effectiveness"]["by_rule_key"]["score_in_critical_band"]["net_lift_score"]
        assert lift == 2.0
        assert [r["rule_key"] for r in summary["top_effective_rule_keys"]] == ["score_in_critical_band"]
        assert engine.policy.rule_weights("u1") == {"score_in_critical_band": 1.0}
