"""Tests for the Engine Store: dedupe upsert, snooze lifecycle and atomic commits."""

from datetime import timedelta

from operator_engine.models.next_action import (
    ExecutionStatus,
    NextActionCandidate,
    NextActionExecution,
    NextActionStatus,
    Priority,
    StatusTransition,
)
from operator_engine.models.risk import RiskCandidate, RiskStatus, Severity
from operator_engine.store.sqlite import new_id


def _make_flag(rule: str = "retention_overdue", title: str = "Retention overdue",
               severity: Severity = Severity.HIGH) -> RiskCandidate:
    return RiskCandidate(
        key=f"{rule}:system",
        dedupe_key=f"risk:{rule}:system",
        title=title,
        severity=severity,
        source_type="delivery_project",
        created_by_rule=rule,
    )


def _make_action(rule: str = "retention_overdue", score: int = 75,
                 priority: Priority = Priority.HIGH) -> NextActionCandidate:
    return NextActionCandidate(
        key=rule,
        dedupe_key=f"nba:{rule}:command_center",
        title="Contact retention clients",
        reason="2 overdue",
        priority=priority,
        score=score,
        source_type="delivery_project",
        entity_type="command_center",
        entity_id="command_center",
        created_by_rule=rule,
    )


class TestRiskUpsert:
    def test_create_then_update(self, store, clock):
        first = store.upsert_risk_flags([_make_flag()], clock())
        assert (first.created, first.updated) == (1, 0)

        clock.advance(minutes=5)
        second = store.upsert_risk_flags([_make_flag(title="Retention overdue (4)")], clock())
        assert (second.created, second.updated) == (0, 1)

        flags = store.list_risk_flags()
        assert len(flags) == 1
        assert flags[0].title == "Retention overdue (4)"
        assert flags[0].last_seen_at == clock()
        assert flags[0].status == RiskStatus.OPEN

    def test_same_key_in_one_batch_is_one_record(self, store, clock):
        result = store.upsert_risk_flags(
            [_make_flag(title="a"), _make_flag(title="b")], clock()
        )
        assert (result.created, result.updated) == (1, 1)
        flags = store.list_risk_flags()
        assert len(flags) == 1
        assert flags[0].title == "b"

    def test_dismissed_flag_stays_dismissed(self, store, clock):
        store.upsert_risk_flags([_make_flag()], clock())
        flag = store.list_risk_flags()[0]
        store.set_risk_status(flag.id, RiskStatus.DISMISSED, clock())

        result = store.upsert_risk_flags([_make_flag()], clock())
        assert result.skipped == 1
        assert store.get_risk_flag(flag.id).status == RiskStatus.DISMISSED

    def test_resolved_flag_records_time(self, store, clock):
        store.upsert_risk_flags([_make_flag()], clock())
        flag = store.list_risk_flags()[0]
        resolved = store.set_risk_status(flag.id, RiskStatus.RESOLVED, clock())
        assert resolved.resolved_at == clock()

    def test_unexpired_snooze_is_skipped(self, store, clock):
        store.upsert_risk_flags([_make_flag()], clock())
        flag = store.list_risk_flags()[0]
        store.set_risk_status(flag.id, RiskStatus.SNOOZED, clock(), clock() + timedelta(days=1))

        result = store.upsert_risk_flags([_make_flag()], clock() + timedelta(hours=2))
        assert result.skipped == 1
        assert store.get_risk_flag(flag.id).status == RiskStatus.SNOOZED

    def test_elapsed_snooze_reopens(self, store, clock):
        store.upsert_risk_flags([_make_flag()], clock())
        flag = store.list_risk_flags()[0]
        store.set_risk_status(flag.id, RiskStatus.SNOOZED, clock(), clock() + timedelta(days=1))

        result = store.upsert_risk_flags([_make_flag()], clock() + timedelta(days=2))
        assert result.updated == 1
        reopened = store.get_risk_flag(flag.id)
        assert reopened.status == RiskStatus.OPEN
        assert reopened.snoozed_until is None

    def test_absent_key_is_not_retracted(self, store, clock):
        store.upsert_risk_flags([_make_flag()], clock())
        store.upsert_risk_flags([], clock())
        assert store.count_open_risks() == 1

    def test_counts_and_ordering(self, store, clock):
        store.upsert_risk_flags([
            _make_flag("a_rule", severity=Severity.MEDIUM),
            _make_flag("b_rule", severity=Severity.CRITICAL),
        ], clock())
        assert store.count_open_risks() == 2
        assert store.count_open_risks("critical") == 1
        assert store.top_open_risk_keys() == ["b_rule:system", "a_rule:system"]


class TestNextActionUpsert:
    def test_unchanged_snapshot_second_run(self, store, clock):
        candidates = [_make_action("r1"), _make_action("r2")]
        first = store.upsert_next_actions(candidates, clock())
        second = store.upsert_next_actions(candidates, clock())
        assert first.created == 2
        assert second.created == 0
        assert second.updated >= first.created

    def test_done_action_not_requeued(self, store, clock):
        store.upsert_next_actions([_make_action()], clock())
        action = store.list_next_actions()[0]
        store.commit_execution(
            NextActionExecution(
                id=new_id("exec"),
                next_action_id=action.id,
                action_key="mark_done",
                status=ExecutionStatus.SUCCESS,
                started_at=clock(),
                finished_at=clock(),
            ),
            StatusTransition(status=NextActionStatus.DONE),
        )
        result = store.upsert_next_actions([_make_action()], clock())
        assert result.skipped == 1
        assert store.get_next_action(action.id).status == NextActionStatus.DONE

    def test_release_expired_snoozes(self, store, clock):
        store.upsert_next_actions([_make_action()], clock())
        action = store.list_next_actions()[0]
        store.commit_execution(
            NextActionExecution(
                id=new_id("exec"),
                next_action_id=action.id,
                action_key="snooze_1d",
                status=ExecutionStatus.SUCCESS,
                started_at=clock(),
                finished_at=clock(),
            ),
            StatusTransition(status=NextActionStatus.SNOOZED, snoozed_until=clock() + timedelta(days=1)),
        )
        assert store.release_expired_snoozes(clock() + timedelta(hours=1)) == 0
        assert store.release_expired_snoozes(clock() + timedelta(days=1, seconds=1)) == 1
        assert store.get_next_action(action.id).status == NextActionStatus.QUEUED


class TestCommitExecution:
    def test_failed_execution_ignores_transition(self, store, clock):
        store.upsert_next_actions([_make_action()], clock())
        action = store.list_next_actions()[0]
        updated = store.commit_execution(
            NextActionExecution(
                id=new_id("exec"),
                next_action_id=action.id,
                action_key="mark_done",
                status=ExecutionStatus.FAILED,
                started_at=clock(),
                finished_at=clock(),
                error_message="boom",
            ),
            StatusTransition(status=NextActionStatus.DONE),
        )
        assert updated.status == NextActionStatus.QUEUED
        assert updated.last_execution_status == ExecutionStatus.FAILED
        assert updated.last_execution_error == "boom"
        assert len(store.list_executions(action.id)) == 1

    def test_recent_success_lookup_respects_window(self, store, clock):
        store.upsert_next_actions([_make_action()], clock())
        action = store.list_next_actions()[0]
        store.commit_execution(NextActionExecution(
            id=new_id("exec"),
            next_action_id=action.id,
            action_key="run_next_actions",
            status=ExecutionStatus.SUCCESS,
            started_at=clock(),
            finished_at=clock(),
        ))
        assert store.find_recent_success(action.id, "run_next_actions", clock() - timedelta(seconds=60))
        assert store.find_recent_success(action.id, "run_next_actions", clock() + timedelta(seconds=1)) is None
        assert store.find_recent_success(action.id, "mark_done", clock() - timedelta(seconds=60)) is None
