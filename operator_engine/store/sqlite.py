"""
Engine Store — the one shared mutable resource.

Holds risk flags, next-best-actions, execution rows, attributions, memory
events, learned weights, notification events and suppressions.

Behavioral Contract:
- Flags and actions are keyed by a unique dedupe_key. Upsert creates on
  absence, updates mutable fields on presence, never touches operator-set
  status, and never retracts a record whose key is missing from a batch.
- Candidates in one upsert call are applied one at a time in input order,
  so equal dedupe keys in the same batch resolve last-write-wins.
- Execution rows, attributions and memory events are append-only.
- An execution row and the action transition it causes commit together.

Prototype: SQLite. Every call is serialized behind one lock so the
best-effort telemetry worker can share the connection.
"""

import sqlite3
import threading
from datetime import datetime, timezone
from typing import Iterable, List, Optional
from uuid import uuid4

from pydantic import BaseModel

from operator_engine.models.attribution import OperatorAttribution
from operator_engine.models.learning import (
    OperatorLearnedWeight,
    OperatorMemoryEvent,
    RuleSuppression,
    WeightKind,
)
from operator_engine.models.next_action import (
    ExecutionStatus,
    NextActionCandidate,
    NextActionExecution,
    NextActionStatus,
    NextBestAction,
    StatusTransition,
)
from operator_engine.models.notification import NotificationEvent
from operator_engine.models.risk import TIER_RANK, RiskCandidate, RiskFlag, RiskStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Normalize to a sortable UTC ISO string. Naive datetimes are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


class UpsertResult(BaseModel):
    """Outcome of one upsert batch."""

    created: int = 0
    updated: int = 0
    skipped: int = 0
    touched: List[str] = []                 # ids created or updated, in batch order


_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS risk_flags (
        id TEXT PRIMARY KEY,
        dedupe_key TEXT NOT NULL UNIQUE,
        key TEXT NOT NULL,
        status TEXT NOT NULL,
        severity TEXT NOT NULL,
        severity_rank INTEGER NOT NULL,
        created_by_rule TEXT NOT NULL,
        last_seen_at TEXT NOT NULL,
        record_json TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS next_actions (
        id TEXT PRIMARY KEY,
        dedupe_key TEXT NOT NULL UNIQUE,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        status TEXT NOT NULL,
        priority_rank INTEGER NOT NULL,
        score INTEGER NOT NULL,
        created_by_rule TEXT NOT NULL,
        created_at TEXT NOT NULL,
        record_json TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS next_action_executions (
        id TEXT PRIMARY KEY,
        next_action_id TEXT,
        action_key TEXT NOT NULL,
        status TEXT NOT NULL,
        started_at TEXT NOT NULL,
        record_json TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS attributions (
        id TEXT PRIMARY KEY,
        actor_user_id TEXT NOT NULL,
        rule_key TEXT,
        occurred_at TEXT NOT NULL,
        record_json TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS memory_events (
        id TEXT PRIMARY KEY,
        actor_user_id TEXT NOT NULL,
        rule_key TEXT,
        source_type TEXT NOT NULL,
        created_at TEXT NOT NULL,
        record_json TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS learned_weights (
        actor_user_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        key TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        record_json TEXT NOT NULL,
        PRIMARY KEY (actor_user_id, kind, key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notification_events (
        id TEXT PRIMARY KEY,
        dedupe_key TEXT NOT NULL,
        created_at TEXT NOT NULL,
        record_json TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rule_suppressions (
        id TEXT PRIMARY KEY,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        rule_key TEXT NOT NULL,
        status TEXT NOT NULL,
        suppressed_until TEXT NOT NULL,
        record_json TEXT NOT NULL,
        UNIQUE (entity_type, entity_id, rule_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rule_runs (
        kind TEXT NOT NULL,
        run_key TEXT NOT NULL,
        last_run_at TEXT NOT NULL,
        created INTEGER NOT NULL DEFAULT 0,
        updated INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (kind, run_key)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_exec_action ON next_action_executions(next_action_id, action_key)",
    "CREATE INDEX IF NOT EXISTS idx_attr_actor ON attributions(actor_user_id, occurred_at)",
    "CREATE INDEX IF NOT EXISTS idx_memory_actor ON memory_events(actor_user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_notif_key ON notification_events(dedupe_key, created_at)",
]


class EngineStore:
    """
    Persistent store for the Operator Engine.
    Prototype: SQLite. Production: PostgreSQL.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock, self._conn:
            for statement in _SCHEMA:
                self._conn.execute(statement)

    def locked(self) -> threading.RLock:
        """The store lock, for callers that need read-then-write atomicity."""
        return self._lock

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # === RISK FLAGS ===

    def upsert_risk_flags(
        self, candidates: Iterable[RiskCandidate], now: Optional[datetime] = None
    ) -> UpsertResult:
        """
        Persist risk candidates by dedupe_key.

        Dismissed and resolved flags are left alone, as are flags snoozed
        into the future. A flag whose snooze has lapsed reopens.
        """
        now = _aware(now) or utcnow()
        result = UpsertResult()
        with self._lock, self._conn:
            for c in candidates:
                existing = self._flag_by_dedupe_key(c.dedupe_key)
                fields = dict(
                    key=c.key,
                    title=c.title,
                    description=c.description,
                    severity=c.severity,
                    source_type=c.source_type,
                    source_id=c.source_id,
                    action_url=c.action_url,
                    suggested_fix=c.suggested_fix,
                    evidence=c.evidence,
                    created_by_rule=c.created_by_rule,
                    last_seen_at=now,
                    updated_at=now,
                )
                if existing is None:
                    flag = RiskFlag(
                        id=new_id("risk"),
                        dedupe_key=c.dedupe_key,
                        status=RiskStatus.OPEN,
                        created_at=now,
                        **fields,
                    )
                    self._write_flag(flag, insert=True)
                    result.created += 1
                    result.touched.append(flag.id)
                    continue

                if existing.status in (RiskStatus.DISMISSED, RiskStatus.RESOLVED):
                    result.skipped += 1
                    continue
                if existing.status == RiskStatus.SNOOZED:
                    if existing.snoozed_until and _aware(existing.snoozed_until) > now:
                        result.skipped += 1
                        continue
                    fields["status"] = RiskStatus.OPEN
                    fields["snoozed_until"] = None

                flag = existing.model_copy(update=fields)
                self._write_flag(flag, insert=False)
                result.updated += 1
                result.touched.append(flag.id)
        return result

    def _write_flag(self, flag: RiskFlag, insert: bool) -> None:
        params = (
            flag.key,
            flag.status.value,
            flag.severity.value,
            TIER_RANK[flag.severity.value],
            flag.created_by_rule,
            _ts(flag.last_seen_at),
            flag.model_dump_json(),
        )
        if insert:
            self._conn.execute(
                """
                INSERT INTO risk_flags (
                    key, status, severity, severity_rank, created_by_rule,
                    last_seen_at, record_json, id, dedupe_key
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                params + (flag.id, flag.dedupe_key),
            )
        else:
            self._conn.execute(
                """
                UPDATE risk_flags SET
                    key = ?, status = ?, severity = ?, severity_rank = ?,
                    created_by_rule = ?, last_seen_at = ?, record_json = ?
                WHERE id = ?
                """,
                params + (flag.id,),
            )

    def _flag_by_dedupe_key(self, dedupe_key: str) -> Optional[RiskFlag]:
        row = self._conn.execute(
            "SELECT record_json FROM risk_flags WHERE dedupe_key = ?", (dedupe_key,)
        ).fetchone()
        return RiskFlag.model_validate_json(row["record_json"]) if row else None

    def get_risk_flag(self, flag_id: str) -> Optional[RiskFlag]:
        with self._lock:
            row = self._conn.execute(
                "SELECT record_json FROM risk_flags WHERE id = ?", (flag_id,)
            ).fetchone()
        return RiskFlag.model_validate_json(row["record_json"]) if row else None

    def get_risk_flag_by_dedupe_key(self, dedupe_key: str) -> Optional[RiskFlag]:
        with self._lock:
            return self._flag_by_dedupe_key(dedupe_key)

    def list_risk_flags(
        self,
        status: Optional[RiskStatus] = None,
        key_prefix: Optional[str] = None,
    ) -> List[RiskFlag]:
        """Flags ordered by severity, then most recently seen."""
        sql = "SELECT record_json FROM risk_flags WHERE 1 = 1"
        params: list = []
        if status is not None:
            sql += " AND status = ?"
            params.append(RiskStatus(status).value)
        if key_prefix:
            sql += " AND key LIKE ?"
            params.append(f"{key_prefix}%")
        sql += " ORDER BY severity_rank DESC, last_seen_at DESC, dedupe_key ASC"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [RiskFlag.model_validate_json(r["record_json"]) for r in rows]

    def set_risk_status(
        self,
        flag_id: str,
        status: RiskStatus,
        now: Optional[datetime] = None,
        snoozed_until: Optional[datetime] = None,
    ) -> Optional[RiskFlag]:
        """Operator transition on a flag (dismiss, resolve, snooze, reopen)."""
        now = _aware(now) or utcnow()
        status = RiskStatus(status)
        with self._lock, self._conn:
            row = self._conn.execute(
                "SELECT record_json FROM risk_flags WHERE id = ?", (flag_id,)
            ).fetchone()
            if not row:
                return None
            flag = RiskFlag.model_validate_json(row["record_json"])
            update = {"status": status, "updated_at": now}
            update["snoozed_until"] = snoozed_until if status == RiskStatus.SNOOZED else None
            if status == RiskStatus.RESOLVED:
                update["resolved_at"] = now
            flag = flag.model_copy(update=update)
            self._write_flag(flag, insert=False)
        return flag

    def count_open_risks(self, severity: Optional[str] = None) -> int:
        sql = "SELECT COUNT(*) AS cnt FROM risk_flags WHERE status = 'open'"
        params: list = []
        if severity:
            sql += " AND severity = ?"
            params.append(severity)
        with self._lock:
            return self._conn.execute(sql, params).fetchone()["cnt"]

    def top_open_risk_keys(self, limit: int = 5) -> List[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT key FROM risk_flags WHERE status = 'open' "
                "ORDER BY severity_rank DESC, last_seen_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [r["key"] for r in rows if r["key"]]

    # === NEXT BEST ACTIONS ===

    def upsert_next_actions(
        self, candidates: Iterable[NextActionCandidate], now: Optional[datetime] = None
    ) -> UpsertResult:
        """
        Persist action candidates by dedupe_key.

        Done and dismissed actions stay put, as do actions snoozed into the
        future. An action whose snooze has lapsed goes back to queued.
        """
        now = _aware(now) or utcnow()
        result = UpsertResult()
        with self._lock, self._conn:
            for c in candidates:
                existing = self._action_by_dedupe_key(c.dedupe_key)
                fields = dict(
                    title=c.title,
                    reason=c.reason,
                    priority=c.priority,
                    score=c.score,
                    source_type=c.source_type,
                    source_id=c.source_id,
                    action_url=c.action_url,
                    payload=c.payload,
                    entity_type=c.entity_type,
                    entity_id=c.entity_id,
                    created_by_rule=c.created_by_rule,
                    explanation=c.explanation,
                    last_seen_at=now,
                    updated_at=now,
                )
                if existing is None:
                    action = NextBestAction(
                        id=new_id("nba"),
                        dedupe_key=c.dedupe_key,
                        status=NextActionStatus.QUEUED,
                        created_at=now,
                        **fields,
                    )
                    self._write_action(action, insert=True)
                    result.created += 1
                    result.touched.append(action.id)
                    continue

                if existing.status in (NextActionStatus.DONE, NextActionStatus.DISMISSED):
                    result.skipped += 1
                    continue
                if existing.status == NextActionStatus.SNOOZED:
                    if existing.snoozed_until and _aware(existing.snoozed_until) > now:
                        result.skipped += 1
                        continue
                    fields["status"] = NextActionStatus.QUEUED
                    fields["snoozed_until"] = None

                action = existing.model_copy(update=fields)
                self._write_action(action, insert=False)
                result.updated += 1
                result.touched.append(action.id)
        return result

    def _write_action(self, action: NextBestAction, insert: bool) -> None:
        params = (
            action.entity_type,
            action.entity_id,
            action.status.value,
            TIER_RANK[action.priority.value],
            action.score,
            action.created_by_rule,
            _ts(action.created_at),
            action.model_dump_json(),
        )
        if insert:
            self._conn.execute(
                """
                INSERT INTO next_actions (
                    entity_type, entity_id, status, priority_rank, score,
                    created_by_rule, created_at, record_json, id, dedupe_key
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                params + (action.id, action.dedupe_key),
            )
        else:
            self._conn.execute(
                """
                UPDATE next_actions SET
                    entity_type = ?, entity_id = ?, status = ?, priority_rank = ?,
                    score = ?, created_by_rule = ?, created_at = ?, record_json = ?
                WHERE id = ?
                """,
                params + (action.id,),
            )

    def _action_by_dedupe_key(self, dedupe_key: str) -> Optional[NextBestAction]:
        row = self._conn.execute(
            "SELECT record_json FROM next_actions WHERE dedupe_key = ?", (dedupe_key,)
        ).fetchone()
        return NextBestAction.model_validate_json(row["record_json"]) if row else None

    def _action_by_id(self, action_id: str) -> Optional[NextBestAction]:
        row = self._conn.execute(
            "SELECT record_json FROM next_actions WHERE id = ?", (action_id,)
        ).fetchone()
        return NextBestAction.model_validate_json(row["record_json"]) if row else None

    def get_next_action(self, action_id: str) -> Optional[NextBestAction]:
        with self._lock:
            return self._action_by_id(action_id)

    def get_next_action_by_dedupe_key(self, dedupe_key: str) -> Optional[NextBestAction]:
        with self._lock:
            return self._action_by_dedupe_key(dedupe_key)

    def list_next_actions(
        self,
        status: Optional[NextActionStatus] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> List[NextBestAction]:
        sql = "SELECT record_json FROM next_actions WHERE 1 = 1"
        params: list = []
        if status is not None:
            sql += " AND status = ?"
            params.append(NextActionStatus(status).value)
        if entity_type is not None:
            sql += " AND entity_type = ?"
            params.append(entity_type)
        if entity_id is not None:
            sql += " AND entity_id = ?"
            params.append(entity_id)
        sql += " ORDER BY priority_rank DESC, score DESC, created_at DESC, dedupe_key ASC"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [NextBestAction.model_validate_json(r["record_json"]) for r in rows]

    def release_expired_snoozes(self, now: Optional[datetime] = None) -> int:
        """Move actions whose snooze has lapsed back to queued."""
        now = _aware(now) or utcnow()
        released = 0
        with self._lock, self._conn:
            rows = self._conn.execute(
                "SELECT record_json FROM next_actions WHERE status = 'snoozed'"
            ).fetchall()
            for row in rows:
                action = NextBestAction.model_validate_json(row["record_json"])
                if action.snoozed_until and _aware(action.snoozed_until) <= now:
                    action = action.model_copy(update={
                        "status": NextActionStatus.QUEUED,
                        "snoozed_until": None,
                        "updated_at": now,
                    })
                    self._write_action(action, insert=False)
                    released += 1
        return released

    def count_queued(self, entity_type: str, entity_id: str) -> int:
        with self._lock:
            return self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM next_actions "
                "WHERE status = 'queued' AND entity_type = ? AND entity_id = ?",
                (entity_type, entity_id),
            ).fetchone()["cnt"]

    def top_queued_rule_keys(self, entity_type: str, entity_id: str, limit: int = 10) -> List[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT created_by_rule FROM next_actions "
                "WHERE status = 'queued' AND entity_type = ? AND entity_id = ? "
                "ORDER BY score DESC LIMIT ?",
                (entity_type, entity_id, limit),
            ).fetchall()
        seen: List[str] = []
        for r in rows:
            if r["created_by_rule"] and r["created_by_rule"] not in seen:
                seen.append(r["created_by_rule"])
        return seen

    # === EXECUTIONS ===

    def commit_execution(
        self,
        execution: NextActionExecution,
        transition: Optional[StatusTransition] = None,
    ) -> Optional[NextBestAction]:
        """
        Write the execution row and update the action in one transaction.

        A failed execution only records last-execution fields; it never
        applies a status transition.
        """
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO next_action_executions (
                    id, next_action_id, action_key, status, started_at, record_json
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    execution.id,
                    execution.next_action_id,
                    execution.action_key,
                    execution.status.value,
                    _ts(execution.started_at),
                    execution.model_dump_json(),
                ),
            )
            if execution.next_action_id is None:
                return None
            action = self._action_by_id(execution.next_action_id)
            if action is None:
                return None
            update = {
                "last_executed_at": execution.finished_at,
                "last_execution_status": execution.status,
                "last_execution_error": execution.error_message,
                "updated_at": execution.finished_at,
            }
            if transition is not None and execution.status == ExecutionStatus.SUCCESS:
                update["status"] = transition.status
                update["snoozed_until"] = transition.snoozed_until
            action = action.model_copy(update=update)
            self._write_action(action, insert=False)
        return action

    def find_recent_success(
        self, next_action_id: str, action_key: str, since: datetime
    ) -> Optional[NextActionExecution]:
        with self._lock:
            row = self._conn.execute(
                "SELECT record_json FROM next_action_executions "
                "WHERE next_action_id = ? AND action_key = ? AND status = 'success' "
                "AND started_at >= ? ORDER BY started_at DESC LIMIT 1",
                (next_action_id, action_key, _ts(since)),
            ).fetchone()
        return NextActionExecution.model_validate_json(row["record_json"]) if row else None

    def list_executions(
        self, next_action_id: Optional[str] = None, action_key: Optional[str] = None
    ) -> List[NextActionExecution]:
        sql = "SELECT record_json FROM next_action_executions WHERE 1 = 1"
        params: list = []
        if next_action_id is not None:
            sql += " AND next_action_id = ?"
            params.append(next_action_id)
        if action_key is not None:
            sql += " AND action_key = ?"
            params.append(action_key)
        sql += " ORDER BY rowid"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [NextActionExecution.model_validate_json(r["record_json"]) for r in rows]

    # === ATTRIBUTIONS ===

    def insert_attribution(self, attribution: OperatorAttribution) -> OperatorAttribution:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO attributions (id, actor_user_id, rule_key, occurred_at, record_json) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    attribution.id,
                    attribution.actor_user_id,
                    attribution.rule_key,
                    _ts(attribution.occurred_at),
                    attribution.model_dump_json(),
                ),
            )
        return attribution

    def list_attributions(
        self,
        actor_user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[OperatorAttribution]:
        """Attributions in ``[start, end)`` for one actor."""
        sql = "SELECT record_json FROM attributions WHERE actor_user_id = ?"
        params: list = [actor_user_id]
        if start is not None:
            sql += " AND occurred_at >= ?"
            params.append(_ts(start))
        if end is not None:
            sql += " AND occurred_at < ?"
            params.append(_ts(end))
        sql += " ORDER BY rowid"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [OperatorAttribution.model_validate_json(r["record_json"]) for r in rows]

    # === MEMORY EVENTS ===

    def insert_memory_event(self, event: OperatorMemoryEvent) -> OperatorMemoryEvent:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO memory_events (id, actor_user_id, rule_key, source_type, created_at, record_json) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    event.id,
                    event.actor_user_id,
                    event.rule_key,
                    event.source_type.value,
                    _ts(event.created_at),
                    event.model_dump_json(),
                ),
            )
        return event

    def list_memory_events(
        self,
        actor_user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[OperatorMemoryEvent]:
        sql = "SELECT record_json FROM memory_events WHERE actor_user_id = ?"
        params: list = [actor_user_id]
        if start is not None:
            sql += " AND created_at >= ?"
            params.append(_ts(start))
        if end is not None:
            sql += " AND created_at < ?"
            params.append(_ts(end))
        sql += " ORDER BY rowid"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [OperatorMemoryEvent.model_validate_json(r["record_json"]) for r in rows]

    # === LEARNED WEIGHTS ===

    def get_weight(
        self, actor_user_id: str, kind: WeightKind, key: str
    ) -> Optional[OperatorLearnedWeight]:
        with self._lock:
            row = self._conn.execute(
                "SELECT record_json FROM learned_weights "
                "WHERE actor_user_id = ? AND kind = ? AND key = ?",
                (actor_user_id, WeightKind(kind).value, key),
            ).fetchone()
        return OperatorLearnedWeight.model_validate_json(row["record_json"]) if row else None

    def save_weight(self, weight: OperatorLearnedWeight) -> OperatorLearnedWeight:
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO learned_weights (actor_user_id, kind, key, updated_at, record_json)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (actor_user_id, kind, key)
                DO UPDATE SET updated_at = excluded.updated_at, record_json = excluded.record_json
                """,
                (
                    weight.actor_user_id,
                    weight.kind.value,
                    weight.key,
                    _ts(weight.updated_at),
                    weight.model_dump_json(),
                ),
            )
        return weight

    def list_weights(
        self, actor_user_id: str, kind: Optional[WeightKind] = None
    ) -> List[OperatorLearnedWeight]:
        sql = "SELECT record_json FROM learned_weights WHERE actor_user_id = ?"
        params: list = [actor_user_id]
        if kind is not None:
            sql += " AND kind = ?"
            params.append(WeightKind(kind).value)
        sql += " ORDER BY updated_at DESC"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [OperatorLearnedWeight.model_validate_json(r["record_json"]) for r in rows]

    # === NOTIFICATION EVENTS ===

    def latest_notification(self, dedupe_key: str) -> Optional[NotificationEvent]:
        with self._lock:
            row = self._conn.execute(
                "SELECT record_json FROM notification_events WHERE dedupe_key = ? "
                "ORDER BY created_at DESC, rowid DESC LIMIT 1",
                (dedupe_key,),
            ).fetchone()
        return NotificationEvent.model_validate_json(row["record_json"]) if row else None

    def insert_notification(self, event: NotificationEvent) -> NotificationEvent:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO notification_events (id, dedupe_key, created_at, record_json) "
                "VALUES (?, ?, ?, ?)",
                (event.id, event.dedupe_key, _ts(event.created_at), event.model_dump_json()),
            )
        return event

    def count_notifications(self, dedupe_key: Optional[str] = None) -> int:
        sql = "SELECT COUNT(*) AS cnt FROM notification_events"
        params: list = []
        if dedupe_key is not None:
            sql += " WHERE dedupe_key = ?"
            params.append(dedupe_key)
        with self._lock:
            return self._conn.execute(sql, params).fetchone()["cnt"]

    # === SUPPRESSIONS ===

    def save_suppression(self, suppression: RuleSuppression) -> RuleSuppression:
        """Create or refresh the suppression for (scope, rule_key)."""
        with self._lock, self._conn:
            row = self._conn.execute(
                "SELECT id FROM rule_suppressions "
                "WHERE entity_type = ? AND entity_id = ? AND rule_key = ?",
                (suppression.entity_type, suppression.entity_id, suppression.rule_key),
            ).fetchone()
            if row:
                suppression = suppression.model_copy(update={"id": row["id"]})
            self._conn.execute(
                """
                INSERT INTO rule_suppressions (
                    id, entity_type, entity_id, rule_key, status, suppressed_until, record_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (entity_type, entity_id, rule_key) DO UPDATE SET
                    status = excluded.status,
                    suppressed_until = excluded.suppressed_until,
                    record_json = excluded.record_json
                """,
                (
                    suppression.id,
                    suppression.entity_type,
                    suppression.entity_id,
                    suppression.rule_key,
                    suppression.status,
                    _ts(suppression.suppressed_until),
                    suppression.model_dump_json(),
                ),
            )
        return suppression

    def active_suppressions(
        self, entity_type: str, entity_id: str, now: Optional[datetime] = None
    ) -> List[RuleSuppression]:
        now = _aware(now) or utcnow()
        with self._lock:
            rows = self._conn.execute(
                "SELECT record_json FROM rule_suppressions "
                "WHERE entity_type = ? AND entity_id = ? AND status = 'active' "
                "AND suppressed_until > ?",
                (entity_type, entity_id, _ts(now)),
            ).fetchall()
        return [RuleSuppression.model_validate_json(r["record_json"]) for r in rows]

    # === RULE RUNS ===

    def record_run(
        self, kind: str, run_key: str, now: datetime, created: int = 0, updated: int = 0
    ) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO rule_runs (kind, run_key, last_run_at, created, updated)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (kind, run_key) DO UPDATE SET
                    last_run_at = excluded.last_run_at,
                    created = rule_runs.created + excluded.created,
                    updated = rule_runs.updated + excluded.updated
                """,
                (kind, run_key, _ts(now), created, updated),
            )

    def last_run_at(self, kind: str) -> Optional[datetime]:
        with self._lock:
            row = self._conn.execute(
                "SELECT MAX(last_run_at) AS last FROM rule_runs WHERE kind = ?", (kind,)
            ).fetchone()
        return datetime.fromisoformat(row["last"]) if row and row["last"] else None
