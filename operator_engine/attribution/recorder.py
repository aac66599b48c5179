"""
Attribution Recorder — what did an executed action actually change?

Captures an AttributionContext immediately before and after an
execute-mode action, computes the delta and persists a write-once
OperatorAttribution. Reading the context never raises: a failed read
comes back as a context with ``error`` set, and downstream classification
treats it as neutral.
"""

from datetime import datetime, timezone
from typing import Callable, Optional

from operator_engine.logging import get_logger
from operator_engine.models.attribution import (
    AttributionContext,
    AttributionDelta,
    AttributionSourceType,
    BandChange,
    NextActionSummary,
    OperatorAttribution,
    RiskSummary,
    ScoreSummary,
)
from operator_engine.models.learning import MemoryOutcome
from operator_engine.sanitize import sanitize_error_message
from operator_engine.store.sqlite import EngineStore, new_id

logger = get_logger("operator_engine.attribution")

STRONG_POSITIVE = "strong_positive"
STRONG_NEGATIVE = "strong_negative"
WEAK = "weak"

SCORE_STRONG_THRESHOLD = 5
# More than this many new open flags counts as worsened.
RISK_OPEN_WORSENED_THRESHOLD = 2

ScoreReader = Callable[[str, str], Optional[ScoreSummary]]


def load_context(
    store: EngineStore,
    entity_type: str = "command_center",
    entity_id: str = "command_center",
    score_reader: Optional[ScoreReader] = None,
) -> AttributionContext:
    """
    Snapshot open risk counts, queued actions for the scope and the latest
    score. The score comes from an injected reader; without one it is None.
    """
    try:
        score = score_reader(entity_type, entity_id) if score_reader else None
        return AttributionContext(
            score=score,
            risk=RiskSummary(
                open_count=store.count_open_risks(),
                critical_count=store.count_open_risks("critical"),
                top_keys=store.top_open_risk_keys(5),
            ),
            nba=NextActionSummary(
                queued_count=store.count_queued(entity_type, entity_id),
                top_rule_keys=store.top_queued_rule_keys(entity_type, entity_id),
            ),
        )
    except Exception as exc:
        message = sanitize_error_message(exc)
        logger.warning("attribution.context_failed", entity_type=entity_type, error=message)
        return AttributionContext(error=message)


def compute_delta(before: AttributionContext, after: AttributionContext) -> AttributionDelta:
    score_delta = None
    band_change = None
    if before.score is not None and after.score is not None:
        score_delta = after.score.score - before.score.score
        if before.score.band != after.score.band:
            band_change = BandChange(from_band=before.score.band, to_band=after.score.band)

    return AttributionDelta(
        score_delta=score_delta,
        band_change=band_change,
        risk_open_delta=after.risk.open_count - before.risk.open_count,
        risk_critical_delta=after.risk.critical_count - before.risk.critical_count,
        nba_queued_delta=after.nba.queued_count - before.nba.queued_count,
        error=before.error or after.error,
    )


def _band_direction(delta: AttributionDelta) -> int:
    return delta.band_change.direction if delta.band_change else 0


def is_strong_positive(delta: AttributionDelta) -> bool:
    return (
        delta.risk_critical_delta < 0
        or _band_direction(delta) > 0
        or (delta.score_delta or 0) >= SCORE_STRONG_THRESHOLD
    )


def is_strong_negative(delta: AttributionDelta) -> bool:
    return (
        delta.risk_critical_delta > 0
        or _band_direction(delta) < 0
        or (delta.score_delta or 0) <= -SCORE_STRONG_THRESHOLD
    )


def classify_delta(delta: AttributionDelta) -> str:
    """strong_positive wins over strong_negative when both hold."""
    if is_strong_positive(delta):
        return STRONG_POSITIVE
    if is_strong_negative(delta):
        return STRONG_NEGATIVE
    return WEAK


def delta_to_outcome(delta: AttributionDelta) -> MemoryOutcome:
    """Collapse a delta into the outcome fed to memory ingestion."""
    if delta.error:
        return MemoryOutcome.NEUTRAL

    direction = _band_direction(delta)
    if direction > 0:
        return MemoryOutcome.IMPROVED
    if direction < 0:
        return MemoryOutcome.WORSENED

    if delta.risk_critical_delta < 0:
        return MemoryOutcome.IMPROVED
    if delta.risk_critical_delta > 0:
        return MemoryOutcome.WORSENED

    if delta.score_delta is not None:
        if delta.score_delta >= SCORE_STRONG_THRESHOLD:
            return MemoryOutcome.IMPROVED
        if delta.score_delta <= -SCORE_STRONG_THRESHOLD:
            return MemoryOutcome.WORSENED

    if delta.risk_open_delta < 0:
        return MemoryOutcome.IMPROVED
    if delta.risk_open_delta > RISK_OPEN_WORSENED_THRESHOLD:
        return MemoryOutcome.WORSENED
    return MemoryOutcome.NEUTRAL


class AttributionRecorder:
    """Loads contexts and persists attributions against one store."""

    def __init__(self, store: EngineStore, score_reader: Optional[ScoreReader] = None):
        self.store = store
        self.score_reader = score_reader

    def load_context(self, entity_type: str, entity_id: str) -> AttributionContext:
        return load_context(self.store, entity_type, entity_id, self.score_reader)

    def record(
        self,
        actor_user_id: str,
        before: AttributionContext,
        after: AttributionContext,
        rule_key: Optional[str] = None,
        action_key: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        source_type: AttributionSourceType = AttributionSourceType.NBA_EXECUTE,
        delta: Optional[AttributionDelta] = None,
        occurred_at: Optional[datetime] = None,
    ) -> str:
        """Persist one attribution and return its id."""
        attribution = OperatorAttribution(
            id=new_id("attr"),
            actor_user_id=actor_user_id,
            source_type=source_type,
            rule_key=rule_key,
            action_key=action_key,
            entity_type=entity_type,
            entity_id=entity_id,
            before=before,
            after=after,
            delta=delta or compute_delta(before, after),
            occurred_at=occurred_at or datetime.now(timezone.utc),
        )
        self.store.insert_attribution(attribution)
        logger.info(
            "attribution.recorded",
            attribution_id=attribution.id,
            rule_key=rule_key,
            action_key=action_key,
            outcome=classify_delta(attribution.delta),
        )
        return attribution.id
