"""
Notification/Cooldown Gate.

Decides whether an outbound alert for a dedupe key may fire. The decision
and the recorded NotificationEvent happen under the store lock, so two
concurrent callers for the same key cannot both be told to notify.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from operator_engine.logging import get_logger
from operator_engine.models.notification import NotificationEvent
from operator_engine.sanitize import sanitize_error_message
from operator_engine.store.sqlite import EngineStore, new_id

logger = get_logger("operator_engine.notifications")

DEFAULT_COOLDOWN_SECONDS = 3600

Clock = Callable[[], datetime]
Notifier = Callable[[NotificationEvent], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CooldownGate:
    """
    At most one notification per dedupe key per cooldown window.

    ``notifier`` is an optional outbound channel; delivery is best-effort
    and a failing notifier never changes the gate decision.
    """

    def __init__(
        self,
        store: EngineStore,
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
        default_cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS,
    ):
        self.store = store
        self.clock = clock or _utcnow
        self.notifier = notifier
        self.default_cooldown_seconds = default_cooldown_seconds

    def should_notify(
        self,
        dedupe_key: str,
        cooldown_seconds: Optional[int] = None,
        title: str = "",
        message: str = "",
        severity: str = "critical",
        event_key: str = "risk.created.critical",
    ) -> bool:
        if cooldown_seconds is None:
            cooldown_seconds = self.default_cooldown_seconds
        now = self.clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        with self.store.locked():
            latest = self.store.latest_notification(dedupe_key)
            if latest is not None:
                created = latest.created_at
                if created.tzinfo is None:
                    created = created.replace(tzinfo=timezone.utc)
                if now - created < timedelta(seconds=cooldown_seconds):
                    logger.debug("notify.suppressed", dedupe_key=dedupe_key)
                    return False
            event = self.store.insert_notification(NotificationEvent(
                id=new_id("notif"),
                dedupe_key=dedupe_key,
                event_key=event_key,
                title=title,
                message=sanitize_error_message(message) if message else "",
                severity=severity,
                created_at=now,
            ))

        logger.info("notify.recorded", dedupe_key=dedupe_key, event_key=event_key)
        self._deliver(event)
        return True

    def _deliver(self, event: NotificationEvent) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier(event)
        except Exception as exc:
            # Delivery is best-effort; the event row already records the alert.
            logger.warning(
                "notify.delivery_failed",
                dedupe_key=event.dedupe_key,
                error=sanitize_error_message(exc),
            )
