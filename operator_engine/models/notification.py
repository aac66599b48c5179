"""Notification Event — dedupe record for outbound alerts."""

from datetime import datetime

from pydantic import BaseModel


class NotificationEvent(BaseModel):
    """Its existence inside the cooldown window suppresses a repeat alert."""

    id: str
    dedupe_key: str                         # Source-prefixed, e.g. "risk:..."
    event_key: str = "risk.created.critical"
    title: str = ""
    message: str = ""
    severity: str = "critical"
    created_at: datetime
