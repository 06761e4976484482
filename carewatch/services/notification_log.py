"""
Append-only notification log for triage audit history.

The core only writes to the sink. ``InMemoryNotificationLog`` keeps entries
newest-first and notifies subscribers, which is enough for the notification
centre and for tests.
"""

import uuid
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Literal, Protocol

import structlog

from carewatch.domain.models import (
    AlertCategory,
    AlertEvent,
    NotificationLogEntry,
    SeverityTier,
)

logger = structlog.get_logger(__name__)

LogAction = Literal["created", "acknowledged", "resolved"]

_CATEGORY_BASE = {
    AlertCategory.HEART_RATE: "Heart Rate Monitoring",
    AlertCategory.RESPIRATORY: "Respiratory Monitoring",
    AlertCategory.FALL: "Fall Detection",
    AlertCategory.VITAL: "Monitoring",
}

_TYPE_SIGNAL = {
    AlertCategory.HEART_RATE: "HEART_RATE",
    AlertCategory.RESPIRATORY: "RESPIRATORY_RATE",
}

_TYPE_PREFIX = {
    SeverityTier.CRITICAL: "CRITICAL",
    SeverityTier.WARNING: "WARNING",
}

_CREATED_DETAILS = {
    AlertCategory.HEART_RATE: "Heart rate exceeded the danger threshold",
    AlertCategory.RESPIRATORY: "Respiratory rate is below the safe threshold",
    AlertCategory.FALL: "Fall detected, emergency protocol started",
}

_ACTION_LABEL = {"created": "", "acknowledged": " (Acknowledged)", "resolved": " (Resolved)"}


class NotificationLogSink(Protocol):
    """Append-only audit sink. No reads are performed by the core."""

    def append(self, entry: NotificationLogEntry) -> None: ...


def _entry_id(source_id: str, action: str) -> str:
    return f"{source_id}-{action}-{uuid.uuid4().hex[:12]}"


def entry_from_alert(
    alert: AlertEvent,
    action: LogAction,
    system: str,
    now: datetime | None = None,
) -> NotificationLogEntry:
    """Build the audit entry for an alert lifecycle action."""
    category = alert.category
    if category is AlertCategory.FALL:
        entry_type = "FALL_DETECTED"
    elif category in _TYPE_SIGNAL:
        prefix = _TYPE_PREFIX.get(alert.severity, "CAUTION")
        entry_type = f"{prefix}_{_TYPE_SIGNAL[category]}"
    else:
        entry_type = "ALERT_EVENT"

    suffix = "Warning" if alert.severity is SeverityTier.CAUTION else "Emergency Alert"

    if action == "created":
        details = _CREATED_DETAILS.get(category) or alert.current_value or alert.raw_message
    else:
        details = f"Alert {action}: {alert.raw_message or category.value} ({alert.id})"

    return NotificationLogEntry(
        id=_entry_id(alert.id, action),
        timestamp=now or datetime.now(UTC),
        system=system,
        patient_id=alert.patient_id or "N/A",
        category=f"{_CATEGORY_BASE[category]}/{suffix}{_ACTION_LABEL[action]}",
        type=entry_type,
        details=details or "",
    )


def analysis_complete_entry(
    patient_id: str,
    details: str,
    system: str,
    now: datetime | None = None,
) -> NotificationLogEntry:
    """Build the audit entry written when an analysis run finishes for a patient."""
    return NotificationLogEntry(
        id=_entry_id(patient_id or "analysis", "analysis"),
        timestamp=now or datetime.now(UTC),
        system=system,
        patient_id=patient_id or "N/A",
        category="Sleep Analysis/Analysis Complete",
        type="ANALYSIS_COMPLETE",
        details=details,
    )


class InMemoryNotificationLog:
    """Bounded newest-first notification log with change subscribers."""

    def __init__(self, max_entries: int = 1000) -> None:
        self._entries: deque[NotificationLogEntry] = deque(maxlen=max_entries)
        self._subscribers: list[Callable[[], None]] = []
        self.logger = logger.bind(component="notification_log")

    def append(self, entry: NotificationLogEntry) -> None:
        self._entries.appendleft(entry)
        self.logger.info(
            "notification_logged",
            entry_id=entry.id,
            category=entry.category,
            patient_id=entry.patient_id,
        )
        for callback in list(self._subscribers):
            try:
                callback()
            except Exception as e:
                self.logger.error("notification_subscriber_failed", error=str(e))

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    @property
    def entries(self) -> list[NotificationLogEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
