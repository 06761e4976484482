"""
Alert triage: normalize, deduplicate, filter-active and rank alert events.

Acknowledge and resolve are explicit user actions. Each effective transition
writes exactly one entry to the notification log; repeated actions on an
alert that is already in the target state are silent no-ops.
"""

from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, ValidationError

from carewatch.config import TriageConfig
from carewatch.domain.identity import extract_display_name, resolve_with_code_fallback
from carewatch.domain.models import AlertCategory, AlertEvent, AlertStatus, SeverityTier
from carewatch.domain.urgency import rank_alerts
from carewatch.services.notification_log import (
    NotificationLogSink,
    analysis_complete_entry,
    entry_from_alert,
)

logger = structlog.get_logger(__name__)

_STRUCTURED_CATEGORIES = {
    "HEART_RATE": AlertCategory.HEART_RATE,
    "HR": AlertCategory.HEART_RATE,
    "RESPIRATORY": AlertCategory.RESPIRATORY,
    "RESPIRATORY_RATE": AlertCategory.RESPIRATORY,
    "RR": AlertCategory.RESPIRATORY,
    "FALL": AlertCategory.FALL,
    "FALL_DETECTION": AlertCategory.FALL,
    "VITAL": AlertCategory.VITAL,
}

# Legacy payloads only carry localized text; matched case-insensitively
_LEGACY_MESSAGE_PATTERNS: tuple[tuple[AlertCategory, tuple[str, ...]], ...] = (
    (AlertCategory.FALL, ("낙상", "fall")),
    (AlertCategory.HEART_RATE, ("심박", "heart rate")),
    (AlertCategory.RESPIRATORY, ("호흡", "respiratory rate")),
)

_STATUSES = {
    "NEW": AlertStatus.ACTIVE,
    "ACTIVE": AlertStatus.ACTIVE,
    "ACKNOWLEDGED": AlertStatus.ACKNOWLEDGED,
    "RESOLVED": AlertStatus.RESOLVED,
}

# A snapshot never moves an alert back along its lifecycle
_LIFECYCLE_ORDER = {
    AlertStatus.NEW: 0,
    AlertStatus.ACTIVE: 0,
    AlertStatus.ACKNOWLEDGED: 1,
    AlertStatus.RESOLVED: 2,
}


class AlertNotFoundError(LookupError):
    """The alert id named by a user command is not known to the pipeline."""

    def __init__(self, alert_id: str) -> None:
        super().__init__(f"Unknown alert: {alert_id}")
        self.alert_id = alert_id


class TriageResult(BaseModel):
    """Ranked active alerts for display, plus the counts behind them."""

    model_config = ConfigDict(frozen=True)

    active: tuple[AlertEvent, ...] = ()
    total_active: int = 0
    total: int = 0
    skipped: int = 0


def legacy_category_from_message(*texts: str | None) -> AlertCategory | None:
    """Classify an alert from localized message text. Compatibility path only."""
    for text in texts:
        if not text:
            continue
        lowered = text.lower()
        for category, needles in _LEGACY_MESSAGE_PATTERNS:
            if any(needle in lowered for needle in needles):
                return category
    return None


def categorize_alert(payload: Mapping[str, Any]) -> AlertCategory:
    """Structured category first, then legacy message matching, then VITAL."""
    for key in ("category", "alertType"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip().upper() in _STRUCTURED_CATEGORIES:
            return _STRUCTURED_CATEGORIES[value.strip().upper()]

    message = payload.get("message")
    texts: list[str | None] = [payload.get("type")]
    if isinstance(message, Mapping):
        texts.extend([message.get("ko"), message.get("en")])
    elif isinstance(message, str):
        texts.append(message)
    return legacy_category_from_message(*texts) or AlertCategory.VITAL


def parse_status(value: Any) -> AlertStatus:
    """Map source status onto the lifecycle; legacy NEW and missing mean active."""
    if value is None or value == "":
        return AlertStatus.ACTIVE
    if isinstance(value, AlertStatus):
        return AlertStatus.ACTIVE if value is AlertStatus.NEW else value
    key = str(value).strip().upper()
    if key not in _STATUSES:
        raise ValueError(f"Unknown alert status: {value!r}")
    return _STATUSES[key]


def _message_text(payload: Mapping[str, Any]) -> str:
    message = payload.get("message")
    if isinstance(message, Mapping):
        return message.get("ko") or message.get("en") or ""
    if isinstance(message, str):
        return message
    return payload.get("type") or ""


def _optional_text(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def normalize_alert(
    payload: Mapping[str, Any], code_index: Mapping[str, str] | None = None
) -> AlertEvent:
    """
    Map one raw alert payload onto ``AlertEvent``.

    Raises ``ValueError`` (including pydantic's ``ValidationError``) when the
    payload cannot be mapped.
    """
    alert_id = payload.get("id") or payload.get("_id")
    if not alert_id:
        raise ValueError("Alert has no id")

    patient = payload.get("patient") if isinstance(payload.get("patient"), Mapping) else {}
    names = extract_display_name(payload)
    patient_code = payload.get("patientCode") or patient.get("patientCode") or ""

    return AlertEvent(
        id=str(alert_id),
        patient_ref=payload.get("patientId", payload.get("patient")),
        patient_id=resolve_with_code_fallback(payload, code_index),
        patient_code=patient_code,
        patient_name=names.primary or patient_code,
        patient_name_english=names.english,
        raw_message=_message_text(payload),
        category=categorize_alert(payload),
        severity=SeverityTier.parse(payload.get("severity"), SeverityTier.CAUTION),
        created_at=payload.get("createdAt") or payload.get("timestamp") or datetime.now(UTC),
        status=parse_status(payload.get("status")),
        current_value=_optional_text(payload.get("currentValue") or payload.get("value")),
        threshold_value=_optional_text(payload.get("thresholdValue")),
        acknowledged_at=payload.get("acknowledgedAt"),
        acknowledged_by=payload.get("acknowledgedBy"),
        notes=payload.get("notes"),
        resolved_at=payload.get("resolvedAt"),
        resolved_by=payload.get("resolvedBy"),
    )


class AlertTriagePipeline:
    """
    Holds the current alert set and exposes ranked views and user transitions.

    ``ingest`` replaces the alert set wholesale with each poll. Local
    acknowledge/resolve state survives a poll that reports the alert at an
    earlier lifecycle stage, so a user action is not undone by the next
    snapshot. Resolved is terminal.
    """

    def __init__(
        self,
        sink: NotificationLogSink,
        config: TriageConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.sink = sink
        self.config = config or TriageConfig()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._alerts: dict[str, AlertEvent] = {}
        self._seen_ids: set[str] = set()
        self._skipped = 0
        self.logger = logger.bind(component="alert_triage")

    def ingest(
        self,
        payloads: Iterable[Mapping[str, Any]],
        code_index: Mapping[str, str] | None = None,
    ) -> TriageResult:
        """Normalize a poll's alerts and return the ranked active view."""
        alerts: dict[str, AlertEvent] = {}
        skipped = 0
        duplicates = 0

        for payload in payloads:
            try:
                alert = normalize_alert(payload, code_index)
            except (ValidationError, ValueError, TypeError) as e:
                skipped += 1
                self.logger.warning(
                    "malformed_alert_skipped",
                    alert_id=payload.get("id") or payload.get("_id"),
                    error=str(e),
                )
                continue

            if alert.id in alerts:
                duplicates += 1
                continue

            known = self._alerts.get(alert.id)
            if (
                known is not None
                and _LIFECYCLE_ORDER[known.status] > _LIFECYCLE_ORDER[alert.status]
            ):
                alert = alert.model_copy(
                    update={
                        "status": known.status,
                        "acknowledged_at": known.acknowledged_at or alert.acknowledged_at,
                        "acknowledged_by": known.acknowledged_by or alert.acknowledged_by,
                        "notes": known.notes or alert.notes,
                        "resolved_at": known.resolved_at,
                        "resolved_by": known.resolved_by,
                    }
                )

            alerts[alert.id] = alert

        self._alerts = alerts
        self._skipped = skipped

        if self.config.log_new_alerts:
            for alert in alerts.values():
                if alert.id not in self._seen_ids and alert.status is AlertStatus.ACTIVE:
                    self.sink.append(
                        entry_from_alert(alert, "created", self.config.system_name, self._clock())
                    )
        self._seen_ids.update(alerts)

        result = self.ranked_active()
        self.logger.info(
            "alerts_triaged",
            total=len(alerts),
            active=result.total_active,
            displayed=len(result.active),
            skipped=skipped,
            duplicates=duplicates,
        )
        return result

    def ranked_active(self) -> TriageResult:
        active = [a for a in self._alerts.values() if a.status is AlertStatus.ACTIVE]
        ranked = rank_alerts(active)
        return TriageResult(
            active=tuple(ranked[: self.config.display_cap]),
            total_active=len(active),
            total=len(self._alerts),
            skipped=self._skipped,
        )

    def get(self, alert_id: str) -> AlertEvent:
        try:
            return self._alerts[alert_id]
        except KeyError:
            raise AlertNotFoundError(alert_id) from None

    @property
    def alerts(self) -> list[AlertEvent]:
        return list(self._alerts.values())

    def acknowledge(self, alert_id: str, note: str = "") -> AlertEvent:
        """Move an active alert to acknowledged. No-op if already acknowledged or resolved."""
        alert = self.get(alert_id)
        if alert.status is not AlertStatus.ACTIVE:
            self.logger.info("acknowledge_ignored", alert_id=alert_id, status=alert.status.value)
            return alert

        now = self._clock()
        updated = alert.model_copy(
            update={
                "status": AlertStatus.ACKNOWLEDGED,
                "acknowledged_at": now,
                "acknowledged_by": self.config.actor,
                "notes": note or alert.notes,
            }
        )
        self._alerts[alert_id] = updated
        self.sink.append(entry_from_alert(updated, "acknowledged", self.config.system_name, now))
        self.logger.info("alert_acknowledged", alert_id=alert_id, actor=self.config.actor)
        return updated

    def resolve(self, alert_id: str) -> AlertEvent:
        """Move any non-terminal alert to resolved. No-op if already resolved."""
        alert = self.get(alert_id)
        if alert.status is AlertStatus.RESOLVED:
            self.logger.info("resolve_ignored", alert_id=alert_id)
            return alert

        now = self._clock()
        updated = alert.model_copy(
            update={
                "status": AlertStatus.RESOLVED,
                "resolved_at": now,
                "resolved_by": self.config.actor,
            }
        )
        self._alerts[alert_id] = updated
        self.sink.append(entry_from_alert(updated, "resolved", self.config.system_name, now))
        self.logger.info("alert_resolved", alert_id=alert_id, actor=self.config.actor)
        return updated

    def analysis_complete(self, patient_id: str, details: str) -> None:
        """Record that an analysis run finished for a patient."""
        self.sink.append(
            analysis_complete_entry(patient_id, details, self.config.system_name, self._clock())
        )
