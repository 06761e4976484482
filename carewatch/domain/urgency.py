"""Urgency ordering for alerts and patients."""

from collections.abc import Iterable
from typing import NamedTuple

from carewatch.domain.models import AlertEvent, PatientRecord, SeverityTier, SignalKind
from carewatch.domain.severity import classify

SEVERITY_WEIGHTS: dict[SeverityTier, int] = {
    SeverityTier.CRITICAL: 1000,
    SeverityTier.WARNING: 500,
    SeverityTier.CAUTION: 100,
    SeverityTier.NORMAL: 0,
}

# Falls float above vital alerts of the same tier
FALL_BONUS = 100


class SafeBand(NamedTuple):
    low: float
    high: float

    def distance(self, value: float) -> float:
        """How far ``value`` lies outside the band, zero inside it."""
        if value > self.high:
            return value - self.high
        if value < self.low:
            return self.low - value
        return 0.0


SAFE_BANDS: dict[SignalKind, SafeBand] = {
    SignalKind.HEART_RATE: SafeBand(low=65, high=85),
    SignalKind.RESPIRATORY_RATE: SafeBand(low=14, high=20),
}


def alert_urgency_score(alert: AlertEvent) -> int:
    score = SEVERITY_WEIGHTS[alert.severity]
    if alert.is_fall:
        score += FALL_BONUS
    return score


def rank_alerts(alerts: Iterable[AlertEvent]) -> list[AlertEvent]:
    """Sort alerts by descending urgency, preserving arrival order for equal scores."""
    # sorted() is stable, and reverse=True keeps equal items in input order
    return sorted(alerts, key=alert_urgency_score, reverse=True)


def safe_band_distance(kind: SignalKind, value: float) -> float:
    return SAFE_BANDS[kind].distance(value)


def patient_urgency_key(record: PatientRecord, kind: SignalKind) -> tuple[SeverityTier, float]:
    """(severity, distance outside safe band) for the given signal."""
    value = record.value_for(kind)
    if value is None:
        return (SeverityTier.NORMAL, 0.0)
    return (classify(kind, value), safe_band_distance(kind, value))


def rank_patients(records: Iterable[PatientRecord], kind: SignalKind) -> list[PatientRecord]:
    """
    Rank patients that have a current reading for ``kind``.

    Primary key is the signal's severity tier, tie-broken by how far the value
    lies outside the safe band, both descending.
    """
    with_signal = [r for r in records if (r.value_for(kind) or 0) > 0]
    return sorted(with_signal, key=lambda r: patient_urgency_key(r, kind), reverse=True)
