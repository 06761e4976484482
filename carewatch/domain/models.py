"""
Domain models for patient vital monitoring and triage.

These models represent the core business concepts and are framework-agnostic.
They use Pydantic for validation but could be swapped to dataclasses if needed.
"""

from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum, IntEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from carewatch.domain.identity import extract_display_name

# Legacy API severity vocabulary mapped onto domain tiers
_LEGACY_SEVERITY_LABELS = {
    "HIGH": "CRITICAL",
    "MEDIUM": "WARNING",
    "LOW": "CAUTION",
}


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class SeverityTier(IntEnum):
    """Clinical severity tiers. Ordered, merging two tiers keeps the maximum."""

    NORMAL = 0
    CAUTION = 1
    WARNING = 2
    CRITICAL = 3

    @classmethod
    def parse(cls, label: Any, default: "SeverityTier | None" = None) -> "SeverityTier":
        """
        Parse a severity label in either vocabulary.

        Accepts domain tiers in any case (``critical``, ``Warning``) and the
        legacy uppercase tiers ``HIGH``/``MEDIUM``/``LOW``. Unknown labels
        return ``default`` or raise ``ValueError`` when no default is given.
        """
        if isinstance(label, SeverityTier):
            return label
        if isinstance(label, str):
            key = label.strip().upper()
            key = _LEGACY_SEVERITY_LABELS.get(key, key)
            if key in cls.__members__:
                return cls[key]
        if default is not None:
            return default
        raise ValueError(f"Unknown severity label: {label!r}")

    @property
    def label(self) -> str:
        return self.name.lower()


class SignalKind(str, Enum):
    """Vital signals reported by the bedside radar sensors."""

    HEART_RATE = "heart_rate"
    RESPIRATORY_RATE = "respiratory_rate"


class AlertStatus(str, Enum):
    """Alert lifecycle states."""

    NEW = "new"
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class AlertCategory(str, Enum):
    """Structured alert categories carried by source events."""

    HEART_RATE = "heart_rate"
    RESPIRATORY = "respiratory"
    FALL = "fall"
    VITAL = "vital"


class FocusKind(str, Enum):
    """What the live map is centered on."""

    NONE = "none"
    SELF_LOCATION = "self_location"
    SELECTED_DEVICE = "selected_device"
    CRITICAL_BOUNDS = "critical_bounds"


class VitalReading(BaseModel):
    """Individual vital reading from one poll cycle."""

    model_config = ConfigDict(frozen=True)  # Immutable for better reasoning

    signal_kind: SignalKind
    value: float | None = None
    observed_at: datetime | None = None
    patient_ref: Any = Field(default=None, description="Raw patientId field, string or object")
    patient_code: str = Field(default="", description="Short human-readable patient code")
    display_name: str = ""
    display_name_english: str = ""
    baseline_status: SeverityTier | None = Field(
        default=None, description="Status reported by the source alongside the value"
    )
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)

    @field_validator("observed_at")
    @classmethod
    def normalize_observed_at(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], kind: SignalKind) -> "VitalReading":
        """Build a reading from an API vital entry."""
        names = extract_display_name(payload)
        status = payload.get("status")
        return cls(
            signal_kind=kind,
            value=payload.get("value"),
            observed_at=payload.get("timestamp") or payload.get("observedAt"),
            patient_ref=payload.get("patientId"),
            patient_code=payload.get("patientCode") or "",
            display_name=names.primary,
            display_name_english=names.english,
            baseline_status=SeverityTier.parse(status, SeverityTier.NORMAL) if status else None,
            raw=dict(payload),
        )

    def identity_fields(self) -> Mapping[str, Any]:
        """Record used for identity resolution."""
        if self.raw:
            return self.raw
        return {"patientId": self.patient_ref, "patientCode": self.patient_code}


class PatientRecord(BaseModel):
    """Reconciled per-patient record for one poll cycle."""

    model_config = ConfigDict(frozen=True)

    id: str
    code: str = ""
    display_name: str = ""
    display_name_english: str = ""
    heart_rate: float | None = None
    respiratory_rate: float | None = None
    heart_rate_observed_at: datetime | None = None
    respiratory_rate_observed_at: datetime | None = None
    severity: SeverityTier = SeverityTier.NORMAL

    def value_for(self, kind: SignalKind) -> float | None:
        if kind is SignalKind.HEART_RATE:
            return self.heart_rate
        return self.respiratory_rate


class AlertEvent(BaseModel):
    """Normalized alert event."""

    model_config = ConfigDict(frozen=True)

    id: str
    patient_ref: Any = None
    patient_id: str = Field(default="", description="Resolved canonical id, empty if unresolved")
    patient_code: str = ""
    patient_name: str = ""
    patient_name_english: str = ""
    raw_message: str = ""
    category: AlertCategory = AlertCategory.VITAL
    severity: SeverityTier = SeverityTier.CAUTION
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    status: AlertStatus = AlertStatus.ACTIVE
    current_value: str | None = None
    threshold_value: str | None = None

    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None
    notes: str | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, v: datetime) -> datetime:
        return v.replace(tzinfo=UTC) if v.tzinfo is None else v

    @property
    def is_fall(self) -> bool:
        return self.category is AlertCategory.FALL


class DeviceLocation(BaseModel):
    """Position and health of a bedside device, refreshed wholesale each poll."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    online_status: Literal["online", "offline"] = "offline"
    health_severity: SeverityTier = SeverityTier.NORMAL
    connection_health: Literal["normal", "abnormal"] = "normal"
    assigned_patient_id: str | None = None
    patient_code: str = ""
    patient_name: str = ""
    signal_strength: int | None = Field(default=None, description="RSSI in dBm")
    last_updated: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def coordinates(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)

    @property
    def is_critical(self) -> bool:
        return self.health_severity is SeverityTier.CRITICAL


class GeoPosition(BaseModel):
    """Own position reported by the geolocation provider."""

    model_config = ConfigDict(frozen=True)

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def coordinates(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)


class FocusTarget(BaseModel):
    """The single place the live map is currently centered on."""

    model_config = ConfigDict(frozen=True)

    kind: FocusKind = FocusKind.NONE
    coordinates: tuple[float, float] | None = None
    device_ids: tuple[str, ...] = ()
    bounds: tuple[tuple[float, float], tuple[float, float]] | None = Field(
        default=None, description="(south-west, north-east) corners for CRITICAL_BOUNDS"
    )


class NotificationLogEntry(BaseModel):
    """Audit entry appended to the notification log."""

    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    system: str
    patient_id: str = "N/A"
    category: str
    type: str
    status: Literal["success", "failure"] = "success"
    details: str = ""
