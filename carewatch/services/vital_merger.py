"""
Fold per-signal vital streams into one record per patient.

Each poll cycle builds its records from scratch in a locally scoped builder
and returns an immutable ``MergeResult``. Nothing is carried between cycles.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from carewatch.domain.identity import build_code_index, resolve_patient_id
from carewatch.domain.models import PatientRecord, SeverityTier, SignalKind, VitalReading
from carewatch.domain.severity import classify, composite_severity

logger = structlog.get_logger(__name__)


class MergeResult(BaseModel):
    """Reconciled patient records for one poll cycle."""

    model_config = ConfigDict(frozen=True)

    records: tuple[PatientRecord, ...] = ()
    data_freshness: datetime | None = None
    code_index: dict[str, str] = Field(default_factory=dict)
    unresolved_count: int = 0

    def get(self, patient_id: str) -> PatientRecord | None:
        return next((r for r in self.records if r.id == patient_id), None)

    def with_heart_rate(self) -> list[PatientRecord]:
        return [r for r in self.records if (r.heart_rate or 0) > 0]

    def with_respiratory_rate(self) -> list[PatientRecord]:
        return [r for r in self.records if (r.respiratory_rate or 0) > 0]


@dataclass
class _Draft:
    id: str
    code: str
    display_name: str
    display_name_english: str
    heart_rate: float | None = None
    respiratory_rate: float | None = None
    heart_rate_observed_at: datetime | None = None
    respiratory_rate_observed_at: datetime | None = None
    heart_rate_baseline: SeverityTier | None = None
    respiratory_rate_baseline: SeverityTier | None = None
    severity: SeverityTier = SeverityTier.NORMAL

    def apply(self, reading: VitalReading) -> None:
        value = reading.value if reading.value is not None and reading.value > 0 else None
        if reading.signal_kind is SignalKind.HEART_RATE:
            self.heart_rate = value
            self.heart_rate_observed_at = reading.observed_at if value is not None else None
            self.heart_rate_baseline = reading.baseline_status
        else:
            self.respiratory_rate = value
            self.respiratory_rate_observed_at = reading.observed_at if value is not None else None
            self.respiratory_rate_baseline = reading.baseline_status

        # Recomputed from the current merged values, not ratcheted over history
        self.severity = composite_severity(
            classify(SignalKind.HEART_RATE, self.heart_rate),
            classify(SignalKind.RESPIRATORY_RATE, self.respiratory_rate),
            self.heart_rate_baseline,
            self.respiratory_rate_baseline,
        )

    def freeze(self) -> PatientRecord:
        return PatientRecord(
            id=self.id,
            code=self.code,
            display_name=self.display_name,
            display_name_english=self.display_name_english,
            heart_rate=self.heart_rate,
            respiratory_rate=self.respiratory_rate,
            heart_rate_observed_at=self.heart_rate_observed_at,
            respiratory_rate_observed_at=self.respiratory_rate_observed_at,
            severity=self.severity,
        )


def readings_from_payloads(
    payloads: Iterable[Mapping[str, Any]], kind: SignalKind
) -> list[VitalReading]:
    """Convert raw API vital entries, skipping and logging malformed ones."""
    readings: list[VitalReading] = []
    for payload in payloads:
        try:
            readings.append(VitalReading.from_payload(payload, kind))
        except (ValidationError, ValueError, TypeError) as e:
            logger.warning(
                "malformed_vital_skipped",
                signal=kind.value,
                patient_code=payload.get("patientCode") if isinstance(payload, Mapping) else None,
                error=str(e),
            )
    return readings


class VitalStreamMerger:
    """Builds one ``PatientRecord`` per resolved patient from a poll cycle's readings."""

    def __init__(self) -> None:
        self.logger = logger.bind(component="vital_stream_merger")

    def merge(
        self,
        heart_rate: Iterable[VitalReading],
        respiratory_rate: Iterable[VitalReading],
    ) -> MergeResult:
        drafts: dict[str, _Draft] = {}
        identity_records: list[Mapping[str, Any]] = []
        freshness: datetime | None = None
        unresolved = 0

        for reading in [*heart_rate, *respiratory_rate]:
            observed_at = reading.observed_at
            if observed_at is not None and (freshness is None or observed_at > freshness):
                freshness = observed_at

            fields = reading.identity_fields()
            identity_records.append(fields)
            patient_id = resolve_patient_id(fields)
            if not patient_id:
                unresolved += 1
                continue

            draft = drafts.get(patient_id)
            if draft is None:
                draft = _Draft(
                    id=patient_id,
                    code=reading.patient_code,
                    display_name=reading.display_name or reading.patient_code,
                    display_name_english=reading.display_name_english,
                )
                drafts[patient_id] = draft
            draft.apply(reading)

        result = MergeResult(
            records=tuple(draft.freeze() for draft in drafts.values()),
            data_freshness=freshness,
            code_index=build_code_index(identity_records),
            unresolved_count=unresolved,
        )

        self.logger.info(
            "vitals_merged",
            patients=len(result.records),
            unresolved_readings=unresolved,
            critical=sum(1 for r in result.records if r.severity is SeverityTier.CRITICAL),
            data_freshness=freshness.isoformat() if freshness else None,
        )
        return result
