"""
Tests for vital stream merging in `carewatch/services/vital_merger.py`.

Covers:
- One record per resolved patient across both signals
- Severity recomputed from the final values of the cycle
- Readings with no resolvable owner are dropped, not attributed to a code
- Malformed payloads are skipped
"""

from datetime import UTC, datetime

from carewatch.domain.models import SeverityTier, SignalKind, VitalReading
from carewatch.services.vital_merger import VitalStreamMerger, readings_from_payloads

PATIENT_A = "65a1f0c2d3e4b5a697887766"
PATIENT_B = "65a1f0c2d3e4b5a697887767"
T0 = datetime(2025, 3, 1, 9, 0, tzinfo=UTC)
T1 = datetime(2025, 3, 1, 9, 0, 10, tzinfo=UTC)


def _hr(patient_id: str, value: float, code: str = "PAT-00001", at: datetime = T0) -> VitalReading:
    return VitalReading.from_payload(
        {"patientId": patient_id, "patientCode": code, "value": value, "timestamp": at},
        SignalKind.HEART_RATE,
    )


def _rr(patient_id: str, value: float, code: str = "PAT-00001", at: datetime = T0) -> VitalReading:
    return VitalReading.from_payload(
        {"patientId": patient_id, "patientCode": code, "value": value, "timestamp": at},
        SignalKind.RESPIRATORY_RATE,
    )


class TestMerge:
    def test_single_heart_rate_reading_scenario(self) -> None:
        result = VitalStreamMerger().merge([_hr(PATIENT_A, 105)], [])

        assert len(result.records) == 1
        record = result.records[0]
        assert record.id == PATIENT_A
        assert record.heart_rate == 105
        assert record.severity is SeverityTier.CRITICAL
        assert record.respiratory_rate is None
        assert record.respiratory_rate_observed_at is None

    def test_signals_for_same_patient_share_one_record(self) -> None:
        result = VitalStreamMerger().merge([_hr(PATIENT_A, 75)], [_rr(PATIENT_A, 24)])

        assert len(result.records) == 1
        record = result.get(PATIENT_A)
        assert record is not None
        assert record.heart_rate == 75
        assert record.respiratory_rate == 24
        assert record.severity is SeverityTier.WARNING

    def test_later_normal_reading_replaces_critical_in_same_cycle(self) -> None:
        result = VitalStreamMerger().merge(
            [_hr(PATIENT_A, 130, at=T0), _hr(PATIENT_A, 75, at=T1)], []
        )

        record = result.get(PATIENT_A)
        assert record is not None
        assert record.heart_rate == 75
        assert record.heart_rate_observed_at == T1
        assert record.severity is SeverityTier.NORMAL

    def test_severity_uses_worst_signal(self) -> None:
        result = VitalStreamMerger().merge([_hr(PATIENT_A, 88)], [_rr(PATIENT_A, 8)])
        record = result.get(PATIENT_A)
        assert record is not None
        assert record.severity is SeverityTier.CRITICAL

    def test_reported_status_raises_severity(self) -> None:
        reading = VitalReading.from_payload(
            {"patientId": PATIENT_A, "value": 75, "status": "critical"}, SignalKind.HEART_RATE
        )
        record = VitalStreamMerger().merge([reading], []).get(PATIENT_A)
        assert record is not None
        assert record.severity is SeverityTier.CRITICAL

    def test_zero_value_is_no_reading(self) -> None:
        result = VitalStreamMerger().merge([_hr(PATIENT_A, 0)], [_rr(PATIENT_A, 16)])
        record = result.get(PATIENT_A)
        assert record is not None
        assert record.heart_rate is None
        assert record.heart_rate_observed_at is None
        assert result.with_heart_rate() == []
        assert result.with_respiratory_rate() == [record]

    def test_unresolvable_readings_are_dropped(self) -> None:
        result = VitalStreamMerger().merge(
            [_hr("P-01", 120, code="P-01"), _hr(PATIENT_B, 70, code="PAT-00002")], []
        )
        assert [r.id for r in result.records] == [PATIENT_B]
        assert result.unresolved_count == 1

    def test_short_id_is_never_used_as_record_id(self) -> None:
        result = VitalStreamMerger().merge([_hr("PAT-00018", 120, code="PAT-00018")], [])
        assert result.records == ()

    def test_nested_patient_identity(self) -> None:
        reading = VitalReading.from_payload(
            {"patient": {"_id": PATIENT_A, "fullName": {"ko": "김철수", "en": "Kim"}}, "value": 72},
            SignalKind.HEART_RATE,
        )
        record = VitalStreamMerger().merge([reading], []).get(PATIENT_A)
        assert record is not None
        assert record.display_name == "김철수"
        assert record.display_name_english == "Kim"

    def test_code_index_and_freshness(self) -> None:
        result = VitalStreamMerger().merge(
            [_hr(PATIENT_A, 70, code="PAT-00001", at=T0)],
            [_rr(PATIENT_B, 16, code="PAT-00002", at=T1)],
        )
        assert result.code_index == {"PAT-00001": PATIENT_A, "PAT-00002": PATIENT_B}
        assert result.data_freshness == T1

    def test_cycles_do_not_share_state(self) -> None:
        merger = VitalStreamMerger()
        first = merger.merge([_hr(PATIENT_A, 130)], [])
        second = merger.merge([_hr(PATIENT_B, 70, code="PAT-00002")], [])

        assert first.get(PATIENT_A) is not None
        assert second.get(PATIENT_A) is None
        assert len(second.records) == 1


class TestReadingsFromPayloads:
    def test_malformed_entries_are_skipped(self) -> None:
        readings = readings_from_payloads(
            [
                {"patientId": PATIENT_A, "value": 72},
                {"patientId": PATIENT_B, "value": "not-a-number"},
                {"patientId": PATIENT_B, "value": 70, "timestamp": "yesterday-ish"},
            ],
            SignalKind.HEART_RATE,
        )
        assert [r.patient_ref for r in readings] == [PATIENT_A]

    def test_naive_timestamps_are_treated_as_utc(self) -> None:
        (reading,) = readings_from_payloads(
            [{"patientId": PATIENT_A, "value": 72, "timestamp": "2025-03-01T09:00:00"}],
            SignalKind.HEART_RATE,
        )
        assert reading.observed_at == T0
