"""
Tests for the device roster in `carewatch/services/device_roster.py`.

Covers:
- Deterministic coordinates
- Device id and online status fallbacks
- Health severity and connection health derivation
- Roster rebuild and device search
"""

from datetime import UTC, datetime

import pytest
from hypothesis import given
from hypothesis import strategies as st

from carewatch.config import GeoConfig
from carewatch.domain.models import SeverityTier
from carewatch.services.device_roster import (
    DeviceNotFoundError,
    DeviceRoster,
    derive_connection_health,
    device_from_patient,
    health_severity,
    static_coordinates,
)

PATIENT_ID = "65a1f0c2d3e4b5a697887766"
NOW = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


def _patient(index: int, **overrides):
    patient = {
        "_id": f"65a1f0c2d3e4b5a6978877{index:02d}",
        "patientCode": f"PAT-{index:05d}",
        "fullName": {"ko": f"환자 {index}", "en": f"Patient {index}"},
        "deviceId": f"RADAR-{index:03d}",
        "deviceStatus": "online",
        "latestHeartRate": {"value": 75},
        "latestRespiratoryRate": {"value": 16},
    }
    patient.update(overrides)
    return patient


class TestStaticCoordinates:
    def test_known_values(self) -> None:
        assert static_coordinates("a") == pytest.approx((37.4762, 126.865125))
        assert static_coordinates("ab") == pytest.approx((37.577, 126.976625))

    def test_custom_base(self) -> None:
        lat, lng = static_coordinates("a", 0.0, 0.0)
        assert lat == pytest.approx(-0.0903)
        assert lng == pytest.approx(-0.112875)

    @given(st.text(min_size=1, max_size=64))
    def test_deterministic_and_near_base(self, key: str) -> None:
        lat, lng = static_coordinates(key)
        assert static_coordinates(key) == (lat, lng)
        assert 37.5665 - 0.1 <= lat < 37.5665 + 0.1
        assert 126.9780 - 0.125 <= lng < 126.9780 + 0.125


class TestDeviceFromPatient:
    def test_basic_mapping(self) -> None:
        device = device_from_patient(_patient(1, _id=PATIENT_ID, rssi=-61), now=NOW)

        assert device.device_id == "RADAR-001"
        assert device.online_status == "online"
        assert device.connection_health == "normal"
        assert device.assigned_patient_id == PATIENT_ID
        assert device.patient_code == "PAT-00001"
        assert device.patient_name == "환자 1"
        assert device.signal_strength == -61
        assert device.health_severity is SeverityTier.NORMAL
        assert device.last_updated == NOW
        assert device.coordinates == static_coordinates(PATIENT_ID)

    def test_device_id_fallback_chain(self) -> None:
        serial = _patient(1, deviceId=None, devices=[{"serialNumber": "SN-77"}])
        assert device_from_patient(serial).device_id == "SN-77"

        code_only = _patient(1, deviceId=None)
        assert device_from_patient(code_only).device_id == "PAT-00001"

        bare = {"_id": PATIENT_ID}
        assert device_from_patient(bare).device_id == "NODE-7766"

    def test_online_from_device_record(self) -> None:
        patient = _patient(1, deviceStatus=None, devices=[{"status": "ONLINE"}])
        assert device_from_patient(patient).online_status == "online"

        offline = _patient(1, deviceStatus="offline")
        device = device_from_patient(offline)
        assert device.online_status == "offline"
        assert device.connection_health == "abnormal"

    def test_reported_location_is_used(self) -> None:
        patient = _patient(1, location={"lat": 35.1, "lng": 129.0})
        assert device_from_patient(patient).coordinates == (35.1, 129.0)

    def test_unresolvable_patient_has_no_assignment(self) -> None:
        device = device_from_patient({"id": "7", "patientCode": "PAT-7"})
        assert device.assigned_patient_id is None

    def test_custom_base_point(self) -> None:
        config = GeoConfig(base_latitude=35.0, base_longitude=129.0)
        device = device_from_patient(_patient(1), config)
        assert abs(device.latitude - 35.0) <= 0.1


class TestHealth:
    def test_severity_from_latest_vitals(self) -> None:
        assert health_severity(_patient(1, latestHeartRate={"value": 120})) is SeverityTier.CRITICAL
        assert (
            health_severity(_patient(1, latestRespiratoryRate={"value": 23}))
            is SeverityTier.WARNING
        )

    def test_flat_and_current_vitals_fallbacks(self) -> None:
        assert health_severity({"heartRate": 95}) is SeverityTier.WARNING
        assert (
            health_severity({"currentVitals": {"respiratoryRate": {"value": 8}}})
            is SeverityTier.CRITICAL
        )

    def test_reported_status_never_downgraded(self) -> None:
        patient = _patient(1, alertStatus="warning")
        assert health_severity(patient) is SeverityTier.WARNING

        critical_vitals = _patient(1, latestHeartRate={"value": 130}, alertStatus="normal")
        assert health_severity(critical_vitals) is SeverityTier.CRITICAL

    def test_status_from_current_vitals(self) -> None:
        patient = {"currentVitals": {"heartRate": {"value": 75, "status": "critical"}}}
        assert health_severity(patient) is SeverityTier.CRITICAL

    @pytest.mark.parametrize(
        "online,device_status,expected",
        [
            ("online", None, "normal"),
            ("online", "ACTIVE", "normal"),
            ("online", "error", "abnormal"),
            ("online", "MAINTENANCE", "abnormal"),
            ("offline", None, "abnormal"),
        ],
    )
    def test_connection_health(self, online: str, device_status: str | None, expected: str) -> None:
        assert derive_connection_health(online, device_status) == expected


class TestDeviceRoster:
    @pytest.fixture
    def roster(self) -> DeviceRoster:
        roster = DeviceRoster()
        roster.rebuild(
            [
                _patient(1),
                _patient(2, latestHeartRate={"value": 130}),
                _patient(3, fullName={"ko": "김철수", "en": "Kim Chulsoo"}),
            ],
            now=NOW,
        )
        return roster

    def test_rebuild_replaces_devices(self, roster: DeviceRoster) -> None:
        assert len(roster.devices) == 3
        roster.rebuild([_patient(9)])
        assert [d.device_id for d in roster.devices] == ["RADAR-009"]

    def test_malformed_patients_are_skipped(self) -> None:
        roster = DeviceRoster()
        devices = roster.rebuild([_patient(1), _patient(2, location={"lat": 400, "lng": 0})])
        assert [d.device_id for d in devices] == ["RADAR-001"]

    def test_critical_devices(self, roster: DeviceRoster) -> None:
        assert [d.device_id for d in roster.critical_devices()] == ["RADAR-002"]

    def test_get_unknown_device_raises(self, roster: DeviceRoster) -> None:
        assert roster.get("RADAR-001").patient_code == "PAT-00001"
        with pytest.raises(DeviceNotFoundError):
            roster.get("RADAR-404")

    @pytest.mark.parametrize(
        "query,expected",
        [
            ("radar-00", ["RADAR-001", "RADAR-002", "RADAR-003"]),
            ("pat-00002", ["RADAR-002"]),
            ("김철수", ["RADAR-003"]),
            ("  ", []),
            ("nobody", []),
        ],
    )
    def test_search(self, roster: DeviceRoster, query: str, expected: list[str]) -> None:
        assert [d.device_id for d in roster.search(query)] == expected

    def test_search_is_capped(self) -> None:
        roster = DeviceRoster()
        roster.rebuild([_patient(i) for i in range(1, 20)])
        assert len(roster.search("radar")) == 8
        assert len(roster.search("radar", limit=3)) == 3
