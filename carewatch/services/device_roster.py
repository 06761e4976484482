"""
Device roster for the live tracking map.

Maps each roster patient onto a ``DeviceLocation``. Devices without reported
coordinates get a deterministic position around the facility base point, so a
device stays in the same place across polls.
"""

from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any, Literal

import structlog
from pydantic import ValidationError

from carewatch.config import GeoConfig
from carewatch.domain.identity import canonical_patient_id, extract_display_name
from carewatch.domain.models import DeviceLocation, SeverityTier
from carewatch.domain.severity import classify_heart_rate, classify_respiratory_rate

logger = structlog.get_logger(__name__)

_ABNORMAL_DEVICE_STATUSES = frozenset({"error", "maintenance"})


class DeviceNotFoundError(LookupError):
    """The device id named by a user command is not in the current roster."""

    def __init__(self, device_id: str) -> None:
        super().__init__(f"Unknown device: {device_id}")
        self.device_id = device_id


def _int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def static_coordinates(
    key: str, base_latitude: float = 37.5665, base_longitude: float = 126.9780
) -> tuple[float, float]:
    """
    Deterministic (lat, lng) for ``key`` within roughly 10 km of the base point.

    Two independent 32-bit string hashes pick the offsets, so the same key
    always lands on the same spot.
    """
    forward = 0
    for char in key:
        forward = _int32((forward << 5) - forward + ord(char))

    backward = 0
    for index in range(len(key) - 1, -1, -1):
        backward = _int32((backward << 7) - backward + ord(key[index]) * (index + 1))

    lat_offset = (abs(forward) % 2000) / 2000 * 0.2 - 0.1
    lng_offset = (abs(backward) % 2000) / 2000 * 0.25 - 0.125
    return (base_latitude + lat_offset, base_longitude + lng_offset)


def derive_connection_health(
    online_status: str, device_status: str | None = None
) -> Literal["normal", "abnormal"]:
    """Offline, erroring or in-maintenance devices are abnormal."""
    if online_status == "offline":
        return "abnormal"
    if device_status and device_status.lower() in _ABNORMAL_DEVICE_STATUSES:
        return "abnormal"
    return "normal"


def _first_device(patient: Mapping[str, Any]) -> Mapping[str, Any]:
    devices = patient.get("devices")
    if isinstance(devices, list) and devices and isinstance(devices[0], Mapping):
        return devices[0]
    return {}


def _vital_value(patient: Mapping[str, Any], latest_key: str, flat_key: str) -> float | None:
    latest = patient.get(latest_key)
    if isinstance(latest, Mapping) and isinstance(latest.get("value"), int | float):
        return latest["value"]
    if isinstance(patient.get(flat_key), int | float):
        return patient[flat_key]
    current = patient.get("currentVitals")
    if isinstance(current, Mapping):
        vital = current.get(flat_key)
        if isinstance(vital, Mapping) and isinstance(vital.get("value"), int | float):
            return vital["value"]
    return None


def _reported_status(patient: Mapping[str, Any]) -> SeverityTier | None:
    status = patient.get("alertStatus")
    if not status:
        current = patient.get("currentVitals")
        heart_rate = current.get("heartRate") if isinstance(current, Mapping) else None
        status = heart_rate.get("status") if isinstance(heart_rate, Mapping) else None
    if not status:
        return None
    return SeverityTier.parse(status, SeverityTier.NORMAL)


def health_severity(patient: Mapping[str, Any]) -> SeverityTier:
    """
    Severity of the patient behind a device.

    Classified from the latest vitals; a status reported by the source can
    only raise the result.
    """
    tiers = [
        classify_heart_rate(_vital_value(patient, "latestHeartRate", "heartRate")),
        classify_respiratory_rate(
            _vital_value(patient, "latestRespiratoryRate", "respiratoryRate")
        ),
    ]
    reported = _reported_status(patient)
    if reported is not None:
        tiers.append(reported)
    return max(tiers)


def _coordinates(
    patient: Mapping[str, Any], key: str, config: GeoConfig
) -> tuple[float, float]:
    location = patient.get("location")
    if isinstance(location, Mapping):
        lat = location.get("lat", location.get("latitude"))
        lng = location.get("lng", location.get("longitude"))
        if isinstance(lat, int | float) and isinstance(lng, int | float):
            return (float(lat), float(lng))
    return static_coordinates(key, config.base_latitude, config.base_longitude)


def device_from_patient(
    patient: Mapping[str, Any],
    config: GeoConfig | None = None,
    now: datetime | None = None,
) -> DeviceLocation:
    """Build the ``DeviceLocation`` for one roster patient."""
    config = config or GeoConfig()
    device = _first_device(patient)
    raw_id = patient.get("id") or patient.get("_id") or "0"
    key = str(raw_id)
    patient_code = patient.get("patientCode") or ""

    device_id = (
        patient.get("deviceId")
        or device.get("serialNumber")
        or patient_code
        or f"NODE-{key[-4:]}"
    )
    online = patient.get("deviceStatus") == "online" or device.get("status") == "ONLINE"
    online_status: Literal["online", "offline"] = "online" if online else "offline"

    names = extract_display_name(patient)
    latitude, longitude = _coordinates(patient, key, config)
    rssi = patient.get("rssi", device.get("rssi"))

    return DeviceLocation(
        device_id=str(device_id),
        latitude=latitude,
        longitude=longitude,
        online_status=online_status,
        health_severity=health_severity(patient),
        connection_health=derive_connection_health(
            online_status, device.get("status") or patient.get("sensorStatus")
        ),
        assigned_patient_id=canonical_patient_id(patient) or None,
        patient_code=patient_code,
        patient_name=names.primary or patient_code,
        signal_strength=int(rssi) if isinstance(rssi, int | float) else None,
        last_updated=now or datetime.now(UTC),
    )


class DeviceRoster:
    """The current device set, rebuilt wholesale from each roster poll."""

    def __init__(self, config: GeoConfig | None = None) -> None:
        self.config = config or GeoConfig()
        self._devices: dict[str, DeviceLocation] = {}
        self.logger = logger.bind(component="device_roster")

    @property
    def devices(self) -> list[DeviceLocation]:
        return list(self._devices.values())

    def get(self, device_id: str) -> DeviceLocation:
        try:
            return self._devices[device_id]
        except KeyError:
            raise DeviceNotFoundError(device_id) from None

    def rebuild(
        self, patients: Iterable[Mapping[str, Any]], now: datetime | None = None
    ) -> list[DeviceLocation]:
        """Replace the device set from a roster snapshot; malformed entries are skipped."""
        now = now or datetime.now(UTC)
        devices: dict[str, DeviceLocation] = {}
        skipped = 0
        for patient in patients:
            try:
                device = device_from_patient(patient, self.config, now)
            except (ValidationError, ValueError, TypeError) as e:
                skipped += 1
                self.logger.warning(
                    "malformed_device_skipped",
                    patient_code=patient.get("patientCode"),
                    error=str(e),
                )
                continue
            devices.setdefault(device.device_id, device)

        self._devices = devices
        self.logger.info(
            "roster_rebuilt",
            devices=len(devices),
            online=sum(1 for d in devices.values() if d.online_status == "online"),
            critical=sum(1 for d in devices.values() if d.is_critical),
            skipped=skipped,
        )
        return self.devices

    def critical_devices(self) -> list[DeviceLocation]:
        return [d for d in self._devices.values() if d.is_critical]

    def search(self, query: str, limit: int | None = None) -> list[DeviceLocation]:
        """Case-insensitive substring match on device id, patient code and patient name."""
        needle = query.strip().lower()
        if not needle:
            return []
        limit = limit or self.config.search_result_limit
        matches = [
            d
            for d in self._devices.values()
            if needle in d.device_id.lower()
            or needle in d.patient_code.lower()
            or needle in d.patient_name.lower()
        ]
        return matches[:limit]
