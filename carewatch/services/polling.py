"""
Polling data source contracts and response adaptation.

Key patterns:
- Protocol-based dependency injection for the monitoring API
- Generic Result type for expected failures
- Tagged union of tolerated response shapes, unknown shapes are typed errors
- Monotonic request sequence numbers so superseded responses are discarded
"""

import asyncio
import logging
import random
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Generic, Protocol, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, Field

from carewatch.config import LoggingConfig


def configure_logging(config: LoggingConfig | None = None) -> None:
    """Configure structlog for JSON (production) or console (development) output."""
    config = config or LoggingConfig()
    logging.basicConfig(format="%(message)s", level=config.level)
    logging.getLogger().setLevel(config.level)

    renderer: Any
    if config.format == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()

logger = structlog.get_logger(__name__)

# Generic Result type for explicit error handling
ValueT = TypeVar("ValueT")
ErrorT = TypeVar("ErrorT", bound=BaseException)


class Result(Generic[ValueT, ErrorT]):
    """
    Explicit error handling without exceptions for expected failures.

    Used where failure is part of normal operation: a poll that times out,
    a payload in an unknown shape, a superseded response.
    """

    def __init__(self, value: ValueT | None = None, error: ErrorT | None = None) -> None:
        if value is not None and error is not None:
            raise ValueError("Result cannot have both value and error")
        if value is None and error is None:
            raise ValueError("Result must have either value or error")
        self._value: ValueT | None = value
        self._error: ErrorT | None = error

    @classmethod
    def ok(cls, value: ValueT) -> "Result[ValueT, ErrorT]":
        return cls(value=value)

    @classmethod
    def err(cls, error: ErrorT) -> "Result[ValueT, ErrorT]":
        return cls(error=error)

    def is_ok(self) -> bool:
        return self._error is None

    def is_err(self) -> bool:
        return self._error is not None

    def unwrap(self) -> ValueT:
        if self._error:
            raise self._error
        return self._value  # type: ignore

    def unwrap_or(self, default: ValueT) -> ValueT:
        return self._value if self._error is None else default  # type: ignore

    def unwrap_err(self) -> ErrorT:
        if self._error is None:
            raise ValueError("Called unwrap_err() on an Ok value")
        return self._error


class SourceShapeError(ValueError):
    """The poll response matched none of the tolerated shapes."""

    def __init__(self, endpoint: str, detail: str = "API returned invalid data format") -> None:
        super().__init__(f"{endpoint}: {detail}")
        self.endpoint = endpoint


class SupersededResponseError(RuntimeError):
    """A newer request was issued before this response arrived."""

    def __init__(self, channel: str, sequence: int, latest: int) -> None:
        super().__init__(f"{channel} response #{sequence} superseded by #{latest}")
        self.channel = channel
        self.sequence = sequence
        self.latest = latest


class PollingSource(Protocol):
    """
    Protocol for the external monitoring API.

    Implementations return raw decoded JSON payloads. Transport, retries and
    authentication are the implementation's concern.
    """

    async def fetch_overview(self) -> Any:
        """Dashboard snapshot: summary, alerts and vitals."""
        ...

    async def fetch_patients(self, params: Mapping[str, Any]) -> Any:
        """Patient roster, including device status."""
        ...

    async def fetch_alerts(self, params: Mapping[str, Any]) -> Any:
        """Paged alert history for the notification centre."""
        ...


class ResponseShape(str, Enum):
    """Tolerated response layouts."""

    FLAT = "flat"  # {summary, alerts, ...}
    ENVELOPE = "envelope"  # {success, data: {summary, ...}}
    DOUBLE_ENVELOPE = "double_envelope"  # {success, data: {data: {summary, ...}}}


_SERVER_TIME_KEYS = ("updated_at", "timestamp", "serverTime")


@dataclass(frozen=True)
class AdaptedResponse:
    """A payload unwrapped from one of the known shapes."""

    shape: ResponseShape
    body: Mapping[str, Any]
    server_time: str | None = None


def _has_any(body: Any, keys: Sequence[str]) -> bool:
    return isinstance(body, Mapping) and any(key in body for key in keys)


def _server_time(*layers: Any) -> str | None:
    for layer in layers:
        if not isinstance(layer, Mapping):
            continue
        for key in _SERVER_TIME_KEYS:
            value = layer.get(key)
            if isinstance(value, str) and value:
                return value
    return None


def adapt_response(
    payload: Any, keys: Sequence[str], endpoint: str, list_key: str | None = None
) -> AdaptedResponse:
    """
    Unwrap ``payload`` from a known shape.

    ``keys`` are the fields that identify the body. When ``list_key`` is given,
    a bare list in place of the body is accepted and wrapped under that key.
    Raises ``SourceShapeError`` for anything else.
    """
    if not isinstance(payload, Mapping):
        raise SourceShapeError(endpoint, f"expected an object, got {type(payload).__name__}")

    if _has_any(payload, keys):
        return AdaptedResponse(ResponseShape.FLAT, payload, _server_time(payload))

    data = payload.get("data")
    if list_key and isinstance(data, list):
        return AdaptedResponse(ResponseShape.ENVELOPE, {list_key: data}, _server_time(payload))
    if _has_any(data, keys):
        return AdaptedResponse(ResponseShape.ENVELOPE, data, _server_time(payload, data))

    inner = data.get("data") if isinstance(data, Mapping) else None
    if list_key and isinstance(inner, list):
        return AdaptedResponse(
            ResponseShape.DOUBLE_ENVELOPE, {list_key: inner}, _server_time(payload, data)
        )
    if _has_any(inner, keys):
        return AdaptedResponse(
            ResponseShape.DOUBLE_ENVELOPE, inner, _server_time(payload, data, inner)
        )

    raise SourceShapeError(endpoint)


def _records(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [dict(item) for item in value if isinstance(item, Mapping)]


class OverviewSnapshot(BaseModel):
    """Dashboard overview unwrapped from the poll response."""

    model_config = ConfigDict(frozen=True)

    shape: ResponseShape
    summary: dict[str, Any] = Field(default_factory=dict)
    alerts: list[dict[str, Any]] = Field(default_factory=list)
    heart_rate: list[dict[str, Any]] = Field(default_factory=list)
    respiratory_rate: list[dict[str, Any]] = Field(default_factory=list)
    server_time: str | None = None


class RosterSnapshot(BaseModel):
    """Patient roster unwrapped from the poll response."""

    model_config = ConfigDict(frozen=True)

    shape: ResponseShape
    patients: list[dict[str, Any]] = Field(default_factory=list)
    total: int = 0
    server_time: str | None = None


def parse_overview(payload: Any) -> OverviewSnapshot:
    adapted = adapt_response(payload, ("summary", "alerts", "vitals"), endpoint="overview")
    body = adapted.body
    vitals = body.get("vitals") if isinstance(body.get("vitals"), Mapping) else {}
    summary = body.get("summary")
    return OverviewSnapshot(
        shape=adapted.shape,
        summary=dict(summary) if isinstance(summary, Mapping) else {},
        alerts=_records(body.get("alerts")),
        heart_rate=_records(vitals.get("heartRate")),
        respiratory_rate=_records(vitals.get("respiratoryRate")),
        server_time=adapted.server_time,
    )


def parse_roster(payload: Any) -> RosterSnapshot:
    adapted = adapt_response(payload, ("patients",), endpoint="get-patients", list_key="patients")
    patients = _records(adapted.body.get("patients"))
    total = adapted.body.get("total")
    return RosterSnapshot(
        shape=adapted.shape,
        patients=patients,
        total=total if isinstance(total, int) else len(patients),
        server_time=adapted.server_time,
    )


class RequestSequencer:
    """
    Issues monotonic sequence numbers for one polling channel.

    A completion is applied only if its number is still the latest issued;
    an in-flight request is never cancelled, only ignored on arrival.
    """

    def __init__(self, channel: str) -> None:
        self.channel = channel
        self._latest = 0

    @property
    def latest(self) -> int:
        return self._latest

    def issue(self) -> int:
        self._latest += 1
        return self._latest

    def is_current(self, sequence: int) -> bool:
        return sequence == self._latest

    def check(self, sequence: int) -> None:
        if not self.is_current(sequence):
            raise SupersededResponseError(self.channel, sequence, self._latest)


class SimulatedPollingSource:
    """
    Simulated monitoring API for demos and local development.

    Produces payloads in the double-envelope shape the production API uses,
    with a configurable failure rate.
    """

    def __init__(self, patient_count: int = 8, failure_rate: float = 0.05, seed: int | None = None):
        self.failure_rate = failure_rate
        self._random = random.Random(seed)
        self._patients = [
            {
                "_id": f"{self._random.getrandbits(96):024x}",
                "patientCode": f"PAT-{index:05d}",
                "fullName": {"ko": f"환자 {index}", "en": f"Patient {index}"},
                "deviceId": f"RADAR-{index:03d}",
                "status": "ACTIVE",
            }
            for index in range(1, patient_count + 1)
        ]
        self.logger = logger.bind(source="simulated")

    async def _latency(self) -> None:
        await asyncio.sleep(self._random.uniform(0.01, 0.1))
        if self._random.random() < self.failure_rate:
            raise ConnectionError("Failed to reach monitoring API")

    def _vital(self, patient: Mapping[str, Any], value: float, now: datetime) -> dict[str, Any]:
        return {
            "patientId": patient["_id"],
            "patientCode": patient["patientCode"],
            "name": patient["fullName"],
            "value": round(value),
            "timestamp": now.isoformat(),
        }

    async def fetch_overview(self) -> Any:
        await self._latency()
        now = datetime.now(UTC)
        heart_rate = [self._vital(p, self._random.gauss(78, 14), now) for p in self._patients]
        respiratory = [self._vital(p, self._random.gauss(16, 4), now) for p in self._patients]
        alerts = []
        for index, vital in enumerate(heart_rate):
            if vital["value"] > 100 or vital["value"] < 50:
                alerts.append(
                    {
                        "id": f"alert-{vital['patientCode']}-{int(now.timestamp())}",
                        "patientCode": vital["patientCode"],
                        "patientName": vital["name"],
                        "category": "HEART_RATE",
                        "severity": "CRITICAL",
                        "message": {"ko": "심박수가 임계치를 초과", "en": "Heart rate exceeded"},
                        "createdAt": (now - timedelta(seconds=index)).isoformat(),
                        "status": "NEW",
                        "currentValue": str(vital["value"]),
                        "thresholdValue": "100",
                    }
                )
        self.logger.info("overview_simulated", patients=len(self._patients), alerts=len(alerts))
        return {
            "success": True,
            "data": {
                "data": {
                    "summary": {"totalPatients": len(self._patients), "activeAlerts": len(alerts)},
                    "alerts": alerts,
                    "vitals": {"heartRate": heart_rate, "respiratoryRate": respiratory},
                },
                "updated_at": now.isoformat(),
            },
        }

    async def fetch_patients(self, params: Mapping[str, Any]) -> Any:
        await self._latency()
        limit = int(params.get("limit", 100))
        patients = []
        for patient in self._patients[:limit]:
            online = self._random.random() > 0.1
            patients.append(
                {
                    **patient,
                    "deviceStatus": "online" if online else "offline",
                    "latestHeartRate": {"value": round(self._random.gauss(78, 14))},
                    "latestRespiratoryRate": {"value": round(self._random.gauss(16, 4))},
                    "rssi": self._random.randint(-90, -30),
                }
            )
        return {"success": True, "data": patients}

    async def fetch_alerts(self, params: Mapping[str, Any]) -> Any:
        await self._latency()
        return {
            "success": True,
            "data": {"alerts": [], "totalCount": 0, "page": params.get("page", 1), "limit": 10},
        }
