"""
Paged alert history for the notification centre.

Builds query parameters, normalizes paged responses and maps raw alerts to
table rows. Free-text search is debounced so only the last keystroke within
the quiet period reaches the API.
"""

import asyncio
import math
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, date, datetime, timedelta
from enum import Enum
from typing import Any, Literal, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, Field, model_validator

from carewatch.domain.identity import extract_display_name
from carewatch.domain.models import AlertCategory, SeverityTier
from carewatch.services.alert_triage import categorize_alert
from carewatch.services.polling import SourceShapeError, adapt_response

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_WINDOW_DAYS = 14


class AlertQueryParams(BaseModel):
    """Query for one page of alert history."""

    model_config = ConfigDict(frozen=True)

    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, gt=0)
    search: str = ""
    start_date: date = Field(
        default_factory=lambda: datetime.now(UTC).date() - timedelta(days=DEFAULT_WINDOW_DAYS)
    )
    end_date: date = Field(default_factory=lambda: datetime.now(UTC).date())

    @model_validator(mode="after")
    def window_is_ordered(self) -> "AlertQueryParams":
        if self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self

    @classmethod
    def last_days(cls, days: int, today: date | None = None, **kwargs: Any) -> "AlertQueryParams":
        today = today or datetime.now(UTC).date()
        return cls(start_date=today - timedelta(days=days), end_date=today, **kwargs)

    def with_search(self, search: str) -> "AlertQueryParams":
        """A new search always starts from the first page."""
        return self.model_copy(update={"search": search, "page": 1})

    def with_page(self, page: int) -> "AlertQueryParams":
        return self.model_copy(update={"page": max(1, page)})

    def to_query(self) -> dict[str, Any]:
        query: dict[str, Any] = {"page": self.page, "limit": self.limit}
        if self.search.strip():
            query["search"] = self.search.strip()
        query["startDate"] = self.start_date.isoformat()
        query["endDate"] = self.end_date.isoformat()
        return query


class AlertPage(BaseModel):
    """One normalized page of alert history."""

    model_config = ConfigDict(frozen=True)

    alerts: list[dict[str, Any]] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 10
    total_pages: int = 0

    @property
    def start_index(self) -> int:
        return (self.page - 1) * self.limit


def _int_or(value: Any, default: int) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else default


def normalize_alert_page(payload: Any, params: AlertQueryParams | None = None) -> AlertPage:
    """
    Unwrap a paged alert response.

    ``totalCount`` is preferred over the older ``total``. Missing paging fields
    fall back to the request parameters.
    """
    params = params or AlertQueryParams()
    if isinstance(payload, Mapping) and payload.get("success") is False:
        raise SourceShapeError("alerts", "API returned unsuccessful response")

    body = adapt_response(
        payload, ("alerts", "totalCount", "total"), endpoint="alerts", list_key="alerts"
    ).body
    alerts = [dict(a) for a in body.get("alerts") or [] if isinstance(a, Mapping)]
    total = _int_or(body.get("totalCount"), 0) or _int_or(body.get("total"), 0)
    limit = _int_or(body.get("limit"), params.limit) or params.limit
    total_pages = _int_or(body.get("totalPages"), math.ceil(total / limit))

    return AlertPage(
        alerts=alerts,
        total=total,
        page=_int_or(body.get("page"), params.page),
        limit=limit,
        total_pages=total_pages,
    )


class MessageKind(str, Enum):
    """Known alert message templates."""

    HEART_RATE_EXCEEDED = "heart_rate_exceeded"
    RESPIRATORY_OUT_OF_RANGE = "respiratory_out_of_range"
    FALL_DETECTED = "fall_detected"
    HEART_RATE_LOW = "heart_rate_low"
    RESPIRATORY_HIGH = "respiratory_high"
    OTHER = "other"


# Checked in order; the first template that matches wins
_MESSAGE_TEMPLATES: tuple[tuple[MessageKind, tuple[str, ...]], ...] = (
    (MessageKind.HEART_RATE_EXCEEDED, ("심박수가 임계치를 초과", "Heart rate exceeded")),
    (
        MessageKind.RESPIRATORY_OUT_OF_RANGE,
        ("호흡수가 정상 범위를 벗어", "Respiratory rate out of normal"),
    ),
    (MessageKind.FALL_DETECTED, ("낙상", "fall", "Fall")),
    (MessageKind.HEART_RATE_LOW, ("심박수가 위험 기준치 이하", "Heart rate below")),
    (MessageKind.RESPIRATORY_HIGH, ("호흡수가 위험 기준치를 초과", "Respiratory rate exceeded")),
)


def classify_message(message: str) -> MessageKind:
    for kind, needles in _MESSAGE_TEMPLATES:
        if any(needle in message for needle in needles):
            return kind
    return MessageKind.OTHER


class NotificationRow(BaseModel):
    """An alert as shown in the notification centre table."""

    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: str = "N/A"
    patient_id: str = ""
    patient_name: str = ""
    category: AlertCategory = AlertCategory.VITAL
    message: str = ""
    message_kind: MessageKind = MessageKind.OTHER
    severity: SeverityTier = SeverityTier.WARNING
    details: str = ""
    status: Literal["success", "failure"] = "failure"
    system: str = ""


def _format_timestamp(value: Any) -> str:
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str) and value:
        try:
            moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return "N/A"
    else:
        return "N/A"
    if moment.tzinfo is not None:
        moment = moment.astimezone(UTC)
    return moment.strftime("%Y-%m-%d %H:%M")


def notification_row(alert: Mapping[str, Any], system: str) -> NotificationRow:
    """Map one raw history alert onto a table row."""
    patient = alert.get("patient") if isinstance(alert.get("patient"), Mapping) else {}
    message = alert.get("message")
    if isinstance(message, Mapping):
        text = message.get("ko") or message.get("en") or ""
    else:
        text = message if isinstance(message, str) else ""

    names = extract_display_name({"patient": patient, "patientCode": patient.get("patientCode")})
    patient_code = patient.get("patientCode") or ""

    return NotificationRow(
        id=str(alert.get("_id") or alert.get("id") or ""),
        timestamp=_format_timestamp(alert.get("createdAt")),
        patient_id=str(patient.get("_id") or patient_code),
        patient_name=names.primary or patient_code,
        category=categorize_alert(alert),
        message=text,
        message_kind=classify_message(text),
        severity=SeverityTier.parse(alert.get("severity"), SeverityTier.WARNING),
        details=(
            f"{text} (current: {alert.get('currentValue')}, "
            f"threshold: {alert.get('thresholdValue')})"
        ),
        status="success" if alert.get("status") == "ACKNOWLEDGED" else "failure",
        system=system,
    )


class SearchDebouncer:
    """
    Runs only the last submitted action after a quiet period.

    Submitting again before the delay elapses cancels the pending action,
    including one that is already awaiting its response.
    """

    def __init__(self, delay_seconds: float = 0.5) -> None:
        self.delay_seconds = delay_seconds
        self._pending: asyncio.Task[Any] | None = None
        self.logger = logger.bind(component="search_debouncer")

    @property
    def pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def submit(self, action: Callable[[], Awaitable[T]]) -> "asyncio.Task[T]":
        if self.pending:
            assert self._pending is not None
            self._pending.cancel()
            self.logger.debug("search_superseded")
        task = asyncio.create_task(self._run(action))
        self._pending = task
        return task

    async def _run(self, action: Callable[[], Awaitable[T]]) -> T:
        await asyncio.sleep(self.delay_seconds)
        return await action()

    async def cancel(self) -> None:
        task, self._pending = self._pending, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
