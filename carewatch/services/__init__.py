"""
Services for the monitoring dashboard.

This package contains polling and response adaptation, vital reconciliation,
alert triage, the device roster, geolocation and the orchestrating service.
"""

from .alert_triage import AlertNotFoundError, AlertTriagePipeline, TriageResult
from .device_roster import DeviceNotFoundError, DeviceRoster
from .geo_focus import FocusState, GeoFocusArbiter
from .geolocation import GeolocationError, GeolocationErrorKind, GeolocationTracker
from .integrated_monitoring import DashboardState, IntegratedMonitoringService
from .notification_log import InMemoryNotificationLog, NotificationLogSink
from .polling import (
    PollingSource,
    RequestSequencer,
    Result,
    SimulatedPollingSource,
    SourceShapeError,
)
from .vital_merger import MergeResult, VitalStreamMerger

__all__ = [
    "AlertNotFoundError",
    "AlertTriagePipeline",
    "DashboardState",
    "DeviceNotFoundError",
    "DeviceRoster",
    "FocusState",
    "GeoFocusArbiter",
    "GeolocationError",
    "GeolocationErrorKind",
    "GeolocationTracker",
    "InMemoryNotificationLog",
    "IntegratedMonitoringService",
    "MergeResult",
    "NotificationLogSink",
    "PollingSource",
    "RequestSequencer",
    "Result",
    "SimulatedPollingSource",
    "SourceShapeError",
    "TriageResult",
    "VitalStreamMerger",
]
