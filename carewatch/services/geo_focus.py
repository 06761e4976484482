"""
Focus arbitration for the live tracking map.

Exactly one ``FocusTarget`` is current at any time. Manual intent always
wins: selecting a device cancels self-tracking, and a newly critical device
only pulls the map when the operator is not inspecting a device or tracking
their own position.

The trigger counter increases on every camera action so the map can tell
"focus the same place again" from "nothing changed".
"""

from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

import structlog

from carewatch.domain.models import DeviceLocation, FocusKind, FocusTarget, GeoPosition

logger = structlog.get_logger(__name__)

# Most recent suppressed refocus events kept for inspection
MAX_SUPPRESSED = 100


class FocusState(str, Enum):
    IDLE = "idle"
    MANUAL_FOCUS = "manual_focus"
    SELF_TRACKING = "self_tracking"
    CRITICAL_AUTO_FOCUS = "critical_auto_focus"


@dataclass(frozen=True)
class SuppressedRefocus:
    """A critical refocus that was not applied because the operator was busy."""

    device_ids: tuple[str, ...]
    state: FocusState
    recorded_at: datetime = field(default_factory=lambda: datetime.now(UTC))


def bounds_for(
    devices: Iterable[DeviceLocation],
) -> tuple[tuple[float, float], tuple[float, float]]:
    """(south-west, north-east) corners enclosing ``devices``."""
    devices = list(devices)
    if not devices:
        raise ValueError("bounds_for() needs at least one device")
    lats = [d.latitude for d in devices]
    lngs = [d.longitude for d in devices]
    return ((min(lats), min(lngs)), (max(lats), max(lngs)))


class GeoFocusArbiter:
    """State machine over {Idle, ManualFocus, SelfTracking, CriticalAutoFocus}."""

    def __init__(self, max_suppressed: int = MAX_SUPPRESSED) -> None:
        self._state = FocusState.IDLE
        self._selected_device_id: str | None = None
        self._focus = FocusTarget()
        self._trigger = 0
        self._known_critical: frozenset[str] = frozenset()
        self._self_position: GeoPosition | None = None
        self.suppressed: deque[SuppressedRefocus] = deque(maxlen=max_suppressed)
        self.logger = logger.bind(component="geo_focus_arbiter")

    @property
    def state(self) -> FocusState:
        return self._state

    @property
    def focus(self) -> FocusTarget:
        return self._focus

    @property
    def trigger(self) -> int:
        return self._trigger

    @property
    def selected_device_id(self) -> str | None:
        return self._selected_device_id

    @property
    def self_tracking(self) -> bool:
        return self._state is FocusState.SELF_TRACKING

    @property
    def self_position(self) -> GeoPosition | None:
        return self._self_position

    @property
    def known_critical_ids(self) -> frozenset[str]:
        return self._known_critical

    def _transition(self, state: FocusState, focus: FocusTarget, fire: bool) -> None:
        previous = self._state
        self._state = state
        self._focus = focus
        if fire:
            self._trigger += 1
        self.logger.info(
            "focus_changed",
            previous=previous.value,
            state=state.value,
            focus_kind=focus.kind.value,
            trigger=self._trigger,
        )

    def _self_focus(self) -> FocusTarget:
        coordinates = self._self_position.coordinates if self._self_position else None
        return FocusTarget(kind=FocusKind.SELF_LOCATION, coordinates=coordinates)

    def select_device(self, device: DeviceLocation) -> None:
        """Focus ``device``. Always fires, even for the device already selected."""
        self._selected_device_id = device.device_id
        self._transition(
            FocusState.MANUAL_FOCUS,
            FocusTarget(
                kind=FocusKind.SELECTED_DEVICE,
                coordinates=device.coordinates,
                device_ids=(device.device_id,),
            ),
            fire=True,
        )

    def clear_selection(self) -> None:
        if self._state not in (FocusState.MANUAL_FOCUS, FocusState.CRITICAL_AUTO_FOCUS):
            return
        self._selected_device_id = None
        self._transition(FocusState.IDLE, FocusTarget(), fire=False)

    def toggle_self_tracking(self, enabled: bool) -> None:
        if enabled:
            if self._state is FocusState.SELF_TRACKING:
                return
            self._selected_device_id = None
            self._transition(FocusState.SELF_TRACKING, self._self_focus(), fire=False)
            return

        # A pending manual focus outlives the tracking toggle
        if self._state is FocusState.SELF_TRACKING:
            self._transition(FocusState.IDLE, FocusTarget(), fire=False)

    def force_disable_self_tracking(self) -> None:
        """Stop tracking after a geolocation failure."""
        if self._state is FocusState.SELF_TRACKING:
            self.logger.warning("self_tracking_force_disabled")
        self.toggle_self_tracking(False)

    def update_self_position(self, position: GeoPosition) -> None:
        """Record own position; the map follows it while self-tracking."""
        self._self_position = position
        if self._state is FocusState.SELF_TRACKING:
            self._focus = self._self_focus()

    def locate_self(self, position: GeoPosition) -> None:
        """
        One-shot "show my location".

        Centers the map on ``position`` without changing the arbitration state,
        so a manual selection stays pending.
        """
        self._self_position = position
        self._focus = self._self_focus()
        self._trigger += 1
        self.logger.info("focus_self_located", trigger=self._trigger, state=self._state.value)

    def update_critical_devices(self, devices: Iterable[DeviceLocation]) -> tuple[str, ...]:
        """
        Feed this cycle's device set; returns ids that became critical since last cycle.

        A device that stays critical across cycles is not new and never
        refires.
        """
        critical = [d for d in devices if d.is_critical]
        current = frozenset(d.device_id for d in critical)
        new_ids = current - self._known_critical
        self._known_critical = current

        new_devices = [d for d in critical if d.device_id in new_ids]
        if new_devices:
            self.new_critical_devices_detected(new_devices)
        return tuple(d.device_id for d in new_devices)

    def new_critical_devices_detected(self, devices: Iterable[DeviceLocation]) -> bool:
        """
        Auto-focus on new critical devices. Returns whether focus moved.

        Suppressed while the operator inspects a device or tracks their own
        position. An earlier auto-focus is replaced by the new set.
        """
        devices = list(devices)
        if not devices:
            return False
        device_ids = tuple(d.device_id for d in devices)

        if self._state in (FocusState.MANUAL_FOCUS, FocusState.SELF_TRACKING):
            self.suppressed.append(SuppressedRefocus(device_ids=device_ids, state=self._state))
            self.logger.info(
                "critical_refocus_suppressed", device_ids=list(device_ids), state=self._state.value
            )
            return False

        bounds = bounds_for(devices)
        center = (
            (bounds[0][0] + bounds[1][0]) / 2,
            (bounds[0][1] + bounds[1][1]) / 2,
        )
        self._transition(
            FocusState.CRITICAL_AUTO_FOCUS,
            FocusTarget(
                kind=FocusKind.CRITICAL_BOUNDS,
                coordinates=center,
                device_ids=device_ids,
                bounds=bounds,
            ),
            fire=True,
        )
        return True
