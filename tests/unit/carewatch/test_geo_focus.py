"""
Tests for the focus arbiter in `carewatch/services/geo_focus.py`.

Covers:
- Manual selection, self-tracking and clear transitions
- Trigger counter semantics
- Critical auto-focus from Idle or an earlier auto-focus, only for newly critical devices
- Suppressed refocus history is bounded
"""

import pytest

from carewatch.domain.models import DeviceLocation, FocusKind, GeoPosition, SeverityTier
from carewatch.services.geo_focus import FocusState, GeoFocusArbiter, bounds_for


def _device(device_id: str, lat: float, lng: float, severity=SeverityTier.NORMAL):
    return DeviceLocation(
        device_id=device_id,
        latitude=lat,
        longitude=lng,
        online_status="online",
        health_severity=severity,
    )


DEVICE_A = _device("RADAR-001", 37.55, 126.95)
DEVICE_B = _device("RADAR-002", 37.60, 127.00, SeverityTier.CRITICAL)
DEVICE_C = _device("RADAR-003", 37.50, 126.90, SeverityTier.CRITICAL)
HERE = GeoPosition(latitude=37.5665, longitude=126.9780)


@pytest.fixture
def arbiter() -> GeoFocusArbiter:
    return GeoFocusArbiter()


class TestManualFocus:
    def test_select_device_focuses_it(self, arbiter: GeoFocusArbiter) -> None:
        arbiter.select_device(DEVICE_A)

        assert arbiter.state is FocusState.MANUAL_FOCUS
        assert arbiter.selected_device_id == "RADAR-001"
        assert arbiter.focus.kind is FocusKind.SELECTED_DEVICE
        assert arbiter.focus.coordinates == (37.55, 126.95)
        assert arbiter.trigger == 1

    def test_selecting_same_device_twice_fires_twice(self, arbiter: GeoFocusArbiter) -> None:
        arbiter.select_device(DEVICE_A)
        arbiter.select_device(DEVICE_A)
        assert arbiter.trigger == 2

    def test_select_disables_self_tracking(self, arbiter: GeoFocusArbiter) -> None:
        arbiter.toggle_self_tracking(True)
        arbiter.select_device(DEVICE_A)

        assert arbiter.self_tracking is False
        assert arbiter.state is FocusState.MANUAL_FOCUS

    def test_clear_selection_returns_to_idle(self, arbiter: GeoFocusArbiter) -> None:
        arbiter.select_device(DEVICE_A)
        arbiter.clear_selection()

        assert arbiter.state is FocusState.IDLE
        assert arbiter.selected_device_id is None
        assert arbiter.focus.kind is FocusKind.NONE

    def test_clear_selection_does_not_stop_self_tracking(self, arbiter: GeoFocusArbiter) -> None:
        arbiter.toggle_self_tracking(True)
        arbiter.clear_selection()
        assert arbiter.state is FocusState.SELF_TRACKING


class TestSelfTracking:
    def test_enable_and_disable(self, arbiter: GeoFocusArbiter) -> None:
        arbiter.toggle_self_tracking(True)
        assert arbiter.state is FocusState.SELF_TRACKING
        assert arbiter.focus.kind is FocusKind.SELF_LOCATION

        arbiter.toggle_self_tracking(False)
        assert arbiter.state is FocusState.IDLE

    def test_disable_keeps_pending_manual_focus(self, arbiter: GeoFocusArbiter) -> None:
        arbiter.select_device(DEVICE_A)
        arbiter.toggle_self_tracking(False)

        assert arbiter.state is FocusState.MANUAL_FOCUS
        assert arbiter.selected_device_id == "RADAR-001"

    def test_position_updates_follow_without_firing(self, arbiter: GeoFocusArbiter) -> None:
        arbiter.toggle_self_tracking(True)
        arbiter.update_self_position(HERE)

        assert arbiter.focus.coordinates == HERE.coordinates
        assert arbiter.trigger == 0

    def test_position_updates_do_not_move_manual_focus(self, arbiter: GeoFocusArbiter) -> None:
        arbiter.select_device(DEVICE_A)
        arbiter.update_self_position(HERE)
        assert arbiter.focus.kind is FocusKind.SELECTED_DEVICE

    def test_locate_self_fires_without_changing_state(self, arbiter: GeoFocusArbiter) -> None:
        arbiter.select_device(DEVICE_A)
        arbiter.locate_self(HERE)

        assert arbiter.focus.kind is FocusKind.SELF_LOCATION
        assert arbiter.state is FocusState.MANUAL_FOCUS
        assert arbiter.trigger == 2

    def test_force_disable(self, arbiter: GeoFocusArbiter) -> None:
        arbiter.toggle_self_tracking(True)
        arbiter.force_disable_self_tracking()
        assert arbiter.self_tracking is False


class TestCriticalAutoFocus:
    def test_new_critical_devices_focus_when_idle(self, arbiter: GeoFocusArbiter) -> None:
        new_ids = arbiter.update_critical_devices([DEVICE_A, DEVICE_B, DEVICE_C])

        assert set(new_ids) == {"RADAR-002", "RADAR-003"}
        assert arbiter.state is FocusState.CRITICAL_AUTO_FOCUS
        assert arbiter.focus.kind is FocusKind.CRITICAL_BOUNDS
        assert arbiter.focus.bounds == ((37.50, 126.90), (37.60, 127.00))
        assert arbiter.focus.coordinates == pytest.approx((37.55, 126.95))
        assert arbiter.trigger == 1

    def test_suppressed_during_manual_focus(self, arbiter: GeoFocusArbiter) -> None:
        arbiter.select_device(DEVICE_A)
        focus_before = arbiter.focus
        trigger_before = arbiter.trigger

        moved = arbiter.new_critical_devices_detected([DEVICE_B])

        assert moved is False
        assert arbiter.focus == focus_before
        assert arbiter.trigger == trigger_before
        assert arbiter.suppressed[-1].device_ids == ("RADAR-002",)
        assert arbiter.suppressed[-1].state is FocusState.MANUAL_FOCUS

    def test_suppressed_during_self_tracking(self, arbiter: GeoFocusArbiter) -> None:
        arbiter.toggle_self_tracking(True)
        arbiter.update_critical_devices([DEVICE_B])
        assert arbiter.state is FocusState.SELF_TRACKING

    def test_still_critical_device_does_not_refire(self, arbiter: GeoFocusArbiter) -> None:
        arbiter.update_critical_devices([DEVICE_B])
        arbiter.clear_selection()

        new_ids = arbiter.update_critical_devices([DEVICE_B])

        assert new_ids == ()
        assert arbiter.state is FocusState.IDLE
        assert arbiter.trigger == 1

    def test_device_that_recovers_and_relapses_fires_again(
        self, arbiter: GeoFocusArbiter
    ) -> None:
        arbiter.update_critical_devices([DEVICE_B])
        arbiter.clear_selection()
        arbiter.update_critical_devices([])

        assert arbiter.update_critical_devices([DEVICE_B]) == ("RADAR-002",)
        assert arbiter.trigger == 2

    def test_known_set_updates_even_when_suppressed(self, arbiter: GeoFocusArbiter) -> None:
        arbiter.select_device(DEVICE_A)
        arbiter.update_critical_devices([DEVICE_B])
        arbiter.clear_selection()

        assert arbiter.update_critical_devices([DEVICE_B]) == ()
        assert arbiter.known_critical_ids == frozenset({"RADAR-002"})

    def test_later_emergency_refocuses_after_auto_focus(self, arbiter: GeoFocusArbiter) -> None:
        arbiter.update_critical_devices([DEVICE_B])

        new_ids = arbiter.update_critical_devices([DEVICE_B, DEVICE_C])

        assert new_ids == ("RADAR-003",)
        assert arbiter.state is FocusState.CRITICAL_AUTO_FOCUS
        assert arbiter.focus.device_ids == ("RADAR-003",)
        assert arbiter.focus.coordinates == (37.50, 126.90)
        assert arbiter.trigger == 2
        assert len(arbiter.suppressed) == 0

    def test_suppressed_history_is_bounded(self) -> None:
        arbiter = GeoFocusArbiter(max_suppressed=2)
        arbiter.select_device(DEVICE_A)

        for index in range(5):
            arbiter.new_critical_devices_detected(
                [_device(f"RADAR-1{index:02d}", 37.5, 126.9, SeverityTier.CRITICAL)]
            )

        assert [s.device_ids for s in arbiter.suppressed] == [("RADAR-103",), ("RADAR-104",)]

    def test_manual_selection_overrides_auto_focus(self, arbiter: GeoFocusArbiter) -> None:
        arbiter.update_critical_devices([DEVICE_B])
        arbiter.select_device(DEVICE_A)
        assert arbiter.state is FocusState.MANUAL_FOCUS


class TestBounds:
    def test_single_device_bounds_are_a_point(self) -> None:
        assert bounds_for([DEVICE_A]) == ((37.55, 126.95), (37.55, 126.95))

    def test_empty_bounds_raise(self) -> None:
        with pytest.raises(ValueError):
            bounds_for([])
