"""
Integration service that ties polling, reconciliation, triage and the live map together.

This is the end-to-end monitoring pipeline:
1. Poll the dashboard overview and the device roster on their own timers
2. Reconcile vitals into per-patient records and triage alerts
3. Feed critical devices into the focus arbiter
4. Keep the last good snapshot when a refresh fails

Architecture pattern: single-threaded cooperative pipeline with sequenced polls
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from carewatch.config import AppConfig, get_config
from carewatch.domain.models import (
    AlertEvent,
    DeviceLocation,
    FocusTarget,
    GeoPosition,
    PatientRecord,
    SignalKind,
)
from carewatch.domain.urgency import rank_patients
from carewatch.services.alert_query import (
    AlertPage,
    AlertQueryParams,
    NotificationRow,
    SearchDebouncer,
    normalize_alert_page,
    notification_row,
)
from carewatch.services.alert_triage import AlertTriagePipeline, TriageResult
from carewatch.services.device_roster import DeviceRoster
from carewatch.services.geo_focus import FocusState, GeoFocusArbiter
from carewatch.services.geolocation import (
    GeolocationError,
    GeolocationProvider,
    GeolocationTracker,
)
from carewatch.services.notification_log import InMemoryNotificationLog, NotificationLogSink
from carewatch.services.polling import (
    OverviewSnapshot,
    PollingSource,
    RequestSequencer,
    Result,
    SourceShapeError,
    SupersededResponseError,
    parse_overview,
    parse_roster,
)
from carewatch.services.vital_merger import MergeResult, VitalStreamMerger, readings_from_payloads

logger = structlog.get_logger(__name__)


class DashboardState(BaseModel):
    """Last reconciled dashboard snapshot, kept across failed refreshes."""

    model_config = ConfigDict(frozen=True)

    summary: dict[str, Any] = Field(default_factory=dict)
    merge: MergeResult = Field(default_factory=MergeResult)
    triage: TriageResult = Field(default_factory=TriageResult)
    patients_by_heart_rate: tuple[PatientRecord, ...] = ()
    patients_by_respiratory_rate: tuple[PatientRecord, ...] = ()
    server_time: str | None = None
    updated_at: datetime | None = None
    last_error: str | None = None

    @property
    def has_data(self) -> bool:
        return self.updated_at is not None

    @property
    def is_stale(self) -> bool:
        """True when the latest refresh failed and older data is being shown."""
        return self.has_data and self.last_error is not None


class IntegratedMonitoringService:
    """
    Main service that orchestrates the monitoring dashboard.

    Combines:
    - Overview polling with vital reconciliation and alert triage
    - Roster polling with critical-device detection for the live map
    - Geolocation tracking and focus arbitration
    - Notification centre search with debouncing
    """

    def __init__(
        self,
        source: PollingSource,
        sink: NotificationLogSink | None = None,
        geolocation_provider: GeolocationProvider | None = None,
        config: AppConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or get_config()
        self.source = source
        self.sink = sink if sink is not None else InMemoryNotificationLog()
        self._clock = clock or (lambda: datetime.now(UTC))
        self.logger = logger.bind(component="integrated_monitoring")

        # Reconciliation
        self.merger = VitalStreamMerger()
        self.triage = AlertTriagePipeline(self.sink, self.config.triage, self._clock)

        # Live map
        self.roster = DeviceRoster(self.config.geo)
        self.arbiter = GeoFocusArbiter()
        self.tracker = GeolocationTracker(
            geolocation_provider, self.arbiter, self.config.geo, self._clock
        )

        # Notification centre
        self.debouncer = SearchDebouncer(self.config.polling.search_debounce_seconds)
        self.alert_params = AlertQueryParams.last_days(
            self.config.polling.alert_window_days, limit=self.config.polling.alert_page_size
        )
        self._alert_page: AlertPage | None = None

        # One sequencer per polling channel
        self._overview_seq = RequestSequencer("overview")
        self._roster_seq = RequestSequencer("roster")
        self._alerts_seq = RequestSequencer("alerts")

        self._state = DashboardState()
        self._roster_error: str | None = None
        self._is_running = False
        self._roster_running = False

    @property
    def state(self) -> DashboardState:
        return self._state

    @property
    def devices(self) -> list[DeviceLocation]:
        return self.roster.devices

    @property
    def focus(self) -> FocusTarget:
        return self.arbiter.focus

    @property
    def focus_state(self) -> FocusState:
        return self.arbiter.state

    @property
    def alert_page(self) -> AlertPage | None:
        return self._alert_page

    @property
    def roster_error(self) -> str | None:
        return self._roster_error

    def _superseded(self, sequencer: RequestSequencer, sequence: int) -> Result[Any, Exception]:
        error = SupersededResponseError(sequencer.channel, sequence, sequencer.latest)
        self.logger.debug("response_superseded", channel=sequencer.channel, sequence=sequence)
        return Result.err(error)

    # ------------------------------------------------------------------
    # Overview
    # ------------------------------------------------------------------

    async def refresh_overview(self) -> Result[DashboardState, Exception]:
        """
        Poll the dashboard overview and reconcile it.

        On failure the previous snapshot is kept and ``last_error`` is set.
        A response that arrives after a newer request was issued is ignored.
        """
        sequence = self._overview_seq.issue()
        try:
            payload = await self.source.fetch_overview()
        except Exception as e:
            if not self._overview_seq.is_current(sequence):
                return self._superseded(self._overview_seq, sequence)
            return self._overview_failed(e)

        if not self._overview_seq.is_current(sequence):
            return self._superseded(self._overview_seq, sequence)

        try:
            snapshot = parse_overview(payload)
        except SourceShapeError as e:
            return self._overview_failed(e)

        self._state = self._reconcile(snapshot)
        return Result.ok(self._state)

    # User-triggered refresh uses the same path as the timer
    refresh = refresh_overview

    def _overview_failed(self, error: Exception) -> Result[DashboardState, Exception]:
        self.logger.warning(
            "overview_refresh_failed",
            error=str(error),
            error_type=type(error).__name__,
            stale=self._state.has_data,
        )
        self._state = self._state.model_copy(update={"last_error": str(error)})
        return Result.err(error)

    def _reconcile(self, snapshot: OverviewSnapshot) -> DashboardState:
        heart_rate = readings_from_payloads(snapshot.heart_rate, SignalKind.HEART_RATE)
        respiratory = readings_from_payloads(snapshot.respiratory_rate, SignalKind.RESPIRATORY_RATE)
        merged = self.merger.merge(heart_rate, respiratory)
        triaged = self.triage.ingest(snapshot.alerts, merged.code_index)

        state = DashboardState(
            summary=snapshot.summary,
            merge=merged,
            triage=triaged,
            patients_by_heart_rate=tuple(rank_patients(merged.records, SignalKind.HEART_RATE)),
            patients_by_respiratory_rate=tuple(
                rank_patients(merged.records, SignalKind.RESPIRATORY_RATE)
            ),
            server_time=snapshot.server_time,
            updated_at=self._clock(),
        )
        self.logger.info(
            "overview_reconciled",
            shape=snapshot.shape.value,
            patients=len(merged.records),
            active_alerts=triaged.total_active,
        )
        return state

    # ------------------------------------------------------------------
    # Roster
    # ------------------------------------------------------------------

    async def refresh_roster(self) -> Result[list[DeviceLocation], Exception]:
        """Poll the patient roster, rebuild devices and feed critical ones to the arbiter."""
        sequence = self._roster_seq.issue()
        try:
            payload = await self.source.fetch_patients({"limit": self.config.polling.roster_limit})
            if not self._roster_seq.is_current(sequence):
                return self._superseded(self._roster_seq, sequence)
            snapshot = parse_roster(payload)
        except Exception as e:
            if not self._roster_seq.is_current(sequence):
                return self._superseded(self._roster_seq, sequence)
            self._roster_error = str(e)
            self.logger.warning("roster_refresh_failed", error=str(e), error_type=type(e).__name__)
            return Result.err(e)

        devices = self.roster.rebuild(snapshot.patients, self._clock())
        new_critical = self.arbiter.update_critical_devices(devices)
        self._roster_error = None
        if new_critical:
            self.logger.warning("critical_devices_detected", device_ids=list(new_critical))
        return Result.ok(devices)

    # ------------------------------------------------------------------
    # Notification centre
    # ------------------------------------------------------------------

    async def search_alerts(
        self, params: AlertQueryParams | None = None
    ) -> Result[AlertPage, Exception]:
        params = params or self.alert_params
        sequence = self._alerts_seq.issue()
        try:
            payload = await self.source.fetch_alerts(params.to_query())
            if not self._alerts_seq.is_current(sequence):
                return self._superseded(self._alerts_seq, sequence)
            page = normalize_alert_page(payload, params)
        except Exception as e:
            if not self._alerts_seq.is_current(sequence):
                return self._superseded(self._alerts_seq, sequence)
            self.logger.warning("alert_search_failed", error=str(e), search=params.search)
            return Result.err(e)

        self.alert_params = params
        self._alert_page = page
        self.logger.info("alert_search_completed", total=page.total, page=page.page)
        return Result.ok(page)

    def request_alert_search(self, search: str) -> "asyncio.Task[Result[AlertPage, Exception]]":
        """Debounced free-text search; resets to the first page."""
        params = self.alert_params.with_search(search)
        return self.debouncer.submit(lambda: self.search_alerts(params))

    async def change_alert_page(self, page: int) -> Result[AlertPage, Exception]:
        return await self.search_alerts(self.alert_params.with_page(page))

    def notification_rows(self) -> list[NotificationRow]:
        if self._alert_page is None:
            return []
        system = self.config.triage.system_name
        return [notification_row(alert, system) for alert in self._alert_page.alerts]

    # ------------------------------------------------------------------
    # Continuous polling
    # ------------------------------------------------------------------

    async def run_continuous_monitoring(self) -> AsyncIterator[DashboardState]:
        """
        Poll the overview on a fixed interval.

        Yields the current snapshot after every cycle, including cycles whose
        refresh failed (the snapshot then carries ``last_error``).
        """
        interval = self.config.polling.overview_interval_seconds
        self.logger.info("continuous_monitoring_starting", interval=interval)
        self._is_running = True

        try:
            while self._is_running:
                cycle_start = datetime.now(UTC)
                await self.refresh_overview()
                yield self._state

                elapsed = (datetime.now(UTC) - cycle_start).total_seconds()
                sleep_time = max(0, interval - elapsed)
                if sleep_time > 0:
                    await asyncio.sleep(sleep_time)

        except asyncio.CancelledError:
            self.logger.info("continuous_monitoring_cancelled")
            raise
        finally:
            self._is_running = False

    async def run_roster_polling(self) -> AsyncIterator[list[DeviceLocation]]:
        """Poll the roster while the tracking view is open; yields devices on success."""
        interval = self.config.polling.roster_interval_seconds
        self.logger.info("roster_polling_starting", interval=interval)
        self._roster_running = True

        try:
            while self._roster_running:
                cycle_start = datetime.now(UTC)
                result = await self.refresh_roster()
                if result.is_ok():
                    yield result.unwrap()

                elapsed = (datetime.now(UTC) - cycle_start).total_seconds()
                sleep_time = max(0, interval - elapsed)
                if sleep_time > 0:
                    await asyncio.sleep(sleep_time)

        except asyncio.CancelledError:
            self.logger.info("roster_polling_cancelled")
            raise
        finally:
            self._roster_running = False

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    async def select_device(self, device_id: str) -> DeviceLocation:
        """Focus a device from the map or the search box. Stops self-tracking."""
        device = self.roster.get(device_id)
        if self.tracker.is_tracking:
            await self.tracker.stop_tracking()
        self.arbiter.select_device(device)
        return device

    def search_devices(self, query: str) -> list[DeviceLocation]:
        return self.roster.search(query)

    def clear_selection(self) -> None:
        self.arbiter.clear_selection()

    async def set_self_tracking(self, enabled: bool) -> bool:
        """Enable or disable continuous self-tracking. Returns whether tracking is on."""
        if enabled:
            return await self.tracker.start_tracking()
        await self.tracker.stop_tracking()
        return False

    async def locate_self(self) -> Result[GeoPosition, GeolocationError]:
        return await self.tracker.locate_once()

    def acknowledge_alert(self, alert_id: str, note: str = "") -> AlertEvent:
        return self.triage.acknowledge(alert_id, note)

    def resolve_alert(self, alert_id: str) -> AlertEvent:
        return self.triage.resolve(alert_id)

    def record_analysis_complete(self, patient_id: str, details: str) -> None:
        self.triage.analysis_complete(patient_id, details)

    async def stop(self) -> None:
        """Gracefully stop polling and release the geolocation subscription."""
        self.logger.info("stopping_monitoring_service")
        self._is_running = False
        self._roster_running = False
        await self.debouncer.cancel()
        await self.tracker.close()
