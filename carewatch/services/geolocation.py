"""
Own-position tracking for the live map.

The continuous position subscription is a scoped resource: it is acquired
when self-tracking is enabled and released when tracking is disabled, when
the service shuts down, and when the provider fails.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Protocol

import structlog
from pydantic import BaseModel, ConfigDict

from carewatch.config import GeoConfig
from carewatch.domain.models import GeoPosition
from carewatch.services.geo_focus import GeoFocusArbiter
from carewatch.services.polling import Result

logger = structlog.get_logger(__name__)


class GeolocationErrorKind(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    POSITION_UNAVAILABLE = "position_unavailable"
    TIMEOUT = "timeout"
    UNSUPPORTED = "unsupported"


_NOTICE_MESSAGES = {
    GeolocationErrorKind.PERMISSION_DENIED: "Location permission was denied.",
    GeolocationErrorKind.POSITION_UNAVAILABLE: "Current position is unavailable.",
    GeolocationErrorKind.TIMEOUT: "Location request timed out.",
    GeolocationErrorKind.UNSUPPORTED: "Geolocation is not supported on this device.",
}


class GeolocationError(Exception):
    """Typed failure from the geolocation provider."""

    def __init__(self, kind: GeolocationErrorKind, message: str | None = None) -> None:
        super().__init__(message or _NOTICE_MESSAGES[kind])
        self.kind = kind


class GeolocationProvider(Protocol):
    """Source of own position. Raises ``GeolocationError`` on failure."""

    async def current_position(self, timeout: float) -> GeoPosition: ...

    def watch_position(self) -> AsyncIterator[GeoPosition]: ...


class LocationNotice(BaseModel):
    """Transient, dismissible notice shown after a geolocation failure."""

    model_config = ConfigDict(frozen=True)

    kind: GeolocationErrorKind
    message: str
    raised_at: datetime
    expires_at: datetime


class GeolocationTracker:
    """Bridges a ``GeolocationProvider`` to the focus arbiter."""

    def __init__(
        self,
        provider: GeolocationProvider | None,
        arbiter: GeoFocusArbiter,
        config: GeoConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.provider = provider
        self.arbiter = arbiter
        self.config = config or GeoConfig()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._notice: LocationNotice | None = None
        self._task: asyncio.Task[None] | None = None
        self._subscribed = False
        self.logger = logger.bind(component="geolocation_tracker")

    @property
    def notice(self) -> LocationNotice | None:
        """Current notice, or None once dismissed or expired."""
        if self._notice is not None and self._clock() >= self._notice.expires_at:
            self._notice = None
        return self._notice

    def dismiss_notice(self) -> None:
        self._notice = None

    @property
    def subscribed(self) -> bool:
        return self._subscribed

    @property
    def is_tracking(self) -> bool:
        return self._task is not None and not self._task.done()

    def _raise_notice(self, error: GeolocationError) -> None:
        now = self._clock()
        self._notice = LocationNotice(
            kind=error.kind,
            message=str(error),
            raised_at=now,
            expires_at=now + timedelta(seconds=self.config.notice_clear_seconds),
        )
        self.logger.warning("geolocation_failed", kind=error.kind.value, error=str(error))

    async def locate_once(self) -> Result[GeoPosition, GeolocationError]:
        """One-shot position request; focuses the map on success."""
        if self.provider is None:
            error = GeolocationError(GeolocationErrorKind.UNSUPPORTED)
            self._raise_notice(error)
            return Result.err(error)

        self._notice = None
        try:
            position = await asyncio.wait_for(
                self.provider.current_position(self.config.request_timeout_seconds),
                timeout=self.config.request_timeout_seconds,
            )
        except TimeoutError:
            error = GeolocationError(GeolocationErrorKind.TIMEOUT)
            self._raise_notice(error)
            return Result.err(error)
        except GeolocationError as e:
            self._raise_notice(e)
            return Result.err(e)

        self.arbiter.locate_self(position)
        return Result.ok(position)

    @asynccontextmanager
    async def _subscription(self) -> AsyncIterator[AsyncIterator[GeoPosition]]:
        """Acquire the provider's position stream and release it on every exit path."""
        if self.provider is None:
            raise GeolocationError(GeolocationErrorKind.UNSUPPORTED)
        stream = self.provider.watch_position()
        self._subscribed = True
        self.logger.info("position_subscription_acquired")
        try:
            yield stream
        finally:
            self._subscribed = False
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
            self.logger.info("position_subscription_released")

    async def _follow(self) -> None:
        try:
            async with self._subscription() as stream:
                async for position in stream:
                    self.arbiter.update_self_position(position)
                    self._notice = None
        except GeolocationError as e:
            self._raise_notice(e)
        except Exception as e:
            self.logger.exception(
                "position_stream_failed", error=str(e), error_type=type(e).__name__
            )
            self._raise_notice(GeolocationError(GeolocationErrorKind.POSITION_UNAVAILABLE))
        else:
            self.logger.info("position_stream_ended")

        # Reached on failure or end of stream, not on cancellation
        self.arbiter.force_disable_self_tracking()

    async def start_tracking(self) -> bool:
        """Enable self-tracking. Returns False when geolocation is unsupported."""
        if self.provider is None:
            self._raise_notice(GeolocationError(GeolocationErrorKind.UNSUPPORTED))
            self.arbiter.force_disable_self_tracking()
            return False
        if self.is_tracking:
            return True

        self.arbiter.toggle_self_tracking(True)
        self._task = asyncio.create_task(self._follow(), name="geolocation-follow")
        return True

    async def stop_tracking(self) -> None:
        """Disable self-tracking and cancel the position subscription immediately."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.arbiter.toggle_self_tracking(False)

    async def close(self) -> None:
        await self.stop_tracking()
