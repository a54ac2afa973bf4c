"""
telemetry.py

Live telemetry ingestion for live-mode drones.

Each connected entry owns one reader task consuming JSON messages of the
shape

    {"position": {"latitude_deg", "longitude_deg", "relative_altitude_m"},
     "attitude": {"yaw_deg"},
     "battery":  {"remaining_percent"}}

where every section is optional. Messages are applied strictly in arrival
order. Malformed messages are dropped without touching the connection;
an unexpected close schedules a bounded back-off reconnect while the
tracking view is active. disconnect() cancels the reader and any pending
reconnect synchronously, so no callback fires for the entry afterwards.
"""

import asyncio
import json
import logging
import time
from datetime import datetime
from typing import Callable, Optional

from pydantic import BaseModel, Field, ValidationError

from fleettrack.config import LiveTelemetryConfig
from fleettrack.errors import TransportError
from fleettrack.events import (
    ENTRY_UPDATED, TELEMETRY_CONNECTED, TELEMETRY_DISCONNECTED, TELEMETRY_DROPPED,
    TELEMETRY_ERROR, EventPriority, EventRouter,
)
from fleettrack.geo import haversine_distance
from fleettrack.models import DroneEntry, EventKind, LinkState, LiveLink, LiveProgress, WaypointRole
from fleettrack.monitoring import (
    CONNECT_FAILURES, FIX_SPEED, MESSAGES, MESSAGES_DROPPED, RECONNECTS, SPEED_OUTLIERS,
    WAYPOINTS_REACHED, MetricsCollector,
)
from fleettrack.transport import RawMessage, TelemetryTransport, WebSocketTransport

logger = logging.getLogger(__name__)

# ============================================================================
# MESSAGE MODELS
# ============================================================================

class PositionPayload(BaseModel):
    latitude_deg: float = Field(ge=-90, le=90, allow_inf_nan=False)
    longitude_deg: float = Field(ge=-180, le=180, allow_inf_nan=False)
    relative_altitude_m: Optional[float] = Field(default=None, allow_inf_nan=False)

class AttitudePayload(BaseModel):
    yaw_deg: Optional[float] = Field(default=None, allow_inf_nan=False)

class BatteryPayload(BaseModel):
    remaining_percent: Optional[float] = Field(default=None, ge=0, allow_inf_nan=False)

class TelemetryMessage(BaseModel):
    position: Optional[PositionPayload] = None
    attitude: Optional[AttitudePayload] = None
    battery: Optional[BatteryPayload] = None


def normalize_battery(raw: float) -> float:
    """Values <= 1 are fractions, larger values already percentages"""
    pct = raw * 100.0 if raw <= 1.0 else raw
    return max(0.0, min(100.0, float(round(pct))))

# ============================================================================
# INGESTOR
# ============================================================================

class LiveTelemetryIngestor:
    """Translates per-drone telemetry streams into entry mutations"""

    def __init__(self, registry, event_router: EventRouter, config: LiveTelemetryConfig,
                 transport: Optional[TelemetryTransport] = None,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Callable[[], float] = time.monotonic,
                 tracking_active: Callable[[], bool] = lambda: True,
                 wall_clock: Callable[[], datetime] = datetime.now):
        self.registry = registry
        self.event_router = event_router
        self.config = config
        self.transport = transport or WebSocketTransport(open_timeout=config.open_timeout_s)
        self.metrics = metrics or MetricsCollector()
        self.clock = clock
        self.tracking_active = tracking_active
        self.wall_clock = wall_clock

    # ------------------------------------------------------------ lifecycle

    def connect(self, entry_id: str) -> bool:
        """
        Open the stream for a live entry.

        Returns False if a reader is already running. Must be called
        from the session's event loop.

        Raises:
            UnknownDroneError: id not registered
            DroneModeError: entry is simulated
        """
        entry = self.registry.require(entry_id)
        link = entry.live_link()

        if link.task is not None and not link.task.done():
            logger.debug(f"Telemetry stream already open for {entry_id}")
            return False

        loop = asyncio.get_running_loop()
        self._cancel_reconnect(link)
        link.state = LinkState.CONNECTING
        link.task = loop.create_task(self._run(entry_id, link.hostname), name=f"telemetry-{entry_id}")
        return True

    def disconnect(self, entry_id: str) -> bool:
        """Close the stream and cancel any pending reconnect; idempotent"""
        entry = self.registry.get(entry_id)
        if entry is None or entry.link is None:
            return False

        link = entry.link
        had_pending = link.reconnect_handle is not None
        self._cancel_reconnect(link)

        task, link.task = link.task, None
        was_open = task is not None and not task.done()
        if was_open:
            task.cancel()

        link.state = LinkState.DISCONNECTED
        link.reconnect_attempts = 0

        if was_open or had_pending:
            logger.info(f"Telemetry disconnected for {entry_id}")
            self.event_router.emit(TELEMETRY_DISCONNECTED, 'telemetry_ingestor',
                                   entry_id=entry_id, explicit=True)
            self.event_router.emit(ENTRY_UPDATED, 'telemetry_ingestor', EventPriority.LOW,
                                   entry_id=entry_id)
        return was_open or had_pending

    def release(self, entry_id: str):
        """Registry hook: stop before the entry is removed"""
        self.disconnect(entry_id)

    def shutdown(self):
        for entry in self.registry.all():
            if entry.link is not None:
                self.disconnect(entry.id)

    async def _run(self, entry_id: str, hostname: str):
        url = self.config.url_for(hostname)

        try:
            connection = await self.transport.open(url)
        except TransportError as e:
            logger.error(f"Telemetry connect failed for {entry_id}: {e}")
            self.metrics.record_counter(CONNECT_FAILURES)
            self._on_closed(entry_id, error=str(e))
            return

        try:
            if not self._on_open(entry_id):
                return
            await connection.send(json.dumps({'subscribe': list(self.config.subscribe_topics)}))
            async for raw in connection.messages():
                if entry_id not in self.registry:
                    return
                self.handle_message(entry_id, raw)
        except TransportError as e:
            logger.warning(f"Telemetry stream error for {entry_id}: {e}")
        finally:
            await connection.close()

        self._on_closed(entry_id)

    def _on_open(self, entry_id: str) -> bool:
        entry = self.registry.get(entry_id)
        if entry is None:
            return False

        link = entry.live_link()
        entry.progress = LiveProgress()
        link.last_position = None
        link.last_fix_time = None
        link.state = LinkState.CONNECTED
        link.reconnect_attempts = 0
        entry.mission_started_at = self.wall_clock()
        entry.event_log = []
        entry.log_event(EventKind.LAUNCH, "Live telemetry stream started")

        logger.info(f"Telemetry stream open for {entry_id} ({link.hostname})")
        self.event_router.emit(TELEMETRY_CONNECTED, 'telemetry_ingestor', EventPriority.HIGH,
                               entry_id=entry_id, hostname=link.hostname)
        self.event_router.emit(ENTRY_UPDATED, 'telemetry_ingestor', EventPriority.LOW,
                               entry_id=entry_id)
        return True

    def _on_closed(self, entry_id: str, error: Optional[str] = None):
        """Unexpected close: schedule a bounded reconnect while tracking is active"""
        entry = self.registry.get(entry_id)
        if entry is None or entry.link is None:
            return

        link = entry.link
        if link.task is not asyncio.current_task():
            return
        link.task = None
        link.state = LinkState.DISCONNECTED

        if error:
            self.event_router.emit(TELEMETRY_ERROR, 'telemetry_ingestor', EventPriority.HIGH,
                                   entry_id=entry_id,
                                   message=f"Could not connect to {link.hostname}:{self.config.port}. "
                                           f"Make sure the drone telemetry service is running.")
        self.event_router.emit(TELEMETRY_DISCONNECTED, 'telemetry_ingestor',
                               entry_id=entry_id, explicit=False, error=error)

        if self.tracking_active():
            delay = min(self.config.reconnect_delay_s * (2 ** link.reconnect_attempts),
                        self.config.reconnect_max_delay_s)
            link.reconnect_attempts += 1
            link.state = LinkState.RECONNECT_PENDING
            link.reconnect_handle = asyncio.get_running_loop().call_later(delay, self._reconnect, entry_id)
            self.metrics.record_counter(RECONNECTS)
            logger.info(f"Reconnect for {entry_id} scheduled in {delay:.1f}s "
                        f"(attempt {link.reconnect_attempts})")
        else:
            logger.info(f"Telemetry closed for {entry_id}; tracking inactive, not reconnecting")

        self.event_router.emit(ENTRY_UPDATED, 'telemetry_ingestor', EventPriority.LOW,
                               entry_id=entry_id)

    def _reconnect(self, entry_id: str):
        entry = self.registry.get(entry_id)
        if entry is None or entry.link is None:
            return
        entry.link.reconnect_handle = None
        if not self.tracking_active():
            entry.link.state = LinkState.DISCONNECTED
            return
        self.connect(entry_id)

    @staticmethod
    def _cancel_reconnect(link: LiveLink):
        if link.reconnect_handle is not None:
            link.reconnect_handle.cancel()
            link.reconnect_handle = None

    # ------------------------------------------------------------- messages

    def handle_message(self, entry_id: str, raw: RawMessage) -> bool:
        """
        Apply one inbound message.

        Returns:
            True if the entry was updated, False if the message was dropped
            or the entry is gone.

        Raises:
            DroneModeError: the entry is simulated
        """
        entry = self.registry.get(entry_id)
        if entry is None:
            logger.debug(f"Message for detached entry {entry_id} ignored")
            return False

        link = entry.live_link()
        try:
            message = TelemetryMessage.model_validate_json(raw)
        except ValidationError as e:
            link.dropped += 1
            self.metrics.record_counter(MESSAGES_DROPPED)
            logger.warning(f"Dropping malformed telemetry for {entry_id}: {e.error_count()} error(s)")
            self.event_router.emit(TELEMETRY_DROPPED, 'telemetry_ingestor', EventPriority.INFO,
                                   entry_id=entry_id)
            return False

        link.messages += 1
        self.metrics.record_counter(MESSAGES)

        if message.position is not None:
            self._apply_position(entry, link, message.position, self.clock())

        if message.attitude is not None and message.attitude.yaw_deg is not None:
            entry.telemetry.heading_deg = float(round(message.attitude.yaw_deg)) % 360.0

        if message.battery is not None and message.battery.remaining_percent is not None:
            entry.telemetry.battery_pct = normalize_battery(message.battery.remaining_percent)

        self.event_router.emit(ENTRY_UPDATED, 'telemetry_ingestor', EventPriority.INFO,
                               entry_id=entry_id)
        return True

    def _apply_position(self, entry: DroneEntry, link: LiveLink, position: PositionPayload, now: float):
        lat, lng = position.latitude_deg, position.longitude_deg
        telemetry = entry.telemetry

        speed = 0.0
        if link.last_position is not None and link.last_fix_time is not None:
            speed = telemetry.speed_kmh
            dt = now - link.last_fix_time
            if dt > 0:
                distance = haversine_distance(link.last_position[0], link.last_position[1], lat, lng)
                candidate = distance / dt * 3.6
                if candidate > self.config.speed_ceiling_kmh:
                    self.metrics.record_counter(SPEED_OUTLIERS)
                    logger.warning(f"Ignoring speed outlier for {entry.id}: {candidate:.0f} km/h")
                else:
                    speed = candidate
                    self.metrics.record_histogram(FIX_SPEED, speed, labels={'entry': entry.id})

        telemetry.lat = lat
        telemetry.lng = lng
        telemetry.altitude_m = float(round(position.relative_altitude_m or 0.0))
        telemetry.speed_kmh = speed

        link.last_position = (lat, lng)
        link.last_fix_time = now

        self._check_proximity(entry, lat, lng)

    def _check_proximity(self, entry: DroneEntry, lat: float, lng: float):
        visited = entry.live_progress().visited_waypoints
        radius = self.config.proximity_radius_m

        for i, wp in enumerate(entry.mission):
            if i in visited:
                continue
            if haversine_distance(lat, lng, wp.lat, wp.lng) <= radius:
                visited.add(i)
                kind = EventKind.LAND if wp.role == WaypointRole.RETURN_TO_LAUNCH else EventKind.WAYPOINT
                entry.log_event(kind, f"{wp.label} reached (live)")
                self.metrics.record_counter(WAYPOINTS_REACHED)
                logger.info(f"{entry.id} reached waypoint {i}: {wp.label}")
