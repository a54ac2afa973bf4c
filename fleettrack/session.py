"""
session.py

One drone-tracking session: the fleet registry, both drivers, the record
builder and the observability surface, constructed together and torn
down together. Nothing here is a process-wide singleton.

Usage:
    async def track():
        session = TrackingSession()
        entry_id = session.attach(DroneSpec.demo())
        session.on_entry_updated(lambda entry_id: ...)
        ...
        session.shutdown()
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from fleettrack.config import TrackingConfig
from fleettrack.errors import MissionFileError
from fleettrack.events import (
    ENTRY_DETACHED, ENTRY_UPDATED, MISSION_COMPLETED, REPORT_READY, TELEMETRY_DISCONNECTED,
    TELEMETRY_ERROR, Event, EventPriority, EventRouter,
)
from fleettrack.models import DroneEntry, DroneMode, DroneSpec, FlightRecord, LinkState
from fleettrack.monitoring import HealthCheck, HealthMonitor, MetricsCollector, check_system_resources
from fleettrack.registry import FleetRegistry
from fleettrack.reports import FlightRecordBuilder
from fleettrack.simulation import SimulationEngine
from fleettrack.telemetry import LiveTelemetryIngestor
from fleettrack.transport import TelemetryTransport
from fleettrack.waypoints import DEFAULT_DEMO_WAYPOINTS, load_mission_file, normalize_waypoints

logger = logging.getLogger(__name__)


@dataclass
class Notice:
    """Transient, dismissible operator notice"""
    entry_id: str
    message: str
    level: str = "info"   # info, warning, error
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entry_id': self.entry_id,
            'message': self.message,
            'level': self.level,
            'timestamp': self.timestamp.isoformat()
        }


class TrackingSession:
    """Wires the tracking core together and exposes it to UI/map collaborators"""

    def __init__(self, config: Optional[TrackingConfig] = None,
                 transport: Optional[TelemetryTransport] = None,
                 clock: Callable[[], datetime] = datetime.now,
                 monotonic: Callable[[], float] = time.monotonic):
        self.config = config or TrackingConfig()
        self.clock = clock
        self.tracking_active = True

        self.event_router = EventRouter()
        self.metrics = MetricsCollector()
        self.health = HealthMonitor()

        self.registry = FleetRegistry(self.event_router, self.config.palette, self.metrics)
        self.engine = SimulationEngine(
            self.registry, self.event_router, self.config.simulation,
            metrics=self.metrics, clock=clock
        )
        self.ingestor = LiveTelemetryIngestor(
            self.registry, self.event_router, self.config.live,
            transport=transport,
            metrics=self.metrics,
            clock=monotonic,
            tracking_active=lambda: self.tracking_active,
            wall_clock=clock
        )
        self.records = FlightRecordBuilder(self.config.report, self.metrics, clock)

        self.registry.bind_driver(DroneMode.SIMULATED, self.engine)
        self.registry.bind_driver(DroneMode.LIVE, self.ingestor)

        self.notices: deque = deque(maxlen=self.config.max_notices)
        self.reports: Dict[str, FlightRecord] = {}

        self.event_router.subscribe(MISSION_COMPLETED, self._on_mission_completed)
        self.event_router.subscribe(TELEMETRY_ERROR, self._on_telemetry_error)
        self.event_router.subscribe(TELEMETRY_DISCONNECTED, self._on_telemetry_lost)
        self.event_router.subscribe(ENTRY_DETACHED, self._on_entry_detached)

        self.health.register_check('fleet_registry', self._check_registry)
        self.health.register_check('live_links', self._check_live_links)
        self.health.register_check('system_resources', check_system_resources)

    # ============================================================================
    # REGISTRY OPERATIONS
    # ============================================================================

    def attach(self, spec: DroneSpec, auto_start: bool = True) -> str:
        """
        Attach a drone and (by default) start its driver.

        Simulated specs without waypoints fly the default demo loop.
        Starting a driver needs the session's running event loop, except
        for simulated entries when autotick is disabled.
        """
        if spec.mode == DroneMode.SIMULATED and spec.waypoints is None:
            spec = replace(spec, waypoints=DEFAULT_DEMO_WAYPOINTS)

        if auto_start and self._needs_loop(spec.mode):
            asyncio.get_running_loop()

        entry_id = self.registry.attach(spec)
        if auto_start:
            self._start_driver(entry_id)
        return entry_id

    def detach(self, entry_id: str) -> bool:
        return self.registry.detach(entry_id)

    def set_active(self, entry_id: str) -> bool:
        return self.registry.set_active(entry_id)

    def get_active_entry(self) -> Optional[DroneEntry]:
        return self.registry.get_active()

    def get_all_entries(self) -> List[DroneEntry]:
        return self.registry.all()

    def get_entry(self, entry_id: str) -> DroneEntry:
        return self.registry.require(entry_id)

    def on_entry_updated(self, callback: Callable[[str], Any]) -> Callable[[], None]:
        """
        Call back with the entry id after every telemetry/progress mutation.

        Returns:
            A function that removes the subscription
        """
        def handler(event: Event):
            callback(event.data['entry_id'])

        self.event_router.subscribe(ENTRY_UPDATED, handler)
        return lambda: self.event_router.unsubscribe(ENTRY_UPDATED, handler)

    # ============================================================================
    # DRIVERS
    # ============================================================================

    def start(self, entry_id: str) -> bool:
        self.registry.require(entry_id)
        return self._start_driver(entry_id)

    def stop(self, entry_id: str) -> bool:
        entry = self.registry.require(entry_id)
        if entry.mode == DroneMode.SIMULATED:
            return self.engine.stop(entry_id)
        return self.ingestor.disconnect(entry_id)

    def restart(self, entry_id: str) -> bool:
        """Simulated: complete/running -> idle -> running. Live: reconnect."""
        entry = self.registry.require(entry_id)
        self.reports.pop(entry_id, None)
        if entry.mode == DroneMode.SIMULATED:
            return self.engine.restart(entry_id)
        self.ingestor.disconnect(entry_id)
        return self.ingestor.connect(entry_id)

    def _start_driver(self, entry_id: str) -> bool:
        entry = self.registry.require(entry_id)
        if entry.mode == DroneMode.SIMULATED:
            return self.engine.start(entry_id)
        return self.ingestor.connect(entry_id)

    def _needs_loop(self, mode: DroneMode) -> bool:
        return mode == DroneMode.LIVE or self.config.simulation.autotick

    def set_tracking_active(self, active: bool):
        """Whether the tracking view is the operator's current context"""
        self.tracking_active = active
        logger.info(f"Tracking view {'activated' if active else 'deactivated'}")

    # ============================================================================
    # MISSIONS
    # ============================================================================

    def replace_mission(self, entry_id: str, points: Sequence[Any]) -> DroneEntry:
        """
        Swap an entry's mission through the normalizer.

        Progress is reset consistently and a running driver is restarted
        on the new mission.

        Raises:
            UnknownDroneError: id not registered
            MissionFileError: fewer than two valid points
        """
        entry = self.registry.require(entry_id)
        mission = normalize_waypoints(points)
        if not mission:
            raise MissionFileError("No valid waypoints in mission")

        if entry.mode == DroneMode.SIMULATED:
            was_running = self.engine.is_running(entry_id)
            self.engine.stop(entry_id)
        else:
            was_running = entry.live_link().state != LinkState.DISCONNECTED
            self.ingestor.disconnect(entry_id)

        self.reports.pop(entry_id, None)
        self.registry.replace_mission(entry_id, mission)

        if was_running:
            self._start_driver(entry_id)
        return entry

    def load_mission_file(self, entry_id: str, content: str) -> DroneEntry:
        """Parse a QGC WPL plan and make it the entry's mission"""
        mission = load_mission_file(content)
        return self.replace_mission(entry_id, [wp.to_dict() for wp in mission])

    # ============================================================================
    # REPORTS
    # ============================================================================

    def build_report(self, entry_id: str) -> FlightRecord:
        """On-demand flight record, mid-mission or after completion"""
        return self.records.build(self.registry.require(entry_id))

    def get_report(self, entry_id: str) -> Optional[FlightRecord]:
        """Record captured automatically at mission completion, if any"""
        return self.reports.get(entry_id)

    def _on_mission_completed(self, event: Event):
        entry_id = event.data['entry_id']
        entry = self.registry.get(entry_id)
        if entry is None:
            return

        record = self.records.build(entry)
        self.reports[entry_id] = record
        self._notify(entry_id, f"Mission complete: {record.distance_str} in {record.duration_str}")
        self.event_router.emit(REPORT_READY, 'tracking_session', EventPriority.HIGH,
                               entry_id=entry_id)

    # ============================================================================
    # NOTICES
    # ============================================================================

    def _notify(self, entry_id: str, message: str, level: str = "info"):
        """Only the active entry surfaces notices"""
        if not self.registry.is_active(entry_id):
            return
        self.notices.append(Notice(entry_id=entry_id, message=message, level=level,
                                   timestamp=self.clock()))

    def get_notices(self) -> List[Notice]:
        return list(self.notices)

    def dismiss_notices(self):
        self.notices.clear()

    def _on_telemetry_error(self, event: Event):
        self._notify(event.data['entry_id'], event.data.get('message', "Telemetry error"), "error")

    def _on_telemetry_lost(self, event: Event):
        if event.data.get('explicit') or event.data.get('error'):
            return
        self._notify(event.data['entry_id'], "Telemetry connection lost", "warning")

    def _on_entry_detached(self, event: Event):
        self.reports.pop(event.data['entry_id'], None)

    # ============================================================================
    # HEALTH & STATUS
    # ============================================================================

    def _check_registry(self) -> HealthCheck:
        return HealthCheck(
            component='fleet_registry',
            status='healthy',
            timestamp=datetime.now(),
            details={'entries': len(self.registry), 'active_id': self.registry.active_id}
        )

    def _check_live_links(self) -> HealthCheck:
        states: Dict[str, int] = {}
        for entry in self.registry.all():
            if entry.link is not None:
                states[entry.link.state.value] = states.get(entry.link.state.value, 0) + 1

        total = sum(states.values())
        connected = states.get(LinkState.CONNECTED.value, 0)
        if total == 0 or connected == total:
            status = 'healthy'
        elif connected == 0:
            status = 'unhealthy'
        else:
            status = 'degraded'

        return HealthCheck(
            component='live_links',
            status=status,
            timestamp=datetime.now(),
            details={'total': total, 'by_state': states}
        )

    def get_status(self) -> Dict[str, Any]:
        entries = self.registry.all()
        return {
            'entries': len(entries),
            'simulated': sum(1 for e in entries if e.mode == DroneMode.SIMULATED),
            'live': sum(1 for e in entries if e.mode == DroneMode.LIVE),
            'active_id': self.registry.active_id,
            'tracking_active': self.tracking_active,
            'reports': len(self.reports),
            'notices': len(self.notices)
        }

    def shutdown(self):
        """Stop every driver and empty the registry"""
        logger.info("Shutting down tracking session")
        self.tracking_active = False
        self.engine.shutdown()
        self.ingestor.shutdown()
        self.registry.clear()
