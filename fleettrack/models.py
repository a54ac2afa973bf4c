# Core data models for drone tracking

import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple, Union

from fleettrack.errors import DroneModeError

# ============================================================================
# ENUMS
# ============================================================================

class DroneMode(str, Enum):
    SIMULATED = "simulated"
    LIVE = "live"

class WaypointRole(str, Enum):
    TAKEOFF = "takeoff"
    WAYPOINT = "waypoint"
    RETURN_TO_LAUNCH = "return_to_launch"

class EventKind(str, Enum):
    LAUNCH = "launch"
    WAYPOINT = "waypoint"
    LAND = "land"

class SimState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETE = "complete"

class LinkState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECT_PENDING = "reconnect_pending"

class WaypointStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    REACHED = "reached"

# ============================================================================
# MISSION & TELEMETRY
# ============================================================================

@dataclass(frozen=True)
class Waypoint:
    lat: float
    lng: float
    altitude_m: float
    role: WaypointRole
    label: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'lat': self.lat,
            'lng': self.lng,
            'altitude_m': self.altitude_m,
            'role': self.role.value,
            'label': self.label
        }

@dataclass
class Telemetry:
    lat: float = 0.0
    lng: float = 0.0
    altitude_m: float = 0.0
    speed_kmh: float = 0.0
    heading_deg: float = 0.0    # [0, 360)
    battery_pct: float = 100.0  # [0, 100]

    def copy(self) -> "Telemetry":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'lat': self.lat,
            'lng': self.lng,
            'altitude_m': self.altitude_m,
            'speed_kmh': round(self.speed_kmh, 1),
            'heading_deg': round(self.heading_deg, 1),
            'battery_pct': round(self.battery_pct, 1)
        }

@dataclass(frozen=True)
class FlightEvent:
    time: datetime
    kind: EventKind
    detail: str

    def to_dict(self) -> Dict[str, Any]:
        return {'time': self.time.isoformat(), 'kind': self.kind.value, 'detail': self.detail}

# ============================================================================
# PROGRESS (discriminated by DroneMode)
# ============================================================================

@dataclass
class SimulatedProgress:
    """Position within the waypoint polyline"""
    segment_index: int = 0
    segment_fraction: float = 0.0
    state: SimState = SimState.IDLE
    ticks: int = 0

@dataclass
class LiveProgress:
    """Waypoint indices confirmed reached by proximity"""
    visited_waypoints: Set[int] = field(default_factory=set)

Progress = Union[SimulatedProgress, LiveProgress]

@dataclass
class LiveLink:
    """Connection state for a live entry"""
    hostname: str
    state: LinkState = LinkState.DISCONNECTED
    last_position: Optional[Tuple[float, float]] = None
    last_fix_time: Optional[float] = None
    reconnect_attempts: int = 0
    reconnect_handle: Any = None   # asyncio.TimerHandle
    task: Any = None               # asyncio.Task reading the stream
    messages: int = 0
    dropped: int = 0

@dataclass
class MissionSummary:
    """Captured once on the running -> complete transition"""
    completed_at: datetime
    duration_s: float
    total_distance_m: float
    final_battery_pct: float

# ============================================================================
# DRONE SPEC & ENTRY
# ============================================================================

@dataclass
class DroneSpec:
    """What an operator attaches to the tracking view"""
    source_key: str                # identifies the physical/demo drone
    name: str
    mode: DroneMode
    hostname: Optional[str] = None
    model: Optional[str] = None
    serial: Optional[str] = None
    waypoints: Optional[Sequence[Dict[str, Any]]] = None

    @property
    def display_name(self) -> str:
        return f"{self.name} — {self.model}" if self.model else self.name

    @classmethod
    def demo(cls, slot: str = "HLX-0042", name: str = "Helios X1",
             model: Optional[str] = "Recon",
             waypoints: Optional[Sequence[Dict[str, Any]]] = None) -> "DroneSpec":
        return cls(
            source_key=f"demo:{slot}",
            name=name,
            mode=DroneMode.SIMULATED,
            model=model,
            serial=slot,
            waypoints=waypoints
        )

    @classmethod
    def from_record(cls, record, waypoints: Optional[Sequence[Dict[str, Any]]] = None) -> "DroneSpec":
        """Live spec for a drone persisted in the fleet registry"""
        if not record.hostname:
            raise ValueError(f"Drone {record.id} has no hostname; cannot track live")
        return cls(
            source_key=f"fleet:{record.id}",
            name=record.name,
            mode=DroneMode.LIVE,
            hostname=record.hostname,
            model=record.model,
            serial=f"ID-{record.id}",
            waypoints=waypoints
        )

@dataclass
class DroneEntry:
    """Per-drone state aggregate owned by the fleet registry"""
    id: str
    spec: DroneSpec
    mode: DroneMode
    color_index: int
    color: str
    mission: Tuple[Waypoint, ...] = ()
    telemetry: Telemetry = field(default_factory=Telemetry)
    progress: Progress = field(default_factory=SimulatedProgress)
    mission_started_at: Optional[datetime] = None
    mission_complete: bool = False
    summary: Optional[MissionSummary] = None
    event_log: List[FlightEvent] = field(default_factory=list)
    link: Optional[LiveLink] = None
    attached_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def create(cls, entry_id: str, spec: DroneSpec, mission: Sequence[Waypoint],
               color_index: int, color: str) -> "DroneEntry":
        if spec.mode == DroneMode.LIVE:
            if not spec.hostname:
                raise ValueError("Live drones require a hostname")
            progress: Progress = LiveProgress()
            link = LiveLink(hostname=spec.hostname)
        else:
            progress = SimulatedProgress()
            link = None

        entry = cls(
            id=entry_id,
            spec=spec,
            mode=spec.mode,
            color_index=color_index,
            color=color,
            mission=tuple(mission),
            progress=progress,
            link=link
        )
        entry.reset_telemetry()
        return entry

    # -- mode-checked access to the progress variant -------------------------

    def simulated_progress(self) -> SimulatedProgress:
        if self.mode != DroneMode.SIMULATED or not isinstance(self.progress, SimulatedProgress):
            raise DroneModeError(f"Entry {self.id} is {self.mode.value}, not simulated")
        return self.progress

    def live_progress(self) -> LiveProgress:
        if self.mode != DroneMode.LIVE or not isinstance(self.progress, LiveProgress):
            raise DroneModeError(f"Entry {self.id} is {self.mode.value}, not live")
        return self.progress

    def live_link(self) -> LiveLink:
        if self.mode != DroneMode.LIVE or self.link is None:
            raise DroneModeError(f"Entry {self.id} has no live link")
        return self.link

    # -- mutation helpers used by the drivers --------------------------------

    def log_event(self, kind: EventKind, detail: str) -> FlightEvent:
        event = FlightEvent(time=datetime.now(), kind=kind, detail=detail)
        self.event_log.append(event)
        return event

    def reset_telemetry(self):
        """Park the drone at its launch point with a full battery"""
        launch = self.mission[0] if self.mission else None
        self.telemetry = Telemetry(
            lat=launch.lat if launch else self.telemetry.lat,
            lng=launch.lng if launch else self.telemetry.lng,
            altitude_m=round(launch.altitude_m) if launch else 0.0,
            speed_kmh=0.0,
            heading_deg=0.0,
            battery_pct=self.telemetry.battery_pct if self.mode == DroneMode.LIVE else 100.0
        )

    def reset_progress(self):
        """Progress back to the start of the current mission"""
        if self.mode == DroneMode.SIMULATED:
            self.progress = SimulatedProgress()
        else:
            self.progress = LiveProgress()
        self.mission_complete = False
        self.summary = None

    # -- read-side helpers ----------------------------------------------------

    @property
    def display_name(self) -> str:
        return self.spec.display_name

    @property
    def sim_state(self) -> Optional[SimState]:
        if self.mode != DroneMode.SIMULATED:
            return None
        return self.simulated_progress().state

    def progress_percent(self) -> float:
        """Mission progress shown in the detail panel, 0-100"""
        n = len(self.mission)
        if self.mode == DroneMode.LIVE:
            if n == 0:
                return 0.0
            return min(100.0, len(self.live_progress().visited_waypoints) / n * 100.0)

        if n < 2:
            return 0.0
        if self.mission_complete:
            return 100.0
        progress = self.simulated_progress()
        return min(100.0, (progress.segment_index + progress.segment_fraction) / (n - 1) * 100.0)

    def waypoints_visited(self) -> int:
        n = len(self.mission)
        if n == 0:
            return 0
        if self.mode == DroneMode.LIVE:
            return len(self.live_progress().visited_waypoints)
        if self.mission_complete:
            return n
        progress = self.simulated_progress()
        if progress.state == SimState.IDLE:
            return 0
        return progress.segment_index + 1

    def waypoint_statuses(self) -> List[WaypointStatus]:
        statuses = []
        if self.mode == DroneMode.LIVE:
            visited = self.live_progress().visited_waypoints
            for i in range(len(self.mission)):
                statuses.append(WaypointStatus.REACHED if i in visited else WaypointStatus.PENDING)
            return statuses

        progress = self.simulated_progress()
        for i in range(len(self.mission)):
            if self.mission_complete or (progress.state != SimState.IDLE and i <= progress.segment_index):
                statuses.append(WaypointStatus.REACHED)
            elif progress.state == SimState.RUNNING and i == progress.segment_index + 1:
                statuses.append(WaypointStatus.ACTIVE)
            else:
                statuses.append(WaypointStatus.PENDING)
        return statuses

    def to_dict(self) -> Dict[str, Any]:
        """Read-only snapshot for map/UI collaborators"""
        data = {
            'id': self.id,
            'name': self.display_name,
            'source_key': self.spec.source_key,
            'mode': self.mode.value,
            'color_index': self.color_index,
            'color': self.color,
            'telemetry': self.telemetry.to_dict(),
            'mission': [wp.to_dict() for wp in self.mission],
            'waypoint_statuses': [s.value for s in self.waypoint_statuses()],
            'progress_percent': round(self.progress_percent(), 1),
            'mission_started_at': self.mission_started_at.isoformat() if self.mission_started_at else None,
            'mission_complete': self.mission_complete,
            'event_log': [e.to_dict() for e in self.event_log]
        }
        if self.mode == DroneMode.SIMULATED:
            progress = self.simulated_progress()
            data['progress'] = {
                'state': progress.state.value,
                'segment_index': progress.segment_index,
                'segment_fraction': round(progress.segment_fraction, 4)
            }
        else:
            data['progress'] = {'visited_waypoints': sorted(self.live_progress().visited_waypoints)}
            data['link'] = {
                'hostname': self.link.hostname,
                'state': self.link.state.value,
                'reconnect_attempts': self.link.reconnect_attempts
            }
        return data

# ============================================================================
# FLIGHT RECORD
# ============================================================================

@dataclass(frozen=True)
class FlightRecord:
    """Immutable flight-report payload consumed by reporting"""
    entry_id: str
    drone_name: str
    drone_identifier: str
    mode: DroneMode
    mission_start: Optional[datetime]
    mission_end: Optional[datetime]
    duration_s: float
    duration_str: str
    total_distance_m: float
    distance_str: str
    battery_start_pct: float
    battery_end_pct: float
    waypoints_visited: int
    total_waypoints: int
    max_altitude_m: float
    avg_speed_kmh: float
    max_speed_kmh: float
    mission_status: str
    flight_log: Tuple[FlightEvent, ...]
    waypoints: Tuple[Waypoint, ...]
    telemetry_snapshot: Telemetry
    generated_at: datetime = field(default_factory=datetime.now)

    @property
    def is_complete(self) -> bool:
        return self.mission_status == "complete"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entry_id': self.entry_id,
            'drone_name': self.drone_name,
            'drone_identifier': self.drone_identifier,
            'mode': self.mode.value,
            'mission_start': self.mission_start.isoformat() if self.mission_start else None,
            'mission_end': self.mission_end.isoformat() if self.mission_end else None,
            'duration_s': round(self.duration_s, 1),
            'duration_str': self.duration_str,
            'total_distance_m': round(self.total_distance_m, 1),
            'distance_str': self.distance_str,
            'battery_start_pct': self.battery_start_pct,
            'battery_end_pct': self.battery_end_pct,
            'waypoints_visited': self.waypoints_visited,
            'total_waypoints': self.total_waypoints,
            'max_altitude_m': self.max_altitude_m,
            'avg_speed_kmh': self.avg_speed_kmh,
            'max_speed_kmh': self.max_speed_kmh,
            'mission_status': self.mission_status,
            'flight_log': [e.to_dict() for e in self.flight_log],
            'waypoints': [wp.to_dict() for wp in self.waypoints],
            'telemetry_snapshot': self.telemetry_snapshot.to_dict(),
            'generated_at': self.generated_at.isoformat()
        }


def is_finite_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError):
        return False
