# Fleet registry: owns the map of active drone entries and the selection

import logging
import threading
import uuid
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from fleettrack.errors import DuplicateDroneError, UnknownDroneError
from fleettrack.events import (
    ENTRY_ACTIVE_CHANGED, ENTRY_ATTACHED, ENTRY_DETACHED, ENTRY_UPDATED, MISSION_REPLACED,
    EventPriority, EventRouter,
)
from fleettrack.models import DroneEntry, DroneMode, DroneSpec, Waypoint
from fleettrack.monitoring import ACTIVE_ENTRIES, MetricsCollector
from fleettrack.waypoints import normalize_waypoints

logger = logging.getLogger(__name__)


class Driver(Protocol):
    """Anything that mutates entries of one mode (simulation engine, ingestor)"""

    def release(self, entry_id: str) -> None:
        ...


class FleetRegistry:
    """
    Registry of concurrently tracked drones.

    Only the registry inserts or removes keys. Iteration goes through
    all(), which returns a snapshot taken under the lock, so a detach
    is atomic with respect to any in-flight render/fit-to-bounds pass.
    """

    def __init__(self, event_router: EventRouter, palette: Sequence[str],
                 metrics: Optional[MetricsCollector] = None,
                 normalizer: Callable = normalize_waypoints):
        if not palette:
            raise ValueError("Palette must contain at least one color")
        self.event_router = event_router
        self.palette = list(palette)
        self.metrics = metrics or MetricsCollector()
        self.normalizer = normalizer
        self._entries: Dict[str, DroneEntry] = {}
        self._by_source: Dict[str, str] = {}
        self._drivers: Dict[DroneMode, Driver] = {}
        self._active_id: Optional[str] = None
        self._lock = threading.RLock()

    def bind_driver(self, mode: DroneMode, driver: Driver):
        """Register the driver that owns entries of the given mode"""
        self._drivers[mode] = driver

    # ------------------------------------------------------------------ attach

    def attach(self, spec: DroneSpec) -> str:
        """
        Create and register an entry for the given drone.

        Returns:
            The new entry id

        Raises:
            DuplicateDroneError: the same physical/demo drone is attached
            ValueError: live spec without hostname
        """
        mission = self.normalizer(spec.waypoints) if spec.waypoints is not None else []

        with self._lock:
            if spec.source_key in self._by_source:
                raise DuplicateDroneError(
                    f"{spec.display_name} is already attached as {self._by_source[spec.source_key]}"
                )

            entry_id = f"D-{uuid.uuid4().hex[:8].upper()}"
            color_index = len(self._entries) % len(self.palette)
            entry = DroneEntry.create(
                entry_id=entry_id,
                spec=spec,
                mission=mission,
                color_index=color_index,
                color=self.palette[color_index]
            )
            self._entries[entry_id] = entry
            self._by_source[spec.source_key] = entry_id
            if self._active_id is None:
                self._active_id = entry_id
            count = len(self._entries)

        self.metrics.record_gauge(ACTIVE_ENTRIES, count)
        logger.info(f"Drone attached: {entry_id} ({spec.display_name}, {spec.mode.value}, "
                    f"{len(mission)} waypoints)")
        self.event_router.emit(
            ENTRY_ATTACHED, 'fleet_registry', EventPriority.HIGH,
            entry_id=entry_id, mode=spec.mode.value, color_index=color_index
        )
        self.event_router.emit(ENTRY_UPDATED, 'fleet_registry', EventPriority.LOW, entry_id=entry_id)
        return entry_id

    # ------------------------------------------------------------------ detach

    def detach(self, entry_id: str) -> bool:
        """Stop the owning driver, then remove the entry"""
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return False

            driver = self._drivers.get(entry.mode)
            if driver is not None:
                driver.release(entry_id)

            del self._entries[entry_id]
            self._by_source.pop(entry.spec.source_key, None)

            active_changed = self._active_id == entry_id
            if active_changed:
                self._active_id = next(iter(self._entries), None)
            new_active = self._active_id
            count = len(self._entries)

        self.metrics.record_gauge(ACTIVE_ENTRIES, count)
        logger.info(f"Drone detached: {entry_id}")
        self.event_router.emit(ENTRY_DETACHED, 'fleet_registry', EventPriority.HIGH, entry_id=entry_id)
        self.event_router.emit(ENTRY_UPDATED, 'fleet_registry', EventPriority.LOW, entry_id=entry_id)
        if active_changed:
            self.event_router.emit(ENTRY_ACTIVE_CHANGED, 'fleet_registry', active_id=new_active)
        return True

    def clear(self):
        """Detach everything (session teardown)"""
        for entry in self.all():
            self.detach(entry.id)

    # --------------------------------------------------------------- selection

    def set_active(self, entry_id: str) -> bool:
        """Change which entry is surfaced to the detail panel; drivers unaffected"""
        with self._lock:
            if entry_id not in self._entries:
                return False
            changed = self._active_id != entry_id
            self._active_id = entry_id

        if changed:
            self.event_router.emit(ENTRY_ACTIVE_CHANGED, 'fleet_registry', active_id=entry_id)
        return True

    @property
    def active_id(self) -> Optional[str]:
        return self._active_id

    def get_active(self) -> Optional[DroneEntry]:
        with self._lock:
            return self._entries.get(self._active_id) if self._active_id else None

    def is_active(self, entry_id: str) -> bool:
        return self._active_id == entry_id

    # ---------------------------------------------------------------- mission

    def replace_mission(self, entry_id: str, mission: Sequence[Waypoint]) -> DroneEntry:
        """
        Swap the mission of a stopped entry and reset its progress.

        The caller must have released the entry's driver first.
        """
        with self._lock:
            entry = self.require(entry_id)
            entry.mission = tuple(mission)
            entry.reset_progress()
            entry.reset_telemetry()

        logger.info(f"Mission replaced for {entry_id}: {len(mission)} waypoints")
        self.event_router.emit(MISSION_REPLACED, 'fleet_registry', entry_id=entry_id,
                               waypoints=len(mission))
        self.event_router.emit(ENTRY_UPDATED, 'fleet_registry', EventPriority.LOW, entry_id=entry_id)
        return entry

    # -------------------------------------------------------------- accessors

    def get(self, entry_id: str) -> Optional[DroneEntry]:
        with self._lock:
            return self._entries.get(entry_id)

    def require(self, entry_id: str) -> DroneEntry:
        entry = self.get(entry_id)
        if entry is None:
            raise UnknownDroneError(entry_id)
        return entry

    def all(self) -> List[DroneEntry]:
        """Snapshot of registered entries in attach order"""
        with self._lock:
            return list(self._entries.values())

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def is_attached(self, source_key: str) -> bool:
        with self._lock:
            return source_key in self._by_source

    def __contains__(self, entry_id: str) -> bool:
        with self._lock:
            return entry_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
