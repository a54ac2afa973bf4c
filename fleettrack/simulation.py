"""
simulation.py

Kinematic mission simulator for demo drones.

Each simulated entry is advanced on a fixed tick: the fraction along the
current segment grows by a constant step so every segment takes the same
number of ticks regardless of its length (a visualization simulator, not
a flight model). Position is interpolated between the segment endpoints,
heading follows the great-circle bearing, speed oscillates around a
cruise value and battery drains with overall mission progress.

State machine per entry:  idle -> running -> complete
"""

import asyncio
import logging
import math
from datetime import datetime
from typing import Callable, Dict, Optional

from fleettrack.config import SimulationConfig
from fleettrack.errors import DroneModeError
from fleettrack.events import (
    ENTRY_UPDATED, MISSION_COMPLETED, MISSION_STARTED, EventPriority, EventRouter,
)
from fleettrack.geo import bearing, lerp, path_distance
from fleettrack.models import (
    DroneEntry, DroneMode, EventKind, MissionSummary, SimState, SimulatedProgress, WaypointRole,
)
from fleettrack.monitoring import MISSIONS_COMPLETED, TICKS, MetricsCollector

logger = logging.getLogger(__name__)

_FRACTION_EPSILON = 1e-9


class SimulationEngine:
    """Drives simulated-mode entries along their missions"""

    def __init__(self, registry, event_router: EventRouter, config: SimulationConfig,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Callable[[], datetime] = datetime.now):
        if config.steps_per_segment < 1:
            raise ValueError("steps_per_segment must be >= 1")
        self.registry = registry
        self.event_router = event_router
        self.config = config
        self.metrics = metrics or MetricsCollector()
        self.clock = clock
        self._tasks: Dict[str, asyncio.Task] = {}

    # ============================================================================
    # LIFECYCLE
    # ============================================================================

    def start(self, entry_id: str) -> bool:
        """
        Enter the running state and begin ticking.

        No-op (returns False) if the entry is already running, complete,
        or has fewer than two waypoints. Requires a running event loop
        when autotick is enabled.
        """
        entry = self.registry.require(entry_id)
        progress = self._progress_of(entry)

        if progress.state == SimState.RUNNING or entry_id in self._tasks:
            logger.debug(f"Simulation already running for {entry_id}")
            return False
        if progress.state == SimState.COMPLETE:
            logger.debug(f"Mission for {entry_id} is complete; restart required")
            return False
        if len(entry.mission) < 2:
            logger.info(f"Not starting simulation for {entry_id}: no mission attached")
            return False

        loop = asyncio.get_running_loop() if self.config.autotick else None

        progress.segment_index = 0
        progress.segment_fraction = 0.0
        progress.ticks = 0
        progress.state = SimState.RUNNING
        entry.mission_complete = False
        entry.summary = None
        entry.mission_started_at = self.clock()
        entry.event_log = []
        entry.log_event(EventKind.LAUNCH, "Drone powered up and launched from base")
        entry.reset_telemetry()

        if loop is not None:
            self._tasks[entry_id] = loop.create_task(self._run(entry_id), name=f"sim-{entry_id}")

        logger.info(f"Simulation started for {entry_id} ({len(entry.mission)} waypoints)")
        self.event_router.emit(MISSION_STARTED, 'simulation_engine', EventPriority.HIGH,
                               entry_id=entry_id)
        self.event_router.emit(ENTRY_UPDATED, 'simulation_engine', EventPriority.LOW,
                               entry_id=entry_id)
        return True

    def stop(self, entry_id: str) -> bool:
        """Halt the ticker; safe to call repeatedly"""
        task = self._tasks.pop(entry_id, None)
        if task is not None:
            task.cancel()

        entry = self.registry.get(entry_id)
        if entry is not None and entry.mode == DroneMode.SIMULATED:
            progress = entry.simulated_progress()
            if progress.state == SimState.RUNNING:
                progress.state = SimState.IDLE
                logger.info(f"Simulation stopped for {entry_id}")
                self.event_router.emit(ENTRY_UPDATED, 'simulation_engine', EventPriority.LOW,
                                       entry_id=entry_id)
                return True
        return task is not None

    def release(self, entry_id: str):
        """Registry hook: stop before the entry is removed"""
        self.stop(entry_id)

    def restart(self, entry_id: str) -> bool:
        """complete/running -> idle -> running"""
        self.stop(entry_id)
        entry = self.registry.require(entry_id)
        self._progress_of(entry).state = SimState.IDLE
        entry.mission_complete = False
        return self.start(entry_id)

    def is_running(self, entry_id: str) -> bool:
        entry = self.registry.get(entry_id)
        if entry is None or entry.mode != DroneMode.SIMULATED:
            return False
        return entry.simulated_progress().state == SimState.RUNNING

    def shutdown(self):
        for entry_id in list(self._tasks):
            self.stop(entry_id)

    async def _run(self, entry_id: str):
        interval = self.config.tick_interval
        try:
            while True:
                await asyncio.sleep(interval)
                if not self.tick(entry_id):
                    break
        finally:
            if self._tasks.get(entry_id) is asyncio.current_task():
                del self._tasks[entry_id]

    # ============================================================================
    # TICK
    # ============================================================================

    def tick(self, entry_id: str) -> bool:
        """
        Advance one step.

        Returns:
            True while the mission is still running after this tick.
            False for detached, idle or just-completed entries.

        Raises:
            DroneModeError: the entry is not simulated
        """
        entry = self.registry.get(entry_id)
        if entry is None:
            logger.debug(f"Tick for detached entry {entry_id} ignored")
            return False

        progress = self._progress_of(entry)
        if progress.state != SimState.RUNNING:
            return False

        waypoints = entry.mission
        final_segment = len(waypoints) - 2

        progress.ticks += 1
        progress.segment_fraction += 1.0 / self.config.steps_per_segment
        self.metrics.record_counter(TICKS)

        if progress.segment_fraction >= 1.0 - _FRACTION_EPSILON:
            reached = waypoints[progress.segment_index + 1]
            kind = EventKind.LAND if reached.role == WaypointRole.RETURN_TO_LAUNCH else EventKind.WAYPOINT
            entry.log_event(kind, f"{reached.label} reached at altitude {int(reached.altitude_m)}m")
            logger.debug(f"{entry_id} reached waypoint {progress.segment_index + 1}: {reached.label}")

            if progress.segment_index >= final_segment:
                progress.segment_fraction = 0.0
                self._complete(entry, progress)
                return False

            progress.segment_index += 1
            progress.segment_fraction = 0.0

        self._apply_position(entry, progress)
        self.event_router.emit(ENTRY_UPDATED, 'simulation_engine', EventPriority.INFO,
                               entry_id=entry_id)
        return True

    def run_to_completion(self, entry_id: str, max_ticks: Optional[int] = None) -> int:
        """Tick synchronously until the mission stops running; returns ticks taken"""
        entry = self.registry.require(entry_id)
        if max_ticks is None:
            max_ticks = (len(entry.mission) - 1) * self.config.steps_per_segment + 1
        taken = 0
        while taken < max_ticks:
            taken += 1
            if not self.tick(entry_id):
                break
        return taken

    # ============================================================================
    # INTERNALS
    # ============================================================================

    def _progress_of(self, entry: DroneEntry) -> SimulatedProgress:
        if entry.mode != DroneMode.SIMULATED:
            raise DroneModeError(f"Simulation engine cannot drive {entry.mode.value} entry {entry.id}")
        return entry.simulated_progress()

    def _battery_for(self, overall_fraction: float) -> float:
        cfg = self.config
        return max(cfg.battery_floor_pct, 100.0 - overall_fraction * cfg.battery_drain_pct)

    def _speed_for(self, ticks: int) -> float:
        cfg = self.config
        elapsed = ticks * cfg.tick_interval
        return cfg.cruise_speed_kmh + math.sin(elapsed / cfg.speed_period_s) * cfg.speed_amplitude_kmh

    def _apply_position(self, entry: DroneEntry, progress: SimulatedProgress):
        waypoints = entry.mission
        frm = waypoints[progress.segment_index]
        to = waypoints[progress.segment_index + 1]
        t = progress.segment_fraction
        segments = len(waypoints) - 1

        telemetry = entry.telemetry
        telemetry.lat = lerp(frm.lat, to.lat, t)
        telemetry.lng = lerp(frm.lng, to.lng, t)
        telemetry.altitude_m = float(round(lerp(frm.altitude_m, to.altitude_m, t)))
        telemetry.heading_deg = bearing(frm.lat, frm.lng, to.lat, to.lng)
        telemetry.speed_kmh = self._speed_for(progress.ticks)
        telemetry.battery_pct = self._battery_for((progress.segment_index + t) / segments)

    def _complete(self, entry: DroneEntry, progress: SimulatedProgress):
        """running -> complete; fires once per mission lifetime"""
        progress.state = SimState.COMPLETE
        entry.mission_complete = True

        final = entry.mission[-1]
        telemetry = entry.telemetry
        telemetry.lat = final.lat
        telemetry.lng = final.lng
        telemetry.altitude_m = float(round(final.altitude_m))
        telemetry.speed_kmh = 0.0
        telemetry.battery_pct = self._battery_for(1.0)

        now = self.clock()
        started = entry.mission_started_at or now
        entry.summary = MissionSummary(
            completed_at=now,
            duration_s=max(0.0, (now - started).total_seconds()),
            total_distance_m=path_distance(entry.mission),
            final_battery_pct=telemetry.battery_pct
        )
        entry.log_event(EventKind.LAND, "Drone landed safely at launch site")
        self.metrics.record_counter(MISSIONS_COMPLETED)

        logger.info(f"Mission complete for {entry.id}: "
                    f"{entry.summary.total_distance_m:.0f} m in {entry.summary.duration_s:.1f} s, "
                    f"battery {telemetry.battery_pct:.0f}%")
        self.event_router.emit(MISSION_COMPLETED, 'simulation_engine', EventPriority.HIGH,
                               entry_id=entry.id)
        self.event_router.emit(ENTRY_UPDATED, 'simulation_engine', EventPriority.LOW,
                               entry_id=entry.id)
