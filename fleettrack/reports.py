# Flight record builder: snapshot an entry into an immutable report payload

import logging
from datetime import datetime
from typing import Callable, Optional

from fleettrack.config import ReportConfig
from fleettrack.geo import path_distance, round_half_up
from fleettrack.models import DroneEntry, FlightRecord
from fleettrack.monitoring import REPORTS_BUILT, MetricsCollector

logger = logging.getLogger(__name__)


def format_duration(seconds: float) -> str:
    """Whole minutes; anything that rounds below one minute reads "<1 min" """
    minutes = round_half_up(seconds / 60.0)
    if minutes < 1:
        return "<1 min"
    return f"{minutes} min"


def format_distance(meters: float) -> str:
    if meters >= 1000:
        return f"{meters / 1000:.1f} km"
    return f"{round_half_up(meters)} m"


class FlightRecordBuilder:
    """Reduces a drone entry's accumulated state into a FlightRecord"""

    def __init__(self, config: Optional[ReportConfig] = None,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.config = config or ReportConfig()
        self.metrics = metrics or MetricsCollector()
        self.clock = clock

    def build(self, entry: DroneEntry, now: Optional[datetime] = None) -> FlightRecord:
        """
        Build a report for an entry, mid-mission or after completion.

        Distance is the planned route length so it is defined even for
        missions that never finished. Speeds come from the last observed
        telemetry sample.
        """
        now = now or self.clock()

        if entry.mission_complete and entry.summary is not None:
            mission_end = entry.summary.completed_at
        else:
            mission_end = now

        started = entry.mission_started_at
        duration_s = max(0.0, (mission_end - started).total_seconds()) if started else 0.0
        distance_m = path_distance(entry.mission)
        telemetry = entry.telemetry.copy()

        if entry.mission_complete:
            status = "complete"
        else:
            status = f"in-progress ({round_half_up(entry.progress_percent())}%)"

        max_altitude = max((wp.altitude_m for wp in entry.mission), default=0.0)
        speed = round(telemetry.speed_kmh, 1)

        record = FlightRecord(
            entry_id=entry.id,
            drone_name=entry.display_name,
            drone_identifier=entry.spec.serial or entry.spec.hostname or entry.id,
            mode=entry.mode,
            mission_start=started,
            mission_end=mission_end if started else None,
            duration_s=duration_s,
            duration_str=format_duration(duration_s),
            total_distance_m=distance_m,
            distance_str=format_distance(distance_m),
            battery_start_pct=self.config.battery_start_pct,
            battery_end_pct=float(round_half_up(telemetry.battery_pct)),
            waypoints_visited=entry.waypoints_visited(),
            total_waypoints=len(entry.mission),
            max_altitude_m=max_altitude,
            avg_speed_kmh=speed,
            max_speed_kmh=round(speed * self.config.peak_speed_factor, 1),
            mission_status=status,
            flight_log=tuple(entry.event_log),
            waypoints=tuple(entry.mission),
            telemetry_snapshot=telemetry,
            generated_at=now
        )

        self.metrics.record_counter(REPORTS_BUILT)
        logger.info(f"Flight record built for {entry.id}: {status}, {record.distance_str}, "
                    f"{record.waypoints_visited}/{record.total_waypoints} waypoints")
        return record
