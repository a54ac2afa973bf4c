"""
fleettrack - multi-drone tracking & simulation core

Owns the registry of active drones, drives each one through its mission
(kinematic simulation or live telemetry) and hands off flight records
to reporting.
"""

from fleettrack.config import TrackingConfig
from fleettrack.models import DroneMode, DroneSpec, FlightRecord, Telemetry, Waypoint, WaypointRole
from fleettrack.session import TrackingSession
from fleettrack.waypoints import normalize_waypoints, parse_waypoint_file

__version__ = "1.0.0"

__all__ = [
    "TrackingConfig",
    "TrackingSession",
    "DroneMode",
    "DroneSpec",
    "FlightRecord",
    "Telemetry",
    "Waypoint",
    "WaypointRole",
    "normalize_waypoints",
    "parse_waypoint_file",
]
