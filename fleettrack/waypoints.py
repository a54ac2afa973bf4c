"""
waypoints.py

Mission normalization and mission-file parsing.

normalize_waypoints() turns an arbitrary ordered list of points into a
canonical mission: role by position, default altitudes, labels, and
coordinate validation. parse_waypoint_file() reads QGC WPL 110 plans
into the raw point list the normalizer expects.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from fleettrack.errors import MissionFileError
from fleettrack.geo import round_half_up
from fleettrack.models import Waypoint, WaypointRole, is_finite_number

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT_ALTITUDE_M = 0
DEFAULT_CRUISE_ALTITUDE_M = 80

# MAVLink command ids found in QGC WPL files
MAV_CMD_NAV_WAYPOINT = 16
MAV_CMD_NAV_RETURN_TO_LAUNCH = 20
MAV_CMD_NAV_TAKEOFF = 22

# Demo loop over San Francisco used when no mission file is loaded
DEFAULT_DEMO_WAYPOINTS: List[Dict[str, Any]] = [
    {'lat': 37.7749, 'lng': -122.4194, 'label': 'Take Off', 'alt': 0},
    {'lat': 37.7820, 'lng': -122.4060, 'label': 'WP 1 — Financial District', 'alt': 85},
    {'lat': 37.7900, 'lng': -122.3950, 'label': 'WP 2 — Embarcadero', 'alt': 110},
    {'lat': 37.8025, 'lng': -122.4058, 'label': "WP 3 — Fisherman's Wharf", 'alt': 95},
    {'lat': 37.8080, 'lng': -122.4177, 'label': 'WP 4 — Ghirardelli Square', 'alt': 75},
    {'lat': 37.7990, 'lng': -122.4310, 'label': 'WP 5 — Marina', 'alt': 60},
    {'lat': 37.7749, 'lng': -122.4194, 'label': 'Return to Launch', 'alt': 0},
]


def _field(point: Any, *names: str) -> Any:
    for name in names:
        if isinstance(point, Mapping):
            if name in point:
                return point[name]
        elif hasattr(point, name):
            return getattr(point, name)
    return None


def _valid_coordinate(lat: Any, lng: Any) -> bool:
    if not (is_finite_number(lat) and is_finite_number(lng)):
        return False
    return -90.0 <= float(lat) <= 90.0 and -180.0 <= float(lng) <= 180.0


def normalize_waypoints(points: Optional[Sequence[Any]]) -> List[Waypoint]:
    """
    Canonicalize an ordered point list into a mission.

    Args:
        points: sequence of mappings (or objects) with lat, lng and
            optional alt/altitude_m and label

    Returns:
        List of Waypoint; empty when fewer than two valid points survive
    """
    if not points:
        return []

    valid = []
    for point in points:
        lat = _field(point, 'lat', 'latitude')
        lng = _field(point, 'lng', 'lon', 'longitude')
        if not _valid_coordinate(lat, lng):
            logger.debug(f"Dropping invalid waypoint: {point!r}")
            continue
        valid.append((float(lat), float(lng), point))

    if len(valid) < 2:
        if points:
            logger.info(f"Mission rejected: {len(valid)} valid point(s) out of {len(points)}")
        return []

    last = len(valid) - 1
    mission = []
    for i, (lat, lng, point) in enumerate(valid):
        if i == 0:
            role = WaypointRole.TAKEOFF
            fallback_label = "Take Off"
        elif i == last:
            role = WaypointRole.RETURN_TO_LAUNCH
            fallback_label = "Return to Launch"
        else:
            role = WaypointRole.WAYPOINT
            fallback_label = f"Waypoint {i}"

        raw_alt = _field(point, 'alt', 'altitude_m', 'altitude')
        if is_finite_number(raw_alt):
            altitude = max(0, round_half_up(float(raw_alt)))
        elif role == WaypointRole.WAYPOINT:
            altitude = DEFAULT_CRUISE_ALTITUDE_M
        else:
            altitude = DEFAULT_ENDPOINT_ALTITUDE_M

        label = _field(point, 'label')
        label = label.strip() if isinstance(label, str) and label.strip() else fallback_label

        mission.append(Waypoint(lat=lat, lng=lng, altitude_m=float(altitude), role=role, label=label))

    return mission


def parse_waypoint_file(content: str) -> List[Dict[str, float]]:
    """
    Parse a QGC WPL 110 mission file.

    Returns:
        Ordered list of {lat, lng, alt}

    Raises:
        MissionFileError: bad header or no usable points
    """
    lines = [line for line in (content or "").strip().splitlines() if line.strip()]
    if len(lines) < 2:
        raise MissionFileError("No valid waypoints found in file")

    if not lines[0].strip().startswith("QGC WPL"):
        raise MissionFileError("Invalid file: expected QGC WPL format header")

    points: List[Dict[str, float]] = []
    for line_no, line in enumerate(lines[1:], start=2):
        parts = line.strip().split("\t")
        parts = [p for p in parts if p != ""]
        if len(parts) < 12:
            logger.debug(f"Skipping short row {line_no}")
            continue

        try:
            command = int(parts[3])
            lat = float(parts[8])
            lng = float(parts[9])
            alt = float(parts[10])
        except ValueError:
            logger.warning(f"Skipping unparseable row {line_no}: {line.strip()!r}")
            continue

        at_origin = lat == 0 and lng == 0

        if command == MAV_CMD_NAV_RETURN_TO_LAUNCH:
            if at_origin and points:
                points.append({'lat': points[0]['lat'], 'lng': points[0]['lng'], 'alt': alt or 0})
            elif not at_origin:
                points.append({'lat': lat, 'lng': lng, 'alt': alt or 0})
        elif command in (MAV_CMD_NAV_TAKEOFF, MAV_CMD_NAV_WAYPOINT):
            if not at_origin:
                points.append({'lat': lat, 'lng': lng, 'alt': alt})

    if not points:
        raise MissionFileError("No valid waypoints found in file")

    logger.info(f"Parsed {len(points)} waypoints from mission file")
    return points


def load_mission_file(content: str) -> List[Waypoint]:
    """Parse then normalize; raises MissionFileError if no mission results"""
    mission = normalize_waypoints(parse_waypoint_file(content))
    if not mission:
        raise MissionFileError("Mission file needs at least two valid waypoints")
    return mission
