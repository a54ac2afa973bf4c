# Great-circle helpers shared by the simulator, ingestor and reports

import math
from typing import Sequence

EARTH_RADIUS_M = 6371000  # metres


def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great circle distance in metres"""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lng2 - lng1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def bearing(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Initial bearing from point 1 to point 2, in degrees [0, 360)"""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dlambda = math.radians(lng2 - lng1)

    y = math.sin(dlambda) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(dlambda)

    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def path_distance(points: Sequence) -> float:
    """Sum of great-circle legs between consecutive points (anything with .lat/.lng)"""
    total = 0.0
    for i in range(len(points) - 1):
        p1, p2 = points[i], points[i + 1]
        total += haversine_distance(p1.lat, p1.lng, p2.lat, p2.lng)
    return total


def lerp(a: float, b: float, t: float) -> float:
    return a + (b - a) * t


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positives (Python's round() is banker's)"""
    return int(math.floor(value + 0.5))
