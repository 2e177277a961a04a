"""
Geofence checks for manager attendance.
Uses the Haversine formula for distances between coordinates.
"""
import math
from typing import Iterable, Optional, Tuple

from ..config import settings
from ..models.models import Office


# Earth radius in meters
EARTH_RADIUS_M = 6371000


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance between two points on Earth.

    Returns:
        Distance in meters
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_phi / 2) ** 2 +
        math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def match_office(
    point_lat: float,
    point_lng: float,
    offices: Iterable[Office],
    radius_m: Optional[float] = None,
) -> Tuple[Optional[Office], Optional[Office], Optional[float]]:
    """
    Find the first office whose geofence contains the point.

    Args:
        point_lat: Reported latitude
        point_lng: Reported longitude
        offices: Candidate offices, checked in order
        radius_m: Geofence radius (defaults to ATTENDANCE_RADIUS_M)

    Returns:
        Tuple of (matched_office, nearest_office, distance_m)
        matched_office: first office within the radius, or None
        nearest_office: closest office overall (for error reporting)
        distance_m: distance to the matched office, else to the nearest one
    """
    radius = float(radius_m if radius_m is not None else settings.attendance_radius_m)
    nearest: Optional[Office] = None
    min_distance: Optional[float] = None

    for office in offices:
        distance = haversine_distance(point_lat, point_lng, float(office.latitude), float(office.longitude))
        if min_distance is None or distance < min_distance:
            nearest, min_distance = office, distance
        if distance <= radius:
            return office, nearest, distance

    return None, nearest, min_distance
