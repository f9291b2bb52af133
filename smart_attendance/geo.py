"""
Location Components
Haversine distance/bearing on a spherical Earth and circular geofence checks
for the college campus and the teacher's position.
"""

import logging
import math
from typing import Dict, Optional, Tuple

from geopy.distance import great_circle

from .exceptions import InvalidCoordinate
from .models import GeoPoint, Geofence, GeofenceResult

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371000.0
EARTH_RADIUS_KM = EARTH_RADIUS_M / 1000.0


def validate_coordinates(point: GeoPoint) -> Tuple[float, float]:
    lat, lon = point.latitude, point.longitude
    if not (isinstance(lat, (int, float)) and isinstance(lon, (int, float))):
        raise InvalidCoordinate("Coordinates must be numbers")
    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise InvalidCoordinate("Coordinates cannot be NaN or infinite")
    if lat < -90 or lat > 90:
        raise InvalidCoordinate("Latitude must be between -90 and 90 degrees")
    if lon < -180 or lon > 180:
        raise InvalidCoordinate("Longitude must be between -180 and 180 degrees")
    return float(lat), float(lon)


def round_distance(meters: float) -> float:
    """Two-decimal rounding for response payloads only."""
    return round(meters, 2)


def haversine_distance_meters(a: GeoPoint, b: GeoPoint) -> float:
    """
    Great-circle distance between two points in meters.

    Args:
        a: First point
        b: Second point

    Returns:
        float: Unrounded distance in meters

    Raises:
        InvalidCoordinate: if either point is out of range or not finite
    """
    lat1, lon1 = validate_coordinates(a)
    lat2, lon2 = validate_coordinates(b)

    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_M * c


def bearing_degrees(a: GeoPoint, b: GeoPoint) -> float:
    """Initial bearing from a to b, in [0, 360)."""
    lat1, lon1 = validate_coordinates(a)
    lat2, lon2 = validate_coordinates(b)

    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlon = math.radians(lon2 - lon1)

    y = math.sin(dlon) * math.cos(lat2_rad)
    x = math.cos(lat1_rad) * math.sin(lat2_rad) - math.sin(lat1_rad) * math.cos(lat2_rad) * math.cos(dlon)
    bearing = (math.degrees(math.atan2(y, x)) + 360.0) % 360.0
    # (-tiny + 360) % 360 can round up to 360.0
    return 0.0 if bearing >= 360.0 else bearing


def destination_point(origin: GeoPoint, distance_meters: float, bearing: float) -> GeoPoint:
    """Point reached by travelling distance_meters from origin on the given bearing."""
    validate_coordinates(origin)
    dest = great_circle(meters=distance_meters, radius=EARTH_RADIUS_KM).destination(
        (origin.latitude, origin.longitude), bearing
    )
    return GeoPoint(latitude=dest.latitude, longitude=dest.longitude)


def bounding_box(center: GeoPoint, radius_meters: float) -> Dict[str, float]:
    """Lat/lon box enclosing a circle; used as a cheap pre-filter."""
    lat, lon = validate_coordinates(center)
    circumference = 2 * math.pi * EARTH_RADIUS_M
    lat_offset = (radius_meters / circumference) * 360.0
    cos_lat = math.cos(math.radians(lat))
    lon_offset = 180.0 if cos_lat < 1e-12 else (radius_meters / (circumference * cos_lat)) * 360.0
    return {
        "north": lat + lat_offset,
        "south": lat - lat_offset,
        "east": lon + lon_offset,
        "west": lon - lon_offset,
    }


def is_within_bounding_box(point: GeoPoint, box: Dict[str, float]) -> bool:
    lat, lon = validate_coordinates(point)
    return box["south"] <= lat <= box["north"] and box["west"] <= lon <= box["east"]


def accuracy_category(accuracy: Optional[float]) -> str:
    if not accuracy or accuracy <= 0:
        return "unknown"
    if accuracy <= 5:
        return "excellent"
    if accuracy <= 10:
        return "good"
    if accuracy <= 20:
        return "fair"
    if accuracy <= 50:
        return "poor"
    return "very_poor"


class GeofenceEvaluator:
    """
    Decides whether a point lies inside circular zones.

    Two zones matter for attendance: the fixed college geofence and the
    teacher-proximity zone centred on where the teacher started the session.
    """

    def __init__(self, college_fence: Geofence, default_teacher_radius: float = 20.0):
        """
        Args:
            college_fence: Campus center and radius (from configuration)
            default_teacher_radius: Radius used when a class does not set one
        """
        self.college_fence = college_fence
        self.default_teacher_radius = default_teacher_radius

    @staticmethod
    def evaluate(point: GeoPoint, fence: Geofence) -> GeofenceResult:
        distance = haversine_distance_meters(point, fence.center)
        within = distance <= fence.radius_meters
        return GeofenceResult(
            within_fence=within,
            distance_meters=distance,
            excess_meters=max(0.0, distance - fence.radius_meters),
            radius_meters=fence.radius_meters,
            name=fence.name,
        )

    def college_geofence(self, point: GeoPoint) -> GeofenceResult:
        return self.evaluate(point, self.college_fence)

    def teacher_proximity(
        self,
        point: GeoPoint,
        teacher_location: GeoPoint,
        radius_meters: Optional[float] = None,
    ) -> GeofenceResult:
        fence = Geofence(
            center=teacher_location,
            radius_meters=radius_meters or self.default_teacher_radius,
            name="teacher_proximity",
        )
        return self.evaluate(point, fence)

    def validate_student_location(
        self,
        point: GeoPoint,
        teacher_location: GeoPoint,
        teacher_radius: Optional[float] = None,
    ) -> Dict[str, object]:
        """
        Run both zone checks. The location passes only when both pass.

        Returns:
            dict: college, teacher (GeofenceResult) and passed (bool)
        """
        college = self.college_geofence(point)
        teacher = self.teacher_proximity(point, teacher_location, teacher_radius)
        passed = college.within_fence and teacher.within_fence

        logger.debug(
            f"Location check: college={college.distance_meters:.2f}m/{college.radius_meters}m, "
            f"teacher={teacher.distance_meters:.2f}m/{teacher.radius_meters}m, passed={passed}"
        )
        return {"college": college, "teacher": teacher, "passed": passed}
