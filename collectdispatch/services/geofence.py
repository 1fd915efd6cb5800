"""
Geospatial helpers.
Uses Haversine formula to calculate distance between points.
Coordinates travel as [lng, lat] pairs, the GeoJSON order.
"""
import math
from typing import Optional, Sequence, Tuple

from .errors import ValidationError

# Earth radius in meters
EARTH_RADIUS_M = 6371000
METERS_PER_DEGREE_LAT = 111320.0


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great circle distance between two points on Earth.

    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point

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


def validate_coordinates(coordinates: Optional[Sequence], field: str = "coordinates") -> Tuple[float, float]:
    """
    Validate a [lng, lat] pair and return it as floats.
    Raises ValidationError on a wrong shape or out-of-range values.
    """
    if coordinates is None or isinstance(coordinates, (str, bytes)) or len(coordinates) != 2:
        raise ValidationError("Coordinates must be a [longitude, latitude] pair", field=field)
    lng, lat = coordinates
    if isinstance(lng, bool) or isinstance(lat, bool) or not isinstance(lng, (int, float)) or not isinstance(lat, (int, float)):
        raise ValidationError("Coordinates must be numbers", field=field)
    if math.isnan(lng) or math.isnan(lat):
        raise ValidationError("Coordinates must be numbers", field=field)
    if lng < -180 or lng > 180:
        raise ValidationError("Longitude must be between -180 and 180", field=field)
    if lat < -90 or lat > 90:
        raise ValidationError("Latitude must be between -90 and 90", field=field)
    return float(lng), float(lat)


def bounding_box(lng: float, lat: float, radius_m: float) -> Tuple[float, float, Optional[float], Optional[float]]:
    """
    Coarse lat/lng box around a point, used as an index-friendly SQL prefilter.
    Returns (min_lat, max_lat, min_lng, max_lng); the lng bounds are None when
    the box would wrap the antimeridian or reach a pole.
    """
    d_lat = radius_m / METERS_PER_DEGREE_LAT
    min_lat = max(-90.0, lat - d_lat)
    max_lat = min(90.0, lat + d_lat)
    cos_lat = math.cos(math.radians(lat))
    if cos_lat < 1e-6 or min_lat <= -90.0 or max_lat >= 90.0:
        return min_lat, max_lat, None, None
    d_lng = radius_m / (METERS_PER_DEGREE_LAT * cos_lat)
    if lng - d_lng < -180 or lng + d_lng > 180:
        return min_lat, max_lat, None, None
    return min_lat, max_lat, lng - d_lng, lng + d_lng
