"""
Geospatial utilities for the Disaster Map client.
Includes the LocationFix viewport type, coordinate validation and distance calculations.
"""
import math
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Optional

# Earth's mean radius in kilometres
EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class LocationFix:
    """
    A resolved geographic viewport (centre + span in degrees).

    `source` records which strategy produced the fix; it is informational
    and does not take part in equality.
    """
    latitude: float
    longitude: float
    latitude_span: float
    longitude_span: float
    source: str = field(default='unknown', compare=False)

    def to_dict(self) -> Dict[str, float]:
        return {
            'latitude': self.latitude,
            'longitude': self.longitude,
            'latitude_span': self.latitude_span,
            'longitude_span': self.longitude_span,
        }

    @classmethod
    def from_dict(cls, data, source: str = 'cache') -> Optional['LocationFix']:
        """
        Build a fix from a stored dict, returning None for malformed data.

        Accepts both the snake_case keys written by to_dict() and the
        latitudeDelta/longitudeDelta keys used by map widgets.
        """
        if not isinstance(data, dict):
            return None
        try:
            lat = float(data['latitude'])
            lon = float(data['longitude'])
            lat_span = float(data.get('latitude_span', data.get('latitudeDelta')))
            lon_span = float(data.get('longitude_span', data.get('longitudeDelta')))
        except (KeyError, TypeError, ValueError):
            return None
        if not is_valid_coordinates(lat, lon) or lat_span <= 0 or lon_span <= 0:
            return None
        return cls(lat, lon, lat_span, lon_span, source=source)


def is_valid_coordinates(latitude: float, longitude: float) -> bool:
    """
    Validate geographic coordinates, including edge cases at equator and prime meridian.

    Args:
        latitude: Latitude value (-90 to 90), where 0 is the equator
        longitude: Longitude value (-180 to 180), where 0 is the prime meridian

    Returns:
        True if coordinates are valid, False otherwise

    Examples:
        >>> is_valid_coordinates(0, 0)
        True
        >>> is_valid_coordinates(-27.4698, 153.0251)  # Brisbane
        True
        >>> is_valid_coordinates(91, 0)
        False
        >>> is_valid_coordinates(float('nan'), 0)
        False
    """
    try:
        lat = float(latitude)
        lon = float(longitude)

        if math.isnan(lat) or math.isnan(lon) or math.isinf(lat) or math.isinf(lon):
            return False

        return -90 <= lat <= 90 and -180 <= lon <= 180
    except (TypeError, ValueError):
        return False


@lru_cache(maxsize=10000)
def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great circle distance between two points using the Haversine formula.

    Memoized because hazard filtering repeatedly measures the same marker
    against an unchanged viewport centre.

    Returns:
        Distance between the two points in kilometres

    Examples:
        >>> round(haversine_distance(-27.4698, 153.0251, -33.8688, 151.2093))  # Brisbane -> Sydney
        732

    Note:
        Does NOT validate coordinates - caller is responsible for validation
    """
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = lat2_rad - lat1_rad
    dlon = math.radians(lon2 - lon1)

    a = (math.sin(dlat / 2) ** 2 +
         math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def latitude_band(latitude: float, radius_km: float):
    """
    Latitude bounds (south, north) enclosing a circle of radius_km.

    Used to narrow a document query before exact distance filtering.
    One degree of latitude is ~111.2 km everywhere.
    """
    delta = math.degrees(radius_km / EARTH_RADIUS_KM)
    return max(-90.0, latitude - delta), min(90.0, latitude + delta)
