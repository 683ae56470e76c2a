"""Great-circle distance between two coordinates."""

from math import asin, cos, radians, sin, sqrt

EARTH_RADIUS_KM = 6371.0


def distance_km(lat_a: float, lng_a: float, lat_b: float, lng_b: float) -> float:
    """Haversine distance in kilometres, rounded to two decimal places.

    Symmetric in its two points and exactly 0.0 for identical points.
    """
    lat1, lng1, lat2, lng2 = map(radians, [float(lat_a), float(lng_a), float(lat_b), float(lng_b)])
    dlat = lat2 - lat1
    dlng = lng2 - lng1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlng / 2) ** 2
    # Rounding error can push ``a`` a hair above 1 for antipodal points.
    c = 2 * asin(sqrt(min(1.0, a)))
    return round(EARTH_RADIUS_KM * c, 2)
