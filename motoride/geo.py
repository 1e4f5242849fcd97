from math import radians, degrees, cos, sin, asin, sqrt
from typing import List, Tuple

EARTH_RADIUS_KM = 6371.0


def haversine_km(a: Tuple[float, float], b: Tuple[float, float]) -> float:
    lat1, lon1 = a
    lat2, lon2 = b
    # convert decimal degrees to radians
    lon1, lat1, lon2, lat2 = map(radians, [lon1, lat1, lon2, lat2])
    dlon = lon2 - lon1
    dlat = lat2 - lat1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * asin(min(1.0, sqrt(a)))
    return EARTH_RADIUS_KM * c


def bounding_box(center: Tuple[float, float], radius_km: float) -> Tuple[float, float, float, float]:
    """Return (min_lat, max_lat, min_lng, max_lng) enclosing a circle around `center`.

    Used as a cheap SQL prefilter; callers still check the exact distance.
    Longitudes are not wrapped and may fall outside [-180, 180], see
    :func:`longitude_ranges`.
    """
    lat, lng = center
    angle = radius_km / EARTH_RADIUS_KM
    dlat = degrees(angle)
    min_lat, max_lat = max(-90.0, lat - dlat), min(90.0, lat + dlat)
    # a circle over a pole covers every longitude
    if min_lat <= -90.0 or max_lat >= 90.0:
        return min_lat, max_lat, -180.0, 180.0
    dlng = degrees(asin(min(1.0, sin(angle) / cos(radians(lat)))))
    if dlng >= 180:
        return min_lat, max_lat, -180.0, 180.0
    return min_lat, max_lat, lng - dlng, lng + dlng


def longitude_ranges(min_lng: float, max_lng: float) -> List[Tuple[float, float]]:
    """Split a longitude span that crosses the antimeridian into ranges inside [-180, 180]."""
    if max_lng - min_lng >= 360:
        return [(-180.0, 180.0)]
    if min_lng < -180.0:
        return [(min_lng + 360.0, 180.0), (-180.0, max_lng)]
    if max_lng > 180.0:
        return [(min_lng, 180.0), (-180.0, max_lng - 360.0)]
    return [(min_lng, max_lng)]
