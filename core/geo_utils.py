"""
Coordinate math for the map services.

Slippy-map tile math (Web Mercator, 256px tiles), Haversine distances and
GeoJSON construction helpers. Pure functions, no I/O.
"""

import math
from typing import Any, Dict, List, Optional

from core.models import BoundingBox, MAX_MERCATOR_LAT

EARTH_RADIUS_METERS = 6371000.0
EARTH_CIRCUMFERENCE_METERS = 40075000.0
METERS_PER_PIXEL_Z0 = 156543.03392
TILE_SIZE = 256


def tile_to_bounds(x: int, y: int, z: int) -> BoundingBox:
    """Geographic bounds of tile z/x/y."""
    n = 2 ** z
    west = x / n * 360.0 - 180.0
    east = (x + 1) / n * 360.0 - 180.0
    north = _tile_y_to_lat(y, n)
    south = _tile_y_to_lat(y + 1, n)
    return BoundingBox(north=north, south=south, east=east, west=west)


def _tile_y_to_lat(y: float, n: int) -> float:
    return math.degrees(math.atan(math.sinh(math.pi * (1 - 2 * y / n))))


def lat2tile(lat: float, zoom: int) -> int:
    """Tile row containing a latitude (clamped to the Mercator range)."""
    n = 2 ** zoom
    lat_rad = math.radians(clamp_lat(lat))
    y = (1 - math.log(math.tan(lat_rad) + 1 / math.cos(lat_rad)) / math.pi) / 2 * n
    return max(0, min(n - 1, math.floor(y)))


def lon2tile(lon: float, zoom: int) -> int:
    """Tile column containing a longitude."""
    n = 2 ** zoom
    x = (lon + 180.0) / 360.0 * n
    return max(0, min(n - 1, math.floor(x)))


def distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters (Haversine)."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = (math.sin(dphi / 2) ** 2 +
         math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2)
    # Rounding can push a just above 1 for antipodal points
    a = min(1.0, a)
    return 2 * EARTH_RADIUS_METERS * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def meters_to_pixels(meters: float, zoom: int, lat: float = 0.0) -> float:
    """Screen pixels covered by a ground distance at a zoom level and latitude."""
    meters_per_pixel = METERS_PER_PIXEL_Z0 * math.cos(math.radians(lat)) / (2 ** zoom)
    return meters / meters_per_pixel


def get_cluster_radius(zoom: int, base_radius_px: int = 50) -> float:
    """
    Ground distance in meters covered by base_radius_px screen pixels.

    Assumes 256px tiles and equatorial scale.
    """
    return EARTH_CIRCUMFERENCE_METERS / (2 ** zoom) * (base_radius_px / TILE_SIZE)


def radius_bounds(lat: float, lon: float, radius_m: float) -> Dict[str, float]:
    """
    Smallest lat/lon box containing every point within radius_m of (lat, lon).

    Returns a plain dict since the box may extend past +/-180 longitude or
    cover all longitudes when the circle reaches a pole.
    """
    angular = radius_m / EARTH_RADIUS_METERS
    lat_rad = math.radians(lat)
    south = math.degrees(lat_rad - angular)
    north = math.degrees(lat_rad + angular)

    if north >= 90.0 or south <= -90.0 or angular >= math.pi / 2:
        return {
            "north": min(north, 90.0),
            "south": max(south, -90.0),
            "east": 180.0,
            "west": -180.0,
        }

    delta_lon = math.degrees(math.asin(math.sin(angular) / math.cos(lat_rad)))
    return {
        "north": north,
        "south": south,
        "east": lon + delta_lon,
        "west": lon - delta_lon,
    }


def is_point_in_bounds(lat: float, lon: float, bounds: BoundingBox) -> bool:
    return bounds.contains(lat, lon)


def clamp_lat(lat: float) -> float:
    return max(-MAX_MERCATOR_LAT, min(MAX_MERCATOR_LAT, lat))


def normalize_lon(lon: float) -> float:
    """Wrap a longitude into (-180, 180]."""
    while lon > 180.0:
        lon -= 360.0
    while lon <= -180.0:
        lon += 360.0
    return lon


def create_point_feature(lon: float, lat: float, properties: Optional[Dict[str, Any]] = None) -> Dict:
    """GeoJSON Point feature. Coordinates are in [lon, lat] order."""
    return {
        "type": "Feature",
        "geometry": {
            "type": "Point",
            "coordinates": [lon, lat],
        },
        "properties": properties or {},
    }


def create_feature_collection(features: List[Dict], metadata: Optional[Dict] = None) -> Dict:
    collection = {
        "type": "FeatureCollection",
        "features": features,
    }
    if metadata is not None:
        collection["metadata"] = metadata
    return collection


def feature_lon_lat(feature: Dict) -> tuple:
    coords = feature["geometry"]["coordinates"]
    return float(coords[0]), float(coords[1])
