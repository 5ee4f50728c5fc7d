"""
Geocoder - Convert project addresses to coordinates using Nominatim.

Features:
- Rate limiting (1 request/second per Nominatim policy)
- Caching to avoid repeated lookups
- Retry with exponential backoff
- Structured address components for component search
"""

import time
import sqlite3
import json
import hashlib
from typing import Optional, Tuple, Dict
from dataclasses import dataclass, asdict, field
import logging
import requests
from tenacity import retry, stop_after_attempt, wait_exponential

from core.models import Project, ProjectAddress

log = logging.getLogger(__name__)

# Nominatim address keys, in order of preference, for each component
COMPONENT_KEYS = {
    "country": ("country",),
    "region": ("state", "region", "province"),
    "city": ("city", "town", "village", "municipality"),
    "district": ("city_district", "district", "suburb"),
    "street": ("road", "pedestrian", "street"),
    "house": ("house_number",),
    "postal_code": ("postcode",),
}


@dataclass
class GeocodedLocation:
    """Result from geocoding an address."""
    address_query: str
    latitude: float
    longitude: float
    display_name: str
    place_type: str
    confidence: float = 0.0
    components: Dict[str, Optional[str]] = field(default_factory=dict)
    bounding_box: Optional[Tuple[float, float, float, float]] = None

    def to_dict(self) -> Dict:
        return asdict(self)

    def to_project_address(self, project_id: int) -> ProjectAddress:
        return ProjectAddress(
            project_id=project_id,
            raw_address=self.address_query,
            **{c: self.components.get(c) for c in ProjectAddress.COMPONENTS},
        )


class GeocodingCache:
    """SQLite cache for geocoding results."""

    def __init__(self, db_path: str = "geocode_cache.db"):
        self.db_path = db_path
        self._init_db()

    def _init_db(self):
        conn = sqlite3.connect(self.db_path)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS geocode_cache (
                query_hash TEXT PRIMARY KEY,
                query_text TEXT,
                result_json TEXT,
                created_at REAL
            )
        """)
        conn.commit()
        conn.close()

    def _hash_query(self, query: str) -> str:
        return hashlib.md5(query.lower().strip().encode()).hexdigest()

    def get(self, query: str) -> Optional[Dict]:
        conn = sqlite3.connect(self.db_path)
        row = conn.execute(
            "SELECT result_json FROM geocode_cache WHERE query_hash = ?",
            (self._hash_query(query),)
        ).fetchone()
        conn.close()
        if row:
            return json.loads(row[0])
        return None

    def set(self, query: str, result: Dict):
        conn = sqlite3.connect(self.db_path)
        conn.execute(
            """INSERT OR REPLACE INTO geocode_cache
               (query_hash, query_text, result_json, created_at)
               VALUES (?, ?, ?, ?)""",
            (self._hash_query(query), query, json.dumps(result), time.time())
        )
        conn.commit()
        conn.close()


class Geocoder:
    """
    Geocoder using OpenStreetMap Nominatim API.

    Respects rate limits: max 1 request per second.
    Uses caching to avoid redundant API calls.
    """

    NOMINATIM_URL = "https://nominatim.openstreetmap.org/search"
    NOMINATIM_REVERSE_URL = "https://nominatim.openstreetmap.org/reverse"
    USER_AGENT = "ProjectMapEngine/1.0"

    def __init__(
        self,
        cache_path: str = "geocode_cache.db",
        user_agent: Optional[str] = None,
        min_interval: float = 1.1,
        min_confidence: float = 0.3
    ):
        self.cache = GeocodingCache(cache_path)
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": user_agent or self.USER_AGENT})
        self.min_interval = min_interval
        self.min_confidence = min_confidence
        self._last_request_time = 0.0

    def _rate_limit(self):
        """Ensure we don't exceed 1 request per second."""
        elapsed = time.time() - self._last_request_time
        if elapsed < self.min_interval:
            time.sleep(self.min_interval - elapsed)
        self._last_request_time = time.time()

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=2, min=2, max=10), reraise=True)
    def _make_request(self, params: Dict, url: Optional[str] = None):
        """Make a rate-limited request with retry."""
        self._rate_limit()
        response = self.session.get(url or self.NOMINATIM_URL, params=params, timeout=10)
        response.raise_for_status()
        return response.json()

    def geocode(self, address: str) -> Optional[GeocodedLocation]:
        """
        Convert an address to coordinates.

        Args:
            address: Free-form address string, e.g. "Tverskaya 1, Moscow"

        Returns:
            GeocodedLocation with lat/lon and components, or None if not found
        """
        cached = self.cache.get(address)
        if cached:
            log.debug(f"Cache hit for: {address}")
            if cached.get("bounding_box"):
                cached["bounding_box"] = tuple(cached["bounding_box"])
            return GeocodedLocation(**cached)

        params = {
            "q": address,
            "format": "jsonv2",
            "limit": 1,
            "addressdetails": 1,
        }

        try:
            results = self._make_request(params)
        except Exception as e:
            log.error(f"Geocoding failed for '{address}': {e}")
            return None

        if not results:
            log.warning(f"No results for: {address}")
            return None

        location = self._parse_result(address, results[0])
        self.cache.set(address, location.to_dict())
        log.info(f"Geocoded: {address} -> ({location.latitude}, {location.longitude})")
        return location

    def geocode_project(self, project: Project) -> Optional[GeocodedLocation]:
        """Geocode a project's address; low-confidence matches are rejected."""
        if not project.address:
            log.warning(f"Cannot geocode project {project.id} without address")
            return None

        location = self.geocode(project.address)
        if location is None:
            return None
        if location.confidence < self.min_confidence:
            log.warning(
                f"Geocoding result for project {project.id} below confidence threshold "
                f"({location.confidence:.2f} < {self.min_confidence:.2f})"
            )
            return None
        return location

    def reverse(self, lat: float, lon: float) -> Optional[GeocodedLocation]:
        """
        Convert coordinates to the nearest address.

        Returns:
            GeocodedLocation whose address_query is "lat,lon", or None if
            nothing was found or the request failed
        """
        query = f"{lat:.6f},{lon:.6f}"
        cache_key = f"reverse:{query}"
        cached = self.cache.get(cache_key)
        if cached:
            log.debug(f"Cache hit for reverse: {query}")
            if cached.get("bounding_box"):
                cached["bounding_box"] = tuple(cached["bounding_box"])
            return GeocodedLocation(**cached)

        params = {
            "lat": lat,
            "lon": lon,
            "format": "jsonv2",
            "addressdetails": 1,
        }

        try:
            result = self._make_request(params, url=self.NOMINATIM_REVERSE_URL)
        except Exception as e:
            log.error(f"Reverse geocoding failed for ({lat}, {lon}): {e}")
            return None

        if not result or "error" in result:
            log.warning(f"No address found at ({lat}, {lon})")
            return None

        location = self._parse_result(query, result)
        self.cache.set(cache_key, location.to_dict())
        log.info(f"Reverse geocoded: ({lat}, {lon}) -> {location.display_name}")
        return location

    @staticmethod
    def _parse_result(address: str, result: Dict) -> GeocodedLocation:
        bbox = None
        if "boundingbox" in result:
            bb = result["boundingbox"]
            bbox = (float(bb[0]), float(bb[1]), float(bb[2]), float(bb[3]))

        details = result.get("address", {})
        components = {}
        for component, keys in COMPONENT_KEYS.items():
            components[component] = next((details[k] for k in keys if details.get(k)), None)

        return GeocodedLocation(
            address_query=address,
            latitude=float(result["lat"]),
            longitude=float(result["lon"]),
            display_name=result.get("display_name", ""),
            place_type=result.get("type", "unknown"),
            confidence=float(result.get("importance", 0.0)),
            components=components,
            bounding_box=bbox,
        )
