"""
Runtime settings for the Project Map Engine.

Every value has an explicit meaning and a documented default. Any field can
be overridden with a MAPENGINE_<FIELD_NAME> environment variable.
"""

import os
import logging
from dataclasses import dataclass, asdict, fields
from typing import Dict, Mapping, Optional

log = logging.getLogger(__name__)

ENV_PREFIX = "MAPENGINE_"


@dataclass
class MapSettings:
    """All configurable settings for the map services."""

    # Storage
    database_path: str = "projects.db"
    """SQLite file holding the project read model."""

    cache_path: str = "map_cache.db"
    """SQLite file used by the TTL cache. ':memory:' keeps it in-process."""

    # Caching
    tile_cache_ttl: int = 900
    """Seconds a rendered tile stays cached."""

    heatmap_cache_ttl: int = 600
    """Seconds a heatmap or density map stays cached."""

    # Heatmap
    heatmap_max_points: int = 1000
    """Upper bound on emitted heat points per request (9 per project)."""

    # Clustering
    cluster_radius_px: int = 50
    """Screen radius in pixels within which tile features are merged."""

    cluster_max_zoom: int = 10
    """Tiles below this zoom are clustered."""

    cluster_min_features: int = 5
    """Tiles with this many features or fewer are never clustered."""

    # Search
    search_default_limit: int = 20
    """Default number of rows returned by search queries."""

    # Geocoding
    geocoder_min_interval: float = 1.1
    """Seconds between Nominatim requests (usage policy is 1 req/sec)."""

    geocoder_user_agent: str = "ProjectMapEngine/1.0"
    """User-Agent sent to Nominatim."""

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "MapSettings":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "MapSettings":
        """Build settings from defaults overridden by MAPENGINE_* variables."""
        environ = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            try:
                values[f.name] = f.type(raw) if f.type in (int, float) else raw
            except ValueError:
                log.warning(f"Ignoring invalid {ENV_PREFIX}{f.name.upper()}={raw!r}")
        return cls(**values)
