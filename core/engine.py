"""
Map Engine - wires the stores and services together.

Single entry point used by the dashboard and the CLI tools; mirrors the
produced interface: tile, heatmap, density map, search, nearby search,
component search and suggest.
"""

import logging
from typing import Dict, List, Optional

from core.cache import CacheStore
from core.clustering import ClusterService
from core.config import MapSettings
from core.evm import EVMService
from core.heatmap import HeatmapService
from core.models import BoundingBox
from core.project_store import ProjectStore
from core.search import SearchService
from core.tiles import TileService

log = logging.getLogger(__name__)


class MapEngine:
    """Facade over the map services, built from MapSettings."""

    def __init__(
        self,
        settings: Optional[MapSettings] = None,
        store: Optional[ProjectStore] = None,
        cache: Optional[CacheStore] = None,
        evm_service=None
    ):
        self.settings = settings or MapSettings()
        self.store = store or ProjectStore(self.settings.database_path)
        self.cache = cache or CacheStore(self.settings.cache_path)
        self.evm = evm_service or EVMService()

        self.clusters = ClusterService()
        self.tiles = TileService(
            self.store, self.cache, self.evm, self.clusters,
            cache_ttl=self.settings.tile_cache_ttl,
            cluster_radius_px=self.settings.cluster_radius_px,
            cluster_max_zoom=self.settings.cluster_max_zoom,
            cluster_min_features=self.settings.cluster_min_features,
        )
        self.heatmaps = HeatmapService(
            self.store, self.cache, self.evm,
            cache_ttl=self.settings.heatmap_cache_ttl,
            max_points=self.settings.heatmap_max_points,
        )
        self.search_service = SearchService(self.store, self.settings.search_default_limit)
        log.info(f"MapEngine ready (db={self.store.db_path}, cache={self.cache.db_path})")

    def tile(self, organization_id: int, z: int, x: int, y: int,
             layer: str = "projects", filters: Optional[Dict] = None) -> Dict:
        return self.tiles.get_tile(organization_id, z, x, y, layer=layer, filters=filters)

    def heatmap(self, organization_id: int, metric: str = "budget", bounds: Optional[Dict] = None,
                zoom: int = 10, filters: Optional[Dict] = None) -> Dict:
        box = BoundingBox.from_dict(bounds) if bounds else None
        return self.heatmaps.generate(organization_id, metric, box, zoom, filters)

    def density_map(self, organization_id: int, bounds: Optional[Dict] = None) -> Dict:
        box = BoundingBox.from_dict(bounds) if bounds else None
        return self.heatmaps.generate_density_map(organization_id, box)

    def search(self, organization_id: int, query: str, limit: Optional[int] = None) -> List[Dict]:
        return self.search_service.search(organization_id, query, limit)

    def search_nearby(self, organization_id: int, lat: float, lng: float,
                      radius_km: float = 10.0, limit: Optional[int] = None) -> List[Dict]:
        return self.search_service.search_nearby(organization_id, lat, lng, radius_km, limit)

    def search_components(self, organization_id: int, filters: Dict[str, str],
                          limit: Optional[int] = None) -> List[Dict]:
        return self.search_service.search_components(organization_id, filters, limit)

    def suggest(self, organization_id: int, query: str, limit: Optional[int] = None) -> List[Dict]:
        return self.search_service.suggest(organization_id, query, limit)

    def project_changed(self, project_id: int, organization_id: Optional[int] = None) -> None:
        """
        Evict cached tiles and heatmaps affected by a project write.

        Pass organization_id for a project that has already been deleted;
        otherwise the organization is looked up in the store and, when the
        project is gone, only its tiles are evicted.
        """
        if organization_id is None:
            project = self.store.get_project(project_id)
            organization_id = project.organization_id if project is not None else None
        self.tiles.invalidate_tiles_for_project(project_id)
        if organization_id is not None:
            self.heatmaps.invalidate_cache(organization_id)
        else:
            log.warning(f"Project {project_id} not found; heatmap caches left to expire")


def get_map_engine(settings: Optional[MapSettings] = None) -> MapEngine:
    """Factory function for the map engine (settings from the environment by default)."""
    return MapEngine(settings or MapSettings.from_env())
