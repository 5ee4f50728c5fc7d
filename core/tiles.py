"""
Tile Service - GeoJSON tiles of projects with zoom-adaptive clustering.

A tile request z/x/y is turned into geographic bounds, the projects inside
are enriched with EVM health and colored, clustered at low zoom, and the
resulting FeatureCollection is cached per organization, tile, layer and
filter set.
"""

import logging
from typing import Dict, List, Optional

from core import geo_utils
from core.cache import CacheStore
from core.clustering import ClusterService
from core.evm import resolve_metrics
from core.models import Project, TileAddress, stable_hash, status_color
from core.project_store import ProjectStore

log = logging.getLogger(__name__)

MAX_TILE_ZOOM = 20


class TileService:
    """
    Renders project tiles.

    Usage:
        service = TileService(store, cache, evm, ClusterService())
        collection = service.get_tile(1, z=5, x=19, y=10)
    """

    CACHE_TTL = 900
    CACHE_PREFIX = "tile:"
    CLUSTER_MAX_ZOOM = 10
    CLUSTER_MIN_FEATURES = 5

    def __init__(
        self,
        store: ProjectStore,
        cache: CacheStore,
        evm_service,
        cluster_service: Optional[ClusterService] = None,
        cache_ttl: Optional[int] = None,
        cluster_radius_px: int = 50,
        cluster_max_zoom: Optional[int] = None,
        cluster_min_features: Optional[int] = None
    ):
        self.store = store
        self.cache = cache
        self.evm = evm_service
        self.clusters = cluster_service or ClusterService()
        self.cache_ttl = cache_ttl if cache_ttl is not None else self.CACHE_TTL
        self.cluster_radius_px = cluster_radius_px
        self.cluster_max_zoom = self.CLUSTER_MAX_ZOOM if cluster_max_zoom is None else cluster_max_zoom
        self.cluster_min_features = (
            self.CLUSTER_MIN_FEATURES if cluster_min_features is None else cluster_min_features
        )

    def get_tile(
        self,
        organization_id: int,
        z: int,
        x: int,
        y: int,
        layer: str = "projects",
        filters: Optional[Dict] = None
    ) -> Dict:
        """
        GeoJSON FeatureCollection for one tile.

        Args:
            organization_id: Owning organization
            z, x, y: Tile address
            layer: Layer name (part of the cache key)
            filters: Optional {"status", "budget_min", "budget_max", "health"}

        Raises:
            InvalidTileError: x or y outside the 2^z grid, or z < 0
        """
        tile = TileAddress(z=z, x=x, y=y)
        filters = filters or {}

        cache_key = f"{self.CACHE_PREFIX}{organization_id}:{tile}:{layer}:{stable_hash(filters)}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            log.debug(f"Tile cache hit: {cache_key}")
            return cached

        bounds = tile.bounds()
        projects = self.store.find_projects(
            organization_id,
            bounds=bounds,
            status=filters.get("status"),
            budget_min=filters.get("budget_min"),
            budget_max=filters.get("budget_max"),
        )

        features = [self.project_to_feature(p) for p in projects]

        health_filter = filters.get("health")
        if health_filter:
            wanted = {health_filter} if isinstance(health_filter, str) else set(health_filter)
            features = [f for f in features if f["properties"]["health"] in wanted]

        degraded_count = sum(1 for f in features if f["properties"]["degraded"])
        project_ids = [f["properties"]["id"] for f in features]
        feature_count = len(features)

        if z < self.cluster_max_zoom and feature_count > self.cluster_min_features:
            features = self.clusters.cluster(features, z, self.cluster_radius_px)

        collection = geo_utils.create_feature_collection(features, metadata={
            "tile": tile.to_dict(),
            "layer": layer,
            "bounds": bounds.to_dict(),
            "feature_count": feature_count,
            "degraded_count": degraded_count,
        })

        tags = [self._org_tag(organization_id), self._tile_tag(organization_id, tile)]
        tags.extend(self._project_tag(pid) for pid in project_ids)
        self.cache.put(cache_key, collection, self.cache_ttl, tags=tags)
        log.debug(f"Rendered tile {tile} for organization {organization_id}: {feature_count} features")
        return collection

    def project_to_feature(self, project: Project) -> Dict:
        """Point feature with EVM health; neutral values and degraded=True if EVM fails."""
        metrics = resolve_metrics(self.evm, project)
        return geo_utils.create_point_feature(
            float(project.longitude),
            float(project.latitude),
            {
                "id": project.id,
                "name": project.name,
                "address": project.address,
                "status": project.status,
                "budget": project.budget_amount,
                "spi": metrics.spi,
                "cpi": metrics.cpi,
                "health": metrics.health,
                "status_color": status_color(metrics.health),
                "degraded": metrics.degraded,
            },
        )

    def invalidate_tiles_cache(self, organization_id: int) -> int:
        """Evict every cached tile of an organization."""
        removed = self.cache.invalidate_tags([self._org_tag(organization_id)])
        log.info(f"Tile cache invalidated for organization {organization_id} ({removed} entries)")
        return removed

    def invalidate_tiles_for_project(self, project_id: int) -> int:
        """
        Evict tiles that showed the project and tiles covering its current location.

        Also clears the project's EVM metrics so re-rendered tiles see fresh values.
        """
        tags = [self._project_tag(project_id)]
        project = self.store.get_project(project_id)
        if project is not None and project.has_coordinates:
            lat = geo_utils.clamp_lat(project.latitude)
            lon = geo_utils.normalize_lon(project.longitude)
            for zoom in range(MAX_TILE_ZOOM + 1):
                tile = TileAddress(
                    z=zoom,
                    x=geo_utils.lon2tile(lon, zoom),
                    y=geo_utils.lat2tile(lat, zoom),
                )
                tags.append(self._tile_tag(project.organization_id, tile))

        removed = self.cache.invalidate_tags(tags)
        self.evm.invalidate_cache(project_id)
        log.info(f"Tile cache invalidated for project {project_id} ({removed} entries)")
        return removed

    @staticmethod
    def _org_tag(organization_id: int) -> str:
        return f"tiles:org:{organization_id}"

    @staticmethod
    def _tile_tag(organization_id: int, tile: TileAddress) -> str:
        return f"tiles:org:{organization_id}:{tile}"

    @staticmethod
    def _project_tag(project_id: int) -> str:
        return f"tiles:project:{project_id}"

    def tiles_for_bounds(self, bounds, zoom: int) -> List[TileAddress]:
        """Tile addresses covering a bounding box at a zoom level."""
        x_min = geo_utils.lon2tile(bounds.west, zoom)
        x_max = geo_utils.lon2tile(bounds.east, zoom)
        y_min = geo_utils.lat2tile(bounds.north, zoom)
        y_max = geo_utils.lat2tile(bounds.south, zoom)
        return [
            TileAddress(z=zoom, x=x, y=y)
            for x in range(x_min, x_max + 1)
            for y in range(y_min, y_max + 1)
        ]
