"""
Spatial clustering of GeoJSON point features.

Two algorithms produce the same output shape (plain features and synthetic
cluster features):
- cluster(): radius-based single-linkage clustering. Deterministic: the
  grouping and the output order do not depend on input order.
- grid_cluster(): O(n) bucketing into zoom-dependent degree cells, meant for
  large density overviews.
"""

import logging
import math
from collections import defaultdict
from typing import Dict, List, Tuple

from core import geo_utils
from core.models import ProjectHealth, STATUS_COLORS

log = logging.getLogger(__name__)

METERS_PER_DEGREE_LAT = geo_utils.EARTH_RADIUS_METERS * math.pi / 180.0


class _DisjointSet:
    """Union-find with path halving and union by size."""

    def __init__(self, size: int):
        self.parent = list(range(size))
        self.size = [1] * size

    def find(self, i: int) -> int:
        while self.parent[i] != i:
            self.parent[i] = self.parent[self.parent[i]]
            i = self.parent[i]
        return i

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return
        if self.size[ra] < self.size[rb]:
            ra, rb = rb, ra
        self.parent[rb] = ra
        self.size[ra] += self.size[rb]


def _canonical_key(feature: Dict) -> Tuple:
    lon, lat = geo_utils.feature_lon_lat(feature)
    return (lon, lat, str(feature.get("properties", {}).get("id", "")))


class ClusterService:
    """Groups nearby project features into cluster features."""

    def cluster(self, features: List[Dict], zoom: int, radius_pixels: int = 50) -> List[Dict]:
        """
        Radius-based clustering.

        Features closer than the ground distance of radius_pixels at this
        zoom are linked; linked components become clusters. Single features
        pass through unchanged.
        """
        if not features:
            return []

        radius_m = geo_utils.get_cluster_radius(zoom, radius_pixels)
        ordered = sorted(features, key=_canonical_key)
        coords = [geo_utils.feature_lon_lat(f) for f in ordered]

        groups = self._link_within_radius(coords, radius_m)

        result = []
        for members in groups:
            if len(members) == 1:
                result.append(ordered[members[0]])
            else:
                result.append(self.create_cluster([ordered[i] for i in members]))

        log.debug(f"Clustered {len(features)} features into {len(result)} at zoom {zoom}")
        return result

    def _link_within_radius(self, coords: List[Tuple[float, float]], radius_m: float) -> List[List[int]]:
        """Connected components of the 'within radius_m' graph, ordered by first member."""
        cell_deg = max(radius_m / METERS_PER_DEGREE_LAT, 1e-9)

        index: Dict[Tuple[int, int], List[int]] = defaultdict(list)
        for i, (lon, lat) in enumerate(coords):
            index[(math.floor(lat / cell_deg), math.floor(lon / cell_deg))].append(i)

        dsu = _DisjointSet(len(coords))
        for i, (lon, lat) in enumerate(coords):
            for j in self._candidates(index, lat, lon, radius_m, cell_deg):
                if j <= i:
                    continue
                lon_j, lat_j = coords[j]
                if geo_utils.distance(lat, lon, lat_j, lon_j) <= radius_m:
                    dsu.union(i, j)

        components: Dict[int, List[int]] = {}
        for i in range(len(coords)):
            components.setdefault(dsu.find(i), []).append(i)
        return sorted(components.values(), key=lambda members: members[0])

    @staticmethod
    def _candidates(index, lat: float, lon: float, radius_m: float, cell_deg: float):
        """Indices in grid cells that may hold points within radius_m."""
        box = geo_utils.radius_bounds(lat, lon, radius_m)
        row_lo = math.floor(box["south"] / cell_deg)
        row_hi = math.floor(box["north"] / cell_deg)

        wraps = box["west"] < -180.0 or box["east"] > 180.0 or box["east"] - box["west"] >= 360.0
        col_lo = math.floor(box["west"] / cell_deg)
        col_hi = math.floor(box["east"] / cell_deg)
        cell_count = (row_hi - row_lo + 1) * (col_hi - col_lo + 1)

        if wraps or cell_count > len(index):
            # Scan occupied cells instead of the (larger or wrapped) window
            for (row, _col), members in index.items():
                if row_lo <= row <= row_hi:
                    yield from members
            return

        for row in range(row_lo, row_hi + 1):
            for col in range(col_lo, col_hi + 1):
                yield from index.get((row, col), ())

    def grid_cluster(self, features: List[Dict], zoom: int) -> List[Dict]:
        """Bucket features into 360 / 2^(zoom+2) degree cells; multi-member cells become clusters."""
        if not features:
            return []

        grid_size = 360.0 / (2 ** (zoom + 2))
        cells: Dict[Tuple[int, int], List[Dict]] = {}
        for feature in features:
            lon, lat = geo_utils.feature_lon_lat(feature)
            key = (math.floor(lon / grid_size), math.floor(lat / grid_size))
            cells.setdefault(key, []).append(feature)

        result = []
        for cell_features in cells.values():
            if len(cell_features) == 1:
                result.append(cell_features[0])
            else:
                result.append(self.create_cluster(cell_features))
        return result

    def create_cluster(self, features: List[Dict]) -> Dict:
        """Synthetic cluster feature at the unweighted centroid of its members."""
        count = len(features)
        sum_lon = 0.0
        sum_lat = 0.0
        project_ids = []
        health_counts = {
            ProjectHealth.CRITICAL: 0,
            ProjectHealth.WARNING: 0,
            ProjectHealth.GOOD: 0,
        }
        total_budget = 0.0

        for feature in features:
            lon, lat = geo_utils.feature_lon_lat(feature)
            sum_lon += lon
            sum_lat += lat

            props = feature.get("properties", {})
            if props.get("cluster"):
                project_ids.extend(props.get("project_ids", []))
                for bucket, n in props.get("health_summary", {}).items():
                    if bucket in health_counts:
                        health_counts[bucket] += n
                total_budget += props.get("total_budget", 0) or 0
                continue

            project_ids.append(props.get("id"))
            health = props.get("health", ProjectHealth.GOOD)
            if health in health_counts:
                health_counts[health] += 1
            total_budget += props.get("budget", 0) or 0

        if health_counts[ProjectHealth.CRITICAL] > 0:
            color = STATUS_COLORS[ProjectHealth.CRITICAL]
        elif health_counts[ProjectHealth.WARNING] > 0:
            color = STATUS_COLORS[ProjectHealth.WARNING]
        else:
            color = STATUS_COLORS[ProjectHealth.GOOD]

        return geo_utils.create_point_feature(
            sum_lon / count,
            sum_lat / count,
            {
                "cluster": True,
                "point_count": len(project_ids),
                "project_ids": project_ids,
                "status_color": color,
                "total_budget": total_budget,
                "health_summary": health_counts,
            },
        )

    def build_cluster_tree(self, features: List[Dict], min_zoom: int = 0, max_zoom: int = 20) -> Dict[int, List[Dict]]:
        """Precomputed grid clusters for every zoom in [min_zoom, max_zoom]."""
        return {zoom: self.grid_cluster(features, zoom) for zoom in range(max_zoom, min_zoom - 1, -1)}

    def expand_cluster(self, project_ids: List[int]) -> Dict:
        """Id list of a clicked cluster; hydrating the projects is up to the caller."""
        return {
            "type": "cluster_expansion",
            "project_ids": list(project_ids),
            "count": len(project_ids),
        }

    def get_cluster_radius(self, zoom: int) -> float:
        return geo_utils.get_cluster_radius(zoom)
