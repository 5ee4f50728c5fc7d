"""
Heatmap Service - heat-zone generation for project maps.

Each project with a positive base intensity expands into one center point
and eight outer points (compass directions at 45 degree steps) whose
spacing shrinks as the zoom grows. Intensities are contrast-enhanced so
every emitted point stays visible.
"""

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from core.cache import CacheStore
from core.evm import resolve_metrics
from core.models import BoundingBox, Project, stable_hash
from core.project_store import ProjectStore

log = logging.getLogger(__name__)

METRICS = ("budget", "problems", "activity")

# 8 compass directions: N, NE, E, SE, S, SW, W, NW
OUTER_BEARINGS = [i * 45 for i in range(8)]
POINTS_PER_PROJECT = 1 + len(OUTER_BEARINGS)

CENTER_MULTIPLIER = 1.0
OUTER_MULTIPLIER = 0.4
CONTRAST_EXPONENT = 0.7
MIN_VISIBLE_INTENSITY = 0.1

ACTIVITY_WINDOW_DAYS = 7
ACTIVITY_SATURATION = 20
RECENT_UPDATE_BOOST = 0.2
DENSITY_GRID_SIZE = 0.1  # degrees (~11km at the equator)


def zone_radius(zoom: int) -> float:
    """Degrees between a project's center point and its outer ring."""
    if zoom < 6:
        return 0.5
    if zoom < 10:
        return 0.1
    if zoom < 13:
        return 0.05
    return 0.02


def _naive_utc(value: datetime) -> datetime:
    """Aware datetimes are converted to naive UTC; naive ones are taken as is."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def enhance_contrast(intensity: float, multiplier: float) -> float:
    """Apply the zone multiplier, gamma 0.7 and the visibility floor."""
    value = max(0.0, intensity * multiplier) ** CONTRAST_EXPONENT
    value = max(value, MIN_VISIBLE_INTENSITY)
    return max(0.0, min(1.0, value))


class HeatmapService:
    """
    Builds heatmap payloads for an organization's projects.

    Usage:
        service = HeatmapService(store, cache, evm)
        payload = service.generate(1, metric="budget", zoom=5)
    """

    CACHE_TTL = 600
    CACHE_PREFIX = "heatmap:"
    MAX_POINTS = 1000

    def __init__(
        self,
        store: ProjectStore,
        cache: CacheStore,
        evm_service,
        cache_ttl: Optional[int] = None,
        max_points: Optional[int] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.store = store
        self.cache = cache
        self.evm = evm_service
        self.cache_ttl = cache_ttl if cache_ttl is not None else self.CACHE_TTL
        self.max_points = max_points if max_points is not None else self.MAX_POINTS
        self.clock = clock

    def generate(
        self,
        organization_id: int,
        metric: str = "budget",
        bounds: Optional[BoundingBox] = None,
        zoom: int = 10,
        filters: Optional[Dict] = None
    ) -> Dict:
        """
        Generate (or fetch from cache) the heatmap for an organization.

        Args:
            organization_id: Owning organization
            metric: One of "budget", "problems", "activity"
            bounds: Optional viewport; None means every project
            zoom: Map zoom, controls the zone radius
            filters: Optional {"status", "date_from", "date_to"}

        Returns:
            {type, metric, data, stats, bounds, zoom, generated_at}
        """
        if metric not in METRICS:
            raise ValueError(f"Unknown heatmap metric '{metric}', expected one of {METRICS}")
        filters = filters or {}

        cache_key = self._cache_key(organization_id, metric, zoom, bounds, filters)
        cached = self.cache.get(cache_key)
        if cached is not None:
            log.debug(f"Heatmap cache hit: {cache_key}")
            return cached
        log.debug(f"Heatmap cache miss, generating: {cache_key}")

        projects = self.store.find_projects(
            organization_id,
            bounds=bounds,
            status=filters.get("status"),
            date_from=filters.get("date_from"),
            date_to=filters.get("date_to"),
        )

        max_value = self._max_value(projects, metric)
        points, values, degraded = self._generate_points(projects, metric, max_value, zoom)

        intensities = [p["intensity"] for p in points]
        stats = {
            "total_points": len(points),
            "total_projects": len({p["project_id"] for p in points}),
            "min_intensity": min(intensities) if intensities else 0.0,
            "max_intensity": max(intensities) if intensities else 0.0,
            "min_value": min(values) if values else 0.0,
            "max_value": max(values) if values else 0.0,
            "degraded_projects": degraded,
        }

        result = {
            "type": "heatmap",
            "metric": metric,
            "data": points,
            "stats": stats,
            "bounds": bounds.to_dict() if bounds else None,
            "zoom": zoom,
            "generated_at": self.clock().isoformat(),
        }

        self.cache.put(cache_key, result, self.cache_ttl, tags=[self._org_tag(organization_id)])
        return result

    def _generate_points(self, projects: List[Project], metric: str, max_value: float, zoom: int):
        points: List[Dict] = []
        values: List[float] = []
        degraded = 0
        radius = zone_radius(zoom)

        for index, project in enumerate(projects):
            if len(points) + POINTS_PER_PROJECT > self.max_points:
                log.warning(
                    f"Heatmap point budget {self.max_points} reached; "
                    f"dropping {len(projects) - index} remaining project(s)"
                )
                break

            intensity, value, is_degraded = self._base_intensity(project, metric, max_value)
            degraded += int(is_degraded)
            if intensity <= 0:
                continue

            values.append(value)
            points.extend(self._zone_points(project, intensity, value, radius))

        return points, values, degraded

    def _zone_points(self, project: Project, intensity: float, value: float, radius: float) -> List[Dict]:
        lat, lng = float(project.latitude), float(project.longitude)
        zone = [{
            "lat": lat,
            "lng": lng,
            "intensity": enhance_contrast(intensity, CENTER_MULTIPLIER),
            "value": value,
            "zone": "center",
            "project_id": project.id,
        }]
        outer_intensity = enhance_contrast(intensity, OUTER_MULTIPLIER)
        for bearing in OUTER_BEARINGS:
            angle = math.radians(bearing)
            zone.append({
                "lat": lat + radius * math.cos(angle),
                "lng": lng + radius * math.sin(angle),
                "intensity": outer_intensity,
                "value": value,
                "zone": "outer",
                "project_id": project.id,
            })
        return zone

    def _max_value(self, projects: List[Project], metric: str) -> float:
        if metric != "budget":
            return 1.0
        max_budget = max((p.budget_amount or 0.0 for p in projects), default=0.0)
        return max_budget if max_budget > 0 else 1.0

    def _base_intensity(self, project: Project, metric: str, max_value: float):
        """Returns (intensity, raw metric value, degraded)."""
        if metric == "budget":
            return self._budget_intensity(project, max_value) + (False,)
        if metric == "problems":
            return self._problems_intensity(project)
        return self._activity_intensity(project) + (False,)

    def _budget_intensity(self, project: Project, max_budget: float):
        """Log scale so a few huge budgets do not flatten the rest."""
        budget = max(0.0, float(project.budget_amount or 0.0))
        intensity = math.log10(budget + 1) / math.log10(max_budget + 1)
        return max(0.0, min(1.0, intensity)), budget

    def _problems_intensity(self, project: Project):
        """Low SPI/CPI means high intensity; 0 when metrics are unavailable."""
        metrics = resolve_metrics(self.evm, project)
        if metrics.degraded:
            return 0.0, 0.0, True
        problem = (max(0.0, 1 - metrics.spi) + max(0.0, 1 - metrics.cpi)) / 2
        problem = max(0.0, min(1.0, problem))
        return problem, problem, False

    def _activity_intensity(self, project: Project):
        now = self.clock()
        today = now.date()
        if not (project.start_date and project.end_date and project.start_date <= today <= project.end_date):
            return 0.0, 0.0

        recent = self.store.count_completed_works(project.id, now - timedelta(days=ACTIVITY_WINDOW_DAYS))
        intensity = min(recent / ACTIVITY_SATURATION, 1.0)
        if project.updated_at:
            age = _naive_utc(now) - _naive_utc(project.updated_at)
            if timedelta(0) <= age <= timedelta(hours=24):
                intensity += RECENT_UPDATE_BOOST
        return min(intensity, 1.0), float(recent)

    def generate_density_map(self, organization_id: int, bounds: Optional[BoundingBox] = None) -> Dict:
        """Project counts and budgets per 0.1 degree cell."""
        cache_key = f"{self.CACHE_PREFIX}density:{organization_id}:{bounds.cache_hash() if bounds else 'all'}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            log.debug(f"Density map cache hit: {cache_key}")
            return cached

        projects = self.store.find_projects(organization_id, bounds=bounds)

        grid: Dict[str, Dict] = {}
        for project in projects:
            cell_x = math.floor(project.longitude / DENSITY_GRID_SIZE)
            cell_y = math.floor(project.latitude / DENSITY_GRID_SIZE)
            key = f"{cell_x}:{cell_y}"
            cell = grid.setdefault(key, {
                "count": 0,
                "total_budget": 0.0,
                "lat": cell_y * DENSITY_GRID_SIZE + DENSITY_GRID_SIZE / 2,
                "lng": cell_x * DENSITY_GRID_SIZE + DENSITY_GRID_SIZE / 2,
            })
            cell["count"] += 1
            cell["total_budget"] += project.budget_amount or 0.0

        max_count = max((c["count"] for c in grid.values()), default=0) or 1
        points = [
            {
                "lat": cell["lat"],
                "lng": cell["lng"],
                "intensity": cell["count"] / max_count,
                "count": cell["count"],
                "total_budget": cell["total_budget"],
            }
            for cell in grid.values()
        ]

        result = {
            "type": "density_map",
            "data": points,
            "max_count": max_count,
        }
        self.cache.put(cache_key, result, self.cache_ttl, tags=[self._org_tag(organization_id)])
        return result

    def invalidate_cache(self, organization_id: int) -> int:
        """Evict every heatmap and density map cached for an organization."""
        removed = self.cache.invalidate_tags([self._org_tag(organization_id)])
        log.info(f"Heatmap cache invalidated for organization {organization_id} ({removed} entries)")
        return removed

    def _cache_key(self, organization_id: int, metric: str, zoom: int,
                   bounds: Optional[BoundingBox], filters: Dict) -> str:
        bounds_hash = bounds.cache_hash() if bounds else "all"
        return f"{self.CACHE_PREFIX}{organization_id}:{metric}:{zoom}:{bounds_hash}:{stable_hash(filters)}"

    @staticmethod
    def _org_tag(organization_id: int) -> str:
        return f"heatmap:org:{organization_id}"
