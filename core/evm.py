"""
Earned Value Management (EVM) metrics for projects.

SPI = earned value / planned value, CPI = earned value / actual cost.
The map services treat this provider as a downstream dependency that may
fail; resolve_metrics() turns a failure into neutral values flagged as
degraded so callers can tell real data from fallback data.
"""

import logging
import threading
from dataclasses import dataclass, asdict
from typing import Dict, Optional

from core.models import Project, ProjectHealth

log = logging.getLogger(__name__)

GOOD_THRESHOLD = 0.95
WARNING_THRESHOLD = 0.85


class EVMUnavailableError(RuntimeError):
    """Raised when metrics cannot be computed for a project."""


@dataclass(frozen=True)
class EVMResult:
    """Performance indices for one project."""
    spi: float
    cpi: float
    health: str
    degraded: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)


NEUTRAL_METRICS = EVMResult(spi=1.0, cpi=1.0, health=ProjectHealth.UNKNOWN, degraded=True)


def classify_health(spi: float, cpi: float) -> str:
    worst = min(spi, cpi)
    if worst >= GOOD_THRESHOLD:
        return ProjectHealth.GOOD
    if worst >= WARNING_THRESHOLD:
        return ProjectHealth.WARNING
    return ProjectHealth.CRITICAL


class EVMService:
    """Computes SPI/CPI/health from a project's earned-value snapshot, memoised per project."""

    def __init__(self):
        self._cache: Dict[int, EVMResult] = {}
        self._lock = threading.Lock()

    def calculate_metrics(self, project: Project) -> EVMResult:
        """
        Raises:
            EVMUnavailableError: the project has no usable earned-value snapshot
        """
        with self._lock:
            cached = self._cache.get(project.id)
        if cached is not None:
            return cached

        pv, ev, ac = project.planned_value, project.earned_value, project.actual_cost
        if ev is None or not pv or not ac:
            raise EVMUnavailableError(f"project {project.id} has no earned-value snapshot")

        spi = ev / pv
        cpi = ev / ac
        result = EVMResult(spi=round(spi, 4), cpi=round(cpi, 4), health=classify_health(spi, cpi))
        with self._lock:
            self._cache[project.id] = result
        return result

    def invalidate_cache(self, project_id: int) -> None:
        with self._lock:
            self._cache.pop(project_id, None)
        log.debug(f"EVM cache cleared for project {project_id}")


def resolve_metrics(provider, project: Project) -> EVMResult:
    """
    Metrics for a project, or NEUTRAL_METRICS (degraded) if the provider fails.

    Rendering never fails because of an analytics error; the failure is logged
    and surfaced through the degraded flag.
    """
    try:
        result = provider.calculate_metrics(project)
    except Exception as e:
        log.warning(f"EVM metrics unavailable for project {project.id}: {e}")
        return EVMResult(
            spi=NEUTRAL_METRICS.spi,
            cpi=NEUTRAL_METRICS.cpi,
            health=NEUTRAL_METRICS.health,
            degraded=True,
            error=str(e),
        )
    if isinstance(result, dict):
        result = EVMResult(
            spi=float(result["spi"]),
            cpi=float(result["cpi"]),
            health=result.get("health", ProjectHealth.UNKNOWN),
        )
    return result
