"""
Search Service - text and geographic search over projects.

Stateless passthroughs to the project store; results are not cached.
"""

import logging
from typing import Dict, List, Optional

from core.models import Project
from core.project_store import ProjectStore

log = logging.getLogger(__name__)

MIN_SUGGEST_LENGTH = 2


def _project_result(project: Project) -> Dict:
    return {
        "id": project.id,
        "name": project.name,
        "address": project.address,
        "status": project.status,
        "budget": project.budget_amount,
        "latitude": project.latitude,
        "longitude": project.longitude,
    }


class SearchService:
    """Substring, nearby, address-component and autocomplete search."""

    DEFAULT_LIMIT = 20
    SUGGEST_LIMIT = 10

    def __init__(self, store: ProjectStore, default_limit: Optional[int] = None):
        self.store = store
        self.default_limit = default_limit if default_limit is not None else self.DEFAULT_LIMIT

    def search(self, organization_id: int, query: str, limit: Optional[int] = None) -> List[Dict]:
        """Case-insensitive substring match on name, address and description."""
        query = (query or "").strip()
        if not query:
            return []
        projects = self.store.search_text(organization_id, query, self._limit(limit))
        log.debug(f"Search '{query}' in organization {organization_id}: {len(projects)} result(s)")
        return [_project_result(p) for p in projects]

    def search_nearby(
        self,
        organization_id: int,
        lat: float,
        lng: float,
        radius_km: float = 10.0,
        limit: Optional[int] = None
    ) -> List[Dict]:
        """Projects within radius_km of (lat, lng), nearest first, with distance_km."""
        if radius_km <= 0:
            return []
        rows = self.store.search_nearby(organization_id, lat, lng, radius_km, self._limit(limit))
        results = []
        for project, distance_km in rows:
            item = _project_result(project)
            item["distance_km"] = round(distance_km, 3)
            results.append(item)
        return results

    def search_components(
        self,
        organization_id: int,
        filters: Dict[str, str],
        limit: Optional[int] = None
    ) -> List[Dict]:
        """
        Match structured address components.

        Args:
            filters: Any of country, region, city, district, street, house,
                     postal_code. Values match as case-insensitive substrings.

        Raises:
            ValueError: a filter key is not an address component
        """
        rows =self.store.search_components(organization_id, filters, self._limit(limit))
        results = []
        for project, address in rows:
            item = _project_result(project)
            item["address_components"] = {
                c: getattr(address, c) for c in address.COMPONENTS
            }
            results.append(item)
        return results

    def suggest(self, organization_id: int, query: str, limit: Optional[int] = None) -> List[Dict]:
        """Autocomplete on project names."""
        query = (query or "").strip()
        if len(query) < MIN_SUGGEST_LENGTH:
            return []
        rows = self.store.suggest_names(organization_id, query, self._limit(limit, self.SUGGEST_LIMIT))
        return [{"id": pid, "name": name} for pid, name in rows]

    def _limit(self, limit: Optional[int], default: Optional[int] = None) -> int:
        if limit is not None:
            return limit
        return default if default is not None else self.default_limit
