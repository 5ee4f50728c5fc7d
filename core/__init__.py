"""
Core module for the Project Map Engine.
Contains geo math, data models, the cache and project stores, and the
tile / heatmap / clustering / search services.
"""

from core.models import (
    GeoPoint, BoundingBox, TileAddress, Project, ProjectAddress, CompletedWork,
    ProjectHealth, InvalidTileError, InvalidBoundsError,
)
from core.config import MapSettings
from core.cache import CacheStore
from core.project_store import ProjectStore
from core.evm import EVMService, EVMResult, EVMUnavailableError
from core.clustering import ClusterService
from core.heatmap import HeatmapService
from core.tiles import TileService
from core.search import SearchService
from core.engine import MapEngine

__all__ = [
    # Models
    "GeoPoint",
    "BoundingBox",
    "TileAddress",
    "Project",
    "ProjectAddress",
    "CompletedWork",
    "ProjectHealth",
    "InvalidTileError",
    "InvalidBoundsError",
    # Infrastructure
    "MapSettings",
    "CacheStore",
    "ProjectStore",
    "EVMService",
    "EVMResult",
    "EVMUnavailableError",
    # Services
    "ClusterService",
    "HeatmapService",
    "TileService",
    "SearchService",
    "MapEngine",
]
