"""
Core data models for the Project Map Engine.

Geographic primitives (points, tile addresses, bounding boxes) and the
read-only project records that the map services derive from.
"""

import hashlib
import json
from dataclasses import dataclass, asdict
from datetime import date, datetime
from typing import Dict, Optional


MAX_MERCATOR_LAT = 85.0511


class InvalidTileError(ValueError):
    """Raised for tile addresses outside the 2^z x 2^z grid."""


class InvalidBoundsError(ValueError):
    """Raised for degenerate or antimeridian-crossing bounding boxes."""


@dataclass(frozen=True)
class GeoPoint:
    """WGS84 coordinate in decimal degrees."""
    latitude: float
    longitude: float


@dataclass(frozen=True)
class BoundingBox:
    """
    Geographic bounding box in decimal degrees (WGS84).

    Boxes that wrap around the antimeridian (west > east) are not supported
    and are rejected on construction.
    """
    north: float
    south: float
    east: float
    west: float

    def __post_init__(self):
        if not self.north > self.south:
            raise InvalidBoundsError(
                f"north ({self.north}) must be greater than south ({self.south})"
            )
        if not self.east > self.west:
            raise InvalidBoundsError(
                f"east ({self.east}) must be greater than west ({self.west}); "
                "boxes crossing the antimeridian are not supported"
            )

    @property
    def center(self) -> GeoPoint:
        return GeoPoint(
            latitude=(self.north + self.south) / 2,
            longitude=(self.east + self.west) / 2,
        )

    def contains(self, lat: float, lon: float) -> bool:
        """Check if a point is inside this bounding box (edges inclusive)."""
        return (self.south <= lat <= self.north and
                self.west <= lon <= self.east)

    def cache_hash(self) -> str:
        return stable_hash(self.to_dict())

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "BoundingBox":
        return cls(
            north=float(data["north"]),
            south=float(data["south"]),
            east=float(data["east"]),
            west=float(data["west"]),
        )


@dataclass(frozen=True)
class TileAddress:
    """Slippy-map tile address. Only used as a cache and query key."""
    z: int
    x: int
    y: int

    def __post_init__(self):
        if self.z < 0:
            raise InvalidTileError(f"zoom must be >= 0, got {self.z}")
        n = 2 ** self.z
        if not (0 <= self.x < n and 0 <= self.y < n):
            raise InvalidTileError(
                f"tile {self.z}/{self.x}/{self.y} is outside the {n}x{n} grid"
            )

    def bounds(self) -> BoundingBox:
        from core.geo_utils import tile_to_bounds
        return tile_to_bounds(self.x, self.y, self.z)

    def to_dict(self) -> Dict:
        return asdict(self)

    def __str__(self) -> str:
        return f"{self.z}/{self.x}/{self.y}"


class ProjectHealth:
    """Schedule/cost health buckets reported by the EVM provider."""
    GOOD = "good"
    WARNING = "warning"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


STATUS_COLORS = {
    ProjectHealth.CRITICAL: "red",
    ProjectHealth.WARNING: "yellow",
    ProjectHealth.GOOD: "green",
}


def status_color(health: Optional[str]) -> str:
    """Map a health bucket to a marker color (gray when unknown)."""
    return STATUS_COLORS.get(health, "gray")


@dataclass
class Project:
    """
    Read model of a construction project.

    Owned by the ERP persistence layer; the map services never write to it
    except through geocoding write-back.
    """
    id: int
    organization_id: int
    name: str
    address: Optional[str] = None
    description: Optional[str] = None
    status: str = "active"
    budget_amount: float = 0.0
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    updated_at: Optional[datetime] = None

    # Earned-value snapshot (optional)
    planned_value: Optional[float] = None
    earned_value: Optional[float] = None
    actual_cost: Optional[float] = None

    geocoding_status: str = "pending"

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> Dict:
        data = asdict(self)
        for key in ("start_date", "end_date", "updated_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass
class ProjectAddress:
    """Structured address components for a project."""
    project_id: int
    raw_address: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    district: Optional[str] = None
    street: Optional[str] = None
    house: Optional[str] = None
    postal_code: Optional[str] = None

    COMPONENTS = ("country", "region", "city", "district", "street", "house", "postal_code")

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class CompletedWork:
    """A completed unit of work on a project; only the completion time matters here."""
    project_id: int
    completed_at: datetime
    description: str = ""


def stable_hash(value) -> str:
    """md5 of the canonical JSON form of a value ('all' for None/empty)."""
    if not value:
        return "all"
    payload = json.dumps(value, sort_keys=True, default=str)
    return hashlib.md5(payload.encode()).hexdigest()
