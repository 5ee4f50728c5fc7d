"""
Project Store - SQLite read model of construction projects.

Stands in for the ERP persistence layer: the map services only read from it
(bounded, filtered, text, radius and address-component queries). The single
write path is geocoding write-back.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Tuple, Union

from core.geo_utils import distance, radius_bounds
from core.models import BoundingBox, CompletedWork, Project, ProjectAddress

log = logging.getLogger(__name__)

StatusFilter = Union[str, Iterable[str], None]

PROJECT_COLUMNS = (
    "id", "organization_id", "name", "address", "description", "status",
    "budget_amount", "latitude", "longitude", "start_date", "end_date",
    "updated_at", "planned_value", "earned_value", "actual_cost",
    "geocoding_status",
)


def _haversine_km(lat1, lon1, lat2, lon2):
    if None in (lat1, lon1, lat2, lon2):
        return None
    return distance(lat1, lon1, lat2, lon2) / 1000.0


def _unicode_lower(value):
    return value.lower() if isinstance(value, str) else value


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _to_date(value) -> Optional[date]:
    # datetime is a date subclass; drop the time so ISO text compares by day
    if isinstance(value, datetime):
        return value.date()
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value[:10])


def _to_datetime(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


class ProjectStore:
    """
    SQLite-backed project repository.

    Features:
    - Bounding-box and attribute filtered queries (null coordinates excluded)
    - Case-insensitive substring search (Unicode-aware)
    - Radius search using a registered Haversine SQL function
    - Address-component search joined against project_addresses

    Usage:
        store = ProjectStore(":memory:")
        store.add_project(Project(id=1, organization_id=1, name="Tower A", ...))
        store.find_projects(1, bounds=BoundingBox(...))
    """

    DEFAULT_DB_PATH = "projects.db"

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or self.DEFAULT_DB_PATH
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, timeout=5.0, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.create_function("haversine_km", 4, _haversine_km, deterministic=True)
        self._conn.create_function("ulower", 1, _unicode_lower, deterministic=True)
        self._init_db()

    @contextmanager
    def _transaction(self):
        try:
            yield self._conn
            self._conn.commit()
        except sqlite3.Error as e:
            self._conn.rollback()
            log.error(f"Project store transaction failed: {e}")
            raise

    def _init_db(self) -> None:
        with self._lock, self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS projects (
                    id INTEGER PRIMARY KEY,
                    organization_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    address TEXT,
                    description TEXT,
                    status TEXT DEFAULT 'active',
                    budget_amount REAL DEFAULT 0,
                    latitude REAL,
                    longitude REAL,
                    start_date TEXT,
                    end_date TEXT,
                    updated_at TEXT,
                    planned_value REAL,
                    earned_value REAL,
                    actual_cost REAL,
                    geocoding_status TEXT DEFAULT 'pending'
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_projects_org_coords
                ON projects(organization_id, latitude, longitude)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS project_addresses (
                    project_id INTEGER PRIMARY KEY REFERENCES projects(id),
                    raw_address TEXT,
                    country TEXT,
                    region TEXT,
                    city TEXT,
                    district TEXT,
                    street TEXT,
                    house TEXT,
                    postal_code TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS completed_works (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    project_id INTEGER NOT NULL REFERENCES projects(id),
                    completed_at TEXT NOT NULL,
                    description TEXT DEFAULT ''
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_completed_works_project
                ON completed_works(project_id, completed_at)
            """)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def add_project(self, project: Project) -> Project:
        """Insert or replace a project record."""
        values = (
            project.id, project.organization_id, project.name, project.address,
            project.description, project.status, project.budget_amount,
            project.latitude, project.longitude, _iso(project.start_date),
            _iso(project.end_date), _iso(project.updated_at), project.planned_value,
            project.earned_value, project.actual_cost, project.geocoding_status,
        )
        placeholders = ",".join("?" for _ in PROJECT_COLUMNS)
        with self._lock, self._transaction() as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO projects ({','.join(PROJECT_COLUMNS)}) VALUES ({placeholders})",
                values
            )
        return project

    def add_completed_work(self, work: CompletedWork) -> None:
        with self._lock, self._transaction() as conn:
            conn.execute(
                "INSERT INTO completed_works (project_id, completed_at, description) VALUES (?, ?, ?)",
                (work.project_id, work.completed_at.isoformat(), work.description)
            )

    def set_address(self, address: ProjectAddress) -> None:
        with self._lock, self._transaction() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO project_addresses
                   (project_id, raw_address, country, region, city, district,
                    street, house, postal_code)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (address.project_id, address.raw_address, address.country,
                 address.region, address.city, address.district, address.street,
                 address.house, address.postal_code)
            )

    def save_geocoding_result(
        self,
        project_id: int,
        latitude: float,
        longitude: float,
        address: Optional[ProjectAddress] = None
    ) -> None:
        """Write geocoded coordinates (and address components) back to a project."""
        with self._lock, self._transaction() as conn:
            conn.execute(
                """UPDATE projects
                   SET latitude = ?, longitude = ?, geocoding_status = 'geocoded', updated_at = ?
                   WHERE id = ?""",
                (latitude, longitude, datetime.now().isoformat(), project_id)
            )
        if address is not None:
            self.set_address(address)
        log.info(f"Saved coordinates for project {project_id}: ({latitude}, {longitude})")

    def mark_geocoding_failed(self, project_id: int) -> None:
        with self._lock, self._transaction() as conn:
            conn.execute(
                "UPDATE projects SET geocoding_status = 'failed' WHERE id = ?",
                (project_id,)
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_project(self, project_id: int) -> Optional[Project]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM projects WHERE id = ?", (project_id,)
            ).fetchone()
        return self._row_to_project(row) if row else None

    def get_projects(self, project_ids: Iterable[int]) -> List[Project]:
        ids = list(project_ids)
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT * FROM projects WHERE id IN ({placeholders}) ORDER BY id", ids
            ).fetchall()
        return [self._row_to_project(r) for r in rows]

    def get_address(self, project_id: int) -> Optional[ProjectAddress]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM project_addresses WHERE project_id = ?", (project_id,)
            ).fetchone()
        return ProjectAddress(**dict(row)) if row else None

    def list_organizations(self) -> List[int]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT DISTINCT organization_id FROM projects ORDER BY organization_id"
            ).fetchall()
        return [r[0] for r in rows]

    def geocoding_statistics(self, organization_id: int) -> Dict:
        """Project counts per geocoding status for an organization."""
        with self._lock:
            rows = self._conn.execute(
                """SELECT geocoding_status, COUNT(*) AS n FROM projects
                   WHERE organization_id = ? GROUP BY geocoding_status""",
                (organization_id,)
            ).fetchall()
        counts = {r["geocoding_status"]: r["n"] for r in rows}
        total = sum(counts.values())
        geocoded = counts.get("geocoded", 0)
        return {
            "total": total,
            "geocoded": geocoded,
            "pending": counts.get("pending", 0),
            "failed": counts.get("failed", 0),
            "manual": counts.get("manual", 0),
            "geocoded_percentage": round(geocoded / total * 100, 2) if total else 0,
        }

    def find_projects(
        self,
        organization_id: int,
        bounds: Optional[BoundingBox] = None,
        status: StatusFilter = None,
        budget_min: Optional[float] = None,
        budget_max: Optional[float] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: Optional[int] = None,
    ) -> List[Project]:
        """
        Projects of an organization that have coordinates.

        Args:
            organization_id: Owning organization
            bounds: Only projects inside this box (edges inclusive)
            status: A status or list of statuses
            budget_min / budget_max: Inclusive budget range
            date_from: start_date on or after this date
            date_to: end_date on or before this date
            limit: Maximum rows

        Returns:
            Projects ordered by id
        """
        sql = ["SELECT * FROM projects WHERE organization_id = ?",
               "AND latitude IS NOT NULL AND longitude IS NOT NULL"]
        params: list = [organization_id]

        if bounds is not None:
            sql.append("AND latitude BETWEEN ? AND ? AND longitude BETWEEN ? AND ?")
            params.extend([bounds.south, bounds.north, bounds.west, bounds.east])

        statuses = self._status_list(status)
        if statuses:
            sql.append(f"AND status IN ({','.join('?' for _ in statuses)})")
            params.extend(statuses)

        if budget_min is not None:
            sql.append("AND budget_amount >= ?")
            params.append(float(budget_min))
        if budget_max is not None:
            sql.append("AND budget_amount <= ?")
            params.append(float(budget_max))
        if date_from is not None:
            sql.append("AND start_date >= ?")
            params.append(_iso(_to_date(date_from)))
        if date_to is not None:
            sql.append("AND end_date <= ?")
            params.append(_iso(_to_date(date_to)))

        sql.append("ORDER BY id")
        if limit is not None:
            sql.append("LIMIT ?")
            params.append(int(limit))

        with self._lock:
            rows = self._conn.execute(" ".join(sql), params).fetchall()
        return [self._row_to_project(r) for r in rows]

    def count_completed_works(self, project_id: int, since: datetime) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM completed_works WHERE project_id = ? AND completed_at >= ?",
                (project_id, since.isoformat())
            ).fetchone()
        return row[0]

    def search_text(self, organization_id: int, query: str, limit: int = 20) -> List[Project]:
        """Case-insensitive substring match on name, address or description."""
        pattern = f"%{_escape_like(query.lower())}%"
        with self._lock:
            rows = self._conn.execute(
                r"""SELECT * FROM projects
                   WHERE organization_id = ?
                     AND (ulower(name) LIKE ? ESCAPE '\'
                          OR ulower(address) LIKE ? ESCAPE '\'
                          OR ulower(description) LIKE ? ESCAPE '\')
                   ORDER BY name, id
                   LIMIT ?""",
                (organization_id, pattern, pattern, pattern, limit)
            ).fetchall()
        return [self._row_to_project(r) for r in rows]

    def suggest_names(self, organization_id: int, query: str, limit: int = 10) -> List[Tuple[int, str]]:
        pattern = f"%{_escape_like(query.lower())}%"
        with self._lock:
            rows = self._conn.execute(
                r"""SELECT id, name FROM projects
                   WHERE organization_id = ? AND ulower(name) LIKE ? ESCAPE '\'
                   ORDER BY name, id
                   LIMIT ?""",
                (organization_id, pattern, limit)
            ).fetchall()
        return [(r["id"], r["name"]) for r in rows]

    def search_nearby(
        self,
        organization_id: int,
        lat: float,
        lng: float,
        radius_km: float,
        limit: int = 20
    ) -> List[Tuple[Project, float]]:
        """Projects strictly within radius_km of a point, nearest first."""
        box = radius_bounds(lat, lng, radius_km * 1000.0)
        sql = """
            SELECT * FROM (
                SELECT *, haversine_km(?, ?, latitude, longitude) AS distance
                FROM projects
                WHERE organization_id = ?
                  AND latitude IS NOT NULL AND longitude IS NOT NULL
                  AND latitude BETWEEN ? AND ?
                  {lon_clause}
            )
            WHERE distance < ?
            ORDER BY distance, id
            LIMIT ?
        """
        params: list = [lat, lng, organization_id, box["south"], box["north"]]
        if box["west"] >= -180.0 and box["east"] <= 180.0:
            sql = sql.format(lon_clause="AND longitude BETWEEN ? AND ?")
            params.extend([box["west"], box["east"]])
        else:
            sql = sql.format(lon_clause="")
        params.extend([radius_km, limit])

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [(self._row_to_project(r), r["distance"]) for r in rows]

    def search_components(
        self,
        organization_id: int,
        filters: Dict[str, str],
        limit: int = 20
    ) -> List[Tuple[Project, ProjectAddress]]:
        """
        Projects whose address components contain every given value.

        Raises:
            ValueError: a filter key is not an address component
        """
        unknown = set(filters) - set(ProjectAddress.COMPONENTS)
        if unknown:
            raise ValueError(
                f"Unknown address component(s) {sorted(unknown)}, expected {ProjectAddress.COMPONENTS}"
            )
        if not any(filters.values()):
            return []

        sql = ["""SELECT p.*, a.raw_address AS a_raw_address, a.country AS a_country,
                         a.region AS a_region, a.city AS a_city, a.district AS a_district,
                         a.street AS a_street, a.house AS a_house,
                         a.postal_code AS a_postal_code
                  FROM projects p
                  JOIN project_addresses a ON a.project_id = p.id
                  WHERE p.organization_id = ?"""]
        params: list = [organization_id]
        for component in ProjectAddress.COMPONENTS:
            value = filters.get(component)
            if not value:
                continue
            sql.append(f"AND ulower(a.{component}) LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(str(value).lower())}%")
        sql.append("ORDER BY p.name, p.id LIMIT ?")
        params.append(limit)

        with self._lock:
            rows = self._conn.execute(" ".join(sql), params).fetchall()

        results = []
        for row in rows:
            address = ProjectAddress(
                project_id=row["id"],
                raw_address=row["a_raw_address"],
                **{c: row[f"a_{c}"] for c in ProjectAddress.COMPONENTS},
            )
            results.append((self._row_to_project(row), address))
        return results

    def list_for_geocoding(
        self,
        organization_id: Optional[int] = None,
        project_id: Optional[int] = None,
        status: str = "pending",
        force: bool = False,
        limit: Optional[int] = None
    ) -> List[Project]:
        """Projects with an address that still need geocoding."""
        sql = ["SELECT * FROM projects WHERE address IS NOT NULL AND address != ''"]
        params: list = []
        if organization_id is not None:
            sql.append("AND organization_id = ?")
            params.append(organization_id)
        if project_id is not None:
            sql.append("AND id = ?")
            params.append(project_id)
        if not force:
            if status == "pending":
                sql.append("AND (geocoding_status = 'pending' OR geocoding_status IS NULL"
                           " OR (latitude IS NULL AND longitude IS NULL))")
            elif status != "all":
                sql.append("AND geocoding_status = ?")
                params.append(status)
        sql.append("ORDER BY id")
        if limit is not None:
            sql.append("LIMIT ?")
            params.append(int(limit))

        with self._lock:
            rows = self._conn.execute(" ".join(sql), params).fetchall()
        return [self._row_to_project(r) for r in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @staticmethod
    def _status_list(status: StatusFilter) -> List[str]:
        if status is None:
            return []
        if isinstance(status, str):
            return [status]
        return [s for s in status]

    @staticmethod
    def _row_to_project(row: sqlite3.Row) -> Project:
        return Project(
            id=row["id"],
            organization_id=row["organization_id"],
            name=row["name"],
            address=row["address"],
            description=row["description"],
            status=row["status"],
            budget_amount=row["budget_amount"] or 0.0,
            latitude=row["latitude"],
            longitude=row["longitude"],
            start_date=_to_date(row["start_date"]),
            end_date=_to_date(row["end_date"]),
            updated_at=_to_datetime(row["updated_at"]),
            planned_value=row["planned_value"],
            earned_value=row["earned_value"],
            actual_cost=row["actual_cost"],
            geocoding_status=row["geocoding_status"],
        )
