import pytest
from datetime import date, datetime

from core.cache import CacheStore
from core.models import Project
from core.project_store import ProjectStore

NOW = datetime(2026, 6, 15, 12, 0, 0)

MOSCOW_A = (55.75, 37.61)
MOSCOW_B = (55.76, 37.62)
ST_PETERSBURG = (59.93, 30.36)


class FakeClock:
    """Epoch-seconds clock that tests advance by hand."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_project(pid, lat, lon, budget=1_000_000.0, org=1, **kwargs):
    defaults = dict(
        name=f"Project {pid}",
        address=f"Street {pid}",
        status="active",
        start_date=date(2026, 1, 1),
        end_date=date(2026, 12, 31),
        updated_at=datetime(2026, 5, 1, 9, 0, 0),
    )
    defaults.update(kwargs)
    return Project(
        id=pid,
        organization_id=org,
        budget_amount=budget,
        latitude=lat,
        longitude=lon,
        **defaults,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(tmp_path, clock):
    store = CacheStore(str(tmp_path / "test_cache.db"), clock=clock)
    yield store
    store.close()


@pytest.fixture
def store(tmp_path):
    project_store = ProjectStore(str(tmp_path / "test_projects.db"))
    yield project_store
    project_store.close()


@pytest.fixture
def russia_store(store):
    """Two Moscow projects and one in St. Petersburg (budgets 100M, 200M, 50M)."""
    store.add_project(make_project(1, *MOSCOW_A, budget=100e6, name="Moscow Tower"))
    store.add_project(make_project(2, *MOSCOW_B, budget=200e6, name="Moscow Bridge"))
    store.add_project(make_project(3, *ST_PETERSBURG, budget=50e6, name="Neva Embankment"))
    return store
