import pytest
from datetime import date, datetime
from core.models import BoundingBox, CompletedWork, Project, ProjectAddress
from conftest import make_project


def test_add_and_get_project(store):
    """Verify dates and optional columns survive a round trip."""
    project = make_project(7, 55.75, 37.61, planned_value=100.0, earned_value=90.0, actual_cost=95.0)
    store.add_project(project)

    loaded = store.get_project(7)
    assert loaded == project
    assert isinstance(loaded.start_date, date)
    assert isinstance(loaded.updated_at, datetime)
    assert store.get_project(999) is None


def test_find_projects_excludes_missing_coordinates(store):
    store.add_project(make_project(1, 55.0, 37.0))
    store.add_project(Project(id=2, organization_id=1, name="No coords"))
    store.add_project(make_project(3, 55.0, 37.0, org=2))

    assert [p.id for p in store.find_projects(1)] == [1]
    assert [p.id for p in store.find_projects(2)] == [3]


def test_find_projects_bounds_and_filters(store):
    store.add_project(make_project(1, 55.75, 37.61, budget=100, status="active"))
    store.add_project(make_project(2, 55.76, 37.62, budget=300, status="paused"))
    store.add_project(make_project(3, 59.93, 30.36, budget=200, status="active"))

    moscow = BoundingBox(north=56, south=55, east=38, west=37)
    assert [p.id for p in store.find_projects(1, bounds=moscow)] == [1, 2]
    assert [p.id for p in store.find_projects(1, status="active")] == [1, 3]
    assert [p.id for p in store.find_projects(1, status=["active", "paused"])] == [1, 2, 3]
    assert [p.id for p in store.find_projects(1, budget_min=150)] == [2, 3]
    assert [p.id for p in store.find_projects(1, budget_max=200)] == [1, 3]
    assert [p.id for p in store.find_projects(1, limit=1)] == [1]


def test_find_projects_date_range(store):
    store.add_project(make_project(1, 55.0, 37.0, start_date=date(2025, 1, 1), end_date=date(2025, 6, 1)))
    store.add_project(make_project(2, 55.0, 37.0, start_date=date(2026, 1, 1), end_date=date(2026, 12, 1)))

    assert [p.id for p in store.find_projects(1, date_from=date(2025, 6, 1))] == [2]
    assert [p.id for p in store.find_projects(1, date_to=date(2025, 12, 31))] == [1]
    assert [p.id for p in store.find_projects(1, date_from="2024-01-01", date_to="2026-12-31")] == [1, 2]


def test_count_completed_works(store):
    store.add_project(make_project(1, 55.0, 37.0))
    for day in (1, 5, 10, 12):
        store.add_completed_work(CompletedWork(project_id=1, completed_at=datetime(2026, 6, day, 12)))

    assert store.count_completed_works(1, datetime(2026, 6, 8)) == 2
    assert store.count_completed_works(1, datetime(2026, 1, 1)) == 4
    assert store.count_completed_works(2, datetime(2026, 1, 1)) == 0


def test_search_text_is_case_insensitive_and_unicode(store):
    store.add_project(make_project(1, 55.0, 37.0, name="ЖК Северный", address="Москва, ул. Ленина 1"))
    store.add_project(make_project(2, 55.0, 37.0, name="Office Park", description="Glass FACADE works"))
    store.add_project(make_project(3, 55.0, 37.0, name="100% Done", address=None))

    assert [p.id for p in store.search_text(1, "северный")] == [1]
    assert [p.id for p in store.search_text(1, "ЛЕНИНА")] == [1]
    assert [p.id for p in store.search_text(1, "facade")] == [2]
    # LIKE wildcards in the query are matched literally
    assert [p.id for p in store.search_text(1, "100%")] == [3]
    assert store.search_text(1, "%") == [store.get_project(3)]


def test_search_nearby(store):
    store.add_project(make_project(1, 55.75, 37.61))
    store.add_project(make_project(2, 55.76, 37.62))
    store.add_project(make_project(3, 59.93, 30.36))

    rows = store.search_nearby(1, 55.751, 37.611, radius_km=5)
    assert [p.id for p, _ in rows] == [1, 2]
    distances = [d for _, d in rows]
    assert distances == sorted(distances)
    assert distances[0] < 1.0

    far = store.search_nearby(1, 55.75, 37.61, radius_km=700)
    assert [p.id for p, _ in far] == [1, 2, 3]


def test_search_components(store):
    store.add_project(make_project(1, 55.75, 37.61))
    store.add_project(make_project(2, 59.93, 30.36))
    store.set_address(ProjectAddress(project_id=1, city="Москва", street="Тверская", house="1"))
    store.set_address(ProjectAddress(project_id=2, city="Санкт-Петербург", street="Невский проспект"))

    rows = store.search_components(1, {"city": "москва"})
    assert [p.id for p, _ in rows] == [1]
    assert rows[0][1].street == "Тверская"

    assert [p.id for p, _ in store.search_components(1, {"street": "невский"})] == [2]
    assert store.search_components(1, {"city": "Москва", "street": "Невский"}) == []


def test_geocoding_write_back(store):
    store.add_project(Project(id=1, organization_id=1, name="Pending", address="Tverskaya 1"))
    store.add_project(Project(id=2, organization_id=1, name="No address"))

    assert [p.id for p in store.list_for_geocoding()] == [1]

    store.save_geocoding_result(1, 55.76, 37.61, ProjectAddress(project_id=1, city="Moscow"))
    project = store.get_project(1)
    assert project.latitude == 55.76
    assert project.geocoding_status == "geocoded"
    assert store.get_address(1).city == "Moscow"
    assert store.list_for_geocoding() == []
    assert [p.id for p in store.list_for_geocoding(force=True)] == [1]

    store.mark_geocoding_failed(1)
    assert [p.id for p in store.list_for_geocoding(status="failed")] == [1]


def test_list_organizations(store):
    store.add_project(make_project(1, 55.0, 37.0, org=3))
    store.add_project(make_project(2, 55.0, 37.0, org=1))
    assert store.list_organizations() == [1, 3]


def test_find_projects_date_range_accepts_datetimes(store):
    """Datetime bounds compare by calendar day, like date bounds."""
    store.add_project(make_project(1, 55.0, 37.0, start_date=date(2026, 1, 1), end_date=date(2026, 12, 31)))

    assert [p.id for p in store.find_projects(1, date_from=datetime(2026, 1, 1))] == [1]
    assert [p.id for p in store.find_projects(1, date_from=datetime(2026, 1, 1, 15, 30))] == [1]
    assert [p.id for p in store.find_projects(1, date_to=datetime(2026, 12, 31, 8))] == [1]
    assert store.find_projects(1, date_from=datetime(2026, 1, 2)) == []


def test_search_components_rejects_unknown_keys(store):
    store.add_project(make_project(1, 55.75, 37.61))
    store.set_address(ProjectAddress(project_id=1, city="Москва"))

    with pytest.raises(ValueError):
        store.search_components(1, {"town": "Kazan"})
    assert store.search_components(1, {}) == []
    assert store.search_components(1, {"city": ""}) == []


def test_geocoding_statistics(store):
    store.add_project(Project(id=1, organization_id=1, name="A", address="a"))
    store.add_project(Project(id=2, organization_id=1, name="B", address="b"))
    store.add_project(Project(id=3, organization_id=1, name="C", address="c", geocoding_status="manual"))
    store.add_project(Project(id=4, organization_id=2, name="D", address="d"))
    store.save_geocoding_result(1, 55.0, 37.0)
    store.mark_geocoding_failed(2)

    assert store.geocoding_statistics(1) == {
        "total": 3,
        "geocoded": 1,
        "pending": 0,
        "failed": 1,
        "manual": 1,
        "geocoded_percentage": 33.33,
    }
    assert store.geocoding_statistics(2)["pending"] == 1
    assert store.geocoding_statistics(9) == {
        "total": 0, "geocoded": 0, "pending": 0, "failed": 0, "manual": 0, "geocoded_percentage": 0,
    }
