import random
import pytest
from core import geo_utils
from core.clustering import ClusterService

MOSCOW_A = (55.75, 37.61)
MOSCOW_B = (55.76, 37.62)
ST_PETERSBURG = (59.93, 30.36)


def feature(pid, lat, lon, health="good", budget=100.0):
    return geo_utils.create_point_feature(lon, lat, {"id": pid, "health": health, "budget": budget})


@pytest.fixture
def service():
    return ClusterService()


def test_empty_input(service):
    assert service.cluster([], 5) == []
    assert service.grid_cluster([], 5) == []


def test_far_apart_points_stay_unclustered(service):
    """Points far beyond the radius pass through one-to-one."""
    features = [feature(i, lat, lon) for i, (lat, lon) in enumerate([
        (55.75, 37.61), (59.93, 30.36), (40.71, -74.0), (-33.87, 151.21),
    ])]
    result = service.cluster(features, zoom=8)

    assert len(result) == len(features)
    assert all(not f["properties"].get("cluster") for f in result)
    assert sorted(f["properties"]["id"] for f in result) == [0, 1, 2, 3]


def test_close_points_form_single_cluster(service):
    """N points within the radius collapse into one cluster of N."""
    features = [feature(i, 55.75 + i * 0.001, 37.61 + i * 0.001) for i in range(6)]
    result = service.cluster(features, zoom=5)

    assert len(result) == 1
    props = result[0]["properties"]
    assert props["cluster"] is True
    assert props["point_count"] == 6
    assert sorted(props["project_ids"]) == list(range(6))


def test_moscow_pair_merges_st_petersburg_separate(service):
    features = [
        feature(1, *MOSCOW_A),
        feature(2, *MOSCOW_B),
        feature(3, *ST_PETERSBURG),
    ]
    result = service.cluster(features, zoom=5)

    clusters = [f for f in result if f["properties"].get("cluster")]
    singles = [f for f in result if not f["properties"].get("cluster")]
    assert len(clusters) == 1
    assert clusters[0]["properties"]["point_count"] == 2
    assert sorted(clusters[0]["properties"]["project_ids"]) == [1, 2]
    assert [f["properties"]["id"] for f in singles] == [3]


def test_clustering_is_order_independent(service):
    """Shuffling the input never changes the grouping or output order."""
    rng = random.Random(42)
    features = [feature(i, 55 + rng.random() * 2, 37 + rng.random() * 2) for i in range(40)]
    baseline = service.cluster(features, zoom=7)

    for _ in range(5):
        shuffled = features[:]
        rng.shuffle(shuffled)
        assert service.cluster(shuffled, zoom=7) == baseline


def test_chain_linkage(service):
    """A-B and B-C within radius joins all three even if A-C is not."""
    radius = geo_utils.get_cluster_radius(10)
    step_deg = (radius * 0.9) / 111_195
    features = [feature(i, 10.0 + i * step_deg, 20.0) for i in range(3)]
    assert geo_utils.distance(10.0, 20.0, 10.0 + 2 * step_deg, 20.0) > radius

    result = service.cluster(features, zoom=10)
    assert len(result) == 1
    assert result[0]["properties"]["point_count"] == 3


def test_clustering_across_antimeridian(service):
    features = [feature(1, 0.0, 179.99), feature(2, 0.0, -179.99)]
    result = service.cluster(features, zoom=8)
    assert len(result) == 1


def test_create_cluster_aggregates(service):
    features = [
        feature(1, 10.0, 20.0, health="good", budget=100),
        feature(2, 12.0, 22.0, health="warning", budget=50),
        feature(3, 14.0, 24.0, health="unknown", budget=None),
    ]
    cluster = service.create_cluster(features)
    props = cluster["properties"]

    assert cluster["geometry"]["coordinates"] == [pytest.approx(22.0), pytest.approx(12.0)]
    assert props["point_count"] == 3
    assert props["total_budget"] == 150
    assert props["status_color"] == "yellow"
    assert props["health_summary"] == {"critical": 0, "warning": 1, "good": 1}


def test_create_cluster_worst_health_wins(service):
    features = [feature(1, 0, 0, "good"), feature(2, 0, 0, "warning"), feature(3, 0, 0, "critical")]
    assert service.create_cluster(features)["properties"]["status_color"] == "red"
    assert service.create_cluster(features[:1] * 2)["properties"]["status_color"] == "green"


def test_grid_cluster(service):
    """Cell size at zoom 2 is 360/16 = 22.5 degrees."""
    features = [
        feature(1, 1.0, 1.0),
        feature(2, 2.0, 2.0),
        feature(3, 1.0, 30.0),
    ]
    result = service.grid_cluster(features, zoom=2)
    assert len(result) == 2
    cluster = next(f for f in result if f["properties"].get("cluster"))
    assert cluster["properties"]["project_ids"] == [1, 2]


def test_build_cluster_tree(service):
    features = [feature(1, 55.75, 37.61), feature(2, 55.76, 37.62)]
    tree = service.build_cluster_tree(features, min_zoom=2, max_zoom=16)

    assert sorted(tree) == list(range(2, 17))
    assert len(tree[2]) == 1
    assert len(tree[16]) == 2


def test_expand_cluster(service):
    assert service.expand_cluster([4, 5]) == {
        "type": "cluster_expansion",
        "project_ids": [4, 5],
        "count": 2,
    }
