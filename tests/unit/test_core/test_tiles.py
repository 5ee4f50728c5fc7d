import pytest
from unittest.mock import MagicMock, patch

from core import geo_utils
from core.models import BoundingBox, InvalidTileError
from core.tiles import TileService
from conftest import MOSCOW_A, MOSCOW_B, make_project

MOSCOW_TILE = (5, 19, 10)


@pytest.fixture
def evm():
    provider = MagicMock()
    provider.calculate_metrics.return_value = {"spi": 1.0, "cpi": 0.98, "health": "good"}
    return provider


@pytest.fixture
def tiles(store, cache, evm):
    return TileService(store, cache, evm)


def tile_at(lat, lon, zoom):
    return zoom, geo_utils.lon2tile(lon, zoom), geo_utils.lat2tile(lat, zoom)


def add_moscow_cluster(store, count):
    for pid in range(1, count + 1):
        store.add_project(make_project(pid, 55.75 + pid * 0.001, 37.61 + pid * 0.001))


def test_moscow_tile_scenario(russia_store, tiles):
    """The zoom 5 tile over Moscow holds both Moscow projects but not St. Petersburg."""
    collection = tiles.get_tile(1, *MOSCOW_TILE)

    assert collection["type"] == "FeatureCollection"
    ids = sorted(f["properties"]["id"] for f in collection["features"])
    assert ids == [1, 2]

    metadata = collection["metadata"]
    assert metadata["tile"] == {"z": 5, "x": 19, "y": 10}
    assert metadata["layer"] == "projects"
    assert metadata["feature_count"] == 2
    assert metadata["degraded_count"] == 0

    bounds = metadata["bounds"]
    for lat, lon in (MOSCOW_A, MOSCOW_B):
        assert bounds["south"] <= lat <= bounds["north"]
        assert bounds["west"] <= lon <= bounds["east"]


def test_feature_properties(russia_store, tiles):
    collection = tiles.get_tile(1, *MOSCOW_TILE)
    feature = next(f for f in collection["features"] if f["properties"]["id"] == 1)

    assert feature["geometry"] == {"type": "Point", "coordinates": [37.61, 55.75]}
    props = feature["properties"]
    assert props["name"] == "Moscow Tower"
    assert props["budget"] == 100e6
    assert props["spi"] == 1.0
    assert props["cpi"] == 0.98
    assert props["health"] == "good"
    assert props["status_color"] == "green"
    assert props["degraded"] is False


@pytest.mark.parametrize("z,x,y", [(5, 32, 0), (5, 0, 32), (0, 1, 0), (3, -1, 0), (-1, 0, 0)])
def test_invalid_tile_address(tiles, z, x, y):
    with pytest.raises(InvalidTileError):
        tiles.get_tile(1, z, x, y)


def test_empty_tile(store, tiles):
    collection = tiles.get_tile(1, 5, 0, 0)
    assert collection["features"] == []
    assert collection["metadata"]["feature_count"] == 0


def test_low_zoom_clusters_dense_tiles(store, tiles):
    add_moscow_cluster(store, 6)
    collection = tiles.get_tile(1, *MOSCOW_TILE)

    assert len(collection["features"]) == 1
    props = collection["features"][0]["properties"]
    assert props["cluster"] is True
    assert props["point_count"] == 6
    assert collection["metadata"]["feature_count"] == 6


def test_five_features_are_not_clustered(store, tiles):
    add_moscow_cluster(store, 5)
    collection = tiles.get_tile(1, *MOSCOW_TILE)
    assert len(collection["features"]) == 5


def test_high_zoom_never_clusters(store, tiles):
    add_moscow_cluster(store, 6)
    collection = tiles.get_tile(1, *tile_at(55.753, 37.613, 10))

    assert all(not f["properties"].get("cluster") for f in collection["features"])
    assert len(collection["features"]) == collection["metadata"]["feature_count"]
    assert len(collection["features"]) > 0


def test_evm_failure_degrades_features(russia_store, tiles, evm):
    evm.calculate_metrics.side_effect = RuntimeError("EVM offline")
    collection = tiles.get_tile(1, *MOSCOW_TILE)

    assert collection["metadata"]["degraded_count"] == 2
    for feature in collection["features"]:
        props = feature["properties"]
        assert props["degraded"] is True
        assert props["spi"] == 1.0
        assert props["cpi"] == 1.0
        assert props["status_color"] == "gray"


def test_filters(russia_store, tiles, evm):
    health = {1: "critical", 2: "good", 3: "good"}
    evm.calculate_metrics.side_effect = lambda p: {"spi": 0.5, "cpi": 0.5, "health": health[p.id]}

    critical = tiles.get_tile(1, *MOSCOW_TILE, filters={"health": "critical"})
    assert [f["properties"]["id"] for f in critical["features"]] == [1]
    assert critical["features"][0]["properties"]["status_color"] == "red"

    rich = tiles.get_tile(1, *MOSCOW_TILE, filters={"budget_min": 150e6})
    assert [f["properties"]["id"] for f in rich["features"]] == [2]

    paused = tiles.get_tile(1, *MOSCOW_TILE, filters={"status": "paused"})
    assert paused["features"] == []


def test_cache_hit_skips_query(russia_store, tiles):
    """Repeated requests with equivalent filters are served from the cache."""
    with patch.object(russia_store, "find_projects", wraps=russia_store.find_projects) as spy:
        first = tiles.get_tile(1, *MOSCOW_TILE, filters={"status": "active", "budget_min": 1})
        second = tiles.get_tile(1, *MOSCOW_TILE, filters={"budget_min": 1, "status": "active"})

        assert spy.call_count == 1
        assert second == first

        tiles.get_tile(1, *MOSCOW_TILE, layer="other", filters={"status": "active", "budget_min": 1})
        assert spy.call_count == 2


def test_cache_expires_after_ttl(russia_store, tiles, clock):
    with patch.object(russia_store, "find_projects", wraps=russia_store.find_projects) as spy:
        tiles.get_tile(1, *MOSCOW_TILE)
        clock.advance(TileService.CACHE_TTL - 1)
        tiles.get_tile(1, *MOSCOW_TILE)
        assert spy.call_count == 1

        clock.advance(1)
        tiles.get_tile(1, *MOSCOW_TILE)
        assert spy.call_count == 2


def test_invalidate_tiles_cache(russia_store, tiles):
    tiles.get_tile(1, *MOSCOW_TILE)
    tiles.get_tile(1, 0, 0, 0)
    assert tiles.invalidate_tiles_cache(1) == 2
    assert tiles.invalidate_tiles_cache(2) == 0


def test_invalidate_tiles_for_moved_project(russia_store, tiles, evm):
    """A project moved into a cached empty tile shows up after invalidation."""
    spb_tile = tile_at(59.93, 30.36, 12)
    moscow_tile = tile_at(*MOSCOW_A, 12)
    assert [f["properties"]["id"] for f in tiles.get_tile(1, *spb_tile)["features"]] == [3]
    empty_tile = tile_at(59.5, 31.5, 12)
    assert tiles.get_tile(1, *empty_tile)["features"] == []
    tiles.get_tile(1, *moscow_tile)

    russia_store.add_project(make_project(3, 59.5, 31.5, budget=50e6))
    removed = tiles.invalidate_tiles_for_project(3)

    assert removed == 2
    evm.invalidate_cache.assert_called_once_with(3)
    assert [f["properties"]["id"] for f in tiles.get_tile(1, *empty_tile)["features"]] == [3]
    assert tiles.get_tile(1, *spb_tile)["features"] == []


def test_tiles_for_bounds(tiles):
    bounds = BoundingBox(north=60.0, south=55.0, east=38.0, west=30.0)
    addresses = tiles.tiles_for_bounds(bounds, 5)

    assert {str(t) for t in addresses} == {"5/18/9", "5/19/9", "5/18/10", "5/19/10"}
    assert len(tiles.tiles_for_bounds(bounds, 0)) == 1
