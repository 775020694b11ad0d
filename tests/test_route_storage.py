import json

import pytest

from nav_structures import Coordinate, Route, RouteStoreError
from route_storage import InMemoryRouteStore, JsonFileRouteStore


@pytest.fixture
def store(tmp_path):
    return JsonFileRouteStore(tmp_path / "routes.json")


def test_missing_file_is_empty(store):
    assert store.list_routes() == []
    assert store.get("anything") is None


def test_save_and_get(store, route):
    route.close()
    store.save(route)
    loaded = store.get(route.id)
    assert loaded == route
    assert loaded is not route


def test_save_replaces_same_id(store, route):
    store.save(route)
    store.save(Route(id="other", name="Other"))
    route.name = "Renamed"
    route.path.append(Coordinate(52.01, 4.0))
    store.save(route)

    routes = store.list_routes()
    assert [r.id for r in routes] == [route.id, "other"]
    assert routes[0].name == "Renamed"
    assert len(routes[0].path) == 3


def test_delete(store, route):
    store.save(route)
    store.delete("unknown")
    assert len(store.list_routes()) == 1
    store.delete(route.id)
    assert store.list_routes() == []


def test_corrupt_file(tmp_path):
    path = tmp_path / "routes.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(RouteStoreError):
        JsonFileRouteStore(path).list_routes()


def test_malformed_route(tmp_path, route):
    path = tmp_path / "routes.json"
    data = [route.to_dict()]
    data[0]["signals"][0]["cycle"]["redDuration"] = -1
    path.write_text(json.dumps(data), encoding="utf-8")
    with pytest.raises(RouteStoreError):
        JsonFileRouteStore(path).get(route.id)


def test_file_uses_camel_case_layout(store, route):
    store.save(route)
    data = json.loads(store.path.read_text(encoding="utf-8"))
    assert data[0]["createdAt"] == 800.0
    assert "referenceTimestamp" in data[0]["signals"][0]


def test_in_memory_store(route):
    store = InMemoryRouteStore()
    store.save(route)
    assert store.get(route.id) is route
    assert store.list_routes() == [route]
    store.delete(route.id)
    assert store.get(route.id) is None
