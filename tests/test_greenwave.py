import asyncio
import json
import time

import pytest

import greenwave
from nav_structures import Action, NavigationState, SignalPhase
from route_storage import InMemoryRouteStore, JsonFileRouteStore


def test_format_duration():
    assert greenwave.format_duration(0.2) == "0s"
    assert greenwave.format_duration(12.6) == "13s"
    assert greenwave.format_duration(65) == "1:05"
    assert greenwave.format_duration(-3) == "0s"


def test_format_state_without_signal():
    line = greenwave.format_state(NavigationState())
    assert "no signal in range" in line
    assert line.endswith("MAINTAIN")


def test_format_state_with_target_speed():
    state = NavigationState(
        current_speed=20.0, distance_to_signal=200.4, target_signal_id="sig-1", eta_seconds=10.0,
        recommended_action=Action.DECELERATE, target_speed=10.0, time_to_phase_change=20.0,
        current_phase=SignalPhase.RED, next_phase=SignalPhase.GREEN)
    line = greenwave.format_state(state)
    assert " 72 km/h" in line
    assert "200 m" in line
    assert "RED" in line and "20s" in line
    assert "DECELERATE (target 36 km/h)" in line


def test_env_float(monkeypatch):
    monkeypatch.delenv("GREENWAVE_TEST_VALUE", raising=False)
    assert greenwave.env_float("GREENWAVE_TEST_VALUE", 3.0) == 3.0
    monkeypatch.setenv("GREENWAVE_TEST_VALUE", "4.5")
    assert greenwave.env_float("GREENWAVE_TEST_VALUE", 3.0) == 4.5
    monkeypatch.setenv("GREENWAVE_TEST_VALUE", "-1")
    with pytest.raises(ValueError):
        greenwave.env_float("GREENWAVE_TEST_VALUE", 3.0)


@pytest.mark.parametrize("raw", ["nan", "inf", "-inf"])
def test_env_float_rejects_non_finite(monkeypatch, raw):
    monkeypatch.setenv("GREENWAVE_TEST_VALUE", raw)
    with pytest.raises(ValueError):
        greenwave.env_float("GREENWAVE_TEST_VALUE", 3.0)


@pytest.fixture
def store_path(tmp_path, route):
    store = JsonFileRouteStore(tmp_path / "routes.json")
    store.save(route)
    return store.path


def test_list_command(store_path, route, capsys):
    greenwave.main(["--store", str(store_path), "list"])
    out = capsys.readouterr().out
    assert route.id in out
    assert "Work Commute" in out


def test_list_command_empty(tmp_path, capsys):
    greenwave.main(["--store", str(tmp_path / "none.json"), "list"])
    assert "No routes recorded yet" in capsys.readouterr().out


def test_predict_command(store_path, route, capsys, monkeypatch):
    monkeypatch.setattr(greenwave.time, "time", lambda: 1_000.0 + 45)
    greenwave.main(["--store", str(store_path), "predict", route.id])
    out = capsys.readouterr().out
    assert "Signal #1" in out
    assert "RED" in out and "15s" in out


def test_delete_command(store_path, route, capsys):
    greenwave.main(["--store", str(store_path), "delete", route.id])
    assert "Deleted" in capsys.readouterr().out
    assert json.loads(store_path.read_text(encoding="utf-8")) == []


def test_corrupt_store_exits(tmp_path, capsys):
    path = tmp_path / "routes.json"
    path.write_text("[{]", encoding="utf-8")
    with pytest.raises(SystemExit):
        greenwave.main(["--store", str(path), "list"])
    assert "Could not read routes" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_navigate_auto_detect_without_nearby_route(tmp_path, capsys):
    track = tmp_path / "track.json"
    track.write_text(json.dumps([{"latitude": 10.0, "longitude": 10.0, "timestamp": 0}]), encoding="utf-8")
    store = JsonFileRouteStore(tmp_path / "routes.json")
    source = greenwave.ReplayPositionSource(track)
    await greenwave.navigate_route(store, source, None, None)
    assert "No recorded route found" in capsys.readouterr().out


def test_malformed_replay_track_exits(tmp_path, capsys):
    track = tmp_path / "track.json"
    track.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(SystemExit):
        greenwave.main(["--store", str(tmp_path / "routes.json"), "navigate", "--replay", str(track)])
    assert "Traceback" not in capsys.readouterr().out


def _write_track(path, count=10):
    fixes = [{"latitude": 51.995 + i * 0.0001, "longitude": 4.0, "timestamp": i}
             for i in range(count)]
    path.write_text(json.dumps(fixes), encoding="utf-8")
    return path


@pytest.mark.asyncio
async def test_record_route_from_keyboard(tmp_path, monkeypatch, capsys):
    commands = iter(["s", "p", "r", "t", "f"])

    def fake_input(prompt=""):
        # Give the yellow timer and the path sampler time to run between keys.
        time.sleep(0.05)
        try:
            return next(commands)
        except StopIteration:
            raise EOFError

    monkeypatch.setattr("builtins.input", fake_input)
    store = InMemoryRouteStore()
    source = greenwave.ReplayPositionSource(_write_track(tmp_path / "track.json"), speedup=10)

    route = await greenwave.record_route(store, source, "Evening Run", yellow_duration=0.01,
                                         path_interval=0.01)

    assert route is not None
    saved = store.get(route.id)
    assert saved.name == "Evening Run"
    assert len(saved.signals) == 1
    assert saved.signals[0].name == "Signal #1"
    assert saved.path
    out = capsys.readouterr().out
    assert "Recorded Signal #1" in out
    assert "Saved 'Evening Run' (1 signals" in out


@pytest.mark.asyncio
async def test_record_route_discards_on_closed_input(tmp_path, monkeypatch, capsys):
    def closed_input(prompt=""):
        raise EOFError

    monkeypatch.setattr("builtins.input", closed_input)
    store = InMemoryRouteStore()
    source = greenwave.ReplayPositionSource(_write_track(tmp_path / "track.json"))

    assert await greenwave.record_route(store, source, "", yellow_duration=3.0) is None
    assert store.list_routes() == []
    assert "recording discarded" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_navigate_route_prints_advice(tmp_path, route, capsys):
    store = InMemoryRouteStore()
    store.save(route)
    source = greenwave.ReplayPositionSource(_write_track(tmp_path / "track.json"), speedup=10)

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(greenwave.navigate_route(store, source, route.id, None), timeout=0.6)

    out = capsys.readouterr().out
    assert "Navigating 'Work Commute' (1 signals)" in out
    advice = [line for line in out.splitlines() if " m | " in line]
    assert advice
    assert any(phase in advice[-1] for phase in ("GREEN", "YELLOW", "RED"))
