import pytest

from nav_structures import Coordinate, Route, Signal, SignalCycle


class FakeHandle:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.callback()


class FakeScheduler:
    """Collects scheduled callbacks so tests decide when they fire."""

    def __init__(self):
        self.handles = []

    def call_later(self, delay, callback):
        handle = FakeHandle(delay, callback)
        self.handles.append(handle)
        return handle


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def signal():
    return Signal(
        id="sig-1",
        name="Signal #1",
        location=Coordinate(lat=52.0, lon=4.0),
        cycle=SignalCycle.from_durations(30, 3, 27),
        reference_timestamp=1_000.0,
        created_at=900.0,
    )


@pytest.fixture
def route(signal):
    return Route(
        id="route-1",
        name="Work Commute",
        path=[Coordinate(51.99, 4.0), Coordinate(52.0, 4.0)],
        signals=[signal],
        created_at=800.0,
    )
