# Pure geometry helpers: distances, speed smoothing and nearest-signal lookup.

import math
from typing import Iterable, Sequence

from nav_structures import Coordinate, Route, Signal

EARTH_RADIUS_M = 6371e3


def distance(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance in meters between two coordinates (haversine formula)."""
    lat1 = math.radians(a.lat)
    lat2 = math.radians(b.lat)
    delta_lat = math.radians(b.lat - a.lat)
    delta_lon = math.radians(b.lon - a.lon)

    h = (math.sin(delta_lat / 2) ** 2 +
         math.cos(lat1) * math.cos(lat2) * math.sin(delta_lon / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_M * c


def smoothed_speed(samples: Sequence[float]) -> float:
    """Simple moving average of the given speed samples, 0 when there are none."""
    if not samples:
        return 0.0
    return sum(samples) / len(samples)


def nearest_signal(position: Coordinate, signals: Iterable[Signal]) -> tuple[Signal, float] | None:
    """
    Returns the closest signal and its distance.
    Heading is not considered: a signal already passed can still be the nearest one.
    """
    best = None
    min_distance = math.inf
    for signal in signals:
        d = distance(position, signal.location)
        if d < min_distance:
            min_distance = d
            best = signal
    if best is None:
        return None
    return best, min_distance


def find_nearest_route(position: Coordinate, routes: Iterable[Route], threshold_m: float = 50.0) -> Route | None:
    """Finds the route with a signal closest to the position, within the threshold."""
    best_route = None
    min_distance = math.inf
    for route in routes:
        # Only signals are checked; matching against the path polyline is not supported.
        for signal in route.signals:
            d = distance(position, signal.location)
            if d < threshold_m and d < min_distance:
                min_distance = d
                best_route = route
    return best_route
