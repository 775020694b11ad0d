# Contains the adapter classes that deliver the vehicle's position to the advisor.

import asyncio
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import AsyncIterator, Callable

import requests
from dotenv import load_dotenv

from nav_structures import Coordinate, PositionFix

logger = logging.getLogger(__name__)

# --- Position Source Configuration ---
# Read from environment variables (or a .env file).
load_dotenv()
POSITION_URL = os.getenv("GREENWAVE_POSITION_URL")
POLL_INTERVAL_SEC = 1.0


def _parse_timestamp(raw, fallback: float) -> float:
    if raw is None:
        return fallback
    value = float(raw)
    # Browsers and most phone apps report epoch milliseconds.
    if value > 1e12:
        value /= 1000.0
    return value


def parse_fix(data: dict, fallback_time: float) -> PositionFix:
    """Normalizes a JSON position payload into a PositionFix. Raises KeyError/ValueError/TypeError."""
    if "latitude" in data:
        lat, lon = data["latitude"], data["longitude"]
    else:
        lat, lon = data["lat"], data["lon"]
    raw_time = data.get("timestamp", data.get("time"))
    return PositionFix(
        location=Coordinate(lat=float(lat), lon=float(lon)),
        timestamp=_parse_timestamp(raw_time, fallback_time),
    )


class PositionSource(ABC):
    """
    Abstract Base Class for all position feeds.
    Failures are never raised to the caller: a missing fix is reported as None
    (one-shot) or simply not yielded (stream).
    """
    @abstractmethod
    async def current_position(self) -> PositionFix | None:
        """Returns the current position once, or None if it is unavailable."""
        pass

    @abstractmethod
    def watch(self) -> AsyncIterator[PositionFix]:
        """Yields fixes as they become available."""
        pass


class HttpPositionSource(PositionSource):
    """Polls a JSON endpoint (a phone GPS relay, gpsd bridge, ...) for the latest fix."""

    def __init__(self, url: str | None = POSITION_URL,
                 poll_interval: float = POLL_INTERVAL_SEC,
                 max_age: float | None = None,
                 timeout: float = 5.0,
                 clock: Callable[[], float] = time.time):
        if not url:
            raise ValueError(
                "FATAL ERROR: The GREENWAVE_POSITION_URL environment variable is not set.")
        self.url = url
        self.poll_interval = poll_interval
        self.max_age = max_age
        self.timeout = timeout
        self.clock = clock

    def fetch(self) -> PositionFix | None:
        """Blocking request for the latest fix."""
        try:
            response = requests.get(self.url, timeout=self.timeout)
            response.raise_for_status()
            fix = parse_fix(response.json(), self.clock())
        except requests.exceptions.RequestException as e:
            logger.warning("Error connecting to position source %s: %s", self.url, e)
            return None
        except (KeyError, TypeError, ValueError):
            logger.warning("Error parsing position payload from %s", self.url)
            return None

        if self.max_age is not None and self.clock() - fix.timestamp > self.max_age:
            logger.debug("Ignoring fix older than %.1fs", self.max_age)
            return None
        return fix

    async def current_position(self) -> PositionFix | None:
        return await asyncio.to_thread(self.fetch)

    async def watch(self) -> AsyncIterator[PositionFix]:
        last_timestamp = None
        while True:
            fix = await self.current_position()
            # The relay keeps serving its last fix; repeating it would read as standstill.
            if fix is not None and fix.timestamp != last_timestamp:
                last_timestamp = fix.timestamp
                yield fix
            await asyncio.sleep(self.poll_interval)


class ReplayPositionSource(PositionSource):
    """
    Replays a recorded track from a JSON file: a list of
    {"latitude": ..., "longitude": ..., "timestamp": ...} objects.

    With rebase=True the track is shifted so that its first fix happens "now",
    which keeps recorded signal phases meaningful during a replay.
    """

    def __init__(self, path: str | os.PathLike, speedup: float = 1.0, rebase: bool = True,
                 clock: Callable[[], float] = time.time):
        if speedup <= 0:
            raise ValueError("speedup must be positive")
        self.path = Path(path)
        self.speedup = speedup
        self.rebase = rebase
        self.clock = clock
        self.fixes = self._load()
        self._last: PositionFix | None = None

    def _load(self) -> list[PositionFix]:
        with self.path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        fixes = [parse_fix(item, float(i)) for i, item in enumerate(data)]
        fixes.sort(key=lambda fix: fix.timestamp)
        return fixes

    async def current_position(self) -> PositionFix | None:
        if self._last is not None:
            return self._last
        if not self.fixes:
            return None
        first = self.fixes[0]
        return PositionFix(first.location, self.clock()) if self.rebase else first

    async def watch(self) -> AsyncIterator[PositionFix]:
        if not self.fixes:
            return
        origin = self.fixes[0].timestamp
        start = self.clock()
        previous = origin
        for fix in self.fixes:
            await asyncio.sleep((fix.timestamp - previous) / self.speedup)
            previous = fix.timestamp
            if self.rebase:
                fix = PositionFix(fix.location, start + (fix.timestamp - origin) / self.speedup)
            self._last = fix
            yield fix
