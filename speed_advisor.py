# Turns the vehicle's motion and a signal's predicted phase into speed advice.

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable

from geo_math import distance, nearest_signal, smoothed_speed
from nav_structures import (Action, NavigationState, PositionFix, Route, RouteNotFoundError,
                            SignalPhase)
from phase_predictor import PhasePrediction, predict_phase

logger = logging.getLogger(__name__)

SPEED_WINDOW = 5
STANDSTILL_SPEED_MPS = 0.5   # below this, GPS jitter is reported as 0
ARRIVAL_ZONE_M = 20.0
ETA_UNKNOWN_SEC = 999.0
TICK_INTERVAL_SEC = 0.2      # 5 Hz


class SpeedTracker:
    """The small amount of state carried between ticks: recent speeds and the last fix."""

    def __init__(self, window: int = SPEED_WINDOW):
        self.samples: deque[float] = deque(maxlen=window)
        self.last_fix: PositionFix | None = None

    def update(self, fix: PositionFix) -> float:
        """Adds the speed implied by moving from the last fix to this one."""
        speed = 0.0
        if self.last_fix is not None:
            dt = fix.timestamp - self.last_fix.timestamp
            if dt > 0:
                speed = distance(self.last_fix.location, fix.location) / dt
        self.samples.append(speed)
        self.last_fix = fix
        return speed

    @property
    def speed(self) -> float:
        """Smoothed speed in m/s."""
        value = smoothed_speed(self.samples)
        return 0.0 if value < STANDSTILL_SPEED_MPS else value

    def reset(self) -> None:
        self.samples.clear()
        self.last_fix = None


@dataclass(frozen=True)
class Advice:
    action: Action
    target_speed: float | None
    eta: float


def advise(distance_m: float, speed_mps: float, prediction: PhasePrediction) -> Advice:
    """Picks a recommendation for approaching a signal at the given distance and speed."""
    eta = distance_m / speed_mps if speed_mps > 0 else ETA_UNKNOWN_SEC

    if distance_m < ARRIVAL_ZONE_M:
        action = Action.STOP if prediction.phase == SignalPhase.RED else Action.MAINTAIN
        return Advice(action, None, eta)

    if prediction.phase == SignalPhase.GREEN:
        # Either we clear before yellow, or we won't make this green at all.
        if eta < prediction.time_to_change:
            return Advice(Action.MAINTAIN, None, eta)
        return Advice(Action.DECELERATE, None, eta)

    if prediction.phase == SignalPhase.RED:
        if eta < prediction.time_to_change:
            # Arrive exactly when it turns green.
            return Advice(Action.DECELERATE, distance_m / prediction.time_to_change, eta)
        return Advice(Action.MAINTAIN, None, eta)

    return Advice(Action.MAINTAIN, None, eta)


def compute_navigation_state(route: Route | None, tracker: SpeedTracker, now: float,
                             max_fix_age: float | None = None) -> NavigationState:
    """Recomputes the full navigation snapshot from explicit inputs."""
    speed = tracker.speed
    fix = tracker.last_fix
    if route is None or not route.signals or fix is None:
        return NavigationState(current_speed=speed)
    if max_fix_age is not None and now - fix.timestamp > max_fix_age:
        logger.debug("Last fix is %.1fs old, withholding advice", now - fix.timestamp)
        return NavigationState(current_speed=speed)

    signal, dist = nearest_signal(fix.location, route.signals)
    prediction = predict_phase(signal, now)
    advice = advise(dist, speed, prediction)
    return NavigationState(
        current_speed=speed,
        distance_to_signal=dist,
        target_signal_id=signal.id,
        eta_seconds=advice.eta,
        recommended_action=advice.action,
        target_speed=advice.target_speed,
        time_to_phase_change=prediction.time_to_change,
        current_phase=prediction.phase,
        next_phase=prediction.next_phase,
    )


class NavigationSession:
    """
    Drives the advisor for one stored route: position fixes update the tracker as
    they arrive, and a fixed-rate tick republishes a fresh NavigationState so
    countdowns keep moving between GPS updates.
    """

    def __init__(self, store, clock: Callable[[], float] = time.time,
                 max_fix_age: float | None = None,
                 tick_interval: float = TICK_INTERVAL_SEC):
        self.store = store
        self.clock = clock
        self.max_fix_age = max_fix_age
        self.tick_interval = tick_interval
        self.tracker = SpeedTracker()
        self.route: Route | None = None
        self.state = NavigationState()
        self._subscribers: list[Callable[[NavigationState], None]] = []
        self._tick_task: asyncio.Task | None = None

    def subscribe(self, listener: Callable[[NavigationState], None]) -> None:
        self._subscribers.append(listener)

    def start(self, route_id: str) -> Route:
        route = self.store.get(route_id)
        if route is None:
            raise RouteNotFoundError(f"No stored route with id '{route_id}'")
        self.route = route
        self.tracker.reset()
        logger.info("Navigating route '%s' (%d signals)", route.name, len(route.signals))
        return route

    def on_position(self, fix: PositionFix) -> None:
        self.tracker.update(fix)

    def tick(self, now: float | None = None) -> NavigationState:
        now = self.clock() if now is None else now
        self.state = compute_navigation_state(self.route, self.tracker, now, self.max_fix_age)
        for listener in self._subscribers:
            try:
                listener(self.state)
            except Exception:
                logger.exception("Navigation subscriber failed")
        return self.state

    async def run(self) -> None:
        while self.route is not None:
            self.tick()
            await asyncio.sleep(self.tick_interval)

    async def follow(self, source) -> None:
        """Feeds every fix from a position source into the tracker."""
        async for fix in source.watch():
            self.on_position(fix)

    def start_ticker(self) -> asyncio.Task:
        if self._tick_task is None or self._tick_task.done():
            self._tick_task = asyncio.get_running_loop().create_task(self.run())
        return self._tick_task

    def stop(self) -> None:
        if self._tick_task is not None:
            self._tick_task.cancel()
            self._tick_task = None
        self.route = None
