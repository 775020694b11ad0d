# Records signal cycles from press/release gestures and builds routes while driving.

import asyncio
import logging
import time
from datetime import datetime
from typing import Callable, Protocol

from nav_structures import (Coordinate, GreenWaveError, InvalidCycleError, PositionFix,
                            RecorderState, Route, SessionPhase, Signal, SignalCycle, new_id)

logger = logging.getLogger(__name__)

DEFAULT_YELLOW_DURATION_SEC = 3.0
PATH_SAMPLE_INTERVAL_SEC = 2.0


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Anything that can run a callback later. An asyncio event loop qualifies."""
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


def _notify(listeners, value) -> None:
    """Calls every listener; a failing consumer is logged and never stops the recorder."""
    for listener in listeners:
        try:
            listener(value)
        except Exception:
            logger.exception("Recording listener failed")


class CycleRecorder:
    """
    State machine that measures one signal cycle at a time.

    WAITING_GREEN --press--> GREEN --release--> YELLOW --timer--> RED --press--> WAITING_GREEN

    The yellow phase is not measured: it lasts exactly `yellow_duration` seconds,
    after which a scheduled callback moves the machine to RED. Out-of-order
    gestures are ignored, since physical buttons bounce.
    """

    def __init__(self, yellow_duration: float = DEFAULT_YELLOW_DURATION_SEC,
                 scheduler: Scheduler | None = None,
                 clock: Callable[[], float] = time.time):
        if yellow_duration <= 0:
            raise InvalidCycleError(f"yellow_duration must be positive, got {yellow_duration!r}")
        self.yellow_duration = yellow_duration
        self.scheduler = scheduler
        self.clock = clock
        self.state = RecorderState.WAITING_GREEN
        self.green_start = 0.0
        self.green_end = 0.0
        self.red_start = 0.0
        self._timer: TimerHandle | None = None
        # Bumped on every schedule/cancel so that a late timer can tell it is stale.
        self._timer_generation = 0
        self._listeners: list[Callable[[RecorderState], None]] = []

    def on_state_change(self, listener: Callable[[RecorderState], None]) -> None:
        self._listeners.append(listener)

    def _set_state(self, state: RecorderState) -> None:
        logger.debug("Recorder %s -> %s", self.state.value, state.value)
        self.state = state
        _notify(self._listeners, state)

    def press(self, now: float | None = None, position: Coordinate | None = None) -> Signal | None:
        """
        Handles the button going down. Returns the new Signal when this press
        completes a cycle, otherwise None.
        """
        now = self.clock() if now is None else now
        if self.state == RecorderState.WAITING_GREEN:
            self.green_start = now
            self._set_state(RecorderState.GREEN)
            return None
        if self.state == RecorderState.RED:
            return self._complete_cycle(now, position)
        logger.debug("Ignoring press in state %s", self.state.value)
        return None

    def release(self, now: float | None = None) -> None:
        """Handles the button going up: the light has turned yellow."""
        now = self.clock() if now is None else now
        if self.state != RecorderState.GREEN:
            logger.debug("Ignoring release in state %s", self.state.value)
            return
        self.green_end = now
        self._set_state(RecorderState.YELLOW)
        self._schedule_yellow_timer()

    def tap(self, now: float | None = None, position: Coordinate | None = None) -> Signal | None:
        """A press immediately followed by a release."""
        now = self.clock() if now is None else now
        signal = self.press(now, position)
        self.release(now)
        return signal

    def yellow_elapsed(self, now: float | None = None, generation: int | None = None) -> None:
        """Moves YELLOW to RED. Called by the scheduled timer, or directly when no scheduler is used."""
        if generation is not None and generation != self._timer_generation:
            logger.debug("Dropping stale yellow timer (generation %d)", generation)
            return
        if self.state != RecorderState.YELLOW:
            return
        self._timer = None
        self.red_start = self.clock() if now is None else now
        self._set_state(RecorderState.RED)

    def cancel(self) -> None:
        """Cancels any pending yellow timer and forgets the cycle being measured."""
        self._cancel_timer()
        if self.state != RecorderState.WAITING_GREEN:
            self._set_state(RecorderState.WAITING_GREEN)

    @property
    def timer_pending(self) -> bool:
        return self._timer is not None

    def _schedule_yellow_timer(self) -> None:
        self._cancel_timer()
        if self.scheduler is None:
            return
        generation = self._timer_generation
        self._timer = self.scheduler.call_later(
            self.yellow_duration, lambda: self.yellow_elapsed(generation=generation))

    def _cancel_timer(self) -> None:
        self._timer_generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _complete_cycle(self, now: float, position: Coordinate | None) -> Signal | None:
        red_duration = now - self.red_start
        green_duration = self.green_end - self.green_start
        self._set_state(RecorderState.WAITING_GREEN)

        if position is None:
            logger.warning("Discarding recorded cycle: no position known for the signal.")
            return None
        try:
            cycle = SignalCycle.from_durations(green_duration, self.yellow_duration, red_duration)
        except InvalidCycleError as e:
            logger.warning("Discarding recorded cycle: %s", e)
            return None

        logger.info("Cycle recorded: green %.1fs, yellow %.1fs, red %.1fs",
                    cycle.green_duration, cycle.yellow_duration, cycle.red_duration)
        return Signal(
            id=new_id(),
            name="",
            location=position,
            cycle=cycle,
            reference_timestamp=self.green_start,
        )


class RecordingSession:
    """
    Builds one Route while driving: samples the path, forwards gestures to the
    CycleRecorder while a signal is being recorded, and saves the Route on finish.
    """

    def __init__(self, store, yellow_duration: float = DEFAULT_YELLOW_DURATION_SEC,
                 scheduler: Scheduler | None = None,
                 clock: Callable[[], float] = time.time,
                 path_interval: float = PATH_SAMPLE_INTERVAL_SEC):
        self.store = store
        self.clock = clock
        self.path_interval = path_interval
        self.recorder = CycleRecorder(yellow_duration, scheduler, clock)
        self.phase = SessionPhase.INIT_ROUTE
        self.route = Route(id=new_id(), name="", created_at=clock())
        self.last_position: Coordinate | None = None
        self._preview_listeners: list[Callable[[Route], None]] = []
        self._signal_listeners: list[Callable[[Signal], None]] = []
        self._sampler_task: asyncio.Task | None = None

    def on_preview(self, listener: Callable[[Route], None]) -> None:
        self._preview_listeners.append(listener)

    def on_signal(self, listener: Callable[[Signal], None]) -> None:
        self._signal_listeners.append(listener)

    @property
    def is_tracking(self) -> bool:
        return self.phase in (SessionPhase.DRIVING, SessionPhase.RECORDING_SIGNAL)

    def start(self, name: str = "") -> None:
        if self.phase != SessionPhase.INIT_ROUTE:
            raise GreenWaveError(f"Recording session already {self.phase.value.lower()}")
        if not name.strip():
            name = f"Route {datetime.fromtimestamp(self.clock()).strftime('%H:%M:%S')}"
        self.route.name = name
        self.phase = SessionPhase.DRIVING
        logger.info("Recording route '%s'", name)

    def mark_signal(self) -> None:
        """The driver is stopped at a signal and wants to time it."""
        if self.phase == SessionPhase.DRIVING:
            self.phase = SessionPhase.RECORDING_SIGNAL

    def update_position(self, fix: PositionFix) -> None:
        self.last_position = fix.location

    # --- Gestures (only meaningful while recording a signal) ---

    def press(self, now: float | None = None) -> Signal | None:
        if self.phase != SessionPhase.RECORDING_SIGNAL:
            return None
        return self._accept(self.recorder.press(now, self.last_position))

    def release(self, now: float | None = None) -> None:
        if self.phase == SessionPhase.RECORDING_SIGNAL:
            self.recorder.release(now)

    def tap(self, now: float | None = None) -> Signal | None:
        if self.phase != SessionPhase.RECORDING_SIGNAL:
            return None
        return self._accept(self.recorder.tap(now, self.last_position))

    def _accept(self, signal: Signal | None) -> Signal | None:
        if signal is None:
            return None
        signal = Signal(
            id=signal.id,
            name=f"Signal #{len(self.route.signals) + 1}",
            location=signal.location,
            cycle=signal.cycle,
            reference_timestamp=signal.reference_timestamp,
            created_at=self.clock(),
        )
        self.route.add_signal(signal)
        self.phase = SessionPhase.DRIVING
        _notify(self._signal_listeners, signal)
        return signal

    # --- Path sampling ---

    def sample_path(self) -> bool:
        """Appends the last known position to the path and republishes the route."""
        if not self.is_tracking or self.last_position is None:
            return False
        self.route.path.append(self.last_position)
        preview = self.route.snapshot()
        _notify(self._preview_listeners, preview)
        return True

    async def run_sampler(self) -> None:
        while self.is_tracking:
            await asyncio.sleep(self.path_interval)
            self.sample_path()

    def start_sampler(self) -> asyncio.Task:
        """Runs the path sampler on the current event loop until the session ends."""
        if self._sampler_task is None or self._sampler_task.done():
            self._sampler_task = asyncio.get_running_loop().create_task(self.run_sampler())
        return self._sampler_task

    def _stop(self) -> None:
        if self._sampler_task is not None:
            self._sampler_task.cancel()
            self._sampler_task = None
        self.recorder.cancel()

    # --- Completion ---

    def finish(self) -> Route:
        """Closes the route and hands it to the store."""
        if not self.is_tracking:
            raise GreenWaveError("No recording in progress")
        self._stop()
        self.phase = SessionPhase.SAVING
        self.route.close()
        if not self.route.path:
            logger.warning("Route '%s' has no path points; start and end locations are unset.",
                           self.route.name)
        self.store.save(self.route)
        self.phase = SessionPhase.FINISHED
        logger.info("Saved route '%s' with %d signals and %d path points",
                    self.route.name, len(self.route.signals), len(self.route.path))
        return self.route

    def abort(self) -> None:
        """Ends the session without saving anything."""
        self._stop()
        self.phase = SessionPhase.FINISHED
