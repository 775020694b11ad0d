# Defines the standardized, internal data structures for the green-wave advisor.

import math
import uuid
import time
from dataclasses import dataclass, field, replace
from enum import Enum


class GreenWaveError(Exception):
    """Base class for all errors raised by the advisor."""


class InvalidCycleError(GreenWaveError, ValueError):
    """Raised when a signal cycle breaks its duration invariants."""


class RouteStoreError(GreenWaveError):
    """Raised when the route store cannot be read or written."""


class RouteNotFoundError(GreenWaveError):
    """Raised when a navigation session asks for an unknown route."""


class SignalPhase(str, Enum):
    GREEN = "GREEN"
    YELLOW = "YELLOW"
    RED = "RED"


class Action(str, Enum):
    MAINTAIN = "MAINTAIN"
    ACCELERATE = "ACCELERATE"
    DECELERATE = "DECELERATE"
    STOP = "STOP"


class RecorderState(str, Enum):
    WAITING_GREEN = "WAITING_GREEN"
    GREEN = "GREEN"
    YELLOW = "YELLOW"
    RED = "RED"


class SessionPhase(str, Enum):
    INIT_ROUTE = "INIT_ROUTE"
    DRIVING = "DRIVING"
    RECORDING_SIGNAL = "RECORDING_SIGNAL"
    SAVING = "SAVING"
    FINISHED = "FINISHED"


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class Coordinate:
    """A standardized representation of geographic coordinates."""
    lat: float
    lon: float

    def to_dict(self) -> dict:
        return {"latitude": self.lat, "longitude": self.lon}

    @classmethod
    def from_dict(cls, data: dict) -> "Coordinate":
        return cls(lat=float(data["latitude"]), lon=float(data["longitude"]))


@dataclass(frozen=True)
class PositionFix:
    """A coordinate together with the epoch time (seconds) it was measured at."""
    location: Coordinate
    timestamp: float


# Float sums of measured durations rarely match to the last bit.
TOTAL_TOLERANCE_SEC = 1e-6


@dataclass(frozen=True)
class SignalCycle:
    """Green/yellow/red durations of one full signal cycle, in seconds."""
    green_duration: float
    yellow_duration: float
    red_duration: float
    total_duration: float

    def __post_init__(self):
        for name in ("green_duration", "yellow_duration", "red_duration", "total_duration"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
                raise InvalidCycleError(f"{name} must be a positive number of seconds, got {value!r}")
        parts = self.green_duration + self.yellow_duration + self.red_duration
        if abs(parts - self.total_duration) > TOTAL_TOLERANCE_SEC:
            raise InvalidCycleError(
                f"total_duration {self.total_duration} does not match the sum of phases {parts}")

    @classmethod
    def from_durations(cls, green: float, yellow: float, red: float) -> "SignalCycle":
        return cls(green_duration=green, yellow_duration=yellow, red_duration=red,
                   total_duration=green + yellow + red)

    def to_dict(self) -> dict:
        return {
            "greenDuration": self.green_duration,
            "yellowDuration": self.yellow_duration,
            "redDuration": self.red_duration,
            "totalDuration": self.total_duration,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SignalCycle":
        return cls(green_duration=data["greenDuration"], yellow_duration=data["yellowDuration"],
                   red_duration=data["redDuration"], total_duration=data["totalDuration"])


@dataclass(frozen=True)
class Signal:
    """A recorded traffic signal, anchored to wall-clock time by one observed green start."""
    id: str
    name: str
    location: Coordinate
    cycle: SignalCycle
    reference_timestamp: float
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "location": self.location.to_dict(),
            "cycle": self.cycle.to_dict(),
            "referenceTimestamp": self.reference_timestamp,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Signal":
        return cls(
            id=data["id"],
            name=data["name"],
            location=Coordinate.from_dict(data["location"]),
            cycle=SignalCycle.from_dict(data["cycle"]),
            reference_timestamp=float(data["referenceTimestamp"]),
            created_at=float(data.get("createdAt", 0.0)),
        )


@dataclass
class Route:
    """A driven path and the signals recorded along it."""
    id: str
    name: str
    path: list[Coordinate] = field(default_factory=list)
    signals: list[Signal] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    start_location: Coordinate | None = None
    end_location: Coordinate | None = None

    def add_signal(self, signal: Signal) -> bool:
        """Appends a signal unless one with the same id is already present."""
        if any(s.id == signal.id for s in self.signals):
            return False
        self.signals.append(signal)
        return True

    def close(self) -> None:
        """Derives the start and end locations from the recorded path."""
        self.start_location = self.path[0] if self.path else None
        self.end_location = self.path[-1] if self.path else None

    def snapshot(self) -> "Route":
        """A copy whose lists can't be mutated by the recorder afterwards."""
        return replace(self, path=list(self.path), signals=list(self.signals))

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "path": [c.to_dict() for c in self.path],
            "signals": [s.to_dict() for s in self.signals],
            "createdAt": self.created_at,
        }
        if self.start_location is not None:
            data["startLocation"] = self.start_location.to_dict()
        if self.end_location is not None:
            data["endLocation"] = self.end_location.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Route":
        start = data.get("startLocation")
        end = data.get("endLocation")
        route = cls(
            id=data["id"],
            name=data.get("name", ""),
            path=[Coordinate.from_dict(c) for c in data.get("path", [])],
            created_at=float(data.get("createdAt", 0.0)),
            start_location=Coordinate.from_dict(start) if start else None,
            end_location=Coordinate.from_dict(end) if end else None,
        )
        for signal_data in data.get("signals", []):
            route.add_signal(Signal.from_dict(signal_data))
        return route


@dataclass(frozen=True)
class NavigationState:
    """A snapshot of the advisor's output, recomputed from scratch on every tick."""
    current_speed: float = 0.0
    distance_to_signal: float | None = None
    target_signal_id: str | None = None
    eta_seconds: float | None = None
    recommended_action: Action = Action.MAINTAIN
    target_speed: float | None = None
    time_to_phase_change: float = 0.0
    current_phase: SignalPhase | None = None
    next_phase: SignalPhase | None = None

    @property
    def current_speed_kmh(self) -> float:
        return self.current_speed * 3.6

    @property
    def target_speed_kmh(self) -> float | None:
        if self.target_speed is None:
            return None
        return self.target_speed * 3.6
