# Predicts a signal's phase at any instant from its recorded cycle.

from dataclasses import dataclass

from nav_structures import Signal, SignalPhase


@dataclass(frozen=True)
class PhasePrediction:
    phase: SignalPhase
    next_phase: SignalPhase
    time_to_change: float


def cycle_position(signal: Signal, now: float) -> float:
    """Seconds elapsed since the most recent green start, in [0, total_duration)."""
    total = signal.cycle.total_duration
    elapsed = (now - signal.reference_timestamp) % total
    # Float modulo of a tiny negative value can round up to the divisor itself.
    if elapsed >= total:
        elapsed = 0.0
    return elapsed


def predict_phase(signal: Signal, now: float) -> PhasePrediction:
    """
    Computes the current phase, the next phase and the seconds until the change.

    Only the reference timestamp anchors the computation, so the result is valid
    arbitrarily long after the signal was recorded (and before it, too).
    """
    cycle = signal.cycle
    elapsed = cycle_position(signal, now)

    if elapsed < cycle.green_duration:
        return PhasePrediction(SignalPhase.GREEN, SignalPhase.YELLOW,
                               cycle.green_duration - elapsed)
    yellow_end = cycle.green_duration + cycle.yellow_duration
    if elapsed < yellow_end:
        return PhasePrediction(SignalPhase.YELLOW, SignalPhase.RED, yellow_end - elapsed)
    return PhasePrediction(SignalPhase.RED, SignalPhase.GREEN, cycle.total_duration - elapsed)
