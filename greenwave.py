# Main script to record traffic signal cycles and get green-wave speed advice.

import argparse
import asyncio
import logging
import math
import os
import sys
import threading
import time
from datetime import datetime

from dotenv import load_dotenv

from cycle_recorder import DEFAULT_YELLOW_DURATION_SEC, PATH_SAMPLE_INTERVAL_SEC, RecordingSession
from geo_math import find_nearest_route
from nav_structures import GreenWaveError, NavigationState, RecorderState, Route, SessionPhase
from phase_predictor import predict_phase
from position_adapters import POLL_INTERVAL_SEC, HttpPositionSource, PositionSource, ReplayPositionSource
from route_storage import DEFAULT_STORE_PATH, JsonFileRouteStore, RouteStore
from speed_advisor import NavigationSession

AUTO_DETECT_RADIUS_M = 100.0

RECORD_HELP = """Commands:
  s  record a signal here     p  press (light turned green)
  r  release (light turned yellow)
  t  tap (light turned green, completes a cycle)
  f  finish and save route    q  quit without saving"""


def env_float(name: str, default: float | None) -> float | None:
    """Reads an optional positive number from the environment."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    value = float(raw)
    if not math.isfinite(value) or value <= 0:
        raise ValueError(f"{name} must be positive, got {raw}")
    return value


def format_duration(seconds: float) -> str:
    """Converts seconds into a readable countdown like '1:05' or '12s'."""
    seconds = max(0, int(round(seconds)))
    if seconds < 60:
        return f"{seconds}s"
    return f"{seconds // 60}:{seconds % 60:02d}"


def format_state(state: NavigationState) -> str:
    """One status line for the terminal, the way the dashboard used to show it."""
    speed = f"{round(state.current_speed_kmh):>3} km/h"
    if state.current_phase is None:
        return f"{speed} | no signal in range | {state.recommended_action.value}"
    line = (f"{speed} | {round(state.distance_to_signal):>5} m | "
            f"{state.current_phase.value:<6} {format_duration(state.time_to_phase_change):>5} "
            f"-> {state.next_phase.value:<6} | {state.recommended_action.value}")
    if state.target_speed_kmh is not None:
        line += f" (target {round(state.target_speed_kmh)} km/h)"
    return line


def make_source(args) -> PositionSource:
    if args.replay:
        return ReplayPositionSource(args.replay, speedup=args.speedup)
    return HttpPositionSource(poll_interval=args.poll_interval, max_age=args.max_fix_age)


# --- Commands ---

def list_routes(store: RouteStore):
    """Prints the stored routes as a table."""
    routes = store.list_routes()
    if not routes:
        print("No routes recorded yet. Use 'greenwave record' to create one.")
        return

    header = "| Route ID                             | Name                 | Signals | Points | Created          |"
    divider = "-" * len(header)
    print(header)
    print(divider)
    for r in routes:
        created = datetime.fromtimestamp(r.created_at).strftime('%Y-%m-%d %H:%M')
        print(f"| {r.id:<36} | {r.name[:20]:<20} | {len(r.signals):>7} | {len(r.path):>6} | {created:<16} |")
    print(divider)


def delete_route(store: RouteStore, route_id: str):
    if store.get(route_id) is None:
        print(f"No route with id '{route_id}'.")
        return
    store.delete(route_id)
    print(f"Deleted route {route_id}.")


def predict_route(store: RouteStore, route_id: str, now: float):
    """Prints the phase of every signal on a route at the given time."""
    route = store.get(route_id)
    if route is None:
        print(f"No route with id '{route_id}'.")
        return
    if not route.signals:
        print(f"Route '{route.name}' has no recorded signals.")
        return

    print(f"\nSignals on '{route.name}' at {datetime.fromtimestamp(now).strftime('%I:%M:%S %p')}\n")
    for signal in route.signals:
        p = predict_phase(signal, now)
        c = signal.cycle
        print(f"  {signal.name:<12} {p.phase.value:<6} for {format_duration(p.time_to_change):>5}, "
              f"then {p.next_phase.value:<6} (cycle {c.green_duration:.0f}/{c.yellow_duration:.0f}/"
              f"{c.red_duration:.0f}s)")


async def read_command(prompt: str) -> str:
    """
    Reads one line from the keyboard without blocking the event loop.

    The read runs on a daemon thread rather than the default executor, so that
    Ctrl+C can end the program while the prompt is still waiting for Enter.
    Raises EOFError when input is closed.
    """
    loop = asyncio.get_running_loop()
    future = loop.create_future()

    def deliver(line, error):
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(line)

    def reader():
        try:
            line, error = input(prompt), None
        except EOFError as e:
            line, error = None, e
        try:
            loop.call_soon_threadsafe(deliver, line, error)
        except RuntimeError:
            # The loop already closed while we were waiting for input.
            pass

    threading.Thread(target=reader, name="greenwave-input", daemon=True).start()
    return await future


async def _feed_positions(source: PositionSource, handler):
    async for fix in source.watch():
        handler(fix)


async def record_route(store: RouteStore, source: PositionSource, name: str, yellow_duration: float,
                       path_interval: float = PATH_SAMPLE_INTERVAL_SEC) -> Route | None:
    """Interactive recording session driven by keyboard commands."""
    loop = asyncio.get_running_loop()
    session = RecordingSession(store, yellow_duration=yellow_duration, scheduler=loop,
                               path_interval=path_interval)
    session.recorder.on_state_change(lambda s: print(f"   > Signal: {s.value}"))
    session.on_signal(lambda s: print(
        f"   > Recorded {s.name}: green {s.cycle.green_duration:.1f}s, "
        f"yellow {s.cycle.yellow_duration:.1f}s, red {s.cycle.red_duration:.1f}s"))

    first = await source.current_position()
    if first is None:
        print("   ! No position yet; path sampling starts with the first fix.")
    else:
        session.update_position(first)

    session.start(name)
    print(f"\nRecording '{session.route.name}'.\n{RECORD_HELP}\n")
    feeder = loop.create_task(_feed_positions(source, session.update_position))
    session.start_sampler()

    try:
        while True:
            command = (await read_command("> ")).strip().lower()
            if command == "s":
                session.mark_signal()
                print("   > Hold 'p' when the light turns green, 'r' when it turns yellow, 't' on the next green.")
            elif command == "p":
                session.press()
            elif command == "r":
                session.release()
            elif command == "t":
                session.tap()
            elif command == "f":
                route = session.finish()
                print(f"\nSaved '{route.name}' ({len(route.signals)} signals, {len(route.path)} points).")
                print(f"Route ID: {route.id}")
                return route
            elif command == "q":
                session.abort()
                print("Recording discarded.")
                return None
            else:
                print(RECORD_HELP)
            if session.phase == SessionPhase.RECORDING_SIGNAL and session.recorder.state == RecorderState.YELLOW:
                print(f"   > Yellow for {yellow_duration:.0f}s, tap 't' when it turns green again.")
    except EOFError:
        session.abort()
        print("\nInput closed, recording discarded.")
        return None
    finally:
        feeder.cancel()


async def navigate_route(store: RouteStore, source: PositionSource, route_id: str | None, max_fix_age: float | None):
    """Runs the advisor until interrupted, printing the advice whenever it changes."""
    if route_id is None:
        position = await source.current_position()
        route = find_nearest_route(position.location, store.list_routes(), AUTO_DETECT_RADIUS_M) if position else None
        if route is None:
            print("No recorded route found near your position.")
            return
        print(f"Auto-detected route: {route.name}")
        route_id = route.id

    session = NavigationSession(store, max_fix_age=max_fix_age)
    route = session.start(route_id)
    print(f"\nNavigating '{route.name}' ({len(route.signals)} signals). Press Ctrl+C to stop.\n")

    last_line = None

    def show(state: NavigationState):
        nonlocal last_line
        line = format_state(state)
        if line != last_line:
            print(line)
            last_line = line

    session.subscribe(show)
    feeder = asyncio.get_running_loop().create_task(session.follow(source))
    try:
        await session.run()
    finally:
        feeder.cancel()
        session.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Green-Wave Advisor: time traffic signals and arrive on green.")
    parser.add_argument('-v', '--verbose', action='store_true',
                        help="Enable verbose mode to see what the engine is doing.")
    parser.add_argument('--store', default=DEFAULT_STORE_PATH,
                        help=f"Route store file (default: {DEFAULT_STORE_PATH}).")
    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('list', help="List recorded routes.")

    p_delete = sub.add_parser('delete', help="Delete a recorded route.")
    p_delete.add_argument('route_id')

    p_predict = sub.add_parser('predict', help="Show the current phase of every signal on a route.")
    p_predict.add_argument('route_id')

    for name, help_text in (('record', "Record a route and its signal cycles."),
                            ('navigate', "Get speed advice along a recorded route.")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument('--replay', help="Replay positions from a JSON track instead of the live source.")
        p.add_argument('--speedup', type=float, default=1.0, help="Replay speed factor.")
        if name == 'record':
            p.add_argument('--name', default="", help="Route name (default: 'Route HH:MM:SS').")
        else:
            p.add_argument('route_id', nargs='?', help="Route to follow (default: auto-detect nearby route).")
    return parser


def main(argv=None):
    load_dotenv()
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-7s [%(name)s] %(message)s")

    try:
        yellow_duration = env_float("GREENWAVE_YELLOW_DURATION", DEFAULT_YELLOW_DURATION_SEC)
        args.max_fix_age = env_float("GREENWAVE_MAX_FIX_AGE", None)
        args.poll_interval = env_float("GREENWAVE_POLL_INTERVAL", POLL_INTERVAL_SEC)
    except ValueError as e:
        print(f"FATAL ERROR: {e}")
        sys.exit(1)

    store = JsonFileRouteStore(args.store)
    try:
        if args.command == 'list':
            list_routes(store)
        elif args.command == 'delete':
            delete_route(store, args.route_id)
        elif args.command == 'predict':
            predict_route(store, args.route_id, time.time())
        else:
            source = make_source(args)
            if args.command == 'record':
                asyncio.run(record_route(store, source, args.name, yellow_duration))
            else:
                asyncio.run(navigate_route(store, source, args.route_id, args.max_fix_age))
    except (GreenWaveError, KeyError, TypeError, ValueError, OSError) as e:
        print(e)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nStopped.")


if __name__ == '__main__':
    main()
