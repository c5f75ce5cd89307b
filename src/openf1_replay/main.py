import logging
import sys

from .config import load_config, setup_logging
from .errors import ReplayError
from .lib.time import format_clock, format_time
from .lib.utils.arg_parser import parse_args
from .replay.engine import ReplayEngine

logger = logging.getLogger(__name__)


def format_standings(engine: ReplayEngine, limit: int = 20) -> str:
    """Plain-text leaderboard for the current simulation time."""
    table = engine.table
    state = engine.state()
    lines = [
        f"Race Time: {format_clock(state.current_time)} "
        f"(+{format_time(state.elapsed)}, x{state.speed_multiplier:g})"
    ]
    if table is None:
        return lines[0]
    for entry in list(table)[:limit]:
        driver = engine.drivers.get(entry.driver_number)
        code = driver.code if driver else f"#{entry.driver_number}"
        lines.append(f"{entry.rank:>3}. {code:<4} {entry.driver_number:>3}")
    return "\n".join(lines)


def list_drivers(engine: ReplayEngine, session_key: int):
    print(f"Drivers for session {session_key}")
    for driver in engine.api.get_drivers(session_key):
        print(f"{driver.driver_number:>3}: {driver.code:<4} {driver.full_name or ''} ({driver.team_name or 'Unknown'})")


def run(session_key: int, speed=None, fps=None, duration=None, print_every=10.0,
        config_path=None, refresh_data=False, show_drivers=False):
    config = load_config(config_path)
    if speed is not None:
        config.playback.speed = speed
    if fps is not None:
        config.playback.fps = fps
    config.validate()

    with ReplayEngine(config) as engine:
        if refresh_data:
            logger.info("Clearing cached data")
            engine.cache.clear(persistent=True)

        if show_drivers:
            list_drivers(engine, session_key)
            return

        info = engine.change_session(session_key)
        print(f"Loaded session: {info}")

        last_print = None

        def on_frame(eng: ReplayEngine):
            nonlocal last_print
            t = eng.current_time
            if last_print is None or t - last_print >= print_every:
                last_print = t
                print(format_standings(eng))
                print()

        engine.run(fps=config.playback.fps, duration=duration, on_frame=on_frame)
        loaded = {kind.value: len(loader.loaded_indices()) for kind, loader in engine.loaders.items()}
        print(f"Replay finished at {format_clock(engine.current_time)}; chunks loaded: {loaded}")
        print(format_standings(engine))


def cli(argv=None):
    args = parse_args(argv)
    setup_logging(args.log_level)
    try:
        run(
            session_key=args.session,
            speed=args.speed,
            fps=args.fps,
            duration=args.duration,
            print_every=args.print_every,
            config_path=args.config,
            refresh_data=args.refresh_data,
            show_drivers=args.list_drivers,
        )
    except KeyboardInterrupt:
        print("Replay interrupted.")
    except ReplayError as e:
        logger.error("%s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(cli())
