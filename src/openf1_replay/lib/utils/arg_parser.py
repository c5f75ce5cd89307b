import argparse


def build_parser():
    parser = argparse.ArgumentParser(
        prog="openf1-replay",
        description="Replay an OpenF1 session headless and print the running order",
    )

    parser.add_argument(
        "-s", "--session",
        type=int,
        required=True,
        help="OpenF1 session_key to replay (e.g. 9161)"
    )

    parser.add_argument(
        "--speed",
        type=float,
        default=None,
        help="Playback speed multiplier (default: from config)"
    )

    parser.add_argument(
        "--fps",
        type=int,
        default=None,
        help="Ticks per wall-clock second (default: from config)"
    )

    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop after this many wall-clock seconds"
    )

    parser.add_argument(
        "--print-every",
        type=float,
        default=10.0,
        help="Print the standings every N simulated seconds (default: 10)"
    )

    parser.add_argument(
        "--config",
        default=None,
        help="YAML file merged over the packaged defaults"
    )

    parser.add_argument(
        "--refresh-data",
        action="store_true",
        help="Clear the on-disk cache before loading"
    )

    parser.add_argument(
        "--list-drivers",
        action="store_true",
        help="Print the session's drivers and exit"
    )

    parser.add_argument(
        "--log-level",
        default=None,
        help="Override the openf1_replay log level (DEBUG, INFO, ...)"
    )

    return parser


def parse_args(argv=None):
    return build_parser().parse_args(argv)
