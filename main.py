import sys

from openf1_replay.main import cli


if __name__ == "__main__":
    # Headless replay, e.g.: python main.py --session 9161 --speed 8
    sys.exit(cli())
