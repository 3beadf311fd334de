"""
Voice intake router entry point.

The decision engine is a library: a telephony front end calls
``DialogManager.process_turn`` for each transcribed utterance and speaks the
returned prompt. This entry point runs the offline console simulator for
development.

Usage:
    Interactive:  python main.py console
    Scripted:     python main.py console --scenario outage
"""

import argparse
import sys
from typing import Optional


def _run_console_mode(scenario: Optional[str]) -> None:
    """Start the offline console demo (no API keys required)."""
    from console_demo import main as console_main

    console_main(["--scenario", scenario] if scenario else [])


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="voice-intake-router")
    subparsers = parser.add_subparsers(dest="command")
    console = subparsers.add_parser("console", help="Run the offline call simulator")
    console.add_argument(
        "--scenario",
        choices=("booking", "promotion", "outage"),
        default=None,
    )
    args = parser.parse_args(argv)

    if args.command == "console":
        _run_console_mode(args.scenario)
        return 0
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
