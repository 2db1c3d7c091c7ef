"""Subcommand dispatcher for clipencode.

Usage:
    clipencode encode   --manifest ... --frames ... --output ...
    clipencode graph    --manifest ...
    clipencode probe    clip.mp4
"""

import argparse
import sys


def main(args=None):
    parser = argparse.ArgumentParser(
        prog="clipencode",
        description="Encode rendered frames with audio and embedded videos via ffmpeg.",
    )
    subparsers = parser.add_subparsers(dest="command")

    # Register subcommands. Each delegates to its own module's main().
    subparsers.add_parser("encode", help="Encode an image sequence from a render manifest")
    subparsers.add_parser("graph", help="Print the ffmpeg filter graph for a manifest")
    subparsers.add_parser("probe", help="Print video metadata as JSON")

    # Parse only the subcommand name, pass the rest to the subcommand's parser.
    parsed, remaining = parser.parse_known_args(args)

    if parsed.command is None:
        parser.print_help()
        sys.exit(1)

    if parsed.command == "encode":
        from .encode_cli import main as encode_main
        encode_main(remaining)
    elif parsed.command == "graph":
        from .encode_cli import graph_main
        graph_main(remaining)
    elif parsed.command == "probe":
        from .probe_cli import main as probe_main
        probe_main(remaining)


if __name__ == "__main__":
    main()
