"""Top-level argument parser for the vectorsync CLI."""

import argparse

from vectorsync import __version__

from .checkpoints_parser import add_checkpoints_parser
from .config_parser import add_config_parser


def create_main_parser() -> argparse.ArgumentParser:
    """Create the root parser with every subcommand registered."""
    parser = argparse.ArgumentParser(
        prog="vectorsync",
        description="Keep ANN vector indexes in sync with database tables via CDC.",
    )
    parser.add_argument(
        "--version", action="version", version=f"vectorsync {__version__}"
    )
    setup_subparsers(parser)
    return parser


def setup_subparsers(parser: argparse.ArgumentParser) -> argparse._SubParsersAction:
    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        description="Available commands",
    )
    add_checkpoints_parser(subparsers)
    add_config_parser(subparsers)
    return subparsers
