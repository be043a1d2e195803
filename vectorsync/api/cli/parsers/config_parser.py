"""Parser for config command - show the effective configuration."""

import argparse

from .common_arguments import add_common_arguments


def add_config_parser(subparsers: argparse._SubParsersAction) -> argparse.ArgumentParser:
    """Add config command parser.

    Args:
        subparsers: Subparsers object from main parser

    Returns:
        The created parser
    """
    config_parser = subparsers.add_parser(
        "config",
        help="Show configuration",
        description="Show the configuration after applying environment variables and CLI flags.",
    )

    config_subparsers = config_parser.add_subparsers(
        dest="config_subcommand",
        title="subcommands",
        description="Available operations",
    )
    show_parser = config_subparsers.add_parser(
        "show",
        help="Print the effective configuration",
    )
    add_common_arguments(show_parser)

    config_parser.set_defaults(config_subcommand="show")

    return config_parser
