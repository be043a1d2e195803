"""Parser for checkpoints command - inspect and reset stream checkpoints."""

import argparse

from .common_arguments import add_common_arguments


def add_checkpoints_parser(
    subparsers: argparse._SubParsersAction,
) -> argparse.ArgumentParser:
    """Add checkpoints command parser.

    Args:
        subparsers: Subparsers object from main parser

    Returns:
        The created parser
    """
    checkpoints_parser = subparsers.add_parser(
        "checkpoints",
        help="Inspect or reset stream checkpoints",
        description="List and reset the per-partition positions stored in the checkpoint database.",
    )

    checkpoints_subparsers = checkpoints_parser.add_subparsers(
        dest="checkpoints_subcommand",
        title="subcommands",
        description="Available operations",
    )

    # checkpoints list
    list_parser = checkpoints_subparsers.add_parser(
        "list",
        help="List stored checkpoints",
        description="List the last applied position of every (index, partition).",
    )
    list_parser.add_argument(
        "--index",
        "-i",
        help="Only show checkpoints of this index",
    )
    add_common_arguments(list_parser)

    # checkpoints reset
    reset_parser = checkpoints_subparsers.add_parser(
        "reset",
        help="Delete checkpoints of an index",
        description=(
            "Delete stored checkpoints so the next start replays the stream "
            "from the backfill watermark."
        ),
    )
    reset_parser.add_argument(
        "index",
        help="Index whose checkpoints are deleted",
    )
    reset_parser.add_argument(
        "--partition",
        "-p",
        help="Only reset this partition",
    )
    reset_parser.add_argument(
        "--yes",
        "-y",
        action="store_true",
        help="Do not ask for confirmation",
    )
    add_common_arguments(reset_parser)

    # Set default subcommand to list
    checkpoints_parser.set_defaults(checkpoints_subcommand="list")

    return checkpoints_parser
