"""Arguments shared by every vectorsync leaf command."""

import argparse

from vectorsync.core.config.database_config import DatabaseConfig

_LOG_LEVELS = ["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def add_common_arguments(parser: argparse.ArgumentParser) -> None:
    """Attach output, logging and checkpoint database options to ``parser``."""
    output = parser.add_argument_group("output")
    output.add_argument(
        "-v", "--verbose", action="store_true", help="Log debug messages to stderr"
    )
    output.add_argument(
        "--json", action="store_true", help="Print machine-readable JSON instead of tables"
    )

    logging_group = parser.add_argument_group("logging")
    logging_group.add_argument("--log-file", type=str, help="Also write logs to this file")
    logging_group.add_argument(
        "--log-level", type=str, choices=_LOG_LEVELS, help="Level for --log-file (default: INFO)"
    )

    DatabaseConfig.add_cli_arguments(parser)
