"""Entry point of the vectorsync command-line interface."""

import asyncio
import sys

from loguru import logger
from pydantic import ValidationError

from vectorsync.core.config.config import Config
from vectorsync.core.config.logging_config import configure_logging
from vectorsync.core.exceptions import VectorSyncError

from .commands.checkpoints import checkpoints_command
from .commands.config import config_command
from .parsers import create_main_parser
from .utils.rich_output import RichOutputFormatter

COMMANDS = {
    "checkpoints": checkpoints_command,
    "config": config_command,
}


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, load configuration and run the selected command.

    Returns:
        Process exit code
    """
    parser = create_main_parser()
    args = parser.parse_args(argv)
    formatter = RichOutputFormatter(verbose=getattr(args, "verbose", False))

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = Config.load(args=args)
    except ValidationError as e:
        formatter.error(f"Invalid configuration: {e}")
        return 2

    configure_logging(config.logging)
    logger.debug(f"Running command '{args.command}'")

    try:
        return asyncio.run(COMMANDS[args.command](args, config))
    except VectorSyncError as e:
        formatter.error(str(e))
        return 1
    except KeyboardInterrupt:
        formatter.warning("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
