"""Config command module - show the effective configuration."""

import argparse
from typing import TYPE_CHECKING

from ..utils.rich_output import RichOutputFormatter

if TYPE_CHECKING:
    from vectorsync.core.config.config import Config


async def config_command(args: argparse.Namespace, config: "Config") -> int:
    """Print every configuration section after env and CLI overrides."""
    formatter = RichOutputFormatter(verbose=getattr(args, "verbose", False))
    data = config.to_dict()

    if getattr(args, "json", False):
        formatter.json_output(data)
        return 0

    for section, values in data.items():
        formatter.config_section(section, list(_flatten(values)))
    return 0


def _flatten(values: dict, prefix: str = ""):
    for key, value in values.items():
        if isinstance(value, dict):
            yield from _flatten(value, f"{prefix}{key}.")
        else:
            yield f"{prefix}{key}", str(value)
