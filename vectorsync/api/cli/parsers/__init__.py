"""Argument parser utilities for vectorsync CLI commands."""

from .checkpoints_parser import add_checkpoints_parser
from .config_parser import add_config_parser
from .common_arguments import add_common_arguments
from .main_parser import create_main_parser, setup_subparsers

__all__ = [
    "add_checkpoints_parser",
    "add_common_arguments",
    "add_config_parser",
    "create_main_parser",
    "setup_subparsers",
]
