"""Checkpoints command module - inspect and reset stored stream positions."""

import argparse
from typing import TYPE_CHECKING

from vectorsync.providers.database.duckdb_checkpoint_store import DuckDBCheckpointStore

from ..utils.rich_output import RichOutputFormatter

if TYPE_CHECKING:
    from vectorsync.core.config.config import Config


async def checkpoints_command(args: argparse.Namespace, config: "Config") -> int:
    """Execute the checkpoints command.

    Args:
        args: Parsed command-line arguments
        config: Pre-validated configuration instance

    Returns:
        Process exit code
    """
    formatter = RichOutputFormatter(verbose=getattr(args, "verbose", False))
    subcommand = getattr(args, "checkpoints_subcommand", "list")

    store = DuckDBCheckpointStore(config.database)
    try:
        if subcommand == "list":
            return await _checkpoints_list(args, store, formatter)
        if subcommand == "reset":
            return await _checkpoints_reset(args, store, formatter)
        formatter.error(f"Unknown subcommand: {subcommand}")
        return 1
    finally:
        store.close()


async def _checkpoints_list(
    args: argparse.Namespace, store: DuckDBCheckpointStore, formatter: RichOutputFormatter
) -> int:
    index_name = getattr(args, "index", None)
    rows = await store.list_checkpoints(index_name)

    if getattr(args, "json", False):
        formatter.json_output(rows)
        return 0

    if not rows:
        scope = f" for index '{index_name}'" if index_name else ""
        formatter.info(f"No checkpoints found{scope}.")
        return 0

    indexes = {row["index_name"] for row in rows}
    formatter.verbose_info(f"Checkpoint database: {store.db_path}")
    formatter.checkpoint_table(rows)
    formatter.info(f"{len(rows)} checkpoint(s) across {len(indexes)} index(es)")
    return 0


async def _checkpoints_reset(
    args: argparse.Namespace, store: DuckDBCheckpointStore, formatter: RichOutputFormatter
) -> int:
    index_name = args.index
    partition = getattr(args, "partition", None)
    target = f"'{index_name}'" + (f" partition '{partition}'" if partition else "")

    if not getattr(args, "yes", False):
        answer = input(f"Delete checkpoints of {target}? [y/N] ").strip().lower()
        if answer not in ("y", "yes"):
            formatter.info("Aborted.")
            return 1

    if partition:
        removed = await store.delete_partition(index_name, partition)
    else:
        removed = await store.delete_index(index_name)

    if getattr(args, "json", False):
        formatter.json_output({"index": index_name, "partition": partition, "deleted": removed})
    elif removed:
        formatter.success(f"Deleted {removed} checkpoint(s) of {target}")
    else:
        formatter.warning(f"No checkpoints stored for {target}")
    return 0
