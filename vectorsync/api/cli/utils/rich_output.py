"""Rich-based output for vectorsync CLI commands.

Falls back to plain ``print`` when stdout is not a terminal, when the
terminal is dumb, or when VECTORSYNC_NO_RICH is set; plain output stays
grep-friendly (tab separated rows, ``[LEVEL]`` prefixes).
"""

import json
import os
import sys
from datetime import datetime
from typing import Any

import rich.box
from rich.console import Console
from rich.markup import escape
from rich.syntax import Syntax
from rich.table import Table

# level -> (plain prefix, rich style)
_LEVELS: dict[str, tuple[str, str]] = {
    "info": ("[INFO]", "blue"),
    "success": ("[SUCCESS]", "green"),
    "warning": ("[WARN]", "yellow"),
    "error": ("[ERROR]", "red"),
    "debug": ("[DEBUG]", "cyan"),
}


def _rich_enabled() -> bool:
    if os.environ.get("VECTORSYNC_NO_RICH"):
        return False
    if os.environ.get("TERM", "") in ("dumb", "unknown"):
        return False
    return sys.stdout.isatty()


def _format_timestamp(value: float | None) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S")


class RichOutputFormatter:
    """Terminal formatter for command results and status messages."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.console: Console | None = Console() if _rich_enabled() else None

    def _emit(self, level: str, message: str) -> None:
        prefix, style = _LEVELS[level]
        if self.console is None:
            print(f"{prefix} {message}")
            return
        self.console.print(f"[{style}]{escape(prefix)}[/{style}] {escape(message)}")

    def info(self, message: str) -> None:
        self._emit("info", message)

    def success(self, message: str) -> None:
        self._emit("success", message)

    def warning(self, message: str) -> None:
        self._emit("warning", message)

    def error(self, message: str) -> None:
        self._emit("error", message)

    def verbose_info(self, message: str) -> None:
        """Print only with --verbose."""
        if self.verbose:
            self._emit("debug", message)

    def json_output(self, data: Any) -> None:
        """Print data as JSON; highlighted on a terminal, raw otherwise."""
        text = json.dumps(data, indent=2, default=str)
        if self.console is None:
            print(text)
        else:
            self.console.print(Syntax(text, "json", theme="monokai", word_wrap=True))

    def checkpoint_table(self, rows: list[dict[str, Any]]) -> None:
        """Print one line per (index, partition) checkpoint."""
        if self.console is None:
            for row in rows:
                print(f"{row['index_name']}\t{row['partition']}\t{row['position']}")
            return

        table = Table(title="Checkpoints", box=rich.box.ROUNDED)
        table.add_column("Index", style="cyan", no_wrap=True)
        table.add_column("Partition")
        table.add_column("Position", justify="right", style="green")
        table.add_column("Updated", style="dim")
        for row in rows:
            table.add_row(
                row["index_name"],
                row["partition"],
                str(row["position"]),
                _format_timestamp(row.get("updated_at")),
            )
        self.console.print(table)

    def config_section(self, title: str, entries: list[tuple[str, str]]) -> None:
        """Print one configuration section as key/value pairs."""
        if self.console is None:
            print(f"\n[{title}]")
            for key, value in entries:
                print(f"  {key} = {value}")
            return

        table = Table(title=title, show_header=False, box=rich.box.SIMPLE)
        table.add_column("Key", style="cyan", no_wrap=True)
        table.add_column("Value")
        for key, value in entries:
            table.add_row(key, escape(value))
        self.console.print(table)
