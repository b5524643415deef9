"""Output formatting for the CLI."""

import json
import sys
from typing import Any, Optional

from rich.console import Console
from rich.table import Table

from .utils import format_size


class OutputFormatter:
    """Writes human-readable or JSON output.

    In JSON mode only ``output_json`` writes to stdout; status messages go
    to stderr so the JSON document stays parseable.
    """

    def __init__(self, json_output: bool = False, quiet: bool = False):
        """Initialize output formatter.

        Args:
            json_output: Emit machine-readable JSON instead of text
            quiet: Suppress informational messages
        """
        self.json_output = json_output
        self.quiet = quiet
        self.console = Console(highlight=False)
        self.err_console = Console(stderr=True, highlight=False)

    def _status_console(self) -> Console:
        return self.err_console if self.json_output else self.console

    def info(self, message: str) -> None:
        if not self.quiet:
            self._status_console().print(message)

    def success(self, message: str) -> None:
        if not self.quiet:
            self._status_console().print(f"[green]{message}[/green]")

    def warning(self, message: str) -> None:
        self.err_console.print(f"[yellow]Warning:[/yellow] {message}")

    def error(self, message: str) -> None:
        self.err_console.print(f"[red]Error:[/red] {message}")

    def print(self, message: str) -> None:
        """Print a message regardless of the quiet flag."""
        self._status_console().print(message)

    def output_json(self, data: Any) -> None:
        sys.stdout.write(json.dumps(data, indent=2, default=str) + "\n")
        sys.stdout.flush()

    def format_size(self, size_bytes: int) -> str:
        return format_size(size_bytes)

    def print_summary(
        self, title: str, items: list[tuple[str, str]], style: Optional[str] = None
    ) -> None:
        """Print a two-column summary table.

        Args:
            title: Table title
            items: (label, value) rows
            style: Optional style of the value column
        """
        if self.quiet or self.json_output:
            return
        table = Table(title=title, show_header=False, box=None)
        table.add_column("label", style="bold")
        table.add_column("value", style=style)
        for label, value in items:
            table.add_row(label, value)
        self.console.print(table)
