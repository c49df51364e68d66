"""Output formatting for the CLI."""

import json
import sys
from typing import Any, Optional

from rich.console import Console
from rich.table import Table

from .utils import format_size


class OutputFormatter:
    """Prints messages, tables and summaries as text or JSON.

    Messages go to stderr so that stdout only carries results.
    """

    def __init__(self, json_output: bool = False, quiet: bool = False):
        self.json_output = json_output
        self.quiet = quiet
        self.console = Console()
        self.err_console = Console(stderr=True)

    def info(self, message: str) -> None:
        if not self.quiet and not self.json_output:
            self.err_console.print(message, highlight=False)

    def success(self, message: str) -> None:
        if not self.quiet and not self.json_output:
            self.err_console.print(f"[green]✓[/green] {message}", highlight=False)

    def warning(self, message: str) -> None:
        if not self.quiet:
            self.err_console.print(
                f"[yellow]Warning:[/yellow] {message}", highlight=False
            )

    def error(self, message: str) -> None:
        self.err_console.print(f"[red]Error:[/red] {message}", highlight=False)

    def print(self, message: str) -> None:
        """Print a result line to stdout, without markup."""
        self.console.print(message, markup=False, highlight=False)

    def output_json(self, data: Any) -> None:
        sys.stdout.write(json.dumps(data, indent=2, default=str) + "\n")

    def output_table(
        self,
        rows: list[dict[str, Any]],
        columns: list[str],
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        """Print rows as a table, or as a JSON list in JSON mode.

        Args:
            rows: One dict per row
            columns: Keys of the columns to show, in order
            headers: Optional column titles keyed by column
        """
        if self.json_output:
            self.output_json([{c: row.get(c) for c in columns} for row in rows])
            return
        headers = headers or {}
        table = Table(show_header=True, header_style="bold", box=None)
        for column in columns:
            table.add_column(headers.get(column, column))
        for row in rows:
            table.add_row(*(str(row.get(c, "")) for c in columns))
        self.console.print(table)

    def print_summary(self, title: str, items: list[tuple[str, Any]]) -> None:
        if self.json_output:
            self.output_json({key: value for key, value in items})
            return
        if self.quiet:
            return
        self.err_console.print(f"\n[bold]{title}[/bold]")
        for key, value in items:
            self.err_console.print(f"  {key}: {value}", highlight=False)

    @staticmethod
    def format_size(size_bytes: int) -> str:
        return format_size(size_bytes)
