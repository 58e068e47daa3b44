"""Terminal output for the command line interface.

All user-facing text goes through :class:`OutputFormatter` so that
``--quiet`` and ``--json`` behave the same in every command.
"""

import json
from typing import Any, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table


class OutputFormatter:
    """Formats command output as rich text or JSON."""

    def __init__(self, json_output: bool = False, quiet: bool = False):
        """Initialize the formatter.

        Args:
            json_output: Emit machine-readable JSON instead of text
            quiet: Suppress informational messages
        """
        self.json_output = json_output
        self.quiet = quiet
        self.console = Console(highlight=False)
        self.err_console = Console(stderr=True, highlight=False)

    def _show_messages(self) -> bool:
        return not (self.quiet or self.json_output)

    def info(self, message: str) -> None:
        if self._show_messages():
            self.console.print(message, markup=False)

    def success(self, message: str) -> None:
        if self._show_messages():
            self.console.print(f"[green]✓[/green] {escape(message)}")

    def warning(self, message: str) -> None:
        if not self.json_output:
            self.err_console.print(f"[yellow]Warning:[/yellow] {escape(message)}")

    def error(self, message: str) -> None:
        # Errors are shown even in quiet mode
        if self.json_output:
            self.err_console.print_json(json.dumps({"error": message}))
        else:
            self.err_console.print(f"[red]Error:[/red] {escape(message)}")

    def progress_message(self, message: str) -> None:
        if self._show_messages():
            self.console.print(f"[dim]{escape(message)}[/dim]")

    def output_json(self, data: Any) -> None:
        """Write data as JSON to stdout."""
        self.console.print_json(json.dumps(data, default=str))

    def output_table(
        self,
        data: list[dict[str, Any]],
        columns: list[str],
        headers: Optional[dict[str, str]] = None,
        title: Optional[str] = None,
    ) -> None:
        """Show a list of records as a table (or as JSON in JSON mode).

        Args:
            data: Rows as dictionaries
            columns: Keys to show, in order
            headers: Column titles keyed by column (defaults to the key)
            title: Optional table title
        """
        if self.json_output:
            self.output_json([{c: row.get(c) for c in columns} for row in data])
            return

        headers = headers or {}
        table = Table(title=title, show_lines=False)
        for column in columns:
            table.add_column(headers.get(column, column))
        for row in data:
            table.add_row(*(_cell(row.get(column)) for column in columns))
        self.console.print(table)

    def print_summary(self, title: str, items: list[tuple[str, Any]]) -> None:
        """Show a titled list of key/value lines."""
        if self.quiet:
            return
        if self.json_output:
            self.output_json({key: value for key, value in items})
            return

        self.console.print(f"\n[bold]{escape(title)}[/bold]")
        self.console.print("─" * min(60, max(len(title), 20)))
        for key, value in items:
            self.console.print(f"  {escape(key)}: {escape(str(value))}")


def _cell(value: Any) -> str:
    if value is None:
        return "-"
    return escape(str(value))
