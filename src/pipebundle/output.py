"""Output formatting for the host CLI with strict stdout/stderr discipline.

Follows `clig.dev <https://clig.dev/>`_ conventions:

* **stdout** -- results only (verification tables, manifests, build
  reports, JSON). This is what scripts pipe and parse.
* **stderr** -- diagnostics (progress, step status, warnings, errors,
  suggestions) and log records.
* **TTY detection** -- Rich formatting when stdout is an interactive
  terminal, plain text when piped.
* **Colour control** -- respects ``NO_COLOR``, ``TERM=dumb`` and
  ``--no-color``.

:class:`OutputManager` is created once in :func:`pipebundle.app.main_callback`
and installed with :func:`set_output`; the module-level helpers delegate to
it. :func:`configure_logging` routes :mod:`logging` through Rich on the same
stderr console.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from enum import Enum
from typing import Any, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.syntax import Syntax
from rich.table import Table


class OutputFormat(str, Enum):
    """``AUTO`` resolves to ``RICH`` on a colour TTY and ``PLAIN`` otherwise."""

    AUTO = "auto"
    JSON = "json"
    PLAIN = "plain"
    RICH = "rich"


_STATUS_STYLES = {
    "PASS": "green",
    "FAIL": "bold red",
    "WARN": "yellow",
    "ok": "green",
    "warning": "yellow",
    "fatal": "bold red",
}


class OutputManager:
    """Routes every piece of CLI output to the right stream and format.

    Args:
        format: Desired output format. ``AUTO`` resolves based on TTY
            detection.
        no_color: Disable all colour and Rich markup.
        quiet: Suppress non-essential messages on stderr.
        verbose: Enable debug messages on stderr.
    """

    def __init__(
        self,
        format: OutputFormat = OutputFormat.AUTO,
        no_color: bool = False,
        quiet: bool = False,
        verbose: bool = False,
    ) -> None:
        self._no_color = no_color or _should_disable_color()
        self._quiet = quiet
        self._verbose = verbose

        if format == OutputFormat.AUTO:
            self._format = OutputFormat.RICH if _is_tty() and not self._no_color else OutputFormat.PLAIN
        else:
            self._format = format

        self._stdout = Console(
            file=sys.stdout,
            no_color=self._no_color,
            force_terminal=(self._format == OutputFormat.RICH),
        )
        self._stderr = Console(file=sys.stderr, no_color=self._no_color, stderr=True)

    @property
    def format(self) -> OutputFormat:
        return self._format

    @property
    def is_quiet(self) -> bool:
        return self._quiet

    @property
    def is_verbose(self) -> bool:
        return self._verbose

    @property
    def stderr_console(self) -> Console:
        return self._stderr

    # ------------------------------------------------------------------ #
    # Data output (stdout)
    # ------------------------------------------------------------------ #

    def print_data(self, text: str) -> None:
        print(text, file=sys.stdout, flush=True)

    def print_document(self, data: Any) -> None:
        """Print a dict or list (a manifest, a report) in the active format.

        JSON mode emits indented JSON, plain mode emits ``key<TAB>value``
        lines for mappings, and Rich mode syntax-highlights the JSON.
        """
        if self._format == OutputFormat.JSON:
            self.print_data(json.dumps(data, indent=2, ensure_ascii=False, default=str))
        elif self._format == OutputFormat.PLAIN:
            if isinstance(data, dict):
                for key, value in data.items():
                    if isinstance(value, (dict, list)):
                        value = json.dumps(value, ensure_ascii=False, default=str)
                    self.print_data(f"{key}\t{value}")
            elif isinstance(data, list):
                for item in data:
                    self.print_data(str(item))
            else:
                self.print_data(str(data))
        else:
            text = json.dumps(data, indent=2, ensure_ascii=False, default=str)
            self._stdout.print(Syntax(text, "json", theme="monokai", word_wrap=True))

    def print_table(
        self,
        headers: list[str],
        rows: list[list[str]],
        title: Optional[str] = None,
        status_column: Optional[int] = None,
    ) -> None:
        """Print tabular data to stdout in the active format.

        * **Rich mode** -- styled :class:`~rich.table.Table`; the optional
          ``status_column`` is coloured by value (PASS/FAIL/WARN).
        * **JSON mode** -- array of objects keyed by header names.
        * **Plain mode** -- tab-separated values, one row per line.
        """
        if self._format == OutputFormat.JSON:
            records = [dict(zip(headers, row)) for row in rows]
            self.print_data(json.dumps(records, indent=2, ensure_ascii=False))
        elif self._format == OutputFormat.PLAIN:
            self.print_data("\t".join(headers))
            for row in rows:
                self.print_data("\t".join(row))
        else:
            table = Table(title=title, show_header=True, header_style="bold cyan")
            for h in headers:
                table.add_column(h)
            for row in rows:
                cells = list(row)
                if status_column is not None and cells[status_column] in _STATUS_STYLES:
                    style = _STATUS_STYLES[cells[status_column]]
                    cells[status_column] = f"[{style}]{cells[status_column]}[/{style}]"
                table.add_row(*cells)
            self._stdout.print(table)

    # ------------------------------------------------------------------ #
    # Diagnostics (stderr)
    # ------------------------------------------------------------------ #

    def _emit(self, plain: str, markup: str) -> None:
        if self._no_color:
            print(plain, file=sys.stderr, flush=True)
        else:
            self._stderr.print(markup)

    def info(self, message: str) -> None:
        """Informational message. Suppressed by ``--quiet``."""
        if not self._quiet:
            self._emit(message, message)

    def success(self, message: str) -> None:
        if not self._quiet:
            self._emit(message, f"[green]{message}[/green]")

    def warning(self, message: str) -> None:
        """Warning. NOT suppressed by ``--quiet``."""
        self._emit(f"Warning: {message}", f"[yellow]Warning:[/yellow] {message}")

    def error(self, message: str) -> None:
        """Error. Never suppressed."""
        self._emit(f"Error: {message}", f"[bold red]Error:[/bold red] {message}")

    def suggest(self, message: str) -> None:
        """Dimmed next-step hint. Suppressed by ``--quiet``."""
        if not self._quiet:
            formatted = f"→ {message}"
            self._emit(formatted, f"[dim]{formatted}[/dim]")

    def debug(self, message: str) -> None:
        """Debug message, shown only with ``--verbose``."""
        if self._verbose:
            self._emit(f"[debug] {message}", f"[dim]\\[debug] {message}[/dim]")

    def status(self, symbol: str, message: str, style: str = "") -> None:
        """Step status line (``✓ Extracted 12 entries``). Suppressed by ``--quiet``
        unless *style* marks it as a failure."""
        if self._quiet and style != "fatal":
            return
        color = _STATUS_STYLES.get(style, "")
        markup = f"[{color}]{symbol}[/{color}] {message}" if color else f"{symbol} {message}"
        self._emit(f"{symbol} {message}", markup)


# ------------------------------------------------------------------ #
# Module-level helpers
# ------------------------------------------------------------------ #


def _is_tty() -> bool:
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def _should_disable_color() -> bool:
    """True when ``NO_COLOR`` is set (any value) or ``TERM=dumb``."""
    if os.environ.get("NO_COLOR") is not None:
        return True
    if os.environ.get("TERM") == "dumb":
        return True
    return False


def configure_logging(output: "OutputManager") -> None:
    """Send log records to stderr through Rich.

    WARNING by default, DEBUG with ``--verbose``, ERROR with ``--quiet``.
    """
    if output.is_verbose:
        level = logging.DEBUG
    elif output.is_quiet:
        level = logging.ERROR
    else:
        level = logging.WARNING
    handler = RichHandler(
        console=output.stderr_console,
        show_time=False,
        show_path=output.is_verbose,
        markup=False,
        rich_tracebacks=output.is_verbose,
    )
    root = logging.getLogger("pipebundle")
    for existing in list(root.handlers):
        if isinstance(existing, RichHandler):
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False


_output: Optional[OutputManager] = None


def get_output() -> OutputManager:
    """Return the global :class:`OutputManager`, creating a default one lazily."""
    global _output
    if _output is None:
        _output = OutputManager()
    return _output


def set_output(output: OutputManager) -> None:
    global _output
    _output = output


def reset_output() -> None:
    """Reset the global manager. Used by the test suite between tests."""
    global _output
    _output = None


def print_data(text: str) -> None:
    get_output().print_data(text)


def print_document(data: Any) -> None:
    get_output().print_document(data)


def print_table(
    headers: list[str],
    rows: list[list[str]],
    title: Optional[str] = None,
    status_column: Optional[int] = None,
) -> None:
    get_output().print_table(headers, rows, title, status_column)


def info(message: str) -> None:
    get_output().info(message)


def error(message: str) -> None:
    get_output().error(message)


def success(message: str) -> None:
    get_output().success(message)


def warning(message: str) -> None:
    get_output().warning(message)


def suggest(message: str) -> None:
    get_output().suggest(message)


def debug(message: str) -> None:
    get_output().debug(message)


def status(symbol: str, message: str, style: str = "") -> None:
    get_output().status(symbol, message, style)
