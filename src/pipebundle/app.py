"""Typer application and console-script entry point for pipebundle.

The host CLI wraps the build side (packaging jobs, installer assembly) and
the operational side (install, setup, verify, inspect) of a bundle. The
installer embedded in every ``.run`` file does *not* import this module; it
runs :func:`pipebundle.installer.main` on the standard library alone.

The :func:`main` function is the console-script entry point declared in
``pyproject.toml``. It installs signal handlers and invokes the Typer app.
:class:`~pipebundle.exceptions.BundleError` escaping a command exits with
the error's code; anything else is written to a crash log under the data
directory.

See Also:
    :mod:`pipebundle.output`: Output formatting initialised in :func:`main_callback`.
"""

from __future__ import annotations

import signal
import sys
import traceback
from datetime import datetime
from typing import Any

import typer

from pipebundle import __version__
from pipebundle.exit_codes import EXIT_GENERIC_FAILURE


app = typer.Typer(
    name="pipebundle",
    help="Build, install and verify self-contained pipeline bundles.",
    no_args_is_help=True,
    add_completion=True,
    rich_markup_mode="rich",
)

# ------------------------------------------------------------------ #
# Commands
# ------------------------------------------------------------------ #

from pipebundle.commands.build import build_app  # noqa: E402
from pipebundle.commands.inspect import inspect_app  # noqa: E402
from pipebundle.commands.install import install_command  # noqa: E402
from pipebundle.commands.setup import setup_command  # noqa: E402
from pipebundle.commands.verify import verify_command  # noqa: E402

app.add_typer(build_app, name="build", help="Run packaging jobs and write installers.")
app.add_typer(inspect_app, name="inspect", help="Inspect bundles, installers and installs.")
app.command("install")(install_command)
app.command("setup")(setup_command)
app.command("verify")(verify_command)


def _version_callback(value: bool) -> None:
    """Print version and exit when --version is passed."""
    if value:
        typer.echo(f"pipebundle {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    json_output: bool = typer.Option(
        False, "--json", help="JSON output format."
    ),
    plain_output: bool = typer.Option(
        False, "--plain", help="Plain text output."
    ),
    no_color: bool = typer.Option(
        False, "--no-color", help="Disable color output."
    ),
    quiet: bool = typer.Option(
        False, "--quiet", "-q", help="Suppress non-essential output."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug output."
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Skip confirmations and replace existing output."
    ),
    no_input: bool = typer.Option(
        False, "--no-input", help="Disable interactive prompts."
    ),
) -> None:
    """Root callback executed before every sub-command.

    Initialises the global :class:`~pipebundle.output.OutputManager` and
    log handler from CLI flags, and stores shared options in ``ctx.obj``.
    """
    from pipebundle.output import OutputFormat, OutputManager, configure_logging, set_output

    fmt = OutputFormat.AUTO
    if json_output:
        fmt = OutputFormat.JSON
    elif plain_output:
        fmt = OutputFormat.PLAIN

    output = OutputManager(format=fmt, no_color=no_color, quiet=quiet, verbose=verbose)
    set_output(output)
    configure_logging(output)

    ctx.ensure_object(dict)
    ctx.obj["force"] = force
    ctx.obj["no_input"] = no_input
    ctx.obj["verbose"] = verbose


def _setup_signal_handlers() -> None:
    """Install a SIGINT handler so Ctrl-C exits cleanly."""

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)

    signal.signal(signal.SIGINT, _handler)


def _write_crash_log(exc: Exception) -> str:
    """Write the current traceback under the data directory and return its path."""
    from pipebundle.config import get_data_dir

    logs_dir = get_data_dir() / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = logs_dir / f"crash-{timestamp}.log"
    log_path.write_text(traceback.format_exc())
    return str(log_path)


def main() -> None:
    """CLI entry point invoked by the ``pipebundle`` console script."""
    _setup_signal_handlers()
    try:
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)
    except Exception as exc:
        from pipebundle.exceptions import BundleError
        from pipebundle.output import error

        if isinstance(exc, BundleError):
            error(str(exc))
            sys.exit(exc.exit_code)
        else:
            log_path = _write_crash_log(exc)
            error(f"Unexpected error. Debug log: {log_path}")
            sys.exit(EXIT_GENERIC_FAILURE)
