"""Setup command -- idempotent first-run discovery setup for an install."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from pipebundle.exceptions import BundleError
from pipebundle.output import error, info, print_document, success, warning


def setup_command(
    install_dir: Path = typer.Argument(..., help="Installation directory containing bundle.json."),
    home: Optional[str] = typer.Option(None, "--home", help="Home (state) directory. [default: $<NAME>_HOME or <install_dir>/.<name>]"),
) -> None:
    """Create plugin discovery slots and the default config if missing.

    Safe to run any number of times: an existing discovery directory is
    left untouched. Use ``pipebundle verify --fix`` to restore individual
    slots that were deleted.

    Example::

        pipebundle setup ~/pipelinewise
    """
    from pipebundle.manifest import load_manifest
    from pipebundle.settings import Settings
    from pipebundle.slots import run_setup

    try:
        manifest = load_manifest(install_dir)
        settings = Settings.resolve(manifest, install_dir, explicit_home=home)
        report = run_setup(settings, manifest)
    except BundleError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    for item in report.warnings:
        warning(str(item))
    print_document(
        {
            "home": str(settings.home),
            "created": report.created,
            "already_set_up": report.already_set_up,
            "config_created": report.config_created,
            "warnings": [str(w) for w in report.warnings],
        }
    )
    if report.already_set_up:
        info(f"Already set up: {settings.discovery_dir}")
    else:
        success(f"Set up {len(report.created)} plugin slot(s) in {settings.discovery_dir}")
