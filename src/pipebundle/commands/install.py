"""Install command -- run a hybrid installer through the host CLI.

``pipebundle install`` runs the same steps as ``sh <installer>.run`` but
reports progress through the Rich output manager and asks questions with
Typer prompts. It is mostly useful on build and CI hosts where pipebundle
is already installed.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import typer

from pipebundle.exceptions import BundleError
from pipebundle.installer import InstallOptions, Prompter, load_installer_manifest, run_install
from pipebundle.output import OutputFormat, error, get_output, info, print_document, status, success, suggest
from pipebundle.pipeline import Step, StepResult


class TyperPrompter(Prompter):
    """Ask through :mod:`typer`; end of input answers with the default."""

    def confirm(self, question: str, default: bool = False) -> bool:
        if self.assume_yes:
            return True
        try:
            return typer.confirm(question, default=default, err=True)
        except typer.Abort:
            return default

    def ask(self, question: str, default: str) -> str:
        try:
            return typer.prompt(question, default=default, err=True)
        except typer.Abort:
            return default


class RichReporter:
    """Step progress on stderr through the global OutputManager."""

    _SYMBOLS = {"ok": "✓", "warning": "⚠", "fatal": "✗"}

    def step_started(self, step: Step) -> None:
        info(f"ℹ {step.title}...")

    def step_finished(self, step: Step, result: StepResult) -> None:
        style = result.status.value
        if result.is_fatal:
            return
        if result.message:
            status(self._SYMBOLS[style], result.message, style)
        for warning in result.warnings:
            if warning != result.message:
                status("⚠", warning, "warning")


def install_command(
    ctx: typer.Context,
    installer: Path = typer.Argument(..., exists=True, dir_okay=False, help="Hybrid installer file (.run)."),
    destination: Optional[str] = typer.Argument(None, help="Installation directory. [default: ~/<name>]"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Answer yes to every confirmation."),
    skip_setup: bool = typer.Option(False, "--skip-setup", help="Skip plugin discovery setup."),
) -> None:
    """Install a bundle from its self-extracting installer.

    Without a destination (and with a terminal on stdin) the destination
    is asked for. Replacing a previous installation always needs
    confirmation unless ``--yes`` or ``--force`` is given.

    Example::

        pipebundle install pipelinewise-0.73.0.run ~/pipelinewise
        pipebundle install pipelinewise-0.73.0.run /opt/plw --yes --json
    """
    obj = ctx.obj or {}
    output = get_output()
    json_output = output.format == OutputFormat.JSON
    interactive = destination is None and sys.stdin.isatty() and not obj.get("no_input")

    try:
        manifest = load_installer_manifest(installer.resolve())
        options = InstallOptions(
            installer=installer.resolve(),
            destination=destination,
            assume_yes=yes or bool(obj.get("force")),
            interactive=interactive,
            skip_setup=skip_setup,
            json_output=json_output,
        )
        result, install_ctx = run_install(
            options,
            manifest,
            prompter=TyperPrompter(assume_yes=options.assume_yes),
            reporter=RichReporter(),
            out=sys.stdout,
        )
    except BundleError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    if result.failure is not None:
        error(result.failure.message)
        if json_output:
            print_document(result.to_dict())
        raise typer.Exit(code=result.exit_code)

    if json_output:
        document = result.to_dict()
        document["summary"] = install_ctx.summary
        print_document(document)
    success(f"{manifest.name} {manifest.version} installed in {install_ctx.destination}")
    suggest(f"pipebundle verify {install_ctx.destination}")
