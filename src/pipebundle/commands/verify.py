"""Verify command -- run the Verification Suite against an install.

Every check runs and is reported; the exit code is non-zero only when at
least one check failed. Output follows the global format flags: a Rich
table on a terminal, tab-separated lines with ``--plain``, and a JSON
document with ``--json``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from pipebundle.output import OutputFormat, get_output, info, print_document, print_table, success, warning


def verify_command(
    install_dir: Path = typer.Argument(..., help="Installation directory."),
    home: Optional[str] = typer.Option(None, "--home", help="Home (state) directory override."),
    fix: bool = typer.Option(False, "--fix", help="Recreate missing slots, execute bits and default config first."),
    smoke: bool = typer.Option(False, "--smoke", help="Also run core --version and each plugin --help."),
) -> None:
    """Check an installation and report every problem found.

    Example::

        pipebundle verify ~/pipelinewise
        pipebundle verify ~/pipelinewise --fix
        pipebundle --json verify /opt/pipelinewise --smoke
    """
    from pipebundle.verify import CheckStatus, verify_install

    output = get_output()
    report = verify_install(install_dir, explicit_home=home, smoke=smoke, fix=fix)

    for action in report.repaired:
        info(f"Repaired: {action}")
    for action in report.unrepaired:
        warning(f"Could not repair: {action}")

    if output.format == OutputFormat.JSON:
        print_document(report.to_dict())
    else:
        rows = [
            [r.name, r.status.value, r.detail if (output.is_verbose or r.status != CheckStatus.PASS) else ""]
            for r in report.results
        ]
        print_table(["Check", "Status", "Detail"], rows, title=f"Verification: {report.install_dir}", status_column=1)

    counts = report.counts()
    summary = f"{counts['PASS']} passed, {counts['FAIL']} failed, {counts['WARN']} warnings"
    if report.ok:
        success(summary)
    else:
        warning(summary)
        if not fix:
            info("Some problems can be repaired with --fix")
        raise typer.Exit(code=report.exit_code)
