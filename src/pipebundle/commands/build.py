"""Build commands -- run packaging jobs and write hybrid installers.

Provides the ``pipebundle build`` sub-command group:

* ``bundle`` -- run one packaging job per executable (PyInstaller, or a
  copy of a prebuilt file) in parallel and assemble the bundle directory
  with its ``bundle.json``.
* ``installer`` -- turn an existing bundle directory into a single
  self-extracting installer file.
* ``release`` -- both, in one go.

Usage::

    pipebundle build bundle --config pipebundle.json
    pipebundle build installer dist/pipelinewise --codec xz
    pipebundle build release -c pipebundle.json -j 8
"""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Optional

import typer

from pipebundle.exceptions import BundleError
from pipebundle.output import OutputFormat, error, get_output, info, print_document, print_table, success, suggest

build_app = typer.Typer(no_args_is_help=True)


def _load(config_file: Optional[str]):  # noqa: ANN202
    from pipebundle.config import load_build_config, resolve_config_path

    path = resolve_config_path(config_file).resolve()
    return load_build_config(path), path


def _run_bundle(ctx: typer.Context, config_file: Optional[str], output_dir: Optional[str],
                jobs: Optional[int], staging: Optional[str]):  # noqa: ANN202
    from pipebundle.jobs import build_bundle

    config, config_path = _load(config_file)
    bundle_dir = Path(output_dir) if output_dir else config_path.parent / config.output_dir / config.name
    force = bool((ctx.obj or {}).get("force"))
    staging_dir = Path(staging) if staging else Path(tempfile.mkdtemp(prefix=f"pipebundle-{config.name}-"))

    info(f"Building {config.name} {config.version} ({1 + len(config.plugins)} job(s))...")
    manifest, outcomes = build_bundle(config, config_path, bundle_dir.resolve(), staging_dir,
                                      max_workers=jobs, clean=force)
    if get_output().format != OutputFormat.JSON:
        print_table(
            ["Job", "Kind", "Result", "Seconds", "Bundle path"],
            [[o.job.name, o.job.kind, o.detail, f"{o.duration:.1f}", o.job.bundle_path] for o in outcomes],
            title="Packaging jobs",
        )
    return config, manifest, bundle_dir


@build_app.command("bundle")
def build_bundle_command(
    ctx: typer.Context,
    config_file: Optional[str] = typer.Option(None, "--config", "-c", help="Build config file. [default: ./pipebundle.json]"),
    output_dir: Optional[str] = typer.Option(None, "--output", "-o", help="Bundle directory. [default: <output_dir>/<name>]"),
    jobs: Optional[int] = typer.Option(None, "--jobs", "-j", min=1, help="Packaging jobs to run in parallel."),
    staging: Optional[str] = typer.Option(None, "--staging", help="Keep job artifacts in this directory."),
) -> None:
    """Run the packaging jobs and assemble a bundle directory.

    Every job must exit 0 and produce its executable; otherwise the build
    fails and lists the failed jobs. Use ``--force`` to replace an
    existing bundle directory.

    Example::

        pipebundle build bundle -c pipebundle.json -j 8
    """
    try:
        _, manifest, bundle_dir = _run_bundle(ctx, config_file, output_dir, jobs, staging)
    except BundleError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    if get_output().format == OutputFormat.JSON:
        print_document(manifest.to_dict())
    success(f"Bundle assembled: {bundle_dir}")
    suggest(f"Next: pipebundle build installer {bundle_dir}")


@build_app.command("installer")
def build_installer_command(
    bundle_dir: Path = typer.Argument(..., help="Bundle directory containing bundle.json."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Installer path. [default: <name>-<version>.run]"),
    codec: str = typer.Option("xz", "--codec", help="Payload compression: xz or gz."),
) -> None:
    """Write a self-extracting installer for a bundle directory.

    Example::

        pipebundle build installer dist/pipelinewise -o pipelinewise.run
    """
    from pipebundle.builder import build_installer

    try:
        report = build_installer(bundle_dir, output, codec=codec)
    except BundleError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    print_document(report.to_dict())
    size_mb = report.size / (1024 * 1024)
    success(f"Built: {report.installer} ({size_mb:.1f} MB)")
    suggest(f"Install it: sh {report.installer.name} [DESTINATION]")


@build_app.command("release")
def build_release_command(
    ctx: typer.Context,
    config_file: Optional[str] = typer.Option(None, "--config", "-c", help="Build config file. [default: ./pipebundle.json]"),
    jobs: Optional[int] = typer.Option(None, "--jobs", "-j", min=1, help="Packaging jobs to run in parallel."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Installer path."),
) -> None:
    """Build the bundle and its installer in one step."""
    from pipebundle.builder import build_installer, default_installer_name

    try:
        config, manifest, bundle_dir = _run_bundle(ctx, config_file, None, jobs, None)
        target = output or bundle_dir.parent / default_installer_name(manifest)
        report = build_installer(bundle_dir, target, codec=config.codec)
    except BundleError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    print_document(report.to_dict())
    success(f"Release ready: {report.installer}")
