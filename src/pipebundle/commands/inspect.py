"""Inspect commands -- read-only views of bundles, installers and installs."""

from __future__ import annotations

from pathlib import Path

import typer

from pipebundle.exceptions import BundleError
from pipebundle.output import OutputFormat, error, get_output, print_data, print_document, print_table, success, warning

inspect_app = typer.Typer(no_args_is_help=True)


def _fail(exc: BundleError) -> None:
    error(str(exc))
    raise typer.Exit(code=exc.exit_code) from None


@inspect_app.command("manifest")
def inspect_manifest(
    target: Path = typer.Argument(..., exists=True, help="Bundle or install directory, or an installer file."),
) -> None:
    """Print the bundle manifest.

    For an installer file the manifest header is read without extracting
    the payload.
    """
    from pipebundle.installer import load_installer_manifest
    from pipebundle.manifest import load_manifest

    try:
        manifest = load_manifest(target) if target.is_dir() else load_installer_manifest(target)
    except BundleError as exc:
        _fail(exc)
    print_document(manifest.to_dict())


@inspect_app.command("slots")
def inspect_slots(
    install_dir: Path = typer.Argument(..., help="Installation directory."),
    home: str = typer.Option(None, "--home", help="Home (state) directory override."),
) -> None:
    """List discovery slots and what each one resolves to."""
    from pipebundle.manifest import load_manifest
    from pipebundle.settings import Settings
    from pipebundle.slots import SlotRegistry

    try:
        manifest = load_manifest(install_dir)
    except BundleError as exc:
        _fail(exc)
    settings = Settings.resolve(manifest, install_dir, explicit_home=home)
    registry = SlotRegistry.from_discovery(settings)
    declared = set(manifest.plugin_names())
    names = sorted(declared | set(registry.names()))

    rows = []
    for name in names:
        resolution = registry.resolve(name)
        if resolution.found:
            state = "PASS"
        elif name in declared:
            state = "FAIL"
        else:
            state = "WARN"
        rows.append([name, state, str(resolution.path or "")])
    print_table(["Plugin", "Status", "Target"], rows, title=f"Slots: {settings.discovery_dir}", status_column=1)


@inspect_app.command("resolve")
def inspect_resolve(
    name: str = typer.Argument(..., help="Plugin name."),
    install_dir: Path = typer.Argument(..., help="Installation directory."),
    home: str = typer.Option(None, "--home", help="Home (state) directory override."),
) -> None:
    """Resolve a plugin name to its executable, the way the core CLI does.

    Prints the absolute path on stdout; exits 6 when the plugin cannot be
    resolved.
    """
    from pipebundle.manifest import load_manifest
    from pipebundle.settings import Settings
    from pipebundle.slots import SlotRegistry

    try:
        manifest = load_manifest(install_dir)
        settings = Settings.resolve(manifest, install_dir, explicit_home=home)
        path = SlotRegistry.from_discovery(settings).require(name)
    except BundleError as exc:
        _fail(exc)
    print_data(str(path))


@inspect_app.command("compat")
def inspect_compat(
    install_dir: Path = typer.Argument(..., help="Installation directory."),
) -> None:
    """Probe the host and every plugin's native requirement.

    Exits 5 when any requirement is known to be unmet; requirements that
    cannot be probed are reported as warnings.
    """
    from pipebundle.compat import CompatStatus, check_host_libc, verify_requirement
    from pipebundle.exit_codes import EXIT_COMPATIBILITY_FAILURE
    from pipebundle.manifest import load_manifest
    from pipebundle.settings import Settings

    try:
        manifest = load_manifest(install_dir)
    except BundleError as exc:
        _fail(exc)
    settings = Settings.for_install(manifest, install_dir)
    env = settings.child_env()

    records = [("host", check_host_libc())]
    for plugin in manifest.plugins:
        if plugin.requires is not None:
            entry = install_dir / plugin.path
            records.append((plugin.name, verify_requirement(plugin.requires, install_dir, entry, env=env)))

    if get_output().format == OutputFormat.JSON:
        print_document([dict(scope=scope, **_record_dict(r)) for scope, r in records])
    else:
        print_table(
            ["Scope", "Subsystem", "Required", "Observed", "Status"],
            [[scope, r.subsystem, f">= {r.required}", r.observed or "?", r.status.value] for scope, r in records],
            title="Compatibility",
        )

    incompatible = [r for _, r in records if r.status == CompatStatus.INCOMPATIBLE]
    for _, record in records:
        if record.status == CompatStatus.UNKNOWN:
            warning(record.describe())
    if incompatible:
        for record in incompatible:
            error(record.describe())
        raise typer.Exit(code=EXIT_COMPATIBILITY_FAILURE)
    success("All known requirements are met")


def _record_dict(record) -> dict:  # noqa: ANN001
    return {
        "subsystem": record.subsystem,
        "required": record.required,
        "observed": record.observed,
        "status": record.status.value,
        "detail": record.detail,
    }
