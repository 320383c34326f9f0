"""Installer Runtime: the program that runs inside a hybrid installer file.

The ``/bin/sh`` launcher at the top of the installer unpacks the embedded
runtime and calls :func:`main` with the installer's own path as
``argv[0]``::

    sh pipelinewise-0.73.0.run [DESTINATION] [--yes] [--skip-setup] [--verify] [--json]

Steps run strictly in order and the first fatal one stops the run with a
single diagnostic and a non-zero exit code. Nothing is rolled back.

1. host compatibility (glibc >= 2.17)
2. free disk space (>= 500 MB)
3. destination (create, or confirm replacing a previous install)
4. payload extraction
5. native compatibility of every plugin's bundled libraries
6. discovery setup and ``env.sh``
7. smoke test
8. summary

Interactive mode (no destination argument and a terminal on stdin) asks for
the destination. Otherwise answers to confirmations are read line by line
from stdin, and end of input answers with the default (which is always
"no" for anything destructive).
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import shlex
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, TextIO

from pipebundle import __version__
from pipebundle.compat import MIN_GLIBC, CompatStatus, CompatibilityRecord, check_host_libc, verify_requirement
from pipebundle.exceptions import (
    BundleError,
    CompatibilityFailure,
    ConfigError,
    ExtractionError,
    InstallCancelled,
    InvalidUsageError,
    PrerequisiteError,
)
from pipebundle.hybrid import extract_payload, read_manifest_header, read_preamble
from pipebundle.manifest import ENV_SCRIPT_NAME, BundleManifest, load_manifest
from pipebundle.pipeline import PipelineResult, Step, StepResult, run_pipeline
from pipebundle.settings import Settings
from pipebundle.slots import SetupReport, run_setup
from pipebundle.verify import render_json, render_text, verify_install

logger = logging.getLogger(__name__)

MIN_FREE_MB = 500
SKIP_SETUP_ENV = "PIPEBUNDLE_SKIP_SETUP"
SMOKE_TIMEOUT = 60


@dataclass
class InstallOptions:
    installer: Path
    destination: Optional[str] = None
    assume_yes: bool = False
    interactive: bool = False
    skip_setup: bool = False
    json_output: bool = False
    min_glibc: str = MIN_GLIBC
    min_free_mb: int = MIN_FREE_MB


class Prompter:
    """Yes/no and free-text questions answered from a line-oriented stream."""

    def __init__(self, stream: Optional[TextIO] = None, out: Optional[TextIO] = None,
                 assume_yes: bool = False) -> None:
        self._stream = stream if stream is not None else sys.stdin
        self._out = out if out is not None else sys.stderr
        self.assume_yes = assume_yes

    def _readline(self, prompt: str) -> Optional[str]:
        self._out.write(prompt)
        self._out.flush()
        line = self._stream.readline()
        if not line:
            self._out.write("\n")
            return None
        return line.strip()

    def confirm(self, question: str, default: bool = False) -> bool:
        if self.assume_yes:
            return True
        answer = self._readline(f"{question} [{'Y/n' if default else 'y/N'}] ")
        if not answer:
            return default
        return answer.lower() in ("y", "yes")

    def ask(self, question: str, default: str) -> str:
        answer = self._readline(f"{question} [{default}]: ")
        return answer or default


@dataclass
class InstallContext:
    options: InstallOptions
    manifest: BundleManifest
    prompter: Prompter
    environ: Mapping[str, str]
    destination: Path
    out: TextIO = field(default_factory=lambda: sys.stdout)
    settings: Optional[Settings] = None
    removed: list[str] = field(default_factory=list)
    compat: list[CompatibilityRecord] = field(default_factory=list)
    setup: Optional[SetupReport] = None
    core_version: str = ""
    summary: dict[str, Any] = field(default_factory=dict)


class PlainReporter:
    """Print step progress with status symbols."""

    _SYMBOLS = {"ok": "✓", "warning": "⚠", "fatal": "✗"}

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self._stream = stream if stream is not None else sys.stderr

    def step_started(self, step: Step) -> None:
        self._stream.write(f"ℹ {step.title}...\n")
        self._stream.flush()

    def step_finished(self, step: Step, result: StepResult) -> None:
        symbol = self._SYMBOLS[result.status.value]
        if result.is_fatal:
            self._stream.write(f"{symbol} Error: {result.message}\n")
        else:
            if result.message:
                self._stream.write(f"{symbol} {result.message}\n")
            for warning in result.warnings:
                if warning != result.message:
                    self._stream.write(f"⚠ {warning}\n")
        self._stream.flush()


def expand_destination(value: Optional[str], manifest: BundleManifest) -> Path:
    """Turn a destination argument into an absolute path (default ``~/<name>``)."""
    if not value:
        return Path.home() / manifest.name
    return Path(os.path.expanduser(value)).absolute()


def nearest_existing(path: Path) -> Path:
    for candidate in (path, *path.parents):
        if candidate.exists():
            return candidate
    return Path(path.anchor or "/")


def remove_prior_install(destination: Path, manifest: BundleManifest) -> list[str]:
    """Remove the artifacts of a previous install from *destination*.

    Only top-level names listed by the new manifest (and by the previous
    install's own manifest, when readable) are touched. The directory itself
    and anything not enumerated are kept.
    """
    names = set(manifest.prior_install_artifacts())
    try:
        names.update(load_manifest(destination).prior_install_artifacts())
    except ConfigError as exc:
        logger.debug("No usable previous manifest in %s: %s", destination, exc)

    removed = []
    root = destination.resolve()
    for name in sorted(names):
        if not name or name in (".", "..") or "/" in name or os.sep in name:
            continue
        path = destination / name
        if path.parent.resolve() != root:
            continue
        if path.is_symlink() or path.is_file():
            path.unlink()
        elif path.is_dir():
            shutil.rmtree(path)
        else:
            continue
        removed.append(name)
    logger.info("Removed previous install artifacts: %s", ", ".join(removed) or "none")
    return removed


def render_env_script(settings: Settings, manifest: BundleManifest) -> str:
    return (
        "#!/bin/sh\n"
        f"# {manifest.name} environment. Source this file: . ./{ENV_SCRIPT_NAME}\n"
        f"export {settings.home_env}={shlex.quote(str(settings.home))}\n"
        f"export PATH={shlex.quote(str(settings.install_dir))}:\"$PATH\"\n"
    )


def _run_quiet(argv: list[str], env: Mapping[str, str], cwd: Path) -> Optional[subprocess.CompletedProcess]:
    try:
        return subprocess.run(argv, capture_output=True, text=True, env=dict(env), cwd=cwd, timeout=SMOKE_TIMEOUT)
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("Could not run %s: %s", argv[0], exc)
        return None


# ------------------------------------------------------------------ #
# Steps
# ------------------------------------------------------------------ #


class HostCompatibilityStep:
    step_id = "host"
    title = "Checking host compatibility"

    def run(self, ctx: InstallContext) -> StepResult:
        record = check_host_libc(ctx.options.min_glibc)
        if record.status == CompatStatus.INCOMPATIBLE:
            raise PrerequisiteError(f"{record.describe()}. This bundle needs a host with glibc >= {record.required}")
        if record.status == CompatStatus.UNKNOWN:
            return StepResult.warning(record.describe())
        return StepResult.ok(f"glibc {record.observed}")


class DiskSpaceStep:
    step_id = "disk"
    title = "Checking disk space"

    def run(self, ctx: InstallContext) -> StepResult:
        anchor = nearest_existing(ctx.destination)
        free_mb = shutil.disk_usage(anchor).free // (1024 * 1024)
        if free_mb < ctx.options.min_free_mb:
            raise PrerequisiteError(
                f"Insufficient disk space on {anchor}: {free_mb} MB free, {ctx.options.min_free_mb} MB required"
            )
        return StepResult.ok(f"{free_mb} MB available")


class DestinationStep:
    step_id = "destination"
    title = "Preparing installation directory"

    def run(self, ctx: InstallContext) -> StepResult:
        dest = ctx.destination
        prompter = ctx.prompter
        if dest.exists() and not dest.is_dir():
            raise InvalidUsageError(f"Destination is not a directory: {dest}")

        if not dest.exists():
            if ctx.options.interactive and not prompter.confirm(f"Create {dest}?", default=True):
                raise InstallCancelled("Installation cancelled")
            try:
                dest.mkdir(parents=True)
            except OSError as exc:
                raise InvalidUsageError(f"Cannot create directory {dest}: {exc}") from exc
            return StepResult.ok(f"Installation directory: {dest}")

        if not os.access(dest, os.W_OK | os.X_OK):
            raise InvalidUsageError(f"Cannot write to directory: {dest}")

        if any(dest.iterdir()):
            markers = [m for m in ctx.manifest.marker_names() if (dest / m).exists() or (dest / m).is_symlink()]
            if markers:
                question = f"{dest} contains a previous {ctx.manifest.name} installation. Replace it?"
                if not prompter.confirm(question, default=False):
                    raise InstallCancelled(f"Installation cancelled; {dest} was left unchanged")
                ctx.removed = remove_prior_install(dest, ctx.manifest)
                return StepResult.ok(f"Replacing previous installation in {dest}")
            question = f"{dest} is not empty. Install alongside the existing files?"
            if not prompter.confirm(question, default=False):
                raise InstallCancelled(f"Installation cancelled; {dest} was left unchanged")
        return StepResult.ok(f"Installation directory: {dest}")


class ExtractionStep:
    step_id = "extract"
    title = "Extracting files"

    def run(self, ctx: InstallContext) -> StepResult:
        report = extract_payload(ctx.options.installer, ctx.destination)
        core = ctx.destination / ctx.manifest.core
        if not core.is_file():
            raise ExtractionError(f"Main executable not found after extraction: {ctx.manifest.core}")
        missing = []
        for relative in ctx.manifest.executables():
            path = ctx.destination / relative
            if path.is_file():
                path.chmod(path.stat().st_mode | 0o111)
            else:
                missing.append(relative)
        ctx.settings = Settings.for_install(ctx.manifest, ctx.destination)
        message = f"Extracted {report.members} entries ({report.codec})"
        if missing:
            return StepResult.warning(message, [f"missing executable: {m}" for m in missing])
        return StepResult.ok(message)


class NativeCompatibilityStep:
    step_id = "compat"
    title = "Verifying bundled native libraries"

    def run(self, ctx: InstallContext) -> StepResult:
        settings = ctx.settings
        env = settings.child_env(ctx.environ)
        warnings = []
        for plugin in ctx.manifest.plugins:
            if plugin.requires is None:
                continue
            record = verify_requirement(plugin.requires, settings.install_dir, settings.install_dir / plugin.path, env=env)
            ctx.compat.append(record)
            if record.status == CompatStatus.INCOMPATIBLE:
                raise CompatibilityFailure(f"{plugin.name}: {record.describe()}")
            if record.status == CompatStatus.UNKNOWN:
                warnings.append(f"{plugin.name}: {record.as_warning()}")
        if warnings:
            return StepResult.warning("Native library versions could not all be determined", warnings)
        if not ctx.compat:
            return StepResult.ok("No native requirements declared")
        return StepResult.ok(", ".join(f"{r.subsystem} {r.observed}" for r in ctx.compat))


class DiscoverySetupStep:
    step_id = "setup"
    title = "Configuring environment"

    def run(self, ctx: InstallContext) -> StepResult:
        settings = ctx.settings
        if not settings.env_script.exists():
            settings.env_script.write_text(render_env_script(settings, ctx.manifest), encoding="utf-8")
            settings.env_script.chmod(0o755)
        if ctx.options.skip_setup:
            return StepResult.ok(f"Environment script created: {ENV_SCRIPT_NAME} (plugin setup skipped)")

        ctx.setup = run_setup(settings, ctx.manifest)
        if ctx.setup.warnings:
            return StepResult.warning(
                f"Plugin setup finished with {len(ctx.setup.warnings)} warning(s)",
                [str(w) for w in ctx.setup.warnings],
            )
        if ctx.setup.already_set_up:
            return StepResult.ok("Plugins already set up")
        return StepResult.ok(f"Plugins set up: {', '.join(ctx.setup.created) or 'none'}")


class SmokeTestStep:
    step_id = "smoke"
    title = "Testing installation"

    def run(self, ctx: InstallContext) -> StepResult:
        settings = ctx.settings
        env = settings.child_env(ctx.environ)
        core = settings.install_dir / ctx.manifest.core
        result = _run_quiet([str(core), "--version"], env, settings.install_dir)
        output = ""
        if result is not None:
            output = (result.stdout or "").strip()
        if result is None or result.returncode != 0 or not output:
            raise BundleError(f"Main executable test failed: {core} --version")
        ctx.core_version = output.splitlines()[0]

        warnings = []
        for plugin in ctx.manifest.plugins:
            check = _run_quiet([str(settings.install_dir / plugin.path), "--help"], env, settings.install_dir)
            if check is None or check.returncode != 0:
                warnings.append(f"{plugin.name}: available (--help check did not pass)")
        if warnings:
            return StepResult.warning(f"Main executable: {ctx.core_version}", warnings)
        return StepResult.ok(f"Main executable: {ctx.core_version}")


class SummaryStep:
    step_id = "summary"
    title = "Finishing"

    def run(self, ctx: InstallContext) -> StepResult:
        settings = ctx.settings
        ctx.summary = {
            "name": ctx.manifest.name,
            "version": ctx.manifest.version,
            "location": str(settings.install_dir),
            "home": str(settings.home),
            "home_env": settings.home_env,
            "core_version": ctx.core_version,
            "plugins": ctx.manifest.plugin_names(),
            "compatibility": [
                {"subsystem": r.subsystem, "required": r.required, "observed": r.observed, "status": r.status.value}
                for r in ctx.compat
            ],
            "removed": list(ctx.removed),
            "setup_warnings": [str(w) for w in (ctx.setup.warnings if ctx.setup else [])],
        }
        if not ctx.options.json_output:
            ctx.out.write(self.render(ctx))
            ctx.out.flush()
        return StepResult.ok("Installation completed successfully!")

    @staticmethod
    def render(ctx: InstallContext) -> str:
        settings = ctx.settings
        lines = [
            "",
            "Installation Details:",
            f"  Location: {settings.install_dir}",
            f"  Version: {ctx.manifest.version}",
            f"  State: {settings.home}",
        ]
        for record in ctx.compat:
            lines.append(f"  {record.subsystem}: {record.observed or 'unknown'} (requires >= {record.required})")
        lines += [
            "",
            "Quick Start:",
            "  1. Configure environment:",
            f"     cd {settings.install_dir}",
            f"     . ./{ENV_SCRIPT_NAME}",
            "  2. Verify installation:",
            f"     {ctx.manifest.core_name} --version",
        ]
        if ctx.setup and ctx.setup.warnings:
            lines += ["", "Setup warnings:"]
            lines += [f"  - {w}" for w in ctx.setup.warnings]
        lines.append("")
        return "\n".join(lines) + "\n"


DEFAULT_STEPS = (
    HostCompatibilityStep,
    DiskSpaceStep,
    DestinationStep,
    ExtractionStep,
    NativeCompatibilityStep,
    DiscoverySetupStep,
    SmokeTestStep,
    SummaryStep,
)


def build_steps() -> list[Step]:
    return [cls() for cls in DEFAULT_STEPS]


def run_install(
    options: InstallOptions,
    manifest: BundleManifest,
    prompter: Optional[Prompter] = None,
    environ: Optional[Mapping[str, str]] = None,
    reporter: Any = None,
    out: Optional[TextIO] = None,
) -> tuple[PipelineResult, InstallContext]:
    """Run the install steps for *manifest* from the hybrid file ``options.installer``."""
    prompter = prompter or Prompter(assume_yes=options.assume_yes)
    environ = os.environ if environ is None else environ
    destination = options.destination
    if options.interactive and not destination:
        destination = prompter.ask("Installation directory", f"~/{manifest.name}")
    ctx = InstallContext(
        options=options,
        manifest=manifest,
        prompter=prompter,
        environ=environ,
        destination=expand_destination(destination, manifest),
        out=out or sys.stdout,
    )
    logger.info("Installing %s %s into %s", manifest.name, manifest.version, ctx.destination)
    result = run_pipeline(build_steps(), ctx, reporter if reporter is not None else PlainReporter())
    return result, ctx


def load_installer_manifest(installer: Path) -> BundleManifest:
    manifest = read_manifest_header(read_preamble(installer))
    if manifest is None:
        raise ExtractionError(f"Installer is corrupt: no manifest header in {installer}")
    return manifest


def _build_parser(prog: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=prog, description="Self-extracting installer.")
    parser.add_argument("destination", nargs="?", help="Installation directory (default: ~/<name>).")
    parser.add_argument("-y", "--yes", action="store_true", help="Answer yes to every confirmation.")
    parser.add_argument("--skip-setup", action="store_true", help=f"Skip plugin setup (or set {SKIP_SETUP_ENV}=1).")
    parser.add_argument("--verify", action="store_true", help="Verify an existing installation instead of installing.")
    parser.add_argument("--fix", action="store_true", help="With --verify, repair slots, permissions and config.")
    parser.add_argument("--json", action="store_true", help="Print the result as JSON on stdout.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    parser.add_argument("--version", action="version", version=f"%(prog)s (pipebundle {__version__})")
    return parser


def _env_flag(environ: Mapping[str, str], name: str) -> bool:
    return environ.get(name, "").strip().lower() in ("1", "true", "yes")


def read_piped_destination(stream: Optional[TextIO]) -> Optional[str]:
    """First line of a non-interactive stdin, or ``None`` on EOF or a blank line."""
    if stream is None or stream.closed:
        return None
    return stream.readline().strip() or None


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point of the embedded runtime.

    Args:
        argv: ``[installer_path, *arguments]``.

    Returns:
        The process exit code.
    """
    argv = list(sys.argv if argv is None else argv)
    installer = Path(argv[0]).absolute()
    args = _build_parser(installer.name).parse_args(argv[1:])
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(levelname)s %(name)s: %(message)s",
    )
    environ = os.environ

    try:
        manifest = load_installer_manifest(installer)
        if args.verify:
            dest = expand_destination(args.destination, manifest)
            report = verify_install(dest, environ=environ, smoke=True, fix=args.fix)
            sys.stdout.write((render_json(report) if args.json else render_text(report, args.verbose)) + "\n")
            return report.exit_code

        destination = args.destination
        interactive = destination is None and sys.stdin is not None and sys.stdin.isatty()
        if destination is None and not interactive:
            destination = read_piped_destination(sys.stdin)
        options = InstallOptions(
            installer=installer,
            destination=destination,
            assume_yes=args.yes,
            interactive=interactive,
            skip_setup=args.skip_setup or _env_flag(environ, SKIP_SETUP_ENV),
            json_output=args.json,
        )
        if interactive:
            sys.stderr.write(f"{manifest.name} {manifest.version} installer\n\n")
        result, ctx = run_install(options, manifest, environ=environ)
    except BundleError as exc:
        sys.stderr.write(f"✗ Error: {exc}\n")
        return exc.exit_code
    except KeyboardInterrupt:
        sys.stderr.write("\nCancelled.\n")
        return 130

    if args.json:
        payload = result.to_dict()
        payload["summary"] = ctx.summary
        sys.stdout.write(json.dumps(payload, indent=2) + "\n")
    return result.exit_code

