"""Verification Suite: read-only health checks for an install.

Every check runs, whatever the outcome of the previous ones, and the caller
gets the full list. The overall result is a failure if and only if at least
one check failed; warnings (for example an undeterminable library version)
never fail a run.

:func:`repair` is the one writer in this module. It performs the scoped fix
behind ``verify --fix``: recreate missing slots, restore execute bits and
create a missing default configuration record.
"""

from __future__ import annotations

import json
import logging
import os
import stat
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

from pipebundle.compat import CompatStatus, CompatibilityRecord, check_host_libc, verify_requirement
from pipebundle.exceptions import ConfigError
from pipebundle.exit_codes import EXIT_SUCCESS, EXIT_VERIFY_FAILURE
from pipebundle.manifest import BundleManifest, load_manifest
from pipebundle.settings import Settings
from pipebundle.slots import SlotRegistry, ensure_default_config, repair_slots

logger = logging.getLogger(__name__)


class CheckStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    WARN = "WARN"


@dataclass(frozen=True)
class CheckResult:
    name: str
    status: CheckStatus
    detail: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "status": self.status.value, "detail": self.detail}


@dataclass
class VerifyReport:
    install_dir: Path
    results: list[CheckResult] = field(default_factory=list)
    repaired: list[str] = field(default_factory=list)
    unrepaired: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not any(r.status == CheckStatus.FAIL for r in self.results)

    @property
    def exit_code(self) -> int:
        return EXIT_SUCCESS if self.ok else EXIT_VERIFY_FAILURE

    def counts(self) -> dict[str, int]:
        return {s.value: sum(1 for r in self.results if r.status == s) for s in CheckStatus}

    def to_dict(self) -> dict[str, Any]:
        return {
            "install_dir": str(self.install_dir),
            "ok": self.ok,
            "summary": self.counts(),
            "checks": [r.to_dict() for r in self.results],
            "repaired": list(self.repaired),
            "unrepaired": list(self.unrepaired),
        }


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def _check_executable(name: str, path: Path) -> CheckResult:
    if not path.exists():
        return CheckResult(name, CheckStatus.FAIL, f"missing: {path}")
    if not _is_executable(path):
        return CheckResult(name, CheckStatus.FAIL, f"not executable: {path}")
    return CheckResult(name, CheckStatus.PASS, str(path))


def _from_record(name: str, record: CompatibilityRecord) -> CheckResult:
    status = {
        CompatStatus.COMPATIBLE: CheckStatus.PASS,
        CompatStatus.INCOMPATIBLE: CheckStatus.FAIL,
        CompatStatus.UNKNOWN: CheckStatus.WARN,
    }[record.status]
    return CheckResult(name, status, record.describe())


def _smoke(name: str, argv: list[str], env: dict[str, str], need_output: bool) -> CheckResult:
    try:
        result = subprocess.run(argv, capture_output=True, text=True, timeout=60, env=env)
    except (OSError, subprocess.TimeoutExpired) as exc:
        return CheckResult(name, CheckStatus.FAIL, f"could not run: {exc}")
    if result.returncode != 0:
        return CheckResult(name, CheckStatus.FAIL, f"exit code {result.returncode}")
    output = (result.stdout if need_output else result.stdout or result.stderr).strip()
    if need_output and not output:
        return CheckResult(name, CheckStatus.FAIL, "no output")
    return CheckResult(name, CheckStatus.PASS, output.splitlines()[0] if output else "ok")


def run_checks(settings: Settings, manifest: BundleManifest, smoke: bool = False) -> list[CheckResult]:
    """Run every check against an install and return all results."""
    install_dir = settings.install_dir
    results = [CheckResult("manifest", CheckStatus.PASS, f"{manifest.name} {manifest.version}")]
    results.append(_check_executable("core", install_dir / manifest.core))

    for plugin in manifest.plugins:
        results.append(_check_executable(f"plugin:{plugin.name}", install_dir / plugin.path))

    if not settings.discovery_dir.is_dir():
        results.append(CheckResult("discovery", CheckStatus.FAIL, f"missing: {settings.discovery_dir}"))
    registry = SlotRegistry.from_discovery(settings)
    for plugin in manifest.plugins:
        resolution = registry.resolve(plugin.name)
        if resolution.found:
            results.append(CheckResult(f"slot:{plugin.name}", CheckStatus.PASS, str(resolution.path)))
        else:
            detail = f"does not resolve to an executable ({resolution.path})" if resolution.path else "no slot"
            results.append(CheckResult(f"slot:{plugin.name}", CheckStatus.FAIL, detail))

    for wrapper in manifest.wrappers:
        results.append(_check_executable(f"wrapper:{Path(wrapper).name}", install_dir / wrapper))

    config = settings.home / manifest.config_file
    if config.is_file():
        results.append(CheckResult("config", CheckStatus.PASS, str(config)))
    else:
        results.append(CheckResult("config", CheckStatus.FAIL, f"missing: {config}"))

    results.append(_from_record("glibc", check_host_libc()))
    env = settings.child_env()
    for plugin in manifest.plugins:
        if plugin.requires is None:
            continue
        entry = install_dir / plugin.path
        record = verify_requirement(plugin.requires, install_dir, entry, env=env)
        results.append(_from_record(f"{plugin.requires.name}:{plugin.name}", record))

    if smoke:
        results.append(_smoke("smoke:core", [str(install_dir / manifest.core), "--version"], env, True))
        for plugin in manifest.plugins:
            results.append(_smoke(f"smoke:{plugin.name}", [str(install_dir / plugin.path), "--help"], env, False))

    for result in results:
        logger.debug("%s %s %s", result.status.value, result.name, result.detail)
    return results


def repair(settings: Settings, manifest: BundleManifest) -> tuple[list[str], list[str]]:
    """Fix what ``verify --fix`` is allowed to fix.

    Every action is attempted even when an earlier one fails.

    Returns:
        ``(repaired, failed)`` descriptions of the actions taken and of
        the ones that could not be completed.
    """
    actions: list[str] = []
    failed: list[str] = []
    for relative in manifest.executables():
        path = settings.install_dir / relative
        if path.is_file() and not os.access(path, os.X_OK):
            try:
                path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
            except OSError as exc:
                logger.warning("Could not restore execute bit on %s: %s", path, exc)
                failed.append(f"chmod +x {relative}: {exc}")
                continue
            actions.append(f"chmod +x {relative}")

    slots = repair_slots(settings, manifest)
    actions.extend(f"slot {name}" for name in slots.created)
    failed.extend(f"slot {w.subject}: {w.message}" for w in slots.warnings)

    try:
        if ensure_default_config(settings, manifest):
            actions.append(f"created {manifest.config_file}")
    except OSError as exc:
        logger.warning("Could not create default config: %s", exc)
        failed.append(f"{manifest.config_file}: {exc}")
    return actions, failed


def verify_install(
    install_dir: Path,
    environ: Optional[Mapping[str, str]] = None,
    explicit_home: Optional[str] = None,
    smoke: bool = False,
    fix: bool = False,
) -> VerifyReport:
    """Load the manifest of *install_dir* and run the suite against it.

    A missing or invalid manifest is reported as a single failed check
    rather than raised.
    """
    install_dir = Path(install_dir).expanduser().resolve()
    report = VerifyReport(install_dir=install_dir)
    try:
        manifest = load_manifest(install_dir)
    except ConfigError as exc:
        report.results.append(CheckResult("manifest", CheckStatus.FAIL, str(exc)))
        return report
    settings = Settings.resolve(manifest, install_dir, environ=environ, explicit_home=explicit_home)
    if fix:
        report.repaired, report.unrepaired = repair(settings, manifest)
    report.results = run_checks(settings, manifest, smoke=smoke)
    return report


def render_text(report: VerifyReport, verbose: bool = False) -> str:
    """Plain-text rendering used inside the installer."""
    lines = []
    for result in report.results:
        mark = {"PASS": "✓", "FAIL": "✗", "WARN": "⚠"}[result.status.value]
        line = f"{mark} {result.name}"
        if verbose or result.status != CheckStatus.PASS:
            line += f"  {result.detail}"
        lines.append(line)
    for action in report.repaired:
        lines.append(f"ℹ repaired: {action}")
    for action in report.unrepaired:
        lines.append(f"⚠ could not repair: {action}")
    counts = report.counts()
    lines.append(f"{counts['PASS']} passed, {counts['FAIL']} failed, {counts['WARN']} warnings")
    return "\n".join(lines)


def render_json(report: VerifyReport) -> str:
    return json.dumps(report.to_dict(), indent=2)
