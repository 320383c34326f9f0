"""Packaging jobs: produce one executable per core/plugin and assemble the bundle.

Each executable is built by one job. A job either compiles a Python entry
point with PyInstaller (driven as a black box in a subprocess) or copies a
prebuilt executable. Jobs run concurrently in a thread pool; the assembler
waits for every job to finish before looking at any result.

A job only counts as successful when its process exited 0 **and** the
expected executable exists. If any job fails the whole build fails with a
:class:`~pipebundle.exceptions.BuildError` naming every failed job. Artifacts
of the jobs that did succeed stay in the staging directory.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pipebundle.config import source_path, write_json
from pipebundle.exceptions import BuildError
from pipebundle.manifest import MANIFEST_FILENAME, BundleManifest, NativeRequirement, PluginEntry, Probe
from pipebundle.models import BuildConfig, ExecutableConfig, PluginConfig, RequirementConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuildJob:
    """One executable to produce."""

    name: str
    kind: str
    bundle_path: str
    entry: Optional[Path] = None
    executable: Optional[Path] = None
    pyinstaller_args: tuple[str, ...] = ()
    hidden_imports: tuple[str, ...] = ()

    @property
    def uses_pyinstaller(self) -> bool:
        return self.entry is not None


@dataclass(frozen=True)
class JobOutcome:
    job: BuildJob
    ok: bool
    artifact: Optional[Path] = None
    detail: str = ""
    duration: float = 0.0


def _job(config_path: Path, exe: ExecutableConfig, kind: str) -> BuildJob:
    return BuildJob(
        name=exe.name,
        kind=kind,
        bundle_path=exe.bundle_path,
        entry=source_path(config_path, exe.entry) if exe.entry else None,
        executable=source_path(config_path, exe.executable) if exe.executable else None,
        pyinstaller_args=tuple(exe.pyinstaller_args),
        hidden_imports=tuple(exe.hidden_imports),
    )


def plan_jobs(config: BuildConfig, config_path: Path) -> list[BuildJob]:
    """One job for the core and one per plugin, in declaration order."""
    jobs = [_job(config_path, config.core, "core")]
    jobs.extend(_job(config_path, plugin, "plugin") for plugin in config.plugins)
    return jobs


def check_pyinstaller() -> bool:
    """Check whether PyInstaller is importable, without importing it here."""
    try:
        result = subprocess.run(
            [sys.executable, "-c", "import PyInstaller"],
            capture_output=True,
            timeout=10,
        )
        return result.returncode == 0
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return False


def pyinstaller_command(job: BuildJob, dist_dir: Path, work_dir: Path) -> list[str]:
    """The PyInstaller invocation for a single-file build of *job*."""
    args = [
        sys.executable, "-m", "PyInstaller",
        "--name", job.name,
        "--onefile",
        "--distpath", str(dist_dir),
        "--workpath", str(work_dir / "build"),
        "--specpath", str(work_dir),
        "--noconfirm",
        "--clean",
        "--log-level", "WARN",
    ]
    for module in job.hidden_imports:
        args.extend(["--hidden-import", module])
    args.extend(job.pyinstaller_args)
    args.append(str(job.entry))
    return args


def run_job(job: BuildJob, staging_dir: Path, timeout: float = 600) -> JobOutcome:
    """Produce the executable for *job* under ``staging_dir/<name>/``."""
    started = time.monotonic()
    dist_dir = staging_dir / job.name
    dist_dir.mkdir(parents=True, exist_ok=True)
    expected = dist_dir / job.name

    def outcome(ok: bool, detail: str = "") -> JobOutcome:
        return JobOutcome(job, ok, expected if ok else None, detail, time.monotonic() - started)

    if not job.uses_pyinstaller:
        if job.executable is None or not job.executable.is_file():
            return outcome(False, f"prebuilt executable not found: {job.executable}")
        shutil.copy2(job.executable, expected)
        return outcome(True, "copied")

    if not job.entry.is_file():
        return outcome(False, f"entry point not found: {job.entry}")
    command = pyinstaller_command(job, dist_dir, staging_dir / ".work" / job.name)
    logger.debug("Running %s", " ".join(command))
    try:
        result = subprocess.run(command, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        return outcome(False, f"timed out after {timeout:g}s")
    except FileNotFoundError as exc:
        return outcome(False, f"could not start PyInstaller: {exc}")

    if result.returncode != 0:
        tail = " | ".join(result.stderr.strip().splitlines()[-3:])
        return outcome(False, f"PyInstaller exited with {result.returncode}: {tail}")
    if not expected.is_file():
        return outcome(False, f"PyInstaller exited 0 but {expected} was not produced")
    return outcome(True, "built")


def run_jobs(jobs: list[BuildJob], staging_dir: Path, max_workers: int = 4,
             timeout: float = 600) -> list[JobOutcome]:
    """Run every job, wait for all of them, and fail if any failed.

    Raises:
        BuildError: Listing each failed job. Successful artifacts are kept.
    """
    staging_dir.mkdir(parents=True, exist_ok=True)
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pipebundle-job") as pool:
        futures = [pool.submit(run_job, job, staging_dir, timeout) for job in jobs]
        outcomes = [future.result() for future in futures]

    for result in outcomes:
        logger.info("job %s: %s (%.1fs) %s", result.job.name, "ok" if result.ok else "FAILED",
                    result.duration, result.detail)
    failed = [o for o in outcomes if not o.ok]
    if failed:
        details = "; ".join(f"{o.job.name}: {o.detail}" for o in failed)
        raise BuildError(f"{len(failed)} of {len(outcomes)} packaging job(s) failed: {details}")
    return outcomes


def _requirement(config: Optional[RequirementConfig]) -> Optional[NativeRequirement]:
    if config is None:
        return None
    probe = config.probe
    return NativeRequirement(
        name=config.name,
        minimum=config.minimum,
        probe=Probe(command=tuple(probe.command or ()), metadata=probe.metadata, key=probe.key),
    )


def _plugin_entry(plugin: PluginConfig) -> PluginEntry:
    return PluginEntry(name=plugin.name, path=plugin.bundle_path, requires=_requirement(plugin.requires))


def _place(source: Path, bundle_dir: Path, relative: str, mode: Optional[int]) -> None:
    target = bundle_dir / relative
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, target)
    if mode is not None:
        target.chmod(mode)


def assemble_bundle(
    config: BuildConfig,
    config_path: Path,
    outcomes: list[JobOutcome],
    bundle_dir: Path,
    clean: bool = False,
) -> BundleManifest:
    """Lay out executables, wrappers and resources and write ``bundle.json``.

    Raises:
        BuildError: If *bundle_dir* is not empty and *clean* is false, or a
            wrapper or resource source is missing.
    """
    if bundle_dir.exists() and any(bundle_dir.iterdir()):
        if not clean:
            raise BuildError(f"Bundle directory is not empty: {bundle_dir} (use --force to replace it)")
        shutil.rmtree(bundle_dir)
    bundle_dir.mkdir(parents=True, exist_ok=True)

    for result in outcomes:
        _place(result.artifact, bundle_dir, result.job.bundle_path, 0o755)
    for wrapper in config.wrappers:
        source = source_path(config_path, wrapper.source)
        if not source.is_file():
            raise BuildError(f"Wrapper source not found: {source}")
        _place(source, bundle_dir, wrapper.bundle_path, 0o755)
    for resource in config.resources:
        source = source_path(config_path, resource.source)
        if not source.is_file():
            raise BuildError(f"Resource not found: {source}")
        _place(source, bundle_dir, resource.bundle_path, None)

    contents = sorted({child.name for child in bundle_dir.iterdir()} | {MANIFEST_FILENAME})
    manifest = BundleManifest(
        name=config.name,
        version=config.version,
        core=config.core.bundle_path,
        plugins=tuple(_plugin_entry(p) for p in config.plugins),
        wrappers=tuple(w.bundle_path for w in config.wrappers),
        resources=tuple(r.bundle_path for r in config.resources),
        contents=tuple(contents),
        home_env=config.home_env or "",
        state_dir=config.state_dir or "",
        extra=dict(config.model_extra or {}),
    )
    write_json(bundle_dir / MANIFEST_FILENAME, manifest.to_dict())
    logger.info("Assembled %s %s in %s", manifest.name, manifest.version, bundle_dir)
    return manifest


def build_bundle(
    config: BuildConfig,
    config_path: Path,
    bundle_dir: Path,
    staging_dir: Path,
    max_workers: Optional[int] = None,
    clean: bool = False,
) -> tuple[BundleManifest, list[JobOutcome]]:
    """Run all packaging jobs and assemble their artifacts into *bundle_dir*."""
    jobs = plan_jobs(config, config_path)
    if any(job.uses_pyinstaller for job in jobs) and not check_pyinstaller():
        raise BuildError("PyInstaller is not installed. Install it: pip install 'pipebundle[build]'")
    outcomes = run_jobs(jobs, staging_dir, max_workers or config.jobs, config.timeout)
    manifest = assemble_bundle(config, config_path, outcomes, bundle_dir, clean=clean)
    return manifest, outcomes
