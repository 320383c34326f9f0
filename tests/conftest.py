"""Shared test fixtures for pipebundle.

Provides fake bundles made of small ``/bin/sh`` executables, an isolated
environment (HOME, XDG directories, ``PIPEBUNDLE_*`` variables), built
installers, and the output-reset fixture every CLI test relies on. These
fixtures are automatically discovered by pytest.
"""

from __future__ import annotations

import json
import os
import stat
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from pipebundle.compat import CompatStatus, CompatibilityRecord
from pipebundle.output import OutputFormat, OutputManager, reset_output, set_output


LIBPQ_OK = "170002"
LIBPQ_OLD = "90000"


# ---------------------------------------------------------------------------
# Auto-reset global output state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager after every test.

    The OutputManager caches references to sys.stdout/sys.stderr at
    creation time. When Typer's CliRunner redirects those streams and the
    test finishes, the cached references become stale. Resetting forces a
    fresh manager to be created on next use.
    """
    yield
    reset_output()


@pytest.fixture(autouse=True)
def _known_host_libc(monkeypatch: pytest.MonkeyPatch) -> None:
    """Pin the host glibc probe so results do not depend on the test machine."""
    monkeypatch.setattr("pipebundle.compat.probe_glibc_version", lambda: "2.31")


# ---------------------------------------------------------------------------
# Fake bundle helpers
# ---------------------------------------------------------------------------


def write_script(path: Path, body: str) -> Path:
    """Write an executable ``/bin/sh`` script."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def core_script(version: str = "0.73.0") -> str:
    return (
        'case "$1" in\n'
        f'  --version) echo "pipelinewise {version}" ;;\n'
        '  --help) echo "usage: pipelinewise <command>" ;;\n'
        '  *) echo "unknown command: $1" >&2; exit 2 ;;\n'
        "esac\n"
    )


def plugin_script(name: str, libpq: Optional[str] = LIBPQ_OK) -> str:
    version_case = f'  --libpq-version) echo "{libpq}" ;;\n' if libpq else ""
    return (
        'case "$1" in\n'
        f'  --help) echo "usage: {name} --config CONFIG" ;;\n'
        f"{version_case}"
        '  *) exit 1 ;;\n'
        "esac\n"
    )


def make_bundle(
    root: Path,
    name: str = "pipelinewise",
    version: str = "0.73.0",
    plugins: tuple[str, ...] = ("tap-postgres", "target-postgres"),
    libpq: Optional[str] = LIBPQ_OK,
    requires_on: tuple[str, ...] = ("tap-postgres",),
    wrappers: bool = True,
) -> Path:
    """Create a bundle directory with a core, plugins, a wrapper and ``bundle.json``."""
    bundle = root / name
    write_script(bundle / name, core_script(version))
    entries: list[dict[str, Any]] = []
    for plugin in plugins:
        rel = f"connectors/{plugin}/{plugin}"
        write_script(bundle / rel, plugin_script(plugin, libpq if plugin in requires_on else None))
        entry: dict[str, Any] = {"name": plugin, "path": rel}
        if plugin in requires_on:
            entry["requires"] = {
                "name": "libpq",
                "minimum": "100000",
                "probe": {"command": ["{entry}", "--libpq-version"]},
            }
        entries.append(entry)
    wrapper_paths = []
    if wrappers:
        write_script(bundle / "plw", f'exec "$(dirname "$0")/{name}" "$@"\n')
        wrapper_paths.append("plw")
    manifest = {
        "name": name,
        "version": version,
        "core": name,
        "plugins": entries,
        "wrappers": wrapper_paths,
    }
    (bundle / "bundle.json").write_text(json.dumps(manifest, indent=2), encoding="utf-8")
    return bundle


# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate HOME, the XDG directories and every PIPEBUNDLE_* variable.

    Changes the working directory to a fresh ``work`` directory under
    tmp_path.

    Returns:
        The tmp_path root directory for additional file creation.
    """
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setattr(Path, "home", classmethod(lambda cls: home))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    for var in ["PIPEBUNDLE_CONFIG", "PIPEBUNDLE_SKIP_SETUP", "PIPEBUNDLE_PYTHON", "PIPELINEWISE_HOME"]:
        monkeypatch.delenv(var, raising=False)
    work = tmp_path / "work"
    work.mkdir()
    monkeypatch.chdir(work)
    return tmp_path


@pytest.fixture
def bundle_dir(tmp_path: Path) -> Path:
    """A complete bundle whose plugin reports libpq 170002."""
    return make_bundle(tmp_path / "build")


@pytest.fixture
def bundle_factory(tmp_path: Path) -> Callable[..., Path]:
    """Build bundles with custom plugin sets or libpq versions."""
    counter = {"n": 0}

    def _factory(**kwargs: Any) -> Path:
        counter["n"] += 1
        return make_bundle(tmp_path / f"build-{counter['n']}", **kwargs)

    return _factory


@pytest.fixture
def built_installer(bundle_dir: Path, tmp_path: Path) -> Path:
    """A gz-compressed hybrid installer for :func:`bundle_dir`."""
    from pipebundle.builder import build_installer

    report = build_installer(bundle_dir, tmp_path / "out" / "pipelinewise-0.73.0.run", codec="gz")
    return report.installer


@pytest.fixture
def installer_factory(tmp_path: Path) -> Callable[[Path, str], Path]:
    from pipebundle.builder import build_installer

    def _factory(bundle: Path, codec: str = "gz") -> Path:
        target = tmp_path / "out" / f"{bundle.parent.name}-{codec}.run"
        return build_installer(bundle, target, codec=codec).installer

    return _factory


@pytest.fixture
def plenty_of_disk(monkeypatch: pytest.MonkeyPatch) -> None:
    """Report 10 GB free wherever the installer looks."""
    import shutil
    from collections import namedtuple

    usage = namedtuple("usage", "total used free")
    monkeypatch.setattr(shutil, "disk_usage", lambda path: usage(20 << 30, 10 << 30, 10 << 30))


def libc_record(observed: Optional[str], status: CompatStatus) -> CompatibilityRecord:
    return CompatibilityRecord("glibc", "2.17", observed, status)


# ---------------------------------------------------------------------------
# Output fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def quiet_output() -> OutputManager:
    """Install a PLAIN-format, quiet OutputManager as the global output."""
    output = OutputManager(format=OutputFormat.PLAIN, quiet=True)
    set_output(output)
    yield output
    reset_output()


@pytest.fixture
def json_output() -> OutputManager:
    """Install a JSON-format OutputManager as the global output."""
    output = OutputManager(format=OutputFormat.JSON)
    set_output(output)
    yield output
    reset_output()


# ---------------------------------------------------------------------------
# CLI runner fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    from typer.testing import CliRunner

    return CliRunner()


def clean_environ(**extra: str) -> dict[str, str]:
    """A minimal child-process environment for installer tests."""
    env = {"PATH": os.environ.get("PATH", "/usr/bin:/bin")}
    env.update(extra)
    return env
