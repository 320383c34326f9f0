"""Tests for pipebundle.verify -- the health-check suite and ``--fix``."""

from __future__ import annotations

import json
import shutil
from pathlib import Path

import pytest

from conftest import libc_record, write_script
from pipebundle import verify as verify_module
from pipebundle.compat import CompatStatus
from pipebundle.exit_codes import EXIT_SUCCESS, EXIT_VERIFY_FAILURE
from pipebundle.manifest import load_manifest
from pipebundle.settings import Settings
from pipebundle.slots import run_setup
from pipebundle.verify import (
    CheckResult,
    CheckStatus,
    VerifyReport,
    render_json,
    render_text,
    run_checks,
    verify_install,
)


@pytest.fixture
def installed(bundle_dir: Path) -> Path:
    """A bundle used in place with setup already performed."""
    manifest = load_manifest(bundle_dir)
    run_setup(Settings.for_install(manifest, bundle_dir), manifest)
    return bundle_dir


def _by_name(report: VerifyReport) -> dict[str, CheckResult]:
    return {r.name: r for r in report.results}


class TestRunChecks:

    def test_healthy_install_passes(self, installed: Path):
        report = verify_install(installed, environ={})
        assert report.ok
        assert report.exit_code == EXIT_SUCCESS
        assert [r.name for r in report.results] == [
            "manifest",
            "core",
            "plugin:tap-postgres",
            "plugin:target-postgres",
            "slot:tap-postgres",
            "slot:target-postgres",
            "wrapper:plw",
            "config",
            "glibc",
            "libpq:tap-postgres",
        ]

    def test_smoke_checks(self, installed: Path):
        results = _by_name(verify_install(installed, environ={}, smoke=True))
        assert results["smoke:core"].status == CheckStatus.PASS
        assert results["smoke:core"].detail == "pipelinewise 0.73.0"
        assert results["smoke:tap-postgres"].status == CheckStatus.PASS

    def test_failing_core_smoke(self, installed: Path):
        write_script(installed / "pipelinewise", "exit 4\n")
        results = _by_name(verify_install(installed, environ={}, smoke=True))
        assert results["smoke:core"].status == CheckStatus.FAIL
        assert results["smoke:core"].detail == "exit code 4"

    def test_core_version_on_stderr_only(self, installed: Path):
        write_script(installed / "pipelinewise", 'echo "pipelinewise 0.73.0" >&2\n')
        results = _by_name(verify_install(installed, environ={}, smoke=True))
        assert results["smoke:core"].status == CheckStatus.FAIL
        assert results["smoke:core"].detail == "no output"


    def test_every_check_runs_after_a_failure(self, installed: Path):
        (installed / "pipelinewise").unlink()
        report = verify_install(installed, environ={})
        results = _by_name(report)
        assert results["core"].status == CheckStatus.FAIL
        assert results["config"].status == CheckStatus.PASS
        assert "libpq:tap-postgres" in results
        assert report.exit_code == EXIT_VERIFY_FAILURE

    def test_missing_slot_fails(self, installed: Path):
        shutil.rmtree(installed / ".pipelinewise/discovery/tap-postgres")
        results = _by_name(verify_install(installed, environ={}))
        assert results["slot:tap-postgres"].status == CheckStatus.FAIL
        assert results["slot:tap-postgres"].detail == "no slot"
        assert results["slot:target-postgres"].status == CheckStatus.PASS

    def test_missing_discovery_dir(self, bundle_dir: Path):
        results = verify_install(bundle_dir, environ={}).results
        assert CheckResult("discovery", CheckStatus.FAIL,
                           f"missing: {bundle_dir.resolve() / '.pipelinewise/discovery'}") in results

    def test_missing_config_fails(self, installed: Path):
        (installed / ".pipelinewise/config.json").unlink()
        results = _by_name(verify_install(installed, environ={}))
        assert results["config"].status == CheckStatus.FAIL

    def test_non_executable_plugin(self, installed: Path):
        (installed / "connectors/target-postgres/target-postgres").chmod(0o644)
        results = _by_name(verify_install(installed, environ={}))
        assert results["plugin:target-postgres"].detail.startswith("not executable")

    def test_missing_manifest_is_a_single_failure(self, tmp_path: Path):
        report = verify_install(tmp_path, environ={})
        assert len(report.results) == 1
        assert report.results[0].name == "manifest"
        assert report.results[0].status == CheckStatus.FAIL
        assert report.exit_code == EXIT_VERIFY_FAILURE

    def test_unknown_library_version_is_a_warning(self, bundle_factory):
        bundle = bundle_factory(libpq=None)
        manifest = load_manifest(bundle)
        run_setup(Settings.for_install(manifest, bundle), manifest)

        report = verify_install(bundle, environ={})

        assert _by_name(report)["libpq:tap-postgres"].status == CheckStatus.WARN
        assert report.ok

    def test_old_library_version_fails(self, bundle_factory):
        bundle = bundle_factory(libpq="90000")
        manifest = load_manifest(bundle)
        run_setup(Settings.for_install(manifest, bundle), manifest)
        assert _by_name(verify_install(bundle, environ={}))["libpq:tap-postgres"].status == CheckStatus.FAIL

    def test_host_libc_result(self, installed: Path, monkeypatch):
        monkeypatch.setattr(verify_module, "check_host_libc",
                            lambda: libc_record("2.12", CompatStatus.INCOMPATIBLE))
        assert _by_name(verify_install(installed, environ={}))["glibc"].status == CheckStatus.FAIL

    def test_home_from_environment(self, installed: Path, tmp_path: Path):
        elsewhere = tmp_path / "state"
        manifest = load_manifest(installed)
        settings = Settings.resolve(manifest, installed, environ={"PIPELINEWISE_HOME": str(elsewhere)})
        results = {r.name: r for r in run_checks(settings, manifest)}
        assert results["config"].status == CheckStatus.FAIL
        assert results["slot:tap-postgres"].status == CheckStatus.FAIL

    def test_checks_are_read_only(self, bundle_dir: Path):
        verify_install(bundle_dir, environ={})
        assert not (bundle_dir / ".pipelinewise").exists()


class TestFix:

    def test_recreates_missing_slot(self, installed: Path):
        shutil.rmtree(installed / ".pipelinewise/discovery/tap-postgres")
        report = verify_install(installed, environ={}, fix=True)
        assert report.repaired == ["slot tap-postgres"]
        assert report.ok

    def test_restores_execute_bit(self, installed: Path):
        (installed / "plw").chmod(0o644)
        report = verify_install(installed, environ={}, fix=True)
        assert report.repaired == ["chmod +x plw"]
        assert _by_name(report)["wrapper:plw"].status == CheckStatus.PASS

    def test_creates_missing_config(self, installed: Path):
        (installed / ".pipelinewise/config.json").unlink()
        report = verify_install(installed, environ={}, fix=True)
        assert report.repaired == ["created config.json"]
        assert json.loads((installed / ".pipelinewise/config.json").read_text()) == {}

    def test_nothing_to_fix(self, installed: Path):
        assert verify_install(installed, environ={}, fix=True).repaired == []

    def test_failed_repair_is_reported_and_the_rest_continue(self, installed: Path, monkeypatch):
        shutil.rmtree(installed / ".pipelinewise/discovery")
        (installed / "plw").chmod(0o644)

        def refuse(root, name, target):
            raise PermissionError(13, "Permission denied")

        monkeypatch.setattr("pipebundle.slots._link_slot", refuse)
        report = verify_install(installed, environ={}, fix=True)

        assert report.repaired == ["chmod +x plw"]
        assert [a.split(":")[0] for a in report.unrepaired] == ["slot tap-postgres", "slot target-postgres"]
        assert not report.ok
        assert "⚠ could not repair: slot tap-postgres" in render_text(report)
        assert json.loads(render_json(report))["unrepaired"] == report.unrepaired

    def test_does_not_fix_incompatibility(self, bundle_factory):
        bundle = bundle_factory(libpq="90000")
        report = verify_install(bundle, environ={}, fix=True)
        assert not report.ok
        assert "slot tap-postgres" in report.repaired


class TestRendering:

    def _report(self) -> VerifyReport:
        return VerifyReport(
            install_dir=Path("/opt/plw"),
            results=[
                CheckResult("core", CheckStatus.PASS, "/opt/plw/pipelinewise"),
                CheckResult("slot:tap-postgres", CheckStatus.FAIL, "no slot"),
                CheckResult("libpq:tap-postgres", CheckStatus.WARN, "libpq: not detected"),
            ],
            repaired=["chmod +x plw"],
        )

    def test_text(self):
        text = render_text(self._report())
        assert text.splitlines() == [
            "✓ core",
            "✗ slot:tap-postgres  no slot",
            "⚠ libpq:tap-postgres  libpq: not detected",
            "ℹ repaired: chmod +x plw",
            "1 passed, 1 failed, 1 warnings",
        ]

    def test_text_verbose_shows_pass_detail(self):
        assert "✓ core  /opt/plw/pipelinewise" in render_text(self._report(), verbose=True)

    def test_json(self):
        data = json.loads(render_json(self._report()))
        assert data["ok"] is False
        assert data["summary"] == {"PASS": 1, "FAIL": 1, "WARN": 1}
        assert data["checks"][1] == {"name": "slot:tap-postgres", "status": "FAIL", "detail": "no slot"}
        assert data["repaired"] == ["chmod +x plw"]
