"""Tests for the output formatting system.

Covers:
- OutputFormat resolution (auto -> rich/plain based on TTY)
- NO_COLOR / TERM=dumb colour disabling
- stdout vs stderr discipline
- Quiet and verbose modes
- print_document and print_table in all three modes
- Step status lines
- Rich log handler installation
- Global instance management
"""

from __future__ import annotations

import json
import logging

import pytest
from rich.logging import RichHandler

from pipebundle import output as output_module
from pipebundle.output import (
    OutputFormat,
    OutputManager,
    _should_disable_color,
    configure_logging,
    get_output,
    reset_output,
    set_output,
)


@pytest.fixture()
def non_tty(monkeypatch):
    monkeypatch.setattr("pipebundle.output._is_tty", lambda: False)


@pytest.fixture()
def tty(monkeypatch):
    monkeypatch.setattr("pipebundle.output._is_tty", lambda: True)


@pytest.fixture()
def plain():
    return OutputManager(format=OutputFormat.PLAIN, no_color=True)


# ------------------------------------------------------------------ #
# Format resolution and colour
# ------------------------------------------------------------------ #


class TestOutputFormatResolution:

    def test_auto_resolves_to_plain_when_not_tty(self, non_tty):
        assert OutputManager(format=OutputFormat.AUTO).format == OutputFormat.PLAIN

    def test_auto_resolves_to_rich_when_tty(self, tty, monkeypatch):
        monkeypatch.delenv("NO_COLOR", raising=False)
        monkeypatch.delenv("TERM", raising=False)
        assert OutputManager(format=OutputFormat.AUTO).format == OutputFormat.RICH

    def test_no_color_flag_forces_plain_on_tty(self, tty, monkeypatch):
        monkeypatch.delenv("NO_COLOR", raising=False)
        assert OutputManager(format=OutputFormat.AUTO, no_color=True).format == OutputFormat.PLAIN

    def test_explicit_json_stays_json(self, tty):
        assert OutputManager(format=OutputFormat.JSON).format == OutputFormat.JSON


class TestColorDisabling:

    def test_no_color_env_any_value(self, monkeypatch):
        monkeypatch.setenv("NO_COLOR", "")
        assert _should_disable_color() is True

    def test_term_dumb_disables_color(self, monkeypatch):
        monkeypatch.delenv("NO_COLOR", raising=False)
        monkeypatch.setenv("TERM", "dumb")
        assert _should_disable_color() is True

    def test_normal_term_keeps_color(self, monkeypatch):
        monkeypatch.delenv("NO_COLOR", raising=False)
        monkeypatch.setenv("TERM", "xterm-256color")
        assert _should_disable_color() is False


# ------------------------------------------------------------------ #
# Stream discipline
# ------------------------------------------------------------------ #


class TestStdoutStderrDiscipline:
    """Results go to stdout, diagnostics to stderr."""

    def test_print_data_goes_to_stdout(self, capfd, plain):
        plain.print_data("/opt/plw/connectors/tap-postgres/tap-postgres")
        captured = capfd.readouterr()
        assert "tap-postgres" in captured.out
        assert captured.err == ""

    @pytest.mark.parametrize("method", ["info", "success", "warning", "error", "suggest"])
    def test_diagnostics_go_to_stderr(self, capfd, plain, method):
        getattr(plain, method)("disk check passed")
        captured = capfd.readouterr()
        assert captured.out == ""
        assert "disk check passed" in captured.err

    def test_status_line_goes_to_stderr(self, capfd, plain):
        plain.status("✓", "Extracted 12 entries (xz)", "ok")
        captured = capfd.readouterr()
        assert captured.out == ""
        assert captured.err.strip() == "✓ Extracted 12 entries (xz)"

    def test_warning_and_error_prefixes(self, capfd, plain):
        plain.warning("libpq version unknown")
        plain.error("installer is corrupt")
        err = capfd.readouterr().err.splitlines()
        assert err[0].startswith("Warning:")
        assert err[1].startswith("Error:")


class TestQuietAndVerbose:

    def test_quiet_suppresses_info_success_and_status(self, capfd):
        mgr = OutputManager(format=OutputFormat.PLAIN, no_color=True, quiet=True)
        mgr.info("hidden")
        mgr.success("hidden")
        mgr.status("✓", "hidden", "ok")
        assert capfd.readouterr().err == ""

    def test_quiet_keeps_fatal_status_warning_and_error(self, capfd):
        mgr = OutputManager(format=OutputFormat.PLAIN, no_color=True, quiet=True)
        mgr.status("✗", "glibc too old", "fatal")
        mgr.warning("careful")
        mgr.error("broken")
        err = capfd.readouterr().err
        assert "glibc too old" in err
        assert "careful" in err
        assert "broken" in err

    def test_debug_only_with_verbose(self, capfd):
        OutputManager(format=OutputFormat.PLAIN, no_color=True).debug("hidden")
        assert capfd.readouterr().err == ""
        OutputManager(format=OutputFormat.PLAIN, no_color=True, verbose=True).debug("probe argv")
        assert "[debug] probe argv" in capfd.readouterr().err


# ------------------------------------------------------------------ #
# Documents and tables
# ------------------------------------------------------------------ #


class TestPrintDocument:

    def test_json_mode(self, capfd):
        mgr = OutputManager(format=OutputFormat.JSON, no_color=True)
        mgr.print_document({"name": "pipelinewise", "plugins": ["tap-postgres"]})
        parsed = json.loads(capfd.readouterr().out)
        assert parsed == {"name": "pipelinewise", "plugins": ["tap-postgres"]}

    def test_plain_mode_key_value_lines(self, capfd, plain):
        plain.print_document({"name": "pipelinewise", "plugins": ["tap-postgres"]})
        lines = capfd.readouterr().out.strip().split("\n")
        assert lines[0] == "name\tpipelinewise"
        assert lines[1] == 'plugins\t["tap-postgres"]'

    def test_plain_mode_list(self, capfd, plain):
        plain.print_document(["a", "b"])
        assert capfd.readouterr().out.split() == ["a", "b"]

    def test_rich_mode_renders_keys(self, capfd):
        mgr = OutputManager(format=OutputFormat.RICH, no_color=True)
        mgr.print_document({"installer": "pipelinewise-0.73.0.run"})
        assert "pipelinewise-0.73.0.run" in capfd.readouterr().out


class TestPrintTable:

    def test_table_json_mode(self, capfd):
        mgr = OutputManager(format=OutputFormat.JSON, no_color=True)
        mgr.print_table(["Check", "Status"], [["core", "PASS"], ["config", "FAIL"]])
        parsed = json.loads(capfd.readouterr().out)
        assert parsed == [{"Check": "core", "Status": "PASS"}, {"Check": "config", "Status": "FAIL"}]

    def test_table_plain_mode(self, capfd, plain):
        plain.print_table(["Check", "Status"], [["core", "PASS"]], title="ignored")
        lines = capfd.readouterr().out.strip().split("\n")
        assert lines == ["Check\tStatus", "core\tPASS"]

    def test_table_rich_mode_with_status_column(self, capfd):
        mgr = OutputManager(format=OutputFormat.RICH, no_color=True)
        mgr.print_table(["Check", "Status"], [["slot:tap-postgres", "FAIL"]], title="Verification", status_column=1)
        out = capfd.readouterr().out
        assert "Verification" in out
        assert "slot:tap-postgres" in out
        assert "FAIL" in out


# ------------------------------------------------------------------ #
# Logging
# ------------------------------------------------------------------ #


class TestConfigureLogging:

    def _handlers(self):
        return [h for h in logging.getLogger("pipebundle").handlers if isinstance(h, RichHandler)]

    def test_installs_single_rich_handler(self):
        configure_logging(OutputManager(format=OutputFormat.PLAIN))
        configure_logging(OutputManager(format=OutputFormat.PLAIN))
        assert len(self._handlers()) == 1
        assert logging.getLogger("pipebundle").propagate is False

    @pytest.mark.parametrize(
        "kwargs, level",
        [({}, logging.WARNING), ({"verbose": True}, logging.DEBUG), ({"quiet": True}, logging.ERROR)],
    )
    def test_level_follows_flags(self, kwargs, level):
        configure_logging(OutputManager(format=OutputFormat.PLAIN, **kwargs))
        assert logging.getLogger("pipebundle").level == level


# ------------------------------------------------------------------ #
# Global instance management
# ------------------------------------------------------------------ #


class TestGlobalInstance:

    def test_get_output_creates_default(self):
        assert isinstance(get_output(), OutputManager)

    def test_set_then_reset_then_get(self):
        first = OutputManager(format=OutputFormat.JSON, no_color=True)
        set_output(first)
        assert get_output() is first
        reset_output()
        assert get_output() is not first

    def test_module_helpers_delegate(self, capfd):
        set_output(OutputManager(format=OutputFormat.JSON, no_color=True))
        output_module.print_document({"ok": True})
        output_module.status("⚠", "setup warning", "warning")
        captured = capfd.readouterr()
        assert json.loads(captured.out) == {"ok": True}
        assert "setup warning" in captured.err
