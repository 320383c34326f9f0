"""Tests for pipebundle.manifest and pipebundle.settings."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from pipebundle.exceptions import ConfigError
from pipebundle.manifest import (
    BundleManifest,
    PluginEntry,
    default_home_env,
    load_manifest,
    manifest_from_dict,
    parse_manifest,
)
from pipebundle.settings import Settings


def _doc(**overrides):
    data = {
        "name": "pipelinewise",
        "version": "0.73.0",
        "core": "pipelinewise",
        "plugins": [
            {"name": "tap-postgres", "path": "connectors/tap-postgres/tap-postgres",
             "requires": {"name": "libpq", "minimum": "100000"}},
            {"name": "target-postgres", "path": "connectors/target-postgres/target-postgres"},
        ],
        "wrappers": ["plw"],
    }
    data.update(overrides)
    return data


class TestManifestParsing:

    def test_defaults_derived_from_name(self):
        manifest = manifest_from_dict(_doc())
        assert manifest.home_env == "PIPELINEWISE_HOME"
        assert manifest.state_dir == ".pipelinewise"
        assert manifest.config_file == "config.json"
        assert manifest.plugin_names() == ["tap-postgres", "target-postgres"]

    def test_requirement_gets_default_probe(self):
        requires = manifest_from_dict(_doc()).plugin("tap-postgres").requires
        assert requires.minimum == "100000"
        assert requires.probe.command == ("{entry}", "--libpq-version")

    def test_metadata_probe(self):
        doc = _doc(plugins=[{"name": "tap-postgres", "path": "tap",
                             "requires": {"name": "libpq", "minimum": "100000",
                                          "probe": {"metadata": "libpq.json", "key": "version"}}}])
        probe = manifest_from_dict(doc).plugin("tap-postgres").requires.probe
        assert probe.metadata == "libpq.json"
        assert probe.key == "version"
        assert probe.command == ()

    def test_probe_needs_exactly_one_source(self):
        doc = _doc(plugins=[{"name": "tap", "path": "tap",
                             "requires": {"name": "libpq", "minimum": "1",
                                          "probe": {"command": ["x"], "metadata": "y"}}}])
        with pytest.raises(ConfigError, match="exactly one"):
            manifest_from_dict(doc)

    @pytest.mark.parametrize("missing", ["name", "version", "core"])
    def test_required_keys(self, missing):
        doc = _doc()
        del doc[missing]
        with pytest.raises(ConfigError, match=missing):
            manifest_from_dict(doc)

    def test_duplicate_plugin_names_rejected(self):
        doc = _doc(plugins=[{"name": "tap", "path": "a"}, {"name": "tap", "path": "b"}])
        with pytest.raises(ConfigError, match="more than once"):
            manifest_from_dict(doc)

    @pytest.mark.parametrize("path", ["/usr/bin/tap", "../tap", "connectors/../../tap"])
    def test_paths_must_stay_inside_bundle(self, path):
        with pytest.raises(ConfigError, match="inside the bundle"):
            manifest_from_dict(_doc(core=path))

    @pytest.mark.parametrize("key", ["version", "home_env", "state_dir"])
    def test_single_line_fields_reject_control_characters(self, key):
        with pytest.raises(ConfigError, match="control characters"):
            manifest_from_dict(_doc(**{key: "1.0\nrm -rf ~"}))

    def test_unknown_plugin_lookup(self):
        with pytest.raises(ConfigError, match="not declared"):
            manifest_from_dict(_doc()).plugin("tap-mysql")

    def test_invalid_json(self):
        with pytest.raises(ConfigError, match="Invalid manifest JSON"):
            parse_manifest("{not json")

    def test_extra_keys_survive_round_trip(self):
        manifest = manifest_from_dict(_doc(homepage="https://example.invalid"))
        again = parse_manifest(manifest.to_json(compact=True))
        assert again == manifest
        assert again.extra == {"homepage": "https://example.invalid"}

    def test_compact_json_is_one_line(self):
        assert "\n" not in manifest_from_dict(_doc()).to_json(compact=True)

    def test_load_manifest_missing(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="bundle.json"):
            load_manifest(tmp_path)

    def test_load_manifest(self, tmp_path: Path):
        (tmp_path / "bundle.json").write_text(json.dumps(_doc()))
        assert load_manifest(tmp_path).name == "pipelinewise"


class TestInstallArtifacts:

    def test_markers(self):
        manifest = manifest_from_dict(_doc())
        assert manifest.marker_names() == ["pipelinewise", ".pipelinewise", "bundle.json"]

    def test_artifacts_from_contents(self):
        manifest = manifest_from_dict(_doc(contents=["bundle.json", "connectors", "pipelinewise", "plw"]))
        assert manifest.prior_install_artifacts() == [
            ".pipelinewise", "bundle.json", "connectors", "env.sh", "pipelinewise", "plw",
        ]

    def test_artifacts_without_contents_use_top_level_paths(self):
        manifest = manifest_from_dict(_doc())
        assert "connectors" in manifest.prior_install_artifacts()
        assert "tap-postgres" not in manifest.prior_install_artifacts()

    def test_executables(self):
        manifest = manifest_from_dict(_doc())
        assert manifest.executables() == [
            "pipelinewise",
            "connectors/tap-postgres/tap-postgres",
            "connectors/target-postgres/target-postgres",
            "plw",
        ]

    def test_default_home_env(self):
        assert default_home_env("my-pipeline.cli") == "MY_PIPELINE_CLI_HOME"


class TestSettings:

    @pytest.fixture
    def manifest(self) -> BundleManifest:
        return BundleManifest(name="pipelinewise", version="1", core="pipelinewise",
                              plugins=(PluginEntry("tap", "tap"),))

    def test_for_install_uses_state_dir(self, manifest, tmp_path: Path):
        settings = Settings.for_install(manifest, tmp_path)
        assert settings.home == tmp_path.resolve() / ".pipelinewise"
        assert settings.discovery_dir == settings.home / "discovery"
        assert settings.env_script == tmp_path.resolve() / "env.sh"

    def test_resolve_precedence(self, manifest, tmp_path: Path):
        env = {"PIPELINEWISE_HOME": str(tmp_path / "from-env")}
        assert Settings.resolve(manifest, tmp_path, env, explicit_home=str(tmp_path / "flag")).home == (tmp_path / "flag").resolve()
        assert Settings.resolve(manifest, tmp_path, env).home == (tmp_path / "from-env").resolve()
        assert Settings.resolve(manifest, tmp_path, {}).home == tmp_path.resolve() / ".pipelinewise"

    def test_from_environ_defaults_to_user_home(self, manifest, tmp_path: Path, monkeypatch):
        monkeypatch.setattr(Path, "home", classmethod(lambda cls: tmp_path))
        assert Settings.from_environ(manifest, tmp_path / "inst", {}).home == tmp_path / ".pipelinewise"

    def test_child_env_exports_home_and_path(self, manifest, tmp_path: Path):
        settings = Settings.for_install(manifest, tmp_path)
        env = settings.child_env({"PATH": "/usr/bin"})
        assert env["PIPELINEWISE_HOME"] == str(settings.home)
        assert env["PATH"] == f"{settings.install_dir}:/usr/bin"
