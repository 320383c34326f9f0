"""Bundle manifest (``bundle.json``) shared by the builder, installer and verifier.

The manifest is the single description of a bundle's layout. The packaging
jobs write it at the bundle root, the Archive Builder copies it (compact,
one line) into the installer preamble, and the installer and verification
suite read it back to learn where the core executable, plugins and wrappers
live.

This module only uses the standard library because it is embedded in every
installer. Host-side build configuration is validated separately by the
Pydantic models in :mod:`pipebundle.models`.

Example ``bundle.json``::

    {
      "name": "pipelinewise",
      "version": "0.73.0",
      "core": "pipelinewise",
      "plugins": [
        {"name": "tap-postgres",
         "path": "connectors/tap-postgres/tap-postgres",
         "requires": {"name": "libpq", "minimum": "100000",
                      "probe": {"command": ["{entry}", "--libpq-version"]}}}
      ],
      "wrappers": ["plw"]
    }
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Optional

from pipebundle.exceptions import ConfigError

MANIFEST_FILENAME = "bundle.json"
"""File name of the manifest at the bundle (and install) root."""

DISCOVERY_DIRNAME = "discovery"
"""Directory under the home root holding one slot per plugin."""

SLOT_ENTRY_NAME = "entry"
"""Name of the indirection link inside each slot directory."""

ENV_SCRIPT_NAME = "env.sh"
"""Shell script exporting the home variable and ``PATH`` for an install."""

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")


@dataclass(frozen=True)
class Probe:
    """How to obtain a native dependency's version token.

    Exactly one of ``command`` or ``metadata`` is set. ``command`` is an argv
    list whose items may contain ``{entry}`` (absolute plugin path) and
    ``{install_dir}`` placeholders; its stdout is parsed. ``metadata`` is a
    bundle-relative file holding the token, either as plain text or as a JSON
    object indexed by ``key``.
    """

    command: tuple[str, ...] = ()
    metadata: Optional[str] = None
    key: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        if self.command:
            return {"command": list(self.command)}
        data: dict[str, Any] = {"metadata": self.metadata}
        if self.key is not None:
            data["key"] = self.key
        return data


@dataclass(frozen=True)
class NativeRequirement:
    """A minimum feature version of a native library bundled with a plugin."""

    name: str
    minimum: str
    probe: Probe

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "minimum": self.minimum, "probe": self.probe.to_dict()}


@dataclass(frozen=True)
class PluginEntry:
    """A plugin executable addressed by logical name."""

    name: str
    path: str
    requires: Optional[NativeRequirement] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "path": self.path}
        if self.requires is not None:
            data["requires"] = self.requires.to_dict()
        return data


@dataclass(frozen=True)
class BundleManifest:
    """Parsed ``bundle.json``.

    Attributes:
        name: Bundle name; also the wrapping directory inside the archive
            and the default install directory name.
        version: Bundle version string.
        core: Bundle-relative path of the core executable.
        plugins: Plugin executables, unique by name.
        wrappers: Bundle-relative paths of wrapper scripts.
        resources: Bundle-relative paths of plain resource files.
        contents: Top-level entry names of the bundle, recorded by the
            builder. These are the only artifacts removed when overwriting
            a prior install.
        home_env: Environment variable naming the home (state) root.
        state_dir: Name of the install-local home directory.
        config_file: Home-relative path of the default configuration record.
    """

    name: str
    version: str
    core: str
    plugins: tuple[PluginEntry, ...] = ()
    wrappers: tuple[str, ...] = ()
    resources: tuple[str, ...] = ()
    contents: tuple[str, ...] = ()
    home_env: str = ""
    state_dir: str = ""
    config_file: str = "config.json"
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        if not self.home_env:
            object.__setattr__(self, "home_env", default_home_env(self.name))
        if not self.state_dir:
            object.__setattr__(self, "state_dir", f".{self.name}")

    @property
    def core_name(self) -> str:
        """File name of the core executable (used as an install marker)."""
        return PurePosixPath(self.core).name

    def plugin(self, name: str) -> PluginEntry:
        for plugin in self.plugins:
            if plugin.name == name:
                return plugin
        raise ConfigError(f"Plugin '{name}' is not declared in the {self.name} manifest")

    def plugin_names(self) -> list[str]:
        return [p.name for p in self.plugins]

    def marker_names(self) -> list[str]:
        """Names whose presence in a directory identifies a prior install."""
        return [self.core_name, self.state_dir, MANIFEST_FILENAME]

    def prior_install_artifacts(self) -> list[str]:
        """Top-level names a confirmed overwrite is allowed to remove."""
        names = list(self.contents) or [
            PurePosixPath(p).parts[0]
            for p in (self.core, *(pl.path for pl in self.plugins), *self.wrappers, *self.resources)
        ]
        names.extend([MANIFEST_FILENAME, self.state_dir, ENV_SCRIPT_NAME])
        return sorted(set(names))

    def executables(self) -> list[str]:
        """Bundle-relative paths that must carry execute bits after install."""
        return [self.core, *(p.path for p in self.plugins), *self.wrappers]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(self.extra)
        data.update(
            {
                "name": self.name,
                "version": self.version,
                "core": self.core,
                "plugins": [p.to_dict() for p in self.plugins],
                "wrappers": list(self.wrappers),
                "resources": list(self.resources),
                "contents": list(self.contents),
                "home_env": self.home_env,
                "state_dir": self.state_dir,
                "config_file": self.config_file,
            }
        )
        return data

    def to_json(self, compact: bool = False) -> str:
        if compact:
            return json.dumps(self.to_dict(), separators=(",", ":"), sort_keys=True)
        return json.dumps(self.to_dict(), indent=2) + "\n"


def default_home_env(name: str) -> str:
    """Return the conventional home variable for a bundle, e.g. ``PIPELINEWISE_HOME``."""
    return re.sub(r"[^A-Za-z0-9]+", "_", name).upper() + "_HOME"


def _relative(value: Any, what: str) -> str:
    if not isinstance(value, str) or not value:
        raise ConfigError(f"Manifest {what} must be a non-empty string")
    path = PurePosixPath(value)
    if path.is_absolute() or ".." in path.parts:
        raise ConfigError(f"Manifest {what} must stay inside the bundle: {value!r}")
    return str(path)


def _single_line(value: Any, what: str) -> str:
    text = str(value)
    if _CONTROL_RE.search(text):
        raise ConfigError(f"Manifest {what} must not contain control characters: {text!r}")
    return text


def _parse_probe(data: Any, plugin: str) -> Probe:
    if not isinstance(data, dict):
        raise ConfigError(f"Plugin '{plugin}': probe must be an object")
    command = data.get("command")
    metadata = data.get("metadata")
    if bool(command) == bool(metadata):
        raise ConfigError(f"Plugin '{plugin}': probe needs exactly one of 'command' or 'metadata'")
    if command:
        if not isinstance(command, list) or not all(isinstance(a, str) for a in command):
            raise ConfigError(f"Plugin '{plugin}': probe command must be a list of strings")
        return Probe(command=tuple(command))
    return Probe(metadata=_relative(metadata, f"probe metadata of '{plugin}'"), key=data.get("key"))


def _parse_plugin(data: Any) -> PluginEntry:
    if not isinstance(data, dict):
        raise ConfigError("Manifest plugins must be objects")
    name = data.get("name")
    if not isinstance(name, str) or not _NAME_RE.match(name):
        raise ConfigError(f"Invalid plugin name: {name!r}")
    requires = None
    raw_req = data.get("requires")
    if raw_req is not None:
        if not isinstance(raw_req, dict) or "name" not in raw_req or "minimum" not in raw_req:
            raise ConfigError(f"Plugin '{name}': requires needs 'name' and 'minimum'")
        requires = NativeRequirement(
            name=str(raw_req["name"]),
            minimum=str(raw_req["minimum"]),
            probe=_parse_probe(raw_req.get("probe", {"command": ["{entry}", f"--{raw_req['name']}-version"]}), name),
        )
    return PluginEntry(name=name, path=_relative(data.get("path"), f"path of '{name}'"), requires=requires)


def manifest_from_dict(data: Any) -> BundleManifest:
    """Validate and convert a decoded ``bundle.json`` document.

    Raises:
        ConfigError: If a required key is missing, a path escapes the
            bundle, or a plugin name is declared twice.
    """
    if not isinstance(data, dict):
        raise ConfigError("Manifest must be a JSON object")
    for key in ("name", "version", "core"):
        if key not in data:
            raise ConfigError(f"Manifest is missing '{key}'")
    name = data["name"]
    if not isinstance(name, str) or not _NAME_RE.match(name):
        raise ConfigError(f"Invalid bundle name: {name!r}")

    plugins = tuple(_parse_plugin(p) for p in data.get("plugins", []))
    seen: set[str] = set()
    for plugin in plugins:
        if plugin.name in seen:
            raise ConfigError(f"Plugin '{plugin.name}' is declared more than once")
        seen.add(plugin.name)

    known = {"name", "version", "core", "plugins", "wrappers", "resources", "contents",
             "home_env", "state_dir", "config_file"}
    return BundleManifest(
        name=name,
        version=_single_line(data["version"], "version"),
        core=_relative(data["core"], "core"),
        plugins=plugins,
        wrappers=tuple(_relative(w, "wrapper") for w in data.get("wrappers", [])),
        resources=tuple(_relative(r, "resource") for r in data.get("resources", [])),
        contents=tuple(data.get("contents", [])),
        home_env=_single_line(data.get("home_env") or "", "home_env"),
        state_dir=_single_line(data.get("state_dir") or "", "state_dir"),
        config_file=_relative(data.get("config_file") or "config.json", "config_file"),
        extra={k: v for k, v in data.items() if k not in known},
    )


def parse_manifest(text: str) -> BundleManifest:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid manifest JSON: {exc}") from exc
    return manifest_from_dict(data)


def load_manifest(root: Path) -> BundleManifest:
    """Load ``bundle.json`` from a bundle or install directory.

    Raises:
        ConfigError: If the file is missing or invalid.
    """
    path = Path(root) / MANIFEST_FILENAME
    if not path.is_file():
        raise ConfigError(f"No {MANIFEST_FILENAME} found in {root}")
    return parse_manifest(path.read_text(encoding="utf-8"))
