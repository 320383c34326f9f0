"""Pydantic models for the host-side build configuration (``pipebundle.json``).

The build configuration describes which executables the packaging jobs
produce and how they are laid out in the bundle. It is only read on the
build host. The installer never sees it: everything it needs is copied into
``bundle.json`` (see :mod:`pipebundle.manifest`) when the bundle is
assembled.

Example ``pipebundle.json``::

    {
      "name": "pipelinewise",
      "version": "0.73.0",
      "core": {"name": "pipelinewise", "entry": "pipelinewise/cli/__init__.py"},
      "plugins": [
        {"name": "tap-postgres", "entry": "connectors/tap_postgres.py",
         "requires": {"name": "libpq", "minimum": "100000",
                      "probe": {"command": ["{entry}", "--libpq-version"]}}},
        {"name": "target-postgres", "entry": "connectors/target_postgres.py"}
      ],
      "wrappers": [{"name": "plw", "source": "scripts/plw"}]
    }

All models use Pydantic v2. Paths are relative to the directory holding the
configuration file unless they are absolute.
"""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pipebundle.compat import LIBPQ_SCRAM_MIN

_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._-]*$"


def _bundle_relative(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    path = PurePosixPath(value)
    if path.is_absolute() or ".." in path.parts:
        raise ValueError(f"bundle path must stay inside the bundle: {value!r}")
    return str(path)


class ProbeConfig(BaseModel):
    """How the installer reads a native library's version.

    Exactly one of ``command`` or ``metadata`` must be given.
    """

    model_config = ConfigDict(extra="forbid")

    command: Optional[list[str]] = Field(
        default=None,
        description="argv run on the target host; {entry} and {install_dir} are substituted",
    )
    metadata: Optional[str] = Field(default=None, description="Bundle-relative file holding the version")
    key: Optional[str] = Field(default=None, description="JSON key inside the metadata file")

    @model_validator(mode="after")
    def _one_source(self) -> "ProbeConfig":
        if bool(self.command) == bool(self.metadata):
            raise ValueError("probe needs exactly one of 'command' or 'metadata'")
        return self


class RequirementConfig(BaseModel):
    """Minimum version of a native library bundled with a plugin.

    For ``libpq`` the minimum defaults to 100000 (SCRAM-SHA-256 support).
    The probe defaults to running the plugin with ``--<name>-version``.
    """

    name: str = Field(pattern=_NAME_PATTERN)
    minimum: Optional[str] = None
    probe: Optional[ProbeConfig] = None

    @model_validator(mode="after")
    def _defaults(self) -> "RequirementConfig":
        if self.minimum is None:
            if self.name != "libpq":
                raise ValueError(f"requirement '{self.name}' needs a 'minimum'")
            self.minimum = LIBPQ_SCRAM_MIN
        if self.probe is None:
            self.probe = ProbeConfig(command=["{entry}", f"--{self.name}-version"])
        return self


class ExecutableConfig(BaseModel):
    """An executable produced by one packaging job.

    Either ``entry`` (a Python entry-point script handed to PyInstaller) or
    ``executable`` (a prebuilt file copied as-is) is required.
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(pattern=_NAME_PATTERN)
    entry: Optional[str] = None
    executable: Optional[str] = None
    path: Optional[str] = Field(default=None, description="Bundle-relative destination")
    pyinstaller_args: list[str] = Field(default_factory=list)
    hidden_imports: list[str] = Field(default_factory=list)

    @field_validator("path")
    @classmethod
    def _check_path(cls, value: Optional[str]) -> Optional[str]:
        return _bundle_relative(value)

    @model_validator(mode="after")
    def _one_source(self) -> "ExecutableConfig":
        if bool(self.entry) == bool(self.executable):
            raise ValueError(f"'{self.name}' needs exactly one of 'entry' or 'executable'")
        return self

    @property
    def bundle_path(self) -> str:
        return self.path or self.name


class CoreConfig(ExecutableConfig):
    """The core pipeline CLI."""


class PluginConfig(ExecutableConfig):
    """A connector executable, addressed by the core through its slot."""

    requires: Optional[RequirementConfig] = None

    @property
    def bundle_path(self) -> str:
        return self.path or f"connectors/{self.name}/{self.name}"


class WrapperConfig(BaseModel):
    """A wrapper script copied into the bundle (for example ``plw``)."""

    name: str = Field(pattern=_NAME_PATTERN)
    source: str
    path: Optional[str] = None

    @field_validator("path")
    @classmethod
    def _check_path(cls, value: Optional[str]) -> Optional[str]:
        return _bundle_relative(value)

    @property
    def bundle_path(self) -> str:
        return self.path or self.name


class ResourceConfig(BaseModel):
    """A plain file (README, sample config) copied into the bundle."""

    source: str
    path: Optional[str] = None

    @field_validator("path")
    @classmethod
    def _check_path(cls, value: Optional[str]) -> Optional[str]:
        return _bundle_relative(value)

    @property
    def bundle_path(self) -> str:
        return self.path or PurePosixPath(self.source).name


class BuildConfig(BaseModel):
    """Top-level build configuration.

    Extra keys are preserved in ``model_extra`` and copied into the
    manifest untouched.
    """

    model_config = ConfigDict(extra="allow")

    name: str = Field(pattern=_NAME_PATTERN)
    version: str = Field(pattern=r"^[^\x00-\x1f\x7f]+$")
    core: CoreConfig
    plugins: list[PluginConfig] = Field(default_factory=list)
    wrappers: list[WrapperConfig] = Field(default_factory=list)
    resources: list[ResourceConfig] = Field(default_factory=list)
    home_env: Optional[str] = None
    state_dir: Optional[str] = None
    codec: Literal["xz", "gz"] = "xz"
    jobs: int = Field(default=4, ge=1)
    output_dir: str = "dist"
    timeout: int = Field(default=600, ge=1, description="Seconds allowed per packaging job")

    @model_validator(mode="after")
    def _unique_names(self) -> "BuildConfig":
        seen: set[str] = set()
        for plugin in self.plugins:
            if plugin.name in seen:
                raise ValueError(f"plugin '{plugin.name}' is declared more than once")
            seen.add(plugin.name)
        paths = [self.core.bundle_path, *(p.bundle_path for p in self.plugins), *(w.bundle_path for w in self.wrappers)]
        duplicates = sorted({p for p in paths if paths.count(p) > 1})
        if duplicates:
            raise ValueError(f"bundle paths collide: {', '.join(duplicates)}")
        return self
