"""Explicit settings object for an install target.

The environment is read exactly once, at the process boundary, into a
:class:`Settings` instance which is then passed down to every component that
needs the install or home directory. Nothing below this module consults
``os.environ`` directly.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from pipebundle.manifest import DISCOVERY_DIRNAME, ENV_SCRIPT_NAME, BundleManifest


@dataclass(frozen=True)
class Settings:
    """Where a bundle lives and where its state goes.

    Attributes:
        install_dir: Directory the bundle was extracted into.
        home: Home (state) root holding ``discovery/`` and the default
            configuration record. Distinct from ``install_dir``.
        home_env: Name of the environment variable that designates ``home``
            for the core CLI and the plugins.
    """

    install_dir: Path
    home: Path
    home_env: str

    @property
    def discovery_dir(self) -> Path:
        return self.home / DISCOVERY_DIRNAME

    @property
    def env_script(self) -> Path:
        return self.install_dir / ENV_SCRIPT_NAME

    @classmethod
    def for_install(cls, manifest: BundleManifest, install_dir: Path) -> "Settings":
        """Settings used by the installer: home is ``<install_dir>/<state_dir>``."""
        install_dir = Path(install_dir).expanduser().resolve()
        return cls(install_dir=install_dir, home=install_dir / manifest.state_dir, home_env=manifest.home_env)

    @classmethod
    def resolve(
        cls,
        manifest: BundleManifest,
        install_dir: Path,
        environ: Optional[Mapping[str, str]] = None,
        explicit_home: Optional[str] = None,
    ) -> "Settings":
        """Resolve settings for an existing install.

        Precedence: *explicit_home* (a ``--home`` flag), then the manifest's
        home variable in *environ*, then the install-local state directory.
        """
        environ = os.environ if environ is None else environ
        install_dir = Path(install_dir).expanduser().resolve()
        if explicit_home:
            home = Path(explicit_home).expanduser()
        elif environ.get(manifest.home_env):
            home = Path(environ[manifest.home_env]).expanduser()
        else:
            home = install_dir / manifest.state_dir
        return cls(install_dir=install_dir, home=home.resolve(), home_env=manifest.home_env)

    @classmethod
    def from_environ(
        cls,
        manifest: BundleManifest,
        install_dir: Path,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "Settings":
        """Core-side resolution: the home variable, else ``~/.<name>``."""
        environ = os.environ if environ is None else environ
        value = environ.get(manifest.home_env)
        home = Path(value).expanduser() if value else Path.home() / f".{manifest.name}"
        return cls(install_dir=Path(install_dir).expanduser().resolve(), home=home, home_env=manifest.home_env)

    def child_env(self, base: Optional[Mapping[str, str]] = None) -> dict[str, str]:
        """Environment for a child process of the core CLI or a plugin.

        The home variable is always exported, and the install directory is
        prepended to ``PATH`` so wrappers can find the core executable.
        """
        env = dict(os.environ if base is None else base)
        env[self.home_env] = str(self.home)
        path = env.get("PATH", "")
        env["PATH"] = f"{self.install_dir}{os.pathsep}{path}" if path else str(self.install_dir)
        return env
