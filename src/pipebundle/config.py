"""Host-side configuration: XDG paths, atomic writes, build config loading.

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.pipebundle/`` elsewhere. Only the data directory is used, for crash
  logs. See :func:`get_data_dir`.
* **Build configuration** -- ``pipebundle.json`` validated into a
  :class:`~pipebundle.models.BuildConfig`. Located with
  :func:`resolve_config_path` (flag, then ``PIPEBUNDLE_CONFIG``, then the
  current directory).
* **Atomic writes** -- :func:`_atomic_write` writes a temp file in the target
  directory and renames it over the destination, so a crash never leaves a
  half-written ``bundle.json`` behind.
"""

from __future__ import annotations

import json
import os
import platform
import tempfile
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from pipebundle.exceptions import ConfigError
from pipebundle.models import BuildConfig

_APP_NAME = "pipebundle"
_CONFIG_FILENAME = "pipebundle.json"
_CONFIG_ENV = "PIPEBUNDLE_CONFIG"


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def _xdg_base(env_var: str, default_segments: tuple[str, ...]) -> Path:
    """Resolve an XDG base directory from an env var with fallback segments under $HOME."""
    env_value = os.environ.get(env_var, "")
    if env_value:
        return Path(env_value)
    base = Path.home()
    for seg in default_segments:
        base = base / seg
    return base


def get_data_dir() -> Path:
    """Return the data directory (crash logs), creating it if necessary.

    On Linux/BSD: ``$XDG_DATA_HOME/pipebundle/`` (default
    ``~/.local/share/pipebundle/``). Elsewhere: ``~/.pipebundle/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_DATA_HOME", (".local", "share")) / _APP_NAME
    else:
        path = Path.home() / f".{_APP_NAME}"
    path.mkdir(parents=True, exist_ok=True)
    return path


# --- Atomic file writes ---


def _atomic_write(path: Path, data: str) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is an atomic rename on POSIX systems.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None
        os.replace(tmp_path, path)
    except BaseException:
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise


def write_json(path: Path, data: dict) -> None:
    _atomic_write(path, json.dumps(data, indent=2) + "\n")


# --- Build configuration ---


def resolve_config_path(cli_path: Optional[str] = None) -> Path:
    """Locate the build configuration.

    Precedence (high to low):
        1. ``--config`` flag
        2. ``PIPEBUNDLE_CONFIG`` environment variable
        3. ``./pipebundle.json``
    """
    if cli_path:
        return Path(cli_path).expanduser()
    env_path = os.environ.get(_CONFIG_ENV)
    if env_path:
        return Path(env_path).expanduser()
    return Path.cwd() / _CONFIG_FILENAME


def load_build_config(path: Path) -> BuildConfig:
    """Load and validate a build configuration file.

    Raises:
        ConfigError: If the file does not exist, contains invalid JSON, or
            fails Pydantic validation.
    """
    if not path.is_file():
        raise ConfigError(f"Build config not found at {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return BuildConfig.model_validate(data)
    except (json.JSONDecodeError, ValidationError) as exc:
        raise ConfigError(f"Invalid build config at {path}: {exc}") from exc


def source_path(config_path: Path, value: str) -> Path:
    """Resolve a path from the build config relative to the config file."""
    path = Path(value).expanduser()
    return path if path.is_absolute() else (config_path.parent / path).resolve()
