"""Discovery Setup: per-plugin slots under the home root.

Every plugin named in the manifest gets a slot::

    <home>/discovery/<plugin-name>/entry -> <install_dir>/<plugin path>

The core CLI resolves a plugin by name through its slot, never by searching
``PATH``. Setup runs once per home root: if ``discovery/`` already exists it
is left alone, even when individual slots have since been deleted. Those are
restored on demand by :func:`repair_slots` (``pipebundle verify --fix``).

First-run races between concurrent setups are settled by building all slots
in a private staging directory and renaming it into place. The loser of the
rename throws its copy away.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from pipebundle.exceptions import DiscoveryFailure, SetupWarning
from pipebundle.manifest import SLOT_ENTRY_NAME, BundleManifest
from pipebundle.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class SetupReport:
    created: list[str] = field(default_factory=list)
    warnings: list[SetupWarning] = field(default_factory=list)
    already_set_up: bool = False
    config_created: bool = False


@dataclass(frozen=True)
class Resolution:
    """Result of looking up a plugin by name.

    ``found`` is true only when ``path`` names an executable file.
    """

    name: str
    path: Optional[Path]
    found: bool


def slot_path(settings: Settings, name: str) -> Path:
    return settings.discovery_dir / name / SLOT_ENTRY_NAME


def _link_slot(slot_root: Path, name: str, target: Path) -> None:
    slot_dir = slot_root / name
    slot_dir.mkdir(parents=True, exist_ok=True)
    os.symlink(target, slot_dir / SLOT_ENTRY_NAME)


def setup_slots(settings: Settings, manifest: BundleManifest) -> SetupReport:
    """Create the discovery directory with one slot per plugin.

    A no-op when the discovery directory already exists. A slot that cannot
    be created is logged and recorded as a :class:`SetupWarning`; the
    remaining slots are still created.
    """
    report = SetupReport()
    discovery = settings.discovery_dir
    if discovery.exists():
        logger.info("Discovery directory %s exists; skipping slot setup", discovery)
        report.already_set_up = True
        return report

    settings.home.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(prefix=".discovery-", dir=settings.home))
    try:
        for plugin in manifest.plugins:
            target = settings.install_dir / plugin.path
            try:
                _link_slot(staging, plugin.name, target)
            except OSError as exc:
                logger.warning("Could not create slot for %s: %s", plugin.name, exc)
                report.warnings.append(SetupWarning(plugin.name, f"slot not created: {exc}"))
                continue
            if not target.is_file():
                report.warnings.append(SetupWarning(plugin.name, f"slot target is missing: {target}"))
            report.created.append(plugin.name)

        try:
            os.rename(staging, discovery)
        except OSError:
            if not discovery.is_dir():
                raise
            logger.info("Discovery directory appeared concurrently; discarding staged slots")
            report.created = []
            report.already_set_up = True
    finally:
        if staging.exists():
            shutil.rmtree(staging, ignore_errors=True)
    return report


def ensure_default_config(settings: Settings, manifest: BundleManifest) -> bool:
    """Create the default configuration record (``{}``) if it is absent.

    The record is written to a temporary file and hard-linked into place, so
    a concurrent creator wins cleanly and an existing record is never
    touched.

    Returns:
        ``True`` if this call created the record.
    """
    target = settings.home / manifest.config_file
    if target.exists():
        return False
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write("{}\n")
        try:
            os.link(tmp, target)
        except FileExistsError:
            return False
    finally:
        os.unlink(tmp)
    return True


def run_setup(settings: Settings, manifest: BundleManifest) -> SetupReport:
    """Idempotent first-run setup: slots plus the default configuration."""
    report = setup_slots(settings, manifest)
    try:
        report.config_created = ensure_default_config(settings, manifest)
    except OSError as exc:
        logger.warning("Could not create default config: %s", exc)
        report.warnings.append(SetupWarning(manifest.config_file, f"default config not created: {exc}"))
    return report


def slot_is_healthy(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def repair_slots(settings: Settings, manifest: BundleManifest) -> SetupReport:
    """Recreate missing or broken slots. Healthy slots are left untouched.

    A slot that cannot be recreated is logged and recorded as a
    :class:`SetupWarning`; the remaining slots are still repaired.

    Returns:
        A report whose ``created`` lists the slots that were recreated.
    """
    report = SetupReport()
    settings.discovery_dir.mkdir(parents=True, exist_ok=True)
    for plugin in manifest.plugins:
        entry = slot_path(settings, plugin.name)
        if slot_is_healthy(entry):
            continue
        target = settings.install_dir / plugin.path
        try:
            if entry.parent.is_symlink() or entry.parent.is_file():
                entry.parent.unlink()
            elif entry.is_symlink() or entry.exists():
                entry.unlink()
            _link_slot(settings.discovery_dir, plugin.name, target)
        except OSError as exc:
            logger.warning("Could not repair slot for %s: %s", plugin.name, exc)
            report.warnings.append(SetupWarning(plugin.name, f"slot not repaired: {exc}"))
            continue
        logger.info("Recreated slot %s -> %s", plugin.name, target)
        report.created.append(plugin.name)
    return report


class SlotRegistry:
    """In-memory map of plugin name to absolute executable path."""

    def __init__(self, entries: dict[str, Path]) -> None:
        self._entries = dict(entries)

    @classmethod
    def from_manifest(cls, settings: Settings, manifest: BundleManifest) -> "SlotRegistry":
        return cls({p.name: settings.install_dir / p.path for p in manifest.plugins})

    @classmethod
    def from_discovery(cls, settings: Settings) -> "SlotRegistry":
        """Build the registry the way the core CLI sees it: from the slots on disk."""
        entries: dict[str, Path] = {}
        discovery = settings.discovery_dir
        if discovery.is_dir():
            for child in sorted(discovery.iterdir()):
                if child.is_dir() and not child.name.startswith("."):
                    entries[child.name] = child / SLOT_ENTRY_NAME
        return cls(entries)

    def names(self) -> list[str]:
        return sorted(self._entries)

    def resolve(self, name: str) -> Resolution:
        path = self._entries.get(name)
        if path is None:
            return Resolution(name, None, False)
        target = Path(os.path.realpath(path))
        return Resolution(name, target, slot_is_healthy(target))

    def require(self, name: str) -> Path:
        """Resolve *name* or raise :class:`DiscoveryFailure`."""
        resolution = self.resolve(name)
        if not resolution.found:
            where = resolution.path or "no slot"
            raise DiscoveryFailure(f"Plugin '{name}' could not be resolved ({where})")
        return resolution.path
