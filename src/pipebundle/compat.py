"""Compatibility Verifier: compare observed native versions with minimums.

Version tokens are compared as tuples of integers, so ``"2.17"`` and
``"100000"`` (libpq's integer form, ``major * 10000 + minor``) both work.
Anything that cannot be observed or parsed yields
:attr:`CompatStatus.UNKNOWN`, never a guess.
"""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
from dataclasses import dataclass
from enum import Enum
from itertools import zip_longest
from pathlib import Path
from typing import Optional, Sequence

from pipebundle.exceptions import CompatibilityUnknown
from pipebundle.manifest import NativeRequirement

logger = logging.getLogger(__name__)

MIN_GLIBC = "2.17"
LIBPQ_SCRAM_MIN = "100000"
"""First libpq release (10.0) with SCRAM-SHA-256 authentication."""

PROBE_TIMEOUT = 30

_VERSION_RE = re.compile(r"\d+(?:\.\d+)*")


class CompatStatus(str, Enum):
    COMPATIBLE = "compatible"
    INCOMPATIBLE = "incompatible"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class CompatibilityRecord:
    """Outcome of one compatibility check. Recomputed on every run."""

    subsystem: str
    required: str
    observed: Optional[str]
    status: CompatStatus
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status == CompatStatus.COMPATIBLE

    def describe(self) -> str:
        observed = self.observed if self.observed is not None else "not detected"
        text = f"{self.subsystem}: requires >= {self.required}, found {observed}"
        return f"{text} ({self.detail})" if self.detail else text

    def as_warning(self) -> CompatibilityUnknown:
        return CompatibilityUnknown(self.describe())


def parse_version(token: Optional[str]) -> Optional[tuple[int, ...]]:
    """Extract the first dotted-integer run from *token*.

    >>> parse_version("ldd (GNU libc) 2.31")
    (2, 31)
    >>> parse_version("n/a") is None
    True
    """
    if not token:
        return None
    match = _VERSION_RE.search(token)
    if match is None:
        return None
    return tuple(int(part) for part in match.group(0).split("."))


def compare_versions(left: tuple[int, ...], right: tuple[int, ...]) -> int:
    """Three-way compare, padding the shorter tuple with zeros."""
    for a, b in zip_longest(left, right, fillvalue=0):
        if a != b:
            return -1 if a < b else 1
    return 0


def evaluate(subsystem: str, required: str, observed: Optional[str], detail: str = "") -> CompatibilityRecord:
    """Classify *observed* against the minimum *required*.

    Monotonic: if an observation is COMPATIBLE, every larger observation is
    too. Missing or unparseable observations are UNKNOWN.
    """
    want = parse_version(required)
    if want is None:
        raise ValueError(f"Invalid minimum version for {subsystem}: {required!r}")
    have = parse_version(observed)
    if have is None:
        return CompatibilityRecord(subsystem, required, observed, CompatStatus.UNKNOWN,
                                   detail or "version could not be determined")
    status = CompatStatus.COMPATIBLE if compare_versions(have, want) >= 0 else CompatStatus.INCOMPATIBLE
    return CompatibilityRecord(subsystem, required, ".".join(map(str, have)), status, detail)


def probe_command(argv: Sequence[str], env: Optional[dict[str, str]] = None,
                  timeout: float = PROBE_TIMEOUT) -> Optional[str]:
    """Run *argv* and return its stripped stdout, or ``None`` on any failure."""
    try:
        result = subprocess.run(list(argv), capture_output=True, text=True, timeout=timeout, env=env)
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("Probe %s failed: %s", argv[0], exc)
        return None
    if result.returncode != 0:
        logger.debug("Probe %s exited with %d", argv[0], result.returncode)
        return None
    return result.stdout.strip() or None


def probe_metadata(path: Path, key: Optional[str] = None) -> Optional[str]:
    """Read a version token from a metadata file (plain text or JSON)."""
    try:
        text = Path(path).read_text(encoding="utf-8").strip()
    except OSError:
        return None
    if key is None:
        return text or None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    value = data.get(key) if isinstance(data, dict) else None
    return None if value is None else str(value)


def verify_requirement(
    requirement: NativeRequirement,
    install_dir: Path,
    entry: Path,
    env: Optional[dict[str, str]] = None,
) -> CompatibilityRecord:
    """Probe one plugin's native requirement and evaluate it."""
    probe = requirement.probe
    if probe.command:
        argv = [part.format(entry=entry, install_dir=install_dir) for part in probe.command]
        observed = probe_command(argv, env=env)
    else:
        observed = probe_metadata(Path(install_dir) / probe.metadata, probe.key)
    return evaluate(requirement.name, requirement.minimum, observed)


def probe_glibc_version() -> Optional[str]:
    """Return the host glibc version, or ``None`` when it cannot be told."""
    try:
        value = os.confstr("CS_GNU_LIBC_VERSION")
    except (AttributeError, ValueError, OSError):
        value = None
    if value and value.startswith("glibc "):
        return value.split(" ", 1)[1]
    output = probe_command(["ldd", "--version"])
    if output:
        return output.splitlines()[0]
    return None


def check_host_libc(minimum: str = MIN_GLIBC) -> CompatibilityRecord:
    observed = probe_glibc_version()
    if observed is None:
        return CompatibilityRecord("glibc", minimum, None, CompatStatus.UNKNOWN,
                                   "ldd not available; skipping glibc check")
    return evaluate("glibc", minimum, observed)
