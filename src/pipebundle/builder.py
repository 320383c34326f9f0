"""Archive Builder: turn a bundle directory into a single hybrid installer.

The installer is written in three parts:

1. A UTF-8 preamble. It is a ``/bin/sh`` launcher that finds a Python 3
   interpreter and hands control to the embedded installer runtime. The
   runtime is a zip of the stdlib-only ``pipebundle`` modules, stored
   base64-encoded on comment lines between ``#%RUNTIME-BEGIN`` and
   ``#%RUNTIME-END``. A ``#%MANIFEST`` line carries the bundle manifest.
2. The sentinel line (:data:`pipebundle.hybrid.SENTINEL`).
3. The compressed tar archive of the bundle, wrapped in one top-level
   directory named after the bundle.

The compressed stream is decompressed once after writing and its hash
compared with the plain tar, and the finished installer is re-scanned for
its payload. A bundle that fails either check is never shipped.
"""

from __future__ import annotations

import base64
import dataclasses
import gzip
import hashlib
import io
import logging
import lzma
import os
import re
import shutil
import stat
import tarfile
import tempfile
import textwrap
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pipebundle import __version__
from pipebundle.exceptions import BuildError, ConfigError, ExtractionError
from pipebundle.hybrid import (
    MANIFEST_PREFIX,
    RUNTIME_BEGIN,
    RUNTIME_END,
    SENTINEL,
    find_sentinel,
    payload_digest,
)
from pipebundle.manifest import BundleManifest, load_manifest

logger = logging.getLogger(__name__)

RUNTIME_MODULES = (
    "__init__",
    "exit_codes",
    "exceptions",
    "manifest",
    "settings",
    "hybrid",
    "compat",
    "slots",
    "pipeline",
    "installer",
    "verify",
)
"""Modules packed into the installer. They must import only the stdlib and each other."""

CODECS = ("xz", "gz")
_CHUNK = 1024 * 1024
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)

# Runs as `python3 -c '<code>' "$0" "$@"`, so it must not contain single quotes.
_BOOT = textwrap.dedent(
    """\
    import base64, os, sys, tempfile
    if sys.version_info < (3, 8):
        sys.stderr.write("Error: Python 3.8 or newer is required to run this installer\\n")
        sys.exit(3)
    chunks, inside = [], False
    with open(sys.argv[1], "rb") as fh:
        for raw in fh:
            line = raw.rstrip(b"\\r\\n")
            if line == b"{begin}":
                inside = True
            elif line == b"{end}":
                break
            elif inside:
                chunks.append(line[1:])
    fd, pyz = tempfile.mkstemp(prefix="pipebundle-", suffix=".pyz")
    try:
        with os.fdopen(fd, "wb") as out:
            out.write(base64.b64decode(b"".join(chunks)))
        sys.path.insert(0, pyz)
        from pipebundle.installer import main
        code = main(sys.argv[1:])
    finally:
        os.unlink(pyz)
    sys.exit(code)
    """
).format(begin=RUNTIME_BEGIN, end=RUNTIME_END)

_LAUNCHER = """\
#!/bin/sh
# {name} {version} self-extracting installer
# Built by pipebundle {tool_version}. Needs Python 3.8+ on the target host.
# Usage: sh {filename} [DESTINATION] [--yes] [--skip-setup] [--verify] [--json]
{manifest_line}
PYTHON="${{PIPEBUNDLE_PYTHON:-python3}}"
if ! command -v "$PYTHON" >/dev/null 2>&1; then
    echo "Error: $PYTHON not found. Set PIPEBUNDLE_PYTHON to a Python 3 interpreter." >&2
    exit 3
fi
exec "$PYTHON" -c '{boot}' "$0" "$@"
"""


@dataclass(frozen=True)
class ArchiveInfo:
    path: Path
    codec: str
    members: int
    tar_sha256: str
    sha256: str
    size: int


@dataclass(frozen=True)
class BuildReport:
    installer: Path
    manifest: BundleManifest
    codec: str
    members: int
    size: int
    payload_sha256: str

    def to_dict(self) -> dict:
        return {
            "installer": str(self.installer),
            "name": self.manifest.name,
            "version": self.manifest.version,
            "codec": self.codec,
            "members": self.members,
            "size": self.size,
            "payload_sha256": self.payload_sha256,
        }


def default_installer_name(manifest: BundleManifest) -> str:
    return f"{manifest.name}-{manifest.version}.run"


def _sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _sha256_stream(stream) -> str:  # noqa: ANN001
    digest = hashlib.sha256()
    for chunk in iter(lambda: stream.read(_CHUNK), b""):
        digest.update(chunk)
    return digest.hexdigest()


def validate_bundle(bundle_dir: Path) -> BundleManifest:
    """Check that a bundle directory is complete enough to ship.

    Raises:
        BuildError: If ``bundle.json`` is missing or invalid, the core
            executable is missing, or any declared plugin, wrapper or
            resource file is missing.
    """
    bundle_dir = Path(bundle_dir)
    if not bundle_dir.is_dir():
        raise BuildError(f"Bundle directory not found: {bundle_dir}")
    try:
        manifest = load_manifest(bundle_dir)
    except ConfigError as exc:
        raise BuildError(str(exc)) from exc

    if not (bundle_dir / manifest.core).is_file():
        raise BuildError(f"Main executable not found in bundle: {manifest.core}")

    declared = [p.path for p in manifest.plugins] + list(manifest.wrappers) + list(manifest.resources)
    missing = [rel for rel in declared if not (bundle_dir / rel).is_file()]
    if missing:
        raise BuildError(f"Bundle is missing declared files: {', '.join(missing)}")
    return manifest


def _open_compressed(path: Path, codec: str, mode: str):  # noqa: ANN202
    if codec == "xz":
        return lzma.open(path, mode, preset=6) if "w" in mode else lzma.open(path, mode)
    if codec == "gz":
        return gzip.GzipFile(path, mode, mtime=0) if "w" in mode else gzip.GzipFile(path, mode)
    raise BuildError(f"Unsupported codec: {codec!r} (choose from {', '.join(CODECS)})")


def create_archive(bundle_dir: Path, output: Path, codec: str = "xz",
                   wrapper: Optional[str] = None, executables: tuple[str, ...] = ()) -> ArchiveInfo:
    """Write *bundle_dir* as a compressed tar with one wrapping directory.

    Entries are added in sorted order with normalised ownership. Paths in
    *executables* get execute bits in the archive regardless of their mode
    on disk.

    Raises:
        BuildError: If the compressed stream does not decompress back to
            the exact tar that was written.
    """
    bundle_dir = Path(bundle_dir)
    output = Path(output)
    wrapper = wrapper or bundle_dir.name
    exec_names = {f"{wrapper}/{rel}" for rel in executables}
    members = 0

    def _normalise(info: tarfile.TarInfo) -> tarfile.TarInfo:
        nonlocal members
        members += 1
        info.uid = info.gid = 0
        info.uname = info.gname = ""
        if info.name in exec_names:
            info.mode |= stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH
        return info

    output.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory(prefix="pipebundle-archive-") as tmp:
        plain = Path(tmp) / "bundle.tar"
        with tarfile.open(plain, "w", format=tarfile.PAX_FORMAT) as tar:
            tar.add(bundle_dir, arcname=wrapper, recursive=True, filter=_normalise)
        tar_sha = _sha256_file(plain)

        with open(plain, "rb") as src, _open_compressed(output, codec, "wb") as dst:
            shutil.copyfileobj(src, dst, _CHUNK)

    with _open_compressed(output, codec, "rb") as check:
        try:
            round_trip = _sha256_stream(check)
        except (OSError, EOFError, lzma.LZMAError) as exc:
            raise BuildError(f"Archive {output} cannot be decompressed: {exc}") from exc
    if round_trip != tar_sha:
        raise BuildError(f"Archive {output} does not decompress to the bundle that was written")

    logger.info("Archived %d entries from %s (%s, sha256 %s)", members, bundle_dir, codec, tar_sha[:12])
    return ArchiveInfo(
        path=output,
        codec=codec,
        members=members,
        tar_sha256=tar_sha,
        sha256=_sha256_file(output),
        size=output.stat().st_size,
    )


def build_runtime_zip() -> bytes:
    """Zip the installer runtime modules into a deterministic archive."""
    package_dir = Path(__file__).resolve().parent
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for module in RUNTIME_MODULES:
            source = package_dir / f"{module}.py"
            if not source.is_file():
                raise BuildError(f"Installer runtime module is missing: {source}")
            info = zipfile.ZipInfo(f"pipebundle/{module}.py", date_time=_ZIP_EPOCH)
            info.compress_type = zipfile.ZIP_DEFLATED
            info.external_attr = 0o644 << 16
            zf.writestr(info, source.read_bytes())
    return buffer.getvalue()


def render_preamble(manifest: BundleManifest, runtime_zip: bytes, filename: str = "installer.run") -> str:
    """Render the launcher text that precedes the sentinel line.

    Raises:
        BuildError: If any line of the result equals the sentinel, which
            would move the payload boundary.
    """
    head = _LAUNCHER.format(
        name=manifest.name,
        version=manifest.version,
        tool_version=__version__,
        filename=_CONTROL_RE.sub("?", filename),
        manifest_line=MANIFEST_PREFIX + manifest.to_json(compact=True),
        boot=_BOOT,
    )
    encoded = base64.b64encode(runtime_zip).decode("ascii")
    body = "\n".join("#" + encoded[i:i + 76] for i in range(0, len(encoded), 76))
    preamble = f"{head}{RUNTIME_BEGIN}\n{body}\n{RUNTIME_END}\n"

    if "'" in _BOOT:
        raise BuildError("Installer boot code must not contain single quotes")
    if find_sentinel(preamble.splitlines(keepends=True)) is not None:
        raise BuildError("Installer preamble contains the archive sentinel line")
    return preamble


def _bundle_contents(bundle_dir: Path) -> tuple[str, ...]:
    return tuple(sorted(child.name for child in bundle_dir.iterdir()))


def build_installer(bundle_dir: Path, output: Optional[Path] = None, codec: str = "xz") -> BuildReport:
    """Build a hybrid installer from a validated bundle directory.

    Args:
        bundle_dir: Bundle root containing ``bundle.json``.
        output: Installer path. Defaults to ``<name>-<version>.run`` next to
            the bundle directory.
        codec: ``xz`` (default) or ``gz``.

    Raises:
        BuildError: If validation, archiving or the final payload check
            fails.
    """
    bundle_dir = Path(bundle_dir).resolve()
    manifest = validate_bundle(bundle_dir)
    if not manifest.contents:
        manifest = dataclasses.replace(manifest, contents=_bundle_contents(bundle_dir))
    output = Path(output) if output else bundle_dir.parent / default_installer_name(manifest)

    preamble = render_preamble(manifest, build_runtime_zip(), output.name)
    output.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory(prefix="pipebundle-build-") as tmp:
        archive = create_archive(
            bundle_dir,
            Path(tmp) / f"payload.tar.{codec}",
            codec=codec,
            wrapper=manifest.name,
            executables=tuple(manifest.executables()),
        )
        partial = output.with_name(f".{output.name}.partial")
        with open(partial, "wb") as out:
            out.write(preamble.encode("utf-8"))
            out.write(f"{SENTINEL}\n".encode("utf-8"))
            with open(archive.path, "rb") as payload:
                shutil.copyfileobj(payload, out, _CHUNK)
        os.chmod(partial, 0o755)
        os.replace(partial, output)

    try:
        written = payload_digest(output)
    except (ExtractionError, OSError) as exc:
        raise BuildError(f"Installer {output} has no readable payload: {exc}") from exc
    if written != archive.sha256:
        raise BuildError(f"Installer {output} payload does not match the archive that was written")

    logger.info("Wrote %s (%d bytes)", output, output.stat().st_size)
    return BuildReport(
        installer=output,
        manifest=manifest,
        codec=codec,
        members=archive.members,
        size=output.stat().st_size,
        payload_sha256=written,
    )

