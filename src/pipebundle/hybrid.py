"""Hybrid archive format: a text preamble followed by raw archive bytes.

Layout of an installer file::

    #!/bin/sh                          \\
    # ...launcher...                    |  preamble (UTF-8 text)
    #%MANIFEST {...}                    |
    #%RUNTIME-BEGIN / base64 / END     /
    __PIPEBUNDLE_ARCHIVE_BELOW__          sentinel line
    <compressed tar bytes>                payload

The payload starts immediately after the **first** line, counted from the
top, that is exactly equal to :data:`SENTINEL` once its line terminator is
removed. There is no escaping mechanism, so the builder refuses preambles
that contain the sentinel as a whole line.
"""

from __future__ import annotations

import base64
import hashlib
import io
import logging
import lzma
import os
import tarfile
import zlib
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Iterable, Optional, Union

from pipebundle.exceptions import ExtractionError
from pipebundle.manifest import BundleManifest, parse_manifest

logger = logging.getLogger(__name__)

SENTINEL = "__PIPEBUNDLE_ARCHIVE_BELOW__"
MANIFEST_PREFIX = "#%MANIFEST "
RUNTIME_BEGIN = "#%RUNTIME-BEGIN"
RUNTIME_END = "#%RUNTIME-END"

_MAGIC = (
    (b"\xfd7zXZ\x00", "xz"),
    (b"\x1f\x8b", "gz"),
    (b"BZh", "bz2"),
)
_CHUNK = 1024 * 1024


@dataclass(frozen=True)
class PayloadLocation:
    """Where the payload begins.

    Attributes:
        line_number: 1-based line number of the sentinel line.
        offset: Offset of the first payload byte (the byte after the
            sentinel line's terminator). Counted in the same unit as the
            scanned lines, so bytes for binary input.
    """

    line_number: int
    offset: int


@dataclass(frozen=True)
class ExtractionReport:
    destination: Path
    members: int
    codec: str
    stripped: Optional[str]


def _strip_eol(line: Union[str, bytes]) -> Union[str, bytes]:
    if isinstance(line, bytes):
        return line.rstrip(b"\r\n")
    return line.rstrip("\r\n")


def find_sentinel(lines: Iterable[Union[str, bytes]], sentinel: str = SENTINEL) -> Optional[PayloadLocation]:
    """Find the payload boundary in a sequence of lines.

    Lines must keep their terminators so offsets add up. The first line
    that equals *sentinel* after stripping ``\\r``/``\\n`` wins; partial
    matches and later occurrences are ignored.

    Returns:
        The boundary, or ``None`` when no line matches.
    """
    wanted_bytes = sentinel.encode("utf-8")
    offset = 0
    for number, line in enumerate(lines, start=1):
        offset += len(line)
        wanted = wanted_bytes if isinstance(line, bytes) else sentinel
        if _strip_eol(line) == wanted:
            return PayloadLocation(line_number=number, offset=offset)
    return None


def locate_payload(fileobj: BinaryIO) -> PayloadLocation:
    """Scan a binary file object from the start for the sentinel line.

    Raises:
        ExtractionError: If the file has no sentinel line.
    """
    fileobj.seek(0)
    location = find_sentinel(iter(fileobj.readline, b""))
    if location is None:
        raise ExtractionError("Installer is corrupt: archive marker not found")
    return location


def read_preamble(path: Path) -> str:
    """Return the preamble text of a hybrid file (everything before the sentinel)."""
    with open(path, "rb") as fh:
        location = locate_payload(fh)
        fh.seek(0)
        lines = [fh.readline() for _ in range(location.line_number - 1)]
    return b"".join(lines).decode("utf-8")


def read_manifest_header(preamble: str) -> Optional[BundleManifest]:
    """Parse the ``#%MANIFEST`` line of a preamble, if there is one."""
    for line in preamble.splitlines():
        if line.startswith(MANIFEST_PREFIX):
            return parse_manifest(line[len(MANIFEST_PREFIX):])
    return None


def read_runtime(preamble: str) -> bytes:
    """Decode the embedded runtime zip from a preamble."""
    chunks = []
    inside = False
    for line in preamble.splitlines():
        if line == RUNTIME_BEGIN:
            inside = True
        elif line == RUNTIME_END:
            break
        elif inside:
            chunks.append(line[1:])
    if not chunks:
        raise ExtractionError("Installer carries no embedded runtime")
    return base64.b64decode("".join(chunks))


def detect_codec(head: bytes) -> str:
    """Name the compression of an archive from its first bytes."""
    for magic, name in _MAGIC:
        if head.startswith(magic):
            return name
    return "tar"


class PayloadSection(io.RawIOBase):
    """Read-only view of a file starting at *offset*.

    Positions are translated so that the payload looks like a file of its
    own, which lets :mod:`tarfile` seek freely while decompressing.
    """

    def __init__(self, raw: BinaryIO, offset: int) -> None:
        super().__init__()
        self._raw = raw
        self._offset = offset
        self._raw.seek(offset)

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:  # noqa: ANN001
        return self._raw.readinto(buffer)

    def tell(self) -> int:
        return self._raw.tell() - self._offset

    def seek(self, pos: int, whence: int = io.SEEK_SET) -> int:
        if whence == io.SEEK_SET:
            target = self._offset + pos
        elif whence == io.SEEK_CUR:
            target = self._raw.tell() + pos
        else:
            target = self._raw.seek(0, io.SEEK_END) + pos
        self._raw.seek(max(target, self._offset))
        return self.tell()

    def close(self) -> None:
        if not self.closed:
            self._raw.close()
        super().close()


def open_payload(path: Path) -> io.BufferedReader:
    """Open the payload of a hybrid file as a seekable binary stream."""
    raw = open(path, "rb")
    try:
        location = locate_payload(raw)
    except BaseException:
        raw.close()
        raise
    return io.BufferedReader(PayloadSection(raw, location.offset))


def payload_digest(path: Path) -> str:
    """SHA-256 of the payload bytes of a hybrid file."""
    digest = hashlib.sha256()
    with open_payload(path) as stream:
        for chunk in iter(lambda: stream.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def wrapping_directory(members: list[tarfile.TarInfo]) -> Optional[str]:
    """Return the single top-level directory all members live under, if any."""
    tops = {PurePosixPath(m.name).parts[0] for m in members if PurePosixPath(m.name).parts}
    if len(tops) != 1:
        return None
    top = tops.pop()
    for member in members:
        if member.name.rstrip("/") == top and not member.isdir():
            return None
    return top


def _strip(members: list[tarfile.TarInfo], prefix: str) -> list[tarfile.TarInfo]:
    kept = []
    for member in members:
        parts = PurePosixPath(member.name).parts
        if len(parts) <= 1:
            continue
        member.name = str(PurePosixPath(*parts[1:]))
        if member.islnk():
            link_parts = PurePosixPath(member.linkname).parts
            if link_parts and link_parts[0] == prefix:
                member.linkname = str(PurePosixPath(*link_parts[1:]))
        kept.append(member)
    return kept


def _check_member(member: tarfile.TarInfo) -> None:
    path = PurePosixPath(member.name)
    if path.is_absolute() or ".." in path.parts:
        raise ExtractionError(f"Archive member escapes the destination: {member.name}")
    if member.issym() or member.islnk():
        link = PurePosixPath(member.linkname)
        base = path.parent if member.issym() else PurePosixPath()
        resolved = os.path.normpath(str(base / link))
        if link.is_absolute() or resolved == ".." or resolved.startswith("../"):
            raise ExtractionError(f"Archive link escapes the destination: {member.name} -> {member.linkname}")
    if member.isdev():
        raise ExtractionError(f"Archive contains a device file: {member.name}")


def extract_payload(path: Path, destination: Path) -> ExtractionReport:
    """Stream the payload of *path* through tar decompression into *destination*.

    The codec is detected automatically. A single wrapping top-level
    directory is stripped; members that would land outside *destination*
    are rejected before anything is written.

    Raises:
        ExtractionError: On a missing sentinel, an unreadable or truncated
            archive, or an unsafe member.
    """
    destination = Path(destination)
    try:
        with open_payload(path) as stream:
            codec = detect_codec(stream.peek(8)[:8])
            with tarfile.open(fileobj=stream, mode="r:*") as tar:
                members = tar.getmembers()
                if not members:
                    raise ExtractionError("Installer payload is empty")
                prefix = wrapping_directory(members)
                if prefix is not None:
                    members = _strip(members, prefix)
                for member in members:
                    _check_member(member)
                logger.debug("Extracting %d members (%s, wrapper=%s)", len(members), codec, prefix)
                if hasattr(tarfile, "data_filter"):
                    tar.extractall(destination, members=members, filter="data")
                else:
                    tar.extractall(destination, members=members)
    except ExtractionError:
        raise
    except (tarfile.TarError, lzma.LZMAError, zlib.error, EOFError) as exc:
        raise ExtractionError(f"Payload could not be decompressed: {exc}") from exc
    except OSError as exc:
        raise ExtractionError(f"Payload extraction failed: {exc}") from exc
    return ExtractionReport(destination=destination, members=len(members), codec=codec, stripped=prefix)
