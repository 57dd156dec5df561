"""Archive extraction into sandbox trees.

Every regular file is written from scratch (any existing path is removed
first), so extracting the same archive again after an interrupted attempt
overwrites rather than appends.
"""

from __future__ import annotations

import contextlib
import enum
import gzip
import io
import logging
import lzma
import os
import shutil
import stat
import tarfile
import zipfile
import zlib
from collections.abc import Collection, Iterator
from pathlib import Path, PurePosixPath
from typing import BinaryIO

from .errors import ArchiveError, PathTraversalError

logger = logging.getLogger(__name__)

_AR_MAGIC = b"!<arch>\n"
_AR_HEADER_SIZE = 60
_CORRUPT_ERRORS = (
    tarfile.TarError,
    zipfile.BadZipFile,
    EOFError,
    lzma.LZMAError,
    zlib.error,
    gzip.BadGzipFile,
)


class ArchiveFormat(enum.Enum):
    TAR_GZ = "tar.gz"
    ZIP = "zip"
    DEB = "deb"


def extract(
    archive: str | Path,
    target_dir: str | Path,
    fmt: ArchiveFormat,
    *,
    strip_prefix: str | None = None,
    executables: Collection[str] = (),
) -> int:
    """Extract ``archive`` into ``target_dir``; return the number of files written."""
    if fmt is ArchiveFormat.TAR_GZ:
        return extract_tar(archive, target_dir, executables=executables)
    if fmt is ArchiveFormat.ZIP:
        return extract_zip(archive, target_dir, executables=executables)
    if fmt is ArchiveFormat.DEB:
        return extract_deb(
            archive,
            target_dir,
            strip_prefix=strip_prefix or "",
            executables=executables,
        )
    raise ArchiveError(f"Unsupported archive format: {fmt!r}")


def extract_tar(
    archive: str | Path,
    target_dir: str | Path,
    *,
    executables: Collection[str] = (),
) -> int:
    archive = Path(archive)
    root = _prepare_root(target_dir)
    with _archive_errors(archive):
        with tarfile.open(archive, mode="r:*") as handle:
            count = _extract_tar_members(handle, root, executables=set(executables))
    logger.info("extracted %d files from %s into %s", count, archive.name, root)
    return count


def extract_zip(
    archive: str | Path,
    target_dir: str | Path,
    *,
    executables: Collection[str] = (),
) -> int:
    archive = Path(archive)
    root = _prepare_root(target_dir)
    forced = set(executables)
    count = 0
    with _archive_errors(archive):
        with zipfile.ZipFile(archive) as handle:
            for info in handle.infolist():
                rel = _safe_rel(info.filename)
                if rel is None:
                    continue
                target = root / rel
                _ensure_within(root, target, info.filename)
                unix_mode = (info.external_attr >> 16) & 0xFFFF
                if info.is_dir():
                    _make_dir(target, stat.S_IMODE(unix_mode) or 0o755)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                if stat.S_ISLNK(unix_mode):
                    link = handle.read(info).decode("utf-8")
                    _make_symlink(root, target, link)
                    continue
                with handle.open(info) as source:
                    _write_file(source, target, _file_mode(stat.S_IMODE(unix_mode), rel, forced))
                count += 1
    logger.info("extracted %d files from %s into %s", count, archive.name, root)
    return count


def extract_deb(
    archive: str | Path,
    target_dir: str | Path,
    *,
    strip_prefix: str,
    executables: Collection[str] = (),
) -> int:
    """Unpack the data member of a Debian-style package.

    ``strip_prefix`` is the absolute install prefix recorded in the package
    (for example ``/data/data/com.termux/files/usr``). Entries below it are
    re-rooted under ``target_dir``; entries outside it are skipped.
    """
    archive = Path(archive)
    root = _prepare_root(target_dir)
    prefix = _safe_rel(strip_prefix)
    with _archive_errors(archive):
        with archive.open("rb") as raw:
            name, size = _seek_ar_member(raw, "data.tar")
            mode = _stream_mode_for(name)
            member_stream = io.BufferedReader(_BoundedReader(raw, size))
            with tarfile.open(fileobj=member_stream, mode=mode) as handle:
                count = _extract_tar_members(
                    handle,
                    root,
                    executables=set(executables),
                    strip_prefix=prefix,
                )
    logger.info("extracted %d files from %s into %s", count, archive.name, root)
    return count


def extract_member(
    archive: str | Path,
    destination: str | Path,
    candidates: Collection[str],
) -> Path:
    """Stream a single file out of a tar archive and stop.

    An entry matches when its normalised path equals one of ``candidates``
    or ends with ``/<basename>`` of one of them.
    """
    archive = Path(archive)
    destination = Path(destination)
    wanted = {candidate.strip("/") for candidate in candidates}
    basenames = {PurePosixPath(candidate).name for candidate in wanted}

    with _archive_errors(archive):
        with tarfile.open(archive, mode="r|*") as handle:
            for member in handle:
                if not member.isfile():
                    continue
                name = _normalise_name(member.name)
                if name not in wanted and not any(name.endswith(f"/{base}") for base in basenames):
                    continue
                source = handle.extractfile(member)
                if source is None:
                    continue
                destination.parent.mkdir(parents=True, exist_ok=True)
                with source:
                    _write_file(source, destination, 0o755)
                logger.info("extracted %s from %s to %s", name, archive.name, destination)
                return destination

    raise ArchiveError(f"None of {sorted(wanted)} found in {archive.name}")


def _extract_tar_members(
    handle: tarfile.TarFile,
    root: Path,
    *,
    executables: set[str],
    strip_prefix: PurePosixPath | None = None,
) -> int:
    count = 0
    for member in handle:
        rel = _safe_rel(member.name)
        if rel is None:
            continue
        if strip_prefix is not None:
            rel = _strip(rel, strip_prefix)
            if rel is None:
                continue

        target = root / rel
        _ensure_within(root, target, member.name)

        if member.isdir():
            _make_dir(target, member.mode or 0o755)
            continue

        target.parent.mkdir(parents=True, exist_ok=True)

        if member.issym():
            _make_symlink(root, target, member.linkname)
            continue

        if member.islnk():
            link_rel = _safe_rel(member.linkname)
            if link_rel is not None and strip_prefix is not None:
                link_rel = _strip(link_rel, strip_prefix)
            if link_rel is None:
                continue
            source_path = root / link_rel
            if not source_path.is_file():
                logger.debug("skipping hard link %s: %s not extracted", member.name, member.linkname)
                continue
            with source_path.open("rb") as source:
                _write_file(source, target, _file_mode(member.mode, rel, executables))
            count += 1
            continue

        if member.isfile():
            source = handle.extractfile(member)
            if source is None:
                continue
            with source:
                _write_file(source, target, _file_mode(member.mode, rel, executables))
            count += 1
            continue

        logger.debug("skipping special entry %s", member.name)
    return count


def _prepare_root(target_dir: str | Path) -> Path:
    root = Path(target_dir)
    root.mkdir(parents=True, exist_ok=True)
    return root.resolve()


def _normalise_name(name: str) -> str:
    parts = [part for part in PurePosixPath(name).parts if part not in {"", ".", "/"}]
    return "/".join(parts)


def _safe_rel(name: str) -> PurePosixPath | None:
    parts = []
    for part in PurePosixPath(name.replace("\\", "/")).parts:
        if part in {"", ".", "/"}:
            continue
        if part == "..":
            raise PathTraversalError(name)
        parts.append(part)
    if not parts:
        return None
    return PurePosixPath(*parts)


def _strip(rel: PurePosixPath, prefix: PurePosixPath) -> PurePosixPath | None:
    if not prefix.parts:
        return rel
    if rel.parts[: len(prefix.parts)] != prefix.parts:
        return None
    remainder = rel.parts[len(prefix.parts) :]
    if not remainder:
        return None
    return PurePosixPath(*remainder)


def _ensure_within(root: Path, target: Path, entry: str) -> None:
    parent = target.parent.resolve()
    if parent != root and not parent.is_relative_to(root):
        raise PathTraversalError(entry)


def _file_mode(recorded: int, rel: PurePosixPath, executables: set[str]) -> int:
    if rel.as_posix() in executables:
        return 0o755
    perm = recorded & 0o7777
    if not perm:
        return 0o644
    return perm | 0o600


def _remove_existing(target: Path) -> None:
    if target.is_symlink() or target.is_file():
        target.unlink()
    elif target.is_dir():
        shutil.rmtree(target)


def _make_dir(target: Path, mode: int) -> None:
    if target.is_symlink() or (target.exists() and not target.is_dir()):
        _remove_existing(target)
    target.mkdir(parents=True, exist_ok=True)
    target.chmod((mode & 0o7777) | 0o700)


def _write_file(source: BinaryIO, target: Path, mode: int) -> None:
    _remove_existing(target)
    with target.open("wb") as handle:
        shutil.copyfileobj(source, handle)
    target.chmod(mode)


def _make_symlink(root: Path, target: Path, link: str) -> None:
    _remove_existing(target)
    try:
        os.symlink(link, target)
        return
    except OSError:
        logger.debug("symlinks unavailable, copying %s for %s", link, target)

    if link.startswith("/"):
        rel = _safe_rel(link)
        if rel is None:
            return
        source = root / rel
    else:
        source = target.parent / link
    if not source.resolve().is_relative_to(root) or not source.is_file():
        logger.debug("cannot materialise link %s -> %s", target, link)
        return
    with source.open("rb") as handle:
        _write_file(handle, target, stat.S_IMODE(source.stat().st_mode))


def _seek_ar_member(raw: BinaryIO, prefix: str) -> tuple[str, int]:
    """Position ``raw`` at the data of the first ar member named ``prefix*``."""
    if raw.read(len(_AR_MAGIC)) != _AR_MAGIC:
        raise ArchiveError("Not an ar archive (bad magic).")
    while True:
        header = raw.read(_AR_HEADER_SIZE)
        if not header:
            raise ArchiveError(f"No `{prefix}*` member in package.")
        if len(header) < _AR_HEADER_SIZE or header[58:60] != b"`\n":
            raise ArchiveError("Corrupt ar member header.")
        name = header[:16].decode("ascii", errors="replace").strip().rstrip("/")
        try:
            size = int(header[48:58].decode("ascii").strip())
        except ValueError as exc:
            raise ArchiveError(f"Corrupt ar member size for {name!r}.") from exc
        if name.startswith(prefix):
            return name, size
        raw.seek(size + (size % 2), os.SEEK_CUR)


def _stream_mode_for(member_name: str) -> str:
    if member_name.endswith(".xz"):
        return "r|xz"
    if member_name.endswith(".gz"):
        return "r|gz"
    if member_name == "data.tar":
        return "r|"
    raise ArchiveError(f"Unsupported package payload compression: {member_name}")


class _BoundedReader(io.RawIOBase):
    """Read at most ``size`` bytes from the current position of ``raw``."""

    def __init__(self, raw: BinaryIO, size: int):
        self._raw = raw
        self._remaining = size

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:  # type: ignore[override]
        if self._remaining <= 0:
            return 0
        view = memoryview(buffer)[: self._remaining]
        data = self._raw.read(len(view))
        count = len(data)
        view[:count] = data
        self._remaining -= count
        return count


@contextlib.contextmanager
def _archive_errors(archive: Path) -> Iterator[None]:
    try:
        yield
    except ArchiveError:
        raise
    except _CORRUPT_ERRORS as exc:
        raise ArchiveError(f"Corrupt or unsupported archive {archive.name}: {exc}") from exc
