from __future__ import annotations

import os
import stat
from pathlib import Path

import pytest

from archive_builders import directory, file, hardlink, make_deb, make_tar_gz, make_zip, symlink
from ollamaroot.errors import ArchiveError, PathTraversalError
from ollamaroot.extract import ArchiveFormat, extract, extract_member

TERMUX = "./data/data/com.termux/files/usr"


def _mode(path: Path) -> int:
    return stat.S_IMODE(path.stat().st_mode)


def test_tar_extracts_tree_and_preserves_exec_bits(tmp_path: Path) -> None:
    archive = make_tar_gz(
        tmp_path / "rootfs.tar.gz",
        [
            directory("./bin"),
            file("./bin/busybox", "#!/bin/true\n", mode=0o755),
            symlink("./bin/sh", "busybox"),
            file("./etc/os-release", "ID=alpine\n"),
            hardlink("./bin/ash", "./bin/busybox"),
        ],
    )
    target = tmp_path / "rootfs"

    count = extract(archive, target, ArchiveFormat.TAR_GZ)

    assert count == 3
    assert (target / "etc" / "os-release").read_text() == "ID=alpine\n"
    assert _mode(target / "bin" / "busybox") & 0o111
    assert not _mode(target / "etc" / "os-release") & 0o111
    assert (target / "bin" / "sh").is_symlink()
    assert os.readlink(target / "bin" / "sh") == "busybox"
    assert (target / "bin" / "ash").read_text() == "#!/bin/true\n"


def test_tar_extraction_is_idempotent_and_overwrites(tmp_path: Path) -> None:
    target = tmp_path / "rootfs"
    long_version = make_tar_gz(tmp_path / "a.tar.gz", [file("etc/motd", "welcome to the sandbox\n")])
    short_version = make_tar_gz(tmp_path / "b.tar.gz", [file("etc/motd", "hi\n")])

    extract(long_version, target, ArchiveFormat.TAR_GZ)
    extract(long_version, target, ArchiveFormat.TAR_GZ)
    assert (target / "etc" / "motd").read_text() == "welcome to the sandbox\n"

    extract(short_version, target, ArchiveFormat.TAR_GZ)
    assert (target / "etc" / "motd").read_text() == "hi\n"


def test_tar_strips_leading_slash(tmp_path: Path) -> None:
    archive = make_tar_gz(tmp_path / "abs.tar.gz", [file("/etc/hostname", "box\n")])
    target = tmp_path / "out"

    extract(archive, target, ArchiveFormat.TAR_GZ)

    assert (target / "etc" / "hostname").read_text() == "box\n"


def test_executables_are_forced_executable(tmp_path: Path) -> None:
    archive = make_tar_gz(tmp_path / "ollama.tgz", [file("bin/ollama", "ELF", mode=0o644)])
    target = tmp_path / "prefix"

    extract(archive, target, ArchiveFormat.TAR_GZ, executables=("bin/ollama",))

    assert _mode(target / "bin" / "ollama") == 0o755


@pytest.mark.parametrize("fmt", [ArchiveFormat.TAR_GZ, ArchiveFormat.ZIP, ArchiveFormat.DEB])
def test_parent_traversal_is_rejected(tmp_path: Path, fmt: ArchiveFormat) -> None:
    entries = [file("../escape.txt", "gotcha")]
    if fmt is ArchiveFormat.TAR_GZ:
        archive = make_tar_gz(tmp_path / "evil.tar.gz", entries)
    elif fmt is ArchiveFormat.ZIP:
        archive = make_zip(tmp_path / "evil.zip", entries)
    else:
        archive = make_deb(tmp_path / "evil.deb", [file(f"{TERMUX}/../../escape.txt", "gotcha")])
    target = tmp_path / "sandbox"

    with pytest.raises(PathTraversalError):
        extract(archive, target, fmt, strip_prefix="/data/data/com.termux/files/usr")

    assert not (tmp_path / "escape.txt").exists()


def test_write_through_extracted_symlink_is_rejected(tmp_path: Path) -> None:
    outside = tmp_path / "outside"
    outside.mkdir()
    archive = make_tar_gz(
        tmp_path / "evil.tar.gz",
        [symlink("link", str(outside)), file("link/payload", "gotcha")],
    )

    with pytest.raises(PathTraversalError):
        extract(archive, tmp_path / "sandbox", ArchiveFormat.TAR_GZ)

    assert not (outside / "payload").exists()


def test_zip_uses_unix_modes(tmp_path: Path) -> None:
    archive = make_zip(
        tmp_path / "bootstrap.zip",
        [
            directory("bin"),
            file("bin/sh", "#!/system/bin/sh\n", mode=0o700),
            file("SYMLINKS.txt", "sh←./bin/bash\n"),
        ],
    )
    target = tmp_path / "usr"

    count = extract(archive, target, ArchiveFormat.ZIP)

    assert count == 2
    assert _mode(target / "bin" / "sh") & 0o100
    assert "←" in (target / "SYMLINKS.txt").read_text(encoding="utf-8")


@pytest.mark.parametrize("compression", ["xz", "gz", ""])
def test_deb_strips_install_prefix(tmp_path: Path, compression: str) -> None:
    archive = make_deb(
        tmp_path / "ollama.deb",
        [
            directory(f"{TERMUX}/bin"),
            file(f"{TERMUX}/bin/ollama", "ELF", mode=0o700),
            file(f"{TERMUX}/lib/libggml.so", "so"),
            file("./etc/not-under-prefix", "skip"),
        ],
        compression,
    )
    target = tmp_path / "usr"

    count = extract(
        archive,
        target,
        ArchiveFormat.DEB,
        strip_prefix="/data/data/com.termux/files/usr",
        executables=("bin/ollama",),
    )

    assert count == 2
    assert (target / "bin" / "ollama").read_text() == "ELF"
    assert _mode(target / "bin" / "ollama") == 0o755
    assert (target / "lib" / "libggml.so").exists()
    assert not (target / "etc").exists()


def test_deb_without_data_member_fails(tmp_path: Path) -> None:
    archive = make_deb(tmp_path / "empty.deb", [], with_data=False)

    with pytest.raises(ArchiveError, match="data.tar"):
        extract(archive, tmp_path / "usr", ArchiveFormat.DEB, strip_prefix="/usr")


def test_deb_with_unsupported_compression_fails(tmp_path: Path) -> None:
    archive = make_deb(tmp_path / "zstd.deb", [file("./usr/bin/x", "x")], "zst")

    with pytest.raises(ArchiveError, match="compression"):
        extract(archive, tmp_path / "usr", ArchiveFormat.DEB, strip_prefix="/usr")


def test_corrupt_archives_raise_archive_error(tmp_path: Path) -> None:
    junk = tmp_path / "junk"
    junk.write_bytes(b"this is not an archive at all" * 10)

    for fmt in ArchiveFormat:
        with pytest.raises(ArchiveError):
            extract(junk, tmp_path / fmt.name, fmt, strip_prefix="/usr")


def test_extract_member_streams_single_binary(tmp_path: Path) -> None:
    archive = make_tar_gz(
        tmp_path / "ollama-linux-arm64.tgz",
        [
            directory("lib/ollama"),
            file("lib/ollama/libggml-base.so", "lib"),
            file("bin/ollama", "ELF", mode=0o644),
        ],
    )
    destination = tmp_path / "rootfs" / "usr" / "local" / "bin" / "ollama"

    result = extract_member(archive, destination, ("bin/ollama",))

    assert result == destination
    assert destination.read_text() == "ELF"
    assert _mode(destination) == 0o755
    assert not (tmp_path / "rootfs" / "lib").exists()


def test_extract_member_matches_nested_basename(tmp_path: Path) -> None:
    archive = make_tar_gz(tmp_path / "nested.tgz", [file("./dist/ollama", "ELF")])

    extract_member(archive, tmp_path / "ollama", ("bin/ollama",))

    assert (tmp_path / "ollama").read_text() == "ELF"


def test_extract_member_missing_entry(tmp_path: Path) -> None:
    archive = make_tar_gz(tmp_path / "other.tgz", [file("README", "hi")])

    with pytest.raises(ArchiveError):
        extract_member(archive, tmp_path / "ollama", ("bin/ollama",))
