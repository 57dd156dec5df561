from __future__ import annotations

import pytest

import ollamaroot.arch as arch
from ollamaroot.arch import Architecture, resolve_architecture


@pytest.mark.parametrize(
    ("abis", "expected"),
    [
        (["x86", "armeabi-v7a", "arm64-v8a"], Architecture.ARM64),
        (["x86_64", "armeabi-v7a"], Architecture.ARM),
        (["x86", "x86_64"], Architecture.X86_64),
        (["i686"], Architecture.X86),
        (["AARCH64"], Architecture.ARM64),
        (["armv7l"], Architecture.ARM),
        (["amd64"], Architecture.X86_64),
    ],
)
def test_resolve_architecture_precedence(abis: list[str], expected: Architecture) -> None:
    assert resolve_architecture(abis) is expected


def test_resolve_architecture_defaults_to_arm64() -> None:
    assert resolve_architecture([]) is Architecture.ARM64
    assert resolve_architecture(["mips", "riscv64"]) is Architecture.ARM64


def test_source_names_per_architecture() -> None:
    assert Architecture.ARM64.rootfs_name == "aarch64"
    assert Architecture.ARM.rootfs_name == "armv7"
    assert Architecture.X86_64.release_name == "amd64"
    assert Architecture.X86.release_name == "386"
    assert Architecture.X86.package_name == "i686"


def test_host_abis_prefers_env_override(monkeypatch) -> None:
    monkeypatch.setenv(arch.ABIS_ENV, "armeabi-v7a, x86 ,")
    assert arch.host_abis() == ("armeabi-v7a", "x86")


def test_host_abis_falls_back_to_machine(monkeypatch) -> None:
    monkeypatch.setattr(arch.platform, "machine", lambda: "x86_64")
    assert arch.host_abis() == ("x86_64",)
    assert resolve_architecture(arch.host_abis()) is Architecture.X86_64
