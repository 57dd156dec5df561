"""Host CPU architecture detection."""

from __future__ import annotations

import enum
import os
import platform
from collections.abc import Iterable

ABIS_ENV = "OLLAMAROOT_ABIS"


class Architecture(enum.Enum):
    ARM64 = "arm64"
    ARM = "arm"
    X86_64 = "x86_64"
    X86 = "x86"

    @property
    def rootfs_name(self) -> str:
        """Name used by Alpine minirootfs and proot builds."""
        return {
            Architecture.ARM64: "aarch64",
            Architecture.ARM: "armv7",
            Architecture.X86_64: "x86_64",
            Architecture.X86: "x86",
        }[self]

    @property
    def release_name(self) -> str:
        """Name used by Ollama release archives."""
        return {
            Architecture.ARM64: "arm64",
            Architecture.ARM: "arm",
            Architecture.X86_64: "amd64",
            Architecture.X86: "386",
        }[self]

    @property
    def package_name(self) -> str:
        """Name used by Termux bootstrap bundles and packages."""
        return {
            Architecture.ARM64: "aarch64",
            Architecture.ARM: "arm",
            Architecture.X86_64: "x86_64",
            Architecture.X86: "i686",
        }[self]


DEFAULT_ARCHITECTURE = Architecture.ARM64

_PRECEDENCE = (Architecture.ARM64, Architecture.ARM, Architecture.X86_64, Architecture.X86)

_ABI_ALIASES = {
    Architecture.ARM64: frozenset({"arm64-v8a", "aarch64", "arm64", "armv8"}),
    Architecture.ARM: frozenset({"armeabi-v7a", "armeabi", "armv7l", "armv7", "armv8l", "arm"}),
    Architecture.X86_64: frozenset({"x86_64", "amd64", "x64"}),
    Architecture.X86: frozenset({"x86", "i386", "i686", "386"}),
}


def resolve_architecture(abis: Iterable[str]) -> Architecture:
    """Pick one architecture from the ABIs a host reports.

    64-bit ARM wins over 32-bit ARM, which wins over 64-bit x86, then
    32-bit x86. Nothing recognised falls back to 64-bit ARM.
    """
    reported = {abi.strip().lower() for abi in abis if isinstance(abi, str)}
    for arch in _PRECEDENCE:
        if reported & _ABI_ALIASES[arch]:
            return arch
    return DEFAULT_ARCHITECTURE


def host_abis() -> tuple[str, ...]:
    override = os.environ.get(ABIS_ENV)
    if override:
        return tuple(part.strip() for part in override.split(",") if part.strip())
    machine = platform.machine()
    return (machine,) if machine else ()
