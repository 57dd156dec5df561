"""Launch prerequisite checks."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from .errors import ErrorCode, ProvisionError
from .runtime_paths import SandboxLayout, marker_present

_LABELS = {
    ErrorCode.INTERPOSER_MISSING: "interposer",
    ErrorCode.BINARY_MISSING: "server binary",
    ErrorCode.ROOTFS_MISSING: "root filesystem",
}


@dataclass(frozen=True)
class RuntimeCheckResult:
    layout: SandboxLayout
    missing: list[tuple[ErrorCode, Path]] = field(default_factory=list)

    @property
    def missing_paths(self) -> list[Path]:
        return [path for _, path in self.missing]

    @property
    def first_error(self) -> ErrorCode | None:
        return self.missing[0][0] if self.missing else None

    @property
    def ok(self) -> bool:
        return not self.missing


def check_runtime(layout: SandboxLayout) -> RuntimeCheckResult:
    """Check launch prerequisites in the order interposer, binary, root filesystem."""
    missing: list[tuple[ErrorCode, Path]] = []
    if layout.interposer is not None and not layout.interposer.exists():
        missing.append((ErrorCode.INTERPOSER_MISSING, layout.interposer))
    if not layout.server_binary.exists():
        missing.append((ErrorCode.BINARY_MISSING, layout.server_binary))
    if not marker_present(layout):
        missing.append((ErrorCode.ROOTFS_MISSING, layout.marker))
    return RuntimeCheckResult(layout=layout, missing=missing)


def describe_missing(result: RuntimeCheckResult) -> str:
    lines = [f"ollamaroot runtime ({result.layout.strategy}) is not ready.", ""]
    lines.append("Missing runtime paths:")
    for code, path in result.missing:
        lines.append(f"- [{code.value}] {_LABELS[code]}: {path}")
    lines.append("")
    lines.append("Run `python -m ollamaroot.setup` to initialize the runtime.")
    return "\n".join(lines)


def assert_runtime_ready(layout: SandboxLayout) -> None:
    """Raise ProvisionError when launch prerequisites are missing."""
    result = check_runtime(layout)
    if result.ok:
        return
    raise ProvisionError(result.missing[0][0], describe_missing(result))
