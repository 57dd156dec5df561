"""Failure taxonomy and stable error codes.

Low-level modules raise the exceptions defined here. The provisioning and
supervision boundary converts them with :func:`classify` into an
:class:`ErrorRecord`, which is what callers see.
"""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass


class OllamarootError(Exception):
    """Base class for every error raised by ollamaroot."""


class NetworkError(OllamarootError):
    pass


class FetchError(NetworkError):
    """Download failed with an HTTP status or a transport problem."""

    def __init__(
        self,
        url: str,
        *,
        http_status: int | None = None,
        transport_error: str | None = None,
    ):
        self.url = url
        self.http_status = http_status
        self.transport_error = transport_error
        if http_status is not None:
            detail = f"HTTP {http_status}"
        else:
            detail = transport_error or "unknown transport error"
        super().__init__(f"Download failed ({detail}): {url}")


class Cancelled(OllamarootError):
    """The caller set the cancel token."""


class FetchCancelled(FetchError, Cancelled):
    def __init__(self, url: str):
        super().__init__(url, transport_error="cancelled")


class ArchiveError(OllamarootError):
    """Archive is corrupt, unsupported, or missing an expected entry."""


class PathTraversalError(ArchiveError):
    def __init__(self, entry: str):
        self.entry = entry
        super().__init__(f"Refusing to extract entry outside target directory: {entry!r}")


class ProvisionError(OllamarootError):
    """A prerequisite file is missing."""

    def __init__(self, code: ErrorCode, message: str):
        self.code = code
        super().__init__(message)


class CommandError(OllamarootError):
    """A command run inside the sandbox exited non-zero."""

    def __init__(self, argv: list[str], exit_code: int, output: str):
        self.argv = argv
        self.exit_code = exit_code
        self.output = output
        tail = output.strip().splitlines()[-1:] or [""]
        super().__init__(f"`{' '.join(argv)}` exited with {exit_code}: {tail[0]}")


class LaunchError(OllamarootError):
    pass


class ReadinessTimeout(OllamarootError):
    pass


class ProcessExited(OllamarootError):
    def __init__(self, exit_code: int, stderr: str = ""):
        self.exit_code = exit_code
        self.stderr = stderr
        message = f"Server exited with code {exit_code} before becoming ready."
        if stderr.strip():
            message += f"\n{stderr.strip()}"
        super().__init__(message)


class Remediation(enum.Enum):
    RETRY_SETUP = "retry_setup"
    OPEN_TERMINAL = "open_terminal"
    CHECK_NETWORK = "check_network"


class ErrorCode(enum.Enum):
    INTERPOSER_MISSING = "E1"
    BINARY_MISSING = "E2"
    ROOTFS_MISSING = "E3"
    LAUNCH_FAILED = "E4"
    READINESS_TIMEOUT = "E5"
    PROCESS_EXITED = "E6"
    NETWORK = "E7"
    ARCHIVE = "E8"
    COMMAND_FAILED = "E9"
    CANCELLED = "E10"

    @property
    def remediation(self) -> Remediation:
        return _REMEDIATIONS[self]


_REMEDIATIONS = {
    ErrorCode.INTERPOSER_MISSING: Remediation.RETRY_SETUP,
    ErrorCode.BINARY_MISSING: Remediation.RETRY_SETUP,
    ErrorCode.ROOTFS_MISSING: Remediation.RETRY_SETUP,
    ErrorCode.LAUNCH_FAILED: Remediation.OPEN_TERMINAL,
    ErrorCode.READINESS_TIMEOUT: Remediation.OPEN_TERMINAL,
    ErrorCode.PROCESS_EXITED: Remediation.OPEN_TERMINAL,
    ErrorCode.NETWORK: Remediation.CHECK_NETWORK,
    ErrorCode.ARCHIVE: Remediation.RETRY_SETUP,
    ErrorCode.COMMAND_FAILED: Remediation.OPEN_TERMINAL,
    ErrorCode.CANCELLED: Remediation.RETRY_SETUP,
}


@dataclass(frozen=True)
class ErrorRecord:
    code: ErrorCode
    message: str
    phase: str

    @property
    def remediation(self) -> Remediation:
        return self.code.remediation

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"


def classify(exc: BaseException, phase: str) -> ErrorRecord:
    """Convert an exception raised during ``phase`` into a stable record."""
    if isinstance(exc, Cancelled):
        code = ErrorCode.CANCELLED
    elif isinstance(exc, NetworkError):
        code = ErrorCode.NETWORK
    elif isinstance(exc, ArchiveError):
        code = ErrorCode.ARCHIVE
    elif isinstance(exc, ProvisionError):
        code = exc.code
    elif isinstance(exc, CommandError):
        code = ErrorCode.COMMAND_FAILED
    elif isinstance(exc, ReadinessTimeout):
        code = ErrorCode.READINESS_TIMEOUT
    elif isinstance(exc, ProcessExited):
        code = ErrorCode.PROCESS_EXITED
    elif isinstance(exc, LaunchError) or phase == "launch":
        code = ErrorCode.LAUNCH_FAILED
    elif isinstance(exc, OSError) and phase in {
        "download",
        "extract",
        "symlinks",
        "permissions",
        "configure",
    }:
        # Disk exhaustion and permission failures while writing the tree.
        code = ErrorCode.ARCHIVE
    else:
        code = ErrorCode.COMMAND_FAILED
    return ErrorRecord(code=code, message=str(exc) or type(exc).__name__, phase=phase)


class ErrorRegister:
    """Single-slot last-error state; every attempt overwrites it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last: ErrorRecord | None = None

    @property
    def last(self) -> ErrorRecord | None:
        with self._lock:
            return self._last

    def record(self, record: ErrorRecord) -> ErrorRecord:
        with self._lock:
            self._last = record
        return record

    def clear(self) -> None:
        with self._lock:
            self._last = None


_MANUAL_FALLBACKS = {
    "interposition": (
        "Open a terminal sandbox (for example Termux) and run:\n"
        "  pkg install proot-distro && proot-distro install alpine\n"
        "  proot-distro login alpine -- sh -c "
        "'apk add gcompat libstdc++ curl && curl -fsSL https://ollama.com/install.sh | sh'\n"
        "Then run: ollama serve"
    ),
    "bootstrap": (
        "Open a terminal sandbox (for example Termux) and run:\n"
        "  pkg update -y && pkg install -y ollama\n"
        "Then run: ollama serve"
    ),
    "direct": (
        "Open a terminal and run:\n"
        "  curl -fsSL https://ollama.com/install.sh | sh\n"
        "Then run: ollama serve"
    ),
}


def manual_fallback(strategy: str) -> str:
    """Return the equivalent manual install instructions for ``strategy``."""
    return _MANUAL_FALLBACKS.get(strategy, _MANUAL_FALLBACKS["direct"])
