"""Server process lifecycle."""

from __future__ import annotations

import enum
import logging
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import IO

from .config import RuntimeConfig
from .errors import (
    ErrorCode,
    ErrorRecord,
    ErrorRegister,
    LaunchError,
    ProcessExited,
    ProvisionError,
    ReadinessTimeout,
    classify,
)
from .health import HealthProber
from .preflight import check_runtime, describe_missing
from .provision import Provisioner

logger = logging.getLogger(__name__)

_KILL_WAIT_S = 2.0
_READER_JOIN_S = 1.0


class ServerState(enum.Enum):
    READY = "ready"
    NOT_SET_UP = "not_set_up"
    BINARY_MISSING = "binary_missing"
    LAUNCH_FAILED = "launch_failed"
    TIMEOUT = "timeout"


class ServerStatus(enum.Enum):
    RUNNING = "Running"
    STOPPED = "Stopped"
    NOT_INSTALLED = "Not installed"


class _StderrBuffer:
    """Keeps only the first ``limit`` characters of a stream."""

    def __init__(self, limit: int):
        self.limit = limit
        self._lock = threading.Lock()
        self._parts: list[str] = []
        self._size = 0

    def append(self, line: str) -> None:
        with self._lock:
            room = self.limit - self._size
            if room <= 0:
                return
            chunk = line[:room]
            self._parts.append(chunk)
            self._size += len(chunk)

    def text(self) -> str:
        with self._lock:
            return "".join(self._parts)


@dataclass
class ProcessHandle:
    process: subprocess.Popen[str]
    stderr_buffer: _StderrBuffer
    readers: list[threading.Thread] = field(default_factory=list)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def is_running(self) -> bool:
        return self.process.poll() is None

    @property
    def exit_code(self) -> int | None:
        return self.process.poll()

    @property
    def stderr_text(self) -> str:
        return self.stderr_buffer.text()


def _pump(stream: IO[str], level: int, buffer: _StderrBuffer | None) -> None:
    try:
        for raw_line in stream:
            line = raw_line.rstrip("\r\n")
            logger.log(level, "server: %s", line)
            if buffer is not None:
                buffer.append(raw_line)
    except (OSError, ValueError):
        # Stream closed underneath us during shutdown.
        return


class ProcessSupervisor:
    """Owns at most one running server process."""

    def __init__(
        self,
        provisioner: Provisioner,
        prober: HealthProber,
        errors: ErrorRegister | None = None,
        config: RuntimeConfig | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provisioner = provisioner
        self.prober = prober
        self.errors = errors or provisioner.errors
        self.config = config or provisioner.config
        self._sleep = sleep
        self._lock = threading.Lock()
        self._handle: ProcessHandle | None = None

    @property
    def handle(self) -> ProcessHandle | None:
        return self._handle

    @property
    def is_running(self) -> bool:
        handle = self._handle
        return handle is not None and handle.is_running

    def start(self) -> ErrorRecord | None:
        """Spawn the server unless one is already alive; return the failure if any."""
        with self._lock:
            if self._handle is not None and self._handle.is_running:
                return None
            self.errors.clear()

            runtime = check_runtime(self.provisioner.layout)
            if not runtime.ok:
                exc = ProvisionError(runtime.missing[0][0], describe_missing(runtime))
                return self.errors.record(classify(exc, "preflight"))

            try:
                self._handle = self._spawn()
            except (OSError, ValueError) as exc:
                record = classify(LaunchError(f"Failed to start server: {exc}"), "launch")
                logger.error("%s", record)
                return self.errors.record(record)
            return None

    def serve(
        self,
        max_attempts: int | None = None,
        interval_s: float | None = None,
    ) -> ServerState:
        """Start the server and wait until it answers health probes."""
        record = self.start()
        if record is not None:
            return _state_for(record.code)

        handle = self._handle
        result = self.prober.wait_until_ready(
            self.config.ready_attempts if max_attempts is None else max_attempts,
            self.config.ready_interval_s if interval_s is None else interval_s,
            process=handle.process if handle is not None else None,
        )
        if result.ready:
            return ServerState.READY

        if result.exit_code is not None:
            stderr = self._reap()
            self.errors.record(classify(ProcessExited(result.exit_code, stderr), "ready"))
            return ServerState.LAUNCH_FAILED

        self.errors.record(
            classify(
                ReadinessTimeout(
                    f"Server did not answer {self.prober.base_url} after {result.attempts} attempts."
                ),
                "ready",
            )
        )
        return ServerState.TIMEOUT

    def stop(self) -> None:
        with self._lock:
            handle = self._handle
            if handle is None:
                return
            try:
                self._terminate(handle)
            finally:
                self._handle = None

    def restart(self) -> ErrorRecord | None:
        self.stop()
        self._sleep(self.config.restart_delay_s)
        return self.start()

    def get_status(self) -> ServerStatus:
        if self.prober.check_reachable():
            return ServerStatus.RUNNING
        if self.provisioner.state().is_runtime_installed:
            return ServerStatus.STOPPED
        return ServerStatus.NOT_INSTALLED

    def shutdown(self) -> None:
        self.stop()

    def _spawn(self) -> ProcessHandle:
        spec = self.provisioner.launch_spec()
        spec.cwd.mkdir(parents=True, exist_ok=True)
        logger.info("starting server: %s", " ".join(spec.argv))
        process = subprocess.Popen(
            spec.argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=spec.env,
            cwd=spec.cwd,
            text=True,
            errors="replace",
            bufsize=1,
        )
        buffer = _StderrBuffer(self.config.stderr_limit)
        handle = ProcessHandle(process=process, stderr_buffer=buffer)
        for stream, level, sink in (
            (process.stdout, logging.DEBUG, None),
            (process.stderr, logging.WARNING, buffer),
        ):
            assert stream is not None
            thread = threading.Thread(
                target=_pump,
                args=(stream, level, sink),
                name=f"ollamaroot-server-{process.pid}",
                daemon=True,
            )
            thread.start()
            handle.readers.append(thread)
        return handle

    def _reap(self) -> str:
        """Forget an exited process; return whatever stderr it left behind."""
        with self._lock:
            handle = self._handle
            self._handle = None
        if handle is None:
            return ""
        self._close_streams(handle)
        return handle.stderr_text

    def _terminate(self, handle: ProcessHandle) -> None:
        process = handle.process
        if process.poll() is None:
            logger.info("stopping server pid %s", process.pid)
            process.terminate()
            try:
                process.wait(timeout=self.config.stop_timeout_s)
            except subprocess.TimeoutExpired:
                logger.warning("server did not exit after terminate; killing pid %s", process.pid)
                process.kill()
                process.wait(timeout=_KILL_WAIT_S)
        self._close_streams(handle)

    @staticmethod
    def _close_streams(handle: ProcessHandle) -> None:
        for thread in handle.readers:
            if thread.is_alive():
                thread.join(timeout=_READER_JOIN_S)
        for stream in (handle.process.stdout, handle.process.stderr):
            if stream is not None:
                stream.close()


def _state_for(code: ErrorCode) -> ServerState:
    if code in {ErrorCode.INTERPOSER_MISSING, ErrorCode.ROOTFS_MISSING}:
        return ServerState.NOT_SET_UP
    if code is ErrorCode.BINARY_MISSING:
        return ServerState.BINARY_MISSING
    return ServerState.LAUNCH_FAILED
