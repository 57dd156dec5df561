from __future__ import annotations

import signal
import sys
import textwrap
import threading
import time
from pathlib import Path

import pytest

from fakes import ScriptedProber
from ollamaroot.config import RuntimeConfig
from ollamaroot.errors import ErrorCode
from ollamaroot.provision import DirectBinaryProvisioner, InterpositionProvisioner, drain
from ollamaroot.supervisor import ProcessSupervisor, ServerState, ServerStatus

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="requires POSIX signals and shebangs")


def _direct(tmp_path: Path, **overrides) -> DirectBinaryProvisioner:
    config = RuntimeConfig(app_dir=tmp_path / "app", strategy="direct", abis=("arm64-v8a",), **overrides)
    provisioner = DirectBinaryProvisioner(config)
    drain(provisioner.setup())
    return provisioner


def _install_script(provisioner: DirectBinaryProvisioner, body: str, mode: int = 0o755) -> Path:
    binary = provisioner.layout.server_binary
    binary.parent.mkdir(parents=True, exist_ok=True)
    binary.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body), encoding="utf-8")
    binary.chmod(mode)
    return binary


_READY_SERVER = """
import os, pathlib, sys, time
assert sys.argv[1:] == ["serve"]
pathlib.Path(os.environ["HOME"], "ready").write_text(os.environ["OLLAMA_HOST"])
time.sleep(60)
"""

_STUBBORN_SERVER = """
import os, pathlib, signal, time
signal.signal(signal.SIGTERM, signal.SIG_IGN)
pathlib.Path(os.environ["HOME"], "ready").write_text("up")
while True:
    time.sleep(1)
"""

_CRASHING_SERVER = """
import sys
sys.stderr.write("x" * 2000 + "\\n")
sys.stderr.flush()
sys.exit(3)
"""


def _ready_flag(provisioner: DirectBinaryProvisioner):
    flag = provisioner.layout.home_dir / "ready"
    return flag.exists


def test_missing_binary_spawns_nothing(tmp_path: Path) -> None:
    provisioner = DirectBinaryProvisioner(RuntimeConfig(app_dir=tmp_path, strategy="direct"))
    prober = ScriptedProber()
    supervisor = ProcessSupervisor(provisioner, prober)

    assert supervisor.serve() is ServerState.BINARY_MISSING
    assert supervisor.handle is None
    assert prober.probes == 0
    record = supervisor.errors.last
    assert record.code is ErrorCode.BINARY_MISSING
    assert "python -m ollamaroot.setup" in record.message


def test_missing_sandbox_reports_not_set_up(tmp_path: Path) -> None:
    provisioner = InterpositionProvisioner(RuntimeConfig(app_dir=tmp_path, strategy="interposition"))
    supervisor = ProcessSupervisor(provisioner, ScriptedProber())

    assert supervisor.serve() is ServerState.NOT_SET_UP
    assert supervisor.errors.last.code is ErrorCode.INTERPOSER_MISSING
    assert not supervisor.is_running


@posix_only
def test_serve_until_ready_then_stop(tmp_path: Path) -> None:
    provisioner = _direct(tmp_path)
    _install_script(provisioner, _READY_SERVER)
    prober = ScriptedProber(_ready_flag(provisioner), sleep=time.sleep)
    supervisor = ProcessSupervisor(provisioner, prober)

    try:
        state = supervisor.serve(max_attempts=200, interval_s=0.05)
        assert state is ServerState.READY
        assert supervisor.is_running
        assert supervisor.errors.last is None
        assert (provisioner.layout.home_dir / "ready").read_text() == "127.0.0.1:11434"

        pid = supervisor.handle.pid
        assert supervisor.start() is None
        assert supervisor.handle.pid == pid
    finally:
        supervisor.stop()

    assert supervisor.handle is None
    assert not supervisor.is_running


@posix_only
def test_early_exit_keeps_bounded_stderr(tmp_path: Path) -> None:
    provisioner = _direct(tmp_path)
    _install_script(provisioner, _CRASHING_SERVER)
    supervisor = ProcessSupervisor(provisioner, ScriptedProber(sleep=time.sleep))

    state = supervisor.serve(max_attempts=100, interval_s=0.1)

    assert state is ServerState.LAUNCH_FAILED
    record = supervisor.errors.last
    assert record.code is ErrorCode.PROCESS_EXITED
    assert "code 3" in record.message
    assert "x" * 500 in record.message
    assert "x" * 501 not in record.message
    assert supervisor.handle is None


@posix_only
def test_readiness_timeout(tmp_path: Path) -> None:
    provisioner = _direct(tmp_path)
    _install_script(provisioner, _READY_SERVER)
    prober = ScriptedProber()
    supervisor = ProcessSupervisor(provisioner, prober)

    try:
        assert supervisor.serve(max_attempts=3) is ServerState.TIMEOUT
        assert prober.probes == 3
        assert supervisor.errors.last.code is ErrorCode.READINESS_TIMEOUT
    finally:
        supervisor.stop()


@posix_only
def test_unexecutable_binary_is_a_launch_failure(tmp_path: Path) -> None:
    provisioner = _direct(tmp_path)
    _install_script(provisioner, _READY_SERVER, mode=0o644)
    supervisor = ProcessSupervisor(provisioner, ScriptedProber())

    assert supervisor.serve() is ServerState.LAUNCH_FAILED
    assert supervisor.errors.last.code is ErrorCode.LAUNCH_FAILED
    assert supervisor.handle is None


@posix_only
def test_stop_kills_process_ignoring_terminate(tmp_path: Path) -> None:
    provisioner = _direct(tmp_path, stop_timeout_s=0.2)
    _install_script(provisioner, _STUBBORN_SERVER)
    supervisor = ProcessSupervisor(provisioner, ScriptedProber(_ready_flag(provisioner), sleep=time.sleep))

    assert supervisor.serve(max_attempts=200, interval_s=0.05) is ServerState.READY
    process = supervisor.handle.process

    supervisor.stop()

    assert process.returncode == -signal.SIGKILL
    assert supervisor.handle is None


@posix_only
def test_restart_spawns_new_process(tmp_path: Path) -> None:
    provisioner = _direct(tmp_path)
    _install_script(provisioner, _READY_SERVER)
    sleeps: list[float] = []
    supervisor = ProcessSupervisor(provisioner, ScriptedProber(), sleep=sleeps.append)

    try:
        assert supervisor.start() is None
        first = supervisor.handle.process

        assert supervisor.restart() is None

        assert first.poll() is not None
        assert supervisor.handle.pid != first.pid
        assert sleeps == [provisioner.config.restart_delay_s]
    finally:
        supervisor.shutdown()


def test_get_status(tmp_path: Path) -> None:
    provisioner = _direct(tmp_path)
    reachable = {"value": False}
    supervisor = ProcessSupervisor(provisioner, ScriptedProber(lambda: reachable["value"]))

    assert supervisor.get_status() is ServerStatus.NOT_INSTALLED

    provisioner.layout.server_binary.write_text("binary")
    assert supervisor.get_status() is ServerStatus.STOPPED

    reachable["value"] = True
    assert supervisor.get_status() is ServerStatus.RUNNING


@posix_only
def test_concurrent_starts_spawn_one_process(monkeypatch, tmp_path: Path) -> None:
    provisioner = _direct(tmp_path)
    _install_script(provisioner, _READY_SERVER)
    supervisor = ProcessSupervisor(provisioner, ScriptedProber())
    spawned = []
    spawn = supervisor._spawn

    def counting_spawn():
        handle = spawn()
        spawned.append(handle)
        return handle

    monkeypatch.setattr(supervisor, "_spawn", counting_spawn)
    barrier = threading.Barrier(8)
    results = []
    pids = []

    def worker() -> None:
        barrier.wait()
        results.append(supervisor.start())
        pids.append(supervisor.handle.pid)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    try:
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert results == [None] * 8
        assert len(spawned) == 1
        assert set(pids) == {spawned[0].pid}
        assert supervisor.is_running
    finally:
        supervisor.stop()
        for handle in spawned:
            if handle.is_running:
                handle.process.kill()


@posix_only
def test_zero_attempts_is_not_replaced_by_default(tmp_path: Path) -> None:
    provisioner = _direct(tmp_path)
    _install_script(provisioner, _READY_SERVER)
    prober = ScriptedProber(lambda: True)
    supervisor = ProcessSupervisor(provisioner, prober)

    try:
        assert supervisor.serve(max_attempts=0) is ServerState.TIMEOUT
        assert prober.probes == 0
    finally:
        supervisor.stop()
