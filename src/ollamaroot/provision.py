"""Build the sandbox tree the server runs in.

Three variants share one interface:

``interposition``
    A user-space ``chroot`` substitute (proot) over an Alpine minirootfs.
``bootstrap``
    A Termux bootstrap prefix; the server comes from its ``.deb`` package.
``direct``
    The upstream release archive unpacked into a private prefix.

``setup()`` and ``install_server()`` are generators of :class:`ProgressEvent`
on a single 0-100 scale. They never raise: a failure ends the stream with a
``failed`` event carrying the classified :class:`ErrorRecord`.
"""

from __future__ import annotations

import abc
import dataclasses
import enum
import logging
import queue
import shutil
import stat
import subprocess
import threading
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path

from .arch import Architecture, host_abis, resolve_architecture
from .config import DownloadSources, RuntimeConfig
from .errors import (
    Cancelled,
    CommandError,
    ErrorCode,
    ErrorRecord,
    ErrorRegister,
    ProvisionError,
    classify,
    manual_fallback,
)
from .extract import ArchiveFormat, extract, extract_member
from .fetch import CancelToken, DownloadProgress, Fetcher
from .runtime_paths import (
    SandboxLayout,
    SandboxState,
    is_provisioned,
    layout_for,
    marker_present,
    sandbox_state,
)

logger = logging.getLogger(__name__)

TERMUX_PREFIX = "/data/data/com.termux/files/usr"
NAMESERVERS = ("8.8.8.8", "8.8.4.4")
ALPINE_PACKAGES = ("gcompat", "libstdc++")
GCOMPAT_LIBRARY = "lib/libgcompat.so.0"
SYMLINK_MANIFEST = "SYMLINKS.txt"

_GUEST_HOME = "/root"
_GUEST_PATH = "/usr/local/bin:/usr/bin:/bin:/usr/sbin:/sbin"
_GUEST_BINDS = ("/dev", "/proc", "/sys")
_SERVER_MEMBERS = ("bin/ollama",)


class Phase(enum.Enum):
    PREPARE = "prepare"
    DOWNLOAD = "download"
    EXTRACT = "extract"
    CONFIGURE = "configure"
    SYMLINKS = "symlinks"
    PERMISSIONS = "permissions"
    PACKAGES = "packages"
    VERIFY = "verify"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class ProgressEvent:
    phase: Phase
    percent: int
    message: str
    download: DownloadProgress | None = None
    error: ErrorRecord | None = None

    @property
    def terminal(self) -> bool:
        return self.phase in {Phase.DONE, Phase.FAILED}


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class LaunchSpec:
    argv: list[str]
    env: dict[str, str]
    cwd: Path


CommandRunner = Callable[[list[str], dict[str, str], Path], CommandResult]


def run_command(argv: list[str], env: dict[str, str], cwd: Path) -> CommandResult:
    """Run ``argv`` to completion with stdout and stderr merged."""
    logger.debug("exec: %s", argv)
    completed = subprocess.run(
        argv,
        env=env,
        cwd=cwd,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors="replace",
        check=False,
    )
    return CommandResult(exit_code=completed.returncode, output=completed.stdout or "")


def drain(
    events: Iterable[ProgressEvent],
    on_event: Callable[[ProgressEvent], None] | None = None,
) -> ProgressEvent:
    """Consume a progress stream and return its terminal event."""
    last: ProgressEvent | None = None
    for event in events:
        if on_event is not None:
            on_event(event)
        last = event
    if last is None:
        raise RuntimeError("progress stream ended without a terminal event")
    return last


def _scale(percent: int | None, start: int, end: int) -> int:
    if percent is None:
        return start
    return start + (end - start) * max(0, min(100, percent)) // 100


def _check_cancel(cancel: CancelToken | None) -> None:
    if cancel is not None and cancel.cancelled:
        raise Cancelled("Cancelled by caller.")


def _add_exec_bits(directory: Path) -> int:
    if not directory.is_dir():
        return 0
    count = 0
    for path in directory.rglob("*"):
        if path.is_symlink() or not path.is_file():
            continue
        mode = stat.S_IMODE(path.stat().st_mode)
        path.chmod(mode | 0o555)
        count += 1
    return count


def _inside(root: Path, path: Path) -> bool:
    resolved_root = root.resolve()
    resolved = path.resolve()
    return resolved == resolved_root or resolved.is_relative_to(resolved_root)


class Provisioner(abc.ABC):
    """Base class for the provisioning variants."""

    strategy: str

    def __init__(
        self,
        config: RuntimeConfig,
        *,
        arch: Architecture | None = None,
        fetcher: Fetcher | None = None,
        command_runner: CommandRunner | None = None,
        errors: ErrorRegister | None = None,
    ):
        self.config = config
        self.arch = arch or resolve_architecture(config.abis or host_abis())
        self.sources: DownloadSources = config.download_sources(self.arch)
        self.layout: SandboxLayout = layout_for(self.strategy, config.app_dir)
        self.fetcher = fetcher or Fetcher(connect_timeout_s=config.connect_timeout_s)
        self.run_command = command_runner or run_command
        self.errors = errors or ErrorRegister()

    def state(self) -> SandboxState:
        return sandbox_state(self.layout)

    def setup(self, cancel: CancelToken | None = None) -> Iterator[ProgressEvent]:
        return self._guarded(self._verified_setup(cancel), "Environment ready")

    def install_server(self, cancel: CancelToken | None = None) -> Iterator[ProgressEvent]:
        return self._guarded(self._install_steps(cancel), "Server installed")

    def exec(self, *argv: str) -> CommandResult:
        """Run a command inside the sandbox; ``argv`` is never joined into a shell string."""
        if not argv:
            raise ValueError("`argv` must not be empty.")
        command, cwd = self._command_argv(list(argv))
        return self.run_command(command, self._environment(), cwd)

    def launch_spec(self, *args: str) -> LaunchSpec:
        argv = self._server_argv() + list(args or ("serve",))
        return LaunchSpec(argv=argv, env=self._environment(), cwd=self.layout.home_dir)

    def reset(self) -> None:
        for path in self._owned_paths():
            if path.is_symlink() or path.is_file():
                path.unlink()
            elif path.exists():
                logger.info("removing %s", path)
                shutil.rmtree(path)

    def manual_install_hint(self) -> str:
        return manual_fallback(self.strategy)

    @abc.abstractmethod
    def _setup_steps(self, cancel: CancelToken | None) -> Iterator[ProgressEvent]:
        raise NotImplementedError

    @abc.abstractmethod
    def _install_steps(self, cancel: CancelToken | None) -> Iterator[ProgressEvent]:
        raise NotImplementedError

    @abc.abstractmethod
    def _environment(self) -> dict[str, str]:
        raise NotImplementedError

    @abc.abstractmethod
    def _server_argv(self) -> list[str]:
        raise NotImplementedError

    @abc.abstractmethod
    def _owned_paths(self) -> tuple[Path, ...]:
        raise NotImplementedError

    def _verified_setup(self, cancel: CancelToken | None) -> Iterator[ProgressEvent]:
        yield from self._setup_steps(cancel)
        if not is_provisioned(self.layout):
            raise ProvisionError(
                ErrorCode.ROOTFS_MISSING,
                f"Setup finished but the sandbox marker is missing: {self.layout.marker}",
            )

    def _command_argv(self, argv: list[str]) -> tuple[list[str], Path]:
        program = argv[0]
        if "/" not in program:
            program = str(self.layout.bin_dir / program)
        return [program, *argv[1:]], self.layout.home_dir

    def _guarded(self, steps: Iterator[ProgressEvent], done_message: str) -> Iterator[ProgressEvent]:
        self.errors.clear()
        last = 0
        phase = Phase.PREPARE
        try:
            for event in steps:
                phase = event.phase
                if event.percent < last:
                    event = dataclasses.replace(event, percent=last)
                last = event.percent
                yield event
        except Exception as exc:
            record = self.errors.record(classify(exc, phase.value))
            logger.warning("%s provisioning failed during %s: %s", self.strategy, phase.value, record)
            yield ProgressEvent(Phase.FAILED, last, record.message, error=record)
            return
        yield ProgressEvent(Phase.DONE, 100, done_message)

    def _download(
        self,
        url: str,
        destination: Path,
        start: int,
        end: int,
        label: str,
        cancel: CancelToken | None,
    ) -> Iterator[ProgressEvent]:
        """Run the fetch on a worker thread and relay its progress as events."""
        _check_cancel(cancel)
        updates: queue.Queue[DownloadProgress | None] = queue.Queue()
        failure: list[Exception] = []

        def worker() -> None:
            try:
                self.fetcher.fetch(url, destination, on_progress=updates.put, cancel=cancel)
            except Exception as exc:
                failure.append(exc)
            finally:
                updates.put(None)

        yield ProgressEvent(Phase.DOWNLOAD, start, f"{label}...")
        thread = threading.Thread(target=worker, name=f"ollamaroot-fetch-{destination.name}", daemon=True)
        thread.start()
        while True:
            progress = updates.get()
            if progress is None:
                break
            yield ProgressEvent(
                Phase.DOWNLOAD,
                _scale(progress.percent, start, end),
                f"{label}... {progress.describe()}",
                download=progress,
            )
        thread.join()
        if failure:
            raise failure[0]

    def _run_checked(self, *argv: str) -> CommandResult:
        result = self.exec(*argv)
        if not result.ok:
            raise CommandError(list(argv), result.exit_code, result.output)
        return result

    def _require_setup(self) -> None:
        if is_provisioned(self.layout):
            return
        if self.layout.interposer is not None and not self.layout.interposer.exists():
            code = ErrorCode.INTERPOSER_MISSING
        else:
            code = ErrorCode.ROOTFS_MISSING
        raise ProvisionError(code, "Sandbox is not set up; run setup() before installing the server.")

    def _verify_server_binary(self) -> None:
        binary = self.layout.server_binary
        if not binary.is_file():
            raise ProvisionError(ErrorCode.BINARY_MISSING, f"Server binary missing after install: {binary}")
        mode = stat.S_IMODE(binary.stat().st_mode)
        if not mode & 0o111:
            binary.chmod(mode | 0o755)

    def _common_environment(self, *, home: str, tmp: str, models: str) -> dict[str, str]:
        return {
            "HOME": home,
            "TMPDIR": tmp,
            "LANG": "C.UTF-8",
            "OLLAMA_HOST": self.config.listen_address,
            "OLLAMA_MODELS": models,
        }


class InterpositionProvisioner(Provisioner):
    strategy = "interposition"

    def _setup_steps(self, cancel: CancelToken | None) -> Iterator[ProgressEvent]:
        layout = self.layout
        assert layout.interposer is not None
        if is_provisioned(layout) and self._shim_installed():
            logger.info("interposition sandbox already provisioned at %s", layout.tree)
            return

        yield ProgressEvent(Phase.PREPARE, 0, "Preparing directories...")
        for directory in (layout.tree, layout.root, layout.tmp_dir, layout.downloads_dir):
            directory.mkdir(parents=True, exist_ok=True)

        if not layout.interposer.exists():
            yield from self._download(
                self.sources.interposer_url,
                layout.interposer,
                5,
                20,
                "Downloading proot",
                cancel,
            )
            layout.interposer.chmod(0o755)

        if not marker_present(layout):
            archive = layout.downloads_dir / f"alpine-minirootfs-{self.arch.rootfs_name}.tar.gz"
            yield from self._download(
                self.sources.rootfs_url,
                archive,
                20,
                40,
                "Downloading Linux environment",
                cancel,
            )
            _check_cancel(cancel)
            yield ProgressEvent(Phase.EXTRACT, 40, "Extracting Linux environment...")
            count = extract(archive, layout.root, ArchiveFormat.TAR_GZ)
            archive.unlink(missing_ok=True)
            yield ProgressEvent(Phase.EXTRACT, 55, f"Extracted {count} files")

        yield ProgressEvent(Phase.CONFIGURE, 55, "Configuring network...")
        self._write_resolv_conf()

        yield ProgressEvent(Phase.PERMISSIONS, 57, "Setting permissions...")
        layout.interposer.chmod(0o755)
        for rel in ("bin", "sbin", "usr/bin", "usr/sbin", "usr/local/bin"):
            _add_exec_bits(layout.root / rel)
        layout.home_dir.mkdir(parents=True, exist_ok=True)

        _check_cancel(cancel)
        yield ProgressEvent(Phase.PACKAGES, 60, "Updating package index...")
        self._run_checked("apk", "update")
        _check_cancel(cancel)
        yield ProgressEvent(Phase.PACKAGES, 75, "Installing glibc compatibility...")
        self._run_checked("apk", "add", *ALPINE_PACKAGES)

    def _install_steps(self, cancel: CancelToken | None) -> Iterator[ProgressEvent]:
        layout = self.layout
        self._require_setup()
        if layout.server_binary.exists():
            logger.info("server already installed at %s", layout.server_binary)
            return

        yield ProgressEvent(Phase.PREPARE, 0, "Installing Ollama...")
        layout.bin_dir.mkdir(parents=True, exist_ok=True)
        layout.downloads_dir.mkdir(parents=True, exist_ok=True)
        archive = layout.downloads_dir / f"ollama-linux-{self.arch.release_name}.tgz"
        yield from self._download(
            self.sources.server_archive_url,
            archive,
            10,
            80,
            "Downloading Ollama",
            cancel,
        )
        _check_cancel(cancel)
        yield ProgressEvent(Phase.EXTRACT, 80, "Extracting Ollama...")
        extract_member(archive, layout.server_binary, _SERVER_MEMBERS)
        archive.unlink(missing_ok=True)

        yield ProgressEvent(Phase.VERIFY, 95, "Verifying server binary...")
        self._verify_server_binary()

    def _shim_installed(self) -> bool:
        """True once gcompat has put its loader shim into the root."""
        return (self.layout.root / GCOMPAT_LIBRARY).exists()

    def _write_resolv_conf(self) -> None:
        etc = self.layout.root / "etc"
        etc.mkdir(parents=True, exist_ok=True)
        resolv = etc / "resolv.conf"
        if resolv.is_symlink():
            resolv.unlink()
        resolv.write_text("".join(f"nameserver {ns}\n" for ns in NAMESERVERS), encoding="utf-8")

    def _interposer_prefix(self) -> list[str]:
        assert self.layout.interposer is not None
        argv = [str(self.layout.interposer), "-0", "-r", str(self.layout.root)]
        for bind in _GUEST_BINDS:
            argv.extend(["-b", bind])
        argv.extend(["-w", _GUEST_HOME])
        return argv

    def _command_argv(self, argv: list[str]) -> tuple[list[str], Path]:
        return self._interposer_prefix() + argv, self.layout.root

    def _server_argv(self) -> list[str]:
        return self._interposer_prefix() + ["/usr/local/bin/ollama"]

    def _environment(self) -> dict[str, str]:
        env = self._common_environment(
            home=_GUEST_HOME,
            tmp="/tmp",
            models=f"{_GUEST_HOME}/.ollama/models",
        )
        env.update(
            {
                "PATH": _GUEST_PATH,
                "LD_LIBRARY_PATH": "/usr/lib:/lib",
                "PROOT_TMP_DIR": str(self.layout.tmp_dir),
            }
        )
        return env

    def _owned_paths(self) -> tuple[Path, ...]:
        return (self.layout.tree,)


class BootstrapProvisioner(Provisioner):
    strategy = "bootstrap"

    def _setup_steps(self, cancel: CancelToken | None) -> Iterator[ProgressEvent]:
        layout = self.layout
        if is_provisioned(layout):
            logger.info("bootstrap prefix already provisioned at %s", layout.root)
            return

        for directory in (layout.root, layout.home_dir, layout.tmp_dir, layout.downloads_dir):
            directory.mkdir(parents=True, exist_ok=True)

        archive = layout.downloads_dir / f"bootstrap-{self.arch.package_name}.zip"
        yield from self._download(
            self.sources.bootstrap_url,
            archive,
            0,
            40,
            "Downloading environment",
            cancel,
        )
        _check_cancel(cancel)
        yield ProgressEvent(Phase.EXTRACT, 40, "Extracting environment...")
        extract(archive, layout.root, ArchiveFormat.ZIP)
        archive.unlink(missing_ok=True)

        _check_cancel(cancel)
        yield ProgressEvent(Phase.SYMLINKS, 50, "Setting up symlinks...")
        self._apply_symlink_manifest()

        yield ProgressEvent(Phase.PERMISSIONS, 55, "Setting permissions...")
        _add_exec_bits(layout.bin_dir)
        _add_exec_bits(layout.lib_dir)

        yield ProgressEvent(Phase.VERIFY, 60, "Verifying environment...")
        if not layout.marker.exists():
            raise ProvisionError(
                ErrorCode.ROOTFS_MISSING,
                f"Bootstrap bundle did not provide {layout.marker.relative_to(layout.root)}",
            )
        result = self._run_checked("sh", "-c", "echo ok")
        if "ok" not in result.output:
            raise CommandError(["sh", "-c", "echo ok"], result.exit_code, result.output)

    def _install_steps(self, cancel: CancelToken | None) -> Iterator[ProgressEvent]:
        layout = self.layout
        self._require_setup()
        if layout.server_binary.exists():
            logger.info("server already installed at %s", layout.server_binary)
            return

        yield ProgressEvent(Phase.PREPARE, 0, "Installing Ollama...")
        layout.downloads_dir.mkdir(parents=True, exist_ok=True)
        archive = layout.downloads_dir / f"ollama_{self.config.server_version}_{self.arch.package_name}.deb"
        yield from self._download(
            self.sources.server_package_url,
            archive,
            10,
            80,
            "Downloading Ollama package",
            cancel,
        )
        _check_cancel(cancel)
        yield ProgressEvent(Phase.EXTRACT, 80, "Extracting Ollama package...")
        extract(
            archive,
            layout.root,
            ArchiveFormat.DEB,
            strip_prefix=TERMUX_PREFIX,
            executables=_SERVER_MEMBERS,
        )
        archive.unlink(missing_ok=True)

        yield ProgressEvent(Phase.PERMISSIONS, 95, "Setting permissions...")
        _add_exec_bits(layout.bin_dir)
        self._verify_server_binary()

    def _apply_symlink_manifest(self) -> int:
        """Materialise ``target←link`` manifest lines as file copies."""
        prefix = self.layout.root
        manifest = prefix / SYMLINK_MANIFEST
        if not manifest.exists():
            logger.warning("%s not found in bootstrap bundle", SYMLINK_MANIFEST)
            return 0

        count = 0
        for line in manifest.read_text(encoding="utf-8").splitlines():
            target, sep, link = line.partition("←")
            target, link = target.strip(), link.strip()
            if not sep or not target or not link:
                continue
            link_path = prefix / link.lstrip("/")
            if target.startswith(f"{TERMUX_PREFIX}/"):
                source = prefix / target[len(TERMUX_PREFIX) + 1 :]
            elif target.startswith("/"):
                source = prefix / target.lstrip("/")
            else:
                source = link_path.parent / target
            if not _inside(prefix, link_path) or not _inside(prefix, source):
                logger.warning("ignoring symlink entry outside prefix: %s", line)
                continue
            if not source.is_file():
                logger.debug("symlink target missing: %s", line)
                continue
            link_path.parent.mkdir(parents=True, exist_ok=True)
            if link_path.is_symlink() or link_path.exists():
                link_path.unlink()
            shutil.copy2(source, link_path)
            count += 1
        logger.info("materialised %d symlinks", count)
        return count

    def _server_argv(self) -> list[str]:
        return [str(self.layout.server_binary)]

    def _environment(self) -> dict[str, str]:
        layout = self.layout
        env = self._common_environment(
            home=str(layout.home_dir),
            tmp=str(layout.tmp_dir),
            models=str(layout.models_dir),
        )
        env.update(
            {
                "PATH": str(layout.bin_dir),
                "LD_LIBRARY_PATH": str(layout.lib_dir),
                "PREFIX": str(layout.root),
                "TERMUX_PREFIX": str(layout.root),
                "ANDROID_DATA": "/data",
                "ANDROID_ROOT": "/system",
            }
        )
        return env

    def _owned_paths(self) -> tuple[Path, ...]:
        return (self.layout.root, self.layout.home_dir, self.layout.tmp_dir)


class DirectBinaryProvisioner(Provisioner):
    strategy = "direct"

    def _setup_steps(self, cancel: CancelToken | None) -> Iterator[ProgressEvent]:
        layout = self.layout
        if is_provisioned(layout):
            logger.info("direct prefix already provisioned at %s", layout.root)
            return

        yield ProgressEvent(Phase.PREPARE, 0, "Preparing directories...")
        for directory in (
            layout.root,
            layout.bin_dir,
            layout.lib_dir,
            layout.tmp_dir,
            layout.downloads_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)
        # marker last
        layout.home_dir.mkdir(parents=True, exist_ok=True)

    def _install_steps(self, cancel: CancelToken | None) -> Iterator[ProgressEvent]:
        layout = self.layout
        self._require_setup()
        if layout.server_binary.exists():
            logger.info("server already installed at %s", layout.server_binary)
            return

        yield ProgressEvent(Phase.PREPARE, 0, "Installing Ollama...")
        layout.downloads_dir.mkdir(parents=True, exist_ok=True)
        archive = layout.downloads_dir / f"ollama-linux-{self.arch.release_name}.tgz"
        yield from self._download(
            self.sources.server_archive_url,
            archive,
            10,
            80,
            "Downloading Ollama",
            cancel,
        )
        _check_cancel(cancel)
        yield ProgressEvent(Phase.EXTRACT, 80, "Extracting Ollama...")
        extract(archive, layout.root, ArchiveFormat.TAR_GZ, executables=_SERVER_MEMBERS)
        archive.unlink(missing_ok=True)

        yield ProgressEvent(Phase.VERIFY, 95, "Verifying server binary...")
        self._verify_server_binary()

    def _server_argv(self) -> list[str]:
        return [str(self.layout.server_binary)]

    def _environment(self) -> dict[str, str]:
        layout = self.layout
        env = self._common_environment(
            home=str(layout.home_dir),
            tmp=str(layout.tmp_dir),
            models=str(layout.models_dir),
        )
        env.update({"PATH": str(layout.bin_dir), "LD_LIBRARY_PATH": str(layout.lib_dir)})
        return env

    def _owned_paths(self) -> tuple[Path, ...]:
        return (self.layout.tree,)


_VARIANTS: dict[str, type[Provisioner]] = {
    "interposition": InterpositionProvisioner,
    "bootstrap": BootstrapProvisioner,
    "direct": DirectBinaryProvisioner,
}


def create_provisioner(config: RuntimeConfig, **kwargs) -> Provisioner:
    """Instantiate the variant selected by ``config.strategy``."""
    config.validate()
    return _VARIANTS[config.strategy](config, **kwargs)
