"""Runtime configuration and download sources."""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path

from .arch import ABIS_ENV, Architecture
from .runtime_paths import APP_DIR_ENV, STRATEGIES, get_app_dir

DEFAULT_SERVER_VERSION = "0.5.4"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 11434

ALPINE_RELEASE = "3.19.1"
PROOT_BASE_URL = "https://skirsten.github.io/proot-portable-android-binaries"
BOOTSTRAP_BASE_URL = (
    "https://github.com/termux/termux-packages/releases/download/"
    "bootstrap-2026.02.01-r1%2Bapt.android-7"
)
SERVER_PACKAGE_BASE_URL = "https://packages.termux.dev/apt/termux-main/pool/main/o/ollama"

_ENV_PREFIX = "OLLAMAROOT_"

_SOURCE_ENV = {
    "interposer_url": "PROOT_URL",
    "rootfs_url": "ROOTFS_URL",
    "server_archive_url": "SERVER_ARCHIVE_URL",
    "bootstrap_url": "BOOTSTRAP_URL",
    "server_package_url": "SERVER_PACKAGE_URL",
}


@dataclass(frozen=True)
class DownloadSources:
    interposer_url: str
    rootfs_url: str
    server_archive_url: str
    bootstrap_url: str
    server_package_url: str

    def with_overrides(self, overrides: dict[str, str]) -> "DownloadSources":
        unknown = set(overrides) - set(_SOURCE_ENV)
        if unknown:
            raise ValueError(f"Unknown download source(s): {', '.join(sorted(unknown))}")
        return dataclasses.replace(self, **overrides)


def default_sources(arch: Architecture, server_version: str = DEFAULT_SERVER_VERSION) -> DownloadSources:
    alpine_branch = ".".join(ALPINE_RELEASE.split(".")[:2])
    rootfs = arch.rootfs_name
    return DownloadSources(
        interposer_url=f"{PROOT_BASE_URL}/{rootfs}/proot",
        rootfs_url=(
            f"https://dl-cdn.alpinelinux.org/alpine/v{alpine_branch}/releases/{rootfs}/"
            f"alpine-minirootfs-{ALPINE_RELEASE}-{rootfs}.tar.gz"
        ),
        server_archive_url=(
            f"https://github.com/ollama/ollama/releases/download/v{server_version}/"
            f"ollama-linux-{arch.release_name}.tgz"
        ),
        bootstrap_url=f"{BOOTSTRAP_BASE_URL}/bootstrap-{arch.package_name}.zip",
        server_package_url=(
            f"{SERVER_PACKAGE_BASE_URL}/ollama_{server_version}_{arch.package_name}.deb"
        ),
    )


@dataclass
class RuntimeConfig:
    app_dir: Path | None = None
    strategy: str = "interposition"
    server_version: str = DEFAULT_SERVER_VERSION
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    connect_timeout_s: float = 60.0
    read_timeout_s: float = 300.0
    probe_timeout_s: float = 5.0
    ready_attempts: int = 30
    ready_interval_s: float = 1.0
    stop_timeout_s: float = 5.0
    restart_delay_s: float = 1.0
    stderr_limit: int = 500
    abis: tuple[str, ...] | None = None
    sources: dict[str, str] = field(default_factory=dict)

    @property
    def resolved_app_dir(self) -> Path:
        return get_app_dir(self.app_dir)

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def listen_address(self) -> str:
        return f"{self.host}:{self.port}"

    def validate(self) -> None:
        if self.strategy not in STRATEGIES:
            raise ValueError(
                f"`strategy` must be one of {', '.join(STRATEGIES)}, got: {self.strategy!r}"
            )
        if not isinstance(self.server_version, str) or not self.server_version.strip():
            raise ValueError("`server_version` must be a non-empty string.")
        if not isinstance(self.port, int) or not 1 <= self.port <= 65535:
            raise ValueError(f"`port` must be in [1, 65535], got: {self.port!r}")
        for name in (
            "connect_timeout_s",
            "read_timeout_s",
            "probe_timeout_s",
            "stop_timeout_s",
        ):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or value <= 0:
                raise ValueError(f"`{name}` must be > 0, got: {value!r}")
        for name in ("ready_interval_s", "restart_delay_s"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or value < 0:
                raise ValueError(f"`{name}` must be >= 0, got: {value!r}")
        if not isinstance(self.ready_attempts, int) or self.ready_attempts < 1:
            raise ValueError(f"`ready_attempts` must be >= 1, got: {self.ready_attempts!r}")
        if not isinstance(self.stderr_limit, int) or self.stderr_limit < 0:
            raise ValueError(f"`stderr_limit` must be >= 0, got: {self.stderr_limit!r}")
        unknown = set(self.sources) - set(_SOURCE_ENV)
        if unknown:
            raise ValueError(f"`sources` has unknown key(s): {', '.join(sorted(unknown))}")

    def download_sources(self, arch: Architecture) -> DownloadSources:
        return default_sources(arch, self.server_version).with_overrides(self.sources)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None, **overrides) -> "RuntimeConfig":
        """Build a config from ``OLLAMAROOT_*`` variables; keyword overrides win."""
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}

        home = env.get(APP_DIR_ENV)
        if home:
            values["app_dir"] = Path(home)
        strategy = env.get(f"{_ENV_PREFIX}STRATEGY")
        if strategy:
            values["strategy"] = strategy.strip().lower()
        version = env.get(f"{_ENV_PREFIX}SERVER_VERSION")
        if version:
            values["server_version"] = version.strip()
        port = env.get(f"{_ENV_PREFIX}PORT")
        if port:
            try:
                values["port"] = int(port)
            except ValueError:
                raise ValueError(f"`port` must be an int, got: {port!r}") from None
        abis = env.get(ABIS_ENV)
        if abis:
            values["abis"] = tuple(part.strip() for part in abis.split(",") if part.strip())

        sources = {
            key: env[f"{_ENV_PREFIX}{suffix}"]
            for key, suffix in _SOURCE_ENV.items()
            if env.get(f"{_ENV_PREFIX}{suffix}")
        }
        if sources:
            values["sources"] = sources

        values.update({key: value for key, value in overrides.items() if value is not None})
        config = cls(**values)
        config.validate()
        return config
