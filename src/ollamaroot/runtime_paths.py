"""Runtime path helpers for ollamaroot."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path

APP_DIR_ENV = "OLLAMAROOT_HOME"
APP_DIR_NAME = "ollamaroot"

STRATEGIES = ("interposition", "bootstrap", "direct")


def get_app_dir(app_dir: str | Path | None = None) -> Path:
    """Return the ollamaroot app data directory.

    Priority order:
    1) explicit ``app_dir`` argument
    2) ``OLLAMAROOT_HOME`` environment variable
    3) platform default app data directory
    """
    if app_dir is not None:
        return Path(app_dir).expanduser().resolve()

    override = os.environ.get(APP_DIR_ENV)
    if override:
        return Path(override).expanduser().resolve()

    if sys.platform == "darwin":
        return (Path.home() / "Library" / "Application Support" / APP_DIR_NAME).resolve()

    xdg_data_home = os.environ.get("XDG_DATA_HOME")
    if xdg_data_home:
        return (Path(xdg_data_home).expanduser() / APP_DIR_NAME).resolve()
    return (Path.home() / ".local" / "share" / APP_DIR_NAME).resolve()


def downloads_dir(app_dir: str | Path | None = None) -> Path:
    return get_app_dir(app_dir) / "downloads"


def preferences_path(app_dir: str | Path | None = None) -> Path:
    return get_app_dir(app_dir) / "preferences.json"


@dataclass(frozen=True)
class SandboxLayout:
    """Where one provisioning variant keeps its files."""

    strategy: str
    tree: Path
    root: Path
    bin_dir: Path
    lib_dir: Path
    home_dir: Path
    tmp_dir: Path
    marker: Path
    server_binary: Path
    downloads_dir: Path
    interposer: Path | None = None

    @property
    def models_dir(self) -> Path:
        return self.home_dir / ".ollama" / "models"


def interposition_layout(app_dir: str | Path | None = None) -> SandboxLayout:
    base = get_app_dir(app_dir)
    tree = base / "proot"
    rootfs = tree / "rootfs"
    return SandboxLayout(
        strategy="interposition",
        tree=tree,
        root=rootfs,
        bin_dir=rootfs / "usr" / "local" / "bin",
        lib_dir=rootfs / "usr" / "lib",
        home_dir=rootfs / "root",
        tmp_dir=tree / "tmp",
        marker=rootfs / "bin" / "sh",
        server_binary=rootfs / "usr" / "local" / "bin" / "ollama",
        downloads_dir=downloads_dir(base),
        interposer=tree / "proot",
    )


def bootstrap_layout(app_dir: str | Path | None = None) -> SandboxLayout:
    base = get_app_dir(app_dir)
    prefix = base / "usr"
    return SandboxLayout(
        strategy="bootstrap",
        tree=prefix,
        root=prefix,
        bin_dir=prefix / "bin",
        lib_dir=prefix / "lib",
        home_dir=base / "home",
        tmp_dir=base / "tmp",
        marker=prefix / "bin" / "sh",
        server_binary=prefix / "bin" / "ollama",
        downloads_dir=downloads_dir(base),
    )


def direct_layout(app_dir: str | Path | None = None) -> SandboxLayout:
    base = get_app_dir(app_dir)
    prefix = base / "ollama"
    return SandboxLayout(
        strategy="direct",
        tree=prefix,
        root=prefix,
        bin_dir=prefix / "bin",
        lib_dir=prefix / "lib",
        home_dir=prefix / "home",
        tmp_dir=prefix / "tmp",
        marker=prefix / "home",
        server_binary=prefix / "bin" / "ollama",
        downloads_dir=downloads_dir(base),
    )


_LAYOUTS = {
    "interposition": interposition_layout,
    "bootstrap": bootstrap_layout,
    "direct": direct_layout,
}


def layout_for(strategy: str, app_dir: str | Path | None = None) -> SandboxLayout:
    try:
        factory = _LAYOUTS[strategy]
    except KeyError:
        raise ValueError(
            f"`strategy` must be one of {', '.join(STRATEGIES)}, got: {strategy!r}"
        ) from None
    return factory(app_dir)


@dataclass(frozen=True)
class SandboxState:
    root_path: Path
    bin_dir: Path
    lib_dir: Path
    home_dir: Path
    tmp_dir: Path
    is_provisioned: bool
    is_runtime_installed: bool


def marker_present(layout: SandboxLayout) -> bool:
    # Root filesystems carry absolute symlinks (bin/sh -> /bin/busybox) that dangle on the host.
    return os.path.lexists(layout.marker)


def is_provisioned(layout: SandboxLayout) -> bool:
    if layout.interposer is not None and not layout.interposer.exists():
        return False
    return marker_present(layout)


def sandbox_state(layout: SandboxLayout) -> SandboxState:
    """Describe ``layout`` from what is on disk right now."""
    provisioned = is_provisioned(layout)
    return SandboxState(
        root_path=layout.root,
        bin_dir=layout.bin_dir,
        lib_dir=layout.lib_dir,
        home_dir=layout.home_dir,
        tmp_dir=layout.tmp_dir,
        is_provisioned=provisioned,
        is_runtime_installed=provisioned and layout.server_binary.exists(),
    )
