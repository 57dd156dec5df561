"""Checks against the real download mirrors.

Enable with ``OLLAMAROOT_RUN_NETWORK_TESTS=1``.
"""

from __future__ import annotations

import os
import urllib.request
from pathlib import Path

import pytest

from ollamaroot.arch import Architecture
from ollamaroot.config import RuntimeConfig, default_sources
from ollamaroot.provision import DirectBinaryProvisioner, Phase, drain

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(
        os.environ.get("OLLAMAROOT_RUN_NETWORK_TESTS") != "1",
        reason="network tests disabled",
    ),
]


@pytest.mark.parametrize("arch", [Architecture.ARM64, Architecture.X86_64])
def test_default_sources_resolve(arch: Architecture) -> None:
    sources = default_sources(arch)
    for url in (sources.interposer_url, sources.rootfs_url, sources.server_archive_url):
        request = urllib.request.Request(url, method="HEAD")
        with urllib.request.urlopen(request, timeout=30) as response:
            assert 200 <= response.status < 300, url


def test_direct_install_from_release(tmp_path: Path) -> None:
    config = RuntimeConfig(app_dir=tmp_path, strategy="direct")
    provisioner = DirectBinaryProvisioner(config)

    assert drain(provisioner.setup()).phase is Phase.DONE
    final = drain(provisioner.install_server())

    assert final.phase is Phase.DONE, final.message
    assert provisioner.layout.server_binary.is_file()
