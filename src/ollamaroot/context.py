"""Application context wiring every component once."""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, TypeVar

from .arch import Architecture, host_abis, resolve_architecture
from .client import OllamaClient
from .config import DownloadSources, RuntimeConfig
from .errors import ErrorRegister
from .fetch import Fetcher
from .health import HealthProber
from .preferences import PreferenceStore
from .provision import Provisioner, create_provisioner
from .runtime_paths import preferences_path
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class AppContext:
    config: RuntimeConfig
    arch: Architecture
    sources: DownloadSources
    fetcher: Fetcher
    errors: ErrorRegister
    provisioner: Provisioner
    prober: HealthProber
    supervisor: ProcessSupervisor
    preferences: PreferenceStore
    executor: ThreadPoolExecutor

    @classmethod
    def create(cls, config: RuntimeConfig | None = None, **overrides: Any) -> "AppContext":
        config = config or RuntimeConfig.from_env()
        config.validate()
        arch = resolve_architecture(config.abis or host_abis())
        errors = ErrorRegister()
        fetcher = overrides.pop("fetcher", None) or Fetcher(connect_timeout_s=config.connect_timeout_s)
        provisioner = create_provisioner(
            config,
            arch=arch,
            fetcher=fetcher,
            errors=errors,
            command_runner=overrides.pop("command_runner", None),
        )
        prober = overrides.pop("prober", None) or HealthProber(config.base_url, config.probe_timeout_s)
        if overrides:
            raise TypeError(f"Unexpected override(s): {', '.join(sorted(overrides))}")
        logger.debug("context for %s (%s) at %s", config.strategy, arch.value, config.resolved_app_dir)
        return cls(
            config=config,
            arch=arch,
            sources=provisioner.sources,
            fetcher=fetcher,
            errors=errors,
            provisioner=provisioner,
            prober=prober,
            supervisor=ProcessSupervisor(provisioner, prober, errors, config),
            preferences=PreferenceStore(preferences_path(config.app_dir)),
            executor=ThreadPoolExecutor(max_workers=1, thread_name_prefix="ollamaroot"),
        )

    def client(self) -> OllamaClient:
        url = self.preferences.server_url(self.config.base_url)
        return OllamaClient(
            url,
            self.config.connect_timeout_s,
            stream_timeout_s=self.config.read_timeout_s,
        )

    def submit(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> Future[T]:
        return self.executor.submit(fn, *args, **kwargs)

    def close(self) -> None:
        try:
            self.supervisor.shutdown()
        finally:
            self.executor.shutdown(wait=True)

    def __enter__(self) -> "AppContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
        return None
