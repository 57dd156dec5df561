"""Readiness probing for the local server."""

from __future__ import annotations

import http.client
import logging
import time
import urllib.error
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)

HEALTH_PATH = "/api/tags"


class Pollable(Protocol):
    def poll(self) -> int | None: ...


@dataclass(frozen=True)
class ReadinessResult:
    ready: bool
    attempts: int
    exit_code: int | None = None

    @property
    def exited(self) -> bool:
        return self.exit_code is not None


def direct_opener() -> urllib.request.OpenerDirector:
    """Opener that ignores ``*_proxy`` variables; the server is always loopback."""
    return urllib.request.build_opener(urllib.request.ProxyHandler({}))


class HealthProber:
    def __init__(
        self,
        base_url: str,
        timeout_s: float = 5.0,
        *,
        opener: urllib.request.OpenerDirector | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._opener = opener or direct_opener()
        self._sleep = sleep

    def check_reachable(self) -> bool:
        """True iff ``/api/tags`` answers with a 2xx status."""
        try:
            with self._opener.open(self.base_url + HEALTH_PATH, timeout=self.timeout_s) as response:
                status = getattr(response, "status", 200)
                return 200 <= status < 300
        except (urllib.error.URLError, http.client.HTTPException, OSError) as exc:
            logger.debug("probe %s failed: %s", self.base_url, exc)
            return False

    def wait_until_ready(
        self,
        max_attempts: int,
        interval_s: float,
        process: Pollable | None = None,
    ) -> ReadinessResult:
        """Probe until the server answers, the process dies, or attempts run out."""
        for attempt in range(1, max_attempts + 1):
            if self.check_reachable():
                logger.info("server ready after %d attempt(s)", attempt)
                return ReadinessResult(ready=True, attempts=attempt)
            if process is not None:
                exit_code = process.poll()
                if exit_code is not None:
                    logger.warning("server exited with %s while waiting for readiness", exit_code)
                    return ReadinessResult(ready=False, attempts=attempt, exit_code=exit_code)
            if attempt < max_attempts:
                self._sleep(interval_s)
        return ReadinessResult(ready=False, attempts=max_attempts)
