"""Streamed, cancellable HTTP downloads."""

from __future__ import annotations

import http.client
import logging
import os
import threading
import time
import urllib.error
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .errors import FetchCancelled, FetchError

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024
_PROGRESS_INTERVAL_S = 0.5
_USER_AGENT = "ollamaroot/0.1"


@dataclass(frozen=True)
class DownloadProgress:
    percent: int | None
    bytes_downloaded: int
    bytes_total: int | None
    instantaneous_rate: float
    average_rate: float

    def describe(self) -> str:
        if self.bytes_total:
            size = f"{format_size(self.bytes_downloaded)} / {format_size(self.bytes_total)}"
        else:
            size = format_size(self.bytes_downloaded)
        if self.instantaneous_rate > 0:
            return f"{size} ({format_rate(self.instantaneous_rate)})"
        return size


def format_size(num_bytes: float) -> str:
    if num_bytes >= 1_000_000_000:
        return f"{num_bytes / 1_000_000_000:.1f} GB"
    if num_bytes >= 1_000_000:
        return f"{num_bytes / 1_000_000:.1f} MB"
    if num_bytes >= 1_000:
        return f"{num_bytes / 1_000:.0f} KB"
    return f"{int(num_bytes)} B"


def format_rate(bytes_per_s: float) -> str:
    return f"{format_size(bytes_per_s)}/s"


class CancelToken:
    """Cooperative cancellation flag shared between a caller and a worker."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


ProgressCallback = Callable[[DownloadProgress], None]


class _ProgressMeter:
    def __init__(self, total: int | None, clock: Callable[[], float]):
        self.total = total
        self.clock = clock
        self.started = clock()
        self.last_emit = self.started
        self.last_bytes = 0
        self.downloaded = 0

    def advance(self, count: int) -> DownloadProgress | None:
        self.downloaded += count
        now = self.clock()
        if now - self.last_emit < _PROGRESS_INTERVAL_S:
            return None
        return self._snapshot(now)

    def finish(self) -> DownloadProgress:
        return self._snapshot(self.clock())

    def _snapshot(self, now: float) -> DownloadProgress:
        interval = now - self.last_emit
        elapsed = now - self.started
        instantaneous = (self.downloaded - self.last_bytes) / interval if interval > 0 else 0.0
        average = self.downloaded / elapsed if elapsed > 0 else 0.0
        self.last_emit = now
        self.last_bytes = self.downloaded
        percent = None
        if self.total:
            percent = min(100, self.downloaded * 100 // self.total)
        return DownloadProgress(
            percent=percent,
            bytes_downloaded=self.downloaded,
            bytes_total=self.total,
            instantaneous_rate=instantaneous,
            average_rate=average,
        )


def partial_path(destination: Path) -> Path:
    return destination.with_name(destination.name + ".part")


class Fetcher:
    """Downloads one URL at a time straight to disk."""

    def __init__(
        self,
        *,
        connect_timeout_s: float = 60.0,
        opener: urllib.request.OpenerDirector | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout_s = connect_timeout_s
        self._opener = opener or urllib.request.build_opener()
        self._clock = clock

    def fetch(
        self,
        url: str,
        destination: str | Path,
        on_progress: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> Path:
        """Stream ``url`` into ``destination``.

        The body is written to ``<destination>.part`` and renamed into place
        only once complete. A failed or cancelled transfer leaves the
        ``.part`` file behind; the next attempt truncates it.
        """
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        part = partial_path(destination)
        request = urllib.request.Request(url, headers={"User-Agent": _USER_AGENT})

        logger.info("downloading %s -> %s", url, destination)
        try:
            with self._opener.open(request, timeout=self.timeout_s) as response:
                status = getattr(response, "status", 200)
                if not 200 <= status < 300:
                    raise FetchError(url, http_status=status)
                total = _content_length(response)
                meter = _ProgressMeter(total, self._clock)
                with part.open("wb") as handle:
                    while True:
                        if cancel is not None and cancel.cancelled:
                            raise FetchCancelled(url)
                        chunk = response.read(_CHUNK_SIZE)
                        if not chunk:
                            break
                        handle.write(chunk)
                        progress = meter.advance(len(chunk))
                        if progress is not None and on_progress is not None:
                            on_progress(progress)
        except urllib.error.HTTPError as exc:
            raise FetchError(url, http_status=exc.code) from exc
        except urllib.error.URLError as exc:
            raise FetchError(url, transport_error=str(exc.reason)) from exc
        except (http.client.HTTPException, ConnectionError, TimeoutError) as exc:
            raise FetchError(url, transport_error=f"{type(exc).__name__}: {exc}") from exc

        if total is not None and meter.downloaded < total:
            raise FetchError(
                url,
                transport_error=f"truncated body: received {meter.downloaded} of {total} bytes",
            )

        final = meter.finish()
        if on_progress is not None:
            if final.percent is not None:
                final = DownloadProgress(
                    percent=100,
                    bytes_downloaded=final.bytes_downloaded,
                    bytes_total=final.bytes_total,
                    instantaneous_rate=final.instantaneous_rate,
                    average_rate=final.average_rate,
                )
            on_progress(final)

        os.replace(part, destination)
        logger.info("downloaded %s (%s)", destination.name, format_size(meter.downloaded))
        return destination


def _content_length(response: object) -> int | None:
    headers = getattr(response, "headers", None)
    raw = headers.get("Content-Length") if headers is not None else None
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None
