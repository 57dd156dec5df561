"""Thin client for the server's HTTP API."""

from __future__ import annotations

import http.client
import json
import logging
import urllib.error
import urllib.request
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from .errors import FetchError
from .fetch import format_size
from .health import direct_opener

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PullProgress:
    model: str
    status: str
    completed: int = 0
    total: int = 0
    percent: float = 0.0
    done: bool = False
    error: str | None = None

    def describe(self) -> str:
        if self.error:
            return f"{self.model}: error: {self.error}"
        if self.total:
            return (
                f"{self.model}: {self.status} "
                f"{format_size(self.completed)} / {format_size(self.total)} ({self.percent:.0f}%)"
            )
        return f"{self.model}: {self.status}"


class OllamaClient:
    def __init__(
        self,
        base_url: str,
        timeout_s: float = 60.0,
        *,
        stream_timeout_s: float = 300.0,
        opener: urllib.request.OpenerDirector | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.stream_timeout_s = stream_timeout_s
        self._opener = opener or direct_opener()

    def list_models(self) -> list[str]:
        with self._request("GET", "/api/tags") as response:
            payload = _decode(response.read())
        models = payload.get("models") if isinstance(payload, dict) else None
        if not isinstance(models, list):
            return []
        return [str(item["name"]) for item in models if isinstance(item, dict) and "name" in item]

    def generate(self, model: str, prompt: str) -> Iterator[str]:
        """Yield response text chunks as the server streams them."""
        body = {"model": model, "prompt": prompt, "stream": True}
        with self._request("POST", "/api/generate", body, timeout_s=self.stream_timeout_s) as response:
            for record in _ndjson(response):
                if record.get("error"):
                    raise FetchError(self.base_url + "/api/generate", transport_error=str(record["error"]))
                chunk = record.get("response")
                if chunk:
                    yield str(chunk)
                if record.get("done"):
                    return

    def pull(self, model: str) -> Iterator[PullProgress]:
        body = {"model": model, "stream": True}
        percent = 0.0
        with self._request("POST", "/api/pull", body, timeout_s=self.stream_timeout_s) as response:
            for record in _ndjson(response):
                status = str(record.get("status", ""))
                total = _as_int(record.get("total"))
                completed = _as_int(record.get("completed"))
                error = record.get("error")
                if total > 0:
                    percent = completed * 100.0 / total
                done = status == "success" or error is not None
                if done and error is None:
                    percent = 100.0
                yield PullProgress(
                    model=model,
                    status=status,
                    completed=completed,
                    total=total,
                    percent=percent,
                    done=done,
                    error=str(error) if error is not None else None,
                )
                if done:
                    return

    def delete(self, model: str) -> bool:
        """Delete ``model``; False when the server does not know it."""
        try:
            with self._request("DELETE", "/api/delete", {"model": model}):
                return True
        except FetchError as exc:
            if exc.http_status == 404:
                return False
            raise

    def _request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        *,
        timeout_s: float | None = None,
    ):
        url = self.base_url + path
        data = json.dumps(body).encode("utf-8") if body is not None else None
        request = urllib.request.Request(url, data=data, method=method)
        if data is not None:
            request.add_header("Content-Type", "application/json")
        logger.debug("%s %s", method, url)
        try:
            return self._opener.open(request, timeout=timeout_s or self.timeout_s)
        except urllib.error.HTTPError as exc:
            raise FetchError(url, http_status=exc.code) from exc
        except urllib.error.URLError as exc:
            raise FetchError(url, transport_error=str(exc.reason)) from exc
        except (http.client.HTTPException, ConnectionError, TimeoutError) as exc:
            raise FetchError(url, transport_error=f"{type(exc).__name__}: {exc}") from exc


def _decode(raw: bytes) -> Any:
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None


def _ndjson(response) -> Iterator[dict[str, Any]]:
    for raw_line in response:
        line = raw_line.strip()
        if not line:
            continue
        record = _decode(line)
        if isinstance(record, dict):
            yield record
        else:
            logger.debug("skipping malformed stream line: %r", line[:200])


def _as_int(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return 0
