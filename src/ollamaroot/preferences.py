"""Persisted user preferences."""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "http://127.0.0.1:11434"

DEFAULTS: dict[str, Any] = {
    "selected_model": None,
    "use_remote_server": False,
    "ollama_host": DEFAULT_SERVER_URL,
    "theme": "dark",
    "auto_start": True,
}


class PreferenceStore:
    """Small JSON-backed key/value store; unknown keys are rejected."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._values = dict(DEFAULTS)
        self._values.update(self._load())

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("ignoring unreadable preferences %s: %s", self.path, exc)
            return {}
        if not isinstance(raw, dict):
            logger.warning("ignoring preferences %s: not a JSON object", self.path)
            return {}
        return {key: value for key, value in raw.items() if key in DEFAULTS}

    def get(self, key: str) -> Any:
        if key not in DEFAULTS:
            raise KeyError(key)
        with self._lock:
            return self._values[key]

    def set(self, key: str, value: Any) -> None:
        if key not in DEFAULTS:
            raise KeyError(key)
        with self._lock:
            self._values[key] = value
            self._save()

    def as_dict(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._values)

    def clear(self) -> None:
        with self._lock:
            self._values = dict(DEFAULTS)
            self._save()

    def server_url(self, default: str = DEFAULT_SERVER_URL) -> str:
        """The remote host when remote mode is on, otherwise ``default``."""
        with self._lock:
            if self._values.get("use_remote_server"):
                host = str(self._values.get("ollama_host") or "").strip()
                if host:
                    return host.rstrip("/")
        return default

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(self._values, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        os.replace(tmp, self.path)
