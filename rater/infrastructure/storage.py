import json
import os
import threading
import time
from pathlib import Path
from typing import Dict, Optional, Union

from rater.crosscutting.config import ConfigError


class SystemClock:
    """Wall clock in epoch seconds."""

    def now(self) -> float:
        return time.time()


class MemoryStorage:
    """Key/value storage kept in process memory. Used in tests and for dry runs."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = str(value)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self):
        return list(self._data)


class JsonFileStorage:
    """Durable key/value storage backed by a JSON file.

    Every write rewrites the whole file; the file is created with owner-only
    permissions because it holds OAuth tokens.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}

        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise ConfigError(f"Failed to load tokens from {self.path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"Unexpected content in {self.path}")
        return data

    def _save(self, data: Dict[str, str]) -> None:
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, 'w') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
        except IOError as e:
            raise ConfigError(f"Failed to save tokens to {self.path}: {e}")

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = str(value)
            self._save(data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if key in data:
                del data[key]
                self._save(data)

    def keys(self):
        with self._lock:
            return list(self._load())
