"""
Namespaced key/value storage, the engine's equivalent of browser
localStorage.

Values are JSON strings. Every key the engine writes starts with
STORAGE_PREFIX so one prefix scan can invalidate everything on identity
reset.

Implementations raise StorageError for any failure (quota, disabled
storage, I/O). Callers decide whether that is fatal; for the engine it
never is.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from typing import Protocol

from .errors import StorageError

STORAGE_PREFIX = "hogflix_sync:"
FLAG_PREFIX = f"{STORAGE_PREFIX}flag:"
GROUP_PREFIX = f"{STORAGE_PREFIX}group:"
# identifier of the visitor the persisted flags and groups belong to
OWNER_KEY = f"{STORAGE_PREFIX}owner"


class KeyValueStorage(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def keys(self, prefix: str = "") -> list[str]: ...


def remove_prefix(storage: KeyValueStorage, prefix: str) -> int:
    """Remove every key starting with prefix. Returns the number removed."""
    removed = 0
    for key in storage.keys(prefix):
        storage.remove(key)
        removed += 1
    return removed


class MemoryStorage:
    """
    Process-local storage.

    Args:
        quota: Optional maximum number of keys; exceeding it raises
            StorageError, mirroring a browser quota error.
    """

    def __init__(self, quota: int | None = None) -> None:
        self._data: dict[str, str] = {}
        self._quota = quota

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if (
            self._quota is not None
            and key not in self._data
            and len(self._data) >= self._quota
        ):
            raise StorageError(f"storage quota of {self._quota} keys exceeded")
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        return [key for key in self._data if key.startswith(prefix)]


class JsonFileStorage:
    """
    Storage persisted to a single JSON object on disk.

    The file is loaded once and rewritten atomically (temp file + rename)
    on every mutation, so a crash never leaves a half-written file.
    """

    def __init__(self, path: str) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._data: dict[str, str] | None = None

    def _load(self) -> dict[str, str]:
        if self._data is not None:
            return self._data
        try:
            with open(self._path, encoding="utf-8") as handle:
                loaded = json.load(handle)
        except FileNotFoundError:
            loaded = {}
        except (OSError, ValueError) as e:
            raise StorageError(f"cannot read {self._path}: {e}") from e
        if not isinstance(loaded, dict):
            raise StorageError(f"{self._path} does not contain a JSON object")
        self._data = {str(k): str(v) for k, v in loaded.items()}
        return self._data

    def _flush(self, data: dict[str, str]) -> None:
        directory = os.path.dirname(os.path.abspath(self._path))
        try:
            fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        except OSError as e:
            raise StorageError(f"cannot write {self._path}: {e}") from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle)
            os.replace(tmp_path, self._path)
        except (OSError, TypeError, ValueError) as e:
            # never leave a stray temp file next to the storage file
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise StorageError(f"cannot write {self._path}: {e}") from e

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = dict(self._load())
            data[key] = value
            self._flush(data)
            self._data = data

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if key not in data:
                return
            data = dict(data)
            del data[key]
            self._flush(data)
            self._data = data

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return [key for key in self._load() if key.startswith(prefix)]


def create_storage(path: str | None) -> KeyValueStorage:
    """File storage when a path is configured, memory storage otherwise."""
    if path:
        return JsonFileStorage(path)
    return MemoryStorage()
