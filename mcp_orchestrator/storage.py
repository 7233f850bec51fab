#!/usr/bin/env python3
"""
Storage adapters for server configuration and OAuth flow state

JsonFileStorage keeps named config files as JSON documents under a base
directory and key/value entries as one JSON file per key. Writes go through
a temp file + os.replace so a crash never leaves a half-written config.
"""

import asyncio
import json
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import ErrorCode, StorageError

logger = logging.getLogger(__name__)

ConfigCallback = Callable[[Any], Any]
Cleanup = Callable[[], None]

_SAFE_KEY = re.compile(r"[^A-Za-z0-9._-]")


class StorageAdapter(ABC):
    """Key/value plus named-config persistence used by the registry and token manager."""

    @abstractmethod
    async def read(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def write(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def read_config(self, name: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def write_config(self, name: str, value: Any) -> None:
        ...

    @abstractmethod
    def watch_config(self, name: str, callback: ConfigCallback) -> Cleanup:
        """Call callback with the new document whenever name changes. Returns a cleanup."""


class MemoryStorage(StorageAdapter):
    """In-memory storage, used by tests and embedders without a disk."""

    def __init__(self, configs: Optional[Dict[str, Any]] = None):
        self.data: Dict[str, Any] = {}
        self.configs: Dict[str, Any] = dict(configs or {})
        self._watchers: Dict[str, List[ConfigCallback]] = {}

    async def read(self, key: str) -> Optional[Any]:
        return json.loads(json.dumps(self.data[key])) if key in self.data else None

    async def write(self, key: str, value: Any) -> None:
        self.data[key] = json.loads(json.dumps(value))

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)

    async def read_config(self, name: str) -> Optional[Any]:
        return json.loads(json.dumps(self.configs[name])) if name in self.configs else None

    async def write_config(self, name: str, value: Any) -> None:
        self.configs[name] = json.loads(json.dumps(value))

    def simulate_external_change(self, name: str, value: Any) -> None:
        """Replace a config as another process would and notify watchers."""
        self.configs[name] = json.loads(json.dumps(value))
        for callback in list(self._watchers.get(name, [])):
            try:
                callback(json.loads(json.dumps(value)))
            except Exception:
                logger.exception(f"Config watcher for {name} failed")

    def watch_config(self, name: str, callback: ConfigCallback) -> Cleanup:
        self._watchers.setdefault(name, []).append(callback)

        def cleanup() -> None:
            callbacks = self._watchers.get(name, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return cleanup


class JsonFileStorage(StorageAdapter):

    def __init__(self, base_dir, poll_interval: float = 1.0):
        self.base_dir = Path(base_dir).expanduser()
        self.kv_dir = self.base_dir / "kv"
        self.poll_interval = poll_interval
        # (mtime, size) of the last write we made ourselves, so the watcher skips it
        self._own_writes: Dict[str, Optional[Tuple[float, int]]] = {}

    # -------- paths --------
    def config_path(self, name: str) -> Path:
        return self.base_dir / name

    def _key_path(self, key: str) -> Path:
        return self.kv_dir / f"{_SAFE_KEY.sub('_', key)}.json"

    # -------- low level --------
    @staticmethod
    def _atomic_write_json(path: Path, value: Any):
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(value, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    @staticmethod
    def _read_json(path: Path) -> Optional[Any]:
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    # -------- key/value --------
    async def read(self, key: str) -> Optional[Any]:
        try:
            return self._read_json(self._key_path(key))
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Failed to read {key}: {e}", ErrorCode.STORAGE_READ_ERROR, cause=e, key=key)

    async def write(self, key: str, value: Any) -> None:
        try:
            self._atomic_write_json(self._key_path(key), value)
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Failed to write {key}: {e}", ErrorCode.STORAGE_WRITE_ERROR, cause=e, key=key)

    async def delete(self, key: str) -> None:
        try:
            self._key_path(key).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"Failed to delete {key}: {e}", ErrorCode.STORAGE_DELETE_ERROR, cause=e, key=key)

    # -------- configs --------
    async def read_config(self, name: str) -> Optional[Any]:
        path = self.config_path(name)
        try:
            return self._read_json(path)
        except json.JSONDecodeError as e:
            raise StorageError(f"Config {path} is not valid JSON: {e}", ErrorCode.STORAGE_READ_ERROR,
                               cause=e, key=name)
        except OSError as e:
            raise StorageError(f"Failed to read config {path}: {e}", ErrorCode.STORAGE_READ_ERROR,
                               cause=e, key=name)

    async def write_config(self, name: str, value: Any) -> None:
        path = self.config_path(name)
        try:
            self._atomic_write_json(path, value)
            self._own_writes[name] = self._stat(path)
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Failed to write config {path}: {e}", ErrorCode.STORAGE_WRITE_ERROR,
                               cause=e, key=name)
        logger.debug(f"Wrote config {path}")

    def _stat(self, path: Path) -> Optional[Tuple[float, int]]:
        try:
            st = path.stat()
            return st.st_mtime, st.st_size
        except OSError:
            return None

    def watch_config(self, name: str, callback: ConfigCallback) -> Cleanup:
        """Poll the config file's mtime from a background task."""
        path = self.config_path(name)

        async def _poll():
            last = self._stat(path)
            while True:
                await asyncio.sleep(self.poll_interval)
                current = self._stat(path)
                if current == last or current is None:
                    last = current
                    continue
                last = current
                if self._own_writes.get(name) == current:
                    continue
                try:
                    document = self._read_json(path)
                except (OSError, json.JSONDecodeError) as e:
                    logger.warning(f"Ignoring unreadable change to {path}: {e}")
                    continue
                logger.info(f"Config {path} changed on disk")
                try:
                    result = callback(document)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception:
                    logger.exception(f"Config watcher for {name} failed")

        task = asyncio.get_running_loop().create_task(_poll())
        return task.cancel
