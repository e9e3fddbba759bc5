"""Filesystem storage backend.

One JSON file per key under ``<storage_dir>/<namespace>/``. Each file records
the original key, the value and its expiry, so listing never has to reverse
the filename encoding. Writes go to a temp file first and are moved into
place with ``os.replace``; blocking I/O runs in worker threads. Expired files
read as absent and are deleted when keys are listed.
"""

import asyncio
import json
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable
from urllib.parse import quote

from knowledge_store.core.errors import BackendError, CorruptStateError
from knowledge_store.core.logging import get_logger
from knowledge_store.core.schemas_state import StateFilter
from knowledge_store.db.backends.base import StorageBackend, apply_filter

logger = get_logger(__name__)

FILE_EXTENSION = ".json"


class FileBackend(StorageBackend):
    """Stores each key as a JSON file on local disk."""

    kind = "file"

    def __init__(
        self,
        storage_dir: str | Path,
        namespace: str = "persistent-state",
        default_ttl: int = 0,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(namespace=namespace, default_ttl=default_ttl)
        if not storage_dir:
            raise ValueError("FileBackend requires a storage_dir")
        self.storage_dir = Path(storage_dir)
        self._clock = clock

    @property
    def namespace_dir(self) -> Path:
        return self.storage_dir / self.namespace

    def _path_for(self, key: str) -> Path:
        # quote() with no safe characters is reversible and filesystem safe
        return self.namespace_dir / f"{quote(key, safe='')}{FILE_EXTENSION}"

    # =========================================================================
    # Blocking helpers (run via asyncio.to_thread)
    # =========================================================================

    def _ensure_dir(self) -> None:
        self.namespace_dir.mkdir(parents=True, exist_ok=True)

    def _unlink(self, key: str) -> None:
        self._path_for(key).unlink(missing_ok=True)

    def _read_record(self, path: Path) -> dict[str, Any] | None:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            record = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CorruptStateError(f"Unreadable storage file {path.name}: {e}") from e
        if not isinstance(record, dict) or "value" not in record:
            raise CorruptStateError(f"Malformed storage file {path.name}")
        return record

    def _read_live(self, key: str) -> dict[str, Any] | None:
        path = self._path_for(key)
        record = self._read_record(path)
        if record is None:
            return None
        if self._expired(record, self._clock()):
            # Expired files are purged by _scan, never on the read path
            return None
        return record

    @staticmethod
    def _expired(record: dict[str, Any], now: float) -> bool:
        expires_at = record.get("expires_at")
        return expires_at is not None and expires_at <= now

    def _purge_expired(self, path: Path, seen: dict[str, Any]) -> bool:
        """Remove ``path`` only if it still holds the expired record that was read."""
        try:
            current = self._read_record(path)
        except CorruptStateError:
            return False
        if current != seen:
            return False
        path.unlink(missing_ok=True)
        return True

    def _write(self, key: str, value: str, expires_at: float | None) -> None:
        self.namespace_dir.mkdir(parents=True, exist_ok=True)
        record = {
            "key": key,
            "value": value,
            "expires_at": expires_at,
            "updated_at": self._clock(),
        }
        fd, tmp_path = tempfile.mkstemp(dir=self.namespace_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(record, handle)
            os.replace(tmp_path, self._path_for(key))
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def _scan(self) -> list[str]:
        if not self.namespace_dir.exists():
            return []
        keys = []
        now = self._clock()
        for path in self.namespace_dir.glob(f"*{FILE_EXTENSION}"):
            try:
                record = self._read_record(path)
            except CorruptStateError as e:
                logger.warning(f"Skipping unreadable storage file: {e}")
                continue
            if record is None:
                continue
            if self._expired(record, now):
                if not self._purge_expired(path, record):
                    logger.debug(f"Kept {path.name}: rewritten since it expired")
                continue
            keys.append(record.get("key", path.stem))
        return keys

    def _remove_all(self) -> int:
        if not self.namespace_dir.exists():
            return 0
        count = 0
        for path in self.namespace_dir.glob(f"*{FILE_EXTENSION}"):
            path.unlink(missing_ok=True)
            count += 1
        return count

    # =========================================================================
    # Backend contract
    # =========================================================================

    async def _run(self, operation: str, key: str | None, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except OSError as e:
            logger.error(f"File backend {operation} failed for key {key}: {e}")
            raise BackendError(
                f"File storage {operation} failed: {e}", operation=operation, key=key
            ) from e

    async def initialize(self) -> None:
        if self._initialized:
            return
        await self._run("initialize", None, self._ensure_dir)
        self._initialized = True
        logger.debug(f"FileBackend initialized with storage directory: {self.namespace_dir}")

    async def get(self, key: str) -> str | None:
        self.ensure_initialized("get")
        record = await self._run("get", key, self._read_live, key)
        return record["value"] if record else None

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        self.ensure_initialized("set")
        ttl_seconds = self.effective_ttl(ttl)
        expires_at = self._clock() + ttl_seconds if ttl_seconds > 0 else None
        await self._run("set", key, self._write, key, value, expires_at)

    async def has(self, key: str) -> bool:
        self.ensure_initialized("has")
        record = await self._run("has", key, self._read_live, key)
        return record is not None

    async def delete(self, key: str) -> None:
        self.ensure_initialized("delete")
        await self._run("delete", key, self._unlink, key)

    async def list_keys(self, filter: StateFilter | None = None) -> list[str]:
        self.ensure_initialized("list_keys")
        keys = await self._run("list_keys", None, self._scan)
        return apply_filter(keys, filter)

    async def clear(self) -> None:
        self.ensure_initialized("clear")
        count = await self._run("clear", None, self._remove_all)
        logger.debug(f"Cleared {count} files from namespace '{self.namespace}'")
