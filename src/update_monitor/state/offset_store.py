"""
Offset storage for the update ingestion monitor.

Provides pluggable backends that persist, per account, the id of the last
update that was successfully handed to the consumer:
- Memory: process-local dictionary (tests, ephemeral runs)
- File: one JSON document per account, replaced atomically on every write

Every backend enforces the monotonic guard itself: writing a value that is not
greater than the stored one is a no-op.
"""

import asyncio
import json
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from ..exceptions import StorageError

logger = logging.getLogger(__name__)

STORE_VERSION = 1


class OffsetStore(ABC):
    """Abstract base class for offset storage."""

    @abstractmethod
    async def read(self, account_id: str) -> int | None:
        """
        Get the last persisted update id for an account.

        Args:
            account_id: Account identifier

        Returns:
            Last update id or None if nothing was recorded
        """
        pass

    @abstractmethod
    async def write(self, account_id: str, sequence_id: int) -> bool:
        """
        Persist an update id for an account.

        Args:
            account_id: Account identifier
            sequence_id: Update id that was delivered

        Returns:
            True if the stored value advanced, False if the write was a no-op

        Raises:
            StorageError: If the storage medium is unavailable
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Check if the storage backend is healthy.

        Returns:
            True if healthy, False otherwise
        """
        pass


class InMemoryOffsetStore(OffsetStore):
    """In-memory offset storage."""

    def __init__(self, initial: dict[str, int] | None = None) -> None:
        self.offsets: dict[str, int] = dict(initial or {})

    async def read(self, account_id: str) -> int | None:
        return self.offsets.get(account_id)

    async def write(self, account_id: str, sequence_id: int) -> bool:
        current = self.offsets.get(account_id)
        if current is not None and sequence_id <= current:
            return False
        self.offsets[account_id] = sequence_id
        return True

    async def health_check(self) -> bool:
        return True


class JsonFileOffsetStore(OffsetStore):
    """File-backed offset storage, one JSON document per account."""

    def __init__(self, state_dir: str | Path) -> None:
        """
        Initialize the file store.

        Args:
            state_dir: Directory holding the offset files
        """
        self.state_dir = Path(state_dir)
        self._locks: dict[str, asyncio.Lock] = {}

    def path_for(self, account_id: str) -> Path:
        """Get the offset file path for an account."""
        safe_id = re.sub(r"[^A-Za-z0-9._-]", "_", account_id.strip()) or "default"
        return self.state_dir / f"update-offset-{safe_id}.json"

    async def read(self, account_id: str) -> int | None:
        return await asyncio.to_thread(self._read_sync, account_id)

    async def write(self, account_id: str, sequence_id: int) -> bool:
        lock = self._locks.setdefault(account_id, asyncio.Lock())
        async with lock:
            current = await asyncio.to_thread(self._read_sync, account_id)
            if current is not None and sequence_id <= current:
                return False
            await asyncio.to_thread(self._write_sync, account_id, sequence_id)
            return True

    async def health_check(self) -> bool:
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            return os.access(self.state_dir, os.W_OK)
        except OSError as e:
            logger.error(f"Offset store directory {self.state_dir} unavailable: {e}")
            return False

    def _read_sync(self, account_id: str) -> int | None:
        path = self.path_for(account_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(
                f"Failed to read update offset for account {account_id}: {e}",
                account_id=account_id,
                context={"account_id": account_id, "path": str(path)},
            ) from e

        try:
            data: Any = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Ignoring corrupt update offset file {path}")
            return None

        if not isinstance(data, dict) or data.get("version") != STORE_VERSION:
            logger.warning(f"Ignoring update offset file {path} with unknown format")
            return None
        value = data.get("last_update_id")
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        return None

    def _write_sync(self, account_id: str, sequence_id: int) -> None:
        path = self.path_for(account_id)
        payload = {"version": STORE_VERSION, "last_update_id": sequence_id}
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.state_dir, prefix=f".{path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(payload, fh)
                    fh.write("\n")
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StorageError(
                f"Failed to persist update offset for account {account_id}: {e}",
                account_id=account_id,
                context={"account_id": account_id, "path": str(path)},
            ) from e
        logger.debug(f"Persisted update offset {sequence_id} for {account_id}")


class OffsetStoreFactory:
    """Factory for creating the configured offset store backend."""

    @staticmethod
    def create_offset_store(backend: str, **kwargs: Any) -> OffsetStore:
        """
        Create an offset store instance.

        Args:
            backend: Storage backend ('file' or 'memory')
            **kwargs: Backend options (``state_dir`` for 'file')

        Returns:
            OffsetStore instance

        Raises:
            ValueError: If the backend is not supported
        """
        backend = backend.lower()

        if backend == "memory":
            logger.info("Creating in-memory offset store")
            return InMemoryOffsetStore()
        elif backend == "file":
            state_dir = kwargs.get("state_dir") or "./state"
            logger.info(f"Creating file offset store in {state_dir}")
            return JsonFileOffsetStore(state_dir)
        else:
            raise ValueError(
                f"Unknown offset store backend: {backend}. "
                "Supported backends: 'file', 'memory'"
            )

    @staticmethod
    def get_supported_backends() -> list[str]:
        """Get list of supported backends."""
        return ["file", "memory"]
