"""Key/value persistence collaborator.

The framework only ever needs ``get(scope, key, default)`` and
``set(scope, key, value)``. A Scope names a guild, a user, both, or
neither (bot-wide). Two implementations ship: an in-memory store for
tests and embedding, and a JSON file store for single-process bots.
"""

import asyncio
import copy
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

from .exceptions import StorageError

logger = structlog.get_logger("switchboard.store")


@dataclass(frozen=True)
class Scope:
    """Addressing for a stored value.

    Attributes:
        guild: Guild id, or None.
        user: User id, or None.
    """
    guild: Optional[str] = None
    user: Optional[str] = None

    @classmethod
    def for_guild(cls, guild_id: str) -> "Scope":
        return cls(guild=str(guild_id))

    @classmethod
    def for_user(cls, user_id: str) -> "Scope":
        return cls(user=str(user_id))

    @property
    def bucket(self) -> str:
        """Flat bucket name used by the storage backends."""
        if self.guild and self.user:
            return f"members/{self.guild}:{self.user}"
        if self.guild:
            return f"guilds/{self.guild}"
        if self.user:
            return f"users/{self.user}"
        return "global"


GLOBAL = Scope()


class KeyValueStore(ABC):
    """Async get/set store addressed by (Scope, key)."""

    @abstractmethod
    async def get(self, scope: Scope, key: str, default: Any = None) -> Any:
        """Return the stored value, or ``default`` when absent."""
        ...

    @abstractmethod
    async def set(self, scope: Scope, key: str, value: Any) -> None:
        """Store ``value`` under ``key`` in ``scope``."""
        ...

    async def delete(self, scope: Scope, key: str) -> None:
        """Remove ``key`` from ``scope``. Missing keys are ignored."""
        await self.set(scope, key, None)


class MemoryStore(KeyValueStore):
    """Process-local store. Values are deep-copied in and out."""

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}

    async def get(self, scope: Scope, key: str, default: Any = None) -> Any:
        bucket = self._data.get(scope.bucket, {})
        if key not in bucket:
            return default
        return copy.deepcopy(bucket[key])

    async def set(self, scope: Scope, key: str, value: Any) -> None:
        self._data.setdefault(scope.bucket, {})[key] = copy.deepcopy(value)

    async def delete(self, scope: Scope, key: str) -> None:
        self._data.get(scope.bucket, {}).pop(key, None)


class JsonFileStore(KeyValueStore):
    """Store backed by a single JSON document on disk.

    The whole document is re-read before every operation and rewritten
    after every write, so external edits are picked up. An asyncio lock
    serializes read-modify-write cycles within the process.

    Args:
        path: JSON file location. Parent directories are created.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _read(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(
                f"Cannot read store file: {e}", operation="get", path=str(self.path)
            ) from e
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, Dict[str, Any]]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            tmp.replace(self.path)
        except (OSError, TypeError) as e:
            raise StorageError(
                f"Cannot write store file: {e}", operation="set", path=str(self.path)
            ) from e

    async def get(self, scope: Scope, key: str, default: Any = None) -> Any:
        async with self._lock:
            bucket = self._read().get(scope.bucket, {})
        return bucket.get(key, default)

    async def set(self, scope: Scope, key: str, value: Any) -> None:
        async with self._lock:
            data = self._read()
            data.setdefault(scope.bucket, {})[key] = value
            self._write(data)
        logger.debug("store_set", bucket=scope.bucket, key=key)

    async def delete(self, scope: Scope, key: str) -> None:
        async with self._lock:
            data = self._read()
            bucket = data.get(scope.bucket)
            if bucket is None or key not in bucket:
                return
            del bucket[key]
            self._write(data)
