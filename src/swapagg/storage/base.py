"""Key-value store abstraction for local caches.

Token metadata, pool IDs, pools lists, pending transfers and outstanding
claims all live behind this interface. Values must be JSON-serializable.
"""

import copy
from abc import ABC, abstractmethod
from typing import Any, Optional


class KeyValueStore(ABC):
    """Abstract async key-value store."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the value stored under key, or None."""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Store value under key, replacing any existing value."""
        pass

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Delete key. Missing keys are ignored."""
        pass

    @abstractmethod
    async def all(self, prefix: str = "") -> dict[str, Any]:
        """Return every entry whose key starts with prefix."""
        pass

    async def clear(self, prefix: str = "") -> None:
        """Delete every entry whose key starts with prefix."""
        for key in list(await self.all(prefix)):
            await self.remove(key)


class MemoryStore(KeyValueStore):
    """In-process store. Values are deep-copied so callers cannot alias them."""

    def __init__(self, initial: Optional[dict[str, Any]] = None):
        self._data: dict[str, Any] = copy.deepcopy(initial) if initial else {}

    async def get(self, key: str) -> Optional[Any]:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def all(self, prefix: str = "") -> dict[str, Any]:
        return {
            k: copy.deepcopy(v) for k, v in self._data.items() if k.startswith(prefix)
        }

    def __len__(self) -> int:
        return len(self._data)
