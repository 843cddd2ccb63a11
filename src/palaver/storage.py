"""Key/value storage used by handlers through the request context."""

from __future__ import annotations

from typing import Any, Protocol


class Storage(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryStorage:
    """Process-local storage; contents are lost on restart."""

    def __init__(self) -> None:
        self._items: dict[str, Any] = {}

    async def get(self, key: str) -> Any | None:
        return self._items.get(key)

    async def set(self, key: str, value: Any) -> None:
        self._items[key] = value

    async def delete(self, key: str) -> None:
        self._items.pop(key, None)

    def __len__(self) -> int:
        return len(self._items)
