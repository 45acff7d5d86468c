"""
Concurrent status registry keyed by run identifier.

Workers never mutate a status value. They compute a new immutable snapshot
from the current one and replace it under the key, holding a lock only for
the read-compute-replace step. Readers get whatever snapshot is current.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Generic, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class StatusRegistry(Generic[K, V]):
    """
    Key-value store with atomic update-or-insert semantics.

    Example:
        >>> registry: StatusRegistry[UUID, MigrationStatus] = StatusRegistry()
        >>> registry.put(status.migration_id, status)
        >>> registry.update(status.migration_id, lambda s: s.advance(progress_percentage=50))

    Thread-safety:
        All operations take a ``threading.Lock`` so status may be read from
        other threads while the event loop updates it.
    """

    def __init__(self) -> None:
        self._items: dict[K, V] = {}
        self._lock = threading.Lock()

    def put(self, key: K, value: V) -> V:
        """Insert or replace the value for ``key``."""
        with self._lock:
            self._items[key] = value
        return value

    def update(self, key: K, update: Callable[[V], V], default: V | None = None) -> V:
        """
        Replace the value for ``key`` with ``update(current)``.

        Args:
            key: Registry key.
            update: Pure function producing the next snapshot.
            default: Used as the current value when the key is absent.

        Raises:
            KeyError: If the key is absent and no default was given.
        """
        with self._lock:
            current = self._items.get(key, default)
            if current is None:
                raise KeyError(key)
            new_value = update(current)
            self._items[key] = new_value
            return new_value

    def get(self, key: K) -> V | None:
        with self._lock:
            return self._items.get(key)

    def remove(self, key: K) -> V | None:
        with self._lock:
            return self._items.pop(key, None)

    def values(self) -> list[V]:
        with self._lock:
            return list(self._items.values())

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


__all__ = ["StatusRegistry"]
