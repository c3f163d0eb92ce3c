"""In-memory object dictionary entries with cached and device-backed access."""

from __future__ import annotations

import threading
from typing import Any, Callable


class EntryNotValid(LookupError):
    """Raised when an entry is not bound to an object or holds no value."""


class MemoryEntry:
    """A single object dictionary entry.

    ``get`` reads through ``fetch`` when one is given, otherwise it returns
    the cached value. ``set`` stores the value, records it in ``writes`` and
    passes it on to ``push`` when one is given. ``set_cached`` only updates
    the cache.
    """

    def __init__(
        self,
        value: Any = None,
        *,
        fetch: Callable[[], Any] | None = None,
        push: Callable[[Any], None] | None = None,
        bound: bool = True,
    ) -> None:
        self._lock = threading.Lock()
        self._value = value
        self._fetch = fetch
        self._push = push
        self._bound = bound
        self.writes: list[Any] = []

    def valid(self) -> bool:
        """True if the entry is bound to an object of the dictionary."""
        return self._bound

    def _require_bound(self) -> None:
        if not self._bound:
            raise EntryNotValid("entry is not valid")

    def get(self) -> Any:
        """Read the value from the device (or the cache if no device is attached)."""
        self._require_bound()
        if self._fetch is not None:
            value = self._fetch()
            with self._lock:
                self._value = value
            return value
        return self.get_cached()

    def get_cached(self) -> Any:
        """Return the last known value."""
        self._require_bound()
        with self._lock:
            if self._value is None:
                raise EntryNotValid("entry holds no value")
            return self._value

    def set(self, value: Any) -> None:
        """Write the value to the device and the cache."""
        self._require_bound()
        with self._lock:
            self._value = value
            self.writes.append(value)
        if self._push is not None:
            self._push(value)

    def set_cached(self, value: Any) -> None:
        """Update only the cached value."""
        self._require_bound()
        with self._lock:
            self._value = value


class MemoryStorage:
    """A dictionary of entries addressed by index and subindex."""

    def __init__(self) -> None:
        self._entries: dict[tuple[int, int], MemoryEntry] = {}

    def define(self, index: int, value: Any = None, subindex: int = 0) -> MemoryEntry:
        """Create (or replace) the entry at ``index``/``subindex`` and return it.

        ``value`` is either the initial value of a plain entry or a ready-made
        MemoryEntry, which is stored as it is.
        """
        entry = value if isinstance(value, MemoryEntry) else MemoryEntry(value)
        self._entries[(index, subindex)] = entry
        return entry

    def entry(self, index: int, subindex: int = 0) -> MemoryEntry:
        """Return the entry at ``index``/``subindex``; raise EntryNotValid if undefined."""
        try:
            return self._entries[(index, subindex)]
        except KeyError:
            raise EntryNotValid(f"object {index:#06x}sub{subindex} not found") from None