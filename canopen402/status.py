"""Severity levels and the status record that layers fill in while they run."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum


class Level(IntEnum):
    """Severity of a layer status; higher is worse."""

    OK = 0
    WARN = 1
    ERROR = 2
    STALE = 3
    UNBOUNDED = 3


@dataclass
class LayerStatus:
    """Collects the worst severity, the reasons for it and diagnostic values."""

    level: Level = Level.OK
    reasons: list[str] = field(default_factory=list)
    values: list[tuple[str, str]] = field(default_factory=list)

    def _raise_to(self, level: Level, reason: str) -> None:
        if level > self.level:
            self.level = level
        if reason:
            self.reasons.append(reason)

    def warn(self, reason: str) -> None:
        """Record a warning; the level becomes at least WARN."""
        self._raise_to(Level.WARN, reason)

    def error(self, reason: str) -> None:
        """Record an error; the level becomes at least ERROR."""
        self._raise_to(Level.ERROR, reason)

    def add(self, key: str, value: object) -> None:
        """Attach a diagnostic key/value pair, stored as text."""
        self.values.append((key, str(value)))

    def bounded(self, level: Level) -> bool:
        """True if the current level is no worse than ``level``."""
        return self.level <= level

    def equals(self, level: Level) -> bool:
        """True if the current level is exactly ``level``."""
        return self.level == level

    def reason(self) -> str:
        """All recorded reasons, joined in the order they were given."""
        return "; ".join(self.reasons)