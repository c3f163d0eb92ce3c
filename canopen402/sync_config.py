"""Validation of the sync, update and heartbeat settings of a chain."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from .chain_config import ConfigError

_log = logging.getLogger(__name__)

DEFAULT_SYNC_ID = 0x80
MAX_SYNC_OVERFLOW = 240


@dataclass(frozen=True)
class SyncConfig:
    """Sync interval and overflow, and how often the chain is updated."""

    interval_ms: int
    overflow: int
    update_ms: int
    sync_id: int = DEFAULT_SYNC_ID

    @property
    def enabled(self) -> bool:
        """Whether a sync producer is to run."""
        return self.interval_ms > 0

    @property
    def update_period(self) -> float:
        """Time between two update cycles, in seconds."""
        return self.update_ms / 1000.0


def join(items: Iterable[Any], delim: str) -> str:
    """The items as text, separated by ``delim``."""
    return delim.join(str(item) for item in items)


def _check_overflow(overflow: int) -> None:
    if overflow == 1 or overflow > MAX_SYNC_OVERFLOW:
        raise ConfigError(f"Sync overflow  {overflow} is invalid")


def parse_sync_config(
    interval_ms: int | None, overflow: int | None = None, update_ms: int | None = None
) -> SyncConfig:
    """Validate the sync settings of a chain.

    Without a sync interval the chain runs unsynchronised and is updated every
    ``update_ms``; with one it is updated at the sync interval and the overflow
    is checked. Raises ConfigError for invalid values.
    """
    if interval_ms is None:
        _log.warning("Sync interval was not specified, so sync is disabled per default")
        interval_ms = 0
    interval_ms = int(interval_ms)
    if interval_ms < 0:
        raise ConfigError(f"Sync interval  {interval_ms} is invalid")

    update = interval_ms
    if interval_ms == 0 and update_ms is not None:
        update = int(update_ms)
    if update == 0:
        raise ConfigError(f"Update interval  {interval_ms} is invalid")

    sync_overflow = 0
    if interval_ms:
        if overflow is None:
            _log.warning("Sync overflow was not specified, so overflow is disabled per default")
        else:
            sync_overflow = int(overflow)
        _check_overflow(sync_overflow)
    return SyncConfig(interval_ms=interval_ms, overflow=sync_overflow, update_ms=update)


def parse_sync_node_config(interval_ms: int | None, overflow: int | None = None) -> SyncConfig:
    """Validate the settings of a stand-alone sync producer, which needs an interval."""
    if interval_ms is None or int(interval_ms) <= 0:
        raise ConfigError(f"Sync interval  {interval_ms} is invalid")
    interval_ms = int(interval_ms)
    sync_overflow = 0
    if overflow is None:
        _log.warning("Sync overflow was not specified, so overflow is disabled per default")
    else:
        sync_overflow = int(overflow)
    _check_overflow(sync_overflow)
    return SyncConfig(interval_ms=interval_ms, overflow=sync_overflow, update_ms=interval_ms)


def parse_heartbeat_rate(rate: float | None) -> float:
    """The heartbeat period in seconds for a rate in Hz; raise ConfigError if not positive."""
    value = 0.0 if rate is None else float(rate)
    if not value > 0:
        raise ConfigError(f"Rate '{rate}' is invalid")
    return 1.0 / value