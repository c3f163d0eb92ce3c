"""Configuration helpers for a chain of nodes: merging, parsing and service replies."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

_log = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when a chain or node configuration is malformed."""


@dataclass
class TriggerResponse:
    """Reply of a trigger service: whether it worked and why."""

    success: bool = False
    message: str = ""


def merge_struct(
    params: Mapping[str, Any], defaults: Mapping[str, Any], recursive: bool = True
) -> dict[str, Any]:
    """Fill in ``params`` with the keys of ``defaults`` that it lacks.

    Values in ``params`` win. With ``recursive`` set, nested mappings present
    on both sides are merged the same way.
    """
    if not isinstance(params, Mapping):
        raise ConfigError("parameters are not a struct")
    if not isinstance(defaults, Mapping):
        raise ConfigError("defaults are not a struct")
    merged = dict(params)
    for key, default in defaults.items():
        if key not in merged:
            merged[key] = default
        elif recursive and isinstance(merged[key], Mapping) and isinstance(default, Mapping):
            merged[key] = merge_struct(merged[key], default, True)
    return merged


def parse_object_name(obj_name: str) -> tuple[str, bool]:
    """Split an object name at '!': the part before it, and whether reads are forced."""
    name, sep, _ = obj_name.partition("!")
    return name, bool(sep)


def parse_node_overlay(merged: Mapping[str, Any]) -> list[tuple[str, str]]:
    """The ``dcf_overlay`` entries of a node as (key, value) pairs, sorted by key."""
    if "dcf_overlay" not in merged:
        return []
    overlay = merged["dcf_overlay"]
    if not isinstance(overlay, Mapping):
        raise ConfigError("dcf_overlay is no struct")
    pairs = []
    for key in sorted(overlay):
        value = overlay[key]
        if not isinstance(value, str):
            raise ConfigError(f"dcf_overlay '{key}' must be string")
        pairs.append((key, value))
    return pairs


def node_list(nodes: Any) -> list[tuple[str, Mapping[str, Any]]]:
    """Normalise a node configuration to (name, params) pairs.

    A list takes each node's name from its ``name`` member; a mapping uses its
    keys as names, in sorted order.
    """
    if isinstance(nodes, list):
        result = []
        for index, params in enumerate(nodes):
            if not isinstance(params, Mapping) or "name" not in params:
                raise ConfigError(f"Node at list index {index} has no name")
            result.append((str(params["name"]), params))
        return result
    if isinstance(nodes, Mapping):
        return [(str(name), nodes[name]) for name in sorted(nodes)]
    if nodes is None:
        return []
    raise ConfigError("nodes must be a list or a struct")


class _ResponseLog:
    def __init__(self, response: Any, command: str, logger: Any) -> None:
        self.response = response
        self.command = command
        self.logger = logger
        self.logged = False

    def log_warning(self) -> None:
        """Report success with warnings instead of plain success."""
        self.logger.warning("%s successful with warning(s): %s", self.command, self.response.message)
        self.logged = True

    def finish(self) -> None:
        if self.logged:
            return
        message = self.response.message
        if self.response.success:
            if message:
                self.logger.info("%s successful: %s", self.command, message)
            else:
                self.logger.info("%s successful", self.command)
        elif message:
            self.logger.error("%s failed: %s", self.command, message)
        else:
            self.logger.error("%s failed", self.command)
        self.logged = True


@contextmanager
def response_logger(response: Any, command: str, logger: Any = None) -> Iterator[_ResponseLog]:
    """Announce ``command`` and, when the block ends, log how ``response`` came out."""
    log = _ResponseLog(response, command, logger if logger is not None else _log)
    log.logger.info("%s...", command)
    try:
        yield log
    finally:
        log.finish()