"""Error taxonomy for the control network core."""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError


class ControlNetworkError(Exception):
    """Base error for control network failures."""


class CapacityExceededError(ControlNetworkError):
    """Node registry is full."""


class UnknownNodeError(ControlNetworkError):
    """Signal or lookup referenced a node that is not registered."""

    def __init__(self, node_id: str) -> None:
        super().__init__(f"Unknown node: {node_id}")
        self.node_id = node_id


class RateLimitedError(ControlNetworkError):
    """A node exhausted its signal budget for the current window."""

    def __init__(self, node_id: str, *, limit: int, window_s: float) -> None:
        super().__init__(f"Rate limit exceeded for node {node_id} ({limit} per {window_s:g}s)")
        self.node_id = node_id
        self.limit = limit
        self.window_s = window_s


class AlreadyRegisteredError(ControlNetworkError):
    """Duplicate node, rule, loop or safety device id."""

    def __init__(self, kind: str, item_id: str) -> None:
        super().__init__(f"{kind} {item_id} already registered")
        self.kind = kind
        self.item_id = item_id


class NotFoundError(ControlNetworkError):
    """Lookup of an unknown rule, loop, interlock, e-stop, site or profile."""

    def __init__(self, kind: str, item_id: str) -> None:
        super().__init__(f"{kind} not found: {item_id}")
        self.kind = kind
        self.item_id = item_id


class UnknownTypeError(ControlNetworkError):
    """Unregistered condition, action, controller or protocol type."""


class ConfigurationError(ControlNetworkError):
    """A configuration payload failed validation."""


class NotInEmergencyModeError(ControlNetworkError):
    """Emergency reset attempted while the system is armed."""


class EmergencyStopActiveError(ControlNetworkError):
    """New work was submitted while the emergency stop is active."""


class ExecutionError(ControlNetworkError):
    """An action handler or controller algorithm failed."""


class ProtocolError(ControlNetworkError):
    """A frame could not be encoded or decoded by its protocol codec."""


_TAG_ERROR_TYPES = frozenset({"union_tag_invalid", "enum", "literal_error"})
_TAG_FIELDS = frozenset({"type"})


def config_error_from(exc: ValidationError, *, context: str) -> ControlNetworkError:
    """Translate a pydantic ``ValidationError`` into the domain taxonomy.

    An unknown discriminator or controller type becomes ``UnknownTypeError``;
    anything else is a ``ConfigurationError``.
    """

    for detail in exc.errors():
        loc: tuple[Any, ...] = detail.get("loc", ())
        if detail.get("type") == "union_tag_invalid":
            return UnknownTypeError(f"{context}: {detail.get('msg')}")
        if detail.get("type") in _TAG_ERROR_TYPES and loc and loc[-1] in _TAG_FIELDS:
            return UnknownTypeError(f"{context}: {detail.get('msg')}")
    return ConfigurationError(f"{context}: {exc}")


__all__ = [
    "AlreadyRegisteredError",
    "CapacityExceededError",
    "ConfigurationError",
    "ControlNetworkError",
    "EmergencyStopActiveError",
    "ExecutionError",
    "NotFoundError",
    "NotInEmergencyModeError",
    "ProtocolError",
    "RateLimitedError",
    "UnknownNodeError",
    "UnknownTypeError",
    "config_error_from",
]
