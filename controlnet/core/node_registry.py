"""Node registry and per-node sliding-window rate limiting."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, NamedTuple

from pydantic import ValidationError

from controlnet.core.errors import (
    AlreadyRegisteredError,
    CapacityExceededError,
    UnknownNodeError,
    UnknownTypeError,
    config_error_from,
)
from controlnet.core.events import Clock, EventBus
from controlnet.models.enums import EventName, NodeStatus, NodeType, Priority
from controlnet.models.schemas import NodeMetadata

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY_BY_TYPE: dict[NodeType, Priority] = {
    NodeType.user: Priority.normal,
    NodeType.worker: Priority.high,
    NodeType.trigger_processor: Priority.high,
}

DEFAULT_WEIGHT_BY_PRIORITY: dict[Priority, float] = {
    Priority.low: 0.5,
    Priority.normal: 1.0,
    Priority.high: 1.5,
    Priority.critical: 2.0,
    Priority.system: 3.0,
}


@dataclass(slots=True)
class NetworkMetrics:
    """Counters shared by every component of one control network."""

    signals_processed: int = 0
    signals_rejected: int = 0
    rules_triggered: int = 0
    nodes_connected: int = 0
    nodes_disconnected: int = 0
    errors_encountered: int = 0
    average_response_time: float = 0.0  # milliseconds, EMA

    def record_response_time(self, elapsed_ms: float, *, alpha: float = 0.1) -> None:
        if self.signals_processed <= 1:
            self.average_response_time = elapsed_ms
        else:
            self.average_response_time = (
                (1 - alpha) * self.average_response_time + alpha * elapsed_ms
            )

    def as_dict(self) -> dict[str, float | int]:
        return {
            "signals_processed": self.signals_processed,
            "signals_rejected": self.signals_rejected,
            "rules_triggered": self.rules_triggered,
            "nodes_connected": self.nodes_connected,
            "nodes_disconnected": self.nodes_disconnected,
            "errors_encountered": self.errors_encountered,
            "average_response_time": round(self.average_response_time, 3),
        }


@dataclass(slots=True)
class NodeMetrics:
    signals_processed: int = 0
    errors: int = 0
    avg_latency_ms: float = 0.0


class NodeHandle(NamedTuple):
    """Stable reference to one registration of a node id."""

    node_id: str
    generation: int


@dataclass(slots=True)
class Node:
    """A connected logical signal source."""

    id: str
    type: NodeType
    priority: Priority
    weight: float
    last_activity: float
    generation: int
    status: NodeStatus = NodeStatus.connected
    capabilities: set[str] = field(default_factory=set)
    metadata: dict[str, Any] = field(default_factory=dict)
    metrics: NodeMetrics = field(default_factory=NodeMetrics)
    registered_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def handle(self) -> NodeHandle:
        return NodeHandle(self.id, self.generation)

    def record_latency(self, elapsed_ms: float, *, alpha: float = 0.2) -> None:
        if self.metrics.signals_processed <= 1:
            self.metrics.avg_latency_ms = elapsed_ms
        else:
            self.metrics.avg_latency_ms = (
                (1 - alpha) * self.metrics.avg_latency_ms + alpha * elapsed_ms
            )

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": str(self.type),
            "status": str(self.status),
            "priority": str(self.priority),
            "weight": self.weight,
            "last_activity": self.last_activity,
            "capabilities": sorted(self.capabilities),
            "metrics": {
                "signals_processed": self.metrics.signals_processed,
                "errors": self.metrics.errors,
                "avg_latency_ms": round(self.metrics.avg_latency_ms, 3),
            },
        }


class RateLimiter:
    """Sliding-window counter keyed by node id.

    A window only ever holds timestamps newer than ``now - window_s``.
    """

    def __init__(self, *, max_events: int, window_s: float) -> None:
        self.max_events = max_events
        self.window_s = window_s
        self._windows: dict[str, list[float]] = {}

    def check(self, key: str, now: float) -> bool:
        cutoff = now - self.window_s
        timestamps = [t for t in self._windows.get(key, ()) if t > cutoff]
        if len(timestamps) >= self.max_events:
            self._windows[key] = timestamps
            return False
        timestamps.append(now)
        self._windows[key] = timestamps
        return True

    def window(self, key: str) -> list[float]:
        return list(self._windows.get(key, ()))

    def discard(self, key: str) -> None:
        self._windows.pop(key, None)

    def prune(self, now: float) -> int:
        """Drop expired timestamps; remove keys whose window is empty."""

        cutoff = now - self.window_s
        removed = 0
        for key in list(self._windows):
            kept = [t for t in self._windows[key] if t > cutoff]
            if kept:
                self._windows[key] = kept
            else:
                del self._windows[key]
                removed += 1
        return removed

    def clear(self) -> None:
        self._windows.clear()

    def __len__(self) -> int:
        return len(self._windows)


class NodeRegistry:
    """Track connected nodes, their activity and their signal budgets."""

    def __init__(
        self,
        *,
        bus: EventBus,
        metrics: NetworkMetrics,
        max_nodes: int = 1000,
        rate_limit_max: int = 100,
        rate_limit_window_s: float = 60.0,
        clock: Clock | None = None,
        wall_clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._bus = bus
        self._metrics = metrics
        self._clock = clock or time.monotonic
        self._wall_clock = wall_clock or (lambda: datetime.now(UTC))
        self.max_nodes = max_nodes
        self.rate_limiter = RateLimiter(max_events=rate_limit_max, window_s=rate_limit_window_s)
        self._nodes: dict[str, Node] = {}
        self._generations: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def register(
        self,
        node_id: str,
        node_type: NodeType | str,
        metadata: Mapping[str, Any] | NodeMetadata | None = None,
        *,
        now: float | None = None,
    ) -> Node:
        if node_id in self._nodes:
            raise AlreadyRegisteredError("Node", node_id)
        if len(self._nodes) >= self.max_nodes:
            raise CapacityExceededError(
                f"Node registry full ({self.max_nodes} nodes); cannot register {node_id}"
            )

        try:
            kind = NodeType(node_type)
        except ValueError as exc:
            raise UnknownTypeError(f"Unknown node type for {node_id}: {node_type!r}") from exc
        try:
            meta = (
                metadata
                if isinstance(metadata, NodeMetadata)
                else NodeMetadata.model_validate(dict(metadata or {}))
            )
        except ValidationError as exc:
            raise config_error_from(exc, context=f"node {node_id}") from exc

        priority = meta.priority or DEFAULT_PRIORITY_BY_TYPE[kind]
        weight = meta.weight if meta.weight is not None else DEFAULT_WEIGHT_BY_PRIORITY[priority]
        generation = self._generations.get(node_id, 0) + 1
        self._generations[node_id] = generation

        node = Node(
            id=node_id,
            type=kind,
            priority=priority,
            weight=weight,
            last_activity=self._clock() if now is None else now,
            generation=generation,
            capabilities=set(meta.capabilities),
            metadata=meta.model_dump(exclude={"priority", "weight", "capabilities"}),
            registered_at=self._wall_clock(),
        )
        self._nodes[node_id] = node
        self._metrics.nodes_connected += 1

        logger.debug("Control node registered", extra={"node": node_id, "type": str(kind)})
        self._bus.publish(EventName.node_registered, node.as_dict(), source="node_registry")
        return node

    def unregister(self, node_id: str, *, reason: str = "unregistered") -> Node | None:
        """Remove a node and its rate-limit window; absent ids are a no-op."""

        node = self._nodes.pop(node_id, None)
        if node is None:
            return None
        self.rate_limiter.discard(node_id)
        node.status = NodeStatus.disconnected
        self._metrics.nodes_disconnected += 1

        logger.debug("Control node removed", extra={"node": node_id, "reason": reason})
        payload = node.as_dict()
        payload["reason"] = reason
        self._bus.publish(EventName.node_disconnected, payload, source="node_registry")
        return node

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get(self, node_id: str) -> Node | None:
        return self._nodes.get(node_id)

    def require(self, node_id: str) -> Node:
        node = self._nodes.get(node_id)
        if node is None:
            raise UnknownNodeError(node_id)
        return node

    def resolve(self, handle: NodeHandle) -> Node | None:
        """Return the node for ``handle`` unless it was removed or re-registered."""

        node = self._nodes.get(handle.node_id)
        if node is None or node.generation != handle.generation:
            return None
        return node

    def node_ids(self) -> list[str]:
        return list(self._nodes)

    def iter_nodes(self) -> Iterator[Node]:
        return iter(list(self._nodes.values()))

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    # ------------------------------------------------------------------
    # Activity and budgets
    # ------------------------------------------------------------------
    def touch(self, node_id: str, *, now: float | None = None) -> bool:
        node = self._nodes.get(node_id)
        if node is None:
            return False
        node.last_activity = self._clock() if now is None else now
        return True

    def check_rate_limit(self, node_id: str, *, now: float | None = None) -> bool:
        return self.rate_limiter.check(node_id, self._clock() if now is None else now)

    def sweep_stale(self, threshold_s: float, *, now: float | None = None) -> list[str]:
        """Unregister nodes idle for longer than ``threshold_s``.

        A failure on one node is logged and skipped; the sweep continues.
        """

        current = self._clock() if now is None else now
        removed: list[str] = []
        for node in list(self._nodes.values()):
            try:
                if current - node.last_activity > threshold_s:
                    self.unregister(node.id, reason="stale")
                    removed.append(node.id)
            except Exception:
                self._metrics.errors_encountered += 1
                logger.exception("Stale sweep failed for node", extra={"node": node.id})
        self.rate_limiter.prune(current)
        if removed:
            logger.info("Removed %d stale nodes", len(removed))
        return removed

    def shutdown(self) -> None:
        self._nodes.clear()
        self.rate_limiter.clear()


__all__ = [
    "DEFAULT_PRIORITY_BY_TYPE",
    "DEFAULT_WEIGHT_BY_PRIORITY",
    "NetworkMetrics",
    "Node",
    "NodeHandle",
    "NodeMetrics",
    "NodeRegistry",
    "RateLimiter",
]
