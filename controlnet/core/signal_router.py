"""Signal ingestion: admission checks, stamping and hand-off to automation."""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any, Protocol

from controlnet.core.errors import (
    EmergencyStopActiveError,
    RateLimitedError,
    UnknownNodeError,
    UnknownTypeError,
)
from controlnet.core.events import Clock, EventBus
from controlnet.core.node_registry import NetworkMetrics, NodeRegistry
from controlnet.models.enums import EventName, Priority

logger = logging.getLogger(__name__)

ALL_ACTIVE = "ALL_ACTIVE"


@dataclass(slots=True, frozen=True)
class Signal:
    """An immutable, stamped signal."""

    id: str
    type: str
    data: Mapping[str, Any]
    source: str
    timestamp: float
    priority: Priority
    target: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def create(
        cls,
        signal_type: str,
        data: Mapping[str, Any] | None,
        *,
        source: str,
        timestamp: float,
        priority: Priority = Priority.normal,
        target: str | None = None,
        created_at: datetime | None = None,
    ) -> Signal:
        return cls(
            id=str(uuid.uuid4()),
            type=signal_type,
            data=MappingProxyType(dict(data or {})),
            source=source,
            timestamp=timestamp,
            priority=priority,
            target=target,
            created_at=created_at or datetime.now(UTC),
        )

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "data": dict(self.data),
            "source": self.source,
            "timestamp": self.timestamp,
            "priority": str(self.priority),
        }
        if self.target is not None:
            payload["target"] = self.target
        return payload


class SignalConsumer(Protocol):
    def process_signal(self, signal: Signal, *, now: float | None = None) -> Any: ...


class SignalRouter:
    """Admit signals from registered nodes and feed them to the rule engine.

    Admission order: unknown source, emergency stop, priority, rate limit.
    Rejections are raised to the caller and counted in ``signals_rejected``.
    """

    def __init__(
        self,
        *,
        registry: NodeRegistry,
        bus: EventBus,
        metrics: NetworkMetrics,
        clock: Clock | None = None,
        emergency_check: Callable[[], bool] | None = None,
        wall_clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry
        self._bus = bus
        self._metrics = metrics
        self._clock = clock or time.monotonic
        self._emergency_check = emergency_check or (lambda: False)
        self._wall_clock = wall_clock or (lambda: datetime.now(UTC))
        self._consumer: SignalConsumer | None = None

    def attach(self, consumer: SignalConsumer) -> None:
        self._consumer = consumer

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def process_signal(
        self,
        signal_type: str,
        data: Mapping[str, Any] | None,
        source_node_id: str,
        *,
        options: Mapping[str, Any] | None = None,
        now: float | None = None,
    ) -> Signal:
        current = self._clock() if now is None else now

        node = self._registry.get(source_node_id)
        if node is None:
            self._metrics.signals_rejected += 1
            raise UnknownNodeError(source_node_id)

        if self._emergency_check():
            self._metrics.signals_rejected += 1
            raise EmergencyStopActiveError(
                f"Signal {signal_type} from {source_node_id} rejected: emergency stop active"
            )

        opts = options or {}
        priority = node.priority
        if opts.get("priority"):
            try:
                priority = Priority(opts["priority"])
            except ValueError as exc:
                self._metrics.signals_rejected += 1
                raise UnknownTypeError(
                    f"Unknown priority for signal {signal_type}: {opts['priority']!r}"
                ) from exc

        if not self._registry.check_rate_limit(source_node_id, now=current):
            self._metrics.signals_rejected += 1
            limiter = self._registry.rate_limiter
            logger.warning(
                "Rate limit exceeded",
                extra={"node": source_node_id, "signal_type": signal_type},
            )
            self._bus.publish(
                EventName.rate_limit_exceeded,
                {"node_id": source_node_id, "signal_type": signal_type},
                source="signal_router",
            )
            raise RateLimitedError(
                source_node_id, limit=limiter.max_events, window_s=limiter.window_s
            )

        signal = Signal.create(
            signal_type,
            data,
            source=source_node_id,
            timestamp=current,
            priority=priority,
            created_at=self._wall_clock(),
        )

        started = time.perf_counter()
        self._registry.touch(source_node_id, now=current)
        node.metrics.signals_processed += 1
        self._metrics.signals_processed += 1

        if self._consumer is not None:
            self._consumer.process_signal(signal, now=current)

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        node.record_latency(elapsed_ms)
        self._metrics.record_response_time(elapsed_ms)

        self._bus.publish(EventName.signal_processed, signal.as_dict(), source="signal_router")
        return signal

    def dispatch(
        self,
        signal_type: str,
        data: Mapping[str, Any] | None,
        targets: str | Sequence[str] = ALL_ACTIVE,
        *,
        source: str = "control_network",
        priority: Priority = Priority.normal,
        now: float | None = None,
    ) -> list[Signal]:
        """Send an outbound signal to nodes; no rule re-evaluation happens."""

        current = self._clock() if now is None else now
        if targets == ALL_ACTIVE:
            node_ids = self._registry.node_ids()
        elif isinstance(targets, str):
            node_ids = [targets]
        else:
            node_ids = list(targets)

        sent: list[Signal] = []
        for node_id in node_ids:
            if node_id not in self._registry:
                logger.debug("Dispatch target not registered", extra={"node": node_id})
                continue
            signal = Signal.create(
                signal_type,
                data,
                source=source,
                timestamp=current,
                priority=priority,
                target=node_id,
                created_at=self._wall_clock(),
            )
            self._bus.publish(EventName.signal_dispatched, signal.as_dict(), source="signal_router")
            sent.append(signal)
        return sent


__all__ = ["ALL_ACTIVE", "Signal", "SignalConsumer", "SignalRouter"]
