"""Comprehensive unit tests for controlnet.core.node_registry."""

from __future__ import annotations

import pytest

from controlnet.core.clock import ManualClock
from controlnet.core.errors import (
    AlreadyRegisteredError,
    CapacityExceededError,
    ConfigurationError,
    UnknownNodeError,
    UnknownTypeError,
)
from controlnet.core.events import EventBus
from controlnet.core.node_registry import NetworkMetrics, NodeRegistry, RateLimiter
from controlnet.models.enums import EventName, NodeStatus, NodeType, Priority

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_registry(
    bus: EventBus,
    metrics: NetworkMetrics,
    clock: ManualClock,
    *,
    max_nodes: int = 10,
    rate_limit_max: int = 3,
    rate_limit_window_s: float = 10.0,
) -> NodeRegistry:
    return NodeRegistry(
        bus=bus,
        metrics=metrics,
        max_nodes=max_nodes,
        rate_limit_max=rate_limit_max,
        rate_limit_window_s=rate_limit_window_s,
        clock=clock,
    )


# ===================================================================
# Registration
# ===================================================================


class TestRegister:
    def test_defaults_follow_node_type(
        self, bus: EventBus, metrics: NetworkMetrics, clock: ManualClock
    ) -> None:
        registry = _make_registry(bus, metrics, clock)

        user = registry.register("u1", NodeType.user)
        worker = registry.register("w1", "WORKER")

        assert user.priority == Priority.normal
        assert user.weight == 1.0
        assert worker.priority == Priority.high
        assert worker.weight == 1.5
        assert user.last_activity == clock.now
        assert user.status == NodeStatus.connected
        assert metrics.nodes_connected == 2

    def test_metadata_overrides_priority_and_weight(
        self, bus: EventBus, metrics: NetworkMetrics, clock: ManualClock
    ) -> None:
        registry = _make_registry(bus, metrics, clock)
        node = registry.register(
            "u1",
            NodeType.user,
            {"priority": "CRITICAL", "capabilities": ["audio"], "room": "lobby"},
        )
        assert node.priority == Priority.critical
        assert node.weight == 2.0
        assert node.capabilities == {"audio"}
        assert node.metadata["room"] == "lobby"

    def test_publishes_node_registered(
        self, bus: EventBus, metrics: NetworkMetrics, clock: ManualClock
    ) -> None:
        registry = _make_registry(bus, metrics, clock)
        registry.register("u1", NodeType.user)
        events = bus.recent(name=EventName.node_registered)
        assert len(events) == 1
        assert events[0].payload["id"] == "u1"

    def test_duplicate_id_rejected(
        self, bus: EventBus, metrics: NetworkMetrics, clock: ManualClock
    ) -> None:
        registry = _make_registry(bus, metrics, clock)
        registry.register("u1", NodeType.user)
        with pytest.raises(AlreadyRegisteredError):
            registry.register("u1", NodeType.worker)

    def test_capacity_is_enforced(
        self, bus: EventBus, metrics: NetworkMetrics, clock: ManualClock
    ) -> None:
        registry = _make_registry(bus, metrics, clock, max_nodes=2)
        registry.register("a", NodeType.user)
        registry.register("b", NodeType.user)
        with pytest.raises(CapacityExceededError):
            registry.register("c", NodeType.user)
        assert len(registry) == 2

    def test_unknown_type_rejected(
        self, bus: EventBus, metrics: NetworkMetrics, clock: ManualClock
    ) -> None:
        registry = _make_registry(bus, metrics, clock)
        with pytest.raises(UnknownTypeError):
            registry.register("x", "TOASTER")
        assert "x" not in registry

    def test_invalid_metadata_is_a_configuration_error(
        self, bus: EventBus, metrics: NetworkMetrics, clock: ManualClock
    ) -> None:
        registry = _make_registry(bus, metrics, clock)
        with pytest.raises(ConfigurationError):
            registry.register("x", NodeType.user, {"weight": -1})


# ===================================================================
# Removal and handles
# ===================================================================


class TestUnregister:
    def test_unregister_twice_is_a_noop(
        self, bus: EventBus, metrics: NetworkMetrics, clock: ManualClock
    ) -> None:
        registry = _make_registry(bus, metrics, clock)
        registry.register("u1", NodeType.user)

        first = registry.unregister("u1")
        second = registry.unregister("u1")

        assert first is not None and first.status == NodeStatus.disconnected
        assert second is None
        assert len(bus.recent(name=EventName.node_disconnected)) == 1
        assert metrics.nodes_disconnected == 1

    def test_unregister_drops_rate_window(
        self, bus: EventBus, metrics: NetworkMetrics, clock: ManualClock
    ) -> None:
        registry = _make_registry(bus, metrics, clock)
        registry.register("u1", NodeType.user)
        registry.check_rate_limit("u1")
        registry.unregister("u1")
        assert registry.rate_limiter.window("u1") == []

    def test_handle_goes_stale_after_reregistration(
        self, bus: EventBus, metrics: NetworkMetrics, clock: ManualClock
    ) -> None:
        registry = _make_registry(bus, metrics, clock)
        handle = registry.register("u1", NodeType.user).handle
        assert registry.resolve(handle) is not None

        registry.unregister("u1")
        assert registry.resolve(handle) is None

        fresh = registry.register("u1", NodeType.user)
        assert registry.resolve(handle) is None
        assert registry.resolve(fresh.handle) is fresh

    def test_require_unknown_node(
        self, bus: EventBus, metrics: NetworkMetrics, clock: ManualClock
    ) -> None:
        registry = _make_registry(bus, metrics, clock)
        with pytest.raises(UnknownNodeError):
            registry.require("ghost")


# ===================================================================
# Stale sweep
# ===================================================================


class TestSweepStale:
    def test_removes_only_idle_nodes(
        self, bus: EventBus, metrics: NetworkMetrics, clock: ManualClock
    ) -> None:
        registry = _make_registry(bus, metrics, clock)
        registry.register("idle", NodeType.user)
        registry.register("busy", NodeType.user)
        clock.advance(500)
        registry.touch("busy")
        clock.advance(200)

        removed = registry.sweep_stale(600)

        assert removed == ["idle"]
        assert "busy" in registry
        event = bus.recent(name=EventName.node_disconnected)[0]
        assert event.payload["reason"] == "stale"

    def test_sweep_prunes_rate_windows(
        self, bus: EventBus, metrics: NetworkMetrics, clock: ManualClock
    ) -> None:
        registry = _make_registry(bus, metrics, clock, rate_limit_window_s=10.0)
        registry.register("u1", NodeType.user)
        registry.check_rate_limit("u1")
        assert len(registry.rate_limiter) == 1

        clock.advance(20)
        registry.sweep_stale(600)

        assert len(registry.rate_limiter) == 0


# ===================================================================
# Rate limiter
# ===================================================================


class TestRateLimiter:
    def test_window_admits_n_then_rejects(self) -> None:
        limiter = RateLimiter(max_events=3, window_s=10.0)
        assert [limiter.check("n", t) for t in (0.0, 1.0, 2.0)] == [True, True, True]
        assert limiter.check("n", 3.0) is False

    def test_window_slides(self) -> None:
        limiter = RateLimiter(max_events=3, window_s=10.0)
        for t in (0.0, 1.0, 2.0):
            limiter.check("n", t)
        assert limiter.check("n", 9.9) is False
        # The sample at t=0 has left the window.
        assert limiter.check("n", 10.5) is True
        assert limiter.check("n", 10.6) is False

    def test_full_reset_after_window(self) -> None:
        limiter = RateLimiter(max_events=2, window_s=5.0)
        limiter.check("n", 0.0)
        limiter.check("n", 0.1)
        assert limiter.check("n", 0.2) is False
        assert limiter.check("n", 6.0) is True
        assert limiter.window("n") == [6.0]

    def test_keys_are_independent(self) -> None:
        limiter = RateLimiter(max_events=1, window_s=5.0)
        assert limiter.check("a", 0.0) is True
        assert limiter.check("b", 0.0) is True
        assert limiter.check("a", 1.0) is False

    def test_prune_removes_empty_keys(self) -> None:
        limiter = RateLimiter(max_events=5, window_s=5.0)
        limiter.check("a", 0.0)
        limiter.check("b", 4.0)
        assert limiter.prune(6.0) == 1
        assert limiter.window("a") == []
        assert limiter.window("b") == [4.0]


# ===================================================================
# Network metrics
# ===================================================================


class TestNetworkMetrics:
    def test_first_response_time_is_taken_directly(self) -> None:
        m = NetworkMetrics(signals_processed=1)
        m.record_response_time(20.0)
        assert m.average_response_time == 20.0

    def test_response_time_is_smoothed(self) -> None:
        m = NetworkMetrics(signals_processed=2, average_response_time=10.0)
        m.record_response_time(20.0)
        assert m.average_response_time == pytest.approx(11.0)
