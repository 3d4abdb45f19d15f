"""The control network context object and its external API."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from controlnet.config import Settings, get_settings
from controlnet.core.errors import ControlNetworkError
from controlnet.core.events import Clock, Event, EventBus
from controlnet.core.loop_scheduler import ControlLoop, LoopScheduler
from controlnet.core.node_registry import NetworkMetrics, Node, NodeRegistry
from controlnet.core.protocols import ProtocolRegistry
from controlnet.core.rule_engine import AutomationRule, RuleEngine
from controlnet.core.safety import EmergencyStop, SafetyManager
from controlnet.core.signal_router import Signal, SignalRouter
from controlnet.core.sites import RemoteSite, RemoteSiteManager
from controlnet.models.enums import EventName, NetworkHealth, NodeType, SystemCommand, SystemMode
from controlnet.models.schemas import LoopConfig, LoopUpdate, NodeMetadata, RuleConfig, SiteConfig

logger = logging.getLogger(__name__)


class ControlNetwork:
    """Construct, wire and expose every control network component.

    One instance owns one bus, one set of metrics and one of each component;
    nothing is shared between instances.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        clock: Clock | None = None,
        wall_clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or time.monotonic
        self.wall_clock = wall_clock or (lambda: datetime.now(UTC))
        s = self.settings

        self.bus = EventBus(clock=self.clock, history_limit=s.event_history_length)
        self.metrics = NetworkMetrics()
        self.network_health = NetworkHealth.healthy
        self._initialized = False
        self._closed = False
        self._last_check_errors = 0
        self._last_check_signals = 0

        self.nodes = NodeRegistry(
            bus=self.bus,
            metrics=self.metrics,
            max_nodes=s.max_nodes,
            rate_limit_max=s.rate_limit_max,
            rate_limit_window_s=s.rate_limit_window_s,
            clock=self.clock,
            wall_clock=self.wall_clock,
        )
        self.protocols = ProtocolRegistry.with_defaults()
        self.sites = RemoteSiteManager(
            bus=self.bus,
            protocols=self.protocols,
            clock=self.clock,
            degraded_after_s=s.site_degraded_after_s,
            timeout_after_s=s.site_timeout_after_s,
            wall_clock=self.wall_clock,
        )
        self.loops = LoopScheduler(
            bus=self.bus,
            metrics=self.metrics,
            clock=self.clock,
            default_execution_rate_s=s.default_loop_execution_rate_s,
            history_length=s.loop_history_length,
        )
        self.safety = SafetyManager(
            bus=self.bus,
            loops=self.loops,
            broadcaster=self.sites,
            clock=self.clock,
            wall_clock=self.wall_clock,
            max_active_alarms=s.max_active_alarms,
            escalate_critical_alarms=s.escalate_critical_alarms,
            escalation_estop_id=s.escalation_estop_id,
        )
        self.router = SignalRouter(
            registry=self.nodes,
            bus=self.bus,
            metrics=self.metrics,
            clock=self.clock,
            emergency_check=lambda: self.safety.emergency_mode,
            wall_clock=self.wall_clock,
        )
        self.rules = RuleEngine(
            bus=self.bus,
            metrics=self.metrics,
            clock=self.clock,
            wall_clock=self.wall_clock,
            state_provider=self._state_snapshot,
            dispatcher=self.router.dispatch,
            default_cooldown_s=s.default_rule_cooldown_s,
            default_evaluation_interval_s=s.default_rule_evaluation_interval_s,
        )
        self.router.attach(self.rules)
        self._unsubscribe = self.bus.subscribe(EventName.system_command, self._on_system_command)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def initialize(self) -> None:
        if self._closed:
            raise ControlNetworkError("Control network was shut down; create a new instance")
        if self._initialized:
            return
        if self.settings.seed_defaults:
            self.loops.install_defaults()
            self.rules.install_defaults()
            self.safety.install_defaults()
        self._initialized = True
        logger.info(
            "Control network initialized",
            extra={"rules": len(self.rules), "seeded": self.settings.seed_defaults},
        )

    def shutdown(self) -> None:
        """Tear down consumers before the registries they reference.

        Shutdown is terminal: event handlers are detached for good and a later
        ``initialize`` raises.
        """

        if self._closed:
            return
        self._closed = True
        self.rules.shutdown()
        self.loops.shutdown()
        self.safety.shutdown()
        self.sites.shutdown()
        self.nodes.shutdown()
        self._unsubscribe()
        self.bus.clear()
        self._initialized = False
        logger.info("Control network shut down")

    @property
    def mode(self) -> SystemMode:
        return SystemMode.emergency_stop if self.safety.emergency_mode else SystemMode.normal

    # ------------------------------------------------------------------
    # Nodes and signals
    # ------------------------------------------------------------------
    def register_control_node(
        self,
        node_id: str,
        node_type: NodeType | str,
        metadata: Mapping[str, Any] | NodeMetadata | None = None,
    ) -> Node:
        return self.nodes.register(node_id, node_type, metadata)

    def unregister_control_node(self, node_id: str) -> bool:
        return self.nodes.unregister(node_id) is not None

    def process_control_signal(
        self,
        signal_type: str,
        signal_data: Mapping[str, Any] | None,
        source_node_id: str,
        options: Mapping[str, Any] | None = None,
    ) -> Signal:
        return self.router.process_signal(
            signal_type, signal_data, source_node_id, options=options
        )

    def cleanup_stale_nodes(self, *, now: float | None = None) -> list[str]:
        return self.nodes.sweep_stale(self.settings.stale_node_threshold_s, now=now)

    # ------------------------------------------------------------------
    # Automation
    # ------------------------------------------------------------------
    def add_automation_rule(
        self, rule_id: str, rule: RuleConfig | Mapping[str, Any]
    ) -> AutomationRule:
        return self.rules.add_rule(rule_id, rule)

    def register_rule(self, rule_id: str, config: RuleConfig | Mapping[str, Any]) -> AutomationRule:
        return self.rules.register_rule(rule_id, config)

    def enable_rule(self, rule_id: str) -> AutomationRule:
        return self.rules.enable_rule(rule_id)

    def disable_rule(self, rule_id: str) -> AutomationRule:
        return self.rules.disable_rule(rule_id)

    # ------------------------------------------------------------------
    # Control loops
    # ------------------------------------------------------------------
    def register_loop(self, loop_id: str, config: LoopConfig | Mapping[str, Any]) -> ControlLoop:
        return self.loops.register_loop(loop_id, config)

    def update_loop(self, loop_id: str, updates: LoopUpdate | Mapping[str, Any]) -> ControlLoop:
        return self.loops.update_loop(loop_id, updates)

    def tune_loop(self, loop_id: str, profile_id: str) -> ControlLoop:
        return self.loops.tune_loop(loop_id, profile_id)

    # ------------------------------------------------------------------
    # Sites and safety
    # ------------------------------------------------------------------
    def register_site(self, config: SiteConfig | Mapping[str, Any]) -> RemoteSite:
        return self.sites.register_site(config)

    def activate_emergency_stop(
        self, estop_id: str, reason: str, *, operator: str | None = None
    ) -> EmergencyStop:
        return self.safety.activate_emergency_stop(estop_id, reason, operator=operator)

    def reset_emergency_mode(self, operator: str, reason: str) -> None:
        self.safety.reset_emergency_mode(operator, reason)

    def emergency_shutdown(self, reason: str) -> None:
        """Stop everything; enters emergency mode unless already in it."""

        if self.safety.emergency_mode:
            self.loops.stop_all(reason)
        else:
            self.safety.escalate(reason)
        logger.critical("Emergency shutdown completed", extra={"reason": reason})
        self.bus.publish(
            EventName.emergency_shutdown_completed,
            {"reason": reason, "mode": str(self.mode)},
            source="control_network",
        )

    def _on_system_command(self, event: Event) -> None:
        command = SystemCommand(event.payload["command"])
        reason = str(event.payload.get("reason") or "system command")
        if command == SystemCommand.emergency_shutdown:
            self.emergency_shutdown(reason)
        elif command == SystemCommand.cleanup_stale_nodes:
            self.cleanup_stale_nodes()
        else:
            self.run_health_check()

    # ------------------------------------------------------------------
    # Health and status
    # ------------------------------------------------------------------
    def run_health_check(self, *, now: float | None = None) -> NetworkHealth:
        """Classify health from the error ratio since the previous check."""

        self.sites.check_site_health(now=now)

        signals = self.metrics.signals_processed + self.metrics.signals_rejected
        errors = self.metrics.errors_encountered
        delta_signals = signals - self._last_check_signals
        delta_errors = errors - self._last_check_errors
        self._last_check_signals = signals
        self._last_check_errors = errors
        ratio = delta_errors / max(delta_signals, 1)

        s = self.settings
        if ratio >= s.health_critical_error_ratio:
            health = NetworkHealth.critical
        elif (
            ratio >= s.health_degraded_error_ratio
            or self.loops.faulted_loops()
            or self.sites.timed_out_sites()
        ):
            health = NetworkHealth.degraded
        else:
            health = NetworkHealth.healthy

        if health != self.network_health:
            previous, self.network_health = self.network_health, health
            logger.warning(
                "Network health changed",
                extra={"previous": str(previous), "current": str(health), "error_ratio": ratio},
            )
            self.bus.publish(
                EventName.health_changed,
                {"previous": str(previous), "current": str(health), "error_ratio": ratio},
                source="control_network",
            )
        return health

    def _state_snapshot(self) -> dict[str, Any]:
        return {
            "node_count": len(self.nodes),
            "health": self.network_health,
            "mode": self.mode,
            "active_controllers": self.loops.active_count(),
            "emergency_mode": self.safety.emergency_mode,
        }

    def get_metrics(self) -> dict[str, float | int]:
        return self.metrics.as_dict()

    def get_system_status(self) -> dict[str, Any]:
        return {
            "mode": str(self.mode),
            "active_controllers": self.loops.active_count(),
            "network_health": str(self.network_health),
            "metrics": self.get_metrics(),
            "nodes": [node.as_dict() for node in self.nodes.iter_nodes()],
            "rules": [rule.as_dict() for rule in self.rules.rules()],
            "loops": [loop.as_dict() for loop in self.loops.loops()],
            "safety": self.safety.get_status(),
            "sites": self.sites.get_status(),
        }


__all__ = ["ControlNetwork"]
