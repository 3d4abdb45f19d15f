from __future__ import annotations

import pytest

from controlnet.core.clock import ManualClock, ManualWallClock
from controlnet.core.errors import (
    ControlNetworkError,
    EmergencyStopActiveError,
    NotInEmergencyModeError,
    UnknownNodeError,
    UnknownTypeError,
)
from controlnet.core.network import ControlNetwork
from controlnet.models.enums import (
    AlarmPriority,
    EventName,
    NetworkHealth,
    NodeType,
    SystemMode,
)


def _pid_loop(setpoint: float = 0.5, kp: float = 1.0) -> dict[str, object]:
    return {
        "type": "PID",
        "setpoint": setpoint,
        "parameters": {"kp": kp, "ki": 0.0, "kd": 0.0},
    }


# ===================================================================
# Emergency stop
# ===================================================================


def test_emergency_stop_halts_every_loop(seeded_network: ControlNetwork) -> None:
    net = seeded_network
    net.register_loop("L1", _pid_loop())
    net.register_loop("L2", {**_pid_loop(), "output": 0.8})
    net.loops.tick()

    net.activate_emergency_stop("MASTER_ESTOP", "operator test", operator="alice")

    assert net.mode == SystemMode.emergency_stop
    for loop in net.loops.loops():
        assert loop.enabled is False
        assert loop.output == 0.0
    assert net.loops.tick() == []
    assert net.get_system_status()["active_controllers"] == 0


def test_signal_rejected_during_emergency(seeded_network: ControlNetwork) -> None:
    net = seeded_network
    net.register_control_node("u1", NodeType.user)
    net.activate_emergency_stop("SOFTWARE_ESTOP", "test")

    with pytest.raises(EmergencyStopActiveError):
        net.process_control_signal("PING", {}, "u1")


def test_unknown_node_reported_during_emergency(seeded_network: ControlNetwork) -> None:
    net = seeded_network
    net.activate_emergency_stop("MASTER_ESTOP", "test")

    with pytest.raises(UnknownNodeError):
        net.process_control_signal("PING", {}, "ghost")


def test_invalid_priority_is_rejected(network: ControlNetwork) -> None:
    network.register_control_node("n1", NodeType.user)

    with pytest.raises(UnknownTypeError):
        network.process_control_signal("PING", {}, "n1", options={"priority": "URGENT"})

    assert network.nodes.rate_limiter.window("n1") == []
    assert network.get_metrics()["signals_rejected"] == 1


def test_reset_requires_emergency(seeded_network: ControlNetwork) -> None:
    net = seeded_network
    with pytest.raises(NotInEmergencyModeError):
        net.reset_emergency_mode("alice", "nothing active")

    net.activate_emergency_stop("MASTER_ESTOP", "test")
    net.reset_emergency_mode("alice", "cleared")

    assert net.mode == SystemMode.normal


# ===================================================================
# Nodes and signals
# ===================================================================


def test_unregister_is_idempotent(network: ControlNetwork) -> None:
    network.register_control_node("u1", NodeType.user)
    assert network.unregister_control_node("u1") is True
    assert network.unregister_control_node("u1") is False


def test_signal_from_unknown_node(network: ControlNetwork) -> None:
    with pytest.raises(UnknownNodeError):
        network.process_control_signal("PING", {}, "ghost")
    assert network.get_metrics()["signals_rejected"] == 1


def test_cleanup_stale_nodes(network: ControlNetwork, clock: ManualClock) -> None:
    network.register_control_node("idle", NodeType.user)
    clock.advance(700)
    network.register_control_node("fresh", NodeType.user)

    assert network.cleanup_stale_nodes() == ["idle"]
    assert len(network.nodes) == 1


def test_cleanup_via_system_command(network: ControlNetwork, clock: ManualClock) -> None:
    network.register_control_node("idle", NodeType.user)
    clock.advance(700)

    network.bus.publish(
        EventName.system_command, {"command": "CLEANUP_STALE_NODES"}, source="test"
    )

    assert len(network.nodes) == 0


# ===================================================================
# Default automation
# ===================================================================


def test_high_intensity_trigger_cascades(seeded_network: ControlNetwork) -> None:
    net = seeded_network
    net.register_control_node("a", NodeType.user)
    net.register_control_node("b", NodeType.worker)

    net.process_control_signal("TRIGGER", {"triggerIntensity": 0.9}, "a")

    dispatched = net.bus.recent(name=EventName.signal_dispatched)
    assert len(dispatched) == 2
    rule = net.rules.require("TRIGGER_CASCADE")
    assert rule.metrics.trigger_count == 1
    assert net.get_metrics()["rules_triggered"] == 1


def test_low_intensity_trigger_does_not_cascade(seeded_network: ControlNetwork) -> None:
    net = seeded_network
    net.register_control_node("a", NodeType.user)
    net.process_control_signal("TRIGGER", {"triggerIntensity": 0.5}, "a")
    assert net.bus.recent(name=EventName.signal_dispatched) == []


def test_emergency_signal_shuts_down(seeded_network: ControlNetwork) -> None:
    net = seeded_network
    net.register_control_node("a", NodeType.user)
    net.register_loop("L1", _pid_loop())

    net.process_control_signal("EMERGENCY_STOP", {}, "a")

    assert net.mode == SystemMode.emergency_stop
    assert net.loops.require("L1").enabled is False
    completed = net.bus.recent(name=EventName.emergency_shutdown_completed)
    assert completed[0].payload["mode"] == "EMERGENCY_STOP"


def test_critical_health_trips_shutdown_on_tick(seeded_network: ControlNetwork) -> None:
    net = seeded_network
    net.metrics.errors_encountered += 5
    assert net.run_health_check() == NetworkHealth.critical

    net.rules.tick()

    assert net.mode == SystemMode.emergency_stop


# ===================================================================
# Rule actions wired to other components
# ===================================================================


def test_critical_alarm_rule_escalates(network: ControlNetwork) -> None:
    network.add_automation_rule(
        "OVERHEAT",
        {
            "condition": {"type": "SIGNAL_TYPE", "expected_type": "OVERHEAT"},
            "action": {"type": "RAISE_ALARM", "message": "Too hot", "severity": "CRITICAL"},
        },
    )
    network.register_control_node("w1", NodeType.worker)

    network.process_control_signal("OVERHEAT", {}, "w1")

    assert network.mode == SystemMode.emergency_stop
    alarm = network.safety.alarms()[0]
    assert alarm.priority == AlarmPriority.critical
    assert alarm.source == "rule:OVERHEAT"


def test_setpoint_rule_updates_loop(network: ControlNetwork) -> None:
    network.register_loop("L1", _pid_loop(setpoint=0.2))
    network.register_rule(
        "RETARGET",
        {
            "condition": {"type": "SIGNAL_TYPE", "expected_type": "RETARGET"},
            "action": {"type": "UPDATE_SETPOINT", "loop_id": "L1", "setpoint": 0.7},
        },
    )
    network.register_control_node("u1", NodeType.user)

    network.process_control_signal("RETARGET", {}, "u1")

    assert network.loops.require("L1").setpoint == 0.7


def test_disabled_rule_does_not_fire(network: ControlNetwork) -> None:
    network.add_automation_rule(
        "RETARGET",
        {
            "condition": {"type": "SIGNAL_TYPE", "expected_type": "RETARGET"},
            "action": {"type": "LOG_EVENT", "message": "retarget"},
        },
    )
    network.disable_rule("RETARGET")
    network.register_control_node("u1", NodeType.user)

    network.process_control_signal("RETARGET", {}, "u1")

    assert network.rules.require("RETARGET").metrics.trigger_count == 0
    network.enable_rule("RETARGET")
    network.process_control_signal("RETARGET", {}, "u1")
    assert network.rules.require("RETARGET").metrics.trigger_count == 1


# ===================================================================
# Health
# ===================================================================


def test_health_follows_error_ratio(network: ControlNetwork) -> None:
    network.register_control_node("u1", NodeType.user)
    for _ in range(20):
        network.process_control_signal("PING", {}, "u1")

    network.metrics.errors_encountered += 1
    assert network.run_health_check() == NetworkHealth.degraded

    for _ in range(20):
        network.process_control_signal("PING", {}, "u1")
    assert network.run_health_check() == NetworkHealth.healthy

    changes = network.bus.recent(name=EventName.health_changed)
    assert [e.payload["current"] for e in changes] == ["DEGRADED", "HEALTHY"]


def test_faulted_loop_degrades_health(network: ControlNetwork) -> None:
    network.register_loop("bad", _pid_loop(kp=float("inf")))
    network.loops.tick()

    # The fault itself is an error with no traffic to dilute it.
    assert network.run_health_check() == NetworkHealth.critical
    assert network.run_health_check() == NetworkHealth.degraded

    network.loops.remove_loop("bad")
    assert network.run_health_check() == NetworkHealth.healthy


def test_timed_out_site_degrades_health(network: ControlNetwork, clock: ManualClock) -> None:
    network.register_site({"site_id": "S1", "site_name": "Remote", "address": "10.0.0.9"})
    clock.advance(400)
    assert network.run_health_check() == NetworkHealth.degraded


# ===================================================================
# Status and lifecycle
# ===================================================================


def test_system_status_shape(seeded_network: ControlNetwork) -> None:
    status = seeded_network.get_system_status()
    assert set(status) == {
        "mode",
        "active_controllers",
        "network_health",
        "metrics",
        "nodes",
        "rules",
        "loops",
        "safety",
        "sites",
    }
    assert status["mode"] == "NORMAL"
    assert status["network_health"] == "HEALTHY"
    assert len(status["rules"]) == 4


def test_metrics_keys(network: ControlNetwork) -> None:
    assert set(network.get_metrics()) == {
        "signals_processed",
        "signals_rejected",
        "rules_triggered",
        "nodes_connected",
        "nodes_disconnected",
        "errors_encountered",
        "average_response_time",
    }


def test_initialize_is_idempotent(seeded_network: ControlNetwork) -> None:
    seeded_network.initialize()
    assert len(seeded_network.rules) == 4


def test_instances_share_nothing(network: ControlNetwork, seeded_network: ControlNetwork) -> None:
    network.register_control_node("u1", NodeType.user)
    assert len(seeded_network.nodes) == 0
    assert network.bus is not seeded_network.bus


def test_shutdown_detaches_handlers(network: ControlNetwork) -> None:
    network.shutdown()
    assert network.bus.subscriber_count(EventName.system_command) == 0
    assert network.bus.subscriber_count(EventName.alarm_raised) == 0


def test_initialize_after_shutdown_raises(network: ControlNetwork) -> None:
    network.shutdown()
    network.shutdown()

    with pytest.raises(ControlNetworkError):
        network.initialize()


def test_timestamps_follow_injected_wall_clock(
    network: ControlNetwork, wall_clock: ManualWallClock
) -> None:
    wall_clock.advance(90)

    node = network.register_control_node("u1", NodeType.user)
    signal = network.process_control_signal("PING", {}, "u1")
    site = network.register_site(
        {"site_id": "S1", "site_name": "Site S1", "address": "10.0.0.5", "protocol": "NATIVE"}
    )

    assert node.registered_at == wall_clock.now
    assert signal.created_at == wall_clock.now
    assert site.connected_at == wall_clock.now
