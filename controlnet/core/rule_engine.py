"""Declarative condition/action automation evaluated against routed signals."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import ValidationError

from controlnet.core.errors import (
    AlreadyRegisteredError,
    ExecutionError,
    NotFoundError,
    config_error_from,
)
from controlnet.core.events import Clock, EventBus
from controlnet.core.node_registry import NetworkMetrics
from controlnet.core.signal_router import Signal
from controlnet.models.enums import (
    CompareOperator,
    CompositeOperator,
    EventName,
    NetworkHealth,
    NodeCountCheck,
    Priority,
    RuleToggle,
    ScheduleKind,
)
from controlnet.models.schemas import (
    Action,
    CompositeCondition,
    Condition,
    LogEventAction,
    NodeCountCondition,
    RaiseAlarmAction,
    RuleConfig,
    RunScriptAction,
    SendSignalAction,
    SignalTypeCondition,
    SystemControlAction,
    SystemHealthCondition,
    TimeScheduleCondition,
    ToggleRuleAction,
    UpdateSetpointAction,
    ValueThresholdCondition,
)

logger = logging.getLogger(__name__)

StateProvider = Callable[[], Mapping[str, Any]]
Dispatcher = Callable[..., list[Signal]]
Script = Callable[[Mapping[str, Any], "RuleContext"], Any]

_MISSING = object()
_SECONDS_PER_DAY = 86400
_DAILY_TOLERANCE_S = 60

_COMPARATORS: dict[CompareOperator, Callable[[Any, Any], bool]] = {
    CompareOperator.equals: lambda a, b: a == b,
    CompareOperator.not_equals: lambda a, b: a != b,
    CompareOperator.greater_than: lambda a, b: a > b,
    CompareOperator.less_than: lambda a, b: a < b,
    CompareOperator.greater_equal: lambda a, b: a >= b,
    CompareOperator.less_equal: lambda a, b: a <= b,
}


@dataclass(slots=True)
class RuleMetrics:
    evaluation_count: int = 0
    trigger_count: int = 0
    success_count: int = 0
    error_count: int = 0
    avg_execution_ms: float = 0.0


@dataclass(slots=True)
class RuleGroup:
    name: str
    description: str = ""
    priority: Priority = Priority.normal
    rule_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class AutomationRule:
    """A registered condition/action pair and its evaluation state."""

    id: str
    name: str
    group: str
    priority: Priority
    condition: Condition
    action: Action
    cooldown_s: float
    evaluation_interval_s: float
    evaluate_on_tick: bool
    description: str = ""
    enabled: bool = True
    last_evaluation: float | None = None
    last_triggered: float | None = None
    metrics: RuleMetrics = field(default_factory=RuleMetrics)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def is_due(self, now: float) -> bool:
        if not self.enabled:
            return False
        last_eval = self.last_evaluation
        if last_eval is not None and now - last_eval < self.evaluation_interval_s:
            return False
        if self.last_triggered is not None and now - self.last_triggered < self.cooldown_s:
            return False
        return True

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "group": self.group,
            "priority": str(self.priority),
            "enabled": self.enabled,
            "condition_type": self.condition.type,
            "action_type": self.action.type,
            "cooldown_s": self.cooldown_s,
            "evaluation_interval_s": self.evaluation_interval_s,
            "last_triggered": self.last_triggered,
            "metrics": {
                "evaluation_count": self.metrics.evaluation_count,
                "trigger_count": self.metrics.trigger_count,
                "success_count": self.metrics.success_count,
                "error_count": self.metrics.error_count,
                "avg_execution_ms": round(self.metrics.avg_execution_ms, 3),
            },
        }


@dataclass(slots=True)
class RuleContext:
    """Snapshot one evaluation pass sees: the signal plus live system state."""

    signal: Signal
    now: float
    wall_time: datetime
    state: Mapping[str, Any]
    metrics: Mapping[str, Any]
    rule: AutomationRule | None = None

    def snapshot(self) -> dict[str, Any]:
        return {
            "type": self.signal.type,
            "data": self.signal.data,
            "source": self.signal.source,
            "priority": self.signal.priority,
            "timestamp": self.signal.timestamp,
            "metrics": self.metrics,
            "state": self.state,
        }


def resolve_path(root: Any, path: str) -> Any:
    """Walk a dotted path through mappings and attributes; ``_MISSING`` if absent."""

    value = root
    for part in path.split("."):
        if isinstance(value, Mapping):
            value = value.get(part, _MISSING)
        else:
            value = getattr(value, part, _MISSING)
        if value is _MISSING:
            return _MISSING
    return value


def compare_values(value: Any, operator: CompareOperator, threshold: Any) -> bool:
    try:
        return bool(_COMPARATORS[operator](value, threshold))
    except TypeError:
        return False


def _contains_schedule(condition: Condition) -> bool:
    if isinstance(condition, TimeScheduleCondition):
        return True
    if isinstance(condition, CompositeCondition):
        return any(_contains_schedule(sub) for sub in condition.conditions)
    return False


class RuleEngine:
    """Evaluate automation rules in registration order.

    Each rule is isolated: a condition that raises evaluates to false, and an
    action that raises is counted against that rule only.
    """

    def __init__(
        self,
        *,
        bus: EventBus,
        metrics: NetworkMetrics,
        clock: Clock | None = None,
        wall_clock: Callable[[], datetime] | None = None,
        state_provider: StateProvider | None = None,
        dispatcher: Dispatcher | None = None,
        default_cooldown_s: float = 1.0,
        default_evaluation_interval_s: float = 0.1,
    ) -> None:
        self._bus = bus
        self._metrics = metrics
        self._clock = clock or time.monotonic
        self._wall_clock = wall_clock or (lambda: datetime.now(UTC))
        self._state_provider = state_provider or (lambda: {})
        self._dispatcher = dispatcher
        self.default_cooldown_s = default_cooldown_s
        self.default_evaluation_interval_s = default_evaluation_interval_s
        self._rules: dict[str, AutomationRule] = {}
        self._groups: dict[str, RuleGroup] = {}
        self._scripts: dict[str, Script] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def add_rule(self, rule_id: str, config: RuleConfig | Mapping[str, Any]) -> AutomationRule:
        if rule_id in self._rules:
            raise AlreadyRegisteredError("Rule", rule_id)
        try:
            cfg = config if isinstance(config, RuleConfig) else RuleConfig.model_validate(config)
        except ValidationError as exc:
            raise config_error_from(exc, context=f"rule {rule_id}") from exc

        rule = AutomationRule(
            id=rule_id,
            name=cfg.name or rule_id,
            description=cfg.description,
            group=cfg.group,
            priority=cfg.priority,
            condition=cfg.condition,
            action=cfg.action,
            enabled=cfg.enabled,
            cooldown_s=(
                self.default_cooldown_s if cfg.cooldown_s is None else cfg.cooldown_s
            ),
            evaluation_interval_s=(
                self.default_evaluation_interval_s
                if cfg.evaluation_interval_s is None
                else cfg.evaluation_interval_s
            ),
            evaluate_on_tick=(
                _contains_schedule(cfg.condition)
                if cfg.evaluate_on_tick is None
                else cfg.evaluate_on_tick
            ),
        )
        self._rules[rule_id] = rule
        self.add_rule_group(rule.group).rule_ids.append(rule_id)

        logger.info(
            "Automation rule registered",
            extra={"rule": rule_id, "group": rule.group, "priority": str(rule.priority)},
        )
        self._bus.publish(EventName.rule_registered, rule.as_dict(), source="rule_engine")
        return rule

    register_rule = add_rule

    def remove_rule(self, rule_id: str) -> bool:
        rule = self._rules.pop(rule_id, None)
        if rule is None:
            return False
        group = self._groups.get(rule.group)
        if group is not None and rule_id in group.rule_ids:
            group.rule_ids.remove(rule_id)
        logger.info("Automation rule removed", extra={"rule": rule_id})
        return True

    def enable_rule(self, rule_id: str) -> AutomationRule:
        rule = self.require(rule_id)
        if not rule.enabled:
            rule.enabled = True
            self._bus.publish(EventName.rule_enabled, {"rule_id": rule_id}, source="rule_engine")
        return rule

    def disable_rule(self, rule_id: str) -> AutomationRule:
        rule = self.require(rule_id)
        if rule.enabled:
            rule.enabled = False
            self._bus.publish(EventName.rule_disabled, {"rule_id": rule_id}, source="rule_engine")
        return rule

    def reset_rule(self, rule_id: str) -> AutomationRule:
        """Clear timing state and counters so the rule may fire immediately."""

        rule = self.require(rule_id)
        rule.last_evaluation = None
        rule.last_triggered = None
        rule.metrics = RuleMetrics()
        return rule

    def register_script(self, script_id: str, script: Script) -> None:
        self._scripts[script_id] = script

    def add_rule_group(
        self,
        name: str,
        *,
        description: str = "",
        priority: Priority = Priority.normal,
    ) -> RuleGroup:
        group = self._groups.get(name)
        if group is None:
            group = RuleGroup(name=name, description=description, priority=priority)
            self._groups[name] = group
        return group

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get(self, rule_id: str) -> AutomationRule | None:
        return self._rules.get(rule_id)

    def require(self, rule_id: str) -> AutomationRule:
        rule = self._rules.get(rule_id)
        if rule is None:
            raise NotFoundError("Rule", rule_id)
        return rule

    def rules(self) -> list[AutomationRule]:
        return list(self._rules.values())

    def get_rules_by_group(self, name: str) -> list[AutomationRule]:
        group = self._groups.get(name)
        if group is None:
            return []
        return [self._rules[rid] for rid in group.rule_ids if rid in self._rules]

    def groups(self) -> dict[str, RuleGroup]:
        return dict(self._groups)

    def __len__(self) -> int:
        return len(self._rules)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------
    def process_signal(self, signal: Signal, *, now: float | None = None) -> list[str]:
        """Evaluate every due rule against ``signal``; return ids of rules that fired."""

        current = self._clock() if now is None else now
        return self._evaluate(signal, current, only_tick=False)

    def tick(self, *, now: float | None = None) -> list[str]:
        """Evaluate tick-driven rules against a synthetic ``SYSTEM_STATE`` signal."""

        current = self._clock() if now is None else now
        signal = Signal.create(
            "SYSTEM_STATE",
            {},
            source="rule_engine",
            timestamp=current,
            priority=Priority.system,
            created_at=self._wall_clock(),
        )
        return self._evaluate(signal, current, only_tick=True)

    def _evaluate(self, signal: Signal, now: float, *, only_tick: bool) -> list[str]:
        candidates = [
            rule
            for rule in self._rules.values()
            if (rule.evaluate_on_tick or not only_tick)
        ]
        if not candidates:
            return []

        context = RuleContext(
            signal=signal,
            now=now,
            wall_time=self._wall_clock(),
            state=dict(self._state_provider()),
            metrics=self._metrics.as_dict(),
        )
        fired: list[str] = []
        for rule in candidates:
            # Re-check each pass; earlier actions may toggle or remove rules.
            if rule.id not in self._rules or not rule.is_due(now):
                continue
            rule.last_evaluation = now
            rule.metrics.evaluation_count += 1
            if not self._check(rule, context):
                continue
            self._fire(rule, context)
            fired.append(rule.id)
        return fired

    def _check(self, rule: AutomationRule, context: RuleContext) -> bool:
        try:
            return self.evaluate_condition(rule.condition, context)
        except Exception:
            logger.exception("Condition evaluation failed", extra={"rule": rule.id})
            return False

    def _fire(self, rule: AutomationRule, context: RuleContext) -> None:
        rule.last_triggered = context.now
        rule.metrics.trigger_count += 1
        self._metrics.rules_triggered += 1
        started = time.perf_counter()
        try:
            self.execute_action(rule.action, replace(context, rule=rule))
        except Exception:
            rule.metrics.error_count += 1
            self._metrics.errors_encountered += 1
            logger.exception(
                "Rule action failed",
                extra={"rule": rule.id, "action": rule.action.type},
            )
        else:
            rule.metrics.success_count += 1
            logger.info("Rule triggered", extra={"rule": rule.id, "rule_name": rule.name})
            self._bus.publish(
                EventName.rule_triggered,
                {
                    "rule_id": rule.id,
                    "rule_name": rule.name,
                    "action": rule.action.model_dump(mode="json"),
                    "signal_id": context.signal.id,
                    "timestamp": context.now,
                },
                source="rule_engine",
            )
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            rule.metrics.avg_execution_ms = rule.metrics.avg_execution_ms * 0.9 + elapsed_ms * 0.1

    # ------------------------------------------------------------------
    # Conditions
    # ------------------------------------------------------------------
    def evaluate_condition(self, condition: Condition, context: RuleContext) -> bool:
        if isinstance(condition, SignalTypeCondition):
            return context.signal.type == condition.expected_type
        if isinstance(condition, ValueThresholdCondition):
            value = resolve_path(context.snapshot(), condition.value_path)
            if value is _MISSING:
                return False
            return compare_values(value, condition.operator, condition.threshold)
        if isinstance(condition, TimeScheduleCondition):
            return self._evaluate_schedule(condition, context)
        if isinstance(condition, NodeCountCondition):
            count = int(context.state.get("node_count", 0))
            if condition.check == NodeCountCheck.min_nodes:
                return count >= condition.value
            if condition.check == NodeCountCheck.max_nodes:
                return count <= condition.value
            return count == 0
        if isinstance(condition, SystemHealthCondition):
            return context.state.get("health") == condition.health_level
        if isinstance(condition, CompositeCondition):
            if condition.operator == CompositeOperator.and_:
                return all(self.evaluate_condition(sub, context) for sub in condition.conditions)
            if condition.operator == CompositeOperator.or_:
                return any(self.evaluate_condition(sub, context) for sub in condition.conditions)
            # NOT only looks at the first sub-condition.
            return not self.evaluate_condition(condition.conditions[0], context)
        raise TypeError(f"Unsupported condition: {type(condition).__name__}")

    @staticmethod
    def _evaluate_schedule(condition: TimeScheduleCondition, context: RuleContext) -> bool:
        if condition.schedule == ScheduleKind.periodic:
            assert condition.interval_s is not None
            return context.now % condition.interval_s < condition.window_s

        wall = context.wall_time
        if condition.schedule == ScheduleKind.daily:
            assert condition.time_of_day_s is not None
            midnight = wall.replace(hour=0, minute=0, second=0, microsecond=0)
            elapsed = (wall - midnight).total_seconds()
            delta = abs(elapsed - condition.time_of_day_s)
            return min(delta, _SECONDS_PER_DAY - delta) < _DAILY_TOLERANCE_S

        assert condition.target_time is not None
        target = condition.target_time
        if target.tzinfo is None:
            target = target.replace(tzinfo=UTC)
        return target <= wall < target + timedelta(seconds=1)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------
    def execute_action(self, action: Action, context: RuleContext) -> None:
        rule_id = context.rule.id if context.rule else None
        if isinstance(action, SendSignalAction):
            if self._dispatcher is None:
                raise ExecutionError("No signal dispatcher attached")
            self._dispatcher(
                action.signal_type,
                action.data,
                action.target_nodes,
                source=f"rule:{rule_id}" if rule_id else "rule_engine",
                now=context.now,
            )
        elif isinstance(action, UpdateSetpointAction):
            self._bus.publish(
                EventName.setpoint_update,
                {"loop_id": action.loop_id, "setpoint": action.setpoint, "rule_id": rule_id},
                source="rule_engine",
            )
        elif isinstance(action, RaiseAlarmAction):
            self._bus.publish(
                EventName.alarm_raised,
                {
                    "message": action.message,
                    "priority": str(action.severity),
                    "category": str(action.category),
                    "source": f"rule:{rule_id}" if rule_id else "rule_engine",
                },
                source="rule_engine",
            )
        elif isinstance(action, LogEventAction):
            logger.log(
                logging.getLevelName(action.level),
                "Automation event: %s",
                action.message,
                extra={"rule": rule_id},
            )
        elif isinstance(action, RunScriptAction):
            script = self._scripts.get(action.script_id)
            if script is None:
                raise ExecutionError(f"Script not registered: {action.script_id}")
            script(action.script_data, context)
        elif isinstance(action, ToggleRuleAction):
            if action.toggle == RuleToggle.enable:
                self.enable_rule(action.rule_id)
            elif action.toggle == RuleToggle.disable:
                self.disable_rule(action.rule_id)
            else:
                self.reset_rule(action.rule_id)
        elif isinstance(action, SystemControlAction):
            self._bus.publish(
                EventName.system_command,
                {"command": str(action.command), "reason": action.reason, "rule_id": rule_id},
                source="rule_engine",
            )
        else:
            raise TypeError(f"Unsupported action: {type(action).__name__}")

    # ------------------------------------------------------------------
    # Defaults, status and teardown
    # ------------------------------------------------------------------
    def install_defaults(self) -> None:
        for name, description, priority in DEFAULT_RULE_GROUPS:
            self.add_rule_group(name, description=description, priority=priority)
        for rule_id, config in DEFAULT_RULES.items():
            if rule_id not in self._rules:
                self.add_rule(rule_id, config)

    def get_status(self) -> dict[str, Any]:
        return {
            "total_rules": len(self._rules),
            "enabled_rules": sum(1 for r in self._rules.values() if r.enabled),
            "groups": {name: len(g.rule_ids) for name, g in self._groups.items()},
            "scripts": sorted(self._scripts),
            "rules": [rule.as_dict() for rule in self._rules.values()],
        }

    def shutdown(self) -> None:
        self._rules.clear()
        self._groups.clear()
        self._scripts.clear()
        logger.info("Rule engine shut down")


DEFAULT_RULE_GROUPS: tuple[tuple[str, str, Priority], ...] = (
    ("SAFETY", "Safety and emergency rules", Priority.critical),
    ("PERFORMANCE", "Performance optimization rules", Priority.high),
    ("MAINTENANCE", "System maintenance rules", Priority.normal),
    ("USER_INTERACTION", "User interaction automation", Priority.normal),
)

DEFAULT_RULES: dict[str, dict[str, Any]] = {
    "EMERGENCY_SHUTDOWN": {
        "name": "Emergency Shutdown",
        "description": "Shut the network down on an emergency signal or critical health",
        "group": "SAFETY",
        "priority": "CRITICAL",
        "condition": {
            "type": "COMPOSITE",
            "operator": "OR",
            "conditions": [
                {"type": "SIGNAL_TYPE", "expected_type": "EMERGENCY_STOP"},
                {"type": "SYSTEM_HEALTH", "health_level": NetworkHealth.critical.value},
            ],
        },
        "action": {"type": "SYSTEM_CONTROL", "command": "EMERGENCY_SHUTDOWN"},
        "cooldown_s": 0.0,
        "evaluation_interval_s": 0.0,
        "evaluate_on_tick": True,
    },
    "TRIGGER_CASCADE": {
        "name": "Trigger Cascade",
        "description": "Fan out high-intensity triggers to every active node",
        "group": "PERFORMANCE",
        "priority": "HIGH",
        "condition": {
            "type": "VALUE_THRESHOLD",
            "value_path": "data.triggerIntensity",
            "operator": "GREATER_THAN",
            "threshold": 0.8,
        },
        "action": {
            "type": "SEND_SIGNAL",
            "signal_type": "TRIGGER_CASCADE",
            "target_nodes": "ALL_ACTIVE",
            "data": {"cascadeLevel": 2},
        },
        "cooldown_s": 5.0,
    },
    "PERFORMANCE_MONITOR": {
        "name": "Performance Monitor",
        "description": "Warn when average response time exceeds one second",
        "group": "PERFORMANCE",
        "priority": "NORMAL",
        "condition": {
            "type": "VALUE_THRESHOLD",
            "value_path": "metrics.average_response_time",
            "operator": "GREATER_THAN",
            "threshold": 1000,
        },
        "action": {
            "type": "LOG_EVENT",
            "level": "WARNING",
            "message": "Average response time above 1000 ms",
        },
        "cooldown_s": 60.0,
        "evaluate_on_tick": True,
    },
    "CLEANUP_STALE_NODES": {
        "name": "Cleanup Stale Nodes",
        "description": "Periodically remove idle nodes",
        "group": "MAINTENANCE",
        "priority": "LOW",
        "condition": {"type": "TIME_SCHEDULE", "schedule": "PERIODIC", "interval_s": 300.0},
        "action": {"type": "SYSTEM_CONTROL", "command": "CLEANUP_STALE_NODES"},
        "cooldown_s": 60.0,
    },
}


__all__ = [
    "DEFAULT_RULES",
    "DEFAULT_RULE_GROUPS",
    "AutomationRule",
    "RuleContext",
    "RuleEngine",
    "RuleGroup",
    "RuleMetrics",
    "compare_values",
    "resolve_path",
]
