"""Safety interlocks, emergency stops, alarms, permits and safety loops."""

from __future__ import annotations

import logging
import time
import uuid
from collections import OrderedDict
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from controlnet.core.errors import (
    AlreadyRegisteredError,
    NotFoundError,
    NotInEmergencyModeError,
    config_error_from,
)
from controlnet.core.events import Clock, Event, EventBus
from controlnet.models.enums import (
    AlarmCategory,
    AlarmPriority,
    EstopKind,
    EstopScope,
    EventName,
    InterlockAction,
    InterlockType,
    PermitStatus,
    PermitType,
    Priority,
    SafetyLoopStatus,
    SafetyStatus,
)
from controlnet.models.schemas import (
    AlarmConfig,
    EmergencyStopConfig,
    InterlockConfig,
    SafetyLoopConfig,
    WorkPermitConfig,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class LoopStopper(Protocol):
    def stop_all(self, reason: str) -> int: ...


class EmergencyBroadcaster(Protocol):
    def broadcast_emergency(self, reason: str) -> list[str]: ...


@dataclass(slots=True)
class Interlock:
    id: str
    name: str
    type: InterlockType
    action: InterlockAction
    condition: str = ""
    enabled: bool = True
    priority: Priority = Priority.normal
    triggered: bool = False
    trigger_count: int = 0
    last_triggered: datetime | None = None
    last_reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": str(self.type),
            "action": str(self.action),
            "enabled": self.enabled,
            "triggered": self.triggered,
            "trigger_count": self.trigger_count,
            "last_reason": self.last_reason,
        }


@dataclass(slots=True)
class EmergencyStop:
    id: str
    name: str
    kind: EstopKind
    scope: EstopScope
    location: str = ""
    activated: bool = False
    activation_count: int = 0
    last_activated: datetime | None = None
    last_reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "kind": str(self.kind),
            "scope": str(self.scope),
            "activated": self.activated,
            "activation_count": self.activation_count,
            "last_reason": self.last_reason,
        }


@dataclass(slots=True)
class SafetyLoop:
    """Safety instrumented function with a proof-test interval."""

    id: str
    name: str
    sil: str
    test_interval_s: float
    last_test: float
    status: SafetyLoopStatus = SafetyLoopStatus.normal
    test_count: int = 0


@dataclass(slots=True)
class Alarm:
    id: str
    message: str
    priority: AlarmPriority
    category: AlarmCategory
    timestamp: float
    source: str | None = None
    value: Any = None
    limit: Any = None
    raised_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    acknowledged: bool = False
    acknowledged_by: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "message": self.message,
            "priority": str(self.priority),
            "category": str(self.category),
            "source": self.source,
            "acknowledged": self.acknowledged,
            "raised_at": self.raised_at.isoformat(),
        }


@dataclass(slots=True)
class WorkPermit:
    permit_id: str
    type: PermitType
    requester: str
    authorizer: str
    valid_from: datetime
    valid_to: datetime
    description: str = ""
    location: str = ""
    conditions: list[str] = field(default_factory=list)
    status: PermitStatus = PermitStatus.active
    issued_at: datetime = field(default_factory=lambda: datetime.now(UTC))


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _validate(model: type[M], payload: M | Mapping[str, Any], context: str) -> M:
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise config_error_from(exc, context=context) from exc


class SafetyManager:
    """Own the protective state of the network.

    Emergency mode is entered by activating an e-stop (directly, through a
    critical interlock, or by escalation of a critical alarm) and is left only
    through :meth:`reset_emergency_mode`.
    """

    def __init__(
        self,
        *,
        bus: EventBus,
        loops: LoopStopper,
        broadcaster: EmergencyBroadcaster | None = None,
        clock: Clock | None = None,
        wall_clock: Callable[[], datetime] | None = None,
        max_active_alarms: int = 1000,
        escalate_critical_alarms: bool = True,
        escalation_estop_id: str = "SOFTWARE_ESTOP",
    ) -> None:
        self._bus = bus
        self._loops = loops
        self._broadcaster = broadcaster
        self._clock = clock or time.monotonic
        self._wall_clock = wall_clock or (lambda: datetime.now(UTC))
        self.max_active_alarms = max_active_alarms
        self.escalate_critical_alarms = escalate_critical_alarms
        self.escalation_estop_id = escalation_estop_id

        self.status = SafetyStatus.armed
        self.emergency_mode = False
        self._interlocks: dict[str, Interlock] = {}
        self._estops: dict[str, EmergencyStop] = {}
        self._safety_loops: dict[str, SafetyLoop] = {}
        self._alarms: OrderedDict[str, Alarm] = OrderedDict()
        self._permits: dict[str, WorkPermit] = {}
        self._unsubscribe = bus.subscribe(EventName.alarm_raised, self._on_alarm_raised)

    def attach_broadcaster(self, broadcaster: EmergencyBroadcaster) -> None:
        self._broadcaster = broadcaster

    # ------------------------------------------------------------------
    # Interlocks
    # ------------------------------------------------------------------
    def add_interlock(self, config: InterlockConfig | Mapping[str, Any]) -> Interlock:
        cfg = _validate(InterlockConfig, config, "interlock")
        if cfg.id in self._interlocks:
            raise AlreadyRegisteredError("Interlock", cfg.id)
        interlock = Interlock(
            id=cfg.id,
            name=cfg.name,
            type=cfg.type,
            action=cfg.action,
            condition=cfg.condition,
            enabled=cfg.enabled,
            priority=cfg.priority,
        )
        self._interlocks[cfg.id] = interlock
        return interlock

    def trigger_interlock(self, interlock_id: str, reason: str) -> Interlock:
        interlock = self._interlocks.get(interlock_id)
        if interlock is None:
            raise NotFoundError("Interlock", interlock_id)
        if not interlock.enabled:
            logger.info("Ignoring disabled interlock", extra={"interlock": interlock_id})
            return interlock

        interlock.triggered = True
        interlock.trigger_count += 1
        interlock.last_triggered = self._wall_clock()
        interlock.last_reason = reason

        payload = interlock.as_dict()
        payload["reason"] = reason
        self._bus.publish(EventName.safety_interlock_triggered, payload, source="safety")

        if interlock.type != InterlockType.critical:
            logger.warning(
                "Warning interlock triggered",
                extra={"interlock": interlock_id, "reason": reason},
            )
            return interlock

        logger.critical(
            "Critical interlock triggered",
            extra={"interlock": interlock_id, "action": str(interlock.action), "reason": reason},
        )
        self._execute_safety_action(interlock, reason)
        if not self.emergency_mode:
            self.escalate(f"Interlock {interlock_id}: {reason}")
        return interlock

    def _execute_safety_action(self, interlock: Interlock, reason: str) -> None:
        action = interlock.action
        if action == InterlockAction.stop_all_processes:
            self._loops.stop_all(f"interlock {interlock.id}: {reason}")
        elif action == InterlockAction.emergency_cooling:
            logger.critical("Emergency cooling engaged", extra={"interlock": interlock.id})
        elif action == InterlockAction.vent_to_atmosphere:
            logger.critical("Venting to atmosphere", extra={"interlock": interlock.id})
        else:
            logger.critical("Pump stopped", extra={"interlock": interlock.id})
        self._bus.publish(
            EventName.safety_action_executed,
            {"interlock_id": interlock.id, "action": str(action), "reason": reason},
            source="safety",
        )

    # ------------------------------------------------------------------
    # Emergency stops
    # ------------------------------------------------------------------
    def add_emergency_stop(self, config: EmergencyStopConfig | Mapping[str, Any]) -> EmergencyStop:
        cfg = _validate(EmergencyStopConfig, config, "emergency stop")
        if cfg.id in self._estops:
            raise AlreadyRegisteredError("Emergency stop", cfg.id)
        estop = EmergencyStop(
            id=cfg.id, name=cfg.name, kind=cfg.kind, scope=cfg.scope, location=cfg.location
        )
        self._estops[cfg.id] = estop
        return estop

    def activate_emergency_stop(
        self, estop_id: str, reason: str, *, operator: str | None = None
    ) -> EmergencyStop:
        """Enter emergency mode; every loop is stopped before this returns."""

        estop = self._estops.get(estop_id)
        if estop is None:
            raise NotFoundError("Emergency stop", estop_id)

        estop.activated = True
        estop.activation_count += 1
        estop.last_activated = self._wall_clock()
        estop.last_reason = reason
        self._enter_emergency(reason, scope=estop.scope, source=estop_id, operator=operator)
        return estop

    def _enter_emergency(
        self, reason: str, *, scope: EstopScope, source: str, operator: str | None = None
    ) -> None:
        self.emergency_mode = True
        self.status = SafetyStatus.emergency_stop
        logger.critical(
            "Emergency stop activated",
            extra={"estop": source, "reason": reason, "operator": operator},
        )

        stopped = self._loops.stop_all(f"emergency stop {source}: {reason}")
        for interlock in list(self._interlocks.values()):
            if interlock.enabled and interlock.type == InterlockType.critical:
                self.trigger_interlock(interlock.id, f"Emergency stop {source}")

        sites: list[str] = []
        if scope == EstopScope.global_ and self._broadcaster is not None:
            sites = self._broadcaster.broadcast_emergency(reason)

        self._bus.publish(
            EventName.emergency_stop_activated,
            {
                "estop_id": source,
                "reason": reason,
                "operator": operator,
                "scope": str(scope),
                "loops_stopped": stopped,
                "sites_notified": sites,
            },
            source="safety",
        )

    def escalate(self, reason: str) -> None:
        """Activate the escalation e-stop, or enter emergency mode directly without one."""

        if self.escalation_estop_id in self._estops:
            self.activate_emergency_stop(self.escalation_estop_id, reason)
        else:
            self._enter_emergency(reason, scope=EstopScope.global_, source="escalation")

    def reset_emergency_mode(self, operator: str, reason: str) -> None:
        if not self.emergency_mode:
            raise NotInEmergencyModeError("System is not in emergency mode")
        for estop in self._estops.values():
            estop.activated = False
        for interlock in self._interlocks.values():
            interlock.triggered = False
        self.emergency_mode = False
        self.status = SafetyStatus.armed

        logger.warning(
            "Emergency mode reset", extra={"operator": operator, "reason": reason}
        )
        self._bus.publish(
            EventName.emergency_mode_reset,
            {"operator": operator, "reason": reason},
            source="safety",
        )

    # ------------------------------------------------------------------
    # Alarms
    # ------------------------------------------------------------------
    def raise_alarm(self, config: AlarmConfig | Mapping[str, Any]) -> Alarm | None:
        """Publish an alarm; the alarm table is fed from the bus like any other alarm."""

        cfg = _validate(AlarmConfig, config, "alarm")
        alarm_id = cfg.id or f"ALM-{uuid.uuid4().hex[:12]}"
        self._bus.publish(
            EventName.alarm_raised,
            {
                "id": alarm_id,
                "message": cfg.message,
                "priority": str(cfg.priority),
                "category": str(cfg.category),
                "source": cfg.source,
                "value": cfg.value,
                "limit": cfg.limit,
            },
            source="safety",
        )
        return self._alarms.get(alarm_id)

    def _on_alarm_raised(self, event: Event) -> None:
        payload = event.payload
        alarm = Alarm(
            id=str(payload.get("id") or f"ALM-{uuid.uuid4().hex[:12]}"),
            message=str(payload.get("message", "")),
            priority=AlarmPriority(payload.get("priority", AlarmPriority.medium)),
            category=AlarmCategory(payload.get("category", AlarmCategory.process)),
            timestamp=event.timestamp,
            source=payload.get("source"),
            value=payload.get("value"),
            limit=payload.get("limit"),
        )
        self._alarms[alarm.id] = alarm
        while len(self._alarms) > self.max_active_alarms:
            self._alarms.popitem(last=False)

        log = logger.critical if alarm.priority == AlarmPriority.critical else logger.warning
        log("Alarm raised: %s", alarm.message, extra={"alarm": alarm.id})

        if (
            alarm.priority == AlarmPriority.critical
            and self.escalate_critical_alarms
            and not self.emergency_mode
        ):
            self.escalate(f"Critical alarm {alarm.id}: {alarm.message}")

    def acknowledge_alarm(self, alarm_id: str, operator: str) -> Alarm:
        alarm = self._alarms.get(alarm_id)
        if alarm is None:
            raise NotFoundError("Alarm", alarm_id)
        alarm.acknowledged = True
        alarm.acknowledged_by = operator
        return alarm

    def alarms(self, *, active_only: bool = False) -> list[Alarm]:
        return [a for a in self._alarms.values() if not (active_only and a.acknowledged)]

    # ------------------------------------------------------------------
    # Safety instrumented loops
    # ------------------------------------------------------------------
    def add_safety_loop(
        self, config: SafetyLoopConfig | Mapping[str, Any], *, now: float | None = None
    ) -> SafetyLoop:
        cfg = _validate(SafetyLoopConfig, config, "safety loop")
        if cfg.id in self._safety_loops:
            raise AlreadyRegisteredError("Safety loop", cfg.id)
        loop = SafetyLoop(
            id=cfg.id,
            name=cfg.name,
            sil=cfg.sil,
            test_interval_s=cfg.test_interval_s,
            last_test=self._clock() if now is None else now,
        )
        self._safety_loops[cfg.id] = loop
        return loop

    def check_safety_loops(self, *, now: float | None = None) -> list[str]:
        """Flag loops whose proof test is overdue; returns newly flagged ids."""

        current = self._clock() if now is None else now
        due: list[str] = []
        for loop in self._safety_loops.values():
            if loop.status != SafetyLoopStatus.normal:
                continue
            if current - loop.last_test >= loop.test_interval_s:
                loop.status = SafetyLoopStatus.test_due
                due.append(loop.id)
                logger.warning("Safety loop proof test due", extra={"safety_loop": loop.id})
                self._bus.publish(
                    EventName.safety_loop_test_due,
                    {"loop_id": loop.id, "sil": loop.sil},
                    source="safety",
                )
        return due

    def record_safety_loop_test(
        self, loop_id: str, *, passed: bool, now: float | None = None
    ) -> SafetyLoop:
        loop = self._safety_loops.get(loop_id)
        if loop is None:
            raise NotFoundError("Safety loop", loop_id)
        loop.last_test = self._clock() if now is None else now
        loop.test_count += 1
        loop.status = SafetyLoopStatus.normal if passed else SafetyLoopStatus.faulted
        if not passed:
            self.raise_alarm(
                {
                    "message": f"Safety loop {loop_id} failed proof test",
                    "priority": AlarmPriority.high,
                    "category": AlarmCategory.safety,
                    "source": loop_id,
                }
            )
        return loop

    # ------------------------------------------------------------------
    # Work permits
    # ------------------------------------------------------------------
    def issue_permit(self, config: WorkPermitConfig | Mapping[str, Any]) -> WorkPermit:
        cfg = _validate(WorkPermitConfig, config, "work permit")
        if cfg.permit_id in self._permits:
            raise AlreadyRegisteredError("Permit", cfg.permit_id)
        permit = WorkPermit(
            permit_id=cfg.permit_id,
            type=cfg.type,
            requester=cfg.requester,
            authorizer=cfg.authorizer,
            valid_from=_as_utc(cfg.valid_from),
            valid_to=_as_utc(cfg.valid_to),
            description=cfg.description,
            location=cfg.location,
            conditions=list(cfg.conditions),
        )
        self._permits[permit.permit_id] = permit
        logger.info("Work permit issued", extra={"permit": permit.permit_id})
        self._bus.publish(
            EventName.permit_issued,
            {"permit_id": permit.permit_id, "type": str(permit.type)},
            source="safety",
        )
        return permit

    def check_work_permits(self, *, now: datetime | None = None) -> list[str]:
        """Expire active permits past ``valid_to``; expired permits are kept."""

        current = _as_utc(now) if now is not None else self._wall_clock()
        expired: list[str] = []
        for permit in self._permits.values():
            if permit.status == PermitStatus.active and current > permit.valid_to:
                permit.status = PermitStatus.expired
                expired.append(permit.permit_id)
                logger.info("Work permit expired", extra={"permit": permit.permit_id})
                self._bus.publish(
                    EventName.permit_expired, {"permit_id": permit.permit_id}, source="safety"
                )
        return expired

    def get_permit(self, permit_id: str) -> WorkPermit | None:
        return self._permits.get(permit_id)

    # ------------------------------------------------------------------
    # Lookups, defaults and status
    # ------------------------------------------------------------------
    def get_interlock(self, interlock_id: str) -> Interlock | None:
        return self._interlocks.get(interlock_id)

    def get_emergency_stop(self, estop_id: str) -> EmergencyStop | None:
        return self._estops.get(estop_id)

    def get_safety_loop(self, loop_id: str) -> SafetyLoop | None:
        return self._safety_loops.get(loop_id)

    def install_defaults(self, *, now: float | None = None) -> None:
        for interlock in DEFAULT_INTERLOCKS:
            if interlock["id"] not in self._interlocks:
                self.add_interlock(interlock)
        for estop in DEFAULT_EMERGENCY_STOPS:
            if estop["id"] not in self._estops:
                self.add_emergency_stop(estop)
        for safety_loop in DEFAULT_SAFETY_LOOPS:
            if safety_loop["id"] not in self._safety_loops:
                self.add_safety_loop(safety_loop, now=now)

    def get_status(self) -> dict[str, Any]:
        return {
            "status": str(self.status),
            "emergency_mode": self.emergency_mode,
            "interlocks": [i.as_dict() for i in self._interlocks.values()],
            "emergency_stops": [e.as_dict() for e in self._estops.values()],
            "active_alarms": sum(1 for a in self._alarms.values() if not a.acknowledged),
            "total_alarms": len(self._alarms),
            "safety_loops": {
                loop.id: str(loop.status) for loop in self._safety_loops.values()
            },
            "permits": {p.permit_id: str(p.status) for p in self._permits.values()},
        }

    def shutdown(self) -> None:
        self._unsubscribe()
        self._interlocks.clear()
        self._estops.clear()
        self._safety_loops.clear()
        self._alarms.clear()
        self._permits.clear()
        logger.info("Safety manager shut down")


DEFAULT_INTERLOCKS: tuple[dict[str, Any], ...] = (
    {
        "id": "EMERGENCY_STOP",
        "name": "Emergency Stop Interlock",
        "type": "CRITICAL",
        "condition": "EMERGENCY_BUTTON_PRESSED",
        "action": "STOP_ALL_PROCESSES",
        "priority": "CRITICAL",
    },
    {
        "id": "HIGH_PRESSURE",
        "name": "High Pressure Interlock",
        "type": "CRITICAL",
        "condition": "PRESSURE > HIGH_LIMIT",
        "action": "VENT_TO_ATMOSPHERE",
        "priority": "CRITICAL",
    },
    {
        "id": "LOW_LEVEL",
        "name": "Low Level Interlock",
        "type": "WARNING",
        "condition": "LEVEL < LOW_LIMIT",
        "action": "STOP_PUMP",
        "priority": "HIGH",
    },
    {
        "id": "HIGH_TEMPERATURE",
        "name": "High Temperature Interlock",
        "type": "CRITICAL",
        "condition": "TEMPERATURE > HIGH_LIMIT",
        "action": "EMERGENCY_COOLING",
        "priority": "CRITICAL",
    },
)

DEFAULT_EMERGENCY_STOPS: tuple[dict[str, Any], ...] = (
    {
        "id": "MASTER_ESTOP",
        "name": "Master Emergency Stop",
        "location": "CONTROL_ROOM",
        "kind": "HARDWIRED",
        "scope": "GLOBAL",
    },
    {
        "id": "FIELD_ESTOP_01",
        "name": "Field Emergency Stop 01",
        "location": "PROCESS_AREA_1",
        "kind": "HARDWIRED",
        "scope": "LOCAL",
    },
    {
        "id": "SOFTWARE_ESTOP",
        "name": "Software Emergency Stop",
        "location": "HMI",
        "kind": "SOFTWARE",
        "scope": "GLOBAL",
    },
)

DEFAULT_SAFETY_LOOPS: tuple[dict[str, Any], ...] = (
    {
        "id": "PRESSURE_SAFETY",
        "name": "Pressure Safety Loop",
        "sil": "SIL3",
        "test_interval_s": 24 * 3600.0,
    },
    {
        "id": "FIRE_GAS_DETECTION",
        "name": "Fire and Gas Detection",
        "sil": "SIL2",
        "test_interval_s": 12 * 3600.0,
    },
)


__all__ = [
    "DEFAULT_EMERGENCY_STOPS",
    "DEFAULT_INTERLOCKS",
    "DEFAULT_SAFETY_LOOPS",
    "Alarm",
    "EmergencyStop",
    "Interlock",
    "SafetyLoop",
    "SafetyManager",
    "WorkPermit",
]
