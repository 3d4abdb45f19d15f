"""Control loop registry and per-loop cadence scheduler."""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, NamedTuple

from pydantic import BaseModel, ValidationError

from controlnet.core.controllers import ControllerInput, ControllerState, run_controller
from controlnet.core.errors import (
    AlreadyRegisteredError,
    ConfigurationError,
    ExecutionError,
    NotFoundError,
    config_error_from,
)
from controlnet.core.events import Clock, Event, EventBus
from controlnet.core.node_registry import NetworkMetrics
from controlnet.models.enums import ControllerType, EventName, LoopMode, LoopState, Priority
from controlnet.models.schemas import PARAMETER_MODELS, LoopConfig, LoopUpdate, TuningProfile

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LoopLimits:
    output_min: float = 0.0
    output_max: float = 1.0
    rate_of_change_limit: float | None = None

    def apply(self, previous: float, proposed: float, dt: float) -> float:
        """Rate-of-change limit first, then clamp."""

        value = proposed
        if self.rate_of_change_limit is not None and dt > 0:
            max_change = self.rate_of_change_limit * dt
            value = previous + max(-max_change, min(max_change, value - previous))
        return self._clamp(self.output_min, self.output_max, value)

    @staticmethod
    def _clamp(low: float, high: float, value: float) -> float:
        if value < low:
            return low
        if value > high:
            return high
        return value


class LoopSample(NamedTuple):
    error: float
    output: float
    process_variable: float
    timestamp: float


class LoopHistory:
    """Bounded ring buffer of loop samples."""

    def __init__(self, maxlen: int = 100) -> None:
        self._samples: deque[LoopSample] = deque(maxlen=maxlen)

    @property
    def maxlen(self) -> int:
        return self._samples.maxlen or 0

    def append(self, sample: LoopSample) -> None:
        self._samples.append(sample)

    def last(self) -> LoopSample | None:
        return self._samples[-1] if self._samples else None

    def errors(self) -> list[float]:
        return [s.error for s in self._samples]

    def outputs(self) -> list[float]:
        return [s.output for s in self._samples]

    def process_variables(self) -> list[float]:
        return [s.process_variable for s in self._samples]

    def clear(self) -> None:
        self._samples.clear()

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[LoopSample]:
        return iter(self._samples)


@dataclass(slots=True)
class LoopMetrics:
    execution_count: int = 0
    total_error: float = 0.0
    average_error: float = 0.0
    max_error: float = 0.0
    error_count: int = 0

    def record(self, error: float) -> None:
        magnitude = abs(error)
        self.execution_count += 1
        self.total_error += magnitude
        self.average_error = self.total_error / self.execution_count
        self.max_error = max(self.max_error, magnitude)


class LoopHandle(NamedTuple):
    loop_id: str
    generation: int


@dataclass(slots=True)
class LoopGroup:
    name: str
    execution_rate_s: float
    priority: Priority = Priority.normal
    loop_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ControlLoop:
    """A feedback controller instance and its runtime state."""

    id: str
    name: str
    type: ControllerType
    parameters: BaseModel
    limits: LoopLimits
    execution_rate_s: float
    generation: int
    setpoint: float = 0.0
    process_variable: float = 0.0
    output: float = 0.0
    mode: LoopMode = LoopMode.auto
    enabled: bool = True
    state: LoopState = LoopState.registered
    description: str = ""
    group: str | None = None
    cascade_source: str | None = None
    tuning_profile: str | None = None
    last_execution: float | None = None
    last_fault: str | None = None
    controller_state: ControllerState = field(default_factory=ControllerState)
    history: LoopHistory = field(default_factory=LoopHistory)
    metrics: LoopMetrics = field(default_factory=LoopMetrics)

    @property
    def handle(self) -> LoopHandle:
        return LoopHandle(self.id, self.generation)

    @property
    def faulted(self) -> bool:
        return self.last_fault is not None and not self.enabled

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": str(self.type),
            "state": str(self.state),
            "mode": str(self.mode),
            "enabled": self.enabled,
            "setpoint": self.setpoint,
            "process_variable": self.process_variable,
            "output": self.output,
            "execution_rate_s": self.execution_rate_s,
            "group": self.group,
            "cascade_source": self.cascade_source,
            "tuning_profile": self.tuning_profile,
            "last_fault": self.last_fault,
            "limits": {
                "output_min": self.limits.output_min,
                "output_max": self.limits.output_max,
                "rate_of_change_limit": self.limits.rate_of_change_limit,
            },
            "metrics": {
                "execution_count": self.metrics.execution_count,
                "total_error": self.metrics.total_error,
                "average_error": self.metrics.average_error,
                "max_error": self.metrics.max_error,
                "error_count": self.metrics.error_count,
            },
        }


class LoopScheduler:
    """Own every control loop and execute each on its own cadence.

    ``tick`` is called at the base rate; a loop runs only when its own
    ``execution_rate_s`` has elapsed since its last execution. A loop whose
    algorithm raises (or returns a non-finite value) is disabled and the tick
    carries on with the remaining loops.
    """

    def __init__(
        self,
        *,
        bus: EventBus,
        metrics: NetworkMetrics,
        clock: Clock | None = None,
        default_execution_rate_s: float = 0.1,
        history_length: int = 100,
    ) -> None:
        self._bus = bus
        self._metrics = metrics
        self._clock = clock or time.monotonic
        self.default_execution_rate_s = default_execution_rate_s
        self.history_length = history_length
        self._loops: dict[str, ControlLoop] = {}
        self._generations: dict[str, int] = {}
        self._profiles: dict[str, TuningProfile] = {}
        self._groups: dict[str, LoopGroup] = {}
        self._pending_setpoints: dict[str, float] = {}
        self._unsubscribe = bus.subscribe(EventName.setpoint_update, self._on_setpoint_update)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def register_loop(self, loop_id: str, config: LoopConfig | Mapping[str, Any]) -> ControlLoop:
        if loop_id in self._loops:
            raise AlreadyRegisteredError("Loop", loop_id)
        try:
            cfg = config if isinstance(config, LoopConfig) else LoopConfig.model_validate(config)
        except ValidationError as exc:
            raise config_error_from(exc, context=f"loop {loop_id}") from exc

        if cfg.cascade_source is not None and cfg.cascade_source not in self._loops:
            raise NotFoundError("Loop", cfg.cascade_source)

        if cfg.tuning_profile is not None:
            profile = self._require_profile(cfg.tuning_profile)
            if profile.type != cfg.type:
                raise ConfigurationError(
                    f"Profile {profile.id} is for {profile.type}, loop {loop_id} is {cfg.type}"
                )
            merged = {**profile.parameters, **(cfg.parameters or {})}
            parameters = self._build_parameters(cfg.type, merged, loop_id)
        else:
            parameters = self._build_parameters(cfg.type, cfg.parameters or {}, loop_id)

        group = self._groups.get(cfg.group) if cfg.group else None
        if cfg.execution_rate_s is not None:
            rate = cfg.execution_rate_s
        elif group is not None:
            rate = group.execution_rate_s
        else:
            rate = self.default_execution_rate_s

        generation = self._generations.get(loop_id, 0) + 1
        self._generations[loop_id] = generation
        loop = ControlLoop(
            id=loop_id,
            name=cfg.name or loop_id,
            description=cfg.description,
            type=cfg.type,
            parameters=parameters,
            limits=LoopLimits(cfg.output_min, cfg.output_max, cfg.rate_of_change_limit),
            execution_rate_s=rate,
            generation=generation,
            setpoint=cfg.setpoint,
            process_variable=cfg.process_variable,
            output=cfg.output,
            mode=cfg.mode,
            enabled=cfg.enabled,
            state=LoopState.active if cfg.enabled else LoopState.registered,
            group=cfg.group,
            cascade_source=cfg.cascade_source,
            tuning_profile=cfg.tuning_profile,
            history=LoopHistory(self.history_length),
        )
        self._loops[loop_id] = loop
        if group is not None:
            group.loop_ids.append(loop_id)

        logger.info("Control loop registered", extra={"loop": loop_id, "type": str(cfg.type)})
        self._bus.publish(EventName.loop_registered, loop.as_dict(), source="loop_scheduler")
        return loop

    def remove_loop(self, loop_id: str) -> bool:
        loop = self._loops.pop(loop_id, None)
        if loop is None:
            return False
        loop.enabled = False
        loop.state = LoopState.removed
        self._pending_setpoints.pop(loop_id, None)
        if loop.group and loop.group in self._groups:
            ids = self._groups[loop.group].loop_ids
            if loop_id in ids:
                ids.remove(loop_id)
        logger.info("Control loop removed", extra={"loop": loop_id})
        return True

    def update_loop(self, loop_id: str, updates: LoopUpdate | Mapping[str, Any]) -> ControlLoop:
        loop = self.require(loop_id)
        try:
            change = (
                updates if isinstance(updates, LoopUpdate) else LoopUpdate.model_validate(updates)
            )
        except ValidationError as exc:
            raise config_error_from(exc, context=f"loop {loop_id}") from exc
        fields = change.model_fields_set

        if "cascade_source" in fields and change.cascade_source is not None:
            if change.cascade_source == loop_id:
                raise ConfigurationError(f"Loop {loop_id} cannot cascade from itself")
            if change.cascade_source not in self._loops:
                raise NotFoundError("Loop", change.cascade_source)
        if change.mode == LoopMode.cascade and not (change.cascade_source or loop.cascade_source):
            raise ConfigurationError(f"CASCADE mode for {loop_id} requires cascade_source")
        if change.parameters is not None:
            merged = {**loop.parameters.model_dump(), **change.parameters}
            loop.parameters = self._build_parameters(loop.type, merged, loop_id)

        if "cascade_source" in fields:
            loop.cascade_source = change.cascade_source
        if change.setpoint is not None:
            loop.setpoint = change.setpoint
        if change.process_variable is not None:
            loop.process_variable = change.process_variable
        if change.mode is not None:
            loop.mode = change.mode
        if change.output is not None:
            loop.output = loop.limits.apply(loop.output, change.output, 0.0)
        if change.execution_rate_s is not None:
            loop.execution_rate_s = change.execution_rate_s
        if change.enabled is True:
            self.enable_loop(loop_id)
        elif change.enabled is False:
            self.disable_loop(loop_id, reason="update")

        self._bus.publish(
            EventName.loop_updated,
            {"loop_id": loop_id, "fields": sorted(fields)},
            source="loop_scheduler",
        )
        return loop

    def tune_loop(self, loop_id: str, profile_id: str) -> ControlLoop:
        loop = self.require(loop_id)
        profile = self._require_profile(profile_id)
        if profile.type != loop.type:
            raise ConfigurationError(
                f"Profile {profile_id} is for {profile.type}, loop {loop_id} is {loop.type}"
            )
        loop.parameters = self._build_parameters(loop.type, profile.parameters, loop_id)
        loop.tuning_profile = profile_id
        loop.controller_state.reset()

        logger.info("Control loop tuned", extra={"loop": loop_id, "profile": profile_id})
        self._bus.publish(
            EventName.loop_tuned,
            {"loop_id": loop_id, "profile_id": profile_id},
            source="loop_scheduler",
        )
        return loop

    def enable_loop(self, loop_id: str) -> ControlLoop:
        loop = self.require(loop_id)
        loop.enabled = True
        loop.state = LoopState.active
        loop.last_fault = None
        return loop

    def disable_loop(self, loop_id: str, *, reason: str = "operator") -> ControlLoop:
        loop = self.require(loop_id)
        if loop.enabled:
            loop.enabled = False
            loop.state = LoopState.disabled
            logger.info("Control loop disabled", extra={"loop": loop_id, "reason": reason})
        return loop

    def update_setpoint(self, loop_id: str, setpoint: float) -> ControlLoop:
        loop = self.require(loop_id)
        loop.setpoint = setpoint
        return loop

    def update_process_variable(self, loop_id: str, value: float) -> ControlLoop:
        loop = self.require(loop_id)
        loop.process_variable = value
        return loop

    def stop_all(self, reason: str) -> int:
        """Disable every loop and zero its output; returns how many were running."""

        stopped = 0
        for loop in self._loops.values():
            if loop.enabled:
                stopped += 1
            loop.enabled = False
            loop.output = 0.0
            loop.state = LoopState.disabled
        self._pending_setpoints.clear()
        logger.warning("All control loops stopped", extra={"reason": reason, "count": stopped})
        return stopped

    # ------------------------------------------------------------------
    # Profiles and groups
    # ------------------------------------------------------------------
    def add_tuning_profile(self, profile: TuningProfile | Mapping[str, Any]) -> TuningProfile:
        try:
            model = (
                profile
                if isinstance(profile, TuningProfile)
                else TuningProfile.model_validate(profile)
            )
        except ValidationError as exc:
            raise config_error_from(exc, context="tuning profile") from exc
        # Parameters must validate for the profile's controller type.
        self._build_parameters(model.type, model.parameters, model.id)
        self._profiles[model.id] = model
        return model

    def add_loop_group(
        self, name: str, execution_rate_s: float, *, priority: Priority = Priority.normal
    ) -> LoopGroup:
        group = self._groups.get(name)
        if group is None:
            group = LoopGroup(name=name, execution_rate_s=execution_rate_s, priority=priority)
            self._groups[name] = group
        return group

    def profiles(self) -> dict[str, TuningProfile]:
        return dict(self._profiles)

    def groups(self) -> dict[str, LoopGroup]:
        return dict(self._groups)

    def install_defaults(self) -> None:
        for profile in DEFAULT_TUNING_PROFILES:
            self.add_tuning_profile(profile)
        for name, rate, priority in DEFAULT_LOOP_GROUPS:
            self.add_loop_group(name, rate, priority=priority)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get(self, loop_id: str) -> ControlLoop | None:
        return self._loops.get(loop_id)

    def require(self, loop_id: str) -> ControlLoop:
        loop = self._loops.get(loop_id)
        if loop is None:
            raise NotFoundError("Loop", loop_id)
        return loop

    def resolve(self, handle: LoopHandle) -> ControlLoop | None:
        loop = self._loops.get(handle.loop_id)
        if loop is None or loop.generation != handle.generation:
            return None
        return loop

    def loops(self) -> list[ControlLoop]:
        return list(self._loops.values())

    def faulted_loops(self) -> list[str]:
        return [loop.id for loop in self._loops.values() if loop.faulted]

    def active_count(self) -> int:
        return sum(1 for loop in self._loops.values() if loop.enabled)

    def __len__(self) -> int:
        return len(self._loops)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    def tick(self, *, now: float | None = None) -> list[str]:
        """Run every enabled loop that is due; return the ids that executed."""

        current = self._clock() if now is None else now
        self._apply_pending_setpoints()
        executed: list[str] = []
        for loop in list(self._loops.values()):
            if not loop.enabled:
                continue
            last = loop.last_execution
            if last is not None and current - last < loop.execution_rate_s:
                continue
            if self._execute(loop, current):
                executed.append(loop.id)
        return executed

    def _execute(self, loop: ControlLoop, now: float) -> bool:
        dt = loop.execution_rate_s if loop.last_execution is None else now - loop.last_execution
        error = loop.setpoint - loop.process_variable
        try:
            if loop.mode == LoopMode.manual:
                proposed = loop.output
            else:
                proposed = run_controller(
                    loop.type,
                    loop.parameters,
                    loop.controller_state,
                    ControllerInput(
                        setpoint=loop.setpoint,
                        process_variable=loop.process_variable,
                        output=loop.output,
                        dt=dt,
                    ),
                )
            if not math.isfinite(proposed):
                raise ExecutionError(f"Controller produced non-finite output {proposed!r}")
        except Exception as exc:
            self._fault(loop, exc)
            return False

        output = loop.limits.apply(loop.output, proposed, dt)
        loop.output = output
        loop.last_execution = now
        loop.history.append(LoopSample(error, output, loop.process_variable, now))
        loop.metrics.record(error)

        for dependent in self._loops.values():
            if dependent.cascade_source == loop.id and dependent.mode == LoopMode.cascade:
                self._pending_setpoints[dependent.id] = output

        self._bus.publish(
            EventName.loop_output,
            {
                "loop_id": loop.id,
                "output": output,
                "error": error,
                "setpoint": loop.setpoint,
                "process_variable": loop.process_variable,
                "timestamp": now,
            },
            source="loop_scheduler",
        )
        return True

    def _fault(self, loop: ControlLoop, exc: Exception) -> None:
        loop.enabled = False
        loop.state = LoopState.disabled
        loop.last_fault = f"{type(exc).__name__}: {exc}"
        loop.metrics.error_count += 1
        self._metrics.errors_encountered += 1
        logger.exception("Control loop execution failed", extra={"loop": loop.id})
        self._bus.publish(
            EventName.loop_faulted,
            {"loop_id": loop.id, "error": loop.last_fault},
            source="loop_scheduler",
        )

    def _apply_pending_setpoints(self) -> None:
        pending, self._pending_setpoints = self._pending_setpoints, {}
        for loop_id, setpoint in pending.items():
            loop = self._loops.get(loop_id)
            if loop is not None:
                loop.setpoint = setpoint

    def _on_setpoint_update(self, event: Event) -> None:
        loop_id = event.payload.get("loop_id")
        loop = self._loops.get(str(loop_id))
        if loop is None:
            logger.warning("Setpoint update for unknown loop", extra={"loop": loop_id})
            return
        loop.setpoint = float(event.payload["setpoint"])

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require_profile(self, profile_id: str) -> TuningProfile:
        profile = self._profiles.get(profile_id)
        if profile is None:
            raise NotFoundError("Tuning profile", profile_id)
        return profile

    @staticmethod
    def _build_parameters(kind: ControllerType, raw: Mapping[str, Any], loop_id: str) -> BaseModel:
        try:
            return PARAMETER_MODELS[kind].model_validate(dict(raw))
        except ValidationError as exc:
            raise config_error_from(exc, context=f"{kind} parameters for {loop_id}") from exc

    def get_status(self) -> dict[str, Any]:
        return {
            "total_loops": len(self._loops),
            "active_loops": self.active_count(),
            "faulted_loops": self.faulted_loops(),
            "profiles": sorted(self._profiles),
            "groups": {name: list(g.loop_ids) for name, g in self._groups.items()},
            "loops": [loop.as_dict() for loop in self._loops.values()],
        }

    def shutdown(self) -> None:
        self._unsubscribe()
        self.stop_all("shutdown")
        self._loops.clear()
        self._pending_setpoints.clear()
        logger.info("Loop scheduler shut down")


_LEVEL_SETS = {"low": (0.0, 0.0, 0.3), "medium": (0.2, 0.5, 0.8), "high": (0.7, 1.0, 1.0)}

DEFAULT_TUNING_PROFILES: tuple[dict[str, Any], ...] = (
    {
        "id": "TRIGGER_AGGRESSIVE",
        "name": "Aggressive Trigger Control",
        "type": "PID",
        "parameters": {"kp": 2.0, "ki": 0.5, "kd": 0.1},
    },
    {
        "id": "TRIGGER_CONSERVATIVE",
        "name": "Conservative Trigger Control",
        "type": "PID",
        "parameters": {"kp": 0.8, "ki": 0.1, "kd": 0.05},
    },
    {
        "id": "AUDIO_SMOOTH",
        "name": "Smooth Audio Control",
        "type": "PID",
        "parameters": {"kp": 1.2, "ki": 0.3, "kd": 0.02},
    },
    {
        "id": "ENGAGEMENT_FUZZY",
        "name": "User Engagement Fuzzy Control",
        "type": "FUZZY",
        "parameters": {
            "rules": [
                "IF engagement IS low THEN output IS high",
                "IF engagement IS medium THEN output IS medium",
                "IF engagement IS high THEN output IS low",
            ],
            "membership_functions": {"engagement": dict(_LEVEL_SETS), "output": dict(_LEVEL_SETS)},
        },
    },
)

DEFAULT_LOOP_GROUPS: tuple[tuple[str, float, Priority], ...] = (
    ("TRIGGER_SYSTEM", 0.05, Priority.high),
    ("AUDIO_SYSTEM", 0.1, Priority.normal),
    ("USER_SYSTEM", 0.5, Priority.low),
)


__all__ = [
    "DEFAULT_LOOP_GROUPS",
    "DEFAULT_TUNING_PROFILES",
    "ControlLoop",
    "LoopGroup",
    "LoopHandle",
    "LoopHistory",
    "LoopLimits",
    "LoopMetrics",
    "LoopSample",
    "LoopScheduler",
]
