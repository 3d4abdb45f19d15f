"""Pydantic schemas for control network configuration payloads."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Annotated, Any, Literal, NamedTuple

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from .enums import (
    AlarmCategory,
    AlarmPriority,
    CompareOperator,
    CompositeOperator,
    ControllerType,
    EstopKind,
    EstopScope,
    InterlockAction,
    InterlockType,
    LoopMode,
    NetworkHealth,
    NodeCountCheck,
    PermitType,
    Priority,
    RuleToggle,
    ScheduleKind,
    SystemCommand,
)

# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


class NodeMetadata(BaseModel):
    """Free-form node metadata; recognised keys are validated."""

    model_config = ConfigDict(extra="allow")

    priority: Priority | None = None
    weight: float | None = Field(default=None, gt=0)
    capabilities: set[str] = Field(default_factory=set)
    session_id: str | None = None


# ---------------------------------------------------------------------------
# Automation conditions
# ---------------------------------------------------------------------------


class SignalTypeCondition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["SIGNAL_TYPE"] = "SIGNAL_TYPE"
    expected_type: str


class ValueThresholdCondition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["VALUE_THRESHOLD"] = "VALUE_THRESHOLD"
    value_path: str = Field(min_length=1)
    operator: CompareOperator = CompareOperator.greater_than
    threshold: Any = None


class TimeScheduleCondition(BaseModel):
    """Time based trigger.

    ``PERIODIC`` fires while the monotonic clock is inside the first
    ``window_s`` of every ``interval_s`` period. ``DAILY`` fires within one
    minute of ``time_of_day_s`` (seconds after UTC midnight). ``ONCE`` fires
    during the first second after ``target_time``.
    """

    model_config = ConfigDict(extra="forbid")

    type: Literal["TIME_SCHEDULE"] = "TIME_SCHEDULE"
    schedule: ScheduleKind
    interval_s: float | None = Field(default=None, gt=0)
    window_s: float = Field(default=0.1, gt=0)
    time_of_day_s: int | None = Field(default=None, ge=0, lt=86400)
    target_time: datetime | None = None

    @model_validator(mode="after")
    def _check_schedule_fields(self) -> TimeScheduleCondition:
        if self.schedule == ScheduleKind.periodic and self.interval_s is None:
            raise ValueError("PERIODIC schedule requires interval_s")
        if self.schedule == ScheduleKind.daily and self.time_of_day_s is None:
            raise ValueError("DAILY schedule requires time_of_day_s")
        if self.schedule == ScheduleKind.once and self.target_time is None:
            raise ValueError("ONCE schedule requires target_time")
        return self


class NodeCountCondition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["NODE_COUNT"] = "NODE_COUNT"
    check: NodeCountCheck
    value: int = Field(default=0, ge=0)


class SystemHealthCondition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["SYSTEM_HEALTH"] = "SYSTEM_HEALTH"
    health_level: NetworkHealth


class CompositeCondition(BaseModel):
    """Logical combination of sub-conditions.

    ``NOT`` negates the first sub-condition only; any others are ignored.
    """

    model_config = ConfigDict(extra="forbid")

    type: Literal["COMPOSITE"] = "COMPOSITE"
    operator: CompositeOperator
    conditions: list[Condition] = Field(min_length=1)


Condition = Annotated[
    SignalTypeCondition
    | ValueThresholdCondition
    | TimeScheduleCondition
    | NodeCountCondition
    | SystemHealthCondition
    | CompositeCondition,
    Field(discriminator="type"),
]

CompositeCondition.model_rebuild()

# ---------------------------------------------------------------------------
# Automation actions
# ---------------------------------------------------------------------------


class SendSignalAction(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["SEND_SIGNAL"] = "SEND_SIGNAL"
    signal_type: str
    target_nodes: str | list[str] = "ALL_ACTIVE"
    data: dict[str, Any] = Field(default_factory=dict)


class UpdateSetpointAction(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["UPDATE_SETPOINT"] = "UPDATE_SETPOINT"
    loop_id: str
    setpoint: float


class RaiseAlarmAction(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["RAISE_ALARM"] = "RAISE_ALARM"
    message: str = "Automated alarm triggered"
    severity: AlarmPriority = AlarmPriority.medium
    category: AlarmCategory = AlarmCategory.process


class LogEventAction(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["LOG_EVENT"] = "LOG_EVENT"
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    message: str


class RunScriptAction(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["RUN_SCRIPT"] = "RUN_SCRIPT"
    script_id: str
    script_data: dict[str, Any] = Field(default_factory=dict)


class ToggleRuleAction(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["TOGGLE_RULE"] = "TOGGLE_RULE"
    rule_id: str
    toggle: RuleToggle


class SystemControlAction(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["SYSTEM_CONTROL"] = "SYSTEM_CONTROL"
    command: SystemCommand
    reason: str = "Automated safety response"


Action = Annotated[
    SendSignalAction
    | UpdateSetpointAction
    | RaiseAlarmAction
    | LogEventAction
    | RunScriptAction
    | ToggleRuleAction
    | SystemControlAction,
    Field(discriminator="type"),
]

CONDITION_ADAPTER: TypeAdapter[Condition] = TypeAdapter(Condition)
ACTION_ADAPTER: TypeAdapter[Action] = TypeAdapter(Action)


class RuleConfig(BaseModel):
    """Registration payload for an automation rule.

    ``None`` timing fields fall back to the configured defaults.
    ``evaluate_on_tick`` defaults to true when the condition tree contains a
    time schedule.
    """

    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    description: str = ""
    group: str = "USER_INTERACTION"
    priority: Priority = Priority.normal
    condition: Condition
    action: Action
    enabled: bool = True
    cooldown_s: float | None = Field(default=None, ge=0)
    evaluation_interval_s: float | None = Field(default=None, ge=0)
    evaluate_on_tick: bool | None = None


# ---------------------------------------------------------------------------
# Controller parameters
# ---------------------------------------------------------------------------

FUZZY_RULE_PATTERN = re.compile(
    r"^\s*IF\s+(?P<input>\w+)\s+IS\s+(?P<label>\w+)"
    r"\s+THEN\s+(?P<output>\w+)\s+IS\s+(?P<result>\w+)\s*$",
    re.IGNORECASE,
)

Triangle = tuple[float, float, float]


class FuzzyRule(NamedTuple):
    input: str
    label: str
    output: str
    result: str


def parse_fuzzy_rule(rule: str) -> FuzzyRule:
    match = FUZZY_RULE_PATTERN.match(rule)
    if not match:
        raise ValueError(f"Unparseable fuzzy rule: {rule!r}")
    return FuzzyRule(
        input=match["input"],
        label=match["label"],
        output=match["output"],
        result=match["result"],
    )


class PIDParameters(BaseModel):
    kp: float = 1.0
    ki: float = 0.1
    kd: float = 0.05


def _default_fuzzy_sets() -> dict[str, dict[str, Triangle]]:
    signed: dict[str, Triangle] = {
        "negative": (-1.0, -1.0, 0.0),
        "zero": (-0.1, 0.0, 0.1),
        "positive": (0.0, 1.0, 1.0),
    }
    return {"error": dict(signed), "output": dict(signed)}


class FuzzyParameters(BaseModel):
    rules: list[str] = Field(default_factory=lambda: ["IF error IS zero THEN output IS zero"])
    membership_functions: dict[str, dict[str, Triangle]] = Field(
        default_factory=_default_fuzzy_sets
    )
    defuzzification_method: Literal["CENTROID"] = "CENTROID"

    @field_validator("membership_functions")
    @classmethod
    def _check_triangles(
        cls, v: dict[str, dict[str, Triangle]]
    ) -> dict[str, dict[str, Triangle]]:
        for variable, labels in v.items():
            for label, (a, b, c) in labels.items():
                if not a <= b <= c:
                    raise ValueError(f"Membership {variable}.{label} must satisfy a <= b <= c")
        return v

    @model_validator(mode="after")
    def _check_rules(self) -> FuzzyParameters:
        for raw in self.rules:
            rule = parse_fuzzy_rule(raw)
            if rule.input not in self.membership_functions:
                raise ValueError(f"Fuzzy rule references unknown input {rule.input!r}")
            outputs = self.membership_functions.get(rule.output)
            if outputs is None or rule.result not in outputs:
                raise ValueError(
                    f"Fuzzy rule references unknown output {rule.output}.{rule.result}"
                )
        return self

    def parsed_rules(self) -> list[FuzzyRule]:
        return [parse_fuzzy_rule(rule) for rule in self.rules]


class OnOffParameters(BaseModel):
    threshold: float = 0.5
    hysteresis: float = Field(default=0.05, ge=0)


class MPCWeights(BaseModel):
    error: float = Field(default=10.0, ge=0)
    output: float = Field(default=1.0, ge=0)


class MPCParameters(BaseModel):
    horizon_length: int = Field(default=10, ge=1)
    constraints: dict[str, Any] = Field(default_factory=dict)
    weights: MPCWeights = Field(default_factory=MPCWeights)


ControllerParameters = PIDParameters | FuzzyParameters | OnOffParameters | MPCParameters

PARAMETER_MODELS: dict[ControllerType, type[BaseModel]] = {
    ControllerType.pid: PIDParameters,
    ControllerType.fuzzy: FuzzyParameters,
    ControllerType.on_off: OnOffParameters,
    ControllerType.mpc: MPCParameters,
}


# ---------------------------------------------------------------------------
# Control loops
# ---------------------------------------------------------------------------


class LoopConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    description: str = ""
    type: ControllerType = ControllerType.pid
    setpoint: float = 0.0
    process_variable: float = 0.0
    output: float = 0.0
    parameters: dict[str, Any] | None = None
    tuning_profile: str | None = None
    enabled: bool = True
    mode: LoopMode = LoopMode.auto
    execution_rate_s: float | None = Field(default=None, gt=0)
    output_min: float = 0.0
    output_max: float = 1.0
    rate_of_change_limit: float | None = Field(default=None, gt=0)
    group: str | None = None
    cascade_source: str | None = None

    @model_validator(mode="after")
    def _check_limits(self) -> LoopConfig:
        if self.output_min > self.output_max:
            raise ValueError("output_min must not exceed output_max")
        if self.mode == LoopMode.cascade and not self.cascade_source:
            raise ValueError("CASCADE mode requires cascade_source")
        return self


class LoopUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    setpoint: float | None = None
    process_variable: float | None = None
    enabled: bool | None = None
    parameters: dict[str, Any] | None = None
    mode: LoopMode | None = None
    output: float | None = None
    execution_rate_s: float | None = Field(default=None, gt=0)
    cascade_source: str | None = None


class TuningProfile(BaseModel):
    id: str
    name: str
    type: ControllerType
    parameters: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Safety system
# ---------------------------------------------------------------------------


class InterlockConfig(BaseModel):
    id: str
    name: str
    type: InterlockType = InterlockType.warning
    condition: str = ""
    action: InterlockAction
    enabled: bool = True
    priority: Priority = Priority.normal


class EmergencyStopConfig(BaseModel):
    id: str
    name: str
    location: str = ""
    kind: EstopKind = EstopKind.software
    scope: EstopScope = EstopScope.local


class SafetyLoopConfig(BaseModel):
    id: str
    name: str
    sil: Literal["SIL1", "SIL2", "SIL3", "SIL4"] = "SIL1"
    test_interval_s: float = Field(default=86400.0, gt=0)


class AlarmConfig(BaseModel):
    id: str | None = None
    message: str
    priority: AlarmPriority = AlarmPriority.medium
    category: AlarmCategory = AlarmCategory.process
    source: str | None = None
    value: Any = None
    limit: Any = None


class WorkPermitConfig(BaseModel):
    permit_id: str
    type: PermitType
    description: str = ""
    location: str = ""
    requester: str
    authorizer: str
    valid_from: datetime
    valid_to: datetime
    conditions: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_window(self) -> WorkPermitConfig:
        if self.valid_to <= self.valid_from:
            raise ValueError("valid_to must be after valid_from")
        return self


# ---------------------------------------------------------------------------
# Remote sites
# ---------------------------------------------------------------------------


class SiteConfig(BaseModel):
    site_id: str
    site_name: str
    location: str = ""
    protocol: str = "NATIVE"
    address: str
    port: int = Field(default=502, ge=1, le=65535)
    timeout_s: float = Field(default=5.0, gt=0)
    retries: int = Field(default=3, ge=0)
    encryption: bool = False
    controllers: list[str] = Field(default_factory=list)
    process_units: list[str] = Field(default_factory=list)
    redundancy: Literal["SINGLE", "DUAL", "TRIPLE"] = "SINGLE"


__all__ = [
    "ACTION_ADAPTER",
    "CONDITION_ADAPTER",
    "Action",
    "AlarmConfig",
    "CompositeCondition",
    "Condition",
    "ControllerParameters",
    "EmergencyStopConfig",
    "FuzzyParameters",
    "FuzzyRule",
    "InterlockConfig",
    "LogEventAction",
    "LoopConfig",
    "LoopUpdate",
    "MPCParameters",
    "MPCWeights",
    "NodeCountCondition",
    "NodeMetadata",
    "OnOffParameters",
    "PARAMETER_MODELS",
    "PIDParameters",
    "RaiseAlarmAction",
    "RuleConfig",
    "RunScriptAction",
    "SafetyLoopConfig",
    "SendSignalAction",
    "SignalTypeCondition",
    "SiteConfig",
    "SystemControlAction",
    "SystemHealthCondition",
    "TimeScheduleCondition",
    "ToggleRuleAction",
    "TuningProfile",
    "UpdateSetpointAction",
    "ValueThresholdCondition",
    "WorkPermitConfig",
    "parse_fuzzy_rule",
]
