"""Controller algorithms: PID, fuzzy, on-off and a one-step MPC search."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from controlnet.core.errors import UnknownTypeError
from controlnet.models.enums import ControllerType
from controlnet.models.schemas import (
    FuzzyParameters,
    MPCParameters,
    OnOffParameters,
    PIDParameters,
    Triangle,
)

logger = logging.getLogger(__name__)

CENTROID_STEPS = 100
MPC_CANDIDATES = tuple(i / 10 for i in range(11))


@dataclass(slots=True)
class ControllerState:
    """Mutable per-loop algorithm memory."""

    integral: float = 0.0
    last_error: float | None = None

    def reset(self) -> None:
        self.integral = 0.0
        self.last_error = None


@dataclass(slots=True)
class ControllerInput:
    setpoint: float
    process_variable: float
    output: float
    dt: float

    @property
    def error(self) -> float:
        return self.setpoint - self.process_variable


# ---------------------------------------------------------------------------
# PID
# ---------------------------------------------------------------------------


def execute_pid(params: PIDParameters, state: ControllerState, data: ControllerInput) -> float:
    """Positional PID; the integral is not clamped."""

    error = data.error
    state.integral += error * data.dt
    derivative = 0.0
    if state.last_error is not None and data.dt > 0:
        derivative = (error - state.last_error) / data.dt
    state.last_error = error
    return params.kp * error + params.ki * state.integral + params.kd * derivative


# ---------------------------------------------------------------------------
# On-off
# ---------------------------------------------------------------------------


def execute_on_off(params: OnOffParameters, data: ControllerInput) -> float:
    error = data.error
    if error > params.threshold + params.hysteresis:
        return 1.0
    if error < params.threshold - params.hysteresis:
        return 0.0
    return data.output


# ---------------------------------------------------------------------------
# Fuzzy
# ---------------------------------------------------------------------------


def calculate_membership(value: float, points: Triangle) -> float:
    """Triangular membership; a value at the peak is always fully a member."""

    a, b, c = points
    if value == b:
        return 1.0
    if value <= a or value >= c:
        return 0.0
    if value < b:
        return (value - a) / (b - a)
    return (c - value) / (c - b)


def fuzzify(value: float, sets: Mapping[str, Triangle]) -> dict[str, float]:
    return {label: calculate_membership(value, points) for label, points in sets.items()}


def defuzzify(strengths: Mapping[str, float], output_sets: Mapping[str, Triangle]) -> float:
    """Centroid over [0, 1] sampled at 0.01."""

    numerator = 0.0
    denominator = 0.0
    for step in range(CENTROID_STEPS + 1):
        x = step / CENTROID_STEPS
        mu = 0.0
        for label, points in output_sets.items():
            mu = max(mu, calculate_membership(x, points) * strengths.get(label, 0.0))
        numerator += x * mu
        denominator += mu
    return numerator / denominator if denominator > 0 else 0.0


def execute_fuzzy(params: FuzzyParameters, data: ControllerInput) -> float:
    error = data.error
    strengths: dict[str, float] = {}
    output_sets: dict[str, Triangle] = {}
    for rule in params.parsed_rules():
        degree = fuzzify(error, params.membership_functions[rule.input]).get(rule.label, 0.0)
        strengths[rule.result] = max(strengths.get(rule.result, 0.0), degree)
        output_sets.update(params.membership_functions[rule.output])
    return defuzzify(strengths, output_sets)


# ---------------------------------------------------------------------------
# MPC (one-step)
# ---------------------------------------------------------------------------


def mpc_cost(params: MPCParameters, data: ControllerInput, candidate: float) -> float:
    weights = params.weights
    return weights.error * data.error**2 + weights.output * (candidate - data.output) ** 2


def execute_mpc(params: MPCParameters, data: ControllerInput) -> float:
    """Pick the cheapest candidate in 0.0..1.0; ties keep the first candidate."""

    best = data.output
    best_cost = float("inf")
    for candidate in MPC_CANDIDATES:
        cost = mpc_cost(params, data, candidate)
        if cost < best_cost:
            best, best_cost = candidate, cost
    return best


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def run_controller(
    kind: ControllerType,
    params: PIDParameters | FuzzyParameters | OnOffParameters | MPCParameters,
    state: ControllerState,
    data: ControllerInput,
) -> float:
    if kind == ControllerType.pid and isinstance(params, PIDParameters):
        return execute_pid(params, state, data)
    if kind == ControllerType.fuzzy and isinstance(params, FuzzyParameters):
        return execute_fuzzy(params, data)
    if kind == ControllerType.on_off and isinstance(params, OnOffParameters):
        return execute_on_off(params, data)
    if kind == ControllerType.mpc and isinstance(params, MPCParameters):
        return execute_mpc(params, data)
    raise UnknownTypeError(f"No controller for {kind} with {type(params).__name__}")


__all__ = [
    "CENTROID_STEPS",
    "MPC_CANDIDATES",
    "ControllerInput",
    "ControllerState",
    "calculate_membership",
    "defuzzify",
    "execute_fuzzy",
    "execute_mpc",
    "execute_on_off",
    "execute_pid",
    "fuzzify",
    "mpc_cost",
    "run_controller",
]
