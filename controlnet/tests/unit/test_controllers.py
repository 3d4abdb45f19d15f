"""Unit tests for the controller algorithms."""

from __future__ import annotations

import pytest

from controlnet.core.controllers import (
    ControllerInput,
    ControllerState,
    calculate_membership,
    defuzzify,
    execute_fuzzy,
    execute_mpc,
    execute_on_off,
    execute_pid,
    mpc_cost,
    run_controller,
)
from controlnet.core.errors import UnknownTypeError
from controlnet.models.enums import ControllerType
from controlnet.models.schemas import (
    FuzzyParameters,
    MPCParameters,
    OnOffParameters,
    PIDParameters,
)


def _input(
    setpoint: float, process_variable: float = 0.0, *, output: float = 0.0, dt: float = 1.0
) -> ControllerInput:
    return ControllerInput(
        setpoint=setpoint, process_variable=process_variable, output=output, dt=dt
    )


# ===================================================================
# PID
# ===================================================================


class TestPID:
    def test_zero_error_gives_zero_output(self) -> None:
        out = execute_pid(PIDParameters(), ControllerState(), _input(0.5, 0.5, dt=0.1))
        assert out == 0.0

    def test_proportional_term(self) -> None:
        params = PIDParameters(kp=1.0, ki=0.0, kd=0.0)
        assert execute_pid(params, ControllerState(), _input(2.0)) == 2.0

    def test_integral_accumulates_without_clamp(self) -> None:
        params = PIDParameters(kp=1.0, ki=1.0, kd=0.0)
        state = ControllerState()
        outputs = [execute_pid(params, state, _input(1.0)) for _ in range(3)]
        assert outputs == [2.0, 3.0, 4.0]
        assert state.integral == 3.0

    def test_derivative_uses_previous_error(self) -> None:
        params = PIDParameters(kp=0.0, ki=0.0, kd=1.0)
        state = ControllerState()
        assert execute_pid(params, state, _input(1.0)) == 0.0
        assert execute_pid(params, state, _input(3.0, dt=0.5)) == pytest.approx(4.0)

    def test_reset_clears_memory(self) -> None:
        state = ControllerState(integral=5.0, last_error=1.0)
        state.reset()
        assert state.integral == 0.0
        assert state.last_error is None


# ===================================================================
# On-off
# ===================================================================


class TestOnOff:
    params = OnOffParameters(threshold=0.5, hysteresis=0.05)

    def test_above_band_switches_on(self) -> None:
        assert execute_on_off(self.params, _input(0.56, output=0.3)) == 1.0

    def test_below_band_switches_off(self) -> None:
        assert execute_on_off(self.params, _input(0.44, output=0.3)) == 0.0

    def test_inside_band_holds(self) -> None:
        assert execute_on_off(self.params, _input(0.50, output=0.3)) == 0.3


# ===================================================================
# Fuzzy
# ===================================================================


_LEVELS = {"low": (0.0, 0.0, 0.3), "medium": (0.2, 0.5, 0.8), "high": (0.7, 1.0, 1.0)}


class TestFuzzy:
    def test_membership_shape(self) -> None:
        tri = (0.0, 0.5, 1.0)
        assert calculate_membership(0.5, tri) == 1.0
        assert calculate_membership(0.25, tri) == pytest.approx(0.5)
        assert calculate_membership(0.75, tri) == pytest.approx(0.5)
        assert calculate_membership(1.0, tri) == 0.0
        assert calculate_membership(-0.1, tri) == 0.0

    def test_shoulder_sets_peak_at_edge(self) -> None:
        assert calculate_membership(0.0, _LEVELS["low"]) == 1.0
        assert calculate_membership(1.0, _LEVELS["high"]) == 1.0
        assert calculate_membership(0.15, _LEVELS["low"]) == pytest.approx(0.5)

    def test_defuzzify_without_activation_is_zero(self) -> None:
        assert defuzzify({}, _LEVELS) == 0.0

    def test_symmetric_set_has_centred_centroid(self) -> None:
        assert defuzzify({"medium": 1.0}, _LEVELS) == pytest.approx(0.5, abs=1e-6)

    def test_rules_map_error_to_output(self) -> None:
        params = FuzzyParameters(
            rules=["IF error IS medium THEN output IS medium"],
            membership_functions={"error": _LEVELS, "output": _LEVELS},
        )
        assert execute_fuzzy(params, _input(0.5)) == pytest.approx(0.5, abs=1e-6)

    def test_low_error_drives_high_output(self) -> None:
        params = FuzzyParameters(
            rules=[
                "IF error IS low THEN output IS high",
                "IF error IS high THEN output IS low",
            ],
            membership_functions={"error": _LEVELS, "output": _LEVELS},
        )
        assert execute_fuzzy(params, _input(0.0)) > 0.8

    def test_unknown_rule_reference_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            FuzzyParameters(
                rules=["IF error IS huge THEN output IS nowhere"],
                membership_functions={"error": _LEVELS, "output": _LEVELS},
            )


# ===================================================================
# MPC
# ===================================================================


class TestMPC:
    def test_cost_formula(self) -> None:
        params = MPCParameters(weights={"error": 10.0, "output": 1.0})
        cost = mpc_cost(params, _input(1.0, 0.5, output=0.2), 0.6)
        assert cost == pytest.approx(10.0 * 0.25 + 0.16)

    def test_prefers_holding_current_output(self) -> None:
        params = MPCParameters()
        assert execute_mpc(params, _input(1.0, 0.0, output=0.3)) == 0.3

    def test_ties_keep_first_candidate(self) -> None:
        params = MPCParameters(weights={"error": 1.0, "output": 0.0})
        assert execute_mpc(params, _input(1.0, 0.0, output=0.7)) == 0.0


# ===================================================================
# Dispatch
# ===================================================================


class TestRunController:
    def test_dispatches_by_type(self) -> None:
        out = run_controller(
            ControllerType.on_off,
            OnOffParameters(),
            ControllerState(),
            _input(1.0),
        )
        assert out == 1.0

    def test_mismatched_parameters(self) -> None:
        with pytest.raises(UnknownTypeError):
            run_controller(ControllerType.pid, OnOffParameters(), ControllerState(), _input(1.0))
