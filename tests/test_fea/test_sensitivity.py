"""Tests for eigenvalue and flutter-velocity sensitivities.

Reference problems
------------------
First order: ``A = diag(-1 + 0.01 p V, -2, -3)``, ``B = I`` gives
``V* = 100 / p`` and ``dV*/dp = -100 / p^2``.

Second order: ``q'' + c(V) q' + 4 q = 0`` with ``c = c0 - 0.002 V`` gives
``Re(lambda) = -c / 2``, ``V* = 500 c0`` and ``dV*/dc0 = 500``.
"""
from __future__ import annotations

import dataclasses

import numpy as np
import pytest

from aeroflutter.core.parameters import ParameterSet
from aeroflutter.fea.assembler import CallableAssembler
from aeroflutter.fea.exceptions import EigensolveFailure, FlutterError
from aeroflutter.fea.flutter_solver import FlutterSolver
from aeroflutter.fea.reduced_operators import ReducedOperatorBuilder
from aeroflutter.fea.results import ModalBasis
from aeroflutter.fea.sensitivity import SensitivityEngine
from aeroflutter.fea.solver_interface import SECOND_ORDER


def _first_order(p_value=1.0):
    params = ParameterSet()
    p = params.add("p", p_value)
    asm = CallableAssembler(
        lambda v: np.diag([-1.0 + 0.01 * p.value * v, -2.0, -3.0]),
        lambda v: np.eye(3),
        parameters=[p],
        derivatives={"p": lambda v: (np.diag([0.01 * v, 0.0, 0.0]), np.zeros((3, 3)))},
    )
    return params, asm


def _second_order(analytic_velocity_derivative=True):
    params = ParameterSet()
    c0 = params.add("c0", 0.2)
    V = params.add("V", 0.0)
    derivatives = {"c0": lambda v: (np.zeros((1, 1)), np.zeros((1, 1)), np.eye(1))}
    if analytic_velocity_derivative:
        derivatives["V"] = lambda v: (np.zeros((1, 1)), np.zeros((1, 1)), -0.002 * np.eye(1))
    asm = CallableAssembler(
        lambda v: 4.0 * np.eye(1),
        lambda v: np.eye(1),
        damping=lambda v: (c0.value - 0.002 * v) * np.eye(1),
        parameters=[c0],
        derivatives=derivatives,
        velocity_parameter=V,
        formulation=SECOND_ORDER,
    )
    return params, asm


def _builder_for(asm, n):
    return ReducedOperatorBuilder(asm, ModalBasis.identity(n))


def _critical_root(params, asm, n_modes, tol=1e-6):
    solver = FlutterSolver(asm, parameters=params)
    solver.initialize(0.0, 0.0, 300.0, 10, ModalBasis.identity(n_modes))
    found, root = solver.find_critical_root(tol=tol, max_bisection_iters=40)
    assert found and root.converged
    return solver, root


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestFirstOrderSensitivity:
    def test_analytic_value(self):
        params, asm = _first_order()
        solver, root = _critical_root(params, asm, 3)
        assert solver.calculate_sensitivity(root, "p") == pytest.approx(-100.0, rel=1e-6)
        assert root.eigenvalue_sensitivities["p"] == pytest.approx(1.0, rel=1e-6)

    def test_finite_difference_slope_used(self):
        params, asm = _first_order()
        _, root = _critical_root(params, asm, 3)
        engine = SensitivityEngine(_builder_for(asm, 3))
        assert not asm.supports_velocity_derivative
        assert engine.growth_rate_velocity_slope(root) == pytest.approx(0.01, rel=1e-6)

    @pytest.mark.parametrize("p_value", [0.8, 1.25])
    def test_matches_finite_difference_of_flutter_velocity(self, p_value):
        delta = 1e-4
        velocities = []
        for p in (p_value + delta, p_value - delta):
            params, asm = _first_order(p)
            velocities.append(_critical_root(params, asm, 3)[1].velocity)
        fd = (velocities[0] - velocities[1]) / (2 * delta)

        params, asm = _first_order(p_value)
        solver, root = _critical_root(params, asm, 3)
        assert root.velocity == pytest.approx(100.0 / p_value, abs=1e-5)
        assert solver.calculate_sensitivity(root, params.get("p")) == pytest.approx(fd, rel=1e-5)


class TestSecondOrderSensitivity:
    @pytest.mark.parametrize("analytic", [True, False])
    def test_damping_sensitivity(self, analytic):
        params, asm = _second_order(analytic)
        solver, root = _critical_root(params, asm, 1)
        assert root.velocity == pytest.approx(100.0, abs=1e-5)
        assert abs(root.frequency) == pytest.approx(2.0, rel=1e-6)
        assert solver.calculate_sensitivity(root, "c0") == pytest.approx(500.0, rel=1e-6)

    def test_velocity_not_a_design_parameter(self):
        params, asm = _second_order()
        _, root = _critical_root(params, asm, 1)
        assert root.parameter_names == frozenset({"c0"})


class TestSensitivityEngineErrors:
    def test_missing_left_vector(self):
        params, asm = _first_order()
        _, root = _critical_root(params, asm, 3)
        engine = SensitivityEngine(_builder_for(asm, 3))
        broken = dataclasses.replace(root, eig_vec_left=None)
        with pytest.raises(EigensolveFailure):
            engine.eigenvalue_sensitivity(broken, params.get("p"))

    def test_single_iterate_is_degenerate(self):
        params, asm = _first_order()
        _, root = _critical_root(params, asm, 3)
        engine = SensitivityEngine(_builder_for(asm, 3))
        broken = dataclasses.replace(root, iterates=[(100.0, 0.0)])
        with pytest.raises(FlutterError) as excinfo:
            engine.flutter_velocity_sensitivity(broken, params.get("p"))
        assert excinfo.value.code == "DEGENERATE_CROSSING"

    def test_flat_growth_rate_is_degenerate(self):
        params, asm = _first_order()
        _, root = _critical_root(params, asm, 3)
        engine = SensitivityEngine(_builder_for(asm, 3))
        broken = dataclasses.replace(root, iterates=[(99.0, 0.0), (101.0, 0.0)])
        with pytest.raises(FlutterError, match="stationary"):
            engine.flutter_velocity_sensitivity(broken, params.get("p"))
