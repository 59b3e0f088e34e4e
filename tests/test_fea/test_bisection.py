"""Tests for bisection refinement of a crossover bracket.

Reference problem: ``A(V) = diag(-1 + 0.01 V, -2, -3)``, ``B = I`` has its
first eigenvalue crossing zero at exactly ``V* = 100``.
"""
from __future__ import annotations

import math

import numpy as np
import pytest

from aeroflutter.fea.assembler import CallableAssembler
from aeroflutter.fea.bisection import BisectionRefiner
from aeroflutter.fea.eigen_solver import GeneralizedEigenSolver
from aeroflutter.fea.exceptions import AssemblyFailure, BisectionDivergence
from aeroflutter.fea.reduced_operators import ReducedOperatorBuilder
from aeroflutter.fea.results import ModalBasis, RootSet
from aeroflutter.fea.root_tracker import RootTracker


def _diagonal_assembler(fail=None):
    def stiffness(v):
        if fail is not None and fail(v):
            raise ValueError(f"cannot assemble at {v}")
        return np.diag([-1.0 + 0.01 * v, -2.0, -3.0])

    return CallableAssembler(stiffness, lambda v: np.eye(3))


def _refiner(assembler=None, tracker=None, **kwargs):
    builder = ReducedOperatorBuilder(assembler or _diagonal_assembler(), ModalBasis.identity(3))
    tracker = tracker or RootTracker()
    return builder, BisectionRefiner(builder, GeneralizedEigenSolver(), tracker, **kwargs)


def _bracket(builder, v_lo, v_hi):
    solver = GeneralizedEigenSolver()
    history = []
    for v in (v_lo, v_hi):
        ops = builder.build(v)
        history.append(RootSet(v, solver.solve(ops.A, ops.B), ops))
    tracker = RootTracker()
    crossings = tracker.find_crossings(history, tracker.track(history))
    assert len(crossings) == 1
    return crossings[0]


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestBisectionRefiner:
    def test_converges_to_reference_velocity(self):
        builder, refiner = _refiner()
        converged, root = refiner.refine(_bracket(builder, 90.0, 120.0), 1e-6, 40)
        assert converged
        assert root.converged
        assert root.velocity == pytest.approx(100.0, abs=1e-5)
        assert abs(root.growth_rate) < 1e-6
        assert root.mode_id == 0

    def test_iteration_bound(self):
        builder, refiner = _refiner()
        _, root = refiner.refine(_bracket(builder, 90.0, 120.0), 1e-6, 40)
        assert root.iterations <= math.ceil(math.log2(30.0 / 1e-6))

    def test_bracket_invariant(self):
        builder, refiner = _refiner()
        _, root = refiner.refine(_bracket(builder, 90.0, 120.0), 1e-6, 40)
        assert len(root.bracket_history) == root.iterations + 1
        for v_lo, v_hi, g_lo, g_hi in root.bracket_history:
            assert 90.0 <= v_lo < v_hi <= 120.0
            assert g_lo <= 0.0 < g_hi
        widths = [h[1] - h[0] for h in root.bracket_history]
        assert all(b == pytest.approx(a / 2) for a, b in zip(widths, widths[1:]))

    def test_iterates_record_evaluations(self):
        builder, refiner = _refiner()
        _, root = refiner.refine(_bracket(builder, 90.0, 120.0), 1e-6, 40)
        assert root.iterates[0] == (90.0, pytest.approx(-0.1))
        assert root.iterates[1] == (120.0, pytest.approx(0.2))
        assert root.iterates[2][0] == 105.0

    def test_not_converged_is_a_result(self):
        builder, refiner = _refiner()
        converged, root = refiner.refine(_bracket(builder, 90.0, 120.0), 1e-6, 2)
        assert not converged
        assert not root.converged
        assert root.iterations == 2
        assert root.bracket == (97.5, 105.0)
        assert root.velocity in root.bracket

    def test_zero_iterations(self):
        builder, refiner = _refiner()
        converged, root = refiner.refine(_bracket(builder, 90.0, 120.0), 1e-6, 0)
        assert not converged
        assert root.iterations == 0
        assert root.velocity == 90.0

    def test_root_at_lower_end(self):
        builder, refiner = _refiner()
        converged, root = refiner.refine(_bracket(builder, 100.0, 200.0), 1e-6, 40)
        assert converged
        assert root.velocity == 100.0
        assert root.iterations == 0

    def test_eigenvectors_attached(self):
        builder, refiner = _refiner()
        _, root = refiner.refine(_bracket(builder, 90.0, 120.0), 1e-6, 40)
        B = root.operators.B
        assert abs(root.eig_vec_right @ B @ root.eig_vec_right - 1.0) < 1e-12
        assert abs(root.eig_vec_left @ B @ root.eig_vec_right - 1.0) < 1e-12
        assert root.operators.velocity == root.velocity

    def test_on_iterate_callback(self):
        calls = []
        builder, refiner = _refiner(on_iterate=lambda *args: calls.append(args))
        _, root = refiner.refine(_bracket(builder, 90.0, 120.0), 1e-6, 40)
        assert len(calls) == root.iterations
        it, v_mid, g, v_lo, v_hi = calls[0]
        assert (it, v_mid, v_lo, v_hi) == (1, 105.0, 90.0, 105.0)

    def test_cancel_hook(self):
        class Stop(Exception):
            pass

        def stop():
            raise Stop()

        builder, refiner = _refiner(check_cancelled=stop)
        with pytest.raises(Stop):
            refiner.refine(_bracket(builder, 90.0, 120.0), 1e-6, 40)

    def test_lost_mode_raises_divergence(self):
        builder, refiner = _refiner(tracker=RootTracker(min_alignment=1.5))
        with pytest.raises(BisectionDivergence) as excinfo:
            refiner.refine(_bracket(builder, 90.0, 120.0), 1e-6, 40)
        assert excinfo.value.bracket == (90.0, 120.0)
        assert excinfo.value.code == "BISECTION_DIVERGENCE"

    def test_evaluation_failure_carries_bracket(self):
        good_builder, _ = _refiner()
        bracket = _bracket(good_builder, 90.0, 120.0)
        bracket.lower_operators = bracket.upper_operators = None
        _, refiner = _refiner(_diagonal_assembler(fail=lambda v: 100.0 < v < 110.0))
        with pytest.raises(AssemblyFailure) as excinfo:
            refiner.refine(bracket, 1e-6, 40)
        assert excinfo.value.bracket == (90.0, 120.0)

    @pytest.mark.parametrize("tol, max_iters", [(0.0, 10), (1e-6, -1)])
    def test_invalid_settings(self, tol, max_iters):
        builder, refiner = _refiner()
        with pytest.raises(ValueError):
            refiner.refine(_bracket(builder, 90.0, 120.0), tol, max_iters)
