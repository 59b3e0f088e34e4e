"""Tests for modal projection and state-space arrangement."""
from __future__ import annotations

import numpy as np
import pytest

from aeroflutter.core.parameters import ParameterSet
from aeroflutter.fea.assembler import CallableAssembler
from aeroflutter.fea.reduced_operators import ReducedOperatorBuilder
from aeroflutter.fea.results import ModalBasis
from aeroflutter.fea.solver_interface import FIRST_ORDER, SECOND_ORDER


class TestFirstOrder:
    def test_identity_basis_passes_operators_through(self):
        A = np.array([[1.0, 2.0], [3.0, 4.0]])
        asm = CallableAssembler(lambda v: v * A, lambda v: np.eye(2))
        builder = ReducedOperatorBuilder(asm, ModalBasis.identity(2))
        assert builder.formulation == FIRST_ORDER
        assert builder.dimension == 2
        ops = builder.build(2.0)
        assert ops.velocity == 2.0
        np.testing.assert_array_equal(ops.A, 2.0 * A)
        np.testing.assert_array_equal(ops.B, np.eye(2))

    def test_projection(self):
        asm = CallableAssembler(lambda v: np.diag([1.0, 2.0, 3.0]), lambda v: np.eye(3))
        basis = ModalBasis(np.eye(3)[:, [0, 2]])
        ops = ReducedOperatorBuilder(asm, basis).build(0.0)
        np.testing.assert_array_equal(ops.A, np.diag([1.0, 3.0]))
        assert ops.dimension == 2


class TestSecondOrder:
    def setup_method(self):
        self.params = ParameterSet()
        self.c = self.params.add("c", 0.3)
        self.V = self.params.add("V", 0.0)
        K = np.diag([4.0, 9.0])
        self.asm = CallableAssembler(
            lambda v: K + 0.1 * v * np.array([[0.0, 1.0], [-1.0, 0.0]]),
            lambda v: 2.0 * np.eye(2),
            damping=lambda v: self.c.value * np.eye(2),
            parameters=[self.c],
            derivatives={
                "c": lambda v: (np.zeros((2, 2)), np.zeros((2, 2)), np.eye(2)),
                "V": lambda v: (0.1 * np.array([[0.0, 1.0], [-1.0, 0.0]]),
                                np.zeros((2, 2)), np.zeros((2, 2))),
            },
            velocity_parameter=self.V,
            formulation=SECOND_ORDER,
        )
        self.builder = ReducedOperatorBuilder(self.asm, ModalBasis.identity(2))

    def test_state_space_blocks(self):
        ops = self.builder.build(10.0)
        assert self.builder.dimension == 4
        A, B = ops.A, ops.B
        np.testing.assert_array_equal(A[:2, :2], 0.0)
        np.testing.assert_array_equal(A[:2, 2:], np.eye(2))
        np.testing.assert_array_equal(A[2:, :2], -np.array([[4.0, 1.0], [-1.0, 9.0]]))
        np.testing.assert_array_equal(A[2:, 2:], -0.3 * np.eye(2))
        np.testing.assert_array_equal(B, np.block([[np.eye(2), np.zeros((2, 2))],
                                                   [np.zeros((2, 2)), 2.0 * np.eye(2)]]))

    def test_eigenvalues_of_undamped_oscillator(self):
        self.c.value = 0.0
        ops = self.builder.build(0.0)
        lam = np.linalg.eigvals(np.linalg.solve(ops.B, ops.A))
        np.testing.assert_allclose(sorted(np.abs(lam.imag)), sorted([np.sqrt(2.0)] * 2 + [np.sqrt(4.5)] * 2))
        np.testing.assert_allclose(lam.real, 0.0, atol=1e-12)

    def test_sensitivity_has_no_identity_blocks(self):
        dA, dB = self.builder.build_sensitivity(self.c, 10.0)
        expected = np.zeros((4, 4))
        expected[2:, 2:] = -np.eye(2)
        np.testing.assert_array_equal(dA, expected)
        np.testing.assert_array_equal(dB, 0.0)

    def test_velocity_derivative(self):
        assert self.builder.supports_velocity_derivative
        dA, dB = self.builder.build_velocity_derivative(5.0)
        np.testing.assert_allclose(dA[2:, :2], -0.1 * np.array([[0.0, 1.0], [-1.0, 0.0]]))
        np.testing.assert_array_equal(dA[:2, 2:], 0.0)
        np.testing.assert_array_equal(dB, 0.0)

    def test_no_velocity_derivative_without_parameter(self):
        asm = CallableAssembler(lambda v: np.eye(1), lambda v: np.eye(1), formulation=SECOND_ORDER)
        builder = ReducedOperatorBuilder(asm, ModalBasis.identity(1))
        assert not builder.supports_velocity_derivative
        with pytest.raises(NotImplementedError):
            builder.build_velocity_derivative(1.0)
