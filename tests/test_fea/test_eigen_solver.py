"""Tests for the generalized eigen-solver adapter."""
from __future__ import annotations

import numpy as np
import pytest

from aeroflutter.fea.eigen_solver import GeneralizedEigenSolver, least_stable_first
from aeroflutter.fea.exceptions import EigensolveFailure


@pytest.fixture(scope="module")
def random_pencil():
    rng = np.random.default_rng(7)
    A = rng.standard_normal((6, 6))
    B = rng.standard_normal((6, 6)) + 6.0 * np.eye(6)
    return A, B


@pytest.fixture(scope="module")
def pairs(random_pencil):
    A, B = random_pencil
    return GeneralizedEigenSolver().solve(A, B, velocity=1.0)


class TestGeneralizedEigenSolver:
    def test_all_eigenvalues_returned(self, pairs):
        assert len(pairs) == 6

    def test_right_eigenvectors(self, random_pencil, pairs):
        A, B = random_pencil
        for p in pairs:
            np.testing.assert_allclose(A @ p.right, p.eigenvalue * (B @ p.right), atol=1e-9)

    def test_right_normalization(self, random_pencil, pairs):
        _, B = random_pencil
        for p in pairs:
            assert abs(p.right @ (B @ p.right) - 1.0) < 1e-10

    def test_left_eigenvectors(self, random_pencil, pairs):
        A, B = random_pencil
        for p in pairs:
            np.testing.assert_allclose(p.left @ A, p.eigenvalue * (p.left @ B), atol=1e-9)

    def test_bi_orthonormality(self, random_pencil, pairs):
        _, B = random_pencil
        Y = np.array([p.left for p in pairs])
        X = np.column_stack([p.right for p in pairs])
        np.testing.assert_allclose(Y @ B @ X, np.eye(6), atol=1e-8)

    def test_sorted_least_stable_first(self, pairs):
        keys = [least_stable_first(p) for p in pairs]
        assert keys == sorted(keys)
        assert [p.index for p in pairs] == list(range(6))
        assert pairs[0].growth_rate == max(p.growth_rate for p in pairs)

    def test_custom_sort_key(self, random_pencil):
        A, B = random_pencil
        solver = GeneralizedEigenSolver(sort_key=lambda p: abs(p.eigenvalue))
        mags = [abs(p.eigenvalue) for p in solver.solve(A, B)]
        assert mags == sorted(mags)

    def test_infinite_eigenvalues_dropped(self):
        pairs = GeneralizedEigenSolver().solve(np.diag([2.0, 3.0]), np.diag([1.0, 0.0]))
        assert len(pairs) == 1
        assert pairs[0].eigenvalue == pytest.approx(2.0)

    def test_without_left_vectors(self, random_pencil):
        A, B = random_pencil
        pairs = GeneralizedEigenSolver(compute_left=False).solve(A, B)
        assert all(p.left is None for p in pairs)

    def test_non_finite_input(self):
        A = np.array([[np.nan, 0.0], [0.0, 1.0]])
        with pytest.raises(EigensolveFailure) as excinfo:
            GeneralizedEigenSolver().solve(A, np.eye(2), velocity=42.0)
        assert excinfo.value.velocity == 42.0

    def test_growth_rate_and_frequency(self):
        A = np.array([[0.0, 1.0], [-4.0, -0.2]])
        pairs = GeneralizedEigenSolver().solve(A, np.eye(2))
        assert pairs[0].growth_rate == pytest.approx(-0.1)
        assert pairs[0].frequency > 0
        assert pairs[1].frequency == pytest.approx(-pairs[0].frequency)
