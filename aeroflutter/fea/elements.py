"""Hermite-cubic Euler-Bernoulli beam element.

Implements the 2-node beam element used for the transverse bending of a
plate strip with:
- Hermite cubic shape functions on the natural coordinate ``xi`` in [0, 1]
- Gauss-Legendre quadrature mapped to [0, 1]
- Bending stiffness matrix (4x4)
- Consistent mass matrix (4x4)
- The two integrals needed by linearized piston-theory aerodynamics:
  ``int N^T N dx`` and ``int N^T dN/dx dx``

Nodal DOFs are ordered ``[w_0, theta_0, w_1, theta_1]`` where ``w`` is the
transverse deflection and ``theta = dw/dx`` the section rotation.
"""
from __future__ import annotations

import numpy as np
from numpy.typing import NDArray


class BeamElement:
    """2-node Hermite cubic beam finite element.

    Parameters
    ----------
    n_gauss : int
        Number of Gauss-Legendre points.  Four points integrate the
        degree-6 mass integrand exactly.
    """

    N_NODES = 2
    N_DOF = 4

    def __init__(self, n_gauss: int = 4) -> None:
        pts, wts = np.polynomial.legendre.leggauss(n_gauss)
        # map [-1, 1] -> [0, 1]
        self._xi: NDArray[np.float64] = 0.5 * (pts + 1.0)
        self._w: NDArray[np.float64] = 0.5 * wts

    # ------------------------------------------------------------------
    # Shape functions
    # ------------------------------------------------------------------

    @staticmethod
    def shape_functions(xi: float, le: float) -> NDArray[np.float64]:
        """Hermite shape functions N(xi), shape (4,)."""
        xi2 = xi * xi
        xi3 = xi2 * xi
        return np.array([
            1.0 - 3.0 * xi2 + 2.0 * xi3,
            le * (xi - 2.0 * xi2 + xi3),
            3.0 * xi2 - 2.0 * xi3,
            le * (-xi2 + xi3),
        ])

    @staticmethod
    def shape_derivatives(xi: float, le: float) -> NDArray[np.float64]:
        """dN/dx at ``xi``, shape (4,)."""
        xi2 = xi * xi
        return np.array([
            -6.0 * xi + 6.0 * xi2,
            le * (1.0 - 4.0 * xi + 3.0 * xi2),
            6.0 * xi - 6.0 * xi2,
            le * (-2.0 * xi + 3.0 * xi2),
        ]) / le

    @staticmethod
    def shape_second_derivatives(xi: float, le: float) -> NDArray[np.float64]:
        """d2N/dx2 at ``xi``, shape (4,)."""
        return np.array([
            -6.0 + 12.0 * xi,
            le * (-4.0 + 6.0 * xi),
            6.0 - 12.0 * xi,
            le * (-2.0 + 6.0 * xi),
        ]) / (le * le)

    # ------------------------------------------------------------------
    # Element matrices
    # ------------------------------------------------------------------

    @staticmethod
    def element_length(coords: NDArray[np.float64]) -> float:
        le = float(coords[1] - coords[0])
        if le <= 0.0:
            raise ValueError(f"Non-positive element length {le:.6e}")
        return le

    def stiffness_matrix(self, coords: NDArray[np.float64], EI: float) -> NDArray[np.float64]:
        """Bending stiffness ``EI * int B^T B dx`` with ``B = d2N/dx2``.

        Parameters
        ----------
        coords : NDArray[np.float64]
            (2,) axial coordinates of the element nodes.
        EI : float
            Bending rigidity of the section.
        """
        le = self.element_length(coords)
        Ke = np.zeros((4, 4))
        for xi, w in zip(self._xi, self._w):
            B = self.shape_second_derivatives(xi, le)
            Ke += w * np.outer(B, B)
        return EI * le * Ke

    def mass_matrix(self, coords: NDArray[np.float64], rho_A: float) -> NDArray[np.float64]:
        """Consistent mass ``rho_A * int N^T N dx``."""
        return rho_A * self.shape_product(coords)

    def shape_product(self, coords: NDArray[np.float64]) -> NDArray[np.float64]:
        """``int N^T N dx`` (symmetric 4x4)."""
        le = self.element_length(coords)
        Me = np.zeros((4, 4))
        for xi, w in zip(self._xi, self._w):
            N = self.shape_functions(xi, le)
            Me += w * np.outer(N, N)
        return le * Me

    def shape_gradient_product(self, coords: NDArray[np.float64]) -> NDArray[np.float64]:
        """``int N^T dN/dx dx`` (unsymmetric 4x4).

        Entry ``[i, j]`` is ``int N_i dN_j/dx dx``.
        """
        le = self.element_length(coords)
        Ae = np.zeros((4, 4))
        for xi, w in zip(self._xi, self._w):
            N = self.shape_functions(xi, le)
            dN = self.shape_derivatives(xi, le)
            Ae += w * np.outer(N, dN)
        return le * Ae
