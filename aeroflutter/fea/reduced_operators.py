"""Projection of full-order operators onto the modal basis."""
from __future__ import annotations

import logging

import numpy as np

from aeroflutter.core.parameters import Parameter
from aeroflutter.fea.results import ModalBasis, OperatorSet, ReducedOperatorPair
from aeroflutter.fea.solver_interface import FIRST_ORDER, OperatorAssemblerInterface

logger = logging.getLogger(__name__)


class ReducedOperatorBuilder:
    """Build the reduced eigenproblem ``A(V) x = lambda B(V) x``.

    Each full-order operator ``K`` is projected as ``Phi^T K Phi``.  For the
    first-order formulation the projected stiffness and mass are ``A`` and
    ``B`` directly (n x n).  For the second-order formulation the projected
    ``K_r, C_r, M_r`` are arranged in state-space form (2n x 2n)::

        A = [[ 0,    I  ],      B = [[ I, 0  ],
             [-K_r, -C_r]]           [ 0, M_r]]

    so that ``Re(lambda)`` is the growth rate and ``Im(lambda)`` the
    circular frequency.  No state is kept between calls.
    """

    def __init__(self, assembler: OperatorAssemblerInterface, basis: ModalBasis) -> None:
        self._assembler = assembler
        self._basis = basis

    @property
    def basis(self) -> ModalBasis:
        return self._basis

    @property
    def formulation(self) -> str:
        return self._assembler.formulation

    @property
    def dimension(self) -> int:
        n = self._basis.size
        return n if self.formulation == FIRST_ORDER else 2 * n

    @property
    def supports_velocity_derivative(self) -> bool:
        return self._assembler.supports_velocity_derivative

    def supports_sensitivity(self, parameter: Parameter) -> bool:
        return self._assembler.supports_sensitivity(parameter)

    def build(self, velocity: float) -> ReducedOperatorPair:
        """Reduced ``(A, B)`` at ``velocity``.

        Raises
        ------
        AssemblyFailure
            Propagated from the assembler.
        """
        ops = self._assembler.assemble(velocity)
        A, B = self._arrange(self._project(ops), derivative=False)
        logger.debug("Reduced operators at V=%.6g: %d x %d", velocity, *A.shape)
        return ReducedOperatorPair(velocity=float(velocity), A=A, B=B)

    def build_sensitivity(self, parameter: Parameter, velocity: float) -> tuple[np.ndarray, np.ndarray]:
        """``(dA/dp, dB/dp)`` projected identically to :meth:`build`."""
        ops = self._assembler.assemble_sensitivity(parameter, velocity)
        return self._arrange(self._project(ops), derivative=True)

    def build_velocity_derivative(self, velocity: float) -> tuple[np.ndarray, np.ndarray]:
        """``(dA/dV, dB/dV)`` from the assembler's analytic velocity derivative."""
        ops = self._assembler.assemble_velocity_derivative(velocity)
        return self._arrange(self._project(ops), derivative=True)

    # ------------------------------------------------------------------

    def _project(self, ops: OperatorSet) -> tuple:
        K_r = self._basis.project(ops.stiffness)
        M_r = self._basis.project(ops.mass)
        C_r = self._basis.project(ops.damping) if ops.damping is not None else None
        return K_r, C_r, M_r

    def _arrange(self, projected: tuple, derivative: bool) -> tuple[np.ndarray, np.ndarray]:
        K_r, C_r, M_r = projected
        if self.formulation == FIRST_ORDER:
            return K_r, M_r

        n = K_r.shape[0]
        Z = np.zeros((n, n))
        if C_r is None:
            C_r = Z
        # identity blocks are constant, so they vanish in a derivative
        I = Z if derivative else np.eye(n)
        A = np.block([[Z, I], [-K_r, -C_r]])
        B = np.block([[I, Z], [Z, M_r]])
        return A, B
