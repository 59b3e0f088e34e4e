"""Structural modal solver producing the reduction basis.

Solves ``K phi = omega^2 M phi`` on the operators returned by an assembler
at a reference velocity (zero by default, so aerodynamic terms vanish)
using shift-invert ARPACK (``scipy.sparse.linalg.eigsh``).  Systems too
small for ARPACK fall back to dense ``scipy.linalg.eigh``.
"""
from __future__ import annotations

import logging
import time
from typing import Optional

import numpy as np
import scipy.linalg
import scipy.sparse as sp
import scipy.sparse.linalg as spla
from numpy.typing import NDArray

from aeroflutter.fea.config import ModalConfig
from aeroflutter.fea.exceptions import EigensolveFailure
from aeroflutter.fea.results import ModalBasis
from aeroflutter.fea.solver_interface import ModalSolverInterface, OperatorAssemblerInterface

logger = logging.getLogger(__name__)

_TWO_PI = 2.0 * np.pi


class ModalSolver(ModalSolverInterface):
    """Lowest structural modes of an assembler's stiffness/mass pair.

    Parameters
    ----------
    assembler : OperatorAssemblerInterface
        Source of the stiffness and mass operators.
    config : ModalConfig, optional
        Mode count, shift and reference velocity.
    """

    def __init__(
        self,
        assembler: OperatorAssemblerInterface,
        config: Optional[ModalConfig] = None,
    ) -> None:
        self._assembler = assembler
        self.config = config or ModalConfig()
        self._reference_velocity = self.config.reference_velocity
        self._sigma = self.config.sigma

    def solve_modes(self, n_modes: Optional[int] = None) -> ModalBasis:
        """Return the ``n_modes`` lowest mass-normalized modes.

        ``n_modes`` defaults to ``config.n_modes``.

        Raises
        ------
        ValueError
            If ``n_modes`` < 1.
        EigensolveFailure
            If the eigen backend fails or converges on too few modes.
        """
        if n_modes is None:
            n_modes = self.config.n_modes
        if n_modes < 1:
            raise ValueError(f"n_modes must be >= 1, got {n_modes}")
        t_start = time.perf_counter()

        ops = self._assembler.assemble(self._reference_velocity)
        K = sp.csr_matrix(ops.stiffness)
        M = sp.csr_matrix(ops.mass)
        n_dof = K.shape[0]

        if n_modes > n_dof:
            logger.warning(
                "Requested %d modes but system has only %d DOFs. Reducing to %d.",
                n_modes, n_dof, n_dof,
            )
            n_modes = n_dof

        if n_modes >= n_dof - 1:
            eigenvalues, eigenvectors = self._solve_dense(K, M, n_modes)
        else:
            eigenvalues, eigenvectors = self._solve_sparse(K, M, n_modes)

        omega = np.sqrt(np.abs(np.real(eigenvalues)))
        frequencies_hz = omega / _TWO_PI

        sort_idx = np.argsort(frequencies_hz)[:n_modes]
        frequencies_hz = frequencies_hz[sort_idx]
        eigenvectors = np.real(eigenvectors[:, sort_idx])

        eigenvectors = self._mass_normalize(eigenvectors, M)

        logger.info(
            "Modal solve complete: %d modes in %.3f s. Frequency range: %.4g - %.4g Hz",
            n_modes,
            time.perf_counter() - t_start,
            frequencies_hz[0],
            frequencies_hz[-1],
        )
        return ModalBasis(eigenvectors, frequencies_hz)

    # ------------------------------------------------------------------
    # Backends
    # ------------------------------------------------------------------

    def _solve_sparse(self, K, M, n_modes):
        logger.debug("Shift-invert eigsh: k=%d, sigma=%.6e", n_modes, self._sigma)
        try:
            return spla.eigsh(K, k=n_modes, M=M, sigma=self._sigma, which="LM")
        except spla.ArpackNoConvergence as exc:
            n_converged = len(exc.eigenvalues)
            if n_converged >= n_modes:
                logger.warning(
                    "ARPACK did not fully converge. Got %d of %d eigenvalues. "
                    "Using partial results.",
                    n_converged, n_modes,
                )
                return exc.eigenvalues, exc.eigenvectors
            raise EigensolveFailure(
                f"Modal eigensolver converged on {n_converged} of {n_modes} modes",
                details={"n_converged": n_converged, "n_requested": n_modes},
            ) from exc
        except (RuntimeError, ValueError) as exc:
            raise EigensolveFailure(f"Modal eigensolver failed: {exc}") from exc

    @staticmethod
    def _solve_dense(K, M, n_modes):
        logger.debug("Dense eigh on %d DOFs", K.shape[0])
        try:
            return scipy.linalg.eigh(
                K.toarray(), M.toarray(), subset_by_index=[0, n_modes - 1],
            )
        except (scipy.linalg.LinAlgError, ValueError) as exc:
            raise EigensolveFailure(f"Dense modal eigensolver failed: {exc}") from exc

    @staticmethod
    def _mass_normalize(eigenvectors: NDArray[np.float64], M) -> NDArray[np.float64]:
        """Scale each column so that ``phi^T M phi = 1``."""
        result = eigenvectors.copy()
        for i in range(result.shape[1]):
            phi = result[:, i]
            m_gen = phi @ (M @ phi)
            if m_gen <= 0.0:
                logger.warning(
                    "Mode %d has non-positive generalised mass (%.6e). "
                    "Falling back to L2 normalisation.",
                    i, m_gen,
                )
                norm = np.linalg.norm(phi)
                if norm > 0.0:
                    result[:, i] = phi / norm
            else:
                result[:, i] = phi / np.sqrt(m_gen)
            # fix the sign so the largest component is positive
            k = np.argmax(np.abs(result[:, i]))
            if result[k, i] < 0.0:
                result[:, i] = -result[:, i]
        return result

    def __repr__(self) -> str:
        return f"ModalSolver(backend='scipy.sparse.linalg.eigsh', sigma={self._sigma:g})"
