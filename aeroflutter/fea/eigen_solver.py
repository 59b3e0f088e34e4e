"""Dense generalized eigen-solver adapter.

Wraps ``scipy.linalg.eig(A, B, left=True, right=True)`` and enforces the
normalization convention the sensitivity analysis relies on:

- right eigenvectors ``x`` are scaled so that ``x^T B x = 1`` (plain
  transpose, complex square root of the scale);
- left eigenvectors ``y`` (``y^T A = lambda y^T B``) are scaled so that
  ``y^T B x = 1``.
"""
from __future__ import annotations

import logging
from typing import Callable, Optional

import numpy as np
import scipy.linalg

from aeroflutter.fea.exceptions import EigensolveFailure
from aeroflutter.fea.results import EigenPair

logger = logging.getLogger(__name__)

SortKey = Callable[[EigenPair], object]

# Relative threshold below which a bilinear normalization scale counts as zero
_SCALE_RTOL = 1.0e-12


def least_stable_first(pair: EigenPair) -> tuple[float, float]:
    """Default ordering: descending real part, then descending imaginary part."""
    return (-pair.growth_rate, -pair.frequency)


class GeneralizedEigenSolver:
    """Solve ``A x = lambda B x`` for all finite eigenpairs.

    Parameters
    ----------
    sort_key : callable, optional
        Key applied to each :class:`EigenPair`; ascending order.  Defaults
        to :func:`least_stable_first`.
    compute_left : bool
        Whether left eigenvectors are computed and normalized.
    """

    def __init__(self, sort_key: Optional[SortKey] = None, compute_left: bool = True) -> None:
        self._sort_key = sort_key or least_stable_first
        self._compute_left = compute_left

    def solve(
        self,
        A: np.ndarray,
        B: np.ndarray,
        velocity: Optional[float] = None,
        sort_key: Optional[SortKey] = None,
    ) -> list[EigenPair]:
        """Return the sorted finite eigenpairs of ``(A, B)``.

        Raises
        ------
        EigensolveFailure
            If LAPACK fails or the matrices contain non-finite entries.
        """
        try:
            if self._compute_left:
                w, vl, vr = scipy.linalg.eig(A, B, left=True, right=True)
            else:
                w, vr = scipy.linalg.eig(A, B, left=False, right=True)
                vl = None
        except (scipy.linalg.LinAlgError, ValueError) as exc:
            raise EigensolveFailure(
                f"Generalized eigensolve failed at V={velocity}: {exc}",
                velocity=velocity,
            ) from exc

        finite = np.isfinite(w)
        n_dropped = int((~finite).sum())
        if n_dropped:
            logger.debug(
                "Dropped %d infinite/undefined eigenvalues at V=%s", n_dropped, velocity,
            )

        B = np.asarray(B)
        b_norm = max(np.linalg.norm(B, ord=np.inf), np.finfo(float).tiny)
        pairs = []
        for i in np.flatnonzero(finite):
            x = self._normalize_right(vr[:, i], B, b_norm, velocity)
            y = None
            if vl is not None:
                y = self._normalize_left(np.conj(vl[:, i]), x, B, b_norm, velocity)
            pairs.append(EigenPair(eigenvalue=complex(w[i]), right=x, left=y))

        pairs.sort(key=sort_key or self._sort_key)
        for idx, pair in enumerate(pairs):
            pair.index = idx
        return pairs

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    @staticmethod
    def _normalize_right(x, B, b_norm, velocity) -> np.ndarray:
        x = np.asarray(x, dtype=complex)
        s = x @ (B @ x)
        if abs(s) <= _SCALE_RTOL * b_norm * np.vdot(x, x).real:
            # x^T B x vanishes for self-orthogonal vectors; use x^H B x
            s = np.vdot(x, B @ x)
            logger.warning(
                "x^T B x is numerically zero at V=%s; normalizing with x^H B x", velocity,
            )
            if abs(s) == 0.0:
                return x / np.linalg.norm(x)
        return x / np.sqrt(complex(s))

    @staticmethod
    def _normalize_left(y, x, B, b_norm, velocity) -> Optional[np.ndarray]:
        t = y @ (B @ x)
        if abs(t) <= _SCALE_RTOL * b_norm * np.linalg.norm(y) * np.linalg.norm(x):
            logger.warning(
                "y^T B x is numerically zero at V=%s (defective eigenvalue); "
                "left eigenvector discarded",
                velocity,
            )
            return None
        return y / t
