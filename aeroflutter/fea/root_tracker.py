"""Mode correspondence across velocity samples and crossing detection.

Eigenvalues at consecutive velocities come back unordered, and near
veering or coalescence their ordering is meaningless.  Correspondence is
established on eigenvector direction through the generalized alignment

    a(x_k, x_k1) = |x_k^H B x_k1| / sqrt(|x_k^H B x_k| |x_k1^H B x_k1|)

evaluated with ``B`` of the newer sample.  Alignment differences smaller
than ``ambiguity_tol`` are treated as ties and resolved by eigenvalue
proximity.  Whole root sets are matched with an optimal assignment
(``scipy.optimize.linear_sum_assignment``).
"""
from __future__ import annotations

import logging
from typing import Iterable, Sequence

import numpy as np
from scipy.optimize import linear_sum_assignment

from aeroflutter.fea.results import CrossoverBracket, EigenPair, RootSet

logger = logging.getLogger(__name__)

_TINY = 1.0e-300


def generalized_alignment(x_a: np.ndarray, x_b: np.ndarray, B: np.ndarray) -> float:
    """Normalized ``|x_a^H B x_b|`` in [0, 1] (Euclidean when B-norms vanish)."""
    num = abs(np.vdot(x_a, B @ x_b))
    den = np.sqrt(abs(np.vdot(x_a, B @ x_a)) * abs(np.vdot(x_b, B @ x_b)))
    if den <= _TINY or num > den * (1.0 + 1.0e-8):
        # B is indefinite or singular along these directions
        num = abs(np.vdot(x_a, x_b))
        den = np.linalg.norm(x_a) * np.linalg.norm(x_b)
        if den <= _TINY:
            return 0.0
    return float(min(num / den, 1.0))


class RootTracker:
    """Track modes through a velocity sweep.

    Parameters
    ----------
    min_alignment : float
        Smallest alignment accepted as a plausible correspondent during
        re-identification.
    ambiguity_tol : float
        Alignment window within which eigenvalue proximity breaks ties.
    """

    def __init__(self, min_alignment: float = 0.1, ambiguity_tol: float = 0.05) -> None:
        self.min_alignment = min_alignment
        self.ambiguity_tol = ambiguity_tol

    # ------------------------------------------------------------------
    # Pairwise correspondence
    # ------------------------------------------------------------------

    def alignment_matrix(self, prev: RootSet, curr: RootSet) -> np.ndarray:
        """``(len(prev), len(curr))`` alignments using ``B`` of ``curr``."""
        B = curr.operators.B
        out = np.zeros((len(prev), len(curr)))
        for i, p in enumerate(prev.pairs):
            for j, c in enumerate(curr.pairs):
                out[i, j] = generalized_alignment(p.right, c.right, B)
        return out

    def match(self, prev: RootSet, curr: RootSet) -> np.ndarray:
        """Index in ``curr`` of each root of ``prev`` (``-1`` if unmatched)."""
        perm = np.full(len(prev), -1, dtype=np.int64)
        if len(prev) == 0 or len(curr) == 0:
            return perm
        align = self.alignment_matrix(prev, curr)
        dist = np.abs(
            np.array([p.eigenvalue for p in prev.pairs])[:, np.newaxis]
            - np.array([c.eigenvalue for c in curr.pairs])[np.newaxis, :]
        )
        d_max = dist.max()
        cost = 1.0 - align
        if d_max > 0.0:
            cost = cost + self.ambiguity_tol * dist / d_max
        rows, cols = linear_sum_assignment(cost)
        perm[rows] = cols
        return perm

    def reidentify(self, reference: EigenPair, candidates: RootSet) -> tuple[int, float]:
        """Best correspondent of ``reference`` among ``candidates``.

        Returns ``(index, alignment)``; ``index`` is ``-1`` when
        ``candidates`` is empty.  The caller decides whether the alignment
        is plausible (see :attr:`min_alignment`).
        """
        if len(candidates) == 0:
            return -1, 0.0
        B = candidates.operators.B
        align = np.array([
            generalized_alignment(reference.right, c.right, B) for c in candidates.pairs
        ])
        window = np.flatnonzero(align >= align.max() - self.ambiguity_tol)
        dist = np.array([abs(candidates.pairs[j].eigenvalue - reference.eigenvalue) for j in window])
        best = int(window[np.argmin(dist)])
        return best, float(align[best])

    # ------------------------------------------------------------------
    # Sweep-level tracking
    # ------------------------------------------------------------------

    def track(self, history: Sequence[RootSet]) -> np.ndarray:
        """Mode map of a velocity-ordered root history.

        ``mode_map[k, m]`` is the index into ``history[k].pairs`` of mode
        ``m``; modes are labelled by their position at the first sample.
        """
        if not history:
            return np.zeros((0, 0), dtype=np.int64)
        n_modes = len(history[0])
        mode_map = np.full((len(history), n_modes), -1, dtype=np.int64)
        mode_map[0] = np.arange(n_modes)
        for k in range(1, len(history)):
            perm = self.match(history[k - 1], history[k])
            prev = mode_map[k - 1]
            alive = prev >= 0
            mode_map[k, alive] = perm[prev[alive]]
            n_lost = int(alive.sum() - (mode_map[k] >= 0).sum())
            if n_lost:
                logger.warning(
                    "Lost %d tracked mode(s) between V=%.6g and V=%.6g",
                    n_lost, history[k - 1].velocity, history[k].velocity,
                )
        return mode_map

    def find_crossings(
        self,
        history: Sequence[RootSet],
        mode_map: np.ndarray,
        failed_velocities: Iterable[float] = (),
    ) -> list[CrossoverBracket]:
        """All brackets where a tracked growth rate goes from <= 0 to > 0.

        A crossing of a complex-conjugate pair is reported once, for the
        member with non-negative frequency.  Brackets spanning a failed
        sample are flagged ``widened``.  The result is sorted by lower
        velocity, then by descending growth rate at the upper end.
        """
        failed = sorted(failed_velocities)
        brackets = []
        for k in range(len(history) - 1):
            lo_set, hi_set = history[k], history[k + 1]
            for m in range(mode_map.shape[1]):
                i_lo, i_hi = mode_map[k, m], mode_map[k + 1, m]
                if i_lo < 0 or i_hi < 0:
                    continue
                lo, hi = lo_set.pairs[i_lo], hi_set.pairs[i_hi]
                if lo.growth_rate <= 0.0 < hi.growth_rate:
                    if _is_conjugate_image(hi, hi_set):
                        continue
                    widened = any(lo_set.velocity < v < hi_set.velocity for v in failed)
                    brackets.append(CrossoverBracket(
                        mode_id=m,
                        v_lower=lo_set.velocity,
                        v_upper=hi_set.velocity,
                        lower=lo,
                        upper=hi,
                        widened=widened,
                        lower_operators=lo_set.operators,
                        upper_operators=hi_set.operators,
                    ))
                    if widened:
                        logger.warning(
                            "Crossing bracket [%.6g, %.6g] of mode %d spans failed "
                            "samples; onset interval is wider than the sweep spacing",
                            lo_set.velocity, hi_set.velocity, m,
                        )
        brackets.sort(key=lambda b: (b.v_lower, -b.upper.growth_rate))
        return brackets


def _is_conjugate_image(pair: EigenPair, root_set: RootSet, rtol: float = 1.0e-8) -> bool:
    """True for the negative-frequency member of a conjugate pair in ``root_set``."""
    lam = complex(pair.eigenvalue)
    if lam.imag >= 0.0:
        return False
    tol = rtol * max(1.0, abs(lam))
    return any(
        other is not pair and abs(complex(other.eigenvalue) - lam.conjugate()) <= tol
        for other in root_set.pairs
    )
