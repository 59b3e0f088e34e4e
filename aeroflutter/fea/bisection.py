"""Bisection refinement of a crossover bracket.

Each iterate evaluates the midpoint of the current bracket, re-identifies
the tracked mode against the most recent known-good root and replaces the
bracket end whose growth-rate sign it shares, so that
``Re(lambda(V_lo)) <= 0 < Re(lambda(V_hi))`` holds after every iteration.

Termination: ``|Re(lambda)| < tol`` at a midpoint, or
``V_hi - V_lo < tol * V_hi``, or ``max_iters`` midpoints evaluated.  On
convergence the linear-interpolation zero of the final bracket is also
evaluated and kept when it is closer to neutral stability.
"""
from __future__ import annotations

import logging
from typing import Callable, Optional

from aeroflutter.fea.eigen_solver import GeneralizedEigenSolver
from aeroflutter.fea.exceptions import (
    AssemblyFailure,
    BisectionDivergence,
    EigensolveFailure,
)
from aeroflutter.fea.reduced_operators import ReducedOperatorBuilder
from aeroflutter.fea.results import (
    CrossoverBracket,
    EigenPair,
    FlutterRoot,
    ReducedOperatorPair,
    RootSet,
)
from aeroflutter.fea.root_tracker import RootTracker

logger = logging.getLogger(__name__)

IterateCallback = Callable[[int, float, float, float, float], None]


class BisectionRefiner:
    """Locate the flutter velocity inside a bracket.

    Parameters
    ----------
    builder : ReducedOperatorBuilder
        Reduced operators at arbitrary velocities.
    eigen_solver : GeneralizedEigenSolver
        Eigen backend adapter.
    tracker : RootTracker
        Correspondence rule; its ``min_alignment`` bounds a plausible
        re-identification.
    check_cancelled : callable, optional
        Called before every iterate; raises to abandon the refinement.
    on_iterate : callable, optional
        ``f(iteration, v_mid, growth_rate, v_lo, v_hi)`` after each iterate.
    """

    def __init__(
        self,
        builder: ReducedOperatorBuilder,
        eigen_solver: GeneralizedEigenSolver,
        tracker: RootTracker,
        check_cancelled: Optional[Callable[[], None]] = None,
        on_iterate: Optional[IterateCallback] = None,
    ) -> None:
        self._builder = builder
        self._solver = eigen_solver
        self._tracker = tracker
        self._check_cancelled = check_cancelled
        self._on_iterate = on_iterate

    def refine(
        self,
        bracket: CrossoverBracket,
        tol: float,
        max_iters: int,
    ) -> tuple[bool, FlutterRoot]:
        """Refine ``bracket``; return ``(converged, root)``.

        Raises
        ------
        BisectionDivergence
            If the tracked mode has no plausible correspondent at a midpoint.
        AssemblyFailure, EigensolveFailure
            From a midpoint evaluation, with ``bracket`` set to the last
            valid ``(V_lo, V_hi)``.
        """
        if tol <= 0.0:
            raise ValueError(f"tol must be > 0, got {tol}")
        if max_iters < 0:
            raise ValueError(f"max_iters must be >= 0, got {max_iters}")

        v_lo, v_hi = bracket.v_lower, bracket.v_upper
        lo, hi = bracket.lower, bracket.upper
        lo_ops = bracket.lower_operators or self._builder.build(v_lo)
        hi_ops = bracket.upper_operators or self._builder.build(v_hi)

        iterates = [(v_lo, lo.growth_rate), (v_hi, hi.growth_rate)]
        history = [(v_lo, v_hi, lo.growth_rate, hi.growth_rate)]
        reference = lo

        logger.info(
            "Bisection on mode %d in [%.8g, %.8g] (tol=%.3g, max_iters=%d)",
            bracket.mode_id, v_lo, v_hi, tol, max_iters,
        )

        if abs(lo.growth_rate) < tol:
            return True, self._make_root(
                bracket, v_lo, lo, lo_ops, True, 0, (v_lo, v_hi), iterates, history,
            )

        best = (v_lo, lo, lo_ops) if abs(lo.growth_rate) <= abs(hi.growth_rate) else (v_hi, hi, hi_ops)
        converged = False
        it = 0
        while True:
            if v_hi - v_lo < tol * v_hi:
                converged = True
                break
            if it >= max_iters:
                break
            if self._check_cancelled is not None:
                self._check_cancelled()

            v_mid = 0.5 * (v_lo + v_hi)
            mid, mid_ops = self._evaluate(v_mid, reference, (v_lo, v_hi))
            it += 1
            g = mid.growth_rate
            iterates.append((v_mid, g))
            if g <= 0.0:
                v_lo, lo, lo_ops = v_mid, mid, mid_ops
            else:
                v_hi, hi, hi_ops = v_mid, mid, mid_ops
            history.append((v_lo, v_hi, lo.growth_rate, hi.growth_rate))
            reference = mid

            logger.debug(
                "Bisection iterate %d: V=%.10g Re=%.6e bracket=[%.10g, %.10g]",
                it, v_mid, g, v_lo, v_hi,
            )
            if self._on_iterate is not None:
                self._on_iterate(it, v_mid, g, v_lo, v_hi)

            if abs(g) < abs(best[1].growth_rate):
                best = (v_mid, mid, mid_ops)
            if abs(g) < tol:
                converged = True
                break

        if converged and best[1].growth_rate != 0.0:
            best = self._interpolate(best, v_lo, v_hi, lo, hi, reference, iterates)

        if not converged:
            if abs(lo.growth_rate) <= abs(hi.growth_rate):
                best = (v_lo, lo, lo_ops)
            else:
                best = (v_hi, hi, hi_ops)
            logger.warning(
                "Bisection did not converge in %d iterations: bracket [%.10g, %.10g], "
                "best Re=%.6e at V=%.10g",
                it, v_lo, v_hi, best[1].growth_rate, best[0],
            )

        v_best, pair, ops = best
        return converged, self._make_root(
            bracket, v_best, pair, ops, converged, it, (v_lo, v_hi), iterates, history,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _evaluate(
        self,
        velocity: float,
        reference: EigenPair,
        bracket: tuple[float, float],
    ) -> tuple[EigenPair, ReducedOperatorPair]:
        try:
            ops = self._builder.build(velocity)
            pairs = self._solver.solve(ops.A, ops.B, velocity=velocity)
        except (AssemblyFailure, EigensolveFailure) as exc:
            exc.bracket = bracket
            logger.error(
                "Bisection evaluation failed at V=%.10g (bracket [%.10g, %.10g]): %s",
                velocity, bracket[0], bracket[1], exc,
            )
            raise

        idx, alignment = self._tracker.reidentify(reference, RootSet(velocity, pairs, ops))
        if idx < 0 or alignment < self._tracker.min_alignment:
            raise BisectionDivergence(
                f"Tracked mode lost at V={velocity:.10g}: best alignment "
                f"{alignment:.3f} < {self._tracker.min_alignment:.3f}",
                bracket=bracket,
                details={"velocity": velocity, "alignment": alignment},
            )
        return pairs[idx], ops

    def _interpolate(self, best, v_lo, v_hi, lo, hi, reference, iterates):
        """Evaluate the secant zero of the final bracket; keep it if better."""
        g_lo, g_hi = lo.growth_rate, hi.growth_rate
        if not g_hi > g_lo:
            return best
        v_lin = v_lo - g_lo * (v_hi - v_lo) / (g_hi - g_lo)
        if not v_lo <= v_lin <= v_hi or v_lin in (v_lo, v_hi):
            return best
        pair, ops = self._evaluate(v_lin, reference, (v_lo, v_hi))
        iterates.append((v_lin, pair.growth_rate))
        logger.debug("Secant estimate V=%.10g Re=%.6e", v_lin, pair.growth_rate)
        if abs(pair.growth_rate) < abs(best[1].growth_rate):
            return (v_lin, pair, ops)
        return best

    @staticmethod
    def _make_root(bracket, velocity, pair, ops, converged, iterations, final, iterates, history):
        return FlutterRoot(
            velocity=float(velocity),
            eigenvalue=pair.eigenvalue,
            eig_vec_right=pair.right,
            eig_vec_left=pair.left,
            operators=ops,
            mode_id=bracket.mode_id,
            converged=converged,
            iterations=iterations,
            bracket=(float(final[0]), float(final[1])),
            iterates=list(iterates),
            bracket_history=list(history),
        )
