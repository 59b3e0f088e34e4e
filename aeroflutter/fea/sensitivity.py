"""Eigenvalue and flutter-velocity sensitivities at a converged root.

For the reduced problem ``A x = lambda B x`` with left eigenvector ``y``
(``y^T A = lambda y^T B``) the first-order eigenvalue sensitivity is

    dlambda/dp = y^T (dA/dp - lambda dB/dp) x / (y^T B x)

and, since the flutter condition is ``Re(lambda(V, p)) = 0``, implicit
differentiation gives

    dV*/dp = -Re(dlambda/dp) / (dRe(lambda)/dV)

The velocity derivative comes from the assembler's analytic derivative
when one is available, otherwise from a finite difference of the last two
distinct bisection iterates.
"""
from __future__ import annotations

import logging

import numpy as np

from aeroflutter.core.parameters import Parameter
from aeroflutter.fea.exceptions import EigensolveFailure, FlutterError
from aeroflutter.fea.reduced_operators import ReducedOperatorBuilder
from aeroflutter.fea.results import FlutterRoot

logger = logging.getLogger(__name__)


class SensitivityEngine:
    """Sensitivities of a :class:`FlutterRoot` (no internal iteration)."""

    def __init__(self, builder: ReducedOperatorBuilder) -> None:
        self._builder = builder

    def eigenvalue_sensitivity(self, root: FlutterRoot, parameter: Parameter) -> complex:
        """``dlambda/dp`` at fixed velocity ``V*``."""
        dA, dB = self._builder.build_sensitivity(parameter, root.velocity)
        return self._perturbation(root, dA, dB)

    def growth_rate_velocity_slope(self, root: FlutterRoot) -> float:
        """``dRe(lambda)/dV`` at the root."""
        if self._builder.supports_velocity_derivative:
            dA, dB = self._builder.build_velocity_derivative(root.velocity)
            slope = float(np.real(self._perturbation(root, dA, dB)))
            logger.debug("Analytic dRe/dV at V=%.10g: %.6e", root.velocity, slope)
            return slope
        return self._finite_difference_slope(root)

    def flutter_velocity_sensitivity(
        self, root: FlutterRoot, parameter: Parameter,
    ) -> tuple[float, complex]:
        """Return ``(dV*/dp, dlambda/dp)``."""
        dlam = self.eigenvalue_sensitivity(root, parameter)
        slope = self.growth_rate_velocity_slope(root)
        if slope == 0.0 or not np.isfinite(slope):
            raise FlutterError(
                f"Growth rate is stationary in V at V*={root.velocity:.10g}; "
                "flutter velocity sensitivity is undefined",
                code="DEGENERATE_CROSSING",
                details={"slope": slope},
            )
        dV = -float(np.real(dlam)) / slope
        logger.info(
            "Sensitivity w.r.t. %r: dlambda/dp=%s, dRe/dV=%.6e, dV*/dp=%.6e",
            parameter.name, dlam, slope, dV,
        )
        return dV, dlam

    # ------------------------------------------------------------------

    @staticmethod
    def _perturbation(root: FlutterRoot, dA: np.ndarray, dB: np.ndarray) -> complex:
        x = root.eig_vec_right
        y = root.eig_vec_left
        if y is None:
            raise EigensolveFailure(
                f"No left eigenvector at V*={root.velocity:.10g} (defective eigenvalue)",
                velocity=root.velocity,
            )
        lam = root.eigenvalue
        num = y @ ((dA - lam * dB) @ x)
        den = y @ (root.operators.B @ x)
        return complex(num / den)

    @staticmethod
    def _finite_difference_slope(root: FlutterRoot) -> float:
        pts = root.iterates
        if len(pts) < 2:
            raise FlutterError(
                "At least two bisection iterates are needed for a velocity slope",
                code="DEGENERATE_CROSSING",
            )
        v2, g2 = pts[-1]
        for v1, g1 in reversed(pts[:-1]):
            if v1 != v2:
                slope = (g2 - g1) / (v2 - v1)
                logger.debug(
                    "Finite-difference dRe/dV from V=%.10g, %.10g: %.6e", v1, v2, slope,
                )
                return float(slope)
        raise FlutterError(
            "Bisection iterates do not span distinct velocities",
            code="DEGENERATE_CROSSING",
        )
