"""Exception hierarchy for the flutter search engine.

``NoCrossingFound`` and unconverged bisections are *results*, not errors;
see :mod:`aeroflutter.fea.results`.
"""
from __future__ import annotations

from typing import Optional


class FlutterError(Exception):
    """Base exception for flutter analysis operations."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict] = None,
        bracket: Optional[tuple[float, float]] = None,
    ):
        """
        Args:
            message: Human-readable error message
            code: Error code for programmatic handling
            details: Additional error details
            bracket: Last valid ``(V_lo, V_hi)`` bracket, when raised
                during bisection refinement
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.bracket = bracket


class AssemblyFailure(FlutterError):
    """Raised when an external collaborator cannot assemble an operator."""

    def __init__(self, message: str, velocity: Optional[float] = None, details: Optional[dict] = None):
        super().__init__(message, code="ASSEMBLY_FAILURE", details=details)
        self.velocity = velocity


class EigensolveFailure(FlutterError):
    """Raised when the eigen backend does not converge."""

    def __init__(self, message: str, velocity: Optional[float] = None, details: Optional[dict] = None):
        super().__init__(message, code="EIGENSOLVE_FAILURE", details=details)
        self.velocity = velocity


class BisectionDivergence(FlutterError):
    """Raised when the tracked mode cannot be re-identified at a midpoint."""

    def __init__(
        self,
        message: str,
        bracket: Optional[tuple[float, float]] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, code="BISECTION_DIVERGENCE", details=details, bracket=bracket)


class StaleRootError(FlutterError):
    """Raised when a sensitivity is requested without a valid converged root."""

    def __init__(self, message: str, parameter: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, code="STALE_ROOT", details=details)
        self.parameter = parameter


class SearchCancelled(FlutterError):
    """Raised between samples or iterates after the caller cancelled a search."""

    def __init__(self, message: str = "Flutter search cancelled", details: Optional[dict] = None):
        super().__init__(message, code="CANCELLED", details=details)
