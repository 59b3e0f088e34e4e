"""Abstract collaborator interfaces consumed by the flutter search."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from aeroflutter.core.parameters import Parameter
from aeroflutter.fea.results import ModalBasis, OperatorSet

FIRST_ORDER = "first_order"
SECOND_ORDER = "second_order"
FORMULATIONS = (FIRST_ORDER, SECOND_ORDER)


class OperatorAssemblerInterface(ABC):
    """Builds full-order operators at a given free-stream velocity.

    Implementations reference (never own) the :class:`Parameter` objects
    their operators depend on.  ``assemble`` must not mutate any shared
    state so that velocity samples can be evaluated concurrently.
    """

    #: ``"second_order"`` for ``M q'' + C q' + K q = 0``,
    #: ``"first_order"`` for operators already in ``A x = lambda B x`` form.
    formulation: str = SECOND_ORDER

    #: Parameter standing for the free-stream velocity, if any.
    velocity_parameter: Optional[Parameter] = None

    @abstractmethod
    def assemble(self, velocity: float) -> OperatorSet:
        """Full-order operators at ``velocity``.

        Raises
        ------
        AssemblyFailure
            If an operator cannot be assembled for the current parameter
            values.
        """
        ...

    @property
    @abstractmethod
    def parameter_names(self) -> frozenset:
        """Names of all parameters the assembled operators depend on."""
        ...

    def supports_sensitivity(self, parameter: Parameter) -> bool:
        """Whether ``assemble_sensitivity`` is available for ``parameter``."""
        return False

    def assemble_sensitivity(self, parameter: Parameter, velocity: float) -> OperatorSet:
        """Partial derivatives of the full-order operators w.r.t. ``parameter``."""
        raise NotImplementedError(
            f"{type(self).__name__} does not provide operator sensitivities"
        )

    @property
    def supports_velocity_derivative(self) -> bool:
        vp = self.velocity_parameter
        return vp is not None and self.supports_sensitivity(vp)

    def assemble_velocity_derivative(self, velocity: float) -> OperatorSet:
        """Partial derivatives of the full-order operators w.r.t. velocity."""
        if not self.supports_velocity_derivative:
            raise NotImplementedError(
                f"{type(self).__name__} does not provide a velocity derivative"
            )
        return self.assemble_sensitivity(self.velocity_parameter, velocity)


class ModalSolverInterface(ABC):
    """Produces the structural modal basis used for reduction."""

    @abstractmethod
    def solve_modes(self, n_modes: Optional[int] = None) -> ModalBasis:
        """Return the ``n_modes`` lowest structural modes.

        Implementations fall back to a configured count when ``n_modes``
        is omitted.

        Raises
        ------
        EigensolveFailure
            If the eigen backend does not converge.
        """
        ...
