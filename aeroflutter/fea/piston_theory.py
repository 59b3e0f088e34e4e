"""Linearized piston-theory aerodynamics for a supersonic plate strip.

The surface pressure of order-``n`` piston theory, linearized about a mean
flow angle ``alpha0``, acting on a strip of width ``b`` is

    p = rho_inf * V**2 / M * c * (dw/dx + (1/V) dw/dt)

with the correction coefficient

    c = 1 + (gamma + 1)/2 * (M alpha0)          (order >= 2)
          + (gamma + 1)/4 * (M alpha0)**2       (order == 3)

so the assembled aerodynamic stiffness and damping are

    K_a = k(V) * int N^T dN/dx dx,   k = b rho_inf c V**2 / M
    C_a = d(V) * int N^T N dx,       d = b rho_inf c V / M

This module evaluates ``k``, ``d`` and their partial derivatives with
respect to every parameter referenced by its field functions.
"""
from __future__ import annotations

from typing import Optional

from aeroflutter.core.parameters import ConstantFieldFunction, Parameter
from aeroflutter.fea.exceptions import AssemblyFailure


class PistonTheory:
    """Piston-theory load factors for a beam strip.

    Parameters
    ----------
    order : int
        Expansion order, 1 to 3.
    mach, rho_air, gamma, alpha0, width : ConstantFieldFunction
        Free-stream Mach number, density, ratio of specific heats, mean
        flow angle (rad) and strip width.
    velocity_parameter : Parameter, optional
        Parameter standing for the free-stream velocity.  The velocity
        value itself is always passed explicitly.
    """

    def __init__(
        self,
        order: int,
        mach: ConstantFieldFunction,
        rho_air: ConstantFieldFunction,
        gamma: ConstantFieldFunction,
        alpha0: ConstantFieldFunction,
        width: ConstantFieldFunction,
        velocity_parameter: Optional[Parameter] = None,
    ) -> None:
        if order not in (1, 2, 3):
            raise ValueError(f"Piston theory order must be 1, 2 or 3, got {order}")
        self.order = order
        self.mach = mach
        self.rho_air = rho_air
        self.gamma = gamma
        self.alpha0 = alpha0
        self.width = width
        self.velocity_parameter = velocity_parameter

    @property
    def fields(self) -> tuple[ConstantFieldFunction, ...]:
        return (self.mach, self.rho_air, self.gamma, self.alpha0, self.width)

    @property
    def parameter_names(self) -> frozenset:
        names = {f.parameter.name for f in self.fields}
        if self.velocity_parameter is not None:
            names.add(self.velocity_parameter.name)
        return frozenset(names)

    def depends_on(self, parameter: Parameter) -> bool:
        if parameter is self.velocity_parameter:
            return True
        return any(f.depends_on(parameter) for f in self.fields)

    def check(self) -> None:
        M = self.mach.value()
        if not M > 1.0:
            raise AssemblyFailure(
                f"Piston theory requires supersonic flow, got Mach {M:g}",
                details={"mach": M},
            )
        if self.rho_air.value() < 0.0:
            raise AssemblyFailure(
                f"Negative free-stream density {self.rho_air.value():g}",
                details={"rho_air": self.rho_air.value()},
            )
        if self.gamma.value() <= 0.0:
            raise AssemblyFailure(
                f"Ratio of specific heats must be > 0, got {self.gamma.value():g}",
                details={"gamma": self.gamma.value()},
            )

    # ------------------------------------------------------------------
    # Coefficient
    # ------------------------------------------------------------------

    def coefficient(self) -> float:
        """Order-dependent correction ``c`` (1 for first order)."""
        M, g, a0 = self.mach.value(), self.gamma.value(), self.alpha0.value()
        c = 1.0
        if self.order >= 2:
            c += 0.5 * (g + 1.0) * M * a0
        if self.order >= 3:
            c += 0.25 * (g + 1.0) * (M * a0) ** 2
        return c

    def _coefficient_partials(self) -> dict[str, float]:
        """``dc/dM``, ``dc/dgamma``, ``dc/dalpha0``."""
        M, g, a0 = self.mach.value(), self.gamma.value(), self.alpha0.value()
        dM = dg = da = 0.0
        if self.order >= 2:
            dM += 0.5 * (g + 1.0) * a0
            dg += 0.5 * M * a0
            da += 0.5 * (g + 1.0) * M
        if self.order >= 3:
            dM += 0.5 * (g + 1.0) * M * a0 * a0
            dg += 0.25 * (M * a0) ** 2
            da += 0.5 * (g + 1.0) * M * M * a0
        return {"mach": dM, "gamma": dg, "alpha0": da}

    # ------------------------------------------------------------------
    # Load factors
    # ------------------------------------------------------------------

    def factors(self, velocity: float) -> tuple[float, float]:
        """Return ``(k, d)``, the aero stiffness and damping factors."""
        self.check()
        b, rho = self.width.value(), self.rho_air.value()
        M = self.mach.value()
        q = b * rho * self.coefficient() / M
        return q * velocity * velocity, q * velocity

    def factor_derivatives(self, parameter: Parameter, velocity: float) -> tuple[float, float]:
        """Return ``(dk/dp, dd/dp)`` by the chain rule over all fields."""
        self.check()
        b, rho = self.width.value(), self.rho_air.value()
        M = self.mach.value()
        c = self.coefficient()
        dc = self._coefficient_partials()
        V = velocity

        # partials of q = b * rho * c / M
        dq_db = rho * c / M
        dq_drho = b * c / M
        dq_dM = b * rho * (dc["mach"] * M - c) / (M * M)
        dq_dg = b * rho * dc["gamma"] / M
        dq_da = b * rho * dc["alpha0"] / M

        dq = (
            dq_db * self.width.derivative(parameter)
            + dq_drho * self.rho_air.derivative(parameter)
            + dq_dM * self.mach.derivative(parameter)
            + dq_dg * self.gamma.derivative(parameter)
            + dq_da * self.alpha0.derivative(parameter)
        )
        dk = dq * V * V
        dd = dq * V
        if parameter is self.velocity_parameter:
            q = b * rho * c / M
            dk += 2.0 * q * V
            dd += q
        return dk, dd
