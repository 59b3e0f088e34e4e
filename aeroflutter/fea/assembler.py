"""Full-order operator assembly for the flutter search.

Two assemblers implement :class:`OperatorAssemblerInterface`:

``BeamPistonTheoryAssembler``
    Euler-Bernoulli plate strip with linearized piston-theory loads.
    Element-level integrals depend on geometry only, so they are scattered
    once into unit global matrices (COO -> CSR, then symmetrized where the
    operator is symmetric).  Every velocity sample or parameter derivative
    is then a scalar combination of those unit matrices:

        K(V) = D * K_b + k(V) * A_g        (bending + aero stiffness)
        C(V) = d(V) * M_u                  (aero damping)
        M    = rho * b * h * M_u

    with the plate-strip rigidity ``D = E b h**3 / (12 (1 - nu**2))``.
    Boundary conditions are applied by DOF condensation.

``CallableAssembler``
    Wraps plain callables of the velocity, for synthetic or externally
    assembled operators.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Sequence

import numpy as np
import scipy.sparse as sp
from numpy.typing import NDArray

from aeroflutter.core.parameters import ConstantFieldFunction, Parameter
from aeroflutter.fea.config import BeamMesh
from aeroflutter.fea.elements import BeamElement
from aeroflutter.fea.exceptions import AssemblyFailure
from aeroflutter.fea.piston_theory import PistonTheory
from aeroflutter.fea.results import OperatorSet
from aeroflutter.fea.solver_interface import (
    FIRST_ORDER,
    FORMULATIONS,
    SECOND_ORDER,
    OperatorAssemblerInterface,
)

logger = logging.getLogger(__name__)

_DOFS_PER_ELEM = 4
_ENTRIES_PER_ELEM = _DOFS_PER_ELEM * _DOFS_PER_ELEM

# Local DOF offsets (w, theta) constrained at a node for each BC type
_BC_NODE_DOFS = {
    "simply-supported": {"left": (0,), "right": (0,)},
    "clamped": {"left": (0, 1), "right": (0, 1)},
    "cantilever": {"left": (0, 1)},
}


class BeamPistonTheoryAssembler(OperatorAssemblerInterface):
    """Assemble beam structural and piston-theory operators.

    Parameters
    ----------
    mesh : BeamMesh
        Line mesh of the strip.
    thickness, width, density, youngs_modulus, poisson_ratio : ConstantFieldFunction
        Section thickness ``h``, strip width ``b``, material density,
        Young's modulus and Poisson's ratio.
    piston_theory : PistonTheory, optional
        Aerodynamic model; without it the operators are purely structural.
    boundary_conditions : str
        ``"simply-supported"``, ``"clamped"`` or ``"cantilever"``.
    n_gauss : int
        Gauss-Legendre points per element.
    """

    formulation = SECOND_ORDER

    def __init__(
        self,
        mesh: BeamMesh,
        thickness: ConstantFieldFunction,
        width: ConstantFieldFunction,
        density: ConstantFieldFunction,
        youngs_modulus: ConstantFieldFunction,
        poisson_ratio: ConstantFieldFunction,
        piston_theory: Optional[PistonTheory] = None,
        boundary_conditions: str = "simply-supported",
        n_gauss: int = 4,
    ) -> None:
        bc = boundary_conditions.lower().strip()
        if bc not in _BC_NODE_DOFS:
            raise ValueError(
                f"Unsupported boundary_conditions: {boundary_conditions!r}. "
                f"Must be one of {tuple(_BC_NODE_DOFS)}."
            )
        self._mesh = mesh
        self.thickness = thickness
        self.width = width
        self.density = density
        self.youngs_modulus = youngs_modulus
        self.poisson_ratio = poisson_ratio
        self.piston_theory = piston_theory
        self.velocity_parameter = (
            piston_theory.velocity_parameter if piston_theory is not None else None
        )
        self.boundary_conditions = bc

        self._free_dofs = self._compute_free_dofs(mesh, bc)
        self._K_b, self._M_u, self._A_g = self._assemble_unit_matrices(
            mesh, BeamElement(n_gauss), self._free_dofs,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def mesh(self) -> BeamMesh:
        return self._mesh

    @property
    def free_dofs(self) -> NDArray[np.int64]:
        """Indices of the unconstrained DOFs in the full DOF numbering."""
        return self._free_dofs

    @property
    def n_free(self) -> int:
        return int(self._free_dofs.size)

    @property
    def structural_fields(self) -> tuple[ConstantFieldFunction, ...]:
        return (
            self.thickness, self.width, self.density,
            self.youngs_modulus, self.poisson_ratio,
        )

    @property
    def parameter_names(self) -> frozenset:
        names = {f.parameter.name for f in self.structural_fields}
        if self.piston_theory is not None:
            names |= self.piston_theory.parameter_names
        return frozenset(names)

    def supports_sensitivity(self, parameter: Parameter) -> bool:
        if any(f.depends_on(parameter) for f in self.structural_fields):
            return True
        return self.piston_theory is not None and self.piston_theory.depends_on(parameter)

    def bending_rigidity(self) -> float:
        """Plate-strip rigidity ``D = E b h^3 / (12 (1 - nu^2))``."""
        E = self.youngs_modulus.value()
        nu = self.poisson_ratio.value()
        h = self.thickness.value()
        b = self.width.value()
        return E * b * h ** 3 / (12.0 * (1.0 - nu * nu))

    def mass_per_length(self) -> float:
        return self.density.value() * self.width.value() * self.thickness.value()

    def assemble(self, velocity: float) -> OperatorSet:
        """Condensed stiffness, damping and mass at ``velocity``."""
        self._check_section()
        K = self.bending_rigidity() * self._K_b
        M = self.mass_per_length() * self._M_u
        C = None
        if self.piston_theory is not None:
            k_a, d_a = self.piston_theory.factors(velocity)
            K = K + k_a * self._A_g
            C = d_a * self._M_u
        return OperatorSet(stiffness=K, mass=M, damping=C)

    def assemble_sensitivity(self, parameter: Parameter, velocity: float) -> OperatorSet:
        """Analytic ``d(K, M, C)/dp`` by the chain rule over all fields."""
        self._check_section()
        E = self.youngs_modulus.value()
        nu = self.poisson_ratio.value()
        h = self.thickness.value()
        b = self.width.value()
        rho = self.density.value()
        D = self.bending_rigidity()

        dD = (
            D / E * self.youngs_modulus.derivative(parameter)
            + D * 2.0 * nu / (1.0 - nu * nu) * self.poisson_ratio.derivative(parameter)
            + 3.0 * D / h * self.thickness.derivative(parameter)
            + D / b * self.width.derivative(parameter)
        )
        dm = (
            b * h * self.density.derivative(parameter)
            + rho * h * self.width.derivative(parameter)
            + rho * b * self.thickness.derivative(parameter)
        )

        dK = dD * self._K_b
        dM = dm * self._M_u
        dC = None
        if self.piston_theory is not None:
            dk_a, dd_a = self.piston_theory.factor_derivatives(parameter, velocity)
            dK = dK + dk_a * self._A_g
            dC = dd_a * self._M_u
        return OperatorSet(stiffness=dK, mass=dM, damping=dC)

    def expand(self, vectors: NDArray) -> NDArray:
        """Scatter condensed vectors (n_free,) or (n_free, k) to all DOFs."""
        vectors = np.asarray(vectors)
        shape = (self._mesh.n_dof,) + vectors.shape[1:]
        full = np.zeros(shape, dtype=vectors.dtype)
        full[self._free_dofs] = vectors
        return full

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _check_section(self) -> None:
        values = {
            "thickness": self.thickness.value(),
            "width": self.width.value(),
            "density": self.density.value(),
            "youngs_modulus": self.youngs_modulus.value(),
        }
        bad = {k: v for k, v in values.items() if not (np.isfinite(v) and v > 0.0)}
        if bad:
            raise AssemblyFailure(
                f"Non-physical section properties: {bad}", details=bad,
            )
        nu = self.poisson_ratio.value()
        if not -1.0 < nu < 0.5:
            raise AssemblyFailure(
                f"Poisson's ratio must lie in (-1, 0.5), got {nu:g}",
                details={"poisson_ratio": nu},
            )

    @staticmethod
    def _compute_free_dofs(mesh: BeamMesh, bc: str) -> NDArray[np.int64]:
        constrained = set()
        for set_name, offsets in _BC_NODE_DOFS[bc].items():
            for node_idx in mesh.node_sets[set_name]:
                for off in offsets:
                    constrained.add(BeamMesh.DOFS_PER_NODE * int(node_idx) + off)
        free = np.array(
            [d for d in range(mesh.n_dof) if d not in constrained], dtype=np.int64,
        )
        logger.debug(
            "Boundary conditions %r: %d constrained DOFs, %d free",
            bc, len(constrained), free.size,
        )
        return free

    @staticmethod
    def _assemble_unit_matrices(
        mesh: BeamMesh,
        elem: BeamElement,
        free_dofs: NDArray[np.int64],
    ) -> tuple[sp.csr_matrix, sp.csr_matrix, sp.csr_matrix]:
        """Scatter unit bending, mass and aero-gradient matrices, condensed."""
        t0 = time.perf_counter()
        n_dof = mesh.n_dof
        n_elements = mesh.n_elements

        nnz = n_elements * _ENTRIES_PER_ELEM
        rows = np.empty(nnz, dtype=np.int64)
        cols = np.empty(nnz, dtype=np.int64)
        vals_K = np.empty(nnz, dtype=np.float64)
        vals_M = np.empty(nnz, dtype=np.float64)
        vals_A = np.empty(nnz, dtype=np.float64)

        local_i = np.repeat(np.arange(_DOFS_PER_ELEM), _DOFS_PER_ELEM)
        local_j = np.tile(np.arange(_DOFS_PER_ELEM), _DOFS_PER_ELEM)

        for e in range(n_elements):
            node_indices = mesh.elements[e]
            coords = mesh.nodes[node_indices]
            try:
                Ke = elem.stiffness_matrix(coords, 1.0)
                Me = elem.shape_product(coords)
                Ae = elem.shape_gradient_product(coords)
            except ValueError as exc:
                raise AssemblyFailure(
                    f"Element {e} is degenerate: {exc}", details={"element": e},
                ) from exc

            dof_map = np.array([
                2 * node_indices[0], 2 * node_indices[0] + 1,
                2 * node_indices[1], 2 * node_indices[1] + 1,
            ], dtype=np.int64)

            start = e * _ENTRIES_PER_ELEM
            end = start + _ENTRIES_PER_ELEM
            rows[start:end] = dof_map[local_i]
            cols[start:end] = dof_map[local_j]
            vals_K[start:end] = Ke.ravel()
            vals_M[start:end] = Me.ravel()
            vals_A[start:end] = Ae.ravel()

        K = sp.coo_matrix((vals_K, (rows, cols)), shape=(n_dof, n_dof)).tocsr()
        M = sp.coo_matrix((vals_M, (rows, cols)), shape=(n_dof, n_dof)).tocsr()
        A = sp.coo_matrix((vals_A, (rows, cols)), shape=(n_dof, n_dof)).tocsr()

        # K and M are symmetric up to scatter round-off; A is not symmetric
        K = (K + K.T) / 2.0
        M = (M + M.T) / 2.0

        K = K[free_dofs][:, free_dofs].tocsr()
        M = M[free_dofs][:, free_dofs].tocsr()
        A = A[free_dofs][:, free_dofs].tocsr()
        for mat in (K, M, A):
            mat.eliminate_zeros()

        logger.info(
            "Beam unit matrices assembled in %.3f s: %d elements, %d DOFs (%d free)",
            time.perf_counter() - t0, n_elements, n_dof, free_dofs.size,
        )
        return K, M, A


# ----------------------------------------------------------------------
# Callable adapter
# ----------------------------------------------------------------------

OperatorCallable = Callable[[float], object]


class CallableAssembler(OperatorAssemblerInterface):
    """Adapt callables of the velocity to the assembler contract.

    Parameters
    ----------
    stiffness, mass : callable
        ``f(velocity) -> matrix``.  For the first-order formulation these
        are the A-side and B-side operators.
    damping : callable, optional
        Second-order damping operator.
    parameters : sequence of Parameter
        Parameters the callables read (by closure).
    derivatives : dict, optional
        ``{parameter_name: f(velocity)}`` returning an :class:`OperatorSet`
        or a ``(d_stiffness, d_mass[, d_damping])`` tuple.
    velocity_parameter : Parameter, optional
        Parameter standing for the velocity; its entry in ``derivatives``
        (if any) is the analytic velocity derivative.
    formulation : str
        ``"first_order"`` (default) or ``"second_order"``.
    """

    def __init__(
        self,
        stiffness: OperatorCallable,
        mass: OperatorCallable,
        damping: Optional[OperatorCallable] = None,
        parameters: Sequence[Parameter] = (),
        derivatives: Optional[dict[str, OperatorCallable]] = None,
        velocity_parameter: Optional[Parameter] = None,
        formulation: str = FIRST_ORDER,
    ) -> None:
        if formulation not in FORMULATIONS:
            raise ValueError(
                f"Unknown formulation {formulation!r}, expected one of {FORMULATIONS}"
            )
        self.formulation = formulation
        self._stiffness = stiffness
        self._mass = mass
        self._damping = damping
        self._parameters = list(parameters)
        if velocity_parameter is not None and velocity_parameter not in self._parameters:
            self._parameters.append(velocity_parameter)
        self.velocity_parameter = velocity_parameter
        self._derivatives = dict(derivatives or {})

        unknown = set(self._derivatives) - {p.name for p in self._parameters}
        if unknown:
            raise ValueError(f"Derivatives given for unknown parameters: {sorted(unknown)}")

    @property
    def parameter_names(self) -> frozenset:
        return frozenset(p.name for p in self._parameters)

    def supports_sensitivity(self, parameter: Parameter) -> bool:
        return (
            any(parameter is p for p in self._parameters)
            and parameter.name in self._derivatives
        )

    def assemble(self, velocity: float) -> OperatorSet:
        K = self._call(self._stiffness, velocity, "stiffness")
        M = self._call(self._mass, velocity, "mass")
        C = self._call(self._damping, velocity, "damping") if self._damping else None
        return OperatorSet(stiffness=K, mass=M, damping=C)

    def assemble_sensitivity(self, parameter: Parameter, velocity: float) -> OperatorSet:
        if not self.supports_sensitivity(parameter):
            raise NotImplementedError(
                f"No operator derivative registered for parameter {parameter.name!r}"
            )
        out = self._call(self._derivatives[parameter.name], velocity, f"d/d{parameter.name}")
        if isinstance(out, OperatorSet):
            return out
        return OperatorSet(*out)

    @staticmethod
    def _call(func: OperatorCallable, velocity: float, what: str):
        try:
            out = func(velocity)
        except AssemblyFailure:
            raise
        except (ValueError, ArithmeticError, np.linalg.LinAlgError) as exc:
            raise AssemblyFailure(
                f"Failed to assemble {what} at V={velocity:g}: {exc}", velocity=velocity,
            ) from exc
        if isinstance(out, (OperatorSet, tuple)):
            return out
        dense = out.toarray() if sp.issparse(out) else np.asarray(out)
        if not np.all(np.isfinite(dense)):
            raise AssemblyFailure(
                f"Non-finite entries in {what} at V={velocity:g}", velocity=velocity,
            )
        return out
