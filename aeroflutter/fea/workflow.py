"""Beam piston-theory flutter analysis workflow.

Orchestrates the complete analysis of a supersonic plate strip:

1. **Parameters** -- register every physical quantity with the engine.
2. **Model** -- beam mesh, field functions, piston theory, assembler.
3. **Modal analysis** -- structural modes used as the reduction basis.
4. **Flutter search** -- coarse sweep, tracking and bisection.
5. **Sensitivity** -- ``dV*/dp`` for any structural or flow parameter.

Each step delegates to its dedicated module; this module only wires the
objects together and records results with the engine.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Union

import numpy as np

from aeroflutter.core.engine import Engine
from aeroflutter.core.parameters import ConstantFieldFunction, Parameter
from aeroflutter.fea.assembler import BeamPistonTheoryAssembler
from aeroflutter.fea.config import BeamConfig, FlutterConfig, ModalConfig, PistonTheoryConfig
from aeroflutter.fea.exceptions import StaleRootError
from aeroflutter.fea.flutter_solver import FlutterSolver
from aeroflutter.fea.modal_solver import ModalSolver
from aeroflutter.fea.piston_theory import PistonTheory
from aeroflutter.fea.results import FlutterRoot, ModalBasis, NoCrossingFound, SweepResult

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------

#: Default value of every model parameter (SI units).
DEFAULT_PARAMETERS = {
    "thy": 0.06,       # section thickness h
    "thz": 1.0,        # strip width b
    "rho": 2.8e3,      # material density
    "E": 72.0e9,       # Young's modulus
    "nu": 0.33,        # Poisson's ratio
    "V": 0.0,          # free-stream velocity
    "mach": 3.0,
    "rho_air": 1.05,
    "gamma": 1.4,
    "alpha0": 0.0,     # mean flow angle (rad)
}

#: Parameters whose flutter-velocity sensitivities are reported by default.
SENSITIVITY_PARAMETERS = ("E", "nu", "thy", "thz")


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


@dataclass
class FlutterAnalysisResult:
    """Outcome of :meth:`BeamPistonTheoryFlutterAnalysis.solve`.

    Parameters
    ----------
    found : bool
        Whether a flutter crossing was found in the velocity range.
    root : FlutterRoot or None
        Critical root when ``found``.
    no_crossing : NoCrossingFound or None
        Negative result when not ``found``.
    frequencies_hz : np.ndarray
        Natural frequencies of the reduction basis.
    sweep : SweepResult or None
        Coarse sweep with tracked modes and crossing brackets.
    sensitivities : dict[str, float]
        ``dV*/dp`` per parameter name, filled by ``sensitivity_solve``.
    solve_time_s : float
        Wall-clock time of the modal solve and flutter search.
    """

    found: bool
    root: Optional[FlutterRoot]
    no_crossing: Optional[NoCrossingFound]
    frequencies_hz: np.ndarray
    sweep: Optional[SweepResult]
    sensitivities: dict[str, float] = field(default_factory=dict)
    solve_time_s: float = 0.0

    @property
    def flutter_velocity(self) -> Optional[float]:
        return self.root.velocity if self.root is not None else None

    def as_dict(self) -> dict:
        out = {
            "found": self.found,
            "frequencies_hz": [float(f) for f in self.frequencies_hz],
            "solve_time_s": self.solve_time_s,
            "sensitivities": dict(self.sensitivities),
        }
        if self.root is not None:
            out["root"] = self.root.as_dict()
        if self.no_crossing is not None:
            out["no_crossing"] = {
                "v_lower": self.no_crossing.v_lower,
                "v_upper": self.no_crossing.v_upper,
                "n_samples": self.no_crossing.n_samples,
                "n_failed": self.no_crossing.n_failed,
                "max_growth_rate": self.no_crossing.max_growth_rate,
            }
        return out


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


class BeamPistonTheoryFlutterAnalysis:
    """Flutter analysis of a beam strip under linearized piston theory.

    Model settings not passed explicitly are read from the engine's
    configuration (``structure``, ``parameters`` and ``flutter`` sections).

    Parameters
    ----------
    engine : Engine
        Session context; owns the parameters, event bus and logs.
        Initialized here if needed.
    beam : BeamConfig, optional
        Geometry and discretization.
    piston : PistonTheoryConfig, optional
        Piston-theory order.
    flutter : FlutterConfig, optional
        Sweep and refinement settings.
    n_modes : int, optional
        Size of the structural reduction basis; overrides the configured
        count.
    modal : ModalConfig, optional
        Modal solve settings.  Takes precedence over ``n_modes``.
    parameter_values : dict, optional
        Overrides for :data:`DEFAULT_PARAMETERS`.
    """

    def __init__(
        self,
        engine: Engine,
        beam: Optional[BeamConfig] = None,
        piston: Optional[PistonTheoryConfig] = None,
        flutter: Optional[FlutterConfig] = None,
        n_modes: Optional[int] = None,
        modal: Optional[ModalConfig] = None,
        parameter_values: Optional[dict] = None,
    ) -> None:
        if not engine.initialized:
            engine.initialize()
        self._engine = engine
        cfg = engine.config

        structure = cfg.section("structure")
        cfg_params = cfg.section("parameters")
        self._beam_config = beam or BeamConfig(
            length=float(structure.get("length", 10.0)),
            n_elements=int(structure.get("n_elements", 50)),
            boundary_conditions=structure.get("boundary_conditions", "simply-supported"),
        )
        self._piston_config = piston or PistonTheoryConfig(
            order=int(cfg_params.get("piston_order", 1)),
        )
        self.flutter_config = flutter or FlutterConfig.from_app_config(cfg)
        self.modal_config = modal or ModalConfig.from_app_config(cfg, n_modes=n_modes)

        values = dict(DEFAULT_PARAMETERS)
        values.update({k: v for k, v in cfg_params.items() if k in DEFAULT_PARAMETERS})
        if parameter_values:
            unknown = set(parameter_values) - set(DEFAULT_PARAMETERS)
            if unknown:
                raise ValueError(
                    f"Unknown parameters {sorted(unknown)}. "
                    f"Valid names are: {sorted(DEFAULT_PARAMETERS)}"
                )
            values.update(parameter_values)
        self._register_parameters(values)

        self._mesh = self._beam_config.build_mesh()
        self._assembler = self._build_assembler()
        self._modal_solver = ModalSolver(self._assembler, self.modal_config)
        self._flutter_solver = FlutterSolver(
            self._assembler,
            parameters=engine.parameters,
            config=self.flutter_config,
            event_bus=engine.event_bus,
        )
        self._basis: Optional[ModalBasis] = None
        self._result: Optional[FlutterAnalysisResult] = None

    # ------------------------------------------------------------------
    # Model construction
    # ------------------------------------------------------------------

    def _register_parameters(self, values: dict) -> None:
        params = self._engine.parameters
        for name, value in values.items():
            if name in params:
                params.get(name).value = value
            else:
                params.add(name, value)
        logger.info("Registered parameters: %s", params.values())

    def _field(self, name: str) -> ConstantFieldFunction:
        return ConstantFieldFunction(name, self._engine.parameters.get(name))

    def _build_assembler(self) -> BeamPistonTheoryAssembler:
        width = self._field("thz")
        piston = PistonTheory(
            order=self._piston_config.order,
            mach=self._field("mach"),
            rho_air=self._field("rho_air"),
            gamma=self._field("gamma"),
            alpha0=self._field("alpha0"),
            width=width,
            velocity_parameter=self._engine.parameters.get("V"),
        )
        return BeamPistonTheoryAssembler(
            self._mesh,
            thickness=self._field("thy"),
            width=width,
            density=self._field("rho"),
            youngs_modulus=self._field("E"),
            poisson_ratio=self._field("nu"),
            piston_theory=piston,
            boundary_conditions=self._beam_config.boundary_conditions,
            n_gauss=self._beam_config.n_gauss,
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def n_modes(self) -> int:
        return self.modal_config.n_modes

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def assembler(self) -> BeamPistonTheoryAssembler:
        return self._assembler

    @property
    def flutter_solver(self) -> FlutterSolver:
        return self._flutter_solver

    @property
    def basis(self) -> Optional[ModalBasis]:
        return self._basis

    @property
    def result(self) -> Optional[FlutterAnalysisResult]:
        return self._result

    def get_parameter(self, name: str) -> Parameter:
        """Look up a model parameter by name.

        Raises
        ------
        KeyError
            If no parameter has that name; the valid names are logged.
        """
        params = self._engine.parameters
        if name not in params:
            logger.error(
                "Parameter not found by name: %s. Valid names are: %s",
                name, ", ".join(params.names()),
            )
        return params.get(name)

    # ------------------------------------------------------------------
    # Analysis steps
    # ------------------------------------------------------------------

    def solve_modes(self) -> ModalBasis:
        """Compute the structural reduction basis."""
        self._basis = self._modal_solver.solve_modes()
        return self._basis

    def mode_shapes(self) -> np.ndarray:
        """Basis vectors expanded to all DOFs, shape ``(n_dof, n_modes)``."""
        if self._basis is None:
            self.solve_modes()
        return self._assembler.expand(self._basis.vectors)

    def flutter_mode_shape(self, normalize: bool = True) -> np.ndarray:
        """Complex structural flutter mode of the critical root at all DOFs.

        With ``normalize`` the largest component is scaled to ``1 + 0j``.

        Raises
        ------
        StaleRootError
            If no flutter root is available.
        """
        root = self._flutter_solver.critical_root
        if root is None:
            raise StaleRootError("No flutter root available; run solve() first")
        shape = self._assembler.expand(root.structural_shape(self._flutter_solver.basis))
        if normalize:
            shape = shape / shape[np.argmax(np.abs(shape))]
        return shape

    def solve(
        self,
        tol: Optional[float] = None,
        max_bisection_iters: Optional[int] = None,
    ) -> FlutterAnalysisResult:
        """Run the modal analysis and the flutter search."""
        t_start = time.perf_counter()
        if self._engine.current_session is None:
            self._engine.create_session()

        basis = self.solve_modes()
        fc = self.flutter_config
        self._flutter_solver.initialize(
            self.get_parameter("V"), fc.v_lower, fc.v_upper, fc.n_divisions, basis,
        )
        found, outcome = self._flutter_solver.find_critical_root(tol, max_bisection_iters)

        result = FlutterAnalysisResult(
            found=found,
            root=outcome if found else None,
            no_crossing=None if found else outcome,
            frequencies_hz=np.array(basis.frequencies_hz),
            sweep=self._flutter_solver.sweep,
            solve_time_s=time.perf_counter() - t_start,
        )
        self._result = result
        self._engine.record_calculation(
            inputs={
                "parameters": self._engine.parameters.values(),
                "n_modes": self.n_modes,
                "v_lower": fc.v_lower,
                "v_upper": fc.v_upper,
                "n_divisions": fc.n_divisions,
                "tolerance": fc.tolerance if tol is None else tol,
            },
            outputs=result.as_dict(),
            metadata={"boundary_conditions": self._beam_config.boundary_conditions},
            event_type="calculation.flutter",
        )
        if found:
            logger.info(
                "Flutter found: V*=%.8g m/s (converged=%s) in %.2f s",
                outcome.velocity, outcome.converged, result.solve_time_s,
            )
        else:
            logger.info("No flutter found: %s", outcome)
        return result

    def sensitivity_solve(self, parameter: Union[str, Parameter]) -> float:
        """``dV*/dp`` of the critical root found by :meth:`solve`.

        Raises
        ------
        StaleRootError
            If no converged root is available.
        """
        if isinstance(parameter, str):
            parameter = self.get_parameter(parameter)
        root = self._flutter_solver.critical_root
        dV = self._flutter_solver.calculate_sensitivity(root, parameter)
        if self._result is not None:
            self._result.sensitivities[parameter.name] = dV
        self._engine.record_calculation(
            inputs={"parameter": parameter.name, "value": parameter.value},
            outputs={"dV_dp": dV, "flutter_velocity": root.velocity},
            event_type="calculation.sensitivity",
        )
        return dV

    def clear(self) -> None:
        """Invalidate the current flutter solution."""
        self._flutter_solver.clear()
        self._result = None
