"""Flutter search driver: coarse sweep, bracket refinement, sensitivities.

Typical use::

    solver = FlutterSolver(assembler, parameters, FlutterConfig(), event_bus)
    solver.initialize(V, 500.0, 2500.0, 20, basis)
    found, root = solver.find_critical_root(tol=1e-6, max_bisection_iters=40)
    if found:
        dV_dh = solver.calculate_sensitivity(root, "thy")

Sweep samples are independent and may be evaluated by a thread pool;
mode tracking always runs afterwards over the velocity-ordered results.
"""
from __future__ import annotations

import logging
import os
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, TextIO, Union

import numpy as np

from aeroflutter.core.event_bus import EventBus
from aeroflutter.core.parameters import Parameter, ParameterSet
from aeroflutter.fea.bisection import BisectionRefiner
from aeroflutter.fea.config import CrossingPolicy, FlutterConfig
from aeroflutter.fea.eigen_solver import GeneralizedEigenSolver
from aeroflutter.fea.exceptions import (
    AssemblyFailure,
    EigensolveFailure,
    SearchCancelled,
    StaleRootError,
)
from aeroflutter.fea.reduced_operators import ReducedOperatorBuilder
from aeroflutter.fea.results import (
    CrossoverBracket,
    FlutterRoot,
    ModalBasis,
    NoCrossingFound,
    RootSet,
    SweepResult,
)
from aeroflutter.fea.root_tracker import RootTracker
from aeroflutter.fea.sensitivity import SensitivityEngine
from aeroflutter.fea.solver_interface import OperatorAssemblerInterface

logger = logging.getLogger(__name__)

SearchResult = tuple[bool, Union[FlutterRoot, NoCrossingFound]]


class FlutterSolver:
    """Find the onset velocity of flutter and its design sensitivities.

    Parameters
    ----------
    assembler : OperatorAssemblerInterface
        Source of full-order operators at any velocity.
    parameters : ParameterSet, optional
        Owning parameter set, used to resolve sensitivity parameters by
        name.
    config : FlutterConfig, optional
        Sweep and refinement settings.
    event_bus : EventBus, optional
        Receives ``flutter.*`` progress events.
    """

    def __init__(
        self,
        assembler: OperatorAssemblerInterface,
        parameters: Optional[ParameterSet] = None,
        config: Optional[FlutterConfig] = None,
        event_bus: Optional[EventBus] = None,
        eigen_solver: Optional[GeneralizedEigenSolver] = None,
        tracker: Optional[RootTracker] = None,
    ) -> None:
        self.config = config or FlutterConfig()
        self._assembler = assembler
        self._parameters = parameters
        self._event_bus = event_bus
        self._eigen_solver = eigen_solver or GeneralizedEigenSolver()
        self._tracker = tracker or RootTracker(min_alignment=self.config.min_alignment)
        self._output_file: Optional[str] = self.config.output_file

        self._cancel_event = threading.Event()
        self._generation = 0

        self._reference_velocity: Optional[float] = None
        self._v_lower = self.config.v_lower
        self._v_upper = self.config.v_upper
        self._n_divisions = self.config.n_divisions
        self._basis: Optional[ModalBasis] = None
        self._builder: Optional[ReducedOperatorBuilder] = None

        self._sweep: Optional[SweepResult] = None
        self._roots: list[FlutterRoot] = []
        self._critical: Optional[FlutterRoot] = None

    # ------------------------------------------------------------------
    # Setup and state
    # ------------------------------------------------------------------

    def initialize(
        self,
        velocity: Union[Parameter, float],
        v_lower: float,
        v_upper: float,
        n_divisions: int,
        basis: ModalBasis,
    ) -> None:
        """Configure the search range and the reduction basis.

        Re-initializing discards any previous sweep and roots.

        Raises
        ------
        ValueError
            If the range or division count is invalid.
        """
        if not v_upper > v_lower:
            raise ValueError(f"v_upper ({v_upper}) must be greater than v_lower ({v_lower})")
        if int(n_divisions) != n_divisions or n_divisions < 1:
            raise ValueError(f"n_divisions must be a positive integer, got {n_divisions}")
        if not isinstance(basis, ModalBasis):
            raise TypeError(f"basis must be a ModalBasis, got {type(basis).__name__}")

        self.clear()
        self._reference_velocity = float(velocity)
        self._v_lower = float(v_lower)
        self._v_upper = float(v_upper)
        self._n_divisions = int(n_divisions)
        self._basis = basis
        self._builder = ReducedOperatorBuilder(self._assembler, basis)
        logger.info(
            "Flutter search initialized: V in [%.6g, %.6g], %d divisions, "
            "%d modes (%s formulation)",
            self._v_lower, self._v_upper, self._n_divisions, basis.size,
            self._assembler.formulation,
        )

    @property
    def initialized(self) -> bool:
        return self._builder is not None

    @property
    def basis(self) -> Optional[ModalBasis]:
        return self._basis

    @property
    def builder(self) -> Optional[ReducedOperatorBuilder]:
        return self._builder

    @property
    def sweep(self) -> Optional[SweepResult]:
        return self._sweep

    @property
    def roots(self) -> list[FlutterRoot]:
        """Roots refined since the last :meth:`clear`, in search order."""
        return list(self._roots)

    @property
    def critical_root(self) -> Optional[FlutterRoot]:
        return self._critical

    @property
    def generation(self) -> int:
        return self._generation

    def clear(self) -> None:
        """Release the root history and invalidate all roots found so far."""
        self._generation += 1
        self._sweep = None
        self._roots = []
        self._critical = None
        self._cancel_event.clear()

    def cancel(self) -> None:
        """Abandon the running search at the next sample or iterate."""
        logger.info("Flutter search cancellation requested")
        self._cancel_event.set()

    def set_output_file(self, path: Optional[str]) -> None:
        """Write the sorted-roots listing to ``path`` after each search."""
        self._output_file = path

    # ------------------------------------------------------------------
    # Coarse sweep
    # ------------------------------------------------------------------

    def scan_for_roots(self) -> SweepResult:
        """Sample ``n_divisions + 1`` velocities, track modes, find brackets.

        Failed samples are skipped.  If fewer than two samples succeed the
        first failure is re-raised.
        """
        self._require_initialized()
        t0 = time.perf_counter()
        velocities = np.linspace(self._v_lower, self._v_upper, self._n_divisions + 1)

        history: list[RootSet] = []
        failed: dict[float, str] = {}
        first_error: Optional[Exception] = None
        for v, outcome in self._evaluate_samples(velocities):
            if isinstance(outcome, RootSet):
                history.append(outcome)
                self._emit(
                    "flutter.sample",
                    velocity=v,
                    max_growth_rate=outcome.max_growth_rate,
                    n_roots=len(outcome),
                )
            else:
                failed[v] = str(outcome)
                first_error = first_error or outcome
                logger.warning("Sample at V=%.6g failed: %s", v, outcome)
                self._emit(
                    "flutter.sample_failed",
                    velocity=v,
                    error=type(outcome).__name__,
                    message=str(outcome),
                )

        if len(history) < 2:
            logger.error(
                "Sweep produced %d usable samples out of %d", len(history), len(velocities),
            )
            raise first_error

        mode_map = self._tracker.track(history)
        crossings = self._tracker.find_crossings(history, mode_map, failed)
        for b in crossings:
            self._emit(
                "flutter.crossing",
                mode_id=b.mode_id,
                v_lower=b.v_lower,
                v_upper=b.v_upper,
                widened=b.widened,
            )

        self._sweep = SweepResult(
            velocities=velocities,
            history=history,
            failed=failed,
            mode_map=mode_map,
            crossings=crossings,
        )
        logger.info(
            "Sweep complete in %.3f s: %d/%d samples usable, %d crossing bracket(s)",
            time.perf_counter() - t0, len(history), len(velocities), len(crossings),
        )
        return self._sweep

    def _evaluate_sample(self, velocity: float) -> RootSet:
        ops = self._builder.build(velocity)
        pairs = self._eigen_solver.solve(ops.A, ops.B, velocity=velocity)
        return RootSet(velocity=velocity, pairs=pairs, operators=ops)

    def _evaluate_samples(self, velocities: np.ndarray):
        """Yield ``(velocity, RootSet | sample error)`` in velocity order."""
        n_workers = self.config.n_workers
        if n_workers <= 1:
            for v in velocities:
                self._check_cancelled()
                v = float(v)
                try:
                    yield v, self._evaluate_sample(v)
                except (AssemblyFailure, EigensolveFailure) as exc:
                    yield v, exc
            return

        with ThreadPoolExecutor(max_workers=n_workers) as pool:
            futures = [(float(v), pool.submit(self._evaluate_sample, float(v))) for v in velocities]
            for v, future in futures:
                if self._cancel_event.is_set():
                    for _, f in futures:
                        f.cancel()
                self._check_cancelled()
                try:
                    yield v, future.result()
                except (AssemblyFailure, EigensolveFailure) as exc:
                    yield v, exc

    # ------------------------------------------------------------------
    # Refinement
    # ------------------------------------------------------------------

    def find_critical_root(
        self,
        tol: Optional[float] = None,
        max_bisection_iters: Optional[int] = None,
    ) -> SearchResult:
        """Locate the critical flutter root.

        Returns ``(True, FlutterRoot)`` when a crossing was found and
        refined (check ``root.converged``), else ``(False, NoCrossingFound)``.
        The bracket refined is chosen by ``config.crossing_policy``.
        """
        tol, max_iters = self._search_settings(tol, max_bisection_iters)
        sweep = self._sweep or self.scan_for_roots()

        if not sweep.crossings:
            return self._no_crossing(sweep)

        if self.config.crossing_policy == CrossingPolicy.FIRST_BRACKET:
            root = self._refine(sweep.crossings[0], tol, max_iters)
        else:
            candidates = [
                self._refine(b, tol, max_iters) for b in sweep.crossings if not b.processed
            ]
            candidates += [r for r in self._roots if r not in candidates]
            converged = [r for r in candidates if r.converged]
            root = min(converged or candidates, key=lambda r: r.velocity)

        self._critical = root
        logger.info(
            "Critical root: V*=%.10g, lambda=%s, converged=%s",
            root.velocity, root.eigenvalue, root.converged,
        )
        self._write_output()
        return True, root

    def find_next_root(
        self,
        tol: Optional[float] = None,
        max_bisection_iters: Optional[int] = None,
    ) -> SearchResult:
        """Refine the next unprocessed bracket in velocity order."""
        tol, max_iters = self._search_settings(tol, max_bisection_iters)
        sweep = self._sweep or self.scan_for_roots()
        pending = [b for b in sweep.crossings if not b.processed]
        if not pending:
            return self._no_crossing(sweep)
        root = self._refine(pending[0], tol, max_iters)
        if self._critical is None:
            self._critical = root
        self._write_output()
        return True, root

    def _refine(self, bracket: CrossoverBracket, tol: float, max_iters: int) -> FlutterRoot:
        if bracket.root is not None:
            return bracket.root
        refiner = BisectionRefiner(
            self._builder,
            self._eigen_solver,
            self._tracker,
            check_cancelled=self._check_cancelled,
            on_iterate=self._on_bisection_iterate,
        )
        converged, root = refiner.refine(bracket, tol, max_iters)
        bracket.processed = True
        bracket.root = root

        names = set(self._assembler.parameter_names)
        vp = self._assembler.velocity_parameter
        if vp is not None:
            names.discard(vp.name)
        root.parameter_names = frozenset(names)
        root.generation = self._generation
        self._roots.append(root)

        self._emit(
            "flutter.root",
            velocity=root.velocity,
            growth_rate=root.growth_rate,
            frequency=root.frequency,
            mode_id=root.mode_id,
            converged=converged,
            iterations=root.iterations,
        )
        return root

    def _on_bisection_iterate(self, it: int, v_mid: float, g: float, v_lo: float, v_hi: float) -> None:
        self._emit(
            "flutter.bisection",
            iteration=it, velocity=v_mid, growth_rate=g, v_lower=v_lo, v_upper=v_hi,
        )

    def _no_crossing(self, sweep: SweepResult) -> SearchResult:
        max_growth = max((rs.max_growth_rate for rs in sweep.history), default=float("nan"))
        result = NoCrossingFound(
            v_lower=self._v_lower,
            v_upper=self._v_upper,
            n_samples=len(sweep.velocities),
            n_failed=len(sweep.failed),
            max_growth_rate=max_growth,
        )
        logger.info("%s", result)
        self._emit(
            "flutter.no_crossing",
            v_lower=result.v_lower,
            v_upper=result.v_upper,
            max_growth_rate=result.max_growth_rate,
        )
        self._write_output()
        return False, result

    # ------------------------------------------------------------------
    # Sensitivity
    # ------------------------------------------------------------------

    def calculate_sensitivity(
        self,
        root: Optional[FlutterRoot],
        parameter: Union[Parameter, str],
    ) -> float:
        """Return ``dV*/dp`` and store it (and ``dlambda/dp``) on ``root``.

        Raises
        ------
        StaleRootError
            Without a converged root of the current search, or for a
            parameter the root was not computed with respect to.  A
            ``Parameter`` must be the object the model reads, not a
            namesake.
        """
        name = parameter if isinstance(parameter, str) else parameter.name
        if root is None:
            raise StaleRootError("No flutter root available for sensitivity", parameter=name)
        if root.generation != self._generation or not any(root is r for r in self._roots):
            raise StaleRootError(
                f"Flutter root at V={root.velocity:.10g} is stale; run the search again",
                parameter=name,
            )
        if not root.converged:
            raise StaleRootError(
                f"Flutter root at V={root.velocity:.10g} did not converge",
                parameter=name,
            )
        if name not in root.parameter_names:
            raise StaleRootError(
                f"Parameter {name!r} is not among the root's parameters "
                f"{sorted(root.parameter_names)}",
                parameter=name,
            )
        param = self._resolve_parameter(parameter)
        if not self._builder.supports_sensitivity(param):
            raise StaleRootError(
                f"Parameter {name!r} is not the one the root was computed with, "
                "or the model has no operator derivative for it",
                parameter=name,
            )

        engine = SensitivityEngine(self._builder)
        dV, dlam = engine.flutter_velocity_sensitivity(root, param)
        root.sensitivities[name] = dV
        root.eigenvalue_sensitivities[name] = dlam
        self._emit(
            "flutter.sensitivity",
            parameter=name,
            value=dV,
            eigenvalue_sensitivity=[dlam.real, dlam.imag],
            velocity=root.velocity,
        )
        return dV

    def _resolve_parameter(self, parameter: Union[Parameter, str]) -> Parameter:
        if isinstance(parameter, Parameter):
            return parameter
        if self._parameters is None:
            raise StaleRootError(
                f"Cannot resolve parameter {parameter!r} by name without a ParameterSet",
                parameter=parameter,
            )
        try:
            return self._parameters.get(parameter)
        except KeyError as exc:
            raise StaleRootError(str(exc), parameter=parameter) from exc

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def sorted_roots_report(self) -> str:
        """Plain-text listing of all tracked and refined roots.

        One line per root: velocity, growth rate, frequency; sorted by
        velocity, then by growth rate.
        """
        rows = []
        if self._sweep is not None:
            for rs in self._sweep.history:
                rows.extend((rs.velocity, p.growth_rate, p.frequency) for p in rs.pairs)
        rows.extend((r.velocity, r.growth_rate, r.frequency) for r in self._roots)
        rows.sort(key=lambda row: (row[0], row[1]))

        lines = [
            f"# Flutter roots: V in [{self._v_lower:g}, {self._v_upper:g}], "
            f"{self._n_divisions} divisions",
            f"# {'velocity':>22s} {'growth_rate':>22s} {'frequency':>22s}",
        ]
        lines.extend(f"  {v:22.12e} {g:22.12e} {w:22.12e}" for v, g, w in rows)
        if self._critical is not None:
            c = self._critical
            lines.append(
                f"# critical: V*={c.velocity:.12e} growth_rate={c.growth_rate:.6e} "
                f"frequency={c.frequency:.6e} converged={c.converged}"
            )
        return "\n".join(lines) + "\n"

    def print_sorted_roots(self, stream: Optional[TextIO] = None) -> None:
        print(self.sorted_roots_report(), end="", file=stream or sys.stdout)

    def _write_output(self) -> None:
        if not self._output_file:
            return
        parent = os.path.dirname(os.path.abspath(self._output_file))
        os.makedirs(parent, exist_ok=True)
        with open(self._output_file, "w", encoding="utf-8") as fh:
            fh.write(self.sorted_roots_report())
        logger.info("Sorted roots written to %s", self._output_file)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_initialized(self) -> None:
        if not self.initialized:
            raise RuntimeError("FlutterSolver.initialize() must be called before searching")

    def _search_settings(self, tol, max_iters) -> tuple[float, int]:
        self._require_initialized()
        tol = self.config.tolerance if tol is None else tol
        max_iters = self.config.max_bisection_iters if max_iters is None else max_iters
        if tol <= 0.0:
            raise ValueError(f"tol must be > 0, got {tol}")
        if max_iters < 0:
            raise ValueError(f"max_bisection_iters must be >= 0, got {max_iters}")
        return tol, max_iters

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            self._cancel_event.clear()
            raise SearchCancelled()

    def _emit(self, event: str, **data) -> None:
        if self._event_bus is not None:
            self._event_bus.emit(event, data)
