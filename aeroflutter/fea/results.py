"""Result containers for the modal and flutter analyses."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Optional

import numpy as np
import scipy.sparse as sp


@dataclass(frozen=True, eq=False)
class ModalBasis:
    """Ordered structural eigenvectors used to reduce the full-order system.

    ``vectors`` has shape ``(n_dof, n_modes)``; column ``i`` is mode ``i``.
    The array is copied and made read-only on construction, so a basis
    cannot change underneath a running flutter search.
    """
    vectors: np.ndarray
    frequencies_hz: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        vectors = np.array(self.vectors, dtype=np.float64, copy=True)
        if vectors.ndim == 1:
            vectors = vectors[:, np.newaxis]
        if vectors.ndim != 2 or vectors.shape[1] == 0:
            raise ValueError(
                f"Modal basis must be a non-empty (n_dof, n_modes) array, got shape {vectors.shape}"
            )
        if not np.all(np.isfinite(vectors)):
            raise ValueError("Modal basis contains non-finite entries")
        vectors.setflags(write=False)
        object.__setattr__(self, "vectors", vectors)
        if self.frequencies_hz is not None:
            freqs = np.array(self.frequencies_hz, dtype=np.float64, copy=True)
            if freqs.shape != (vectors.shape[1],):
                raise ValueError("frequencies_hz must have one entry per mode")
            freqs.setflags(write=False)
            object.__setattr__(self, "frequencies_hz", freqs)

    @classmethod
    def from_vectors(cls, vectors: list, frequencies_hz=None) -> ModalBasis:
        """Build from a list of 1-D mode shapes that must share one dimension."""
        if not vectors:
            raise ValueError("At least one basis vector is required")
        dims = {np.asarray(v).shape for v in vectors}
        if len(dims) != 1 or len(next(iter(dims))) != 1:
            raise ValueError(f"Basis vectors must be 1-D with equal length, got shapes {dims}")
        return cls(np.column_stack(vectors), frequencies_hz)

    @classmethod
    def identity(cls, n: int) -> ModalBasis:
        """Trivial basis for operators that are already reduced."""
        return cls(np.eye(n))

    @property
    def size(self) -> int:
        """Number of retained modes."""
        return int(self.vectors.shape[1])

    @property
    def n_dof(self) -> int:
        """Full-order dimension of each mode shape."""
        return int(self.vectors.shape[0])

    def __len__(self) -> int:
        return self.size

    def __getitem__(self, i: int) -> np.ndarray:
        return self.vectors[:, i]

    def project(self, operator) -> np.ndarray:
        """Return the dense reduced operator ``Phi^T @ operator @ Phi``."""
        if operator.shape != (self.n_dof, self.n_dof):
            raise ValueError(
                f"Operator shape {operator.shape} does not match basis dimension {self.n_dof}"
            )
        product = operator @ self.vectors
        if sp.issparse(product):
            product = product.toarray()
        return self.vectors.T @ np.asarray(product)


@dataclass(eq=False)
class OperatorSet:
    """Full-order operators returned by an assembler at one velocity.

    For second-order (structural dynamics) systems these are the stiffness,
    damping and mass operators of ``M q'' + C q' + K q = 0``.  For
    first-order systems ``stiffness`` is the A-side and ``mass`` the
    B-side operator of ``A x = lambda B x`` and ``damping`` is unused.
    """
    stiffness: object
    mass: object
    damping: Optional[object] = None


@dataclass(eq=False)
class ReducedOperatorPair:
    """Small dense operators ``(A(V), B(V))`` of the reduced eigenproblem."""
    velocity: float
    A: np.ndarray
    B: np.ndarray

    @property
    def dimension(self) -> int:
        return int(self.A.shape[0])


@dataclass(eq=False)
class EigenPair:
    """One eigenvalue ``lambda = sigma + i*omega`` with its eigenvectors.

    ``right`` satisfies ``A x = lambda B x`` and is scaled so that
    ``x^T B x = 1``.  ``left`` satisfies ``y^T A = lambda y^T B`` and is
    scaled so that ``y^T B x = 1``.
    """
    eigenvalue: complex
    right: np.ndarray
    left: Optional[np.ndarray] = None
    index: int = 0

    @property
    def growth_rate(self) -> float:
        return float(np.real(self.eigenvalue))

    @property
    def frequency(self) -> float:
        return float(np.imag(self.eigenvalue))


@dataclass(eq=False)
class RootSet:
    """All eigenpairs found at one velocity sample."""
    velocity: float
    pairs: list[EigenPair]
    operators: ReducedOperatorPair

    def __len__(self) -> int:
        return len(self.pairs)

    def __iter__(self) -> Iterator[EigenPair]:
        return iter(self.pairs)

    def __getitem__(self, i: int) -> EigenPair:
        return self.pairs[i]

    @property
    def growth_rates(self) -> np.ndarray:
        return np.array([p.growth_rate for p in self.pairs], dtype=np.float64)

    @property
    def max_growth_rate(self) -> float:
        return float(self.growth_rates.max()) if self.pairs else float("nan")


@dataclass(eq=False)
class CrossoverBracket:
    """A velocity interval in which one tracked mode goes unstable.

    ``lower.growth_rate <= 0 < upper.growth_rate`` holds on construction.
    ``widened`` is set when failed samples lie inside the interval.
    ``root`` holds the refined root once the bracket is processed.
    """
    mode_id: int
    v_lower: float
    v_upper: float
    lower: EigenPair
    upper: EigenPair
    widened: bool = False
    processed: bool = False
    lower_operators: Optional[ReducedOperatorPair] = None
    upper_operators: Optional[ReducedOperatorPair] = None
    root: Optional[FlutterRoot] = None

    @property
    def width(self) -> float:
        return self.v_upper - self.v_lower


@dataclass(eq=False)
class SweepResult:
    """Outcome of the coarse velocity sweep.

    Attributes
    ----------
    velocities : np.ndarray
        The ``n_divisions + 1`` requested sample velocities.
    history : list[RootSet]
        Usable samples in ascending velocity order (the root history).
    failed : dict[float, str]
        Velocity -> error message of samples that could not be evaluated.
    mode_map : np.ndarray
        ``(len(history), n_modes)`` integer array; ``mode_map[k, m]`` is the
        index into ``history[k].pairs`` of tracked mode ``m`` (``-1`` once
        the mode is lost).
    crossings : list[CrossoverBracket]
        All crossover brackets, sorted by lower velocity.
    """
    velocities: np.ndarray
    history: list[RootSet]
    failed: dict[float, str]
    mode_map: np.ndarray
    crossings: list[CrossoverBracket] = field(default_factory=list)

    @property
    def n_modes(self) -> int:
        return int(self.mode_map.shape[1]) if self.mode_map.size else 0

    @property
    def found(self) -> bool:
        return bool(self.crossings)

    def growth_rate_history(self, mode_id: int) -> tuple[np.ndarray, np.ndarray]:
        """Velocities and growth rates of one tracked mode."""
        vs, gs = [], []
        for k, root_set in enumerate(self.history):
            idx = self.mode_map[k, mode_id]
            if idx >= 0:
                vs.append(root_set.velocity)
                gs.append(root_set.pairs[idx].growth_rate)
        return np.array(vs), np.array(gs)


@dataclass(frozen=True)
class NoCrossingFound:
    """Negative search result: no mode went unstable in the swept range."""
    v_lower: float
    v_upper: float
    n_samples: int
    n_failed: int
    max_growth_rate: float

    def __str__(self) -> str:
        return (
            f"No flutter crossing in [{self.v_lower:g}, {self.v_upper:g}] "
            f"({self.n_samples} samples, {self.n_failed} failed, "
            f"max growth rate {self.max_growth_rate:.6e})"
        )


@dataclass(eq=False)
class FlutterRoot:
    """The critical eigenpair at the flutter velocity ``V*``.

    ``converged`` is False when bisection hit its iteration cap; the root
    is then the best available estimate.  ``iterates`` records
    ``(V, Re lambda)`` of the bracket ends followed by every bisection
    midpoint, in evaluation order.
    """
    velocity: float
    eigenvalue: complex
    eig_vec_right: np.ndarray
    eig_vec_left: Optional[np.ndarray]
    operators: ReducedOperatorPair
    mode_id: int
    converged: bool
    iterations: int
    bracket: tuple[float, float]
    iterates: list[tuple[float, float]] = field(default_factory=list)
    bracket_history: list[tuple[float, float, float, float]] = field(default_factory=list)
    parameter_names: frozenset = frozenset()
    generation: int = 0
    sensitivities: dict[str, float] = field(default_factory=dict)
    eigenvalue_sensitivities: dict[str, complex] = field(default_factory=dict)

    @property
    def growth_rate(self) -> float:
        return float(np.real(self.eigenvalue))

    @property
    def frequency(self) -> float:
        return float(np.imag(self.eigenvalue))

    @property
    def V(self) -> float:
        return self.velocity

    def structural_shape(self, basis: ModalBasis) -> np.ndarray:
        """Complex flutter mode ``Phi @ q`` in the basis' DOF numbering.

        For a second-order state ``[q; lambda q]`` only the displacement
        half ``q`` is used.
        """
        x = np.asarray(self.eig_vec_right)
        n = basis.size
        if x.shape[0] == 2 * n:
            x = x[:n]
        elif x.shape[0] != n:
            raise ValueError(
                f"Eigenvector of length {x.shape[0]} does not match a basis of {n} modes"
            )
        return basis.vectors @ x

    def as_dict(self) -> dict:
        return {
            "velocity": self.velocity,
            "growth_rate": self.growth_rate,
            "frequency": self.frequency,
            "mode_id": self.mode_id,
            "converged": self.converged,
            "iterations": self.iterations,
            "bracket": list(self.bracket),
            "sensitivities": dict(self.sensitivities),
        }
