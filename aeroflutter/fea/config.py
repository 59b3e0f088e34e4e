"""FEA and flutter-search configuration dataclasses."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

_BOUNDARY_CONDITIONS = ("simply-supported", "clamped", "cantilever")


class CrossingPolicy(str, enum.Enum):
    """Which crossover bracket ``find_critical_root`` reports.

    FIRST_BRACKET
        Refine only the lowest-velocity bracket of the coarse sweep.  When
        several modes cross inside that same bracket, the one with the
        largest growth rate at the upper end is refined.
    LOWEST_VELOCITY
        Refine every bracket found by the sweep and report the converged
        root with the lowest flutter velocity.
    """
    FIRST_BRACKET = "first_bracket"
    LOWEST_VELOCITY = "lowest_velocity"


@dataclass
class BeamMesh:
    """Container for a 1-D two-node beam mesh."""
    nodes: np.ndarray              # (N,) axial coordinates in meters
    elements: np.ndarray           # (E, 2) connectivity
    node_sets: dict[str, np.ndarray]

    DOFS_PER_NODE = 2              # transverse deflection w, rotation theta

    @property
    def n_nodes(self) -> int:
        return int(self.nodes.shape[0])

    @property
    def n_elements(self) -> int:
        return int(self.elements.shape[0])

    @property
    def n_dof(self) -> int:
        """Total degrees of freedom (2 per node)."""
        return self.n_nodes * self.DOFS_PER_NODE

    @property
    def length(self) -> float:
        return float(self.nodes.max() - self.nodes.min())

    @classmethod
    def uniform(cls, length: float, n_elements: int, x0: float = 0.0) -> BeamMesh:
        """Evenly spaced line mesh from ``x0`` to ``x0 + length``."""
        if length <= 0.0:
            raise ValueError(f"Beam length must be > 0, got {length}")
        if n_elements < 1:
            raise ValueError(f"n_elements must be >= 1, got {n_elements}")
        nodes = np.linspace(x0, x0 + length, n_elements + 1)
        elements = np.column_stack([
            np.arange(n_elements, dtype=np.int64),
            np.arange(1, n_elements + 1, dtype=np.int64),
        ])
        return cls(
            nodes=nodes,
            elements=elements,
            node_sets={
                "left": np.array([0], dtype=np.int64),
                "right": np.array([n_elements], dtype=np.int64),
            },
        )


@dataclass
class BeamConfig:
    """Geometry and discretization of the reference beam model."""
    length: float = 10.0
    n_elements: int = 50
    boundary_conditions: str = "simply-supported"
    n_gauss: int = 4

    def __post_init__(self) -> None:
        if self.length <= 0.0:
            raise ValueError(f"length must be > 0, got {self.length}")
        if self.n_elements < 1:
            raise ValueError(f"n_elements must be >= 1, got {self.n_elements}")
        if self.n_gauss < 4:
            # N^T N is a degree-6 polynomial
            raise ValueError(f"n_gauss must be >= 4, got {self.n_gauss}")
        self.boundary_conditions = _check_bc(self.boundary_conditions)

    def build_mesh(self) -> BeamMesh:
        return BeamMesh.uniform(self.length, self.n_elements)


@dataclass
class PistonTheoryConfig:
    """Order of the linearized piston-theory expansion (1, 2 or 3)."""
    order: int = 1

    def __post_init__(self) -> None:
        if self.order not in (1, 2, 3):
            raise ValueError(f"Piston theory order must be 1, 2 or 3, got {self.order}")


def _check_bc(value: str) -> str:
    bc = value.lower().strip()
    if bc not in _BOUNDARY_CONDITIONS:
        raise ValueError(
            f"Unsupported boundary_conditions: {value!r}. "
            f"Must be one of {_BOUNDARY_CONDITIONS}."
        )
    return bc


@dataclass
class ModalConfig:
    """Configuration for the structural modal (eigenvalue) analysis.

    ``sigma`` is the shift-invert shift in ``omega^2`` units;
    ``reference_velocity`` is where the stiffness and mass are assembled.
    """
    n_modes: int = 3
    sigma: float = 0.0
    reference_velocity: float = 0.0

    def __post_init__(self) -> None:
        if int(self.n_modes) != self.n_modes or self.n_modes < 1:
            raise ValueError(f"n_modes must be >= 1, got {self.n_modes}")
        self.n_modes = int(self.n_modes)
        if not np.isfinite(self.sigma):
            raise ValueError(f"sigma must be finite, got {self.sigma}")

    @classmethod
    def from_app_config(cls, app_config, **overrides) -> ModalConfig:
        """Build from the ``structure`` section of an :class:`AppConfig`."""
        section = app_config.section("structure")
        values = {
            "n_modes": int(section.get("n_modes", 3)),
            "sigma": float(section.get("modal_shift", 0.0)),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass
class FlutterConfig:
    """Settings of the coarse sweep and bisection refinement."""
    v_lower: float = 500.0
    v_upper: float = 2500.0
    n_divisions: int = 20
    tolerance: float = 1.0e-6
    max_bisection_iters: int = 40
    crossing_policy: CrossingPolicy = CrossingPolicy.FIRST_BRACKET
    min_alignment: float = 0.1
    n_workers: int = 1
    output_file: Optional[str] = None
    extra: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.crossing_policy = CrossingPolicy(self.crossing_policy)
        if not self.v_upper > self.v_lower:
            raise ValueError(
                f"v_upper ({self.v_upper}) must be greater than v_lower ({self.v_lower})"
            )
        if self.n_divisions < 1:
            raise ValueError(f"n_divisions must be >= 1, got {self.n_divisions}")
        if self.tolerance <= 0.0:
            raise ValueError(f"tolerance must be > 0, got {self.tolerance}")
        if self.max_bisection_iters < 0:
            raise ValueError(
                f"max_bisection_iters must be >= 0, got {self.max_bisection_iters}"
            )
        if not 0.0 <= self.min_alignment <= 1.0:
            raise ValueError(f"min_alignment must be in [0, 1], got {self.min_alignment}")
        if self.n_workers < 1:
            raise ValueError(f"n_workers must be >= 1, got {self.n_workers}")

    @classmethod
    def from_app_config(cls, app_config) -> FlutterConfig:
        """Build from the ``flutter`` section of an :class:`AppConfig`."""
        section = app_config.section("flutter")
        known = {
            "v_lower", "v_upper", "n_divisions", "tolerance",
            "max_bisection_iters", "crossing_policy", "min_alignment",
            "n_workers", "output_file",
        }
        kwargs = {k: v for k, v in section.items() if k in known}
        extra = {k: v for k, v in section.items() if k not in known}
        return cls(**kwargs, extra=extra)
