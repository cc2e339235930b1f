"""Dataclasses describing the evolving physics state."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Tuple

import numpy as np

from .math_utils import Vec3


Int3 = Tuple[int, int, int]


@dataclass(frozen=True)
class GridExtents:
    """Placement of the background grid for one step."""

    min_point: Vec3  # meters (m), location of node (0, 0, 0)
    bins_per_axis: Int3
    bin_edge: float  # meters (m)

    @property
    def node_count(self) -> int:
        bx, by, bz = self.bins_per_axis
        return bx * by * bz

    @property
    def voxel_volume(self) -> float:
        return self.bin_edge ** 3


@dataclass
class SolveReport:
    """Outcome of one conjugate gradient solve."""

    iterations: int
    residual_norm: float
    tolerance: float
    converged: bool  # False when the iteration cap was hit or the search direction degenerated
    degenerate: bool = False
    restarts: int = 0

    @property
    def exhausted(self) -> bool:
        return not self.converged and not self.degenerate


@dataclass
class DeformationStats:
    elastic_j_min: float
    elastic_j_max: float
    elastic_j_avg: float
    plastic_j_min: float
    plastic_j_max: float
    plastic_j_avg: float


@dataclass
class StepReport:
    step_index: int
    particle_count: int
    node_count: int
    solve: SolveReport
    extents: GridExtents


@dataclass
class ParticleSnapshot:
    ids: np.ndarray  # (N,) stable particle ids
    positions: np.ndarray  # (N, 3) meters (m)
    velocities: np.ndarray  # (N, 3) meters per second (m/s)
    volumes: np.ndarray  # (N,) cubic meters (m^3)
    elastic_gradients: np.ndarray  # (N, 3, 3)
    plastic_gradients: np.ndarray  # (N, 3, 3)

    def particle_count(self) -> int:
        return len(self.ids)


@dataclass
class WorldSnapshot:
    step_index: int
    time: float
    particles: ParticleSnapshot
    report: StepReport | None = None
    excluded_nodes: int = 0
    obstacle_names: list[str] = field(default_factory=list)
