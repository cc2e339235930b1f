"""
MPM boundary handling - grid nodes covered by static obstacles.
"""
from typing import List, Sequence

import numpy as np
import taichi as ti

from ....exceptions import CapacityError
from .mpm_grid import MPMGrid


@ti.data_oriented
class MPMBoundary:
    """Analytic sphere and box obstacles that exclude grid nodes.

    A node that carries mass is excluded when a sphere of ``kernel_radius``
    centred on it comes within ``envelope`` of any obstacle. Excluded nodes
    are removed from the implicit solve and their velocities are zeroed.
    """

    def __init__(self, grid: MPMGrid, max_obstacles: int = 16):
        """
        Initialize MPM boundary handler.

        Args:
            grid: Grid whose exclusion flags are written
            max_obstacles: Capacity for each obstacle shape
        """
        self.grid = grid
        self.max_obstacles = max_obstacles
        self.names: List[str] = []

        self.sphere_center = ti.Vector.field(3, dtype=float, shape=max_obstacles)
        self.sphere_radius = ti.field(dtype=float, shape=max_obstacles)
        self.box_min = ti.Vector.field(3, dtype=float, shape=max_obstacles)
        self.box_max = ti.Vector.field(3, dtype=float, shape=max_obstacles)
        self.n_spheres = ti.field(dtype=ti.i32, shape=())
        self.n_boxes = ti.field(dtype=ti.i32, shape=())

    @property
    def count(self) -> int:
        return self.n_spheres[None] + self.n_boxes[None]

    def add_sphere(self, name: str, center: Sequence[float], radius: float) -> None:
        k = self.n_spheres[None]
        if k >= self.max_obstacles:
            raise CapacityError(f"Cannot add sphere obstacle {name}: limit of {self.max_obstacles} reached")
        self.sphere_center[k] = [float(c) for c in center]
        self.sphere_radius[k] = float(radius)
        self.n_spheres[None] = k + 1
        self.names.append(name)

    def add_box(self, name: str, min_corner: Sequence[float], max_corner: Sequence[float]) -> None:
        k = self.n_boxes[None]
        if k >= self.max_obstacles:
            raise CapacityError(f"Cannot add box obstacle {name}: limit of {self.max_obstacles} reached")
        lower = np.minimum(min_corner, max_corner)
        upper = np.maximum(min_corner, max_corner)
        self.box_min[k] = [float(c) for c in lower]
        self.box_max[k] = [float(c) for c in upper]
        self.n_boxes[None] = k + 1
        self.names.append(name)

    @ti.kernel
    def mark_excluded(self, kernel_radius: float, envelope: float, mass_epsilon: float):
        """Set the exclusion flag of every node for the current step."""
        reach = kernel_radius + envelope
        for node in range(self.grid.n_nodes[None]):
            hit = 0
            if self.grid.mass[node] > mass_epsilon:
                loc = self.grid.loc[node]
                for k in range(self.n_spheres[None]):
                    if (loc - self.sphere_center[k]).norm() < self.sphere_radius[k] + reach:
                        hit = 1
                for k in range(self.n_boxes[None]):
                    closest = ti.min(ti.max(loc, self.box_min[k]), self.box_max[k])
                    if (loc - closest).norm() < reach:
                        hit = 1
            self.grid.excluded[node] = hit

    def excluded_count(self) -> int:
        return int(self.grid.excluded_mask().sum())
