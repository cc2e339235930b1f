"""
MPM grid operations - background Eulerian grid for momentum transfer.
"""
from typing import Optional

import numpy as np
import taichi as ti

from ....exceptions import CapacityError
from ...state import GridExtents
from .mpm_kernels import grid_coord, grid_hash, kernel_gradient, kernel_weight, node_in_bounds, vec3


@ti.data_oriented
class MPMGrid:
    """Background Eulerian grid for MPM simulation.

    Buffers are allocated once for ``max_nodes`` nodes and reused every step.
    Only the leading ``n_nodes`` entries belong to the current step; their
    content is overwritten by :meth:`reset`. Nothing survives from one step
    to the next except what the caller copies out before the next reset.
    """

    def __init__(self, max_nodes: int):
        """
        Initialize MPM grid.

        Args:
            max_nodes: Capacity of the flat node buffers
        """
        self.max_nodes = max_nodes
        self.extents: Optional[GridExtents] = None

        self.mass = ti.field(dtype=float, shape=max_nodes)
        self.vel = ti.Vector.field(3, dtype=float, shape=max_nodes)
        self.vel_old = ti.Vector.field(3, dtype=float, shape=max_nodes)
        self.force = ti.Vector.field(3, dtype=float, shape=max_nodes)
        self.loc = ti.Vector.field(3, dtype=float, shape=max_nodes)
        self.rhs = ti.Vector.field(3, dtype=float, shape=max_nodes)
        self.excluded = ti.field(dtype=ti.i32, shape=max_nodes)

        # Store grid parameters as Taichi fields for kernel access
        self.n_nodes = ti.field(dtype=ti.i32, shape=())
        self.bins = ti.Vector.field(3, dtype=ti.i32, shape=())
        self.origin = ti.Vector.field(3, dtype=float, shape=())
        self.edge = ti.field(dtype=float, shape=())
        self.inv_edge = ti.field(dtype=float, shape=())

    def reset(self, extents: GridExtents) -> None:
        """Adopt new extents and clear every node used this step."""
        n_nodes = extents.node_count
        if n_nodes > self.max_nodes:
            raise CapacityError(
                f"Grid needs {n_nodes} nodes {tuple(extents.bins_per_axis)} but only {self.max_nodes} are allocated"
            )
        self.extents = extents
        self.n_nodes[None] = n_nodes
        self.bins[None] = list(extents.bins_per_axis)
        self.origin[None] = list(extents.min_point)
        self.edge[None] = extents.bin_edge
        self.inv_edge[None] = 1.0 / extents.bin_edge
        self.clear_grid()

    @ti.kernel
    def clear_grid(self):
        """Zero all node quantities and recompute node locations."""
        bins = self.bins[None]
        for node in range(self.n_nodes[None]):
            i = node % bins[0]
            j = (node // bins[0]) % bins[1]
            k = node // (bins[0] * bins[1])
            self.loc[node] = self.origin[None] + self.edge[None] * ti.Vector([i, j, k]).cast(float)
            self.mass[node] = 0.0
            self.vel[node] = ti.Vector.zero(float, 3)
            self.vel_old[node] = ti.Vector.zero(float, 3)
            self.force[node] = ti.Vector.zero(float, 3)
            self.rhs[node] = ti.Vector.zero(float, 3)
            self.excluded[node] = 0

    @ti.func
    def cell_of(self, x):
        return grid_coord(x, self.inv_edge[None], self.origin[None])

    @ti.func
    def node_index(self, cell):
        """
        Flat node index of a grid coordinate.

        Args:
            cell: Integer grid coordinate

        Returns:
            Node index, or -1 when the coordinate lies outside the grid
        """
        index = -1
        if node_in_bounds(cell, self.bins[None]):
            index = grid_hash(cell, self.bins[None])
        return index

    @ti.func
    def weight(self, x, node):
        return kernel_weight(x - self.loc[node], self.inv_edge[None])

    @ti.func
    def weight_gradient(self, x, node):
        return kernel_gradient(x - self.loc[node], self.inv_edge[None])

    @ti.kernel
    def normalize_velocities(self, eps: float):
        """Convert accumulated momentum to velocity on active nodes."""
        for node in range(self.n_nodes[None]):
            if self.mass[node] > eps:
                self.vel[node] /= self.mass[node]

    @ti.kernel
    def save_velocities(self):
        for node in range(self.n_nodes[None]):
            self.vel_old[node] = self.vel[node]

    @ti.kernel
    def add_body_forces(self, gravity: vec3):
        for node in range(self.n_nodes[None]):
            self.force[node] += self.mass[node] * gravity

    @ti.kernel
    def integrate_forces(self, dt: float, eps: float):
        """Explicit velocity update v += dt * f / m on active nodes."""
        for node in range(self.n_nodes[None]):
            if self.mass[node] >= eps:
                self.vel[node] += dt * self.force[node] / self.mass[node]

    @ti.kernel
    def build_rhs(self):
        """Momentum right-hand side of the implicit system, zero on excluded nodes."""
        for node in range(self.n_nodes[None]):
            if self.excluded[node] == 0:
                self.rhs[node] = self.mass[node] * self.vel[node]
            else:
                self.rhs[node] = ti.Vector.zero(float, 3)

    @ti.kernel
    def zero_excluded(self, values: ti.template()):
        for node in range(self.n_nodes[None]):
            if self.excluded[node] != 0:
                values[node] = ti.Vector.zero(float, 3)

    @ti.kernel
    def _write_excluded(self, mask: ti.types.ndarray()):
        for node in range(self.n_nodes[None]):
            self.excluded[node] = mask[node]

    def set_excluded(self, mask: np.ndarray) -> None:
        """Overwrite the exclusion flags of the current step."""
        n = self.n_nodes[None]
        mask = np.ascontiguousarray(mask, dtype=np.int32).reshape(-1)
        if mask.shape[0] != n:
            raise ValueError(f"Exclusion mask has {mask.shape[0]} entries, grid has {n} nodes")
        self._write_excluded(mask)

    def masses(self) -> np.ndarray:
        return self.mass.to_numpy()[: self.n_nodes[None]]

    def velocities(self) -> np.ndarray:
        return self.vel.to_numpy()[: self.n_nodes[None]]

    def excluded_mask(self) -> np.ndarray:
        return self.excluded.to_numpy()[: self.n_nodes[None]].astype(bool)

    def right_hand_side(self) -> np.ndarray:
        return self.rhs.to_numpy()[: self.n_nodes[None]]
