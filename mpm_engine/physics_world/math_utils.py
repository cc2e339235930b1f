"""Lightweight vector math and grid placement helpers used throughout the physics world."""

from __future__ import annotations

from math import ceil
from typing import Iterable, Sequence, Tuple

import numpy as np

Vec3 = Tuple[float, float, float]

# Empty layers of nodes kept between the particles and the grid faces.
GRID_PADDING = 2


def vec3(values: Iterable[float]) -> Vec3:
    x, y, z = values
    return float(x), float(y), float(z)


def bounding_box(positions: np.ndarray) -> tuple[Vec3, Vec3]:
    """Axis aligned bounds of an (N, 3) array of points."""
    if len(positions) == 0:
        return (0.0, 0.0, 0.0), (0.0, 0.0, 0.0)
    return vec3(positions.min(axis=0)), vec3(positions.max(axis=0))


def grid_extents_for(positions: np.ndarray, bin_edge: float, padding: int = GRID_PADDING):
    """Place a grid around a particle cloud.

    The grid origin sits ``padding`` voxels below the lowest particle and
    enough nodes are added on the upper side that every particle's stencil
    (two nodes on each side of its nearest node) lies inside the grid.
    """
    from .state import GridExtents

    lower, upper = bounding_box(positions)
    min_point = tuple(lower[d] - padding * bin_edge for d in range(3))
    bins = tuple(
        int(ceil((upper[d] - min_point[d]) / bin_edge + 0.5)) + padding + 1 for d in range(3)
    )
    return GridExtents(min_point=min_point, bins_per_axis=bins, bin_edge=bin_edge)


def cell_hashes(positions: np.ndarray, min_point: Sequence[float], bin_edge: float, bins: Sequence[int]) -> np.ndarray:
    """Row-major node index of the node nearest to each position."""
    cells = np.floor((positions - np.asarray(min_point)) / bin_edge + 0.5).astype(np.int64)
    cells = np.clip(cells, 0, np.asarray(bins) - 1)
    return (cells[:, 2] * bins[1] + cells[:, 1]) * bins[0] + cells[:, 0]


def sort_by_cell(positions: np.ndarray, min_point: Sequence[float], bin_edge: float, bins: Sequence[int]) -> np.ndarray:
    """Permutation mapping sorted order to slot order, grouped by grid cell."""
    if len(positions) == 0:
        return np.zeros(0, dtype=np.int32)
    hashes = cell_hashes(positions, min_point, bin_edge, bins)
    return np.argsort(hashes, kind="stable").astype(np.int32)


def box_lattice(min_corner: Sequence[float], max_corner: Sequence[float], spacing: float) -> np.ndarray:
    """Regular lattice of points filling a box, half a spacing away from its faces."""
    axes = [
        np.arange(min_corner[d] + 0.5 * spacing, max_corner[d] - 0.5 * spacing + 1e-9, spacing)
        for d in range(3)
    ]
    x, y, z = np.meshgrid(*axes, indexing="ij")
    return np.stack([x.ravel(), y.ravel(), z.ravel()], axis=1)
