"""Collection of specialized solvers used by the physics world."""

from .mpm import MPMSolver

__all__ = [
    "MPMSolver",
]
