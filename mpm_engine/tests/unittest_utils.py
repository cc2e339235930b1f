"""Shared helpers for the MPM engine test-suite."""

import numpy as np
import taichi as ti

from mpm_engine.configuration import (
    CapacityConfig,
    KernelConfig,
    MaterialConfig,
    SimulationConfig,
    SolverConfig,
)
from mpm_engine.physics_world.math_utils import grid_extents_for, sort_by_cell
from mpm_engine.physics_world.solvers.mpm import MPMSolver

_TAICHI_READY = False


def init_taichi():
    """Initialize Taichi once per process on the CPU backend in double precision."""
    global _TAICHI_READY
    if not _TAICHI_READY:
        ti.init(arch=ti.cpu, default_fp=ti.f64, random_seed=0, log_level=ti.WARN)
        _TAICHI_READY = True


def make_solver(
    mu=1.0,
    lame_lambda=1.0,
    hardening_coefficient=0.0,
    gravity=(0.0, 0.0, 0.0),
    time_step=1e-3,
    kernel_radius=0.05,
    max_particles=256,
    max_nodes=8192,
    **solver_kwargs,
):
    solver_kwargs.setdefault("debug_interval", 0)
    return MPMSolver(
        SimulationConfig(time_step=time_step, total_steps=1, gravity=gravity),
        MaterialConfig(
            particle_mass=1.0,
            mu=mu,
            lame_lambda=lame_lambda,
            hardening_coefficient=hardening_coefficient,
        ),
        KernelConfig(kernel_radius=kernel_radius),
        SolverConfig(**solver_kwargs),
        CapacityConfig(max_particles=max_particles, max_nodes=max_nodes, max_obstacles=4),
    )


def prepare_step(solver):
    """Run the broad phase for the particles currently stored in ``solver``."""
    positions = solver.state.get_positions()
    extents = grid_extents_for(positions, solver.bin_edge)
    solver.set_order(sort_by_cell(positions, extents.min_point, extents.bin_edge, extents.bins_per_axis))
    return extents


def lattice(count_per_axis, spacing, origin=(0.0, 0.0, 0.0)):
    axis = np.arange(count_per_axis) * spacing
    x, y, z = np.meshgrid(axis, axis, axis, indexing="ij")
    return np.stack([x.ravel(), y.ravel(), z.ravel()], axis=1) + np.asarray(origin)


def full_field_array(field, values):
    """Pad ``values`` with zeros to the full shape of a vector field."""
    array = np.zeros((field.shape[0], 3))
    array[: len(values)] = values
    return array
