"""
MPM solver - implicit elastoplastic Material Point Method step.
"""
from functools import partial
from typing import Iterable, Optional, Sequence

import numpy as np
import taichi as ti
from scipy import sparse

from ....configuration import (
    CapacityConfig,
    KernelConfig,
    MaterialConfig,
    SceneConfig,
    SimulationConfig,
    SolverConfig,
)
from ...state import GridExtents, StepReport
from .mpm_boundary import MPMBoundary
from .mpm_cg import ConjugateGradientSolver
from .mpm_grid import MPMGrid
from .mpm_hessian import HessianOperator
from .mpm_materials import ElastoplasticMaterial
from .mpm_state import MPMState
from .mpm_transfer import MPMTransfer


class MPMSolver:
    """Drives one implicit MPM step over a particle container.

    Per step the caller installs a sorted particle order and a grid
    placement, then calls :meth:`pre_solve` (rasterize, solve for the new
    grid velocities, update the deformation gradients and write the blended
    particle velocities into the sorted velocity vector) followed by
    :meth:`update_positions`.

    Particle volumes are estimated once through :meth:`initialize`; the
    elastic and plastic deformation gradients persist across steps.
    """

    def __init__(self,
                 simulation: SimulationConfig,
                 material: Optional[MaterialConfig] = None,
                 kernel: Optional[KernelConfig] = None,
                 solver: Optional[SolverConfig] = None,
                 capacity: Optional[CapacityConfig] = None):
        """
        Initialize MPM solver.

        Args:
            simulation: Time step and gravity
            material: Material constants shared by all particles
            kernel: Kernel radius, collision envelope and speed limit
            solver: Conjugate gradient and diagnostics settings
            capacity: Buffer sizes for particles, grid nodes and obstacles
        """
        self.simulation = simulation
        self.material_config = material or MaterialConfig()
        self.kernel_config = kernel or KernelConfig()
        self.solver_config = solver or SolverConfig()
        self.capacity = capacity or CapacityConfig()

        print(f"[MPMSolver] Initializing with max_particles={self.capacity.max_particles}, "
              f"max_nodes={self.capacity.max_nodes}")
        print(f"[MPMSolver] dt={simulation.time_step}s, gravity={tuple(simulation.gravity)}, "
              f"bin_edge={self.kernel_config.bin_edge}")
        print(f"[MPMSolver] Material params: mu={self.material_config.mu}, "
              f"lambda={self.material_config.lame_lambda}, hardening={self.material_config.hardening_coefficient}")

        self.dt = simulation.time_step
        self.gravity = tuple(float(g) for g in simulation.gravity)

        self.state = MPMState(self.capacity.max_particles)
        self.grid = MPMGrid(self.capacity.max_nodes)
        self.transfer = MPMTransfer(self.state, self.grid)
        self.material = ElastoplasticMaterial(
            self.state, self.grid, self.material_config, eps=self.solver_config.degenerate_epsilon
        )
        self.hessian = HessianOperator(self.state, self.grid, self.material)
        self.cg = ConjugateGradientSolver(self.grid, self.solver_config)
        self.boundary = MPMBoundary(self.grid, self.capacity.max_obstacles)

        # Debug tracking
        self.step_count = 0
        self.last_report: Optional[StepReport] = None

    @classmethod
    def from_config(cls, config: SceneConfig) -> "MPMSolver":
        return cls(config.simulation, config.material, config.kernel, config.solver, config.capacity)

    @property
    def bin_edge(self) -> float:
        return self.kernel_config.bin_edge

    @property
    def particle_count(self) -> int:
        return self.state.count

    def add_particles(self, positions: np.ndarray, velocities: Optional[np.ndarray] = None) -> np.ndarray:
        """Append particles; volumes are estimated by the next :meth:`initialize`."""
        ids = self.state.add_particles(positions, velocities)
        if self.solver_config.verbose:
            print(f"[MPMSolver] Added {len(ids)} particles, total {self.state.count}")
        return ids

    def remove_particles(self, ids: Iterable[int]) -> None:
        self.state.remove_particles(ids)

    def set_order(self, order: np.ndarray) -> None:
        self.state.set_order(order)

    def initialize(self, extents: GridExtents) -> None:
        """Rasterize once and estimate the rest volume of particles lacking one."""
        mass = self.material_config.particle_mass
        self.grid.reset(extents)
        self.state.gather_sorted()
        self.transfer.rasterize(mass)
        self.transfer.estimate_volumes(mass, extents.voxel_volume)
        if self.solver_config.verbose:
            volumes = self.state.get_volumes()
            if len(volumes):
                print(f"[MPMSolver] Volumes estimated: min={volumes.min():.6e}, max={volumes.max():.6e}")

    def pre_solve(self, extents: GridExtents, dt: Optional[float] = None) -> StepReport:
        """
        Compute new particle velocities for one step.

        Args:
            extents: Grid placement covering every particle's stencil
            dt: Time step, defaults to the configured one

        Returns:
            StepReport with the outcome of the implicit solve
        """
        dt = self.dt if dt is None else dt
        mass = self.material_config.particle_mass
        eps = self.solver_config.mass_epsilon
        grid = self.grid

        grid.reset(extents)
        self.state.gather_sorted()
        self.transfer.rasterize(mass)
        self.boundary.mark_excluded(
            self.kernel_config.kernel_radius, self.kernel_config.collision_envelope, eps
        )
        grid.normalize_velocities(eps)
        grid.save_velocities()

        self.material.compute_elastic_candidate(dt)
        self.material.accumulate_grid_forces()
        grid.add_body_forces(ti.Vector(self.gravity))
        grid.integrate_forces(dt, eps)

        grid.build_rhs()
        grid.zero_excluded(grid.vel)
        solve = self.cg.solve(partial(self.hessian.apply, time_step=dt), grid.rhs, grid.vel)
        grid.zero_excluded(grid.vel)

        self.material.update_trial_gradient(dt)
        self.material.project_plastic()
        self.transfer.transfer_to_particles(self.material_config.alpha)

        self.step_count += 1
        report = StepReport(
            step_index=self.step_count,
            particle_count=self.state.count,
            node_count=extents.node_count,
            solve=solve,
            extents=extents,
        )
        self.last_report = report

        if self.solver_config.verbose:
            print(f"[MPMSolver] Step {self.step_count}: {report.particle_count} particles, "
                  f"{report.node_count} nodes, {self.boundary.excluded_count()} excluded, "
                  f"cg iterations={solve.iterations}, residual={solve.residual_norm:.3e}")
        interval = self.solver_config.debug_interval
        if interval > 0 and self.step_count % interval == 0:
            self.print_deformation_stats()
        return report

    def update_positions(self, dt: Optional[float] = None) -> None:
        """Clamp, store and integrate the velocities produced by :meth:`pre_solve`."""
        dt = self.dt if dt is None else dt
        self.transfer.integrate_positions(dt, self.kernel_config.max_velocity)

    def print_deformation_stats(self) -> None:
        stats = self.material.deformation_stats()
        print(f"[MPMSolver] Step {self.step_count}: "
              f"det(Fe) min={stats.elastic_j_min:.4f}, max={stats.elastic_j_max:.4f}, avg={stats.elastic_j_avg:.4f}; "
              f"det(Fp) min={stats.plastic_j_min:.4f}, max={stats.plastic_j_max:.4f}, avg={stats.plastic_j_avg:.4f}")

    def velocity_vector(self) -> np.ndarray:
        return self.state.velocity_vector()

    def set_velocity_vector(self, values: np.ndarray) -> None:
        self.state.set_velocity_vector(values)

    def gravity_impulse(self, dt: Optional[float] = None) -> np.ndarray:
        """Per-particle gravity impulse dt * m * g, three entries per particle."""
        dt = self.dt if dt is None else dt
        impulse = dt * self.material_config.particle_mass * np.asarray(self.gravity, dtype=np.float64)
        return np.tile(impulse, self.state.count)

    def _diagonal_block(self, value: float, offset: int, size: Optional[int], matrix) -> sparse.csr_matrix:
        n = 3 * self.state.count
        if size is None:
            size = matrix.shape[0] if matrix is not None else offset + n
        if offset < 0 or offset + n > size:
            raise ValueError(f"Block of {n} entries at offset {offset} does not fit a {size}x{size} matrix")
        rows = np.arange(offset, offset + n)
        block = sparse.csr_matrix((np.full(n, value), (rows, rows)), shape=(size, size))
        if matrix is None:
            return block
        return (matrix + block).tocsr()

    def compute_mass(self, offset: int = 0, size: Optional[int] = None, matrix=None) -> sparse.csr_matrix:
        """Diagonal particle mass entries at rows offset + 3 i + d."""
        return self._diagonal_block(self.material_config.particle_mass, offset, size, matrix)

    def compute_inv_mass(self, offset: int = 0, size: Optional[int] = None, matrix=None) -> sparse.csr_matrix:
        return self._diagonal_block(1.0 / self.material_config.particle_mass, offset, size, matrix)

    def add_sphere_obstacle(self, name: str, center: Sequence[float], radius: float) -> None:
        self.boundary.add_sphere(name, center, radius)

    def add_box_obstacle(self, name: str, min_corner: Sequence[float], max_corner: Sequence[float]) -> None:
        self.boundary.add_box(name, min_corner, max_corner)
