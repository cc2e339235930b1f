"""Physics world core that drives the MPM solver step by step."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from ..configuration import SceneConfig
from .math_utils import Vec3, box_lattice, grid_extents_for, sort_by_cell, vec3
from .solvers.mpm import MPMSolver
from .state import GridExtents, WorldSnapshot


@dataclass
class PhysicsWorld:
    config: SceneConfig
    mpm_solver: MPMSolver
    current_time: float = 0.0
    current_step: int = 0

    @classmethod
    def from_config(cls, config: SceneConfig) -> "PhysicsWorld":
        mpm_solver = MPMSolver.from_config(config)

        for index, box in enumerate(config.particle_boxes):
            positions = box_lattice(box.min_corner, box.max_corner, box.particle_spacing)
            velocities = np.tile(np.asarray(vec3(box.initial_velocity)), (len(positions), 1))
            mpm_solver.add_particles(positions, velocities)
            print(f"[PhysicsWorld] Particle box {index}: {len(positions)} particles, "
                  f"spacing={box.particle_spacing}, v0={vec3(box.initial_velocity)}")

        for obstacle in config.obstacles:
            if obstacle.shape == "sphere":
                mpm_solver.add_sphere_obstacle(obstacle.name, obstacle.center, obstacle.radius)
            else:
                mpm_solver.add_box_obstacle(obstacle.name, obstacle.min_corner, obstacle.max_corner)
            print(f"[PhysicsWorld] Obstacle {obstacle.name} ({obstacle.shape})")

        print(f"[PhysicsWorld] Scene '{config.scene_name}' ready with {mpm_solver.particle_count} particles")
        return cls(config=config, mpm_solver=mpm_solver)

    @property
    def gravity(self) -> Vec3:
        return vec3(self.config.simulation.gravity)

    def broad_phase(self) -> GridExtents:
        """Place the grid around the particles and install their sorted order."""
        positions = self.mpm_solver.state.get_positions()
        extents = grid_extents_for(positions, self.mpm_solver.bin_edge)
        order = sort_by_cell(positions, extents.min_point, extents.bin_edge, extents.bins_per_axis)
        self.mpm_solver.set_order(order)
        return extents

    def step(self, dt: float | None = None) -> WorldSnapshot:
        dt = dt if dt is not None else self.config.simulation.time_step
        solver = self.mpm_solver

        report = None
        if solver.particle_count > 0:
            extents = self.broad_phase()
            if solver.state.needs_volume():
                solver.initialize(extents)
            report = solver.pre_solve(extents, dt)
            solver.update_positions(dt)

        self.current_time += dt
        snapshot = WorldSnapshot(
            step_index=self.current_step,
            time=self.current_time,
            particles=solver.state.snapshot(),
            report=report,
            excluded_nodes=solver.boundary.excluded_count() if report is not None else 0,
            obstacle_names=list(solver.boundary.names),
        )
        self.current_step += 1
        return snapshot
