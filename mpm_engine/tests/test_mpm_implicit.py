import unittest
from functools import partial

import numpy as np
import taichi as ti

from mpm_engine.configuration import SolverConfig
from mpm_engine.physics_world.math_utils import cell_hashes
from mpm_engine.physics_world.solvers.mpm.mpm_cg import ConjugateGradientSolver
from mpm_engine.physics_world.state import GridExtents
from mpm_engine.tests.unittest_utils import (
    full_field_array,
    init_taichi,
    lattice,
    make_solver,
    prepare_step,
)


def vector_field(capacity, values=None):
    field = ti.Vector.field(3, dtype=float, shape=capacity)
    if values is not None:
        field.from_numpy(full_field_array(field, values))
    return field


class TestHessianOperator(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        init_taichi()

    def deformed_block(self, **kwargs):
        solver = make_solver(mu=50.0, lame_lambda=80.0, hardening_coefficient=2.0, time_step=1e-2, **kwargs)
        rng = np.random.default_rng(17)
        positions = lattice(3, 0.05) + rng.uniform(-0.01, 0.01, size=(27, 3))
        solver.add_particles(positions, rng.normal(size=(27, 3)))
        extents = prepare_step(solver)
        solver.initialize(extents)
        solver.pre_solve(extents)
        return solver

    def test_operator_is_symmetric(self):
        solver = self.deformed_block()
        n_nodes = solver.grid.n_nodes[None]
        rng = np.random.default_rng(1)
        u = vector_field(solver.grid.max_nodes, rng.normal(size=(n_nodes, 3)))
        v = vector_field(solver.grid.max_nodes, rng.normal(size=(n_nodes, 3)))
        au = vector_field(solver.grid.max_nodes)
        av = vector_field(solver.grid.max_nodes)

        solver.hessian.apply(u, au, solver.dt)
        solver.hessian.apply(v, av, solver.dt)

        u_np = u.to_numpy()[:n_nodes]
        v_np = v.to_numpy()[:n_nodes]
        v_au = float(np.sum(v_np * au.to_numpy()[:n_nodes]))
        u_av = float(np.sum(u_np * av.to_numpy()[:n_nodes]))
        self.assertAlmostEqual(v_au, u_av, delta=1e-8 * max(abs(v_au), 1.0))

    def test_stiffness_contributes_beyond_mass(self):
        solver = self.deformed_block()
        n_nodes = solver.grid.n_nodes[None]
        rng = np.random.default_rng(2)
        values = rng.normal(size=(n_nodes, 3))
        u = vector_field(solver.grid.max_nodes, values)
        au = vector_field(solver.grid.max_nodes)

        solver.hessian.apply(u, au, solver.dt)

        mass_only = solver.grid.masses()[:, None] * values
        self.assertGreater(np.abs(au.to_numpy()[:n_nodes] - mass_only).max(), 1e-8)

        # Positive definite on the nodes that carry mass
        self.assertGreater(float(np.sum(values * au.to_numpy()[:n_nodes])), 0.0)

    def test_excluded_nodes_receive_zero(self):
        solver = make_solver(mu=10.0, lame_lambda=10.0, time_step=1e-2)
        solver.add_particles(lattice(3, 0.05))
        solver.add_box_obstacle("floor", (-1.0, -1.0, -1.0), (1.0, -0.02, 1.0))
        extents = prepare_step(solver)
        solver.initialize(extents)
        solver.pre_solve(extents)

        excluded = solver.grid.excluded_mask()
        self.assertTrue(excluded.any())
        self.assertFalse(excluded.all())

        n_nodes = solver.grid.n_nodes[None]
        u = vector_field(solver.grid.max_nodes, np.ones((n_nodes, 3)))
        au = vector_field(solver.grid.max_nodes)
        solver.hessian.apply(u, au, solver.dt)
        np.testing.assert_array_equal(au.to_numpy()[:n_nodes][excluded], 0.0)


class TestConjugateGradient(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        init_taichi()

    def single_included_node(self, mu=0.0, lame_lambda=0.0, **solver_kwargs):
        solver = make_solver(mu=mu, lame_lambda=lame_lambda, **solver_kwargs)
        positions = np.array([[0.013, -0.021, 0.007]])
        solver.add_particles(positions)
        extents = prepare_step(solver)
        solver.initialize(extents)

        grid = solver.grid
        grid.reset(extents)
        solver.state.gather_sorted()
        solver.transfer.rasterize(solver.material_config.particle_mass)
        center = int(cell_hashes(positions, extents.min_point, extents.bin_edge, extents.bins_per_axis)[0])
        mask = np.ones(grid.n_nodes[None], dtype=np.int32)
        mask[center] = 0
        grid.set_excluded(mask)
        solver.material.compute_elastic_candidate(solver.dt)
        return solver, center

    def test_converges_on_single_node(self):
        solver, center = self.single_included_node()
        grid = solver.grid
        target = np.array([0.5, -1.0, 2.0])
        mass = grid.masses()[center]

        rhs = np.zeros((grid.max_nodes, 3))
        rhs[center] = mass * target
        grid.rhs.from_numpy(rhs)
        grid.vel.from_numpy(np.zeros((grid.max_nodes, 3)))

        report = solver.cg.solve(partial(solver.hessian.apply, time_step=solver.dt), grid.rhs, grid.vel)

        self.assertTrue(report.converged)
        self.assertFalse(report.degenerate)
        self.assertLessEqual(report.iterations, 2)
        np.testing.assert_allclose(grid.velocities()[center], target, atol=1e-8)

    def test_iteration_cap_reports_not_converged(self):
        solver, center = self.single_included_node(max_iterations=0)
        grid = solver.grid
        rhs = np.zeros((grid.max_nodes, 3))
        rhs[center] = (1.0, 2.0, 3.0)
        grid.rhs.from_numpy(rhs)
        grid.vel.from_numpy(np.zeros((grid.max_nodes, 3)))

        report = solver.cg.solve(partial(solver.hessian.apply, time_step=solver.dt), grid.rhs, grid.vel)

        self.assertFalse(report.converged)
        self.assertTrue(report.exhausted)
        self.assertEqual(report.iterations, 0)
        self.assertAlmostEqual(report.residual_norm, np.sqrt(14.0), places=10)

    def test_zero_initial_residual_needs_no_iterations(self):
        solver, _ = self.single_included_node()
        grid = solver.grid
        grid.rhs.from_numpy(np.zeros((grid.max_nodes, 3)))
        grid.vel.from_numpy(np.zeros((grid.max_nodes, 3)))

        report = solver.cg.solve(partial(solver.hessian.apply, time_step=solver.dt), grid.rhs, grid.vel)

        self.assertTrue(report.converged)
        self.assertEqual(report.iterations, 0)
        self.assertEqual(report.restarts, 1)
        self.assertEqual(report.tolerance, solver.solver_config.absolute_tolerance)

    def test_periodic_restarts_reach_the_same_solution(self):
        solver, center = self.single_included_node(mu=1e5, lame_lambda=1e5)
        grid = solver.grid
        rhs = np.zeros((grid.max_nodes, 3))
        rhs[center] = (0.3, -0.7, 1.1)
        grid.rhs.from_numpy(rhs)
        apply = partial(solver.hessian.apply, time_step=solver.dt)

        solutions = []
        reports = []
        for restart_iterations in (1, 0):
            config = SolverConfig(max_iterations=500, restart_iterations=restart_iterations,
                                  relative_tolerance=1e-10, absolute_tolerance=0.0)
            grid.vel.from_numpy(np.zeros((grid.max_nodes, 3)))
            reports.append(ConjugateGradientSolver(grid, config).solve(apply, grid.rhs, grid.vel))
            solutions.append(grid.velocities()[center].copy())

        restarted, plain = reports
        self.assertTrue(restarted.converged)
        self.assertTrue(plain.converged)
        self.assertGreater(restarted.restarts, 1)
        self.assertEqual(restarted.restarts, restarted.iterations + 1)
        self.assertEqual(plain.restarts, 1)
        np.testing.assert_allclose(solutions[0], solutions[1], rtol=1e-7, atol=1e-12)

    def test_degenerate_direction_is_flagged(self):
        solver = make_solver()
        extents = GridExtents(min_point=(0.0, 0.0, 0.0), bins_per_axis=(4, 4, 4), bin_edge=solver.bin_edge)
        grid = solver.grid
        grid.reset(extents)

        rhs = np.zeros((grid.max_nodes, 3))
        rhs[5] = (1.0, 0.0, 0.0)
        grid.rhs.from_numpy(rhs)
        grid.vel.from_numpy(np.zeros((grid.max_nodes, 3)))

        report = solver.cg.solve(partial(solver.hessian.apply, time_step=solver.dt), grid.rhs, grid.vel)

        self.assertTrue(report.degenerate)
        self.assertFalse(report.converged)
        self.assertFalse(report.exhausted)
        self.assertEqual(report.iterations, 0)
        self.assertAlmostEqual(report.residual_norm, 1.0)
        np.testing.assert_array_equal(grid.velocities(), 0.0)


if __name__ == "__main__":
    unittest.main(verbosity=2)
