import unittest

import numpy as np

from mpm_engine.exceptions import CapacityError
from mpm_engine.physics_world.state import GridExtents
from mpm_engine.tests.unittest_utils import init_taichi, lattice, make_solver, prepare_step


class TestMPMStep(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        init_taichi()

    def step(self, solver, dt=None):
        extents = prepare_step(solver)
        if solver.state.needs_volume():
            solver.initialize(extents)
        report = solver.pre_solve(extents, dt)
        solver.update_positions(dt)
        return report

    def test_particle_at_rest_stays_at_rest(self):
        solver = make_solver(mu=10.0, lame_lambda=10.0)
        positions = np.array([[0.1, 0.2, 0.3]])
        solver.add_particles(positions)

        for _ in range(3):
            report = self.step(solver)
            self.assertTrue(report.solve.converged)

        np.testing.assert_allclose(solver.state.get_velocities(), 0.0, atol=1e-12)
        np.testing.assert_allclose(solver.state.get_positions(), positions, atol=1e-12)
        np.testing.assert_allclose(solver.state.get_elastic_gradients()[0], np.eye(3), atol=1e-12)
        np.testing.assert_allclose(solver.state.get_plastic_gradients()[0], np.eye(3), atol=1e-12)

    def test_free_fall_gains_gravity_times_dt(self):
        gravity = (0.0, -9.81, 0.0)
        dt = 1e-3
        solver = make_solver(mu=10.0, lame_lambda=10.0, gravity=gravity, time_step=dt)
        start = np.array([[0.03, 0.07, -0.02]])
        solver.add_particles(start)

        report = self.step(solver)

        expected_v = np.asarray(gravity) * dt
        self.assertTrue(report.solve.converged)
        np.testing.assert_allclose(solver.state.get_velocities()[0], expected_v, atol=1e-9)
        np.testing.assert_allclose(solver.state.get_positions()[0], start[0] + expected_v * dt, atol=1e-12)
        np.testing.assert_allclose(solver.velocity_vector(), expected_v, atol=1e-9)

    def test_uniform_block_translates_rigidly(self):
        solver = make_solver(mu=100.0, lame_lambda=100.0)
        velocity = np.array([0.3, -0.1, 0.2])
        solver.add_particles(lattice(3, 0.05), np.tile(velocity, (27, 1)))

        self.step(solver)

        np.testing.assert_allclose(solver.state.get_velocities(), np.tile(velocity, (27, 1)), atol=1e-9)
        np.testing.assert_allclose(solver.state.get_elastic_gradients(), np.tile(np.eye(3), (27, 1, 1)), atol=1e-9)

    def test_speed_is_clamped(self):
        solver = make_solver()
        solver.kernel_config.max_velocity = 1.0
        solver.add_particles(np.zeros((1, 3)), np.array([[3.0, 4.0, 0.0]]))

        self.step(solver)

        speed = np.linalg.norm(solver.state.get_velocities()[0])
        self.assertAlmostEqual(speed, 1.0, places=9)
        np.testing.assert_allclose(solver.state.get_positions()[0], [0.6e-3, 0.8e-3, 0.0], atol=1e-9)

    def test_excluded_nodes_have_zero_velocity(self):
        solver = make_solver(mu=10.0, lame_lambda=10.0, gravity=(0.0, -9.81, 0.0))
        solver.add_particles(lattice(3, 0.05), np.tile([0.0, -1.0, 0.0], (27, 1)))
        solver.add_sphere_obstacle("ball", (0.05, -0.1, 0.05), 0.05)

        report = self.step(solver)

        excluded = solver.grid.excluded_mask()
        self.assertGreater(solver.boundary.excluded_count(), 0)
        np.testing.assert_array_equal(solver.grid.velocities()[excluded], 0.0)
        np.testing.assert_array_equal(solver.grid.right_hand_side()[excluded], 0.0)
        # Only nodes that carry mass are ever excluded
        self.assertTrue(np.all(solver.grid.masses()[excluded] > solver.solver_config.mass_epsilon))
        self.assertEqual(report.node_count, solver.grid.n_nodes[None])

        # The obstacle slows the block down compared to free fall
        self.assertGreater(solver.state.get_velocities()[:, 1].mean(), -1.0 - 9.81 * solver.dt)

    def test_no_obstacles_means_no_exclusion(self):
        solver = make_solver(gravity=(0.0, -9.81, 0.0))
        solver.add_particles(lattice(2, 0.05))
        self.step(solver)
        self.assertEqual(solver.boundary.excluded_count(), 0)

    def test_deformation_persists_between_steps(self):
        solver = make_solver(mu=20.0, lame_lambda=20.0)
        rng = np.random.default_rng(9)
        solver.add_particles(lattice(3, 0.05), rng.normal(scale=0.5, size=(27, 3)))

        self.step(solver)
        first_fe = solver.state.get_elastic_gradients().copy()
        first_fp = solver.state.get_plastic_gradients().copy()
        self.assertGreater(np.abs(first_fe - np.eye(3)).max(), 1e-6)

        self.step(solver)
        second_fe = solver.state.get_elastic_gradients()
        second_fp = solver.state.get_plastic_gradients()
        self.assertTrue(np.all(np.isfinite(second_fe)))
        # The second step starts from the first step's gradients, not from identity
        self.assertGreater(np.abs(second_fe @ second_fp - first_fe @ first_fp).max(), 0.0)
        total = np.linalg.det(second_fe) * np.linalg.det(second_fp)
        self.assertTrue(np.all(total > 0.0))

    def test_velocity_vector_roundtrip(self):
        solver = make_solver()
        solver.add_particles(lattice(2, 0.05))
        prepare_step(solver)
        solver.state.gather_sorted()

        values = np.arange(24, dtype=np.float64) * 0.01
        solver.set_velocity_vector(values)
        np.testing.assert_allclose(solver.velocity_vector(), values)

        solver.update_positions(0.0)
        order = solver.state.get_order()
        np.testing.assert_allclose(solver.state.get_velocities()[order], values.reshape(-1, 3))

        with self.assertRaises(ValueError):
            solver.set_velocity_vector(np.zeros(6))

    def test_grid_capacity_is_enforced(self):
        solver = make_solver(max_nodes=64)
        extents = GridExtents(min_point=(0.0, 0.0, 0.0), bins_per_axis=(5, 5, 5), bin_edge=0.1)
        with self.assertRaises(CapacityError):
            solver.grid.reset(extents)


class TestGlobalVectors(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        init_taichi()

    def test_gravity_impulse(self):
        solver = make_solver(gravity=(0.0, -9.81, 0.0), time_step=0.01)
        solver.add_particles(lattice(2, 0.05))

        impulse = solver.gravity_impulse()

        self.assertEqual(impulse.shape, (24,))
        np.testing.assert_allclose(impulse.reshape(-1, 3), np.tile([0.0, -0.0981, 0.0], (8, 1)))

    def test_mass_blocks(self):
        solver = make_solver()
        solver.material_config.particle_mass = 2.0
        solver.add_particles(lattice(2, 0.05))

        mass = solver.compute_mass(offset=3, size=30)
        self.assertEqual(mass.shape, (30, 30))
        self.assertEqual(mass.nnz, 24)
        diagonal = mass.diagonal()
        np.testing.assert_array_equal(diagonal[3:27], 2.0)
        np.testing.assert_array_equal(diagonal[:3], 0.0)
        np.testing.assert_array_equal(diagonal[27:], 0.0)

        combined = solver.compute_inv_mass(offset=3, matrix=mass)
        np.testing.assert_allclose(combined.diagonal()[3:27], 2.5)

        with self.assertRaises(ValueError):
            solver.compute_mass(offset=10, size=30)


if __name__ == "__main__":
    unittest.main(verbosity=2)
