"""
MPM particle/grid transfers - rasterization, volume estimation, PIC/FLIP and advection.
"""
import taichi as ti

from .mpm_grid import MPMGrid
from .mpm_kernels import STENCIL
from .mpm_state import MPMState


@ti.data_oriented
class MPMTransfer:
    """Moves particle quantities onto the grid and grid velocities back.

    Every pass loops over particles in sorted order and visits the 5x5x5
    node block around the particle's nearest node. Nodes outside the grid
    are skipped.
    """

    def __init__(self, state: MPMState, grid: MPMGrid):
        self.state = state
        self.grid = grid

    @ti.kernel
    def rasterize(self, particle_mass: float):
        """P2G: deposit mass and momentum onto the grid."""
        for i in range(self.state.n_particles[None]):
            p = self.state.order[i]
            xp = self.state.x[p]
            vp = self.state.sorted_v[i]
            base = self.grid.cell_of(xp)
            for di, dj, dk in ti.ndrange(*STENCIL):
                node = self.grid.node_index(base + ti.Vector([di, dj, dk]))
                if node >= 0:
                    w = self.grid.weight(xp, node)
                    self.grid.mass[node] += w * particle_mass
                    self.grid.vel[node] += w * particle_mass * vp

    @ti.kernel
    def estimate_volumes(self, particle_mass: float, voxel_volume: float):
        """
        Estimate rest volumes from the rasterized mass.

        Only particles whose volume is not set yet are touched, so particles
        that already carry a volume keep it for the rest of the simulation.
        """
        for i in range(self.state.n_particles[None]):
            p = self.state.order[i]
            if self.state.volume[p] <= 0.0:
                xp = self.state.x[p]
                base = self.grid.cell_of(xp)
                density = 0.0
                for di, dj, dk in ti.ndrange(*STENCIL):
                    node = self.grid.node_index(base + ti.Vector([di, dj, dk]))
                    if node >= 0:
                        density += self.grid.weight(xp, node) * self.grid.mass[node]
                density /= voxel_volume
                if density > 0.0:
                    self.state.volume[p] = particle_mass / density

    @ti.kernel
    def transfer_to_particles(self, alpha: float):
        """G2P: blend PIC and FLIP velocities into the sorted velocity vector."""
        for i in range(self.state.n_particles[None]):
            p = self.state.order[i]
            xp = self.state.x[p]
            base = self.grid.cell_of(xp)
            v_pic = ti.Vector.zero(float, 3)
            v_flip = self.state.sorted_v[i]
            for di, dj, dk in ti.ndrange(*STENCIL):
                node = self.grid.node_index(base + ti.Vector([di, dj, dk]))
                if node >= 0:
                    w = self.grid.weight(xp, node)
                    v_pic += w * self.grid.vel[node]
                    v_flip += w * (self.grid.vel[node] - self.grid.vel_old[node])
            self.state.sorted_v[i] = (1.0 - alpha) * v_pic + alpha * v_flip

    @ti.kernel
    def integrate_positions(self, dt: float, max_velocity: float):
        """Clamp speeds, store velocities back into their slots and advect."""
        for i in range(self.state.n_particles[None]):
            p = self.state.order[i]
            vp = self.state.sorted_v[i]
            speed = vp.norm()
            if speed > max_velocity:
                vp *= max_velocity / speed
            self.state.sorted_v[i] = vp
            self.state.v[p] = vp
            self.state.x[p] += vp * dt
