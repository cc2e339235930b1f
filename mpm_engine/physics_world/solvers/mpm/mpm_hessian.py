"""
Matrix-free application of the implicit MPM system matrix (M + dt^2 K).
"""
import taichi as ti

from .mpm_grid import MPMGrid
from .mpm_kernels import STENCIL
from .mpm_materials import ElastoplasticMaterial, stress_differential
from .mpm_state import MPMState


@ti.data_oriented
class HessianOperator:
    """Applies the backward Euler system matrix to a grid velocity field.

    ``apply(src, dst, time_step)`` computes ``dst = (M + dt^2 K) src`` where
    K is the stiffness of the elastic energy linearized at ``Fe_hat``.
    Excluded nodes contribute nothing and receive 0, which keeps the
    operator symmetric on the included nodes. ``dst`` is overwritten.
    """

    def __init__(self, state: MPMState, grid: MPMGrid, material: ElastoplasticMaterial):
        self.state = state
        self.grid = grid
        self.material = material

    @ti.kernel
    def clear(self, dst: ti.template()):
        for node in range(self.grid.n_nodes[None]):
            dst[node] = ti.Vector.zero(float, 3)

    @ti.kernel
    def deformation_differential(self, src: ti.template()):
        """delta_F[p] = sum over included nodes of outer(src, dN), times Fe[p]."""
        for i in range(self.state.n_particles[None]):
            p = self.state.order[i]
            xp = self.state.x[p]
            base = self.grid.cell_of(xp)
            dF = ti.Matrix.zero(float, 3, 3)
            for di, dj, dk in ti.ndrange(*STENCIL):
                node = self.grid.node_index(base + ti.Vector([di, dj, dk]))
                if node >= 0:
                    if self.grid.excluded[node] == 0:
                        dF += src[node].outer_product(self.grid.weight_gradient(xp, node))
            self.state.delta_F[p] = dF @ self.state.Fe[p]

    @ti.kernel
    def scatter_stress_differential(self, dst: ti.template()):
        for i in range(self.state.n_particles[None]):
            p = self.state.order[i]
            dP = stress_differential(
                self.state.Fe_hat[p],
                self.state.delta_F[p],
                self.state.Fp[p].determinant(),
                self.material.mu,
                self.material.lam,
                self.material.hardening_coefficient,
                self.material.eps,
            )
            A = self.state.volume[p] * dP @ self.state.Fe[p].transpose()

            xp = self.state.x[p]
            base = self.grid.cell_of(xp)
            for di, dj, dk in ti.ndrange(*STENCIL):
                node = self.grid.node_index(base + ti.Vector([di, dj, dk]))
                if node >= 0:
                    if self.grid.excluded[node] == 0:
                        dst[node] += A @ self.grid.weight_gradient(xp, node)

    @ti.kernel
    def combine(self, src: ti.template(), dst: ti.template(), dt_squared: float):
        for node in range(self.grid.n_nodes[None]):
            if self.grid.excluded[node] == 0:
                dst[node] = self.grid.mass[node] * src[node] + dt_squared * dst[node]
            else:
                dst[node] = ti.Vector.zero(float, 3)

    def apply(self, src, dst, time_step: float):
        self.clear(dst)
        self.deformation_differential(src)
        self.scatter_stress_differential(dst)
        self.combine(src, dst, time_step * time_step)
