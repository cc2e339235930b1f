"""
MPM material model - fixed-corotated elasticity with snow plasticity.
"""
import numpy as np
import taichi as ti

from ....configuration import MaterialConfig
from ...state import DeformationStats
from .mpm_grid import MPMGrid
from .mpm_kernels import STENCIL
from .mpm_state import MPMState


@ti.func
def cofactor(F):
    """Cofactor matrix of F, equal to det(F) * F^-T and finite for singular F."""
    return ti.Matrix([
        [F[1, 1] * F[2, 2] - F[1, 2] * F[2, 1],
         F[1, 2] * F[2, 0] - F[1, 0] * F[2, 2],
         F[1, 0] * F[2, 1] - F[1, 1] * F[2, 0]],
        [F[0, 2] * F[2, 1] - F[0, 1] * F[2, 2],
         F[0, 0] * F[2, 2] - F[0, 2] * F[2, 0],
         F[0, 1] * F[2, 0] - F[0, 0] * F[2, 1]],
        [F[0, 1] * F[1, 2] - F[0, 2] * F[1, 1],
         F[0, 2] * F[1, 0] - F[0, 0] * F[1, 2],
         F[0, 0] * F[1, 1] - F[0, 1] * F[1, 0]],
    ])


@ti.func
def polar_decomposition(F):
    """Split F into rotation R and symmetric stretch S with F = R @ S."""
    U, sig, V = ti.svd(F)
    R = U @ V.transpose()
    S = V @ sig @ V.transpose()
    return R, S


@ti.func
def hardening(plastic_det, coefficient):
    return ti.exp(coefficient * (1.0 - plastic_det))


@ti.func
def first_piola(F, plastic_det, mu, lam, coefficient):
    """
    First Piola-Kirchhoff stress of the fixed-corotated model with hardening.

    Args:
        F: Elastic deformation gradient
        plastic_det: Determinant of the plastic deformation gradient
        mu: Shear modulus
        lam: Lame's first parameter
        coefficient: Hardening coefficient

    Returns:
        P = 2 mu (F - R) + lam (J - 1) J F^-T, both moduli scaled by hardening
    """
    scale = hardening(plastic_det, coefficient)
    R, _ = polar_decomposition(F)
    J = F.determinant()
    return 2.0 * mu * scale * (F - R) + lam * scale * (J - 1.0) * cofactor(F)


@ti.func
def rotational_derivative(R, S, dF, eps):
    """
    Differential of the polar rotation, dR = R A with A skew.

    A solves A S + S A = W - W^T for W = R^T dF. The three unknowns of A
    form a 3x3 system; a near singular system yields dR = 0.
    """
    W = R.transpose() @ dF
    M = ti.Matrix([
        [S[0, 0] + S[1, 1], S[1, 2], -S[0, 2]],
        [S[1, 2], S[0, 0] + S[2, 2], S[0, 1]],
        [-S[0, 2], S[0, 1], S[1, 1] + S[2, 2]],
    ])
    b = ti.Vector([W[0, 1] - W[1, 0], W[0, 2] - W[2, 0], W[1, 2] - W[2, 1]])
    dR = ti.Matrix.zero(float, 3, 3)
    if ti.abs(M.determinant()) > eps:
        x = M.inverse() @ b
        A = ti.Matrix([
            [0.0, x[0], x[1]],
            [-x[0], 0.0, x[2]],
            [-x[1], -x[2], 0.0],
        ])
        dR = R @ A
    return dR


@ti.func
def stress_differential(F, dF, plastic_det, mu, lam, coefficient, eps):
    """
    Directional derivative dP of first_piola at F along dF.

    dJ J F^-T and d(J F^-T) are both written through the cofactor matrix,
    which is quadratic in F, so the expression stays finite when F is singular.
    """
    scale = hardening(plastic_det, coefficient)
    R, S = polar_decomposition(F)
    dR = rotational_derivative(R, S, dF, eps)
    J = F.determinant()
    cof = cofactor(F)
    # J * dJ with dJ = J F^-T : dF
    j_dj = (cof * dF).sum()
    d_cof = cofactor(F + dF) - cof - cofactor(dF)
    return (2.0 * mu * scale * (dF - dR)
            + lam * scale * j_dj * cof
            + lam * scale * (J - 1.0) * d_cof)


@ti.func
def plastic_projection(Fe_trial, Fp, lower, upper):
    """
    Clamp the elastic singular values and push the excess into Fp.

    The total gradient Fe_trial @ Fp is preserved.
    """
    F_total = Fe_trial @ Fp
    U, sig, V = ti.svd(Fe_trial)
    sig_c = ti.Matrix.zero(float, 3, 3)
    sig_inv = ti.Matrix.zero(float, 3, 3)
    for d in ti.static(range(3)):
        sig_c[d, d] = ti.min(ti.max(sig[d, d], lower), upper)
        sig_inv[d, d] = 1.0 / sig_c[d, d]
    Fe = U @ sig_c @ V.transpose()
    Fp_new = V @ sig_inv @ U.transpose() @ F_total
    return Fe, Fp_new


@ti.data_oriented
class ElastoplasticMaterial:
    """Snow-like elastoplastic continuum driving the grid forces and plastic flow."""

    def __init__(self, state: MPMState, grid: MPMGrid, config: MaterialConfig, eps: float = 1e-30):
        self.state = state
        self.grid = grid
        self.config = config

        # Constants are baked into the kernels at compile time
        self.mu = config.mu
        self.lam = config.lame_lambda
        self.hardening_coefficient = config.hardening_coefficient
        self.lower, self.upper = config.yield_bounds
        self.eps = eps

    @ti.func
    def velocity_gradient(self, p, velocities: ti.template()):
        xp = self.state.x[p]
        base = self.grid.cell_of(xp)
        L = ti.Matrix.zero(float, 3, 3)
        for di, dj, dk in ti.ndrange(*STENCIL):
            node = self.grid.node_index(base + ti.Vector([di, dj, dk]))
            if node >= 0:
                L += velocities[node].outer_product(self.grid.weight_gradient(xp, node))
        return L

    @ti.kernel
    def advance_elastic(self, dt: float, target: ti.template()):
        """target[p] = (I + dt * grad v) @ Fe[p] with the current grid velocities."""
        for i in range(self.state.n_particles[None]):
            p = self.state.order[i]
            L = self.velocity_gradient(p, self.grid.vel)
            target[p] = (ti.Matrix.identity(float, 3) + dt * L) @ self.state.Fe[p]

    def compute_elastic_candidate(self, dt: float):
        """Fe_hat from the pre-solve grid velocities."""
        self.advance_elastic(dt, self.state.Fe_hat)

    def update_trial_gradient(self, dt: float):
        """Overwrite Fe with the trial gradient from the solved grid velocities."""
        self.advance_elastic(dt, self.state.Fe)

    @ti.kernel
    def accumulate_grid_forces(self):
        """Scatter the internal elastic forces of every particle to its stencil."""
        for i in range(self.state.n_particles[None]):
            p = self.state.order[i]
            Fe = self.state.Fe[p]
            plastic_det = self.state.Fp[p].determinant()
            P = first_piola(self.state.Fe_hat[p], plastic_det, self.mu, self.lam, self.hardening_coefficient)
            stress = self.state.volume[p] * P @ Fe.transpose() / (Fe.determinant() * plastic_det)

            xp = self.state.x[p]
            base = self.grid.cell_of(xp)
            for di, dj, dk in ti.ndrange(*STENCIL):
                node = self.grid.node_index(base + ti.Vector([di, dj, dk]))
                if node >= 0:
                    self.grid.force[node] -= stress @ self.grid.weight_gradient(xp, node)

    @ti.kernel
    def project_plastic(self):
        for p in range(self.state.n_particles[None]):
            Fe, Fp = plastic_projection(self.state.Fe[p], self.state.Fp[p], self.lower, self.upper)
            self.state.Fe[p] = Fe
            self.state.Fp[p] = Fp

    def deformation_stats(self) -> DeformationStats:
        n = self.state.count
        if n == 0:
            return DeformationStats(1.0, 1.0, 1.0, 1.0, 1.0, 1.0)
        elastic = np.linalg.det(self.state.get_elastic_gradients())
        plastic = np.linalg.det(self.state.get_plastic_gradients())
        return DeformationStats(
            elastic_j_min=float(elastic.min()),
            elastic_j_max=float(elastic.max()),
            elastic_j_avg=float(elastic.mean()),
            plastic_j_min=float(plastic.min()),
            plastic_j_max=float(plastic.max()),
            plastic_j_avg=float(plastic.mean()),
        )
