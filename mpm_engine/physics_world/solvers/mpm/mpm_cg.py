"""
Conjugate gradient solver over the grid degrees of freedom.
"""
from typing import Callable

import taichi as ti

from ....configuration import SolverConfig
from ...state import SolveReport
from .mpm_grid import MPMGrid


@ti.data_oriented
class ConjugateGradientSolver:
    """Solves ``A x = b`` for grid velocity fields with a matrix-free ``A``.

    ``apply(src, dst)`` must overwrite ``dst`` with ``A src``. Dot products
    and the convergence norm only range over nodes that are not excluded.
    The residual is recomputed from scratch at the first iteration and every
    ``restart_iterations`` iterations after that.
    """

    def __init__(self, grid: MPMGrid, config: SolverConfig):
        self.grid = grid
        self.config = config

        self.r = ti.Vector.field(3, dtype=float, shape=grid.max_nodes)  # residual
        self.q = ti.Vector.field(3, dtype=float, shape=grid.max_nodes)  # operator output
        self.s = ti.Vector.field(3, dtype=float, shape=grid.max_nodes)  # search direction
        self._norm = ti.field(dtype=float, shape=())

    @ti.kernel
    def dot(self, a: ti.template(), b: ti.template()) -> float:
        total = 0.0
        for node in range(self.grid.n_nodes[None]):
            if self.grid.excluded[node] == 0:
                total += a[node].dot(b[node])
        return total

    @ti.kernel
    def max_norm(self, a: ti.template()) -> float:
        """Largest per-node vector length over the included nodes."""
        self._norm[None] = 0.0
        for node in range(self.grid.n_nodes[None]):
            if self.grid.excluded[node] == 0:
                ti.atomic_max(self._norm[None], a[node].norm())
        return self._norm[None]

    @ti.kernel
    def residual(self, b: ti.template(), ax: ti.template(), r: ti.template()):
        for node in range(self.grid.n_nodes[None]):
            if self.grid.excluded[node] == 0:
                r[node] = b[node] - ax[node]
            else:
                r[node] = ti.Vector.zero(float, 3)

    @ti.kernel
    def copy(self, src: ti.template(), dst: ti.template()):
        for node in range(self.grid.n_nodes[None]):
            dst[node] = src[node]

    @ti.kernel
    def axpy(self, alpha: float, x: ti.template(), y: ti.template()):
        """y += alpha * x on included nodes."""
        for node in range(self.grid.n_nodes[None]):
            if self.grid.excluded[node] == 0:
                y[node] += alpha * x[node]

    @ti.kernel
    def xpay(self, x: ti.template(), beta: float, y: ti.template()):
        """y = x + beta * y on included nodes."""
        for node in range(self.grid.n_nodes[None]):
            if self.grid.excluded[node] == 0:
                y[node] = x[node] + beta * y[node]

    def solve(self, apply: Callable, b, x) -> SolveReport:
        """
        Run conjugate gradient iterations starting from the current ``x``.

        Args:
            apply: Operator callback ``apply(src, dst)``
            b: Right-hand side field
            x: Initial guess, overwritten with the solution

        Returns:
            SolveReport describing how the iteration ended
        """
        config = self.config
        tolerance = max(config.relative_tolerance * self.max_norm(b), config.absolute_tolerance)

        rho_old = 0.0
        residual_norm = 0.0
        restarts = 0
        converged = False
        degenerate = False
        iterations = 0
        while True:
            restart = iterations == 0 or (
                config.restart_iterations > 0 and iterations % config.restart_iterations == 0
            )
            if restart:
                apply(x, self.q)
                self.residual(b, self.q, self.r)
                restarts += 1
                if config.verbose:
                    print(f"[ConjugateGradient] Restarting at iteration {iterations}")

            residual_norm = self.max_norm(self.r)
            if config.verbose:
                print(f"[ConjugateGradient] iter {iterations}: residual={residual_norm:.6e}, tol={tolerance:.6e}")
            if residual_norm <= tolerance:
                converged = True
                break
            if iterations >= config.max_iterations:
                break

            rho = self.dot(self.r, self.r)
            if restart:
                self.copy(self.r, self.s)
            else:
                self.xpay(self.r, rho / rho_old, self.s)

            apply(self.s, self.q)
            s_dot_q = self.dot(self.s, self.q)
            if abs(s_dot_q) <= config.degenerate_epsilon:
                degenerate = True
                print(
                    f"[ConjugateGradient] Warning: degenerate search direction at iteration {iterations} "
                    f"(s.q={s_dot_q:.3e}), keeping current estimate with residual {residual_norm:.6e}"
                )
                break

            alpha = rho / s_dot_q
            self.axpy(alpha, self.s, x)
            self.axpy(-alpha, self.q, self.r)
            rho_old = rho
            iterations += 1

        if config.verbose:
            print(f"[ConjugateGradient] {iterations} iterations, residual={residual_norm:.6e}, converged={converged}")

        return SolveReport(
            iterations=iterations,
            residual_norm=residual_norm,
            tolerance=tolerance,
            converged=converged,
            degenerate=degenerate,
            restarts=restarts,
        )
