"""
MPM (Material Point Method) solver module.
Provides the implicit elastoplastic grid/particle step.
"""

from .mpm_solver import MPMSolver
from .mpm_state import MPMState

__all__ = ['MPMSolver', 'MPMState']
