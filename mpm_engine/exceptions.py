"""Exception hierarchy for the MPM engine.

All engine-specific exceptions inherit from MPMError so callers can catch
them generically. Numerical degeneracies inside a step (singular deformation
gradients, empty grid nodes, stalled conjugate gradient directions) are
handled where they occur and never surface as exceptions.
"""


class MPMError(RuntimeError):
    """Base exception for all MPM engine errors."""
    pass


class ConfigurationError(MPMError):
    """Configuration or user input validation error.

    Raised when:
    - A material constant is out of range (mass, clamp bounds, blend factor)
    - The kernel radius or time step is not strictly positive
    - Solver iteration counts are negative
    """
    pass


class CapacityError(MPMError):
    """Pre-allocated particle, grid or obstacle buffers are too small.

    Raised when:
    - More particles are added than ``max_particles``
    - The grid extents for a step need more nodes than ``max_nodes``
    - More obstacles are registered than ``max_obstacles``
    """
    pass


class ParticleLookupError(MPMError, KeyError):
    """A particle id is not present in the particle store."""
    pass
