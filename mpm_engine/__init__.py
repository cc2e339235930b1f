"""Core engine package for the implicit elastoplastic MPM simulator."""

from .world_container import WorldContainer
from .configuration import load_scene_config, SceneConfig
from .exceptions import CapacityError, ConfigurationError, MPMError, ParticleLookupError

__all__ = [
    "WorldContainer",
    "SceneConfig",
    "load_scene_config",
    "MPMError",
    "ConfigurationError",
    "CapacityError",
    "ParticleLookupError",
]
