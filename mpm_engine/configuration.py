"""Scene configuration dataclasses and loader utilities."""

from __future__ import annotations

from dataclasses import dataclass, field
from importlib import import_module
from pathlib import Path
from types import ModuleType
from typing import List, Sequence

from .exceptions import ConfigurationError


_YAML_MODULE: ModuleType | None = None


def _load_yaml_module() -> ModuleType:
    global _YAML_MODULE
    if _YAML_MODULE is None:
        try:
            _YAML_MODULE = import_module("yaml")
        except ModuleNotFoundError as exc:  # pragma: no cover - dependency hint
            raise ImportError(
                "PyYAML is required to load scene configurations. Install it via 'pip install pyyaml'."
            ) from exc
    return _YAML_MODULE


@dataclass
class SimulationConfig:
    time_step: float  # seconds (s)
    total_steps: int = 100
    gravity: Sequence[float] = (0.0, -9.81, 0.0)  # meters per second squared (m/s^2)

    def __post_init__(self) -> None:
        if self.time_step <= 0.0:
            raise ConfigurationError(f"time_step must be positive, got {self.time_step}")
        if self.total_steps < 0:
            raise ConfigurationError(f"total_steps must be non-negative, got {self.total_steps}")
        if len(self.gravity) != 3:
            raise ConfigurationError(f"gravity must have 3 components, got {self.gravity}")


@dataclass
class MaterialConfig:
    """Process-wide constants of the snow-like elastoplastic material."""

    particle_mass: float = 1.0  # kilograms (kg)
    mu: float = 1.0  # Lame shear parameter (Pa)
    lame_lambda: float = 1.0  # Lame first parameter (Pa)
    hardening_coefficient: float = 1.0  # dimensionless
    theta_c: float = 2.5e-2  # critical compression
    theta_s: float = 7.5e-3  # critical stretch
    alpha: float = 0.95  # FLIP share of the PIC/FLIP blend

    def __post_init__(self) -> None:
        if self.particle_mass <= 0.0:
            raise ConfigurationError(f"particle_mass must be positive, got {self.particle_mass}")
        if self.mu < 0.0 or self.lame_lambda < 0.0:
            raise ConfigurationError(
                f"Lame parameters must be non-negative, got mu={self.mu}, lambda={self.lame_lambda}"
            )
        if self.theta_c < 0.0 or self.theta_s < 0.0:
            raise ConfigurationError(
                f"theta_c and theta_s must be non-negative, got {self.theta_c}, {self.theta_s}"
            )
        # 1 - theta_c is the smallest elastic singular value and is inverted by the return mapping
        if self.theta_c >= 1.0:
            raise ConfigurationError(f"theta_c must be below 1, got {self.theta_c}")
        if not 0.0 <= self.alpha <= 1.0:
            raise ConfigurationError(f"alpha must lie in [0, 1], got {self.alpha}")

    @property
    def yield_bounds(self) -> tuple[float, float]:
        return 1.0 - self.theta_c, 1.0 + self.theta_s


@dataclass
class KernelConfig:
    kernel_radius: float = 0.05  # meters (m)
    collision_envelope: float = 0.0  # meters (m)
    max_velocity: float = 20.0  # meters per second (m/s)

    def __post_init__(self) -> None:
        if self.kernel_radius <= 0.0:
            raise ConfigurationError(f"kernel_radius must be positive, got {self.kernel_radius}")
        if self.collision_envelope < 0.0:
            raise ConfigurationError(f"collision_envelope must be non-negative, got {self.collision_envelope}")
        if self.max_velocity <= 0.0:
            raise ConfigurationError(f"max_velocity must be positive, got {self.max_velocity}")

    @property
    def bin_edge(self) -> float:
        """Voxel edge of the background grid."""
        return 2.0 * self.kernel_radius + self.collision_envelope


@dataclass
class SolverConfig:
    max_iterations: int = 10
    restart_iterations: int = 100  # 0 disables periodic restarts
    relative_tolerance: float = 1e-4
    absolute_tolerance: float = 1e-6
    mass_epsilon: float = 1e-10  # kilograms (kg), nodes below are inactive
    degenerate_epsilon: float = 1e-30
    verbose: bool = False
    debug_interval: int = 200  # steps between deformation statistics, 0 disables

    def __post_init__(self) -> None:
        if self.max_iterations < 0:
            raise ConfigurationError(f"max_iterations must be non-negative, got {self.max_iterations}")
        if self.restart_iterations < 0:
            raise ConfigurationError(f"restart_iterations must be non-negative, got {self.restart_iterations}")
        if self.relative_tolerance < 0.0 or self.absolute_tolerance < 0.0:
            raise ConfigurationError("solver tolerances must be non-negative")
        if self.mass_epsilon < 0.0:
            raise ConfigurationError(f"mass_epsilon must be non-negative, got {self.mass_epsilon}")
        if self.degenerate_epsilon < 0.0:
            raise ConfigurationError(f"degenerate_epsilon must be non-negative, got {self.degenerate_epsilon}")


@dataclass
class CapacityConfig:
    max_particles: int = 100000
    max_nodes: int = 500000
    max_obstacles: int = 16

    def __post_init__(self) -> None:
        if self.max_particles <= 0 or self.max_nodes <= 0 or self.max_obstacles <= 0:
            raise ConfigurationError("capacities must be positive")


@dataclass
class ParticleBoxConfig:
    min_corner: Sequence[float]  # meters (m)
    max_corner: Sequence[float]  # meters (m)
    particle_spacing: float  # meters (m)
    initial_velocity: Sequence[float] = (0.0, 0.0, 0.0)  # meters per second (m/s)

    def __post_init__(self) -> None:
        if self.particle_spacing <= 0.0:
            raise ConfigurationError(f"particle_spacing must be positive, got {self.particle_spacing}")


@dataclass
class ObstacleConfig:
    name: str
    shape: str  # "sphere" or "box"
    center: Sequence[float] = (0.0, 0.0, 0.0)  # meters (m), sphere only
    radius: float = 0.0  # meters (m), sphere only
    min_corner: Sequence[float] = (0.0, 0.0, 0.0)  # meters (m), box only
    max_corner: Sequence[float] = (0.0, 0.0, 0.0)  # meters (m), box only

    def __post_init__(self) -> None:
        if self.shape not in ("sphere", "box"):
            raise ConfigurationError(f"Unknown obstacle shape '{self.shape}' for {self.name}")
        if self.shape == "sphere" and self.radius <= 0.0:
            raise ConfigurationError(f"Sphere obstacle {self.name} needs a positive radius")


@dataclass
class SceneConfig:
    scene_name: str
    simulation: SimulationConfig
    material: MaterialConfig = field(default_factory=MaterialConfig)
    kernel: KernelConfig = field(default_factory=KernelConfig)
    solver: SolverConfig = field(default_factory=SolverConfig)
    capacity: CapacityConfig = field(default_factory=CapacityConfig)
    particle_boxes: List[ParticleBoxConfig] = field(default_factory=list)
    obstacles: List[ObstacleConfig] = field(default_factory=list)


def load_scene_config(config_path: str | Path) -> SceneConfig:
    """Load a scene configuration from YAML."""
    path = Path(config_path).expanduser().resolve()
    with path.open("r", encoding="utf-8") as handle:
        yaml_module = _load_yaml_module()
        raw = yaml_module.safe_load(handle)

    return scene_config_from_dict(raw, default_name=path.stem)


def scene_config_from_dict(raw: dict, default_name: str = "scene") -> SceneConfig:
    if not raw or "simulation" not in raw:
        raise ConfigurationError("Scene configuration needs a 'simulation' section")

    particle_boxes = [ParticleBoxConfig(**entry) for entry in (raw.get("particle_boxes") or [])]
    if not particle_boxes:
        print("Warning: No particle box configuration found, the scene starts empty.")

    obstacles = [ObstacleConfig(**entry) for entry in (raw.get("obstacles") or [])]

    return SceneConfig(
        scene_name=raw.get("scene_name", default_name),
        simulation=SimulationConfig(**raw["simulation"]),
        material=MaterialConfig(**(raw.get("material") or {})),
        kernel=KernelConfig(**(raw.get("kernel") or {})),
        solver=SolverConfig(**(raw.get("solver") or {})),
        capacity=CapacityConfig(**(raw.get("capacity") or {})),
        particle_boxes=particle_boxes,
        obstacles=obstacles,
    )
