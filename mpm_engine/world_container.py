"""High-level orchestration layer around the physics world."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from .configuration import SceneConfig, load_scene_config
from .physics_world.state import WorldSnapshot
from .physics_world.world import PhysicsWorld


@dataclass
class WorldContainer:
    """Bundles scene configuration and physics world."""

    config: SceneConfig
    world: PhysicsWorld
    current_step: int = 0
    observers: List[Callable[[WorldSnapshot], None]] = field(default_factory=list)

    @classmethod
    def from_config(cls, config: SceneConfig) -> "WorldContainer":
        return cls(config=config, world=PhysicsWorld.from_config(config))

    @classmethod
    def from_config_file(cls, config_path: str | Path) -> "WorldContainer":
        return cls.from_config(load_scene_config(config_path))

    def step(self, dt: float | None = None) -> WorldSnapshot:
        """Advance the world by a single step and notify observers."""
        dt = dt if dt is not None else self.config.simulation.time_step
        snapshot = self.world.step(dt)
        for observer in self.observers:
            observer(snapshot)
        self.current_step += 1
        return snapshot

    def run(self, steps: Optional[int] = None) -> Optional[WorldSnapshot]:
        """Execute multiple simulation steps and return the last snapshot."""
        total_steps = steps if steps is not None else self.config.simulation.total_steps
        snapshot = None
        for _ in range(total_steps):
            snapshot = self.step()
        return snapshot
