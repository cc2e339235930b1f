"""
MPM state management - stores particle positions, velocities, deformation gradients, etc.
"""
from typing import Dict, Iterable, List, Optional

import numpy as np
import taichi as ti

from ....exceptions import CapacityError, ParticleLookupError
from ...state import ParticleSnapshot


@ti.data_oriented
class MPMState:
    """Manages MPM particle state in arena slots.

    Every per-particle quantity is stored by slot. Slots are dense: removing
    a particle moves the last slot into the hole, so the leading
    ``n_particles`` slots are always live. External code refers to particles
    through stable integer ids that survive such moves.

    A sorted order (sorted index -> slot) is installed once per step by the
    broad phase; ``sorted_v`` holds the velocities in that order and is the
    slice of the global velocity vector owned by this container.
    """

    def __init__(self, max_particles: int):
        """
        Initialize MPM state.

        Args:
            max_particles: Maximum number of MPM particles
        """
        self.max_particles = max_particles

        # Particle data, indexed by slot
        self.x = ti.Vector.field(3, dtype=float, shape=max_particles)       # positions
        self.v = ti.Vector.field(3, dtype=float, shape=max_particles)       # velocities
        self.Fe = ti.Matrix.field(3, 3, dtype=float, shape=max_particles)   # elastic deformation gradient
        self.Fp = ti.Matrix.field(3, 3, dtype=float, shape=max_particles)   # plastic deformation gradient
        self.Fe_hat = ti.Matrix.field(3, 3, dtype=float, shape=max_particles)
        self.delta_F = ti.Matrix.field(3, 3, dtype=float, shape=max_particles)
        self.volume = ti.field(dtype=float, shape=max_particles)            # 0 until estimated

        # Per-step ordering, indexed by sorted position
        self.order = ti.field(dtype=ti.i32, shape=max_particles)
        self.sorted_v = ti.Vector.field(3, dtype=float, shape=max_particles)

        # Active particle count
        self.n_particles = ti.field(dtype=ti.i32, shape=())

        self._slot_of: Dict[int, int] = {}
        self._id_of: List[int] = []
        self._next_id = 0

    @property
    def count(self) -> int:
        return self.n_particles[None]

    @ti.kernel
    def _append(self, start: ti.i32, positions: ti.types.ndarray(), velocities: ti.types.ndarray()):
        for i in range(positions.shape[0]):
            slot = start + i
            self.x[slot] = ti.Vector([positions[i, 0], positions[i, 1], positions[i, 2]])
            self.v[slot] = ti.Vector([velocities[i, 0], velocities[i, 1], velocities[i, 2]])
            self.Fe[slot] = ti.Matrix.identity(float, 3)
            self.Fp[slot] = ti.Matrix.identity(float, 3)
            self.Fe_hat[slot] = ti.Matrix.identity(float, 3)
            self.delta_F[slot] = ti.Matrix.zero(float, 3, 3)
            self.volume[slot] = 0.0
            # Identity order until the broad phase installs a sorted one
            self.order[slot] = slot
            self.sorted_v[slot] = self.v[slot]

    @ti.kernel
    def _move(self, src: ti.i32, dst: ti.i32):
        self.x[dst] = self.x[src]
        self.v[dst] = self.v[src]
        self.Fe[dst] = self.Fe[src]
        self.Fp[dst] = self.Fp[src]
        self.Fe_hat[dst] = self.Fe_hat[src]
        self.delta_F[dst] = self.delta_F[src]
        self.volume[dst] = self.volume[src]

    def add_particles(self, positions: np.ndarray, velocities: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Append particles with identity deformation gradients.

        Args:
            positions: (N, 3) positions
            velocities: (N, 3) velocities, zero when omitted

        Returns:
            Stable ids of the new particles
        """
        positions = np.ascontiguousarray(positions, dtype=np.float64).reshape(-1, 3)
        count = positions.shape[0]
        if velocities is None:
            velocities = np.zeros_like(positions)
        velocities = np.ascontiguousarray(velocities, dtype=np.float64).reshape(-1, 3)
        if velocities.shape[0] != count:
            raise ValueError(f"Got {count} positions but {velocities.shape[0]} velocities")

        start = self.n_particles[None]
        if start + count > self.max_particles:
            raise CapacityError(f"Too many particles: {start + count} > {self.max_particles}")
        if count == 0:
            return np.zeros(0, dtype=np.int64)

        self._append(start, positions, velocities)
        self.n_particles[None] = start + count

        ids = np.arange(self._next_id, self._next_id + count, dtype=np.int64)
        for offset, pid in enumerate(ids):
            self._slot_of[int(pid)] = start + offset
            self._id_of.append(int(pid))
        self._next_id += count
        return ids

    def remove_particles(self, ids: Iterable[int]) -> None:
        """
        Remove particles by id, filling each hole with the last live slot.

        All ids are checked before anything is moved, so a bad id leaves the
        state untouched.
        """
        ids = [int(pid) for pid in ids]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Duplicate particle ids in removal: {ids}")
        for pid in ids:
            self.slot_of(pid)

        for pid in ids:
            slot = self.slot_of(pid)
            last = self.n_particles[None] - 1
            if slot != last:
                self._move(last, slot)
                moved = self._id_of[last]
                self._id_of[slot] = moved
                self._slot_of[moved] = slot
            self._id_of.pop()
            del self._slot_of[pid]
            self.n_particles[None] = last
        # Previously installed orders may reference vacated slots
        self.set_order(np.arange(self.n_particles[None], dtype=np.int32))

    def slot_of(self, pid: int) -> int:
        try:
            return self._slot_of[pid]
        except KeyError:
            raise ParticleLookupError(pid) from None

    def id_of(self, slot: int) -> int:
        if not 0 <= slot < self.n_particles[None]:
            raise ParticleLookupError(f"slot {slot}")
        return self._id_of[slot]

    def ids(self) -> np.ndarray:
        return np.asarray(self._id_of, dtype=np.int64)

    @ti.kernel
    def _write_order(self, order: ti.types.ndarray()):
        for i in range(order.shape[0]):
            self.order[i] = order[i]

    def set_order(self, order: np.ndarray) -> None:
        """Install the sorted order (sorted index -> slot) for the coming step."""
        order = np.ascontiguousarray(order, dtype=np.int32).reshape(-1)
        n = self.n_particles[None]
        if order.shape[0] != n:
            raise ValueError(f"Order has {order.shape[0]} entries, store has {n} particles")
        if n and not np.array_equal(np.sort(order), np.arange(n)):
            raise ValueError("Order must be a permutation of the live slots")
        if n:
            self._write_order(order)

    def get_order(self) -> np.ndarray:
        return self.order.to_numpy()[: self.n_particles[None]]

    @ti.kernel
    def gather_sorted(self):
        """Copy slot velocities into sorted order."""
        for i in range(self.n_particles[None]):
            self.sorted_v[i] = self.v[self.order[i]]

    def velocity_vector(self) -> np.ndarray:
        """Sorted velocities flattened to 3 entries per particle."""
        return self.sorted_v.to_numpy()[: self.n_particles[None]].reshape(-1)

    @ti.kernel
    def _write_sorted(self, values: ti.types.ndarray()):
        for i in range(values.shape[0]):
            self.sorted_v[i] = ti.Vector([values[i, 0], values[i, 1], values[i, 2]])

    def set_velocity_vector(self, values: np.ndarray) -> None:
        n = self.n_particles[None]
        values = np.ascontiguousarray(values, dtype=np.float64).reshape(-1, 3)
        if values.shape[0] != n:
            raise ValueError(f"Velocity vector covers {values.shape[0]} particles, store has {n}")
        if n:
            self._write_sorted(values)

    def get_positions(self) -> np.ndarray:
        """Get particle positions as numpy array (slot order)."""
        return self.x.to_numpy()[: self.n_particles[None]]

    def get_velocities(self) -> np.ndarray:
        """Get particle velocities as numpy array (slot order)."""
        return self.v.to_numpy()[: self.n_particles[None]]

    def get_volumes(self) -> np.ndarray:
        return self.volume.to_numpy()[: self.n_particles[None]]

    def get_elastic_gradients(self) -> np.ndarray:
        return self.Fe.to_numpy()[: self.n_particles[None]]

    def get_plastic_gradients(self) -> np.ndarray:
        return self.Fp.to_numpy()[: self.n_particles[None]]

    def needs_volume(self) -> bool:
        """True when some particle has not had its volume estimated yet."""
        return bool(np.any(self.get_volumes() <= 0.0))

    def snapshot(self) -> ParticleSnapshot:
        return ParticleSnapshot(
            ids=self.ids(),
            positions=self.get_positions(),
            velocities=self.get_velocities(),
            volumes=self.get_volumes(),
            elastic_gradients=self.get_elastic_gradients(),
            plastic_gradients=self.get_plastic_gradients(),
        )
