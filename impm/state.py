from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

import numpy as np

from .constants import GEOM_EPSILON, N_STATE_VARS, N_VOIGT

# (name, dtype, trailing shape); "dim" is resolved per set
_PARTICLE_FIELDS = (
    ("pid", np.int64, ()),
    ("material_id", np.int32, ()),
    ("x", np.float64, ("dim",)),
    ("v", np.float64, ("dim",)),
    ("a", np.float64, ("dim",)),
    ("mass", np.float64, ()),
    ("volume", np.float64, ()),
    ("stress", np.float64, (N_VOIGT,)),
    ("strain", np.float64, (N_VOIGT,)),
    ("dstrain", np.float64, (N_VOIGT,)),
    ("cell", np.int64, ()),
    ("activation_time", np.float64, ()),
    ("state_vars", np.float64, (N_STATE_VARS,)),
)

PARTICLE_FIELD_NAMES = tuple(name for name, _dt, _shape in _PARTICLE_FIELDS)


def _field_shape(n: int, shape: tuple, dim: int) -> tuple:
    return (n,) + tuple(dim if s == "dim" else s for s in shape)


@dataclass
class ParticleSet:
    """Material points as a struct of arrays.

    Every record field travels together: ``take``/``concat`` and the wire
    form (``to_arrays``) never drop a column, so migration, halo exchange and
    checkpoints all preserve the full particle state.
    """

    dim: int
    pid: np.ndarray
    material_id: np.ndarray
    x: np.ndarray
    v: np.ndarray
    a: np.ndarray
    mass: np.ndarray
    volume: np.ndarray
    stress: np.ndarray
    strain: np.ndarray
    dstrain: np.ndarray
    cell: np.ndarray
    activation_time: np.ndarray
    state_vars: np.ndarray

    def __len__(self) -> int:
        return int(self.pid.shape[0])

    @classmethod
    def empty(cls, dim: int, n: int = 0) -> "ParticleSet":
        cols = {}
        for name, dt, shape in _PARTICLE_FIELDS:
            cols[name] = np.zeros(_field_shape(n, shape, dim), dtype=dt)
        cols["cell"][:] = -1
        return cls(dim=int(dim), **cols)

    @classmethod
    def from_arrays(cls, dim: int, arrays: Dict[str, np.ndarray]) -> "ParticleSet":
        missing = [name for name in PARTICLE_FIELD_NAMES if name not in arrays]
        if missing:
            raise ValueError(f"particle arrays missing fields: {missing}")
        n = int(np.asarray(arrays["pid"]).shape[0])
        cols = {}
        for name, dt, shape in _PARTICLE_FIELDS:
            arr = np.array(arrays[name], dtype=dt, copy=True)
            want = _field_shape(n, shape, dim)
            if arr.shape != want:
                raise ValueError(f"particle field {name!r} has shape {arr.shape}, expected {want}")
            cols[name] = arr
        return cls(dim=int(dim), **cols)

    def to_arrays(self) -> Dict[str, np.ndarray]:
        return {name: getattr(self, name) for name in PARTICLE_FIELD_NAMES}

    def take(self, idx) -> "ParticleSet":
        idx = np.asarray(idx)
        if idx.dtype != bool:
            idx = idx.astype(np.int64)
        cols = {name: np.array(getattr(self, name)[idx], copy=True) for name in PARTICLE_FIELD_NAMES}
        return ParticleSet(dim=self.dim, **cols)

    @staticmethod
    def concat(parts: Sequence["ParticleSet"], dim: int) -> "ParticleSet":
        parts = [p for p in parts if p is not None and len(p) > 0]
        if not parts:
            return ParticleSet.empty(dim)
        for p in parts:
            if p.dim != dim:
                raise ValueError(f"cannot concat particle sets of dim {p.dim} into dim {dim}")
        cols = {name: np.concatenate([getattr(p, name) for p in parts], axis=0) for name in PARTICLE_FIELD_NAMES}
        return ParticleSet(dim=int(dim), **cols)

    def sorted_by_pid(self) -> "ParticleSet":
        return self.take(np.argsort(self.pid, kind="stable"))

    def frozen(self) -> "ParticleSet":
        """Read-only copy; used for halo replicas which are only ever overwritten."""
        out = self.take(np.arange(len(self)))
        for name in PARTICLE_FIELD_NAMES:
            getattr(out, name).setflags(write=False)
        return out

    def active_mask(self, t: Optional[float]) -> np.ndarray:
        if t is None:
            return np.ones(len(self), dtype=bool)
        return self.activation_time <= float(t) + GEOM_EPSILON

    def active_ids(self, t: Optional[float]) -> np.ndarray:
        return np.nonzero(self.active_mask(t))[0].astype(np.int64)

    def total_mass(self, t: Optional[float] = None) -> float:
        return float(self.mass[self.active_mask(t)].sum())


@dataclass
class NodeSet:
    """Nodal accumulators and boundary data.

    ``reset`` zeroes every accumulator before particles contribute; boundary
    constraints and concentrated loads are persistent and survive it.
    """

    dim: int
    mass: np.ndarray
    momentum: np.ndarray
    inertia: np.ndarray
    force_ext: np.ndarray
    force_int: np.ndarray
    velocity: np.ndarray
    acceleration: np.ndarray
    du_pred: np.ndarray
    v_pred: np.ndarray
    du: np.ndarray
    velocity_new: np.ndarray
    acceleration_new: np.ndarray
    constraints: np.ndarray
    applied_force: np.ndarray

    _ACCUMULATORS = (
        "mass", "momentum", "inertia", "force_ext", "force_int",
        "velocity", "acceleration", "du_pred", "v_pred", "du",
        "velocity_new", "acceleration_new",
    )

    @classmethod
    def zeros(cls, n_nodes: int, dim: int) -> "NodeSet":
        vec = lambda: np.zeros((n_nodes, dim), dtype=np.float64)  # noqa: E731
        return cls(
            dim=int(dim),
            mass=np.zeros((n_nodes,), dtype=np.float64),
            momentum=vec(),
            inertia=vec(),
            force_ext=vec(),
            force_int=vec(),
            velocity=vec(),
            acceleration=vec(),
            du_pred=vec(),
            v_pred=vec(),
            du=vec(),
            velocity_new=vec(),
            acceleration_new=vec(),
            constraints=np.zeros((n_nodes, dim), dtype=bool),
            applied_force=vec(),
        )

    def __len__(self) -> int:
        return int(self.mass.shape[0])

    def reset(self) -> None:
        for name in self._ACCUMULATORS:
            getattr(self, name).fill(0.0)

    @property
    def force(self) -> np.ndarray:
        return self.force_ext + self.force_int

    def apply_constraints(self, *arrays: np.ndarray) -> None:
        for arr in arrays:
            arr[self.constraints] = 0.0


def kinetic_energy(v: np.ndarray, mass: np.ndarray) -> float:
    masses = np.asarray(mass, dtype=float)
    if masses.ndim != 1 or masses.shape[0] != v.shape[0]:
        raise ValueError("mass array must have shape (N,)")
    return 0.5 * float((masses[:, None] * (v * v)).sum())


def momentum(v: np.ndarray, mass: np.ndarray) -> np.ndarray:
    return (np.asarray(mass, dtype=float)[:, None] * v).sum(axis=0)


def init_particles(blocks, dim: int, spacing: np.ndarray) -> ParticleSet:
    """Generate particles from block configs; pids are sequential over blocks.

    A block is either a box ``lo``..``hi`` filled with ``ppc`` particles per
    cell edge (each at the centre of its sub-volume), or an explicit list of
    ``points`` sharing one ``volume``.  Mass is left at zero for
    ``compute_mass``; cells are left at -1 for the first locate.
    """
    spacing = np.asarray(spacing, dtype=np.float64)
    parts = []
    next_pid = 0
    for b in blocks:
        if b.points is not None:
            x = np.asarray(b.points, dtype=np.float64).reshape(-1, dim)
            vol = np.full((x.shape[0],), float(b.volume), dtype=np.float64)
        else:
            lo = np.asarray(b.lo, dtype=np.float64)
            hi = np.asarray(b.hi, dtype=np.float64)
            counts = np.maximum(np.rint((hi - lo) * int(b.ppc) / spacing).astype(np.int64), 1)
            sub = (hi - lo) / counts
            axes = [lo[d] + (np.arange(counts[d]) + 0.5) * sub[d] for d in range(dim)]
            grid = np.meshgrid(*axes, indexing="ij")
            x = np.stack([g.ravel() for g in grid], axis=1)
            vol = np.full((x.shape[0],), float(np.prod(sub)), dtype=np.float64)
        n = int(x.shape[0])
        ps = ParticleSet.empty(dim, n)
        ps.pid[:] = np.arange(next_pid, next_pid + n, dtype=np.int64)
        ps.material_id[:] = int(b.material_id)
        ps.x[:] = x
        if b.velocity is not None:
            ps.v[:] = np.asarray(b.velocity, dtype=np.float64)[None, :]
        ps.volume[:] = vol
        ps.activation_time[:] = float(b.activation_time)
        parts.append(ps)
        next_pid += n
    return ParticleSet.concat(parts, dim)
