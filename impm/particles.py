"""Per-particle capability set consumed by the integration scheme.

The scheme only talks to ``ParticleOps``: compute_mass, compute_strain,
update_volume and compute_stress.  ``MaterialPointOps`` is the default
implementation; it dispatches every call on ``material_id`` to the material
table built at particle creation, so new material kinds never touch the core.
"""

from __future__ import annotations

from typing import Dict, Protocol

import numpy as np

from .shapefn import ShapeValues
from .state import ParticleSet


class NumericalFailure(RuntimeError):
    """Non-physical particle state (degenerate volume, non-finite stress)."""

    def __init__(self, message: str, pids: np.ndarray | None = None):
        self.pids = np.empty((0,), dtype=np.int64) if pids is None else np.asarray(pids, dtype=np.int64)
        if self.pids.size:
            message = f"{message} (pids={self.pids[:8].tolist()})"
        super().__init__(message)


class ParticleOps(Protocol):
    def compute_mass(self, particles: ParticleSet, ids: np.ndarray) -> None: ...

    def compute_strain(
        self,
        particles: ParticleSet,
        ids: np.ndarray,
        shape: ShapeValues,
        nodal_velocity: np.ndarray,
        dt: float,
    ) -> None: ...

    def update_volume(self, particles: ParticleSet, ids: np.ndarray) -> None: ...

    def compute_stress(self, particles: ParticleSet, ids: np.ndarray, dt: float) -> None: ...


def velocity_gradient(shape: ShapeValues, nodal_velocity: np.ndarray) -> np.ndarray:
    """L_ij = sum_I v_Ii dN_I/dx_j, shape (n, dim, dim)."""
    vel = nodal_velocity[shape.node_ids]
    return np.einsum("nki,nkj->nij", vel, shape.dN)


def strain_increment(L: np.ndarray, dt: float) -> np.ndarray:
    """Voigt strain increment (engineering shear) from a velocity gradient."""
    n, dim, _ = L.shape
    d = np.zeros((n, 6), dtype=np.float64)
    d[:, 0] = L[:, 0, 0]
    d[:, 1] = L[:, 1, 1]
    d[:, 3] = L[:, 0, 1] + L[:, 1, 0]
    if dim == 3:
        d[:, 2] = L[:, 2, 2]
        d[:, 4] = L[:, 1, 2] + L[:, 2, 1]
        d[:, 5] = L[:, 0, 2] + L[:, 2, 0]
    return d * float(dt)


def smooth_pressure(particles: ParticleSet, ids: np.ndarray) -> None:
    """Replace each particle's pressure by the volume-weighted mean of its cell."""
    if ids.size == 0:
        return
    cells = particles.cell[ids]
    p = particles.stress[ids, :3].mean(axis=1)
    vol = particles.volume[ids]
    n_cells = int(cells.max()) + 1
    sum_vp = np.bincount(cells, weights=vol * p, minlength=n_cells)
    sum_v = np.bincount(cells, weights=vol, minlength=n_cells)
    p_bar = sum_vp[cells] / sum_v[cells]
    particles.stress[ids, :3] += (p_bar - p)[:, None]


class MaterialPointOps:
    def __init__(self, materials: Dict[int, object]):
        if not materials:
            raise ValueError("at least one material is required")
        self.materials = {int(k): m for k, m in materials.items()}

    def _material(self, mid: int):
        try:
            return self.materials[int(mid)]
        except KeyError:
            raise ValueError(f"particle references unknown material id {int(mid)}") from None

    def _groups(self, particles: ParticleSet, ids: np.ndarray):
        mids = particles.material_id[ids]
        for mid in np.unique(mids).tolist():
            yield self._material(mid), ids[mids == mid]

    def compute_mass(self, particles: ParticleSet, ids: np.ndarray) -> None:
        for mat, sel in self._groups(particles, ids):
            particles.mass[sel] = float(mat.density) * particles.volume[sel]
        bad = ~(particles.mass[ids] > 0.0)
        if np.any(bad):
            raise NumericalFailure("non-positive particle mass", particles.pid[ids[bad]])

    def compute_strain(self, particles, ids, shape, nodal_velocity, dt) -> None:
        if ids.size == 0:
            return
        d = strain_increment(velocity_gradient(shape, nodal_velocity), dt)
        particles.dstrain[ids] = d
        particles.strain[ids] += d

    def update_volume(self, particles: ParticleSet, ids: np.ndarray) -> None:
        if ids.size == 0:
            return
        dvol = particles.dstrain[ids, :3].sum(axis=1)
        particles.volume[ids] *= 1.0 + dvol
        vol = particles.volume[ids]
        bad = ~np.isfinite(vol) | (vol <= 0.0)
        if np.any(bad):
            raise NumericalFailure("degenerate particle volume", particles.pid[ids[bad]])

    def compute_stress(self, particles: ParticleSet, ids: np.ndarray, dt: float) -> None:
        for mat, sel in self._groups(particles, ids):
            stress, sv = mat.compute_stress(
                particles.stress[sel], particles.dstrain[sel], particles.state_vars[sel], float(dt)
            )
            particles.stress[sel] = stress
            particles.state_vars[sel] = sv
        bad = ~np.all(np.isfinite(particles.stress[ids]), axis=1)
        if np.any(bad):
            raise NumericalFailure("non-finite particle stress", particles.pid[ids[bad]])
