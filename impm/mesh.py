from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .constants import GEOM_EPSILON

_FACES = {
    "xmin": (0, 0), "xmax": (0, 1),
    "ymin": (1, 0), "ymax": (1, 1),
    "zmin": (2, 0), "zmax": (2, 1),
}


def corner_offsets(dim: int) -> np.ndarray:
    """Cell-corner offsets in node order (x fastest), shape (2**dim, dim)."""
    rows = [tuple(reversed(c)) for c in itertools.product((0, 1), repeat=dim)]
    return np.asarray(rows, dtype=np.int64)


def _spread_bits(v: np.ndarray, dim: int) -> np.ndarray:
    out = np.zeros_like(v, dtype=np.int64)
    for b in range(21):
        out |= ((v >> b) & 1) << (b * dim)
    return out


@dataclass
class StructuredMesh:
    """Axis-aligned structured background grid in 2D or 3D.

    Cell ids are ``ix + nx*(iy + ny*iz)``; node ids follow the same rule on
    the ``(nx+1, ny+1, nz+1)`` node lattice.  Cells listed in
    ``inactive_cells`` are cut out of the domain: ``locate`` never returns
    them and they take no part in the partition graph.
    """

    origin: np.ndarray
    spacing: np.ndarray
    ncells: Tuple[int, ...]
    inactive_cells: np.ndarray = field(default_factory=lambda: np.empty((0,), dtype=np.int64))

    def __post_init__(self):
        self.origin = np.asarray(self.origin, dtype=np.float64)
        self.spacing = np.asarray(self.spacing, dtype=np.float64)
        self.ncells = tuple(int(n) for n in self.ncells)
        dim = len(self.ncells)
        if dim not in (2, 3):
            raise ValueError("mesh dimension must be 2 or 3")
        if self.origin.shape != (dim,) or self.spacing.shape != (dim,):
            raise ValueError("mesh origin/spacing must match the number of cell counts")
        if any(n < 1 for n in self.ncells):
            raise ValueError("mesh ncells must be >= 1 along every axis")
        if np.any(self.spacing <= 0.0):
            raise ValueError("mesh spacing must be positive")
        self.inactive_cells = np.unique(np.asarray(self.inactive_cells, dtype=np.int64))
        if self.inactive_cells.size and (
            self.inactive_cells.min() < 0 or self.inactive_cells.max() >= self.n_cells
        ):
            raise ValueError("inactive cell id out of range")
        self._active = np.ones((self.n_cells,), dtype=bool)
        self._active[self.inactive_cells] = False
        self._offsets = corner_offsets(dim)
        self._cell_nodes = self._build_cell_nodes()

    # ------------------------------------------------------------------
    # sizes / indexing
    # ------------------------------------------------------------------

    @property
    def dim(self) -> int:
        return len(self.ncells)

    @property
    def nnodes_axis(self) -> Tuple[int, ...]:
        return tuple(n + 1 for n in self.ncells)

    @property
    def n_cells(self) -> int:
        return int(np.prod(self.ncells))

    @property
    def n_nodes(self) -> int:
        return int(np.prod(self.nnodes_axis))

    @property
    def nodes_per_cell(self) -> int:
        return 2 ** self.dim

    @property
    def active_cells(self) -> np.ndarray:
        return np.nonzero(self._active)[0].astype(np.int64)

    def is_active(self, cells: np.ndarray) -> np.ndarray:
        cells = np.asarray(cells, dtype=np.int64)
        ok = (cells >= 0) & (cells < self.n_cells)
        out = np.zeros(cells.shape, dtype=bool)
        out[ok] = self._active[cells[ok]]
        return out

    def cell_index(self, ijk: np.ndarray) -> np.ndarray:
        ijk = np.asarray(ijk, dtype=np.int64)
        cid = ijk[..., -1]
        for d in range(self.dim - 2, -1, -1):
            cid = cid * self.ncells[d] + ijk[..., d]
        return cid

    def cell_ijk(self, cells: np.ndarray) -> np.ndarray:
        rem = np.asarray(cells, dtype=np.int64)
        out = np.zeros(rem.shape + (self.dim,), dtype=np.int64)
        for d in range(self.dim):
            out[..., d] = rem % self.ncells[d]
            rem = rem // self.ncells[d]
        return out

    def node_index(self, ijk: np.ndarray) -> np.ndarray:
        ijk = np.asarray(ijk, dtype=np.int64)
        nn = self.nnodes_axis
        nid = ijk[..., -1]
        for d in range(self.dim - 2, -1, -1):
            nid = nid * nn[d] + ijk[..., d]
        return nid

    def node_coords(self) -> np.ndarray:
        axes = [np.arange(n, dtype=np.float64) for n in self.nnodes_axis]
        grids = np.meshgrid(*axes, indexing="ij")
        # node ids are x-fastest, so flatten in Fortran order
        ijk = np.stack([g.ravel(order="F") for g in grids], axis=1)
        return self.origin[None, :] + ijk * self.spacing[None, :]

    def _build_cell_nodes(self) -> np.ndarray:
        ijk = self.cell_ijk(np.arange(self.n_cells, dtype=np.int64))
        corners = ijk[:, None, :] + self._offsets[None, :, :]
        return self.node_index(corners)

    def cell_nodes(self, cells: Optional[np.ndarray] = None) -> np.ndarray:
        if cells is None:
            return self._cell_nodes
        return self._cell_nodes[np.asarray(cells, dtype=np.int64)]

    # ------------------------------------------------------------------
    # point location
    # ------------------------------------------------------------------

    def locate(self, x: np.ndarray) -> np.ndarray:
        """Owning cell per point; -1 outside the mesh or in an inactive cell."""
        x = np.asarray(x, dtype=np.float64).reshape(-1, self.dim)
        rel = (x - self.origin[None, :]) / self.spacing[None, :]
        ijk = np.floor(rel).astype(np.int64)
        n = np.asarray(self.ncells, dtype=np.int64)[None, :]
        # points on the upper boundary belong to the last cell
        on_top = (ijk == n) & (np.abs(rel - n) <= GEOM_EPSILON * np.maximum(1.0, n))
        ijk = np.where(on_top, n - 1, ijk)
        inside = np.all((ijk >= 0) & (ijk < n), axis=1) & np.all(np.isfinite(rel), axis=1)
        cells = np.full((x.shape[0],), -1, dtype=np.int64)
        if np.any(inside):
            cid = self.cell_index(ijk[inside])
            cid[~self._active[cid]] = -1
            cells[inside] = cid
        return cells

    def contains(self, x: np.ndarray, cells: np.ndarray) -> np.ndarray:
        """Per point: does ``cells`` hold the point (upper faces inclusive)?"""
        x = np.asarray(x, dtype=np.float64).reshape(-1, self.dim)
        cells = np.asarray(cells, dtype=np.int64)
        ok = self.is_active(cells)
        out = np.zeros(cells.shape, dtype=bool)
        if np.any(ok):
            lo = self.origin[None, :] + self.cell_ijk(cells[ok]) * self.spacing[None, :]
            hi = lo + self.spacing[None, :]
            tol = GEOM_EPSILON * np.maximum(1.0, np.abs(hi))
            xx = x[ok]
            out[ok] = np.all((xx >= lo - tol) & (xx <= hi + tol), axis=1)
        return out

    def local_coords(self, x: np.ndarray, cells: np.ndarray) -> np.ndarray:
        """Natural coordinates in [-1, 1]^dim of each point inside its cell."""
        x = np.asarray(x, dtype=np.float64).reshape(-1, self.dim)
        lo = self.origin[None, :] + self.cell_ijk(cells) * self.spacing[None, :]
        return 2.0 * (x - lo) / self.spacing[None, :] - 1.0

    # ------------------------------------------------------------------
    # graphs
    # ------------------------------------------------------------------

    def cell_adjacency(self) -> Dict[int, List[int]]:
        """Face neighbours among active cells."""
        adj: Dict[int, List[int]] = {}
        ijk_all = self.cell_ijk(self.active_cells)
        for cid, ijk in zip(self.active_cells.tolist(), ijk_all):
            out = []
            for d in range(self.dim):
                for step in (-1, 1):
                    nb = ijk.copy()
                    nb[d] += step
                    if nb[d] < 0 or nb[d] >= self.ncells[d]:
                        continue
                    nid = int(self.cell_index(nb))
                    if self._active[nid]:
                        out.append(nid)
            adj[int(cid)] = out
        return adj

    def cell_node_neighbours(self) -> Dict[int, List[int]]:
        """Active cells sharing at least one node with each active cell."""
        node_cells: Dict[int, List[int]] = {}
        for cid in self.active_cells.tolist():
            for nid in self._cell_nodes[cid].tolist():
                node_cells.setdefault(int(nid), []).append(int(cid))
        out: Dict[int, List[int]] = {}
        for cid in self.active_cells.tolist():
            nbs = set()
            for nid in self._cell_nodes[cid].tolist():
                nbs.update(node_cells[int(nid)])
            nbs.discard(int(cid))
            out[int(cid)] = sorted(nbs)
        return out

    def morton_order(self, cells: Optional[Sequence[int]] = None) -> np.ndarray:
        """Cells sorted along a Z-order (Morton) curve."""
        cells = self.active_cells if cells is None else np.asarray(cells, dtype=np.int64)
        ijk = self.cell_ijk(cells)
        key = np.zeros(cells.shape, dtype=np.int64)
        for d in range(self.dim):
            key |= _spread_bits(ijk[:, d], self.dim) << d
        return cells[np.argsort(key, kind="stable")]

    # ------------------------------------------------------------------
    # boundaries
    # ------------------------------------------------------------------

    def face_nodes(self, face: str) -> np.ndarray:
        key = str(face).strip().lower()
        if key not in _FACES:
            raise ValueError(f"unknown mesh face {face!r}; allowed: {sorted(_FACES)}")
        axis, side = _FACES[key]
        if axis >= self.dim:
            raise ValueError(f"face {face!r} is not defined for a {self.dim}D mesh")
        nn = self.nnodes_axis
        axes = [np.arange(n, dtype=np.int64) for n in nn]
        axes[axis] = np.asarray([0 if side == 0 else nn[axis] - 1], dtype=np.int64)
        grids = np.meshgrid(*axes, indexing="ij")
        ijk = np.stack([g.ravel() for g in grids], axis=1)
        return np.sort(self.node_index(ijk))
