from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .mesh import StructuredMesh, corner_offsets


@dataclass
class ShapeValues:
    """Shape function data of a particle subset for one step.

    node_ids: (n, k) global node ids of each particle's cell
    N:        (n, k) shape function values
    dN:       (n, k, dim) physical gradients
    """

    node_ids: np.ndarray
    N: np.ndarray
    dN: np.ndarray

    def __len__(self) -> int:
        return int(self.node_ids.shape[0])

    def scatter(self, out: np.ndarray, values: np.ndarray) -> None:
        """Add ``N * values`` into a nodal array (commutative reduction)."""
        weighted = self.N[..., None] * values[:, None, :] if values.ndim == 2 else self.N * values[:, None]
        if out.ndim == 1:
            np.add.at(out, self.node_ids.ravel(), weighted.ravel())
        else:
            np.add.at(out, self.node_ids.ravel(), weighted.reshape(-1, out.shape[1]))

    def gather(self, nodal: np.ndarray) -> np.ndarray:
        """Interpolate a nodal field to the particles."""
        vals = nodal[self.node_ids]
        if vals.ndim == 2:
            return (self.N * vals).sum(axis=1)
        return (self.N[..., None] * vals).sum(axis=1)


class LinearShapeFunction:
    """Bilinear (2D) / trilinear (3D) Lagrange functions on a structured cell."""

    def __init__(self, mesh: StructuredMesh):
        self.mesh = mesh
        self._signs = (2 * corner_offsets(mesh.dim) - 1).astype(np.float64)

    def values(self, xi: np.ndarray) -> np.ndarray:
        terms = 0.5 * (1.0 + xi[:, None, :] * self._signs[None, :, :])
        return np.prod(terms, axis=2)

    def local_gradients(self, xi: np.ndarray) -> np.ndarray:
        dim = self.mesh.dim
        terms = 0.5 * (1.0 + xi[:, None, :] * self._signs[None, :, :])
        grads = np.empty(terms.shape, dtype=np.float64)
        for d in range(dim):
            other = np.ones(terms.shape[:2], dtype=np.float64)
            for e in range(dim):
                if e != d:
                    other = other * terms[:, :, e]
            grads[:, :, d] = 0.5 * self._signs[None, :, d] * other
        return grads

    def evaluate(self, x: np.ndarray, cells: np.ndarray) -> ShapeValues:
        cells = np.asarray(cells, dtype=np.int64)
        if cells.size and np.any(cells < 0):
            raise ValueError("shape functions requested for unlocated particles")
        xi = self.mesh.local_coords(x, cells)
        N = self.values(xi)
        # d(xi)/dx = 2 / h along each axis
        dN = self.local_gradients(xi) * (2.0 / self.mesh.spacing)[None, None, :]
        return ShapeValues(node_ids=self.mesh.cell_nodes(cells), N=N, dN=dN)
